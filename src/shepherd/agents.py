from __future__ import annotations

import tomllib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class AgentRegistryError(RuntimeError):
    """Raised when agent definitions are missing or malformed."""


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    id: str
    name: str
    capabilities: frozenset[str]
    priority: int = 0
    allowed_tags: frozenset[str] = frozenset()
    performance_tier: str | None = None
    read_only: bool = False
    active: bool = True
    provider_id: str | None = None
    model_id: str | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentDescriptor:
        agent_id = str(payload.get("id") or "").strip()
        if not agent_id:
            raise AgentRegistryError("Agent definition is missing an id.")
        capabilities = payload.get("capabilities")
        if not isinstance(capabilities, list) or not capabilities:
            raise AgentRegistryError(f"Agent '{agent_id}' must declare at least one capability.")
        constraints = payload.get("constraints", {})
        if not isinstance(constraints, dict):
            constraints = {}
        return cls(
            id=agent_id,
            name=str(payload.get("name") or agent_id),
            capabilities=frozenset(str(cap) for cap in capabilities),
            priority=int(payload.get("priority", 0)),
            allowed_tags=frozenset(str(tag) for tag in constraints.get("allowed_tags", [])),
            performance_tier=constraints.get("performance_tier") or None,
            read_only=bool(constraints.get("read_only", False)),
            active=bool(payload.get("active", True)),
            provider_id=payload.get("provider_id") or None,
            model_id=payload.get("model_id") or None,
            description=str(payload.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "capabilities": sorted(self.capabilities),
            "priority": self.priority,
            "active": self.active,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
            "description": self.description,
            "constraints": {
                "allowed_tags": sorted(self.allowed_tags),
                "performance_tier": self.performance_tier,
                "read_only": self.read_only,
            },
        }


@dataclass(frozen=True, slots=True)
class SelectionCriteria:
    tags: tuple[str, ...] = ()
    performance_preference: str | None = None
    read_only: bool | None = None


@dataclass(slots=True)
class AgentRegistry:
    agents: dict[str, AgentDescriptor] = field(default_factory=dict)

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[AgentDescriptor]) -> AgentRegistry:
        registry = cls()
        for descriptor in descriptors:
            registry.register(descriptor)
        return registry

    @classmethod
    def from_file(cls, path: Path) -> AgentRegistry:
        if not path.exists():
            raise AgentRegistryError(f"Agent file not found: {path}")
        try:
            payload = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise AgentRegistryError(f"Invalid agent file {path}: {exc}") from exc
        raw_agents = payload.get("agents", [])
        if not isinstance(raw_agents, list):
            raise AgentRegistryError("'agents' must be an array of tables.")
        return cls.from_descriptors(
            AgentDescriptor.from_dict(item) for item in raw_agents if isinstance(item, dict)
        )

    def register(self, descriptor: AgentDescriptor) -> None:
        if descriptor.id in self.agents:
            raise AgentRegistryError(f"Duplicate agent id: {descriptor.id}")
        self.agents[descriptor.id] = descriptor

    def get(self, agent_id: str) -> AgentDescriptor | None:
        return self.agents.get(agent_id)

    def all(self) -> list[AgentDescriptor]:
        return list(self.agents.values())

    def select(
        self,
        required_capabilities: Iterable[str],
        criteria: SelectionCriteria | None = None,
    ) -> AgentDescriptor | None:
        """Best active agent covering ``required_capabilities``, or ``None``.

        Highest priority wins; among equal priorities the agent registered
        first is returned.
        """
        required = frozenset(required_capabilities)
        criteria = criteria or SelectionCriteria()
        candidates = [
            agent
            for agent in self.agents.values()
            if agent.active and required <= agent.capabilities
        ]
        if criteria.tags:
            wanted = set(criteria.tags)
            candidates = [
                agent
                for agent in candidates
                if not agent.allowed_tags or agent.allowed_tags & wanted
            ]
        if criteria.performance_preference:
            candidates = [
                agent
                for agent in candidates
                if agent.performance_tier is None
                or agent.performance_tier == criteria.performance_preference
            ]
        if criteria.read_only is not None:
            candidates = [agent for agent in candidates if agent.read_only == criteria.read_only]
        if not candidates:
            return None
        return max(candidates, key=lambda agent: agent.priority)
