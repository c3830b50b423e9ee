from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from shepherd.issues.labels import workflow_name

if TYPE_CHECKING:
    from shepherd.issues.base import Issue
    from shepherd.ledger.records import RunOutcome

logger = logging.getLogger(__name__)

TransitionKind = Literal["advance", "retry", "block", "close"]

DEFAULT_POLICY_PRIORITY = 50
DEFAULT_TIMEOUT_BASE_SECONDS = 300.0
DEFAULT_RETRY_LIMIT = 2
DEFAULT_STALL_THRESHOLD_SECONDS = 60.0

REASON_APPROVAL = "approval required"
REASON_RETRY_LIMIT = "retry limit exceeded"


class PolicyError(RuntimeError):
    """Raised for unknown policies or phases and malformed policy files."""


@dataclass(frozen=True, slots=True)
class PhaseDefinition:
    name: str
    capabilities: tuple[str, ...] = ()
    description: str = ""
    timeout_multiplier: float = 1.0
    retry_limit: int | None = None
    require_approval: bool = False
    model: str | None = None


@dataclass(frozen=True, slots=True)
class Policy:
    name: str
    phases: tuple[PhaseDefinition, ...]
    description: str = ""
    issue_types: tuple[str, ...] = ()
    priority: int = DEFAULT_POLICY_PRIORITY
    timeout_base_seconds: float = DEFAULT_TIMEOUT_BASE_SECONDS
    retry_limit: int = DEFAULT_RETRY_LIMIT
    stall_threshold_seconds: float | None = None

    @classmethod
    def from_dict(cls, name: str, payload: dict[str, Any]) -> Policy:
        raw_phases = payload.get("phases")
        if not isinstance(raw_phases, list) or not raw_phases:
            raise PolicyError(f"Policy '{name}' must declare at least one phase.")
        phases: list[PhaseDefinition] = []
        seen: set[str] = set()
        for index, item in enumerate(raw_phases):
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                raise PolicyError(f"Policy '{name}' phase #{index + 1} is missing a name.")
            phase_name = str(item["name"]).strip()
            if phase_name in seen:
                raise PolicyError(f"Policy '{name}' declares phase '{phase_name}' twice.")
            seen.add(phase_name)
            retry_limit = item.get("retry_limit")
            phases.append(
                PhaseDefinition(
                    name=phase_name,
                    capabilities=tuple(str(cap) for cap in item.get("capabilities", [])),
                    description=str(item.get("description") or ""),
                    timeout_multiplier=float(item.get("timeout_multiplier", 1.0)),
                    retry_limit=None if retry_limit is None else int(retry_limit),
                    require_approval=bool(item.get("require_approval", False)),
                    model=item.get("model") or None,
                )
            )
        stall = payload.get("stall_threshold_seconds")
        return cls(
            name=name,
            phases=tuple(phases),
            description=str(payload.get("description") or ""),
            issue_types=tuple(str(kind) for kind in payload.get("issue_types", [])),
            priority=int(payload.get("priority", DEFAULT_POLICY_PRIORITY)),
            timeout_base_seconds=float(
                payload.get("timeout_base_seconds", DEFAULT_TIMEOUT_BASE_SECONDS)
            ),
            retry_limit=int(payload.get("retry_limit", DEFAULT_RETRY_LIMIT)),
            stall_threshold_seconds=None if stall is None else float(stall),
        )


@dataclass(frozen=True, slots=True)
class PhaseConfig:
    """A phase with its policy defaults resolved."""

    name: str
    capabilities: tuple[str, ...]
    timeout_seconds: float
    retry_limit: int
    requires_approval: bool
    description: str = ""
    model: str | None = None


@dataclass(frozen=True, slots=True)
class Transition:
    kind: TransitionKind
    next_phase: str | None = None
    reason: str = ""


@dataclass(slots=True)
class PolicyRegistry:
    policies: dict[str, Policy] = field(default_factory=dict)
    default_policy_name: str | None = None
    default_stall_threshold_seconds: float = DEFAULT_STALL_THRESHOLD_SECONDS

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PolicyRegistry:
        registry = cls()
        raw_policies = payload.get("policies", {})
        if not isinstance(raw_policies, dict) or not raw_policies:
            raise PolicyError("No policies defined.")
        for name, body in raw_policies.items():
            if not isinstance(body, dict):
                raise PolicyError(f"Policy '{name}' must be a table.")
            registry.register(Policy.from_dict(name, body))
        default_name = payload.get("default_policy")
        if default_name is not None:
            if default_name not in registry.policies:
                raise PolicyError(f"Default policy '{default_name}' is not defined.")
            registry.default_policy_name = str(default_name)
        return registry

    @classmethod
    def from_file(cls, path: Path) -> PolicyRegistry:
        if not path.exists():
            raise PolicyError(f"Policy file not found: {path}")
        try:
            payload = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise PolicyError(f"Invalid policy file {path}: {exc}") from exc
        return cls.from_dict(payload)

    def register(self, policy: Policy) -> None:
        self.policies[policy.name] = policy
        if self.default_policy_name is None:
            self.default_policy_name = policy.name

    def policy_names(self) -> list[str]:
        return list(self.policies)

    def get_policy(self, name: str) -> Policy:
        policy = self.policies.get(name)
        if policy is None:
            raise PolicyError(f"Unknown policy: {name}")
        return policy

    def default_policy(self) -> Policy:
        if self.default_policy_name is None:
            raise PolicyError("No policies registered.")
        return self.get_policy(self.default_policy_name)

    def match_policy(self, issue: Issue, invalid_label_strategy: str = "error") -> Policy:
        """Pick the policy for an issue.

        An explicit workflow label wins, then the highest-priority policy
        listing the issue type (definition order breaks ties), then the
        default policy.
        """
        requested = workflow_name(issue.labels)
        if requested is not None:
            if requested in self.policies:
                return self.policies[requested]
            message = f"Issue {issue.id} requests unknown workflow '{requested}'"
            if invalid_label_strategy == "error":
                raise PolicyError(message)
            if invalid_label_strategy == "warning":
                logger.warning("%s; falling back to type matching", message)

        candidates = [
            policy for policy in self.policies.values() if issue.issue_type in policy.issue_types
        ]
        if candidates:
            return max(candidates, key=lambda policy: policy.priority)
        return self.default_policy()

    def phase_sequence(self, policy: str) -> list[str]:
        return [phase.name for phase in self.get_policy(policy).phases]

    def _phase(self, policy: Policy, phase: str) -> PhaseDefinition:
        for definition in policy.phases:
            if definition.name == phase:
                return definition
        raise PolicyError(f"Unknown phase '{phase}' in policy '{policy.name}'")

    def phase_config(self, policy: str, phase: str) -> PhaseConfig:
        resolved = self.get_policy(policy)
        definition = self._phase(resolved, phase)
        return PhaseConfig(
            name=definition.name,
            capabilities=definition.capabilities,
            timeout_seconds=resolved.timeout_base_seconds * definition.timeout_multiplier,
            retry_limit=(
                resolved.retry_limit if definition.retry_limit is None else definition.retry_limit
            ),
            requires_approval=definition.require_approval,
            description=definition.description,
            model=definition.model,
        )

    def next_phase(self, policy: str, phase: str) -> str | None:
        sequence = self.phase_sequence(policy)
        if phase not in sequence:
            raise PolicyError(f"Unknown phase '{phase}' in policy '{policy}'")
        index = sequence.index(phase)
        return sequence[index + 1] if index + 1 < len(sequence) else None

    def timeout_for(self, policy: str, phase: str) -> float:
        return self.phase_config(policy, phase).timeout_seconds

    def stall_threshold(self, policy: str) -> float:
        threshold = self.get_policy(policy).stall_threshold_seconds
        return self.default_stall_threshold_seconds if threshold is None else threshold

    def transition(
        self,
        policy: str,
        phase: str,
        outcome: RunOutcome,
        retry_count: int,
    ) -> Transition:
        config = self.phase_config(policy, phase)
        if outcome.requires_approval:
            return Transition(kind="block", reason=REASON_APPROVAL)
        if outcome.success:
            following = self.next_phase(policy, phase)
            if following is None:
                return Transition(kind="close", reason=f"{phase} completed; workflow finished")
            return Transition(kind="advance", next_phase=following, reason=f"{phase} completed")
        if retry_count < config.retry_limit:
            return Transition(
                kind="retry",
                next_phase=phase,
                reason=f"retry {retry_count + 1}/{config.retry_limit}",
            )
        return Transition(kind="block", reason=REASON_RETRY_LIMIT)
