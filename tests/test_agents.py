from pathlib import Path

import pytest

from shepherd.agents import (
    AgentDescriptor,
    AgentRegistry,
    AgentRegistryError,
    SelectionCriteria,
)


def _agent(agent_id: str, capabilities: set[str], **kwargs) -> AgentDescriptor:
    return AgentDescriptor(
        id=agent_id, name=agent_id, capabilities=frozenset(capabilities), **kwargs
    )


def test_select_prefers_highest_priority_superset() -> None:
    registry = AgentRegistry.from_descriptors(
        [
            _agent("narrow", {"coding"}, priority=50),
            _agent("wide", {"coding", "testing"}, priority=5),
            _agent("wider", {"coding", "testing", "planning"}, priority=10),
        ]
    )

    selected = registry.select({"coding", "testing"})

    assert selected is not None
    assert selected.id == "wider"


def test_select_skips_inactive_agents() -> None:
    registry = AgentRegistry.from_descriptors(
        [
            _agent("off", {"coding"}, priority=100, active=False),
            _agent("on", {"coding"}, priority=1),
        ]
    )

    assert registry.select({"coding"}).id == "on"


def test_select_ties_go_to_first_registered() -> None:
    registry = AgentRegistry.from_descriptors(
        [_agent("first", {"coding"}, priority=3), _agent("second", {"coding"}, priority=3)]
    )

    for _ in range(5):
        assert registry.select({"coding"}).id == "first"


def test_select_returns_none_without_match() -> None:
    registry = AgentRegistry.from_descriptors([_agent("coder", {"coding"})])

    assert registry.select({"deploy"}) is None


def test_select_applies_tag_tier_and_read_only_filters() -> None:
    registry = AgentRegistry.from_descriptors(
        [
            _agent("bugs-only", {"coding"}, priority=9, allowed_tags=frozenset({"bug"})),
            _agent("fast", {"coding"}, priority=5, performance_tier="fast"),
            _agent("any", {"coding"}, priority=1),
            _agent("reader", {"coding"}, priority=2, read_only=True),
        ]
    )

    assert registry.select({"coding"}, SelectionCriteria(tags=("bug",))).id == "bugs-only"
    assert registry.select({"coding"}, SelectionCriteria(tags=("feature",))).id == "fast"
    assert (
        registry.select(
            {"coding"}, SelectionCriteria(tags=("feature",), performance_preference="slow")
        ).id
        == "reader"
    )
    assert registry.select({"coding"}, SelectionCriteria(read_only=True)).id == "reader"


def test_load_agents_from_toml(tmp_path: Path) -> None:
    path = tmp_path / "agents.toml"
    path.write_text(
        """
[[agents]]
id = "build"
capabilities = ["coding", "testing"]
priority = 4
model_id = "sonnet"

[agents.constraints]
allowed_tags = ["task"]
performance_tier = "balanced"

[[agents]]
id = "plan"
name = "Planner"
capabilities = ["planning"]
active = false
""",
        encoding="utf-8",
    )

    registry = AgentRegistry.from_file(path)
    build = registry.get("build")

    assert [agent.id for agent in registry.all()] == ["build", "plan"]
    assert build is not None
    assert build.name == "build"
    assert build.allowed_tags == frozenset({"task"})
    assert build.performance_tier == "balanced"
    assert build.model_id == "sonnet"
    assert registry.get("plan").active is False


def test_agent_without_capabilities_is_rejected() -> None:
    with pytest.raises(AgentRegistryError, match="capability"):
        AgentDescriptor.from_dict({"id": "empty", "capabilities": []})


def test_duplicate_agent_ids_are_rejected() -> None:
    registry = AgentRegistry()
    registry.register(_agent("dup", {"coding"}))

    with pytest.raises(AgentRegistryError, match="Duplicate"):
        registry.register(_agent("dup", {"testing"}))
