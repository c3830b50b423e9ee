from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

RunStatus = Literal["pending", "running", "completed", "failed", "blocked"]

RUN_STATUSES: frozenset[str] = frozenset({"pending", "running", "completed", "failed", "blocked"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "running"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "blocked"})

ERROR_INTERRUPTED = "interrupted by restart"

# Allowed status moves; terminal runs never move again.
RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "failed", "blocked"}),
    "running": frozenset({"completed", "failed", "blocked"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "blocked": frozenset(),
}


def _stamp() -> str:
    return datetime.now(UTC).strftime("%Y%m%d%H%M%S")


def new_run_id() -> str:
    return f"run-{_stamp()}-{uuid4().hex[:8]}"


def new_decision_id() -> str:
    return f"dec-{_stamp()}-{uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class RunOutcome:
    success: bool
    summary: str = ""
    requires_approval: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def failure(cls, error: str, *, metrics: dict[str, Any] | None = None) -> RunOutcome:
        return cls(success=False, summary=error, error=error, metrics=dict(metrics or {}))

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunOutcome:
        metrics = payload.get("metrics")
        return cls(
            success=bool(payload.get("success", False)),
            summary=str(payload.get("summary") or ""),
            requires_approval=bool(payload.get("requires_approval", False)),
            metrics=dict(metrics) if isinstance(metrics, dict) else {},
            error=payload.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "requires_approval": self.requires_approval,
            "metrics": dict(self.metrics),
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class Run:
    id: str
    issue_id: str
    agent_id: str
    policy_name: str
    phase: str
    status: RunStatus
    created_at: float
    updated_at: float
    session_id: str | None = None
    completed_at: float | None = None
    outcome: RunOutcome | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Run:
        outcome = payload.get("outcome")
        metadata = payload.get("metadata")
        completed_at = payload.get("completed_at")
        return cls(
            id=str(payload["id"]),
            issue_id=str(payload["issue_id"]),
            agent_id=str(payload.get("agent_id") or ""),
            policy_name=str(payload.get("policy_name") or ""),
            phase=str(payload.get("phase") or ""),
            status=payload["status"],
            created_at=float(payload["created_at"]),
            updated_at=float(payload.get("updated_at", payload["created_at"])),
            session_id=payload.get("session_id"),
            completed_at=None if completed_at is None else float(completed_at),
            outcome=RunOutcome.from_dict(outcome) if isinstance(outcome, dict) else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "agent_id": self.agent_id,
            "policy_name": self.policy_name,
            "phase": self.phase,
            "status": self.status,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class DecisionEntry:
    id: str
    run_id: str
    category: str
    decision: str
    reasoning: str
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> DecisionEntry:
        metadata = payload.get("metadata")
        return cls(
            id=str(payload["id"]),
            run_id=str(payload.get("run_id") or ""),
            category=str(payload.get("category") or ""),
            decision=str(payload.get("decision") or ""),
            reasoning=str(payload.get("reasoning") or ""),
            timestamp=float(payload["timestamp"]),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "category": self.category,
            "decision": self.decision,
            "reasoning": self.reasoning,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }
