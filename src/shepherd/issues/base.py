from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from shepherd.issues.labels import PHASE_PREFIX, phase_label

IssueStatus = Literal["open", "in_progress", "blocked", "closed"]
ISSUE_STATUSES: frozenset[str] = frozenset({"open", "in_progress", "blocked", "closed"})


class IssueStoreError(RuntimeError):
    """Raised when the issue tracker cannot be read or updated."""


@dataclass(slots=True)
class Issue:
    id: str
    title: str
    description: str = ""
    status: IssueStatus = "open"
    priority: int = 2
    issue_type: str = "task"
    labels: list[str] = field(default_factory=list)
    dependency_count: int = 0

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Issue:
        raw_labels = payload.get("labels") or []
        labels = [str(item) for item in raw_labels] if isinstance(raw_labels, list) else []
        status = str(payload.get("status") or "open")
        try:
            priority = int(payload.get("priority", 2))
        except (TypeError, ValueError):
            priority = 2
        try:
            dependency_count = int(payload.get("dependency_count") or 0)
        except (TypeError, ValueError):
            dependency_count = 0
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            status=status if status in ISSUE_STATUSES else "open",  # type: ignore[arg-type]
            priority=priority,
            issue_type=str(payload.get("issue_type") or "task"),
            labels=labels,
            dependency_count=dependency_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "issue_type": self.issue_type,
            "labels": list(self.labels),
            "dependency_count": self.dependency_count,
        }


class IssueStore(ABC):
    """Tracker adapter. The engine reads and writes issues only through this."""

    @abstractmethod
    def list_ready(self) -> list[Issue]:
        """Open issues with no unresolved dependencies, in tracker order."""

    @abstractmethod
    def get_issue(self, issue_id: str) -> Issue | None:
        """Return the current issue or ``None`` when it does not exist."""

    @abstractmethod
    def _apply(
        self,
        issue_id: str,
        *,
        status: IssueStatus | None,
        add_labels: Sequence[str],
        remove_labels: Sequence[str],
        notes: str | None,
    ) -> None:
        """Write a status/label/notes change to the tracker."""

    def get_labels(self, issue_id: str) -> list[str]:
        issue = self.get_issue(issue_id)
        if issue is None:
            raise IssueStoreError(f"Issue not found: {issue_id}")
        return list(issue.labels)

    def update(
        self,
        issue_id: str,
        *,
        status: IssueStatus | None = None,
        phase_label: str | None = None,
        add_labels: Sequence[str] = (),
        remove_labels: Sequence[str] = (),
        remove_prefixes: Sequence[str] = (),
        notes: str | None = None,
    ) -> None:
        """Apply a status change and label edits in one call.

        ``phase_label`` replaces whatever phase marker the issue carries.
        ``remove_prefixes`` drops every label starting with one of the
        prefixes; labels named in ``add_labels`` are kept even if they match.
        """
        if status is not None and status not in ISSUE_STATUSES:
            raise IssueStoreError(f"Unsupported issue status: {status}")

        to_add = list(add_labels)
        prefixes = list(remove_prefixes)
        if phase_label is not None:
            to_add.append(_phase_marker(phase_label))
            prefixes.append(PHASE_PREFIX)

        to_remove = list(remove_labels)
        if prefixes:
            for label in self.get_labels(issue_id):
                if any(label.startswith(prefix) for prefix in prefixes):
                    to_remove.append(label)

        keep = set(to_add)
        to_remove = [label for label in dict.fromkeys(to_remove) if label not in keep]
        self._apply(
            issue_id,
            status=status,
            add_labels=list(dict.fromkeys(to_add)),
            remove_labels=to_remove,
            notes=notes,
        )


def _phase_marker(phase: str) -> str:
    return phase if phase.startswith(PHASE_PREFIX) else phase_label(phase)
