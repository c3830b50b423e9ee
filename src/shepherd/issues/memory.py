from __future__ import annotations

import threading
from collections.abc import Iterable, Sequence
from dataclasses import replace

from shepherd.issues.base import Issue, IssueStatus, IssueStore, IssueStoreError


class InMemoryIssueStore(IssueStore):
    """Process-local tracker used for dry runs and tests."""

    def __init__(self, issues: Iterable[Issue] = ()) -> None:
        self._issues: dict[str, Issue] = {}
        self._notes: dict[str, list[str]] = {}
        self._lock = threading.Lock()
        for issue in issues:
            self.add(issue)

    def add(self, issue: Issue) -> None:
        with self._lock:
            self._issues[issue.id] = replace(issue, labels=list(issue.labels))

    def list_ready(self) -> list[Issue]:
        with self._lock:
            ready = [
                issue
                for issue in self._issues.values()
                if issue.status == "open" and issue.dependency_count == 0
            ]
            # sorted() is stable, so equal priorities keep insertion order
            ready = sorted(ready, key=lambda issue: issue.priority)
            return [replace(issue, labels=list(issue.labels)) for issue in ready]

    def get_issue(self, issue_id: str) -> Issue | None:
        with self._lock:
            issue = self._issues.get(issue_id)
            if issue is None:
                return None
            return replace(issue, labels=list(issue.labels))

    def notes(self, issue_id: str) -> list[str]:
        with self._lock:
            return list(self._notes.get(issue_id, []))

    def _apply(
        self,
        issue_id: str,
        *,
        status: IssueStatus | None,
        add_labels: Sequence[str],
        remove_labels: Sequence[str],
        notes: str | None,
    ) -> None:
        with self._lock:
            issue = self._issues.get(issue_id)
            if issue is None:
                raise IssueStoreError(f"Issue not found: {issue_id}")
            labels = [label for label in issue.labels if label not in set(remove_labels)]
            for label in add_labels:
                if label not in labels:
                    labels.append(label)
            issue.labels = labels
            if status is not None:
                issue.status = status
            if notes:
                self._notes.setdefault(issue_id, []).append(notes)
