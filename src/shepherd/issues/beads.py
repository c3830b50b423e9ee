from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from shepherd.issues.base import Issue, IssueStatus, IssueStore, IssueStoreError

logger = logging.getLogger(__name__)


class BeadsIssueStore(IssueStore):
    """Issue store backed by the ``bd`` command line tracker."""

    def __init__(self, binary: str = "bd", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def _run_bd(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                [self.binary, *args],
                cwd=self.working_directory,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise IssueStoreError(f"Tracker binary not found: {self.binary}") from exc
        if check and proc.returncode != 0:
            raise IssueStoreError(
                f"{self.binary} {' '.join(args[:2])} failed: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def _run_json(self, args: list[str]) -> Any:
        proc = self._run_bd([*args, "--json"])
        output = proc.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise IssueStoreError(f"Tracker returned invalid JSON for {args[0]}") from exc

    def list_ready(self) -> list[Issue]:
        payload = self._run_json(["ready"])
        if not isinstance(payload, list):
            return []
        issues: list[Issue] = []
        for item in payload:
            if isinstance(item, dict) and "id" in item:
                issues.append(Issue.from_dict(item))
        return issues

    def get_issue(self, issue_id: str) -> Issue | None:
        proc = self._run_bd(["show", issue_id, "--json"], check=False)
        if proc.returncode != 0:
            logger.debug("bd show %s failed: %s", issue_id, proc.stderr.strip())
            return None
        try:
            payload = json.loads(proc.stdout.strip() or "null")
        except json.JSONDecodeError as exc:
            raise IssueStoreError(f"Tracker returned invalid JSON for issue {issue_id}") from exc
        # bd show returns a one-element list
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict) or "id" not in payload:
            return None
        return Issue.from_dict(payload)

    def _apply(
        self,
        issue_id: str,
        *,
        status: IssueStatus | None,
        add_labels: Sequence[str],
        remove_labels: Sequence[str],
        notes: str | None,
    ) -> None:
        args = ["update", issue_id]
        if status is not None:
            args.extend(["--status", status])
        if notes:
            args.extend(["--notes", notes])
        if len(args) > 2:
            self._run_bd(args)
        for label in remove_labels:
            self._run_bd(["label", "remove", issue_id, label])
        for label in add_labels:
            self._run_bd(["label", "add", issue_id, label])
        logger.debug(
            "updated issue %s status=%s +%s -%s",
            issue_id,
            status,
            list(add_labels),
            list(remove_labels),
        )
