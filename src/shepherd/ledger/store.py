from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

from shepherd.ledger.records import (
    ACTIVE_STATUSES,
    RUN_STATUSES,
    RUN_TRANSITIONS,
    TERMINAL_STATUSES,
    DecisionEntry,
    Run,
    RunOutcome,
    RunStatus,
    new_decision_id,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_SCHEMA = """
CREATE TABLE runs (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    issue_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    policy_name TEXT NOT NULL,
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    completed_at REAL,
    duration_ms REAL,
    payload TEXT NOT NULL
);
CREATE INDEX runs_issue ON runs (issue_id, status);
CREATE INDEX runs_status ON runs (status);
CREATE TABLE decisions (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    run_id TEXT NOT NULL,
    category TEXT NOT NULL,
    timestamp REAL NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX decisions_run ON decisions (run_id);
"""

_UPDATABLE_FIELDS = {"status", "session_id", "outcome", "metadata", "agent_id"}


class LedgerError(RuntimeError):
    """Raised when the run ledger cannot be read or written."""


class RunNotFoundError(LedgerError):
    """Raised when a run id is not in the ledger."""


class RunStateConflictError(LedgerError):
    """Raised when a run is not in the status a writer expected."""

    def __init__(self, run_id: str, actual: str, expected: Iterable[str]) -> None:
        expected_list = sorted(expected)
        super().__init__(
            f"Run {run_id} is '{actual}', expected one of {', '.join(expected_list) or '-'}."
        )
        self.run_id = run_id
        self.actual = actual
        self.expected = expected_list


class ActiveRunExistsError(LedgerError):
    """Raised when an issue already has a pending or running run."""

    def __init__(self, issue_id: str, run_id: str) -> None:
        super().__init__(f"Issue {issue_id} already has an active run: {run_id}")
        self.issue_id = issue_id
        self.run_id = run_id


def _duration_ms(run: Run) -> float | None:
    if run.outcome is None:
        return None
    value = run.outcome.metrics.get("duration_ms")
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)


class RunLedger:
    """Append-only run and decision log with a rebuildable SQLite index.

    ``runs.jsonl`` receives a full snapshot of a run on every mutation and
    ``decisions.jsonl`` one line per decision. Those two files are the source
    of truth; ``index.db`` is dropped and replayed from them on open and by
    :meth:`rebuild_index`.
    """

    def __init__(self, data_dir: Path, *, clock: Clock = time.time) -> None:
        self.data_dir = data_dir.resolve()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.runs_path = self.data_dir / "runs.jsonl"
        self.decisions_path = self.data_dir / "decisions.jsonl"
        self.index_path = self.data_dir / "index.db"
        self.clock = clock
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._run_seq = 0
        self._decision_seq = 0
        self.rebuild_index()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -- log files -----------------------------------------------------

    @staticmethod
    def _read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
        if not path.exists():
            return
        with path.open("r", encoding="utf-8") as handle:
            for line_number, raw_line in enumerate(handle, start=1):
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("skipping unreadable line %d in %s", line_number, path.name)
                    continue
                if isinstance(payload, dict):
                    yield payload

    @staticmethod
    def _terminate_torn_line(path: Path) -> None:
        # a crash mid-append leaves a partial last line; keep the next record off it
        if not path.exists() or path.stat().st_size == 0:
            return
        with path.open("rb+") as handle:
            handle.seek(-1, os.SEEK_END)
            if handle.read(1) != b"\n":
                handle.seek(0, os.SEEK_END)
                handle.write(b"\n")

    @staticmethod
    def _append_jsonl(path: Path, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(serialized + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as exc:
            raise LedgerError(f"Failed to append to {path.name}: {exc}") from exc

    # -- index -----------------------------------------------------------

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise LedgerError("Ledger index is closed.")
        return self._conn

    def rebuild_index(self) -> None:
        """Drop the index and replay both logs into a fresh one."""
        with self._lock:
            self.close()
            for suffix in ("", "-journal", "-wal", "-shm"):
                try:
                    Path(f"{self.index_path}{suffix}").unlink()
                except FileNotFoundError:
                    pass
            try:
                conn = sqlite3.connect(self.index_path, check_same_thread=False)
                conn.executescript(_SCHEMA)
            except sqlite3.Error as exc:
                raise LedgerError(f"Failed to create ledger index: {exc}") from exc
            self._conn = conn
            try:
                self._terminate_torn_line(self.runs_path)
                self._terminate_torn_line(self.decisions_path)
            except OSError as exc:
                raise LedgerError(f"Failed to repair ledger logs: {exc}") from exc
            self._run_seq = 0
            self._decision_seq = 0

            run_count = 0
            for payload in self._read_jsonl(self.runs_path):
                try:
                    run = Run.from_dict(payload)
                except (KeyError, TypeError, ValueError):
                    logger.warning("skipping malformed run snapshot: %s", str(payload)[:200])
                    continue
                self._index_run(run)
                run_count += 1
            decision_count = 0
            for payload in self._read_jsonl(self.decisions_path):
                try:
                    entry = DecisionEntry.from_dict(payload)
                except (KeyError, TypeError, ValueError):
                    logger.warning("skipping malformed decision: %s", str(payload)[:200])
                    continue
                self._index_decision(entry)
                decision_count += 1
            conn.commit()
            logger.debug(
                "ledger index rebuilt from %d run snapshots and %d decisions",
                run_count,
                decision_count,
            )

    def _index_run(self, run: Run) -> None:
        conn = self._connection()
        existing = conn.execute("SELECT seq FROM runs WHERE id = ?", (run.id,)).fetchone()
        if existing is None:
            self._run_seq += 1
            seq = self._run_seq
        else:
            seq = int(existing[0])
        conn.execute(
            """
            INSERT OR REPLACE INTO runs (
                id, seq, issue_id, agent_id, policy_name, phase, status,
                created_at, updated_at, completed_at, duration_ms, payload
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.id,
                seq,
                run.issue_id,
                run.agent_id,
                run.policy_name,
                run.phase,
                run.status,
                run.created_at,
                run.updated_at,
                run.completed_at,
                _duration_ms(run),
                json.dumps(run.to_dict(), ensure_ascii=False),
            ),
        )

    def _index_decision(self, entry: DecisionEntry) -> None:
        self._decision_seq += 1
        self._connection().execute(
            """
            INSERT OR REPLACE INTO decisions (id, seq, run_id, category, timestamp, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                self._decision_seq,
                entry.run_id,
                entry.category,
                entry.timestamp,
                json.dumps(entry.to_dict(), ensure_ascii=False),
            ),
        )

    def _persist_run(self, run: Run) -> None:
        self._append_jsonl(self.runs_path, run.to_dict())
        try:
            self._index_run(run)
            self._connection().commit()
        except sqlite3.Error as exc:
            raise LedgerError(f"Failed to index run {run.id}: {exc}") from exc

    # -- runs --------------------------------------------------------------

    def create_run(
        self,
        *,
        run_id: str,
        issue_id: str,
        agent_id: str,
        policy_name: str,
        phase: str,
        metadata: dict[str, Any] | None = None,
    ) -> Run:
        with self._lock:
            if self.get_run(run_id) is not None:
                raise LedgerError(f"Run already exists: {run_id}")
            active = self.active_run_for_issue(issue_id)
            if active is not None:
                raise ActiveRunExistsError(issue_id, active.id)
            now = self.clock()
            run = Run(
                id=run_id,
                issue_id=issue_id,
                agent_id=agent_id,
                policy_name=policy_name,
                phase=phase,
                status="pending",
                created_at=now,
                updated_at=now,
                metadata=dict(metadata or {}),
            )
            self._persist_run(run)
            return run

    def get_run(self, run_id: str) -> Run | None:
        with self._lock:
            row = (
                self._connection()
                .execute("SELECT payload FROM runs WHERE id = ?", (run_id,))
                .fetchone()
            )
        if row is None:
            return None
        return Run.from_dict(json.loads(row[0]))

    def query_runs(
        self,
        *,
        issue_id: str | None = None,
        agent_id: str | None = None,
        status: RunStatus | Iterable[str] | None = None,
        phase: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Run]:
        """Runs matching every given filter, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if issue_id is not None:
            clauses.append("issue_id = ?")
            params.append(issue_id)
        if agent_id is not None:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if phase is not None:
            clauses.append("phase = ?")
            params.append(phase)
        if status is not None:
            statuses = [status] if isinstance(status, str) else list(status)
            unknown = set(statuses) - RUN_STATUSES
            if unknown:
                raise LedgerError(f"Unknown run status: {', '.join(sorted(unknown))}")
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        sql = "SELECT payload FROM runs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, seq DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(int(offset))
        with self._lock:
            rows = self._connection().execute(sql, params).fetchall()
        return [Run.from_dict(json.loads(row[0])) for row in rows]

    def active_run_for_issue(self, issue_id: str) -> Run | None:
        runs = self.query_runs(issue_id=issue_id, status=ACTIVE_STATUSES, limit=1)
        return runs[0] if runs else None

    def runs_with_status(self, status: RunStatus) -> list[Run]:
        """Runs in ``status``, oldest first."""
        return list(reversed(self.query_runs(status=status)))

    def update_run(
        self,
        run_id: str,
        *,
        expected: RunStatus | Iterable[str] | None = None,
        **changes: Any,
    ) -> Run:
        """Compare-and-swap update of a run.

        ``expected`` is the set of statuses the caller believes the run is
        in; a mismatch raises :class:`RunStateConflictError` and nothing is
        written. Terminal runs are never updated, and an outcome can only be
        attached once.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise LedgerError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self.get_run(run_id)
            if current is None:
                raise RunNotFoundError(f"Run not found: {run_id}")
            if expected is not None:
                allowed = {expected} if isinstance(expected, str) else set(expected)
                if current.status not in allowed:
                    raise RunStateConflictError(run_id, current.status, allowed)
            if current.status in TERMINAL_STATUSES:
                raise RunStateConflictError(run_id, current.status, ACTIVE_STATUSES)

            new_status = changes.get("status", current.status)
            if new_status != current.status and new_status not in RUN_TRANSITIONS[current.status]:
                sources = {
                    source for source, targets in RUN_TRANSITIONS.items() if new_status in targets
                }
                raise RunStateConflictError(run_id, current.status, sources)
            outcome = changes.get("outcome")
            if outcome is not None and not isinstance(outcome, RunOutcome):
                raise LedgerError("outcome must be a RunOutcome.")
            if outcome is not None and current.outcome is not None:
                raise LedgerError(f"Run {run_id} already has an outcome.")

            now = self.clock()
            if "metadata" in changes:
                changes["metadata"] = {**current.metadata, **dict(changes["metadata"] or {})}
            updated = replace(current, updated_at=now, **changes)
            if new_status in TERMINAL_STATUSES:
                updated = replace(updated, completed_at=now)
            self._persist_run(updated)
            return updated

    # -- decisions -------------------------------------------------------

    def log_decision(
        self,
        run_id: str,
        category: str,
        decision: str,
        reasoning: str,
        metadata: dict[str, Any] | None = None,
    ) -> DecisionEntry:
        entry = DecisionEntry(
            id=new_decision_id(),
            run_id=run_id,
            category=category,
            decision=decision,
            reasoning=reasoning,
            timestamp=self.clock(),
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._append_jsonl(self.decisions_path, entry.to_dict())
            try:
                self._index_decision(entry)
                self._connection().commit()
            except sqlite3.Error as exc:
                raise LedgerError(f"Failed to index decision {entry.id}: {exc}") from exc
        return entry

    def get_decisions(
        self, run_id: str | None = None, *, category: str | None = None
    ) -> list[DecisionEntry]:
        """Decisions in the order they were logged."""
        clauses: list[str] = []
        params: list[Any] = []
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if category is not None:
            clauses.append("category = ?")
            params.append(category)
        sql = "SELECT payload FROM decisions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq ASC"
        with self._lock:
            rows = self._connection().execute(sql, params).fetchall()
        return [DecisionEntry.from_dict(json.loads(row[0])) for row in rows]

    # -- stats -----------------------------------------------------------

    def duration_stats(
        self,
        *,
        issue_id: str | None = None,
        phase: str | None = None,
        agent_id: str | None = None,
    ) -> dict[str, float | int]:
        clauses = ["duration_ms IS NOT NULL"]
        params: list[Any] = []
        for column, value in (("issue_id", issue_id), ("phase", phase), ("agent_id", agent_id)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        sql = (
            "SELECT COUNT(*), COALESCE(SUM(duration_ms), 0), MIN(duration_ms), MAX(duration_ms) "
            "FROM runs WHERE " + " AND ".join(clauses)
        )
        with self._lock:
            count, total, minimum, maximum = self._connection().execute(sql, params).fetchone()
        count = int(count)
        return {
            "count": count,
            "total_ms": float(total),
            "average_ms": float(total) / count if count else 0.0,
            "min_ms": float(minimum) if minimum is not None else 0.0,
            "max_ms": float(maximum) if maximum is not None else 0.0,
        }
