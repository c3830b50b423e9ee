import json
from pathlib import Path

import pytest

from shepherd.ledger import (
    ActiveRunExistsError,
    LedgerError,
    RunLedger,
    RunNotFoundError,
    RunOutcome,
    RunStateConflictError,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _create(ledger: RunLedger, run_id: str, issue_id: str = "i-1", **kwargs):
    return ledger.create_run(
        run_id=run_id,
        issue_id=issue_id,
        agent_id=kwargs.get("agent_id", "build"),
        policy_name="default",
        phase=kwargs.get("phase", "plan"),
    )


def test_create_and_update_run_appends_snapshots(tmp_path: Path) -> None:
    clock = FakeClock()
    ledger = RunLedger(tmp_path, clock=clock)

    run = _create(ledger, "run-1")
    clock.now += 5
    ledger.update_run("run-1", expected="pending", status="running", session_id="ses-1")
    clock.now += 5
    done = ledger.update_run(
        "run-1",
        expected="running",
        status="completed",
        outcome=RunOutcome(success=True, summary="ok", metrics={"duration_ms": 10.0}),
    )

    assert run.status == "pending"
    assert done.status == "completed"
    assert done.session_id == "ses-1"
    assert done.completed_at == 1_010.0
    assert done.outcome is not None and done.outcome.summary == "ok"

    lines = (tmp_path / "runs.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["status"] for line in lines] == ["pending", "running", "completed"]


def test_at_most_one_active_run_per_issue(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    _create(ledger, "run-1")

    with pytest.raises(ActiveRunExistsError):
        _create(ledger, "run-2")

    ledger.update_run("run-1", expected="pending", status="failed")
    _create(ledger, "run-2")
    assert ledger.active_run_for_issue("i-1").id == "run-2"


def test_update_run_is_compare_and_swap(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    _create(ledger, "run-1")

    with pytest.raises(RunStateConflictError) as excinfo:
        ledger.update_run("run-1", expected="running", status="failed")

    assert excinfo.value.actual == "pending"
    assert ledger.get_run("run-1").status == "pending"


def test_terminal_runs_are_never_resurrected(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    _create(ledger, "run-1")
    ledger.update_run("run-1", status="running")
    ledger.update_run("run-1", status="failed", outcome=RunOutcome.failure("boom"))

    with pytest.raises(RunStateConflictError):
        ledger.update_run("run-1", status="running")
    with pytest.raises(RunStateConflictError):
        ledger.update_run("run-1", expected="failed", status="completed")


def test_invalid_status_move_is_rejected(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    _create(ledger, "run-1")

    with pytest.raises(RunStateConflictError):
        ledger.update_run("run-1", status="completed")


def test_unknown_run_and_field_errors(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    _create(ledger, "run-1")

    with pytest.raises(RunNotFoundError):
        ledger.update_run("run-missing", status="running")
    with pytest.raises(LedgerError, match="cannot be updated"):
        ledger.update_run("run-1", issue_id="other")


def test_index_is_rebuilt_from_logs(tmp_path: Path) -> None:
    clock = FakeClock()
    ledger = RunLedger(tmp_path, clock=clock)
    _create(ledger, "run-1")
    ledger.update_run("run-1", status="running", session_id="ses-1")
    ledger.log_decision("run-1", "agent-selection", "build", "best match")
    ledger.close()

    (tmp_path / "index.db").unlink()
    with (tmp_path / "runs.jsonl").open("a", encoding="utf-8") as handle:
        handle.write('{"id": "run-2", "issue_id"')

    reopened = RunLedger(tmp_path, clock=clock)

    run = reopened.get_run("run-1")
    assert run is not None
    assert run.status == "running"
    assert run.session_id == "ses-1"
    assert reopened.get_run("run-2") is None
    assert [entry.decision for entry in reopened.get_decisions("run-1")] == ["build"]


def test_query_runs_filters_and_orders_newest_first(tmp_path: Path) -> None:
    clock = FakeClock()
    ledger = RunLedger(tmp_path, clock=clock)
    _create(ledger, "run-a", issue_id="i-1")
    ledger.update_run("run-a", status="failed")
    clock.now += 1
    _create(ledger, "run-b", issue_id="i-1", phase="implement")
    clock.now += 1
    _create(ledger, "run-c", issue_id="i-2", agent_id="plan")

    assert [run.id for run in ledger.query_runs()] == ["run-c", "run-b", "run-a"]
    assert [run.id for run in ledger.query_runs(issue_id="i-1")] == ["run-b", "run-a"]
    assert [run.id for run in ledger.query_runs(agent_id="plan")] == ["run-c"]
    assert [run.id for run in ledger.query_runs(status="failed")] == ["run-a"]
    assert [run.id for run in ledger.query_runs(phase="implement")] == ["run-b"]
    assert [run.id for run in ledger.query_runs(limit=1, offset=1)] == ["run-b"]
    assert [run.id for run in ledger.runs_with_status("pending")] == ["run-b", "run-c"]


def test_decisions_are_append_only_in_order(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    ledger.log_decision("run-1", "agent-selection", "build", "first")
    ledger.log_decision("run-2", "no-agent", "none", "other run")
    ledger.log_decision("run-1", "phase-transition", "advance", "second")

    entries = ledger.get_decisions("run-1")

    assert [entry.reasoning for entry in entries] == ["first", "second"]
    assert entries[0].id.startswith("dec-")
    assert len(ledger.get_decisions()) == 3
    assert [e.run_id for e in ledger.get_decisions(category="no-agent")] == ["run-2"]


def test_duration_stats(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    for index, duration in enumerate([100.0, 300.0]):
        run_id = f"run-{index}"
        _create(ledger, run_id, issue_id=f"i-{index}")
        ledger.update_run(run_id, status="running")
        ledger.update_run(
            run_id,
            status="completed",
            outcome=RunOutcome(success=True, metrics={"duration_ms": duration}),
        )

    stats = ledger.duration_stats()

    assert stats == {
        "count": 2,
        "total_ms": 400.0,
        "average_ms": 200.0,
        "min_ms": 100.0,
        "max_ms": 300.0,
    }
    assert ledger.duration_stats(issue_id="i-1")["count"] == 1
    assert ledger.duration_stats(phase="review")["count"] == 0
