import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from shepherd.cli import cli
from shepherd.config import load_config, save_config
from shepherd.issues import InMemoryIssueStore, Issue
from shepherd.ledger import RunLedger
from shepherd.providers import (
    ExecutionProvider,
    ExecutionResult,
    MessageHandle,
    SessionConfig,
    SessionHandle,
    SessionMessage,
)


class FakeProvider(ExecutionProvider):
    name = "fake"

    def __init__(self) -> None:
        self.aborted: list[str] = []

    async def create_session(self, config: SessionConfig) -> SessionHandle:
        return SessionHandle(id="ses-1", title=config.title, created_at=0.0)

    async def send_instruction(self, session_id: str, instruction: str) -> MessageHandle:
        return MessageHandle(id="msg-1", session_id=session_id, created_at=0.0)

    async def await_completion(
        self, session_id: str, message_id: str, timeout: float
    ) -> ExecutionResult:
        return ExecutionResult(session_id, message_id, success=True, summary="planned")

    async def messages_since(self, session_id: str, since: float) -> list[SessionMessage]:
        return []

    async def abort(self, session_id: str) -> None:
        self.aborted.append(session_id)


@pytest.fixture(autouse=True)
def _reset_shepherd_logger():
    yield
    logger = logging.getLogger("shepherd")
    logger.handlers.clear()
    logger.propagate = True


def _init(runner: CliRunner, repo: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(repo)
    result = runner.invoke(cli, ["init"])
    assert result.exit_code == 0, result.output
    config_path = repo / "shepherd.toml"
    config = load_config(config_path)
    config.logging.level = "WARNING"
    save_config(config_path, config)


def _patch_runtime(
    monkeypatch: pytest.MonkeyPatch, store: InMemoryIssueStore, provider: FakeProvider
) -> None:
    monkeypatch.setattr("shepherd.cli._build_issue_store", lambda config, repo_root: store)
    monkeypatch.setattr("shepherd.cli._build_provider", lambda config, repo_root: provider)


def test_init_writes_config_and_templates(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    monkeypatch.chdir(tmp_path)

    result = runner.invoke(cli, ["init"])

    assert result.exit_code == 0, result.output
    assert "Initialized shepherd in" in result.output
    assert (tmp_path / "shepherd.toml").exists()
    assert (tmp_path / ".shepherd" / "policies.toml").exists()
    assert (tmp_path / ".shepherd" / "agents.toml").exists()

    custom = "# edited by hand\n"
    (tmp_path / ".shepherd" / "policies.toml").write_text(custom, encoding="utf-8")
    again = runner.invoke(cli, ["init"])

    assert again.exit_code == 0, again.output
    assert (tmp_path / ".shepherd" / "policies.toml").read_text(encoding="utf-8") == custom


def test_policies_and_agents_listing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init(runner, tmp_path, monkeypatch)

    policies = runner.invoke(cli, ["policies"])
    agents = runner.invoke(cli, ["agents"])

    assert policies.exit_code == 0, policies.output
    assert "* default: plan -> implement -> test" in policies.output
    assert agents.exit_code == 0, agents.output
    assert "build" in agents.output
    assert "plan" in agents.output


def test_work_once_then_inspect_ledger(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init(runner, tmp_path, monkeypatch)
    store = InMemoryIssueStore([Issue(id="bd-1", title="Add login")])
    _patch_runtime(monkeypatch, store, FakeProvider())

    work = runner.invoke(cli, ["work", "--once"])

    assert work.exit_code == 0, work.output
    results = json.loads(work.stdout)
    assert [(r["action"], r["transition"]) for r in results] == [("completed", "advance")]
    assert "shepherd-phase:implement" in store.get_issue("bd-1").labels
    run_id = results[0]["run_id"]

    status = runner.invoke(cli, ["status"])
    runs = json.loads(status.stdout)
    assert [(run["id"], run["status"], run["agent_id"]) for run in runs] == [
        (run_id, "completed", "plan")
    ]
    assert json.loads(runner.invoke(cli, ["status", "--status", "failed"]).stdout) == []

    decisions = json.loads(runner.invoke(cli, ["decisions", run_id]).stdout)
    assert [entry["category"] for entry in decisions] == ["agent-selection", "phase-transition"]

    stats = json.loads(runner.invoke(cli, ["stats", "--issue", "bd-1"]).stdout)
    assert stats["count"] == 1

    rebuilt = runner.invoke(cli, ["rebuild-index"])
    assert rebuilt.exit_code == 0, rebuilt.output
    assert "Rebuilt index with 1 run(s)." in rebuilt.output


def test_recover_fails_orphaned_runs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init(runner, tmp_path, monkeypatch)
    ledger = RunLedger(tmp_path / ".shepherd")
    ledger.create_run(
        run_id="run-orphan", issue_id="bd-7", agent_id="build", policy_name="default",
        phase="plan",
    )
    ledger.close()
    store = InMemoryIssueStore([Issue(id="bd-7", title="Orphan", status="in_progress")])
    _patch_runtime(monkeypatch, store, FakeProvider())

    result = runner.invoke(cli, ["recover"])

    assert result.exit_code == 0, result.output
    assert "Recovered 1 run(s)." in result.output
    assert "run-orphan" in result.output
    assert store.get_issue("bd-7").status == "open"
    runs = json.loads(runner.invoke(cli, ["status", "--issue", "bd-7"]).stdout)
    assert runs[0]["status"] == "failed"
    assert runs[0]["outcome"]["error"] == "interrupted by restart"


def test_invalid_policy_file_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    _init(runner, tmp_path, monkeypatch)
    (tmp_path / ".shepherd" / "policies.toml").write_text("[policies\n", encoding="utf-8")

    result = runner.invoke(cli, ["work", "--once"])

    assert result.exit_code != 0
    assert "Invalid policy file" in result.output


def test_invalid_config_file_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = CliRunner()
    monkeypatch.chdir(tmp_path)
    (tmp_path / "shepherd.toml").write_text(
        '[workflow]\ninvalid_label_strategy = "warn"\n', encoding="utf-8"
    )

    for command in (["work", "--once"], ["status"], ["init"]):
        result = runner.invoke(cli, command)

        assert result.exit_code == 1, result.output
        assert "invalid_label_strategy" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)
