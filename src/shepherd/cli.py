from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from dataclasses import asdict, dataclass
from pathlib import Path

import click

from shepherd.agents import AgentRegistry, AgentRegistryError
from shepherd.config import ConfigError, ShepherdConfig, load_config, save_config
from shepherd.dispatcher import Dispatcher
from shepherd.issues import BeadsIssueStore, InMemoryIssueStore, IssueStore
from shepherd.ledger import LedgerError, RunLedger
from shepherd.logs import configure_logging, provider_event_logger
from shepherd.policy import PolicyError, PolicyRegistry
from shepherd.providers import ExecutionProvider, OpenCodeCliProvider
from shepherd.supervisor import Supervisor

DEFAULT_POLICIES_TOML = """\
default_policy = "default"

[policies.default]
description = "Plan, implement and test a change."
issue_types = ["task", "feature", "bug"]
priority = 50
timeout_base_seconds = 300
retry_limit = 2

[[policies.default.phases]]
name = "plan"
capabilities = ["planning"]
timeout_multiplier = 1.0

[[policies.default.phases]]
name = "implement"
capabilities = ["coding"]
timeout_multiplier = 3.0

[[policies.default.phases]]
name = "test"
capabilities = ["testing"]
timeout_multiplier = 2.0
"""

DEFAULT_AGENTS_TOML = """\
[[agents]]
id = "build"
name = "Build agent"
capabilities = ["planning", "coding", "testing"]
priority = 10

[[agents]]
id = "plan"
name = "Planning agent"
capabilities = ["planning"]
priority = 20

[agents.constraints]
read_only = true
"""


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ShepherdConfig
    ledger: RunLedger
    policies: PolicyRegistry
    agents: AgentRegistry
    issues: IssueStore
    provider: ExecutionProvider
    dispatcher: Dispatcher
    supervisor: Supervisor


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_provider(config: ShepherdConfig, repo_root: Path) -> ExecutionProvider:
    return OpenCodeCliProvider(
        binary=config.provider.binary,
        working_directory=_resolve_path(repo_root, config.provider.working_directory),
        event_hook=provider_event_logger(),
    )


def _build_issue_store(config: ShepherdConfig, repo_root: Path) -> IssueStore:
    if config.issues.backend == "memory":
        return InMemoryIssueStore()
    return BeadsIssueStore(binary=config.issues.binary, working_directory=repo_root)


def _read_config(config_path: Path) -> ShepherdConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _open_ledger(config: ShepherdConfig, repo_root: Path) -> RunLedger:
    try:
        return RunLedger(_resolve_path(repo_root, config.state.data_dir))
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = _read_config(config_path)
    configure_logging(config.logging.level, json_output=config.logging.json)
    try:
        policies = PolicyRegistry.from_file(
            _resolve_path(repo_root, config.workflow.policies_file)
        )
        policies.default_stall_threshold_seconds = config.monitor.stall_threshold_seconds
        agents = AgentRegistry.from_file(_resolve_path(repo_root, config.workflow.agents_file))
    except (PolicyError, AgentRegistryError) as exc:
        raise click.ClickException(str(exc)) from exc

    ledger = _open_ledger(config, repo_root)
    issues = _build_issue_store(config, repo_root)
    provider = _build_provider(config, repo_root)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        ledger=ledger,
        policies=policies,
        agents=agents,
        issues=issues,
        provider=provider,
        dispatcher=Dispatcher(issues, provider, policies, agents, ledger, config),
        supervisor=Supervisor(ledger, provider, policies, issues, config),
    )


def _runtime_from_option(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_path(repo_root, config_value))


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _recover(runtime: Runtime) -> list[str]:
    recovered = await runtime.supervisor.resume_interrupted_runs()
    return recovered + runtime.dispatcher.recover_pending_runs()


async def _serve(runtime: Runtime) -> None:
    await _recover(runtime)

    def _stop() -> None:
        runtime.dispatcher.stop()
        runtime.supervisor.stop()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, _stop)
    await asyncio.gather(
        runtime.dispatcher.run_forever(),
        runtime.supervisor.run_forever(),
    )


@click.group()
def cli() -> None:
    """Shepherd CLI."""


@cli.command("init")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def init_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = _read_config(config_path)
    save_config(config_path, config)

    written: list[Path] = []
    for relative, template in (
        (config.workflow.policies_file, DEFAULT_POLICIES_TOML),
        (config.workflow.agents_file, DEFAULT_AGENTS_TOML),
    ):
        path = _resolve_path(repo_root, relative)
        if path.exists():
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(template, encoding="utf-8")
        written.append(path)
    _resolve_path(repo_root, config.state.data_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized shepherd in {repo_root}")
    click.echo(f"Config: {config_path}")
    for path in written:
        click.echo(f"Wrote {path}")


@cli.command("run")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def run_command(config_value: str) -> None:
    """Recover interrupted runs, then dispatch and supervise until stopped."""
    runtime = _runtime_from_option(config_value)
    try:
        asyncio.run(_serve(runtime))
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.ledger.close()


@cli.command("work")
@click.option("--once", is_flag=True, default=False, help="Run a single dispatch tick.")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def work_command(once: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        if once:
            results = asyncio.run(runtime.dispatcher.tick())
            _echo_json([asdict(result) for result in results])
            return
        asyncio.run(runtime.dispatcher.run_forever())
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.ledger.close()


@cli.command("monitor")
@click.option("--once", is_flag=True, default=False, help="Run a single supervision tick.")
@click.option(
    "--recover/--no-recover",
    default=False,
    show_default=True,
    help="Fail runs left active by a previous process before supervising.",
)
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def monitor_command(once: bool, recover: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)

    async def _monitor() -> list[dict]:
        if recover:
            await _recover(runtime)
        if once:
            return [asdict(result) for result in await runtime.supervisor.tick()]
        await runtime.supervisor.run_forever()
        return []

    try:
        results = asyncio.run(_monitor())
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.ledger.close()
    if once:
        _echo_json(results)


@cli.command("recover")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def recover_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        recovered = asyncio.run(_recover(runtime))
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        runtime.ledger.close()
    click.echo(f"Recovered {len(recovered)} run(s).")
    for run_id in recovered:
        click.echo(run_id)


@cli.command("status")
@click.option("--issue", "issue_id", default=None)
@click.option(
    "--status",
    "status",
    type=click.Choice(["pending", "running", "completed", "failed", "blocked"]),
    default=None,
)
@click.option("--limit", type=int, default=20, show_default=True)
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def status_command(
    issue_id: str | None, status: str | None, limit: int, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_path(repo_root, config_value))
    ledger = _open_ledger(config, repo_root)
    try:
        runs = ledger.query_runs(issue_id=issue_id, status=status, limit=limit)
    finally:
        ledger.close()
    _echo_json([run.to_dict() for run in runs])


@cli.command("decisions")
@click.argument("run_id", required=False)
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def decisions_command(run_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_path(repo_root, config_value))
    ledger = _open_ledger(config, repo_root)
    try:
        entries = ledger.get_decisions(run_id)
    finally:
        ledger.close()
    _echo_json([entry.to_dict() for entry in entries])


@cli.command("stats")
@click.option("--issue", "issue_id", default=None)
@click.option("--phase", default=None)
@click.option("--agent", "agent_id", default=None)
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def stats_command(
    issue_id: str | None, phase: str | None, agent_id: str | None, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_path(repo_root, config_value))
    ledger = _open_ledger(config, repo_root)
    try:
        _echo_json(ledger.duration_stats(issue_id=issue_id, phase=phase, agent_id=agent_id))
    finally:
        ledger.close()


@cli.command("rebuild-index")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def rebuild_index_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_path(repo_root, config_value))
    ledger = _open_ledger(config, repo_root)
    try:
        ledger.rebuild_index()
        count = len(ledger.query_runs())
    except LedgerError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        ledger.close()
    click.echo(f"Rebuilt index with {count} run(s).")


@cli.command("agents")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def agents_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_path(repo_root, config_value))
    try:
        registry = AgentRegistry.from_file(_resolve_path(repo_root, config.workflow.agents_file))
    except AgentRegistryError as exc:
        raise click.ClickException(str(exc)) from exc
    for agent in registry.all():
        state = "active" if agent.active else "inactive"
        capabilities = ", ".join(sorted(agent.capabilities))
        click.echo(f"{agent.id:<16} p{agent.priority:<4} {state:<8} {capabilities}")


@cli.command("policies")
@click.option("--config", "config_value", default="shepherd.toml", show_default=True)
def policies_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _read_config(_resolve_path(repo_root, config_value))
    try:
        registry = PolicyRegistry.from_file(
            _resolve_path(repo_root, config.workflow.policies_file)
        )
    except PolicyError as exc:
        raise click.ClickException(str(exc)) from exc
    for name in registry.policy_names():
        marker = "*" if name == registry.default_policy_name else " "
        click.echo(f"{marker} {name}: {' -> '.join(registry.phase_sequence(name))}")
