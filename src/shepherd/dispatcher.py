from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from shepherd.agents import AgentDescriptor, AgentRegistry, SelectionCriteria
from shepherd.config import ShepherdConfig
from shepherd.issues import labels
from shepherd.issues.base import Issue, IssueStore, IssueStoreError
from shepherd.ledger import (
    ERROR_INTERRUPTED,
    ActiveRunExistsError,
    LedgerError,
    Run,
    RunLedger,
    RunOutcome,
    RunStateConflictError,
    new_run_id,
)
from shepherd.policy import (
    REASON_APPROVAL,
    PhaseConfig,
    Policy,
    PolicyError,
    PolicyRegistry,
    Transition,
)
from shepherd.providers.base import (
    ExecutionProvider,
    ProviderError,
    ProviderTimeoutError,
    SessionConfig,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchResult:
    issue_id: str
    action: str
    run_id: str | None = None
    transition: str | None = None
    message: str = ""


def build_instructions(issue: Issue, policy: Policy, phase: PhaseConfig) -> str:
    capabilities = "\n".join(f"- {cap}" for cap in phase.capabilities) or "- none specified"
    lines = [
        f"# {issue.title}",
        "",
        f"- Issue: {issue.id}",
        f"- Type: {issue.issue_type}",
        f"- Priority: {issue.priority}",
        f"- Workflow: {policy.name}",
        f"- Phase: {phase.name}",
        "",
        "## Description",
        issue.description.strip() or "(no description)",
        "",
        "## Phase",
        phase.description.strip() or f"Complete the {phase.name} phase for this issue.",
        "",
        "## Required capabilities",
        capabilities,
        "",
        "## Reporting",
        "When done, end your reply with one line of JSON:",
        '{"success": true, "summary": "<what you did>", "requires_approval": false}',
        "Set success to false if you could not finish the phase.",
    ]
    if phase.requires_approval:
        lines.extend(
            [
                "",
                "This phase requires human approval before the workflow continues. "
                'Set "requires_approval" to true.',
            ]
        )
    return "\n".join(lines) + "\n"


class Dispatcher:
    """Picks ready issues, runs one agent session per issue and applies the outcome."""

    def __init__(
        self,
        issue_store: IssueStore,
        provider: ExecutionProvider,
        policies: PolicyRegistry,
        agents: AgentRegistry,
        ledger: RunLedger,
        config: ShepherdConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issues = issue_store
        self.provider = provider
        self.policies = policies
        self.agents = agents
        self.ledger = ledger
        self.config = config
        self.clock = clock
        self._slots = asyncio.Semaphore(max(1, int(config.worker.max_concurrent_runs)))
        self._in_flight: set[str] = set()
        self._stopping = asyncio.Event()

    # -- loop ----------------------------------------------------------

    async def run_forever(self, interval: float | None = None) -> None:
        delay = self.config.worker.poll_interval_seconds if interval is None else interval
        logger.info("dispatcher started (interval=%ss)", delay)
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                continue
        logger.info("dispatcher stopped")

    def stop(self) -> None:
        self._stopping.set()

    def recover_pending_runs(self) -> list[str]:
        """Fail ``pending`` runs a previous dispatcher never started and reopen their issues.

        Call before the first tick; an in-flight pass of this dispatcher
        would otherwise lose its run.
        """
        recovered: list[str] = []
        for run in self.ledger.runs_with_status("pending"):
            if run.issue_id in self._in_flight:
                continue
            try:
                self.ledger.update_run(
                    run.id,
                    expected="pending",
                    status="failed",
                    outcome=RunOutcome.failure(ERROR_INTERRUPTED),
                )
            except RunStateConflictError:
                continue
            try:
                self.issues.update(run.issue_id, status="open")
            except IssueStoreError:
                logger.exception("failed to reopen issue %s", run.issue_id)
            self.ledger.log_decision(
                run.id,
                "recovery",
                "failed",
                "Run was pending when the previous process stopped.",
                {"issue_id": run.issue_id, "phase": run.phase},
            )
            recovered.append(run.id)
        if recovered:
            logger.info("recovered %d pending run(s)", len(recovered))
        return recovered

    async def tick(self) -> list[DispatchResult]:
        try:
            ready = self.issues.list_ready()
        except IssueStoreError:
            logger.exception("failed to list ready issues")
            return []

        eligible: list[Issue] = []
        for issue in ready:
            if labels.is_excluded(issue.labels):
                logger.debug("skipping excluded issue %s", issue.id)
                continue
            if issue.id in self._in_flight:
                continue
            eligible.append(issue)

        tasks = [asyncio.create_task(self._guarded(issue)) for issue in eligible]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def _guarded(self, issue: Issue) -> DispatchResult:
        if issue.id in self._in_flight:
            return DispatchResult(issue.id, "skipped", message="already in flight")
        self._in_flight.add(issue.id)
        try:
            async with self._slots:
                return await self.process_issue(issue)
        except Exception as exc:
            logger.exception("processing issue %s failed", issue.id)
            return DispatchResult(issue.id, "error", message=str(exc))
        finally:
            self._in_flight.discard(issue.id)

    # -- one issue ---------------------------------------------------------

    def _resolve_phase(self, issue: Issue, policy: Policy) -> str:
        sequence = self.policies.phase_sequence(policy.name)
        labelled = labels.current_phase(issue.labels)
        if labelled in sequence:
            return labelled
        return sequence[0]

    async def process_issue(self, issue: Issue) -> DispatchResult:
        try:
            policy = self.policies.match_policy(issue, self.config.workflow.invalid_label_strategy)
            phase_name = self._resolve_phase(issue, policy)
            phase = self.policies.phase_config(policy.name, phase_name)
        except PolicyError as exc:
            logger.error("cannot resolve workflow for issue %s: %s", issue.id, exc)
            self.ledger.log_decision(
                "",
                "error",
                "policy-resolution-failed",
                str(exc),
                {"issue_id": issue.id},
            )
            return DispatchResult(issue.id, "error", message=str(exc))

        retry_count = labels.retry_count(issue.labels)
        if retry_count > phase.retry_limit:
            return self._block_exhausted(issue, policy, phase, retry_count)

        agent = self.agents.select(
            phase.capabilities, SelectionCriteria(tags=(issue.issue_type,))
        )
        if agent is None:
            logger.warning(
                "no agent for issue %s phase %s (needs %s)",
                issue.id,
                phase.name,
                ", ".join(phase.capabilities) or "-",
            )
            self.ledger.log_decision(
                "",
                "no-agent",
                "no-agent-available",
                f"No active agent covers: {', '.join(phase.capabilities) or '-'}",
                {"issue_id": issue.id, "policy": policy.name, "phase": phase.name},
            )
            return DispatchResult(issue.id, "no-agent")

        try:
            run = self.ledger.create_run(
                run_id=new_run_id(),
                issue_id=issue.id,
                agent_id=agent.id,
                policy_name=policy.name,
                phase=phase.name,
                metadata={"attempt": retry_count + 1, "retry_count": retry_count},
            )
        except ActiveRunExistsError as exc:
            logger.info("issue %s already has active run %s", issue.id, exc.run_id)
            return DispatchResult(issue.id, "skipped", message=str(exc))
        self.ledger.log_decision(
            run.id,
            "agent-selection",
            agent.id,
            f"Selected for capabilities: {', '.join(phase.capabilities) or '-'}",
            {"issue_id": issue.id, "policy": policy.name, "phase": phase.name},
        )

        try:
            self.issues.update(issue.id, status="in_progress", phase_label=phase.name)
        except IssueStoreError as exc:
            self.ledger.update_run(
                run.id,
                expected="pending",
                status="failed",
                outcome=RunOutcome.failure(f"issue store update failed: {exc}"),
            )
            raise
        logger.info(
            "run %s: issue %s phase %s -> agent %s", run.id, issue.id, phase.name, agent.id
        )

        outcome = await self._execute(run, issue, policy, phase, agent)
        finished = self._finalize(run, outcome)
        if finished is None:
            return DispatchResult(issue.id, "superseded", run_id=run.id)

        transition = self.policies.transition(policy.name, phase.name, outcome, retry_count)
        self._apply_transition(issue.id, transition, retry_count)
        self.ledger.log_decision(
            run.id,
            "phase-transition",
            transition.kind,
            transition.reason,
            {
                "issue_id": issue.id,
                "phase": phase.name,
                "next_phase": transition.next_phase,
                "retry_count": retry_count,
                "success": outcome.success,
            },
        )
        return DispatchResult(
            issue.id,
            "completed" if outcome.success else "failed",
            run_id=run.id,
            transition=transition.kind,
            message=transition.reason,
        )

    async def _execute(
        self,
        run: Run,
        issue: Issue,
        policy: Policy,
        phase: PhaseConfig,
        agent: AgentDescriptor,
    ) -> RunOutcome:
        started_at = self.clock()
        session_id: str | None = None
        try:
            provider_id, model_id = agent.provider_id, agent.model_id
            if phase.model and "/" in phase.model:
                provider_id, model_id = phase.model.split("/", 1)
            elif phase.model:
                model_id = phase.model
            session = await self.provider.create_session(
                SessionConfig(
                    title=f"{issue.id}: {issue.title}",
                    agent=agent.id,
                    provider_id=provider_id,
                    model_id=model_id,
                )
            )
            session_id = session.id
            message = await self.provider.send_instruction(
                session.id, build_instructions(issue, policy, phase)
            )
            self.ledger.update_run(
                run.id, expected="pending", status="running", session_id=session.id
            )
            result = await self.provider.await_completion(
                session.id, message.id, phase.timeout_seconds
            )
        except RunStateConflictError:
            if session_id is not None:
                await self._abort_quietly(session_id)
            raise
        except ProviderTimeoutError as exc:
            logger.warning("run %s timed out: %s", run.id, exc)
            if session_id is not None:
                await self._abort_quietly(session_id)
            return RunOutcome.failure(str(exc), metrics=self._metrics(started_at))
        except (ProviderError, LedgerError) as exc:
            logger.warning("run %s failed: %s", run.id, exc)
            return RunOutcome.failure(str(exc), metrics=self._metrics(started_at))
        except Exception as exc:
            logger.exception("run %s raised while executing", run.id)
            return RunOutcome.failure(
                f"{type(exc).__name__}: {exc}", metrics=self._metrics(started_at)
            )

        metrics: dict[str, Any] = {**self._metrics(started_at), **result.metrics}
        return RunOutcome(
            success=result.success,
            summary=result.summary,
            requires_approval=result.requires_approval,
            metrics=metrics,
            error=None if result.success else (result.summary or "agent reported failure"),
        )

    def _metrics(self, started_at: float) -> dict[str, Any]:
        finished_at = self.clock()
        return {
            "start_time": started_at,
            "end_time": finished_at,
            "duration_ms": round((finished_at - started_at) * 1000.0, 3),
        }

    async def _abort_quietly(self, session_id: str) -> None:
        try:
            await self.provider.abort(session_id)
        except ProviderError:
            logger.warning("failed to abort session %s", session_id, exc_info=True)

    def _finalize(self, run: Run, outcome: RunOutcome) -> Run | None:
        status = "completed" if outcome.success else "failed"
        try:
            return self.ledger.update_run(
                run.id, expected=("pending", "running"), status=status, outcome=outcome
            )
        except RunStateConflictError as exc:
            logger.info("run %s was finalized elsewhere (%s)", run.id, exc.actual)
            self.ledger.log_decision(
                run.id,
                "superseded",
                exc.actual,
                "Run was terminated by the supervisor before the agent finished.",
                {"issue_id": run.issue_id, "outcome": outcome.to_dict()},
            )
            return None

    def _block_exhausted(
        self, issue: Issue, policy: Policy, phase: PhaseConfig, retry_count: int
    ) -> DispatchResult:
        reason = f"retry budget exhausted ({retry_count}/{phase.retry_limit})"
        logger.warning("blocking issue %s: %s", issue.id, reason)
        self.issues.update(
            issue.id,
            status="blocked",
            add_labels=[labels.hitl_label(labels.HITL_RETRY_LIMIT)],
            notes=f"Blocked by shepherd: {reason} in phase '{phase.name}'.",
        )
        self.ledger.log_decision(
            "",
            "phase-transition",
            "block",
            reason,
            {"issue_id": issue.id, "policy": policy.name, "phase": phase.name},
        )
        return DispatchResult(issue.id, "blocked", transition="block", message=reason)

    def _apply_transition(self, issue_id: str, transition: Transition, retry_count: int) -> None:
        if transition.kind == "advance":
            self.issues.update(
                issue_id,
                status="open",
                phase_label=transition.next_phase,
                remove_prefixes=[labels.RETRY_PREFIX, labels.HITL_PREFIX],
            )
        elif transition.kind == "retry":
            self.issues.update(
                issue_id,
                status="open",
                add_labels=[labels.retry_label(retry_count + 1)],
                remove_prefixes=[labels.RETRY_PREFIX, labels.HITL_PREFIX],
            )
        elif transition.kind == "block":
            if transition.reason == REASON_APPROVAL:
                hitl = labels.HITL_APPROVAL
                note = "Human approval required before the workflow continues."
            else:
                hitl = labels.HITL_RETRY_LIMIT
                note = f"Blocked by shepherd: {transition.reason}."
            self.issues.update(
                issue_id,
                status="blocked",
                add_labels=[labels.hitl_label(hitl)],
                remove_prefixes=[labels.HITL_PREFIX],
                notes=note,
            )
        elif transition.kind == "close":
            self.issues.update(
                issue_id,
                status="closed",
                remove_prefixes=[labels.PHASE_PREFIX, labels.RETRY_PREFIX, labels.HITL_PREFIX],
            )
        logger.info("issue %s: %s (%s)", issue_id, transition.kind, transition.reason)
