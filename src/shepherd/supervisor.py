from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from shepherd.config import ShepherdConfig
from shepherd.issues import labels
from shepherd.issues.base import IssueStore, IssueStoreError
from shepherd.ledger import (
    ERROR_INTERRUPTED,
    LedgerError,
    Run,
    RunLedger,
    RunOutcome,
    RunStateConflictError,
)
from shepherd.policy import PolicyError, PolicyRegistry
from shepherd.providers.base import ExecutionProvider, ProviderError

logger = logging.getLogger(__name__)

ERROR_STALLED = "stalled"
ERROR_TIMED_OUT = "timed out"


@dataclass(slots=True)
class SupervisionResult:
    run_id: str
    issue_id: str
    action: str
    reason: str = ""


class Supervisor:
    """Watches running runs for stalls, timeouts, human takeover and approval gates.

    The supervisor only ever writes runs it observed in ``running`` and every
    write is a compare-and-swap on that status, so a dispatcher finishing
    the same run at the same moment wins or loses cleanly.
    """

    def __init__(
        self,
        ledger: RunLedger,
        provider: ExecutionProvider,
        policies: PolicyRegistry,
        issue_store: IssueStore,
        config: ShepherdConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.provider = provider
        self.policies = policies
        self.issues = issue_store
        self.config = config
        self.clock = clock
        self._stopping = asyncio.Event()

    # -- loop ----------------------------------------------------------

    async def run_forever(self, interval: float | None = None) -> None:
        delay = self.config.monitor.poll_interval_seconds if interval is None else interval
        logger.info("supervisor started (interval=%ss)", delay)
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except TimeoutError:
                continue
        logger.info("supervisor stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def tick(self) -> list[SupervisionResult]:
        try:
            running = self.ledger.runs_with_status("running")
        except LedgerError:
            logger.exception("failed to read running runs")
            return []
        results: list[SupervisionResult] = []
        for run in running:
            try:
                result = await self.check_run(run)
            except Exception:
                logger.exception("supervising run %s failed", run.id)
                continue
            if result is not None:
                results.append(result)
        return results

    # -- checks ------------------------------------------------------------

    def _stall_threshold(self, run: Run) -> float:
        try:
            return self.policies.stall_threshold(run.policy_name)
        except PolicyError:
            return self.config.monitor.stall_threshold_seconds

    def _timeout(self, run: Run) -> float | None:
        try:
            base = self.policies.timeout_for(run.policy_name, run.phase)
        except PolicyError:
            return None
        return base * self.config.monitor.timeout_multiplier

    def _phase_requires_approval(self, run: Run) -> bool:
        try:
            return self.policies.phase_config(run.policy_name, run.phase).requires_approval
        except PolicyError:
            return False

    async def _last_activity(self, run: Run) -> float:
        if run.session_id is None:
            return run.updated_at
        try:
            last = await self.provider.last_activity(run.session_id)
        except ProviderError:
            logger.warning("activity check failed for run %s", run.id, exc_info=True)
            return run.updated_at
        return run.updated_at if last is None else last

    async def _human_took_over(self, run: Run) -> bool:
        if run.session_id is None:
            return False
        try:
            messages = await self.provider.messages_since(run.session_id, run.updated_at)
        except ProviderError:
            logger.warning("message check failed for run %s", run.id, exc_info=True)
            return False
        return any(self.provider.is_human_origin(message) for message in messages)

    async def check_run(self, run: Run) -> SupervisionResult | None:
        """Apply the first matching check to a running run."""
        if run.status != "running":
            return None
        now = self.clock()

        threshold = self._stall_threshold(run)
        idle = now - await self._last_activity(run)
        if idle > threshold:
            return await self._terminate(
                run,
                category="stall",
                error=ERROR_STALLED,
                reasoning=f"No session activity for {idle:.1f}s (threshold {threshold:.1f}s).",
            )

        timeout = self._timeout(run)
        elapsed = now - run.created_at
        if timeout is not None and elapsed > timeout:
            return await self._terminate(
                run,
                category="timeout",
                error=ERROR_TIMED_OUT,
                reasoning=f"Run exceeded its {timeout:.1f}s phase timeout ({elapsed:.1f}s).",
            )

        if await self._human_took_over(run):
            return self._block(
                run,
                category="human-takeover",
                hitl=labels.HITL_HUMAN_TAKEOVER,
                reasoning="A human posted in the agent session; handing the issue over.",
            )

        if (run.outcome is not None and run.outcome.requires_approval) or (
            self._phase_requires_approval(run)
        ):
            return self._block(
                run,
                category="approval",
                hitl=labels.HITL_APPROVAL,
                reasoning="Human approval required before proceeding.",
            )
        return None

    # -- remediation -----------------------------------------------------

    async def _terminate(
        self, run: Run, *, category: str, error: str, reasoning: str
    ) -> SupervisionResult | None:
        try:
            self.ledger.update_run(
                run.id,
                expected="running",
                status="failed",
                outcome=RunOutcome.failure(error),
            )
        except RunStateConflictError as exc:
            logger.debug("run %s already moved to %s; leaving it", run.id, exc.actual)
            return None

        logger.warning("run %s %s: %s", run.id, error, reasoning)
        if run.session_id is not None:
            try:
                await self.provider.abort(run.session_id)
            except ProviderError:
                logger.warning("failed to abort session %s", run.session_id, exc_info=True)
        self._reopen_with_retry(run)
        self.ledger.log_decision(
            run.id, category, error, reasoning, {"issue_id": run.issue_id, "phase": run.phase}
        )
        return SupervisionResult(run.id, run.issue_id, category, reasoning)

    def _block(
        self, run: Run, *, category: str, hitl: str, reasoning: str
    ) -> SupervisionResult | None:
        try:
            self.ledger.update_run(run.id, expected="running", status="blocked")
        except RunStateConflictError as exc:
            logger.debug("run %s already moved to %s; leaving it", run.id, exc.actual)
            return None

        logger.info("run %s blocked: %s", run.id, reasoning)
        try:
            self.issues.update(
                run.issue_id,
                status="blocked",
                add_labels=[labels.hitl_label(hitl)],
                remove_prefixes=[labels.HITL_PREFIX],
                notes=f"shepherd: {reasoning}",
            )
        except IssueStoreError:
            logger.exception("failed to block issue %s", run.issue_id)
        self.ledger.log_decision(
            run.id, category, "blocked", reasoning, {"issue_id": run.issue_id, "phase": run.phase}
        )
        return SupervisionResult(run.id, run.issue_id, category, reasoning)

    def _reopen_with_retry(self, run: Run) -> None:
        try:
            current = labels.retry_count(self.issues.get_labels(run.issue_id))
            self.issues.update(
                run.issue_id,
                status="open",
                add_labels=[labels.retry_label(current + 1)],
                remove_prefixes=[labels.RETRY_PREFIX],
            )
        except IssueStoreError:
            logger.exception("failed to reopen issue %s", run.issue_id)

    # -- restart recovery ------------------------------------------------

    async def resume_interrupted_runs(self) -> list[str]:
        """Fail runs left ``running`` by a previous process and reopen their issues.

        Safe to call repeatedly: a run already failed is skipped by the
        status precondition. ``pending`` runs belong to the dispatcher, see
        :meth:`Dispatcher.recover_pending_runs`.
        """
        recovered: list[str] = []
        for run in self.ledger.runs_with_status("running"):
            try:
                self.ledger.update_run(
                    run.id,
                    expected="running",
                    status="failed",
                    outcome=RunOutcome.failure(ERROR_INTERRUPTED),
                )
            except RunStateConflictError:
                continue
            if run.session_id is not None:
                try:
                    await self.provider.abort(run.session_id)
                except ProviderError:
                    logger.debug("abort of orphaned session %s failed", run.session_id)
            try:
                self.issues.update(run.issue_id, status="open")
            except IssueStoreError:
                logger.exception("failed to reopen issue %s", run.issue_id)
            self.ledger.log_decision(
                run.id,
                "recovery",
                "failed",
                "Run was running when the previous process stopped.",
                {"issue_id": run.issue_id, "phase": run.phase},
            )
            recovered.append(run.id)
        if recovered:
            logger.info("recovered %d interrupted run(s)", len(recovered))
        return recovered
