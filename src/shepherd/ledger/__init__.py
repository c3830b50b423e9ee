from shepherd.ledger.records import (
    ACTIVE_STATUSES,
    ERROR_INTERRUPTED,
    TERMINAL_STATUSES,
    DecisionEntry,
    Run,
    RunOutcome,
    RunStatus,
    new_run_id,
)
from shepherd.ledger.store import (
    ActiveRunExistsError,
    LedgerError,
    RunLedger,
    RunNotFoundError,
    RunStateConflictError,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ERROR_INTERRUPTED",
    "TERMINAL_STATUSES",
    "ActiveRunExistsError",
    "DecisionEntry",
    "LedgerError",
    "Run",
    "RunLedger",
    "RunNotFoundError",
    "RunOutcome",
    "RunStateConflictError",
    "RunStatus",
    "new_run_id",
]
