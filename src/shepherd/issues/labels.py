"""Label conventions the engine keeps on tracker issues."""

from __future__ import annotations

from collections.abc import Iterable

PHASE_PREFIX = "shepherd-phase:"
RETRY_PREFIX = "shepherd-retry:"
HITL_PREFIX = "shepherd-hitl:"
WORKFLOW_PREFIX = "shepherd-workflow:"
EXCLUDED_LABEL = "shepherd-excluded"

HITL_APPROVAL = "approval"
HITL_HUMAN_TAKEOVER = "human-takeover"
HITL_RETRY_LIMIT = "retry-limit"


def phase_label(phase: str) -> str:
    return f"{PHASE_PREFIX}{phase}"


def retry_label(count: int) -> str:
    return f"{RETRY_PREFIX}{count}"


def hitl_label(reason: str) -> str:
    return f"{HITL_PREFIX}{reason}"


def _first_suffix(labels: Iterable[str], prefix: str) -> str | None:
    for label in labels:
        if label.startswith(prefix):
            value = label[len(prefix) :].strip()
            if value:
                return value
    return None


def current_phase(labels: Iterable[str]) -> str | None:
    return _first_suffix(labels, PHASE_PREFIX)


def workflow_name(labels: Iterable[str]) -> str | None:
    return _first_suffix(labels, WORKFLOW_PREFIX)


def hitl_reason(labels: Iterable[str]) -> str | None:
    return _first_suffix(labels, HITL_PREFIX)


def retry_count(labels: Iterable[str]) -> int:
    """Highest retry counter found on the issue, 0 when absent or malformed."""
    highest = 0
    for label in labels:
        if not label.startswith(RETRY_PREFIX):
            continue
        try:
            highest = max(highest, int(label[len(RETRY_PREFIX) :]))
        except ValueError:
            continue
    return highest


def is_excluded(labels: Iterable[str]) -> bool:
    return EXCLUDED_LABEL in set(labels)
