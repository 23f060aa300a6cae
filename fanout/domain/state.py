from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class UnitOutcome(str, Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    DELIVERED = "DELIVERED"
    DEAD_LETTERED = "DEAD_LETTERED"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
TERMINAL_UNIT_OUTCOMES = frozenset({UnitOutcome.DELIVERED, UnitOutcome.DEAD_LETTERED})

_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition_job(current: JobStatus, target: JobStatus) -> bool:
    # Terminal states have no outgoing edges, so they stay immutable.
    return target in _JOB_TRANSITIONS[JobStatus(current)]


def job_status_sources(target: JobStatus) -> frozenset[JobStatus]:
    # Statuses a job may be in when a conditional update moves it to ``target``.
    target = JobStatus(target)
    return frozenset(status for status, targets in _JOB_TRANSITIONS.items() if target in targets)


def require_terminal_job_status(status: JobStatus | str) -> JobStatus:
    status = JobStatus(status)
    if not can_transition_job(JobStatus.PROCESSING, status):
        raise ValueError(f"{status.value} is not a terminal job status")
    return status


def terminal_status_for(*, sent_count: int) -> JobStatus:
    # A job that delivered to at least one recipient completed; otherwise it failed.
    return JobStatus.COMPLETED if sent_count > 0 else JobStatus.FAILED


@dataclass(frozen=True)
class UnitState:
    # Tagged variant per delivery unit: Pending | Retrying(n) | Delivered | DeadLettered.
    outcome: UnitOutcome = UnitOutcome.PENDING
    attempt_number: int = 1
    last_error: str | None = None
    next_retry_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome in TERMINAL_UNIT_OUTCOMES


def transition_unit(
    state: UnitState,
    outcome: UnitOutcome,
    *,
    attempt_number: int,
    error: str | None = None,
    next_retry_at: datetime | None = None,
) -> UnitState | None:
    """Apply one attempt result to a unit.

    Returns the new state, or ``None`` when the event must be discarded: the unit
    is already terminal, or the report belongs to an attempt older than the one
    on record (a redelivered stale report).
    """
    outcome = UnitOutcome(outcome)
    if state.is_terminal:
        return None
    if attempt_number < state.attempt_number:
        return None
    if outcome is UnitOutcome.PENDING:
        raise ValueError("PENDING is an initial state, not a transition target")
    if outcome is UnitOutcome.RETRYING:
        if next_retry_at is None:
            raise ValueError("RETRYING requires next_retry_at")
        return replace(
            state,
            outcome=outcome,
            # The retry runs as the next attempt.
            attempt_number=attempt_number + 1,
            last_error=error,
            next_retry_at=next_retry_at,
        )
    if outcome is UnitOutcome.DELIVERED:
        return replace(state, outcome=outcome, attempt_number=attempt_number, last_error=None, next_retry_at=None)
    return replace(state, outcome=outcome, attempt_number=attempt_number, last_error=error, next_retry_at=None)
