from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from fanout.domain.state import JobStatus, TERMINAL_JOB_STATUSES, UnitOutcome, UnitState


CHANNEL_BROADCAST = "broadcast"
CHANNEL_ALERT = "alert"

TARGET_GLOBAL = "GLOBAL"
TARGET_EXPLICIT = "EXPLICIT"


@dataclass(frozen=True)
class Job:
    id: str
    idempotency_key: str
    channel: str
    kind: str
    subject: str
    body: str
    target_mode: str
    target_ids: list[str] | None
    status: JobStatus
    target_count: int
    sent_count: int
    failed_count: int
    # Units not yet terminal; the report that drives it to zero finalizes the job.
    remaining_count: int
    created_at: datetime
    created_by: str | None = None
    request_hash: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def progress_percent(self) -> int:
        # Report zero for empty targets instead of dividing by zero.
        if self.target_count <= 0:
            return 0
        return round((self.sent_count + self.failed_count) / self.target_count * 100)

    def payload(self) -> dict[str, Any]:
        # Build the transport payload from immutable job content only.
        return {
            "job_id": self.id,
            "channel": self.channel,
            "kind": self.kind,
            "subject": self.subject,
            "body": self.body,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class DeliveryUnit:
    job_id: str
    recipient_id: str
    state: UnitState
    updated_at: datetime

    @property
    def outcome(self) -> UnitOutcome:
        return self.state.outcome

    @property
    def attempt_number(self) -> int:
        return self.state.attempt_number


@dataclass(frozen=True)
class DeadLetterRecord:
    id: str
    job_id: str
    recipient_id: str
    attempt_number: int
    attempts_made: int
    reason: str
    last_error: str | None
    payload: dict[str, Any]
    first_failed_at: datetime
    last_failed_at: datetime
    created_at: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None
    replay_job_id: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass(frozen=True)
class TerminalOutcome:
    job_id: str
    recipient_id: str
    outcome: UnitOutcome
    attempts_made: int
    recorded_at: datetime


@dataclass(frozen=True)
class DeliveryStats:
    failed_count: int
    delivered_count: int
    average_attempts: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "failed": self.failed_count,
            "delivered": self.delivered_count,
            "average_attempts": self.average_attempts,
        }


@dataclass(frozen=True)
class JobPreview:
    target_count: int
    is_global: bool
