from __future__ import annotations

from datetime import datetime
from typing import Protocol

from fanout.domain.records import DeadLetterRecord, DeliveryUnit, Job, TerminalOutcome
from fanout.domain.state import JobStatus, UnitState


class DeliveryStore(Protocol):
    """Backing store for jobs, delivery units, dead letters and the terminal-outcome log.

    Every mutating call is atomic on its own. Conditional writes return ``None`` or
    ``False`` instead of raising when the precondition no longer holds, so callers can
    treat a lost race as a discarded report. Backend failures surface as
    ``StoreUnavailableError``.
    """

    async def create_job(self, job: Job) -> tuple[Job, bool]:
        """Insert ``job`` unless its idempotency key exists; return (job, created)."""
        ...

    async def get_job(self, job_id: str) -> Job | None:
        ...

    async def get_job_by_key(self, idempotency_key: str) -> Job | None:
        ...

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        kind: str | None = None,
        channel: str | None = None,
        created_by: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        ...

    async def list_jobs_by_status(self, status: JobStatus) -> list[Job]:
        ...

    async def start_job(self, job_id: str, *, recipient_ids: list[str], started_at: datetime) -> Job | None:
        """Move a PENDING job to PROCESSING and create one PENDING unit per recipient."""
        ...

    async def fail_pending_job(self, job_id: str, *, error: str, completed_at: datetime) -> Job | None:
        ...

    async def get_unit(self, job_id: str, recipient_id: str) -> DeliveryUnit | None:
        ...

    async def list_units(self, job_id: str) -> list[DeliveryUnit]:
        ...

    async def update_unit(
        self,
        job_id: str,
        recipient_id: str,
        *,
        expected: UnitState,
        new: UnitState,
        updated_at: datetime,
    ) -> bool:
        """Compare-and-set a non-terminal unit transition."""
        ...

    async def record_terminal(
        self,
        job_id: str,
        recipient_id: str,
        *,
        expected: UnitState,
        new: UnitState,
        recorded_at: datetime,
    ) -> Job | None:
        """Apply a terminal unit transition, bump the job counters and append the outcome log."""
        ...

    async def finalize_job(self, job_id: str, *, status: JobStatus, completed_at: datetime) -> Job | None:
        """Move a PROCESSING job with no remaining units to ``status``."""
        ...

    async def add_dead_letter(self, record: DeadLetterRecord) -> DeadLetterRecord:
        """Insert ``record`` once per (job, recipient, attempt); return the stored row."""
        ...

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterRecord | None:
        ...

    async def list_dead_letters(
        self,
        *,
        resolved: bool | None = None,
        job_id: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        ...

    async def resolve_dead_letter(
        self,
        dead_letter_id: str,
        *,
        resolved_by: str | None,
        resolution: str,
        resolved_at: datetime,
        replay_job_id: str | None = None,
    ) -> DeadLetterRecord | None:
        """Mark an unresolved record resolved; ``None`` when it was already resolved or missing."""
        ...

    async def count_unresolved_dead_letters(self) -> int:
        ...

    async def outcome_totals(self, *, since: datetime | None = None) -> tuple[int, int, int]:
        """Return (delivered, terminal, attempts_sum) from the terminal-outcome log."""
        ...

    async def list_outcomes(self, job_id: str) -> list[TerminalOutcome]:
        ...

    async def close(self) -> None:
        ...
