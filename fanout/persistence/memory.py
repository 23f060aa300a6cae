from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime

from fanout.domain.records import DeadLetterRecord, DeliveryUnit, Job, TerminalOutcome
from fanout.domain.state import JobStatus, UnitOutcome, UnitState, can_transition_job, require_terminal_job_status


class MemoryDeliveryStore:
    """In-process store used for inline mode, development and tests.

    A single lock serializes every mutation so each call is atomic, matching the
    guarantees the SQL store gets from unique constraints and conditional updates.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._jobs: dict[str, Job] = {}
        self._jobs_by_key: dict[str, str] = {}
        self._units: dict[str, dict[str, DeliveryUnit]] = {}
        self._dead_letters: dict[str, DeadLetterRecord] = {}
        self._dead_letter_keys: dict[tuple[str, str, int], str] = {}
        self._outcomes: list[TerminalOutcome] = []

    async def create_job(self, job: Job) -> tuple[Job, bool]:
        async with self._lock:
            existing_id = self._jobs_by_key.get(job.idempotency_key)
            if existing_id is not None:
                return self._jobs[existing_id], False
            self._jobs[job.id] = job
            self._jobs_by_key[job.idempotency_key] = job.id
            self._units[job.id] = {}
            return job, True

    async def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    async def get_job_by_key(self, idempotency_key: str) -> Job | None:
        job_id = self._jobs_by_key.get(idempotency_key)
        return self._jobs.get(job_id) if job_id else None

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        kind: str | None = None,
        channel: str | None = None,
        created_by: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        rows = [
            job
            for job in self._jobs.values()
            if (status is None or job.status == status)
            and (kind is None or job.kind == kind)
            and (channel is None or job.channel == channel)
            and (created_by is None or job.created_by == created_by)
        ]
        # Python's sort is stable, so jobs created in the same instant keep insertion order.
        rows.sort(key=lambda job: job.created_at, reverse=True)
        return rows[:limit]

    async def list_jobs_by_status(self, status: JobStatus) -> list[Job]:
        return [job for job in self._jobs.values() if job.status == status]

    async def start_job(self, job_id: str, *, recipient_ids: list[str], started_at: datetime) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not can_transition_job(job.status, JobStatus.PROCESSING):
                return None
            self._units[job_id] = {
                recipient_id: DeliveryUnit(
                    job_id=job_id,
                    recipient_id=recipient_id,
                    state=UnitState(),
                    updated_at=started_at,
                )
                for recipient_id in recipient_ids
            }
            updated = replace(
                job,
                status=JobStatus.PROCESSING,
                target_count=len(recipient_ids),
                remaining_count=len(recipient_ids),
                started_at=started_at,
            )
            self._jobs[job_id] = updated
            return updated

    async def fail_pending_job(self, job_id: str, *, error: str, completed_at: datetime) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            updated = replace(job, status=JobStatus.FAILED, last_error=error, completed_at=completed_at)
            self._jobs[job_id] = updated
            return updated

    async def get_unit(self, job_id: str, recipient_id: str) -> DeliveryUnit | None:
        return self._units.get(job_id, {}).get(recipient_id)

    async def list_units(self, job_id: str) -> list[DeliveryUnit]:
        return list(self._units.get(job_id, {}).values())

    async def update_unit(
        self,
        job_id: str,
        recipient_id: str,
        *,
        expected: UnitState,
        new: UnitState,
        updated_at: datetime,
    ) -> bool:
        async with self._lock:
            unit = self._units.get(job_id, {}).get(recipient_id)
            if unit is None or unit.state != expected or expected.is_terminal:
                return False
            self._units[job_id][recipient_id] = replace(unit, state=new, updated_at=updated_at)
            if new.last_error:
                job = self._jobs[job_id]
                self._jobs[job_id] = replace(job, last_error=new.last_error)
            return True

    async def record_terminal(
        self,
        job_id: str,
        recipient_id: str,
        *,
        expected: UnitState,
        new: UnitState,
        recorded_at: datetime,
    ) -> Job | None:
        async with self._lock:
            unit = self._units.get(job_id, {}).get(recipient_id)
            job = self._jobs.get(job_id)
            if unit is None or job is None or unit.state != expected or expected.is_terminal:
                return None
            if job.status != JobStatus.PROCESSING or job.remaining_count <= 0:
                return None
            self._units[job_id][recipient_id] = replace(unit, state=new, updated_at=recorded_at)
            delivered = new.outcome == UnitOutcome.DELIVERED
            updated = replace(
                job,
                sent_count=job.sent_count + (1 if delivered else 0),
                failed_count=job.failed_count + (0 if delivered else 1),
                remaining_count=job.remaining_count - 1,
                last_error=job.last_error if delivered else (new.last_error or job.last_error),
            )
            self._jobs[job_id] = updated
            self._outcomes.append(
                TerminalOutcome(
                    job_id=job_id,
                    recipient_id=recipient_id,
                    outcome=new.outcome,
                    attempts_made=new.attempt_number,
                    recorded_at=recorded_at,
                )
            )
            return updated

    async def finalize_job(self, job_id: str, *, status: JobStatus, completed_at: datetime) -> Job | None:
        status = require_terminal_job_status(status)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING or job.remaining_count != 0:
                return None
            updated = replace(job, status=status, completed_at=completed_at)
            self._jobs[job_id] = updated
            return updated

    async def add_dead_letter(self, record: DeadLetterRecord) -> DeadLetterRecord:
        key = (record.job_id, record.recipient_id, record.attempt_number)
        async with self._lock:
            existing_id = self._dead_letter_keys.get(key)
            if existing_id is not None:
                return self._dead_letters[existing_id]
            self._dead_letters[record.id] = record
            self._dead_letter_keys[key] = record.id
            return record

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterRecord | None:
        return self._dead_letters.get(dead_letter_id)

    async def list_dead_letters(
        self,
        *,
        resolved: bool | None = None,
        job_id: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        rows = [
            row
            for row in self._dead_letters.values()
            if (resolved is None or row.is_resolved == resolved) and (job_id is None or row.job_id == job_id)
        ]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return rows[:limit]

    async def resolve_dead_letter(
        self,
        dead_letter_id: str,
        *,
        resolved_by: str | None,
        resolution: str,
        resolved_at: datetime,
        replay_job_id: str | None = None,
    ) -> DeadLetterRecord | None:
        async with self._lock:
            row = self._dead_letters.get(dead_letter_id)
            if row is None or row.is_resolved:
                return None
            updated = replace(
                row,
                resolved_at=resolved_at,
                resolved_by=resolved_by,
                resolution=resolution,
                replay_job_id=replay_job_id,
            )
            self._dead_letters[dead_letter_id] = updated
            return updated

    async def count_unresolved_dead_letters(self) -> int:
        return sum(1 for row in self._dead_letters.values() if not row.is_resolved)

    async def outcome_totals(self, *, since: datetime | None = None) -> tuple[int, int, int]:
        # Snapshot the list so concurrent appends never disturb the scan.
        rows = [row for row in list(self._outcomes) if since is None or row.recorded_at >= since]
        delivered = sum(1 for row in rows if row.outcome == UnitOutcome.DELIVERED)
        return delivered, len(rows), sum(row.attempts_made for row in rows)

    async def list_outcomes(self, job_id: str) -> list[TerminalOutcome]:
        return [row for row in self._outcomes if row.job_id == job_id]

    async def close(self) -> None:
        return None
