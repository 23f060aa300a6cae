from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import AsyncIterator

from fanout.core.errors import JobNotFoundError
from fanout.domain.records import DeliveryUnit, Job
from fanout.domain.state import UnitOutcome, UnitState, terminal_status_for, transition_unit
from fanout.persistence.base import DeliveryStore
from fanout.services.notifications.bus import JobEventBus
from fanout.services.notifications.scheduling import utc_now


logger = logging.getLogger(__name__)

EVENT_STATUS = "job.status"
EVENT_PROGRESS = "job.progress"
EVENT_TERMINAL = "job.terminal"


class JobTracker:
    """Single writer for job status and counters.

    Reports for one job are serialized by a per-job lock. Counter updates go through
    the store's compare-and-set so a duplicate or stale report from another worker
    process is discarded rather than double-counted. The report that drives the
    remaining-unit counter to zero performs the terminal transition. A job's lock is
    dropped only once no coroutine holds or waits on it.
    """

    def __init__(self, *, store: DeliveryStore, bus: JobEventBus | None = None) -> None:
        self._store = store
        self._bus = bus or JobEventBus()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def bus(self) -> JobEventBus:
        return self._bus

    @property
    def tracked_jobs(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[job_id] - 1
            if remaining:
                self._lock_users[job_id] = remaining
            else:
                del self._lock_users[job_id]
                del self._locks[job_id]

    async def start_processing(self, job_id: str, recipient_ids: list[str]) -> Job | None:
        # PENDING -> PROCESSING with targetCount fixed before any attempt runs.
        async with self._job_lock(job_id):
            job = await self._store.start_job(job_id, recipient_ids=recipient_ids, started_at=utc_now())
            if job is None:
                return None
            logger.info("job_processing job_id=%s target_count=%s", job.id, job.target_count)
            self._bus.publish(EVENT_STATUS, job)
            if job.remaining_count == 0:
                # Empty snapshot: nothing will ever report, so finalize now.
                job = await self._finalize(job) or job
            return job

    async def fail_resolution(self, job_id: str, error: str) -> Job | None:
        async with self._job_lock(job_id):
            job = await self._store.fail_pending_job(job_id, error=error, completed_at=utc_now())
            if job is None:
                return None
            logger.warning("job_failed_resolution job_id=%s error=%s", job_id, error)
            self._bus.publish(EVENT_TERMINAL, job)
            return job

    async def record_retry(
        self,
        job_id: str,
        recipient_id: str,
        *,
        attempt_number: int,
        error: str,
        next_retry_at: datetime,
    ) -> UnitState | None:
        async with self._job_lock(job_id):
            unit = await self._store.get_unit(job_id, recipient_id)
            if unit is None:
                logger.warning("unit_unknown job_id=%s recipient_id=%s", job_id, recipient_id)
                return None
            new = transition_unit(
                unit.state,
                UnitOutcome.RETRYING,
                attempt_number=attempt_number,
                error=error,
                next_retry_at=next_retry_at,
            )
            if new is None or not await self._store.update_unit(
                job_id, recipient_id, expected=unit.state, new=new, updated_at=utc_now()
            ):
                logger.warning(
                    "retry_report_discarded job_id=%s recipient_id=%s attempt=%s state=%s",
                    job_id,
                    recipient_id,
                    attempt_number,
                    unit.state.outcome.value,
                )
                return None
            return new

    async def record_outcome(
        self,
        job_id: str,
        recipient_id: str,
        outcome: UnitOutcome,
        *,
        attempt_number: int,
        error: str | None = None,
    ) -> bool:
        # Apply a terminal report exactly once; returns False when the report was discarded.
        outcome = UnitOutcome(outcome)
        if outcome not in (UnitOutcome.DELIVERED, UnitOutcome.DEAD_LETTERED):
            raise ValueError(f"{outcome.value} is not a terminal outcome")
        async with self._job_lock(job_id):
            unit = await self._store.get_unit(job_id, recipient_id)
            if unit is None:
                logger.warning("unit_unknown job_id=%s recipient_id=%s", job_id, recipient_id)
                return False
            new = transition_unit(unit.state, outcome, attempt_number=attempt_number, error=error)
            job = None
            if new is not None:
                job = await self._store.record_terminal(
                    job_id,
                    recipient_id,
                    expected=unit.state,
                    new=new,
                    recorded_at=utc_now(),
                )
            if job is None:
                logger.warning(
                    "duplicate_terminal_report job_id=%s recipient_id=%s outcome=%s attempt=%s state=%s",
                    job_id,
                    recipient_id,
                    outcome.value,
                    attempt_number,
                    unit.state.outcome.value,
                )
                return False
            self._bus.publish(EVENT_PROGRESS, job)
            if job.remaining_count == 0:
                await self._finalize(job)
            return True

    async def reconcile(self, job_id: str) -> Job | None:
        # Finish a job whose last report landed but whose terminal transition did not (crash in between).
        async with self._job_lock(job_id):
            job = await self._store.get_job(job_id)
            if job is None or job.is_terminal or job.remaining_count != 0:
                return job
            return await self._finalize(job)

    async def _finalize(self, job: Job) -> Job | None:
        status = terminal_status_for(sent_count=job.sent_count)
        final = await self._store.finalize_job(job.id, status=status, completed_at=utc_now())
        if final is None:
            # Another process finalized first.
            return None
        logger.info(
            "job_terminal job_id=%s status=%s target=%s sent=%s failed=%s",
            final.id,
            final.status.value,
            final.target_count,
            final.sent_count,
            final.failed_count,
        )
        self._bus.publish(EVENT_TERMINAL, final)
        return final

    async def get_status(self, job_id: str) -> Job:
        # Passive read; never takes the per-job lock.
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return job

    async def list_units(self, job_id: str) -> list[DeliveryUnit]:
        await self.get_status(job_id)
        return await self._store.list_units(job_id)

    async def wait_for_terminal(self, job_id: str, *, timeout_s: float = 30.0, poll_s: float = 0.5) -> Job:
        # Wait on bus events, re-reading the store on every wake-up so a dropped event cannot stall.
        async def _wait() -> Job:
            with self._bus.subscribe(job_id) as queue:
                while True:
                    job = await self.get_status(job_id)
                    if job.is_terminal:
                        return job
                    try:
                        await asyncio.wait_for(queue.get(), timeout=poll_s)
                    except asyncio.TimeoutError:
                        continue

        return await asyncio.wait_for(_wait(), timeout=timeout_s)
