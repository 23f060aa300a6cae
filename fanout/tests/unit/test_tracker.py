from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from fanout.domain.records import Job
from fanout.domain.state import JobStatus, UnitOutcome
from fanout.persistence.memory import MemoryDeliveryStore
from fanout.services.notifications.bus import JobEventBus
from fanout.services.notifications.tracker import EVENT_TERMINAL, JobTracker


async def _processing_job(store: MemoryDeliveryStore, tracker: JobTracker, recipients: list[str]) -> Job:
    await store.create_job(
        Job(
            id="job-1",
            idempotency_key="key-1",
            channel="broadcast",
            kind="INFO",
            subject="Subject",
            body="Body text here",
            target_mode="EXPLICIT",
            target_ids=recipients,
            status=JobStatus.PENDING,
            target_count=0,
            sent_count=0,
            failed_count=0,
            remaining_count=0,
            created_at=datetime.now(timezone.utc),
        )
    )
    job = await tracker.start_processing("job-1", recipients)
    assert job is not None
    return job


def _drain(queue: asyncio.Queue) -> list[dict]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.mark.asyncio
async def test_concurrent_final_reports_finalize_once() -> None:
    store = MemoryDeliveryStore()
    bus = JobEventBus()
    tracker = JobTracker(store=store, bus=bus)
    await _processing_job(store, tracker, ["a", "b"])

    with bus.subscribe("job-1") as queue:
        assert bus.subscriber_count("job-1") == 1
        results = await asyncio.gather(
            tracker.record_outcome("job-1", "a", UnitOutcome.DELIVERED, attempt_number=1),
            tracker.record_outcome("job-1", "b", UnitOutcome.DEAD_LETTERED, attempt_number=1, error="bounced"),
        )
        events = _drain(queue)

    assert bus.subscriber_count("job-1") == 0
    assert results == [True, True]
    job = await tracker.get_status("job-1")
    assert (job.status, job.sent_count, job.failed_count, job.remaining_count) == (JobStatus.COMPLETED, 1, 1, 0)
    assert job.completed_at is not None
    assert [event["type"] for event in events].count(EVENT_TERMINAL) == 1


@pytest.mark.asyncio
async def test_duplicate_terminal_report_is_discarded() -> None:
    store = MemoryDeliveryStore()
    tracker = JobTracker(store=store)
    await _processing_job(store, tracker, ["a", "b"])

    assert await tracker.record_outcome("job-1", "a", UnitOutcome.DELIVERED, attempt_number=1)
    assert not await tracker.record_outcome("job-1", "a", UnitOutcome.DELIVERED, attempt_number=1)
    assert not await tracker.record_outcome("job-1", "a", UnitOutcome.DEAD_LETTERED, attempt_number=1, error="x")
    job = await tracker.get_status("job-1")
    assert (job.sent_count, job.failed_count, job.remaining_count) == (1, 0, 1)


@pytest.mark.asyncio
async def test_terminal_job_is_immutable() -> None:
    store = MemoryDeliveryStore()
    tracker = JobTracker(store=store)
    await _processing_job(store, tracker, ["a"])
    await tracker.record_outcome("job-1", "a", UnitOutcome.DEAD_LETTERED, attempt_number=1, error="bounced")
    final = await tracker.get_status("job-1")
    assert final.status is JobStatus.FAILED

    assert not await tracker.record_outcome("job-1", "a", UnitOutcome.DELIVERED, attempt_number=1)
    assert await tracker.reconcile("job-1") == final
    assert await tracker.get_status("job-1") == final


@pytest.mark.asyncio
async def test_empty_snapshot_fails_immediately() -> None:
    store = MemoryDeliveryStore()
    tracker = JobTracker(store=store)
    job = await _processing_job(store, tracker, [])
    assert job.status is JobStatus.FAILED
    assert (job.target_count, job.sent_count, job.failed_count) == (0, 0, 0)
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_non_terminal_outcome_is_rejected() -> None:
    store = MemoryDeliveryStore()
    tracker = JobTracker(store=store)
    await _processing_job(store, tracker, ["a"])
    with pytest.raises(ValueError):
        await tracker.record_outcome("job-1", "a", UnitOutcome.RETRYING, attempt_number=1)


class _OverlapTrackingStore(MemoryDeliveryStore):
    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.max_active = 0

    async def get_unit(self, job_id: str, recipient_id: str):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            return await super().get_unit(job_id, recipient_id)
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_reports_stay_serialized_across_finalization() -> None:
    store = _OverlapTrackingStore()
    tracker = JobTracker(store=store)
    await _processing_job(store, tracker, ["a", "b"])

    first = [
        tracker.record_outcome("job-1", recipient, UnitOutcome.DELIVERED, attempt_number=1)
        for recipient in ["a", "b", "a", "b"]
    ]
    results = await asyncio.gather(*first, tracker.reconcile("job-1"))
    late = await asyncio.gather(
        tracker.record_outcome("job-1", "a", UnitOutcome.DELIVERED, attempt_number=1),
        tracker.record_outcome("job-1", "b", UnitOutcome.DELIVERED, attempt_number=1),
    )

    assert results[:4].count(True) == 2
    assert late == [False, False]
    # Reports queued behind the finalizing one never overlap with newcomers.
    assert store.max_active == 1
    assert tracker.tracked_jobs == 0
    job = await tracker.get_status("job-1")
    assert (job.status, job.sent_count) == (JobStatus.COMPLETED, 2)
