from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from fanout.domain.records import Job
from fanout.domain.state import JobStatus, UnitOutcome, UnitState
from fanout.persistence.memory import MemoryDeliveryStore


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _job(job_id: str = "job-1", key: str = "key-1") -> Job:
    return Job(
        id=job_id,
        idempotency_key=key,
        channel="broadcast",
        kind="INFO",
        subject="Subject",
        body="Body text here",
        target_mode="EXPLICIT",
        target_ids=["a", "b"],
        status=JobStatus.PENDING,
        target_count=0,
        sent_count=0,
        failed_count=0,
        remaining_count=0,
        created_at=_now(),
    )


@pytest.mark.asyncio
async def test_create_job_is_idempotent_on_key() -> None:
    store = MemoryDeliveryStore()
    first, created = await store.create_job(_job())
    second, created_again = await store.create_job(_job(job_id="job-2"))
    assert created and not created_again
    assert second.id == first.id == "job-1"
    assert await store.get_job("job-2") is None


@pytest.mark.asyncio
async def test_start_job_only_from_pending() -> None:
    store = MemoryDeliveryStore()
    await store.create_job(_job())
    started = await store.start_job("job-1", recipient_ids=["a", "b"], started_at=_now())
    assert started is not None
    assert (started.status, started.target_count, started.remaining_count) == (JobStatus.PROCESSING, 2, 2)
    assert await store.start_job("job-1", recipient_ids=["a"], started_at=_now()) is None
    assert len(await store.list_units("job-1")) == 2


@pytest.mark.asyncio
async def test_record_terminal_is_compare_and_set() -> None:
    store = MemoryDeliveryStore()
    await store.create_job(_job())
    await store.start_job("job-1", recipient_ids=["a", "b"], started_at=_now())
    pending = UnitState()
    delivered = replace(pending, outcome=UnitOutcome.DELIVERED)

    job = await store.record_terminal("job-1", "a", expected=pending, new=delivered, recorded_at=_now())
    assert job is not None
    assert (job.sent_count, job.failed_count, job.remaining_count) == (1, 0, 1)
    # Same report again: the unit no longer holds the expected state.
    assert await store.record_terminal("job-1", "a", expected=pending, new=delivered, recorded_at=_now()) is None
    assert (await store.get_job("job-1")).sent_count == 1


@pytest.mark.asyncio
async def test_finalize_requires_zero_remaining() -> None:
    store = MemoryDeliveryStore()
    await store.create_job(_job())
    await store.start_job("job-1", recipient_ids=["a"], started_at=_now())
    assert await store.finalize_job("job-1", status=JobStatus.COMPLETED, completed_at=_now()) is None
    await store.record_terminal(
        "job-1",
        "a",
        expected=UnitState(),
        new=UnitState(outcome=UnitOutcome.DELIVERED),
        recorded_at=_now(),
    )
    final = await store.finalize_job("job-1", status=JobStatus.COMPLETED, completed_at=_now())
    assert final is not None and final.status is JobStatus.COMPLETED
    assert await store.finalize_job("job-1", status=JobStatus.FAILED, completed_at=_now()) is None


@pytest.mark.asyncio
async def test_finalize_rejects_non_terminal_status() -> None:
    store = MemoryDeliveryStore()
    await store.create_job(_job())
    await store.start_job("job-1", recipient_ids=[], started_at=_now())
    with pytest.raises(ValueError):
        await store.finalize_job("job-1", status=JobStatus.PENDING, completed_at=_now())
    assert (await store.get_job("job-1")).status is JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_list_jobs_filters_by_creator() -> None:
    store = MemoryDeliveryStore()
    await store.create_job(replace(_job("job-1", "key-1"), created_by="admin-1"))
    await store.create_job(replace(_job("job-2", "key-2"), created_by="admin-2"))
    await store.create_job(_job("job-3", "key-3"))

    mine = await store.list_jobs(created_by="admin-1")
    assert [job.id for job in mine] == ["job-1"]
    assert len(await store.list_jobs()) == 3
