from __future__ import annotations

from datetime import datetime, timezone

import pytest

from fanout.domain.records import Job
from fanout.domain.state import JobStatus, UnitOutcome, UnitState
from fanout.persistence.memory import MemoryDeliveryStore
from fanout.providers.transport.fake import FakeTransport
from fanout.tests.utils.engine import build_test_engine


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _job(job_id: str, recipients: list[str]) -> Job:
    return Job(
        id=job_id,
        idempotency_key=f"key-{job_id}",
        channel="broadcast",
        kind="INFO",
        subject="Left behind",
        body="Work interrupted by a restart",
        target_mode="EXPLICIT",
        target_ids=recipients,
        status=JobStatus.PENDING,
        target_count=0,
        sent_count=0,
        failed_count=0,
        remaining_count=0,
        created_at=_now(),
    )


@pytest.mark.asyncio
async def test_start_up_recovery_finishes_interrupted_jobs() -> None:
    store = MemoryDeliveryStore()
    delivered = UnitState(outcome=UnitOutcome.DELIVERED)
    # Reserved but never fanned out.
    await store.create_job(_job("pending", ["p1", "p2"]))
    # Half delivered when the process died.
    await store.create_job(_job("partial", ["a", "b"]))
    await store.start_job("partial", recipient_ids=["a", "b"], started_at=_now())
    await store.record_terminal("partial", "a", expected=UnitState(), new=delivered, recorded_at=_now())
    # Last report landed but the terminal transition did not.
    await store.create_job(_job("unfinalized", ["c"]))
    await store.start_job("unfinalized", recipient_ids=["c"], started_at=_now())
    await store.record_terminal("unfinalized", "c", expected=UnitState(), new=delivered, recorded_at=_now())

    transport = FakeTransport()
    engine = build_test_engine(store=store, transport=transport)
    await engine.start(recover=True)
    try:
        pending = await engine.tracker.wait_for_terminal("pending", timeout_s=10)
        partial = await engine.tracker.wait_for_terminal("partial", timeout_s=10)
        unfinalized = await engine.tracker.wait_for_terminal("unfinalized", timeout_s=10)
    finally:
        await engine.stop()

    assert (pending.status, pending.sent_count) == (JobStatus.COMPLETED, 2)
    assert (partial.status, partial.sent_count, partial.failed_count) == (JobStatus.COMPLETED, 2, 0)
    assert unfinalized.status is JobStatus.COMPLETED
    assert sorted(transport.delivered()) == ["b", "p1", "p2"]
