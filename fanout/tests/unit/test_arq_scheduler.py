from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from fanout.core.errors import StoreUnavailableError
from fanout.services.notifications.executor import DeliveryTask
from fanout.services.notifications.queue import DELIVER_UNIT_FUNCTION, ArqScheduler, unit_job_id
from fanout.tests.utils.engine import make_settings


class _StubPool:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.enqueued: list[tuple[tuple[Any, ...], dict[str, Any]]] = []

    async def enqueue_job(self, *args: Any, **kwargs: Any) -> object:
        if self.fail:
            raise ConnectionError("redis down")
        self.enqueued.append((args, kwargs))
        return object()

    async def zcard(self, key: str) -> int:
        return len(self.enqueued)


def _task(attempt_number: int = 1) -> DeliveryTask:
    return DeliveryTask(job_id="job-1", recipient_id="u1", attempt_number=attempt_number, payload={"subject": "Hi"})


@pytest.mark.asyncio
async def test_schedule_enqueues_with_stable_job_id() -> None:
    pool = _StubPool()
    scheduler = ArqScheduler(settings=make_settings(delivery_queue_name="fanout:test"), pool=pool)

    await scheduler.schedule(_task())
    await scheduler.schedule(_task(attempt_number=2), delay_ms=1500)

    (first_args, first_kwargs), (_, second_kwargs) = pool.enqueued
    assert first_args[0] == DELIVER_UNIT_FUNCTION
    assert DeliveryTask.from_dict(first_args[1]) == _task()
    assert first_kwargs["_job_id"] == unit_job_id(_task()) == "fanout:job-1:u1:1"
    assert first_kwargs["_queue_name"] == "fanout:test"
    assert first_kwargs["_defer_by"] is None
    assert second_kwargs["_defer_by"] == timedelta(milliseconds=1500)
    assert await scheduler.queue_depth() == 2


@pytest.mark.asyncio
async def test_enqueue_failure_surfaces_as_store_unavailable() -> None:
    scheduler = ArqScheduler(settings=make_settings(), pool=_StubPool(fail=True))
    with pytest.raises(StoreUnavailableError):
        await scheduler.schedule(_task())


def test_task_round_trips_first_failure_timestamp() -> None:
    raw = {
        "job_id": "job-1",
        "recipient_id": "u1",
        "attempt_number": 3,
        "payload": {},
        "first_failed_at": "2024-05-01T12:00:00+00:00",
    }
    task = DeliveryTask.from_dict(raw)
    assert task.first_failed_at is not None
    assert task.as_dict() == raw
