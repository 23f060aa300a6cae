from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import contextmanager
import logging
from typing import Iterator

from fanout.domain.events import JobEvent, JobProgressData
from fanout.domain.records import Job


logger = logging.getLogger(__name__)

# Slow subscribers drop events instead of applying backpressure to the tracker.
_SUBSCRIBER_QUEUE_SIZE = 256


def job_progress(job: Job) -> JobProgressData:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "target_count": job.target_count,
        "sent_count": job.sent_count,
        "failed_count": job.failed_count,
        "progress_percent": job.progress_percent,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


class JobEventBus:
    """Per-job fan-out of status-change events to in-process subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[JobEvent]]] = defaultdict(set)

    @contextmanager
    def subscribe(self, job_id: str) -> Iterator[asyncio.Queue[JobEvent]]:
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)
        self._subscribers[job_id].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(job_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def publish(self, event_type: str, job: Job) -> None:
        subscribers = self._subscribers.get(job.id)
        if not subscribers:
            return
        event: JobEvent = {"type": event_type, "data": dict(job_progress(job))}
        for queue in list(subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("job_event_dropped job_id=%s type=%s", job.id, event_type)
