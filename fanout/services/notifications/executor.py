from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
import logging
from typing import Any, Protocol
from uuid import uuid4

from fanout.core.config import Settings
from fanout.core.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from fanout.domain.records import DeadLetterRecord
from fanout.domain.state import UnitOutcome
from fanout.persistence.base import DeliveryStore
from fanout.providers.transport.base import DeliveryTransport
from fanout.services.notifications.scheduling import retry_backoff_ms, utc_now
from fanout.services.notifications.tracker import JobTracker


logger = logging.getLogger(__name__)

REASON_PERMANENT = "permanent"
REASON_EXHAUSTED = "max_attempts_exhausted"


@dataclass(frozen=True)
class DeliveryTask:
    # One attempt of one (job, recipient) unit.
    job_id: str
    recipient_id: str
    attempt_number: int
    payload: dict[str, Any]
    first_failed_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "recipient_id": self.recipient_id,
            "attempt_number": self.attempt_number,
            "payload": self.payload,
            "first_failed_at": self.first_failed_at.isoformat() if self.first_failed_at else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "DeliveryTask":
        first_failed_at = raw.get("first_failed_at")
        return cls(
            job_id=str(raw["job_id"]),
            recipient_id=str(raw["recipient_id"]),
            attempt_number=int(raw["attempt_number"]),
            payload=dict(raw.get("payload") or {}),
            first_failed_at=datetime.fromisoformat(first_failed_at) if first_failed_at else None,
        )


class DeliveryScheduler(Protocol):
    # Where units go to run: the in-process pool or an external queue.
    async def schedule(self, task: DeliveryTask, *, delay_ms: int = 0) -> None:
        ...


class ExecutorHooks(Protocol):
    def on_attempt(self) -> None: ...

    def on_delivered(self) -> None: ...

    def on_retry(self) -> None: ...

    def on_dead_letter(self, reason: str) -> None: ...


class DeliveryExecutor:
    """Bounded worker pool executing delivery attempts against the transport.

    Workers pull independent units from one shared queue, so the pool size caps
    concurrent transport calls across every active job. A retry never holds a
    worker: the unit is handed back to the scheduler with a delay and the worker
    moves on.
    """

    def __init__(
        self,
        *,
        store: DeliveryStore,
        tracker: JobTracker,
        transport: DeliveryTransport,
        settings: Settings,
        scheduler: DeliveryScheduler | None = None,
        hooks: ExecutorHooks | None = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._transport = transport
        self._settings = settings
        self._scheduler: DeliveryScheduler = scheduler or self
        self._hooks = hooks
        self._queue: asyncio.Queue[DeliveryTask] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._timers: set[asyncio.Task[None]] = set()
        # Units queued, parked or running in this pool, keyed by (job, recipient).
        self._held: dict[tuple[str, str], int] = {}
        self._in_flight = 0

    @property
    def max_concurrency(self) -> int:
        return max(1, int(self._settings.delivery_max_concurrency))

    @property
    def max_attempts(self) -> int:
        return max(1, int(self._settings.delivery_max_attempts))

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def queue_depth(self) -> int:
        return self._queue.qsize()

    def delayed_count(self) -> int:
        return len(self._timers)

    def holds(self, job_id: str, recipient_id: str) -> bool:
        return (job_id, recipient_id) in self._held

    def _release(self, task: DeliveryTask) -> None:
        key = (task.job_id, task.recipient_id)
        remaining = self._held.get(key, 0) - 1
        if remaining > 0:
            self._held[key] = remaining
        else:
            self._held.pop(key, None)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"fanout-delivery-{index}")
            for index in range(self.max_concurrency)
        ]
        logger.info("delivery_pool_started workers=%s", len(self._workers))

    async def stop(self) -> None:
        tasks = [*self._workers, *self._timers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._timers.clear()
        self._held.clear()
        logger.info("delivery_pool_stopped pending=%s", self._queue.qsize())

    async def join(self) -> None:
        # Wait until queued and delayed units have drained; used by tests and graceful shutdown.
        while True:
            await self._queue.join()
            if not self._timers:
                return
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    async def dispatch(self, job_id: str, recipient_ids: list[str], payload: dict[str, Any]) -> int:
        for recipient_id in recipient_ids:
            await self._scheduler.schedule(
                DeliveryTask(job_id=job_id, recipient_id=recipient_id, attempt_number=1, payload=payload)
            )
        return len(recipient_ids)

    async def schedule_task(self, task: DeliveryTask, *, delay_ms: int = 0) -> None:
        await self._scheduler.schedule(task, delay_ms=delay_ms)

    async def schedule(self, task: DeliveryTask, *, delay_ms: int = 0) -> None:
        # In-process scheduling: immediate units go straight to the queue; delayed ones park on a timer.
        key = (task.job_id, task.recipient_id)
        self._held[key] = self._held.get(key, 0) + 1
        if delay_ms <= 0:
            self._queue.put_nowait(task)
            return
        timer = asyncio.create_task(self._requeue_after(task, delay_ms / 1000.0))
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    async def _requeue_after(self, task: DeliveryTask, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        self._queue.put_nowait(task)

    async def _worker_loop(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self.execute(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Store outages land here; the unit stays non-terminal and the engine sweep re-dispatches it.
                logger.exception(
                    "delivery_worker_failed worker=%s job_id=%s recipient_id=%s attempt=%s",
                    index,
                    task.job_id,
                    task.recipient_id,
                    task.attempt_number,
                )
            finally:
                self._release(task)
                self._queue.task_done()

    async def execute(self, task: DeliveryTask) -> None:
        # Run one attempt and report its result; shared by the in-process pool and the ARQ worker.
        timeout_s = max(0.001, self._settings.delivery_timeout_ms / 1000.0)
        if self._hooks is not None:
            self._hooks.on_attempt()
        self._in_flight += 1
        try:
            await asyncio.wait_for(self._transport.deliver(task.recipient_id, task.payload), timeout=timeout_s)
        except asyncio.TimeoutError:
            error: DeliveryError = TransientDeliveryError("timeout")
        except DeliveryError as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001 - unknown transport failures are treated as retryable.
            logger.warning(
                "delivery_transport_error job_id=%s recipient_id=%s error=%s",
                task.job_id,
                task.recipient_id,
                type(exc).__name__,
            )
            error = TransientDeliveryError(f"unexpected_{type(exc).__name__.lower()}")
        else:
            error = None
        finally:
            self._in_flight -= 1

        if error is None:
            accepted = await self._tracker.record_outcome(
                task.job_id,
                task.recipient_id,
                UnitOutcome.DELIVERED,
                attempt_number=task.attempt_number,
            )
            if accepted and self._hooks is not None:
                self._hooks.on_delivered()
            return
        await self._handle_failure(task, error)

    async def _handle_failure(self, task: DeliveryTask, error: DeliveryError) -> None:
        now = utc_now()
        first_failed_at = task.first_failed_at or now
        permanent = isinstance(error, PermanentDeliveryError)
        if not permanent and task.attempt_number < self.max_attempts:
            delay_ms = retry_backoff_ms(
                job_id=task.job_id,
                recipient_id=task.recipient_id,
                attempt_no=task.attempt_number,
                base_ms=self._settings.delivery_backoff_ms,
                cap_ms=self._settings.delivery_backoff_max_ms,
                jitter_ms=self._settings.delivery_backoff_jitter_ms,
            )
            state = await self._tracker.record_retry(
                task.job_id,
                task.recipient_id,
                attempt_number=task.attempt_number,
                error=error.reason,
                next_retry_at=now + timedelta(milliseconds=delay_ms),
            )
            if state is None:
                return
            logger.info(
                "delivery_retry_scheduled job_id=%s recipient_id=%s attempt=%s delay_ms=%s reason=%s",
                task.job_id,
                task.recipient_id,
                state.attempt_number,
                delay_ms,
                error.reason,
            )
            if self._hooks is not None:
                self._hooks.on_retry()
            await self._scheduler.schedule(
                replace(task, attempt_number=state.attempt_number, first_failed_at=first_failed_at),
                delay_ms=delay_ms,
            )
            return
        await self._dead_letter(task, error, reason=REASON_PERMANENT if permanent else REASON_EXHAUSTED, now=now)

    async def _dead_letter(self, task: DeliveryTask, error: DeliveryError, *, reason: str, now: datetime) -> None:
        unit = await self._store.get_unit(task.job_id, task.recipient_id)
        if unit is None or unit.state.is_terminal or unit.state.attempt_number != task.attempt_number:
            # Redelivered stale attempt; the unit already moved on.
            logger.warning(
                "dead_letter_skipped job_id=%s recipient_id=%s attempt=%s",
                task.job_id,
                task.recipient_id,
                task.attempt_number,
            )
            return
        await self._store.add_dead_letter(
            DeadLetterRecord(
                id=uuid4().hex,
                job_id=task.job_id,
                recipient_id=task.recipient_id,
                attempt_number=task.attempt_number,
                attempts_made=task.attempt_number,
                reason=reason,
                last_error=error.reason,
                payload=task.payload,
                first_failed_at=task.first_failed_at or now,
                last_failed_at=now,
                created_at=now,
            )
        )
        accepted = await self._tracker.record_outcome(
            task.job_id,
            task.recipient_id,
            UnitOutcome.DEAD_LETTERED,
            attempt_number=task.attempt_number,
            error=error.reason,
        )
        logger.warning(
            "delivery_dead_lettered job_id=%s recipient_id=%s attempts=%s reason=%s error=%s",
            task.job_id,
            task.recipient_id,
            task.attempt_number,
            reason,
            error.reason,
        )
        if accepted and self._hooks is not None:
            self._hooks.on_dead_letter(reason)
