from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Any

from fanout.core.config import Settings
from fanout.core.errors import AudienceResolutionError, ConfigError, JobValidationError
from fanout.domain.records import DeadLetterRecord, DeliveryStats, DeliveryUnit, Job, JobPreview
from fanout.domain.requests import JobRequest, TargetSpec
from fanout.domain.state import JobStatus
from fanout.persistence.base import DeliveryStore
from fanout.persistence.factory import get_store
from fanout.providers.transport.base import DeliveryTransport
from fanout.providers.transport.factory import get_transport
from fanout.services.idempotency import Admission, IdempotencyGate
from fanout.services.metrics import EngineMetrics
from fanout.services.notifications.alerts import AlertService
from fanout.services.notifications.audience import (
    AudienceResolver,
    RecipientDirectory,
    StaticRecipientDirectory,
)
from fanout.services.notifications.bus import JobEventBus
from fanout.services.notifications.dead_letters import DeadLetterService
from fanout.services.notifications.executor import DeliveryExecutor, DeliveryScheduler, DeliveryTask
from fanout.services.notifications.queue import ArqScheduler
from fanout.services.notifications.scheduling import utc_now
from fanout.services.notifications.stats import StatsAggregator
from fanout.services.notifications.tracker import JobTracker


logger = logging.getLogger(__name__)

EXECUTION_INLINE = "inline"
EXECUTION_QUEUE = "queue"
JOB_LIST_MAX_LIMIT = 500


def _delay_until(moment: datetime | None, *, now: datetime) -> int:
    if moment is None:
        return 0
    return max(0, int((moment - now).total_seconds() * 1000))


def _target_of(job: Job) -> TargetSpec:
    return TargetSpec(mode=job.target_mode, recipient_ids=tuple(job.target_ids or ()))


class BroadcastEngine:
    """Fan-out engine: one job in, one delivery unit per recipient out.

    Constructed once per process (API lifespan or worker start-up) and owning its
    tracker, worker pool, metrics registry and event bus for its whole lifetime.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: DeliveryStore,
        transport: DeliveryTransport,
        directory: RecipientDirectory | None = None,
        scheduler: DeliveryScheduler | None = None,
        metrics: EngineMetrics | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.transport = transport
        self.bus = JobEventBus()
        self.tracker = JobTracker(store=store, bus=self.bus)
        self.gate = IdempotencyGate(store=store, settings=settings)
        self.resolver = AudienceResolver(
            directory
            or StaticRecipientDirectory(
                settings.audience_recipients(),
                alert_recipients=settings.alert_recipients(),
            )
        )
        self.metrics = metrics or EngineMetrics(prefix=settings.metrics_prefix)
        self.scheduler = scheduler
        self.executor = DeliveryExecutor(
            store=store,
            tracker=self.tracker,
            transport=transport,
            settings=settings,
            scheduler=scheduler,
            hooks=self.metrics,
        )
        self.stats_aggregator = StatsAggregator(store=store, settings=settings)
        self.metrics.set_stats_source(self.stats_aggregator.stats)
        self.dead_letters = DeadLetterService(store=store, submit=self.submit)
        self.alerts = AlertService(submit=self.submit, settings=settings)
        self._started = False
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def inline(self) -> bool:
        # Without an external scheduler the engine runs its own worker pool.
        return self.scheduler is None

    async def start(self, *, recover: bool = True) -> None:
        if self._started:
            return
        if self.inline:
            await self.executor.start()
        self._started = True
        if recover:
            await self.recover()
        interval_s = float(self.settings.delivery_sweep_interval_s)
        if interval_s > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_s), name="fanout-delivery-sweep")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.alerts.drain()
        await self.executor.stop()
        await self.transport.aclose()
        aclose = getattr(self.scheduler, "aclose", None)
        if aclose is not None:
            await aclose()
        await self.store.close()
        self._started = False

    async def submit(
        self,
        idempotency_key: str | None,
        request: JobRequest | dict[str, Any],
        *,
        created_by: str | None = None,
    ) -> Admission:
        key, job_request = self.gate.validate(idempotency_key, request)
        admission = await self.gate.reserve(key, job_request, created_by=created_by)
        self.metrics.on_submission(channel=job_request.channel, created=admission.created)
        if not admission.created:
            if admission.job.status == JobStatus.PENDING:
                # The first submission reserved the key but failed before fan-out; finish it now.
                job = await self._fan_out(admission.job, _target_of(admission.job))
                return Admission(job=job, created=False)
            return admission
        job = await self._fan_out(admission.job, job_request.target)
        return Admission(job=job, created=True)

    async def preview(self, request: JobRequest | dict[str, Any]) -> JobPreview:
        # Dry run: validate and resolve without reserving a key.
        job_request = self.gate.validate_request(request)
        recipients = await self.resolver.resolve(job_request.target, channel=job_request.channel)
        return JobPreview(target_count=len(recipients), is_global=job_request.target.is_global)

    async def _fan_out(self, job: Job, target: TargetSpec) -> Job:
        try:
            recipients = await self.resolver.resolve(target, channel=job.channel)
        except AudienceResolutionError as exc:
            await self.tracker.fail_resolution(job.id, str(exc))
            raise
        started = await self.tracker.start_processing(job.id, recipients)
        if started is None:
            # Another process moved the job past PENDING first.
            return await self.tracker.get_status(job.id)
        if recipients:
            await self.executor.dispatch(job.id, recipients, started.payload())
        return started

    async def get_status(self, job_id: str) -> Job:
        return await self.tracker.get_status(job_id)

    async def list_jobs(
        self,
        *,
        status: JobStatus | str | None = None,
        kind: str | None = None,
        channel: str | None = None,
        created_by: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        try:
            status_filter = JobStatus(status) if status else None
        except ValueError as exc:
            raise JobValidationError(
                f"unknown job status: {status}",
                errors=[{"loc": "status", "msg": f"one of {', '.join(s.value for s in JobStatus)}"}],
            ) from exc
        return await self.store.list_jobs(
            status=status_filter,
            kind=kind.strip().upper() if kind else None,
            channel=channel,
            created_by=created_by.strip() if created_by else None,
            limit=max(1, min(int(limit), JOB_LIST_MAX_LIMIT)),
        )

    async def list_deliveries(self, job_id: str) -> list[DeliveryUnit]:
        return await self.tracker.list_units(job_id)

    async def stats(self) -> DeliveryStats:
        return await self.stats_aggregator.stats()

    async def list_dead_letters(self, **filters: Any) -> list[DeadLetterRecord]:
        return await self.dead_letters.list_records(**filters)

    async def send_alert(
        self,
        severity: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> Job | None:
        return await self.alerts.send_alert(severity, event, message, metadata)

    async def recover(self) -> int:
        # Re-dispatch work a crashed process left behind; the tracker absorbs duplicates.
        redispatched = await self._redispatch(stale_before=None)
        if redispatched:
            logger.info("recovery_redispatched units=%s", redispatched)
        return redispatched

    async def sweep(self) -> int:
        # Re-dispatch work stalled by a store or queue outage while this process kept running.
        stale_before = utc_now() - timedelta(seconds=max(0.0, float(self.settings.delivery_sweep_stale_s)))
        redispatched = await self._redispatch(stale_before=stale_before)
        if redispatched:
            logger.warning("sweep_redispatched units=%s", redispatched)
        return redispatched

    async def _sweep_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.sweep()
            except Exception:  # noqa: BLE001 - keep the sweep alive while surfacing failures in logs.
                logger.exception("delivery_sweep_failed")

    async def _redispatch(self, *, stale_before: datetime | None) -> int:
        redispatched = 0
        # Snapshot PROCESSING first so jobs fanned out below are not dispatched twice.
        processing = await self.store.list_jobs_by_status(JobStatus.PROCESSING)
        for job in await self.store.list_jobs_by_status(JobStatus.PENDING):
            if stale_before is not None and job.created_at > stale_before:
                continue
            try:
                await self._fan_out(job, _target_of(job))
            except AudienceResolutionError:
                logger.warning("redispatch_resolution_failed job_id=%s", job.id)
        now = utc_now()
        for job in processing:
            if job.remaining_count == 0:
                await self.tracker.reconcile(job.id)
                continue
            payload = job.payload()
            for unit in await self.store.list_units(job.id):
                if unit.state.is_terminal or self.executor.holds(job.id, unit.recipient_id):
                    continue
                if stale_before is not None and unit.updated_at > stale_before:
                    continue
                await self.executor.schedule_task(
                    DeliveryTask(
                        job_id=job.id,
                        recipient_id=unit.recipient_id,
                        attempt_number=unit.attempt_number,
                        payload=payload,
                    ),
                    delay_ms=_delay_until(unit.state.next_retry_at, now=now),
                )
                redispatched += 1
        return redispatched



def build_broadcast_engine(
    settings: Settings,
    *,
    store: DeliveryStore | None = None,
    transport: DeliveryTransport | None = None,
    directory: RecipientDirectory | None = None,
    scheduler: DeliveryScheduler | None = None,
) -> BroadcastEngine:
    mode = (settings.execution_mode or EXECUTION_INLINE).strip().lower()
    if mode not in (EXECUTION_INLINE, EXECUTION_QUEUE):
        raise ConfigError(f"Unsupported execution mode: {settings.execution_mode}")
    if mode == EXECUTION_QUEUE:
        if (settings.store_backend or "memory").strip().lower() == "memory" and store is None:
            # Queue workers run in other processes and cannot see an in-memory store.
            raise ConfigError("EXECUTION_MODE=queue requires STORE_BACKEND=sql")
        scheduler = scheduler or ArqScheduler(settings=settings)
    return BroadcastEngine(
        settings=settings,
        store=store or get_store(settings),
        transport=transport or get_transport(settings),
        directory=directory,
        scheduler=scheduler,
    )
