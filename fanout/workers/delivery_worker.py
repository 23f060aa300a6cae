from __future__ import annotations

import logging
from typing import Any

from arq import run_worker
from arq.connections import RedisSettings

from fanout.core.config import get_settings
from fanout.core.logging import configure_logging
from fanout.services.notifications.engine import build_broadcast_engine
from fanout.services.notifications.executor import DeliveryTask
from fanout.services.notifications.queue import ArqScheduler

logger = logging.getLogger(__name__)


async def deliver_unit(ctx, raw: dict[str, Any]) -> str:
    # One ARQ job is one attempt; retries come back as new deferred jobs, never as ARQ retries.
    task = DeliveryTask.from_dict(raw)
    await ctx["engine"].executor.execute(task)
    return f"{task.job_id}:{task.recipient_id}:{task.attempt_number}"


async def _startup(ctx) -> None:
    settings = get_settings()
    configure_logging(settings)
    engine = build_broadcast_engine(settings, scheduler=ArqScheduler(settings=settings))
    # Recovery and the periodic sweep re-enqueue stalled units; ARQ job ids collapse duplicates.
    await engine.start(recover=True)
    ctx["engine"] = engine
    logger.info("delivery_worker_started queue=%s", settings.delivery_queue_name)


async def _shutdown(ctx) -> None:
    engine = ctx.get("engine")
    if engine is not None:
        await engine.stop()


class WorkerSettings:
    # Class attributes keep the settings usable from the ARQ CLI.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.delivery_queue_name
    max_jobs = max(1, int(settings.delivery_max_concurrency))
    job_timeout = max(1, int(settings.delivery_timeout_ms / 1000) + 30)
    max_tries = 1
    # Keep no results so a failed attempt can be re-enqueued under the same job id by the sweep.
    keep_result = 0
    functions = [deliver_unit]
    on_startup = _startup
    on_shutdown = _shutdown


def main() -> None:
    run_worker(WorkerSettings)
