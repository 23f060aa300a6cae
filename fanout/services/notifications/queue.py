from __future__ import annotations

import asyncio
from datetime import timedelta
import logging
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from fanout.core.config import Settings
from fanout.core.errors import StoreUnavailableError
from fanout.services.notifications.executor import DeliveryTask


logger = logging.getLogger(__name__)

DELIVER_UNIT_FUNCTION = "deliver_unit"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def unit_job_id(task: DeliveryTask) -> str:
    # One ARQ job id per attempt so a double enqueue of the same attempt collapses in Redis.
    return f"fanout:{task.job_id}:{task.recipient_id}:{task.attempt_number}"


class ArqScheduler:
    """Hands delivery units to ARQ workers; backoff becomes ``_defer_by``."""

    def __init__(self, *, settings: Settings, pool: Any | None = None) -> None:
        self._settings = settings
        self._pool = pool
        self._owns_pool = pool is None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def get_pool(self) -> Any:
        # Cache the ARQ Redis pool per event loop to avoid reconnect churn.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and (not self._owns_pool or self._pool_loop == current_loop):
            return self._pool
        async with self._lock:
            if self._pool is None or self._pool_loop != current_loop:
                self._pool = await create_pool(
                    RedisSettings.from_dsn(self._settings.redis_url),
                    default_queue_name=self._settings.delivery_queue_name,
                )
                self._pool_loop = current_loop
        return self._pool

    async def schedule(self, task: DeliveryTask, *, delay_ms: int = 0) -> None:
        defer_delta = timedelta(milliseconds=max(0, int(delay_ms)))
        try:
            pool = await self.get_pool()
            await pool.enqueue_job(
                DELIVER_UNIT_FUNCTION,
                task.as_dict(),
                _job_id=unit_job_id(task),
                _queue_name=self._settings.delivery_queue_name,
                _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
            )
        except Exception as exc:  # noqa: BLE001 - redis client errors vary by driver version.
            logger.error(
                "delivery_enqueue_failed job_id=%s recipient_id=%s attempt=%s error=%s",
                task.job_id,
                task.recipient_id,
                task.attempt_number,
                type(exc).__name__,
            )
            raise StoreUnavailableError("delivery queue is unavailable") from exc

    async def queue_depth(self) -> int | None:
        # Return None to signal Redis unavailability to ops endpoints.
        try:
            pool = await self.get_pool()
            return int(await pool.zcard(_queue_key(self._settings.delivery_queue_name)))
        except Exception:  # noqa: BLE001 - depth is advisory.
            return None

    async def aclose(self) -> None:
        if self._owns_pool and self._pool is not None:
            await self._pool.aclose()
            self._pool = None
