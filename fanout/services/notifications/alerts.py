from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from fanout.core.config import Settings
from fanout.domain.records import CHANNEL_ALERT, Job
from fanout.services.idempotency import Admission
from fanout.services.notifications.scheduling import dedupe_window_start, utc_now


logger = logging.getLogger(__name__)

SubmitFn = Callable[..., Awaitable[Admission]]


def alert_key(*, event: str, window_seconds: int) -> str:
    window = dedupe_window_start(now=utc_now(), window_seconds=window_seconds)
    return f"alert:{event}:{window.isoformat()}"


class AlertService:
    """Operational alert channel on top of the same engine.

    Alerts go to the configured alert recipients with an idempotency key bucketed by
    event and dedupe window, so an alert storm collapses to one job per window.
    Sending never raises into the caller.
    """

    def __init__(self, *, submit: SubmitFn, settings: Settings) -> None:
        self._submit = submit
        self._settings = settings
        self._pending: set[asyncio.Task[Job | None]] = set()

    @property
    def recipients(self) -> list[str]:
        return self._settings.alert_recipients()

    def build_request(
        self,
        severity: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "channel": CHANNEL_ALERT,
            "kind": severity,
            "subject": event,
            "body": message,
            "target": {"mode": "EXPLICIT", "recipient_ids": self.recipients},
            "metadata": {**(metadata or {}), "event": event},
        }

    async def send_alert(
        self,
        severity: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> Job | None:
        if not self.recipients:
            logger.warning("alert_skipped_no_recipients event=%s severity=%s", event, severity)
            return None
        request = self.build_request(severity, event, message, metadata)
        key = alert_key(event=event, window_seconds=self._settings.alert_dedupe_window_s)
        try:
            admission = await self._submit(key, request, created_by="system:alerts")
        except Exception:  # noqa: BLE001 - alerting must never take down the caller.
            logger.exception("alert_dispatch_failed event=%s severity=%s", event, severity)
            return None
        if not admission.created:
            logger.info("alert_deduplicated event=%s job_id=%s", event, admission.job.id)
        return admission.job

    def emit(
        self,
        severity: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> asyncio.Task[Job | None]:
        # Fire-and-forget variant; the task is retained until done so it is not garbage collected.
        task = asyncio.create_task(self.send_alert(severity, event, message, metadata))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
