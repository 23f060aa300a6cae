from __future__ import annotations

import logging
from typing import Awaitable, Callable

from fanout.core.errors import DeadLetterNotFoundError, DeadLetterStateError
from fanout.domain.records import CHANNEL_BROADCAST, DeadLetterRecord, Job
from fanout.domain.requests import build_job_request
from fanout.persistence.base import DeliveryStore
from fanout.services.idempotency import Admission
from fanout.services.notifications.scheduling import utc_now


logger = logging.getLogger(__name__)

RESOLUTION_MANUAL = "manual"
RESOLUTION_REPLAYED = "replayed"

SubmitFn = Callable[..., Awaitable[Admission]]


def replay_key(dead_letter_id: str) -> str:
    return f"replay:{dead_letter_id}"


class DeadLetterService:
    """Operator-facing view of the dead-letter store.

    The live delivery path only appends; listing, resolving and replaying happen here.
    """

    def __init__(self, *, store: DeliveryStore, submit: SubmitFn) -> None:
        self._store = store
        self._submit = submit

    async def list_records(
        self,
        *,
        resolved: bool | None = None,
        job_id: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        return await self._store.list_dead_letters(resolved=resolved, job_id=job_id, limit=max(1, min(limit, 500)))

    async def get(self, dead_letter_id: str) -> DeadLetterRecord:
        record = await self._store.get_dead_letter(dead_letter_id)
        if record is None:
            raise DeadLetterNotFoundError(f"dead letter {dead_letter_id} not found")
        return record

    async def resolve(
        self,
        dead_letter_id: str,
        *,
        actor_id: str | None,
        resolution: str = RESOLUTION_MANUAL,
    ) -> DeadLetterRecord:
        record = await self.get(dead_letter_id)
        if record.is_resolved:
            raise DeadLetterStateError(f"dead letter {dead_letter_id} is already resolved")
        updated = await self._store.resolve_dead_letter(
            dead_letter_id,
            resolved_by=actor_id,
            resolution=resolution,
            resolved_at=utc_now(),
        )
        if updated is None:
            raise DeadLetterStateError(f"dead letter {dead_letter_id} is already resolved")
        logger.info("dead_letter_resolved id=%s actor=%s resolution=%s", dead_letter_id, actor_id, resolution)
        return updated

    async def replay(self, dead_letter_id: str, *, actor_id: str | None) -> tuple[Job, DeadLetterRecord]:
        # Replays are idempotent per record: a second replay returns the job the first one created.
        record = await self.get(dead_letter_id)
        key = replay_key(dead_letter_id)
        existing = await self._store.get_job_by_key(key)
        if existing is not None:
            return existing, record
        if record.is_resolved:
            raise DeadLetterStateError(f"dead letter {dead_letter_id} is already resolved")
        payload = record.payload
        request = build_job_request(
            {
                "channel": payload.get("channel") or CHANNEL_BROADCAST,
                "kind": payload.get("kind"),
                "subject": payload.get("subject"),
                "body": payload.get("body"),
                "target": {"mode": "EXPLICIT", "recipient_ids": [record.recipient_id]},
                "metadata": {
                    **dict(payload.get("metadata") or {}),
                    "replay_of": dead_letter_id,
                    "source_job_id": record.job_id,
                },
            }
        )
        admission = await self._submit(key, request, created_by=actor_id)
        updated = await self._store.resolve_dead_letter(
            dead_letter_id,
            resolved_by=actor_id,
            resolution=RESOLUTION_REPLAYED,
            resolved_at=utc_now(),
            replay_job_id=admission.job.id,
        )
        logger.info(
            "dead_letter_replayed id=%s job_id=%s replay_job_id=%s actor=%s",
            dead_letter_id,
            record.job_id,
            admission.job.id,
            actor_id,
        )
        return admission.job, updated or await self.get(dead_letter_id)
