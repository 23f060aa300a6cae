from __future__ import annotations

import logging
from typing import Iterable, Protocol

from fanout.core.errors import AudienceResolutionError, JobValidationError
from fanout.domain.records import CHANNEL_ALERT
from fanout.domain.requests import TargetSpec


logger = logging.getLogger(__name__)


class RecipientDirectory(Protocol):
    # Source of the eligible audience; who counts as eligible is decided outside the engine.
    async def eligible_recipients(self, *, channel: str) -> Iterable[str]:
        ...


class StaticRecipientDirectory:
    def __init__(self, recipients: Iterable[str] = (), *, alert_recipients: Iterable[str] = ()) -> None:
        self._recipients = list(recipients)
        self._alert_recipients = list(alert_recipients)

    def replace(self, recipients: Iterable[str]) -> None:
        # Swap the broadcast audience; running jobs keep the snapshot they resolved.
        self._recipients = list(recipients)

    async def eligible_recipients(self, *, channel: str) -> Iterable[str]:
        if channel == CHANNEL_ALERT:
            return list(self._alert_recipients)
        return list(self._recipients)


def _dedupe(recipient_ids: Iterable[str]) -> list[str]:
    # Keep the first occurrence of each id so explicit lists stay in caller order.
    seen: set[str] = set()
    ordered: list[str] = []
    for raw in recipient_ids:
        recipient_id = str(raw).strip()
        if recipient_id and recipient_id not in seen:
            seen.add(recipient_id)
            ordered.append(recipient_id)
    return ordered


class AudienceResolver:
    def __init__(self, directory: RecipientDirectory) -> None:
        self._directory = directory

    async def resolve(self, target: TargetSpec, *, channel: str) -> list[str]:
        if not target.is_global:
            recipients = _dedupe(target.recipient_ids)
            if not recipients:
                raise JobValidationError(
                    "explicit target is empty",
                    errors=[{"loc": "target.recipient_ids", "msg": "at least one recipient id is required"}],
                )
            return recipients
        try:
            raw = await self._directory.eligible_recipients(channel=channel)
            # Materialize immediately: the job works from this snapshot even if the directory changes.
            snapshot = sorted(_dedupe(raw))
        except AudienceResolutionError:
            raise
        except Exception as exc:  # noqa: BLE001 - directory implementations are external collaborators.
            logger.warning("audience_resolution_failed channel=%s error=%s", channel, type(exc).__name__)
            raise AudienceResolutionError(f"recipient directory failed: {type(exc).__name__}") from exc
        logger.info("audience_resolved channel=%s mode=GLOBAL count=%s", channel, len(snapshot))
        return snapshot
