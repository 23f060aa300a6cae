from __future__ import annotations

from datetime import timedelta

from fanout.core.config import Settings
from fanout.domain.records import DeliveryStats
from fanout.persistence.base import DeliveryStore
from fanout.services.notifications.scheduling import utc_now


class StatsAggregator:
    """Point-in-time delivery aggregates.

    Reads the unresolved dead-letter count and the append-only terminal-outcome log,
    never the per-job locks, so scraping cannot slow the delivery path.
    """

    def __init__(self, *, store: DeliveryStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    async def stats(self) -> DeliveryStats:
        window_hours = int(self._settings.stats_window_hours or 0)
        since = utc_now() - timedelta(hours=window_hours) if window_hours > 0 else None
        failed = await self._store.count_unresolved_dead_letters()
        delivered, terminal, attempts = await self._store.outcome_totals(since=since)
        average = round(attempts / terminal, 2) if terminal else 0.0
        return DeliveryStats(failed_count=failed, delivered_count=delivered, average_attempts=average)
