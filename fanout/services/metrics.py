"""Prometheus exposition for the delivery engine.

Every metric lives in a registry owned by one ``EngineMetrics`` instance, created
with the engine and discarded with it, so parallel engines (and parallel tests)
never share counters.

Delivery aggregates are exported as:
    - ``<prefix>_dlq_alerts_failed_total``: unresolved dead-lettered deliveries.
    - ``<prefix>_dlq_alerts_delivered_total``: delivered units in the stats window.
    - ``<prefix>_dlq_alerts_average_attempts``: mean attempts over terminal units.
"""

from __future__ import annotations

import re
import time
from typing import Awaitable, Callable, Iterable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    ProcessCollector,
    generate_latest,
)
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from fanout.domain.records import DeliveryStats


_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")

StatsSource = Callable[[], Awaitable[DeliveryStats]]


def _metric_prefix(prefix: str) -> str:
    cleaned = _INVALID_NAME_CHARS.sub("_", prefix.strip()) or "fanout"
    return cleaned if not cleaned[0].isdigit() else f"_{cleaned}"


def format_uptime(seconds: int) -> str:
    days, rest = divmod(max(0, int(seconds)), 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{days}d {hours}h {minutes}m {secs}s"


class _DeliveryStatsCollector(Collector):
    def __init__(self, metrics: "EngineMetrics") -> None:
        self._metrics = metrics

    def collect(self) -> Iterable[Metric]:
        prefix = self._metrics.prefix
        snapshot = self._metrics.snapshot
        yield CounterMetricFamily(
            f"{prefix}_dlq_alerts_failed",
            "Dead-lettered deliveries not yet resolved",
            value=snapshot.failed_count,
        )
        yield CounterMetricFamily(
            f"{prefix}_dlq_alerts_delivered",
            "Delivered units in the stats window",
            value=snapshot.delivered_count,
        )
        yield GaugeMetricFamily(
            f"{prefix}_dlq_alerts_average_attempts",
            "Average delivery attempts per terminal unit",
            value=snapshot.average_attempts,
        )


class EngineMetrics:
    content_type = CONTENT_TYPE_LATEST

    def __init__(
        self,
        *,
        prefix: str = "fanout",
        registry: CollectorRegistry | None = None,
        stats_source: StatsSource | None = None,
    ) -> None:
        self.prefix = _metric_prefix(prefix)
        self.registry = registry or CollectorRegistry()
        self._stats_source = stats_source
        self._started = time.monotonic()
        self.snapshot = DeliveryStats(failed_count=0, delivered_count=0, average_attempts=0.0)

        self._process = ProcessCollector(registry=self.registry)
        self.uptime = Gauge(f"{self.prefix}_uptime_seconds", "Engine uptime in seconds", registry=self.registry)
        self.uptime.set_function(self.uptime_seconds)
        self.active_requests = Gauge(
            f"{self.prefix}_http_requests_active",
            "Currently active HTTP requests",
            registry=self.registry,
        )
        self.jobs_submitted = Counter(
            f"{self.prefix}_jobs_submitted",
            "Jobs created by submissions",
            ["channel"],
            registry=self.registry,
        )
        self.jobs_duplicate = Counter(
            f"{self.prefix}_jobs_duplicate",
            "Submissions answered with an existing job",
            ["channel"],
            registry=self.registry,
        )
        self.delivery_attempts = Counter(
            f"{self.prefix}_delivery_attempts",
            "Transport calls made",
            registry=self.registry,
        )
        self.deliveries = Counter(
            f"{self.prefix}_deliveries_delivered",
            "Units delivered",
            registry=self.registry,
        )
        self.retries = Counter(
            f"{self.prefix}_delivery_retries",
            "Retries scheduled after transient failures",
            registry=self.registry,
        )
        self.dead_letters = Counter(
            f"{self.prefix}_dead_letters",
            "Units dead-lettered",
            ["reason"],
            registry=self.registry,
        )
        self.registry.register(_DeliveryStatsCollector(self))

    def set_stats_source(self, source: StatsSource) -> None:
        self._stats_source = source

    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started

    def memory_rss_bytes(self) -> float | None:
        # The process collector only reports on platforms with /proc.
        for family in self._process.collect():
            if family.name == "process_resident_memory_bytes" and family.samples:
                return family.samples[0].value
        return None

    def on_attempt(self) -> None:
        self.delivery_attempts.inc()

    def on_delivered(self) -> None:
        self.deliveries.inc()

    def on_retry(self) -> None:
        self.retries.inc()

    def on_dead_letter(self, reason: str) -> None:
        self.dead_letters.labels(reason=reason or "unknown").inc()

    def on_submission(self, *, channel: str, created: bool) -> None:
        counter = self.jobs_submitted if created else self.jobs_duplicate
        counter.labels(channel=channel).inc()

    async def refresh(self) -> DeliveryStats:
        if self._stats_source is not None:
            self.snapshot = await self._stats_source()
        return self.snapshot

    async def render(self) -> bytes:
        # Refresh the aggregate snapshot before each scrape; counters are live already.
        await self.refresh()
        return generate_latest(self.registry)
