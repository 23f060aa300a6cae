from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


def _percentile(values: list[float], quantile: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    idx = max(0, math.ceil(quantile * len(ordered)) - 1)
    return ordered[idx]


class RequestTelemetry:
    """Request samples and the active-request gauge owned by one app instance."""

    def __init__(self, *, max_samples: int = 20000) -> None:
        self._samples: Deque[RequestSample] = deque(maxlen=max_samples)
        self.active_requests = 0

    def request_started(self) -> None:
        self.active_requests += 1

    def request_finished(self, *, path: str, status_code: int, latency_ms: float) -> None:
        # Track request latency and status for availability and p95.
        self.active_requests = max(0, self.active_requests - 1)
        self._samples.append(RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms))

    def _window_samples(self, window_s: int) -> list[RequestSample]:
        cutoff = time.time() - window_s
        return [sample for sample in self._samples if sample.ts >= cutoff]

    def availability(self, window_s: int) -> float | None:
        # Calculate availability as % of non-5xx requests over the window.
        samples = self._window_samples(window_s)
        if not samples:
            return None
        failures = sum(1 for sample in samples if sample.status_code >= 500)
        return ((len(samples) - failures) / len(samples)) * 100.0

    def p95_latency(self, window_s: int, *, path_prefix: str | None = None) -> float | None:
        samples = self._window_samples(window_s)
        if path_prefix:
            samples = [sample for sample in samples if sample.path.startswith(path_prefix)]
        return _percentile([sample.latency_ms for sample in samples], 0.95)

    def summary(self, window_s: int = 300) -> dict[str, float | int | None]:
        samples = self._window_samples(window_s)
        return {
            "active": self.active_requests,
            "window_s": window_s,
            "count": len(samples),
            "availability_pct": self.availability(window_s),
            "p95_ms": self.p95_latency(window_s),
            "p95_ms_v1": self.p95_latency(window_s, path_prefix="/v1"),
        }
