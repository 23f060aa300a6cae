from __future__ import annotations

from datetime import datetime, timezone
import hashlib


def utc_now() -> datetime:
    # Keep scheduling and retry bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)


def retry_backoff_ms(
    *,
    job_id: str,
    recipient_id: str,
    attempt_no: int,
    base_ms: int,
    cap_ms: int,
    jitter_ms: int,
) -> int:
    # Use exponential backoff with deterministic jitter to keep tests reproducible and avoid stampedes.
    base = max(1, int(base_ms))
    cap = max(base, int(cap_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    if jitter_ms <= 0:
        return backoff
    digest = hashlib.sha256(f"{job_id}:{recipient_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % (int(jitter_ms) + 1)
    return min(cap, backoff + jitter)


def dedupe_window_start(*, now: datetime, window_seconds: int) -> datetime:
    # Round to a stable bucket boundary so repeated alerts for one event collapse consistently.
    bucket = max(1, int(window_seconds))
    epoch = int(now.timestamp())
    rounded = epoch - (epoch % bucket)
    return datetime.fromtimestamp(rounded, tz=timezone.utc)
