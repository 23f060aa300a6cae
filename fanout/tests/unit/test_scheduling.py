from __future__ import annotations

from datetime import datetime, timezone

from fanout.services.notifications.scheduling import dedupe_window_start, retry_backoff_ms


def _backoff(attempt_no: int, *, jitter_ms: int = 0, recipient_id: str = "u1") -> int:
    return retry_backoff_ms(
        job_id="job-1",
        recipient_id=recipient_id,
        attempt_no=attempt_no,
        base_ms=1000,
        cap_ms=60000,
        jitter_ms=jitter_ms,
    )


def test_backoff_doubles_until_cap() -> None:
    assert [_backoff(n) for n in range(1, 5)] == [1000, 2000, 4000, 8000]
    assert _backoff(10) == 60000


def test_jitter_is_deterministic_and_bounded() -> None:
    first = _backoff(2, jitter_ms=250)
    assert first == _backoff(2, jitter_ms=250)
    assert 2000 <= first <= 2250
    spread = {_backoff(2, jitter_ms=250, recipient_id=f"u{index}") for index in range(20)}
    assert len(spread) > 1


def test_dedupe_window_buckets_timestamps() -> None:
    early = datetime(2024, 5, 1, 12, 0, 10, tzinfo=timezone.utc)
    late = datetime(2024, 5, 1, 12, 4, 59, tzinfo=timezone.utc)
    next_bucket = datetime(2024, 5, 1, 12, 5, 0, tzinfo=timezone.utc)
    assert dedupe_window_start(now=early, window_seconds=300) == dedupe_window_start(now=late, window_seconds=300)
    assert dedupe_window_start(now=next_bucket, window_seconds=300) == next_bucket
