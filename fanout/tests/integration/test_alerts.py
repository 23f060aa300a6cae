from __future__ import annotations

import pytest

from fanout.domain.records import CHANNEL_ALERT
from fanout.domain.state import JobStatus
from fanout.providers.transport.fake import FakeTransport
from fanout.tests.utils.engine import make_settings


@pytest.mark.asyncio
async def test_alert_fans_out_to_alert_recipients(engine_factory) -> None:
    transport = FakeTransport()
    engine = await engine_factory(transport=transport)

    job = await engine.send_alert("critical", "db_down", "Primary database unreachable", {"region": "eu"})

    assert job is not None
    assert (job.channel, job.kind, job.created_by) == (CHANNEL_ALERT, "CRITICAL", "system:alerts")
    done = await engine.tracker.wait_for_terminal(job.id, timeout_s=10)
    assert done.status is JobStatus.COMPLETED
    assert sorted(transport.delivered()) == ["ops-1", "ops-2"]
    assert transport.calls[0][1]["metadata"] == {"region": "eu", "event": "db_down"}


@pytest.mark.asyncio
async def test_repeated_alert_inside_window_is_deduplicated(engine_factory) -> None:
    engine = await engine_factory(settings=make_settings(alert_dedupe_window_s=3600))
    first = await engine.send_alert("HIGH", "queue_backlog", "Backlog above 10k")
    second = await engine.send_alert("HIGH", "queue_backlog", "Backlog above 12k")
    other = await engine.send_alert("HIGH", "disk_full", "Disk at 95%")

    assert first is not None and second is not None and other is not None
    # A bucket boundary can fall between the two calls; then two distinct jobs are correct.
    if first.idempotency_key == second.idempotency_key:
        assert second.id == first.id
    assert other.id != first.id


@pytest.mark.asyncio
async def test_alert_without_recipients_is_skipped(engine_factory) -> None:
    engine = await engine_factory(settings=make_settings(alert_recipients_json="[]"))
    assert await engine.send_alert("WARNING", "cert_expiry", "Certificate expires in 7 days") is None
    assert await engine.list_jobs() == []


@pytest.mark.asyncio
async def test_invalid_alert_never_raises(engine_factory) -> None:
    engine = await engine_factory()
    assert await engine.send_alert("INFO", "noise", "not a valid severity") is None


@pytest.mark.asyncio
async def test_emit_runs_in_background(engine_factory) -> None:
    engine = await engine_factory()
    task = engine.alerts.emit("WARNING", "latency", "p95 above 2s")
    job = await task
    assert job is not None
    await engine.alerts.drain()
