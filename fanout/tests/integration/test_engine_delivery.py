from __future__ import annotations

import asyncio

import pytest

from fanout.core.errors import AudienceResolutionError, JobValidationError
from fanout.domain.state import JobStatus, UnitOutcome
from fanout.providers.transport.fake import HANG, PERMANENT, TRANSIENT, FakeTransport
from fanout.services.notifications.audience import StaticRecipientDirectory
from fanout.services.notifications.executor import REASON_EXHAUSTED, REASON_PERMANENT
from fanout.tests.utils.engine import broadcast_request, explicit, make_settings


class _BrokenDirectory:
    async def eligible_recipients(self, *, channel: str) -> list[str]:
        raise RuntimeError("directory offline")


@pytest.mark.asyncio
async def test_mixed_outcomes_complete_with_exact_counts(engine_factory) -> None:
    recipients = [f"r{index}" for index in range(10)]
    transport = FakeTransport()
    transport.script("r7", TRANSIENT, TRANSIENT)
    transport.script("r8", TRANSIENT, TRANSIENT)
    transport.script("r9", *([TRANSIENT] * 5))
    engine = await engine_factory(transport=transport)

    admission = await engine.submit("release-42", broadcast_request(target=explicit(recipients)))
    assert admission.created
    assert admission.job.status is JobStatus.PROCESSING
    assert admission.job.target_count == 10

    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)
    assert (job.status, job.target_count, job.sent_count, job.failed_count) == (JobStatus.COMPLETED, 10, 9, 1)
    assert job.progress_percent == 100
    assert transport.attempts["r7"] == 3
    assert transport.attempts["r9"] == 5

    stats = await engine.stats()
    assert stats.delivered_count == 9
    assert stats.failed_count == 1
    assert stats.average_attempts == 1.8


@pytest.mark.asyncio
async def test_retry_ceiling_is_exact(engine_factory) -> None:
    transport = FakeTransport(default=TRANSIENT)
    engine = await engine_factory(transport=transport)

    admission = await engine.submit("always-down", broadcast_request(target=explicit(["u1"])))
    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)

    assert job.status is JobStatus.FAILED
    assert transport.attempts["u1"] == 5
    [record] = await engine.list_dead_letters(job_id=job.id)
    assert record.attempts_made == 5
    assert record.reason == REASON_EXHAUSTED
    assert record.last_error == "fake_transient"
    [unit] = await engine.list_deliveries(job.id)
    assert unit.outcome is UnitOutcome.DEAD_LETTERED


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(engine_factory) -> None:
    transport = FakeTransport()
    transport.script("bad", PERMANENT)
    engine = await engine_factory(transport=transport)

    admission = await engine.submit("one-bad", broadcast_request(target=explicit(["good", "bad"])))
    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)

    assert (job.status, job.sent_count, job.failed_count) == (JobStatus.COMPLETED, 1, 1)
    assert transport.attempts["bad"] == 1
    [record] = await engine.list_dead_letters(job_id=job.id)
    assert (record.recipient_id, record.attempts_made, record.reason) == ("bad", 1, REASON_PERMANENT)


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_transient(engine_factory) -> None:
    transport = FakeTransport()
    transport.script("slow", HANG)
    engine = await engine_factory(transport=transport, settings=make_settings(delivery_timeout_ms=50))

    admission = await engine.submit("slow-one", broadcast_request(target=explicit(["slow"])))
    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)

    assert job.status is JobStatus.COMPLETED
    assert transport.attempts["slow"] == 2


@pytest.mark.asyncio
async def test_concurrent_duplicate_submissions_create_one_job(engine_factory) -> None:
    transport = FakeTransport()
    engine = await engine_factory(transport=transport)
    request = broadcast_request(target=explicit(["u1", "u2"]))

    admissions = await asyncio.gather(*(engine.submit("same-key", request) for _ in range(20)))

    assert sum(1 for admission in admissions if admission.created) == 1
    assert len({admission.job.id for admission in admissions}) == 1
    job = await engine.tracker.wait_for_terminal(admissions[0].job.id, timeout_s=10)
    assert job.sent_count == 2
    assert sorted(transport.delivered()) == ["u1", "u2"]
    assert len(await engine.list_jobs()) == 1


@pytest.mark.asyncio
async def test_resubmission_after_completion_returns_same_job(engine_factory) -> None:
    engine = await engine_factory()
    first = await engine.submit("weekly-digest", broadcast_request(target=explicit(["u1"])))
    done = await engine.tracker.wait_for_terminal(first.job.id, timeout_s=10)

    again = await engine.submit("weekly-digest", broadcast_request(target=explicit(["u1"])))
    assert not again.created
    assert again.job == done


@pytest.mark.asyncio
async def test_invalid_request_reserves_nothing(engine_factory) -> None:
    engine = await engine_factory()
    with pytest.raises(JobValidationError):
        await engine.submit("bad-key", broadcast_request(subject="x"))
    with pytest.raises(JobValidationError):
        await engine.submit("   ", broadcast_request())
    assert await engine.store.get_job_by_key("bad-key") is None


@pytest.mark.asyncio
async def test_global_target_uses_directory_snapshot(engine_factory) -> None:
    transport = FakeTransport()
    engine = await engine_factory(transport=transport)

    admission = await engine.submit("everyone", broadcast_request(target="GLOBAL"))
    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)

    assert job.target_count == 5
    assert sorted(transport.delivered()) == [f"user-{index}" for index in range(5)]


@pytest.mark.asyncio
async def test_explicit_duplicates_are_collapsed(engine_factory) -> None:
    transport = FakeTransport()
    engine = await engine_factory(transport=transport)
    admission = await engine.submit("dupes", broadcast_request(target=explicit(["u1", "u2", "u1"])))
    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)
    assert job.target_count == 2
    assert transport.attempts["u1"] == 1


@pytest.mark.asyncio
async def test_empty_global_audience_fails_immediately(engine_factory) -> None:
    engine = await engine_factory(settings=make_settings(audience_recipients_json="[]"))
    admission = await engine.submit("nobody", broadcast_request(target="GLOBAL"))
    assert admission.job.status is JobStatus.FAILED
    assert (admission.job.target_count, admission.job.sent_count, admission.job.failed_count) == (0, 0, 0)


@pytest.mark.asyncio
async def test_directory_failure_fails_the_job(engine_factory) -> None:
    engine = await engine_factory(directory=_BrokenDirectory())
    with pytest.raises(AudienceResolutionError):
        await engine.submit("dir-down", broadcast_request(target="GLOBAL"))
    job = await engine.store.get_job_by_key("dir-down")
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert "RuntimeError" in (job.last_error or "")


@pytest.mark.asyncio
async def test_pool_caps_concurrent_transport_calls(engine_factory) -> None:
    transport = FakeTransport(delay_s=0.02)
    engine = await engine_factory(transport=transport, settings=make_settings(delivery_max_concurrency=3))

    first = await engine.submit("batch-a", broadcast_request(target=explicit([f"a{index}" for index in range(12)])))
    second = await engine.submit("batch-b", broadcast_request(target=explicit([f"b{index}" for index in range(12)])))
    await engine.tracker.wait_for_terminal(first.job.id, timeout_s=10)
    await engine.tracker.wait_for_terminal(second.job.id, timeout_s=10)

    assert transport.max_in_flight <= 3
    assert len(transport.calls) == 24


@pytest.mark.asyncio
async def test_preview_resolves_without_reserving(engine_factory) -> None:
    engine = await engine_factory()
    preview = await engine.preview(broadcast_request(target="GLOBAL"))
    assert (preview.target_count, preview.is_global) == (5, True)
    assert await engine.list_jobs() == []


@pytest.mark.asyncio
async def test_list_jobs_filters(engine_factory) -> None:
    engine = await engine_factory()
    info = await engine.submit("info-1", broadcast_request(kind="INFO", target=explicit(["u1"])))
    await engine.submit("warn-1", broadcast_request(kind="WARNING", target=explicit(["u1"])))
    await engine.tracker.wait_for_terminal(info.job.id, timeout_s=10)

    warnings = await engine.list_jobs(kind="warning")
    assert [job.idempotency_key for job in warnings] == ["warn-1"]
    with pytest.raises(JobValidationError):
        await engine.list_jobs(status="DONE")


@pytest.mark.asyncio
async def test_list_jobs_filters_by_creator(engine_factory) -> None:
    engine = await engine_factory()
    await engine.submit("mine-1", broadcast_request(target=explicit(["u1"])), created_by="admin-1")
    await engine.submit("theirs-1", broadcast_request(target=explicit(["u1"])), created_by="admin-2")

    mine = await engine.list_jobs(created_by="admin-1")
    assert [job.idempotency_key for job in mine] == ["mine-1"]
    assert len(await engine.list_jobs()) == 2


@pytest.mark.asyncio
async def test_global_snapshot_ignores_directory_changes_mid_job(engine_factory) -> None:
    directory = StaticRecipientDirectory(["a", "b", "c"])
    transport = FakeTransport(delay_s=0.05)
    engine = await engine_factory(transport=transport, directory=directory)

    admission = await engine.submit("snapshot-1", broadcast_request(target="GLOBAL"))
    assert admission.job.status is JobStatus.PROCESSING
    directory.replace(["c", "d", "e", "f"])

    job = await engine.tracker.wait_for_terminal(admission.job.id, timeout_s=10)
    assert (job.target_count, job.sent_count) == (3, 3)
    assert sorted(transport.delivered()) == ["a", "b", "c"]
    assert [unit.recipient_id for unit in await engine.list_deliveries(job.id)] == ["a", "b", "c"]
    # New jobs see the updated audience.
    preview = await engine.preview(broadcast_request(target="GLOBAL"))
    assert preview.target_count == 4
