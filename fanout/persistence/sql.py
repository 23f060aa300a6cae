from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy import case, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from fanout.core.errors import StoreUnavailableError
from fanout.domain.models import (
    Base,
    FanoutDeadLetter,
    FanoutDeliveryUnit,
    FanoutJob,
    FanoutTerminalOutcome,
)
from fanout.domain.records import DeadLetterRecord, DeliveryUnit, Job, TerminalOutcome
from fanout.domain.state import (
    JobStatus,
    UnitOutcome,
    UnitState,
    job_status_sources,
    require_terminal_job_status,
)
from fanout.persistence.db import build_sessionmaker, pool_stats


logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_job(row: FanoutJob) -> Job:
    return Job(
        id=row.id,
        idempotency_key=row.idempotency_key,
        channel=row.channel,
        kind=row.kind,
        subject=row.subject,
        body=row.body,
        target_mode=row.target_mode,
        target_ids=list(row.target_ids_json) if row.target_ids_json is not None else None,
        status=JobStatus(row.status),
        target_count=int(row.target_count or 0),
        sent_count=int(row.sent_count or 0),
        failed_count=int(row.failed_count or 0),
        remaining_count=int(row.remaining_count or 0),
        created_at=_aware(row.created_at),
        created_by=row.created_by,
        request_hash=row.request_hash,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        last_error=row.last_error,
        metadata=dict(row.metadata_json or {}),
    )


def _to_unit(row: FanoutDeliveryUnit) -> DeliveryUnit:
    return DeliveryUnit(
        job_id=row.job_id,
        recipient_id=row.recipient_id,
        state=UnitState(
            outcome=UnitOutcome(row.outcome),
            attempt_number=int(row.attempt_number),
            last_error=row.last_error,
            next_retry_at=_aware(row.next_retry_at),
        ),
        updated_at=_aware(row.updated_at),
    )


def _to_dead_letter(row: FanoutDeadLetter) -> DeadLetterRecord:
    return DeadLetterRecord(
        id=row.id,
        job_id=row.job_id,
        recipient_id=row.recipient_id,
        attempt_number=int(row.attempt_number),
        attempts_made=int(row.attempts_made),
        reason=row.reason,
        last_error=row.last_error,
        payload=dict(row.payload_json or {}),
        first_failed_at=_aware(row.first_failed_at),
        last_failed_at=_aware(row.last_failed_at),
        created_at=_aware(row.created_at),
        resolved_at=_aware(row.resolved_at),
        resolved_by=row.resolved_by,
        resolution=row.resolution,
        replay_job_id=row.replay_job_id,
    )


def _unit_values(state: UnitState, updated_at: datetime) -> dict[str, Any]:
    return {
        "outcome": state.outcome.value,
        "attempt_number": state.attempt_number,
        "last_error": state.last_error,
        "next_retry_at": state.next_retry_at,
        "updated_at": updated_at,
    }


def _expected_unit(job_id: str, recipient_id: str, expected: UnitState) -> tuple[Any, ...]:
    # Compare-and-set predicate: the row must still hold the state the caller read.
    return (
        FanoutDeliveryUnit.job_id == job_id,
        FanoutDeliveryUnit.recipient_id == recipient_id,
        FanoutDeliveryUnit.outcome == expected.outcome.value,
        FanoutDeliveryUnit.attempt_number == expected.attempt_number,
    )


class SqlDeliveryStore:
    """SQLAlchemy store; unique constraints and conditional updates make each call atomic."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessionmaker = build_sessionmaker(engine)

    async def create_schema(self) -> None:
        # Used by tests and local runs; deployments apply the Alembic revisions instead.
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def pool_stats(self) -> dict[str, int | None]:
        return pool_stats(self._engine)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.error("store_unavailable error=%s", type(exc).__name__)
            raise StoreUnavailableError("delivery store is unavailable") from exc

    async def _fetch_job(self, session: AsyncSession, job_id: str) -> Job | None:
        row = (
            await session.execute(
                select(FanoutJob).where(FanoutJob.id == job_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        return _to_job(row) if row is not None else None

    async def create_job(self, job: Job) -> tuple[Job, bool]:
        async with self._session() as session:
            session.add(
                FanoutJob(
                    id=job.id,
                    idempotency_key=job.idempotency_key,
                    request_hash=job.request_hash,
                    channel=job.channel,
                    kind=job.kind,
                    subject=job.subject,
                    body=job.body,
                    target_mode=job.target_mode,
                    target_ids_json=job.target_ids,
                    metadata_json=job.metadata,
                    status=job.status.value,
                    target_count=job.target_count,
                    sent_count=job.sent_count,
                    failed_count=job.failed_count,
                    remaining_count=job.remaining_count,
                    created_by=job.created_by,
                    created_at=job.created_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent submission reserved the key first; hand back its job.
                await session.rollback()
                existing = (
                    await session.execute(
                        select(FanoutJob).where(FanoutJob.idempotency_key == job.idempotency_key)
                    )
                ).scalar_one_or_none()
                if existing is None:
                    raise
                return _to_job(existing), False
            return job, True

    async def get_job(self, job_id: str) -> Job | None:
        async with self._session() as session:
            return await self._fetch_job(session, job_id)

    async def get_job_by_key(self, idempotency_key: str) -> Job | None:
        async with self._session() as session:
            row = (
                await session.execute(select(FanoutJob).where(FanoutJob.idempotency_key == idempotency_key))
            ).scalar_one_or_none()
            return _to_job(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        kind: str | None = None,
        channel: str | None = None,
        created_by: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        stmt = select(FanoutJob)
        if status is not None:
            stmt = stmt.where(FanoutJob.status == JobStatus(status).value)
        if kind is not None:
            stmt = stmt.where(FanoutJob.kind == kind)
        if channel is not None:
            stmt = stmt.where(FanoutJob.channel == channel)
        if created_by is not None:
            stmt = stmt.where(FanoutJob.created_by == created_by)
        stmt = stmt.order_by(FanoutJob.created_at.desc(), FanoutJob.id.desc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_job(row) for row in rows]

    async def list_jobs_by_status(self, status: JobStatus) -> list[Job]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(FanoutJob)
                    .where(FanoutJob.status == JobStatus(status).value)
                    .order_by(FanoutJob.created_at.asc())
                )
            ).scalars().all()
            return [_to_job(row) for row in rows]

    async def start_job(self, job_id: str, *, recipient_ids: list[str], started_at: datetime) -> Job | None:
        async with self._session() as session:
            result = await session.execute(
                update(FanoutJob)
                .where(
                    FanoutJob.id == job_id,
                    FanoutJob.status.in_([source.value for source in job_status_sources(JobStatus.PROCESSING)]),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    target_count=len(recipient_ids),
                    remaining_count=len(recipient_ids),
                    started_at=started_at,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            if recipient_ids:
                await session.execute(
                    insert(FanoutDeliveryUnit),
                    [
                        {
                            "job_id": job_id,
                            "recipient_id": recipient_id,
                            "position": position,
                            **_unit_values(UnitState(), started_at),
                        }
                        for position, recipient_id in enumerate(recipient_ids)
                    ],
                )
            await session.commit()
            return await self._fetch_job(session, job_id)

    async def fail_pending_job(self, job_id: str, *, error: str, completed_at: datetime) -> Job | None:
        async with self._session() as session:
            result = await session.execute(
                update(FanoutJob)
                .where(FanoutJob.id == job_id, FanoutJob.status == JobStatus.PENDING.value)
                .values(status=JobStatus.FAILED.value, last_error=error, completed_at=completed_at)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return await self._fetch_job(session, job_id)

    async def get_unit(self, job_id: str, recipient_id: str) -> DeliveryUnit | None:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(FanoutDeliveryUnit).where(
                        FanoutDeliveryUnit.job_id == job_id,
                        FanoutDeliveryUnit.recipient_id == recipient_id,
                    )
                )
            ).scalar_one_or_none()
            return _to_unit(row) if row is not None else None

    async def list_units(self, job_id: str) -> list[DeliveryUnit]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(FanoutDeliveryUnit)
                    .where(FanoutDeliveryUnit.job_id == job_id)
                    .order_by(FanoutDeliveryUnit.position.asc())
                )
            ).scalars().all()
            return [_to_unit(row) for row in rows]

    async def update_unit(
        self,
        job_id: str,
        recipient_id: str,
        *,
        expected: UnitState,
        new: UnitState,
        updated_at: datetime,
    ) -> bool:
        if expected.is_terminal:
            return False
        async with self._session() as session:
            result = await session.execute(
                update(FanoutDeliveryUnit)
                .where(*_expected_unit(job_id, recipient_id, expected))
                .values(**_unit_values(new, updated_at))
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            if new.last_error:
                await session.execute(
                    update(FanoutJob).where(FanoutJob.id == job_id).values(last_error=new.last_error)
                )
            await session.commit()
            return True

    async def record_terminal(
        self,
        job_id: str,
        recipient_id: str,
        *,
        expected: UnitState,
        new: UnitState,
        recorded_at: datetime,
    ) -> Job | None:
        if expected.is_terminal:
            return None
        delivered = new.outcome == UnitOutcome.DELIVERED
        async with self._session() as session:
            unit_result = await session.execute(
                update(FanoutDeliveryUnit)
                .where(*_expected_unit(job_id, recipient_id, expected))
                .values(**_unit_values(new, recorded_at))
            )
            if unit_result.rowcount != 1:
                await session.rollback()
                return None
            job_values: dict[str, Any] = {
                "sent_count": FanoutJob.sent_count + (1 if delivered else 0),
                "failed_count": FanoutJob.failed_count + (0 if delivered else 1),
                "remaining_count": FanoutJob.remaining_count - 1,
            }
            if not delivered and new.last_error:
                job_values["last_error"] = new.last_error
            job_result = await session.execute(
                update(FanoutJob)
                .where(
                    FanoutJob.id == job_id,
                    FanoutJob.status == JobStatus.PROCESSING.value,
                    FanoutJob.remaining_count > 0,
                )
                .values(**job_values)
            )
            if job_result.rowcount != 1:
                await session.rollback()
                return None
            session.add(
                FanoutTerminalOutcome(
                    job_id=job_id,
                    recipient_id=recipient_id,
                    outcome=new.outcome.value,
                    attempts_made=new.attempt_number,
                    recorded_at=recorded_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return await self._fetch_job(session, job_id)

    async def finalize_job(self, job_id: str, *, status: JobStatus, completed_at: datetime) -> Job | None:
        status = require_terminal_job_status(status)
        async with self._session() as session:
            result = await session.execute(
                update(FanoutJob)
                .where(
                    FanoutJob.id == job_id,
                    FanoutJob.status == JobStatus.PROCESSING.value,
                    FanoutJob.remaining_count == 0,
                )
                .values(status=status.value, completed_at=completed_at)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return await self._fetch_job(session, job_id)

    async def add_dead_letter(self, record: DeadLetterRecord) -> DeadLetterRecord:
        async with self._session() as session:
            session.add(
                FanoutDeadLetter(
                    id=record.id,
                    job_id=record.job_id,
                    recipient_id=record.recipient_id,
                    attempt_number=record.attempt_number,
                    attempts_made=record.attempts_made,
                    reason=record.reason,
                    last_error=record.last_error,
                    payload_json=record.payload,
                    first_failed_at=record.first_failed_at,
                    last_failed_at=record.last_failed_at,
                    created_at=record.created_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Redelivered attempt: the record for this attempt already exists.
                await session.rollback()
                existing = (
                    await session.execute(
                        select(FanoutDeadLetter).where(
                            FanoutDeadLetter.job_id == record.job_id,
                            FanoutDeadLetter.recipient_id == record.recipient_id,
                            FanoutDeadLetter.attempt_number == record.attempt_number,
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    raise
                return _to_dead_letter(existing)
            return record

    async def get_dead_letter(self, dead_letter_id: str) -> DeadLetterRecord | None:
        async with self._session() as session:
            row = await session.get(FanoutDeadLetter, dead_letter_id)
            return _to_dead_letter(row) if row is not None else None

    async def list_dead_letters(
        self,
        *,
        resolved: bool | None = None,
        job_id: str | None = None,
        limit: int = 100,
    ) -> list[DeadLetterRecord]:
        stmt = select(FanoutDeadLetter)
        if resolved is True:
            stmt = stmt.where(FanoutDeadLetter.resolved_at.is_not(None))
        elif resolved is False:
            stmt = stmt.where(FanoutDeadLetter.resolved_at.is_(None))
        if job_id is not None:
            stmt = stmt.where(FanoutDeadLetter.job_id == job_id)
        stmt = stmt.order_by(FanoutDeadLetter.created_at.desc(), FanoutDeadLetter.id.desc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_dead_letter(row) for row in rows]

    async def resolve_dead_letter(
        self,
        dead_letter_id: str,
        *,
        resolved_by: str | None,
        resolution: str,
        resolved_at: datetime,
        replay_job_id: str | None = None,
    ) -> DeadLetterRecord | None:
        async with self._session() as session:
            result = await session.execute(
                update(FanoutDeadLetter)
                .where(FanoutDeadLetter.id == dead_letter_id, FanoutDeadLetter.resolved_at.is_(None))
                .values(
                    resolved_at=resolved_at,
                    resolved_by=resolved_by,
                    resolution=resolution,
                    replay_job_id=replay_job_id,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            row = (
                await session.execute(
                    select(FanoutDeadLetter)
                    .where(FanoutDeadLetter.id == dead_letter_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            return _to_dead_letter(row)

    async def count_unresolved_dead_letters(self) -> int:
        async with self._session() as session:
            count = await session.scalar(
                select(func.count()).select_from(FanoutDeadLetter).where(FanoutDeadLetter.resolved_at.is_(None))
            )
            return int(count or 0)

    async def outcome_totals(self, *, since: datetime | None = None) -> tuple[int, int, int]:
        stmt = select(
            func.coalesce(
                func.sum(case((FanoutTerminalOutcome.outcome == UnitOutcome.DELIVERED.value, 1), else_=0)),
                0,
            ),
            func.count(FanoutTerminalOutcome.id),
            func.coalesce(func.sum(FanoutTerminalOutcome.attempts_made), 0),
        )
        if since is not None:
            stmt = stmt.where(FanoutTerminalOutcome.recorded_at >= since)
        async with self._session() as session:
            delivered, total, attempts = (await session.execute(stmt)).one()
            return int(delivered or 0), int(total or 0), int(attempts or 0)

    async def list_outcomes(self, job_id: str) -> list[TerminalOutcome]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(FanoutTerminalOutcome)
                    .where(FanoutTerminalOutcome.job_id == job_id)
                    .order_by(FanoutTerminalOutcome.id.asc())
                )
            ).scalars().all()
            return [
                TerminalOutcome(
                    job_id=row.job_id,
                    recipient_id=row.recipient_id,
                    outcome=UnitOutcome(row.outcome),
                    attempts_made=int(row.attempts_made),
                    recorded_at=_aware(row.recorded_at),
                )
                for row in rows
            ]

    async def close(self) -> None:
        await self._engine.dispose()
