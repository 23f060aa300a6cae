from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the schema also runs on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class FanoutJob(Base):
    __tablename__ = "fanout_jobs"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_fanout_jobs_idempotency_key"),
        Index("ix_fanout_jobs_status_created", "status", "created_at"),
        Index("ix_fanout_jobs_channel_kind", "channel", "kind"),
        CheckConstraint(
            "sent_count + failed_count + remaining_count = target_count",
            name="ck_fanout_jobs_counters",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # The unique constraint is the atomic reservation for duplicate submissions.
    idempotency_key: Mapped[str] = mapped_column(String(256))
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(String(16))
    kind: Mapped[str] = mapped_column(String(32))
    subject: Mapped[str] = mapped_column(String(100))
    body: Mapped[str] = mapped_column(Text)
    target_mode: Mapped[str] = mapped_column(String(16))
    target_ids_json: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    status: Mapped[str] = mapped_column(String(16))
    target_count: Mapped[int] = mapped_column(Integer, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    remaining_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class FanoutDeliveryUnit(Base):
    __tablename__ = "fanout_delivery_units"
    __table_args__ = (
        Index("ix_fanout_delivery_units_outcome", "job_id", "outcome"),
    )

    # One row per (job, recipient); the composite key blocks duplicate fan-out.
    job_id: Mapped[str] = mapped_column(String, ForeignKey("fanout_jobs.id"), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    outcome: Mapped[str] = mapped_column(String(16))
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FanoutDeadLetter(Base):
    __tablename__ = "fanout_dead_letters"
    __table_args__ = (
        UniqueConstraint(
            "job_id",
            "recipient_id",
            "attempt_number",
            name="uq_fanout_dead_letters_attempt",
        ),
        Index("ix_fanout_dead_letters_resolved", "resolved_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("fanout_jobs.id"), index=True)
    recipient_id: Mapped[str] = mapped_column(String)
    attempt_number: Mapped[int] = mapped_column(Integer)
    attempts_made: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String(64))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    first_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_failed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    # Manual resolution metadata; the delivery path never reads these rows back.
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(64), nullable=True)
    replay_job_id: Mapped[str | None] = mapped_column(String, nullable=True)


class FanoutTerminalOutcome(Base):
    __tablename__ = "fanout_terminal_outcomes"
    __table_args__ = (
        UniqueConstraint("job_id", "recipient_id", name="uq_fanout_terminal_outcomes_unit"),
        Index("ix_fanout_terminal_outcomes_recorded", "recorded_at"),
    )

    # Append-only log read by the stats aggregator.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, ForeignKey("fanout_jobs.id"))
    recipient_id: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String(16))
    attempts_made: Mapped[int] = mapped_column(Integer)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
