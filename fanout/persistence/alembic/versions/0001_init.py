"""init

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18 09:30:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "fanout_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("idempotency_key", sa.String(length=256), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("subject", sa.String(length=100), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("target_mode", sa.String(length=16), nullable=False),
        sa.Column("target_ids_json", _JSON, nullable=True),
        sa.Column("metadata_json", _JSON, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("target_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        # Atomic reservation point for duplicate submissions.
        sa.UniqueConstraint("idempotency_key", name="uq_fanout_jobs_idempotency_key"),
        # Counters can never overshoot the resolved audience.
        sa.CheckConstraint(
            "sent_count + failed_count + remaining_count = target_count",
            name="ck_fanout_jobs_counters",
        ),
    )
    op.create_index("ix_fanout_jobs_status_created", "fanout_jobs", ["status", "created_at"])
    op.create_index("ix_fanout_jobs_channel_kind", "fanout_jobs", ["channel", "kind"])

    op.create_table(
        "fanout_delivery_units",
        sa.Column("job_id", sa.String(), sa.ForeignKey("fanout_jobs.id"), primary_key=True),
        sa.Column("recipient_id", sa.String(), primary_key=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_fanout_delivery_units_outcome", "fanout_delivery_units", ["job_id", "outcome"])

    op.create_table(
        "fanout_dead_letters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), sa.ForeignKey("fanout_jobs.id"), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload_json", _JSON, nullable=False),
        sa.Column("first_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution", sa.String(length=64), nullable=True),
        sa.Column("replay_job_id", sa.String(), nullable=True),
        sa.UniqueConstraint(
            "job_id",
            "recipient_id",
            "attempt_number",
            name="uq_fanout_dead_letters_attempt",
        ),
    )
    op.create_index("ix_fanout_dead_letters_job_id", "fanout_dead_letters", ["job_id"])
    op.create_index("ix_fanout_dead_letters_resolved", "fanout_dead_letters", ["resolved_at"])

    op.create_table(
        "fanout_terminal_outcomes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(), sa.ForeignKey("fanout_jobs.id"), nullable=False),
        sa.Column("recipient_id", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("job_id", "recipient_id", name="uq_fanout_terminal_outcomes_unit"),
    )
    op.create_index("ix_fanout_terminal_outcomes_recorded", "fanout_terminal_outcomes", ["recorded_at"])


def downgrade() -> None:
    op.drop_index("ix_fanout_terminal_outcomes_recorded", table_name="fanout_terminal_outcomes")
    op.drop_table("fanout_terminal_outcomes")
    op.drop_index("ix_fanout_dead_letters_resolved", table_name="fanout_dead_letters")
    op.drop_index("ix_fanout_dead_letters_job_id", table_name="fanout_dead_letters")
    op.drop_table("fanout_dead_letters")
    op.drop_index("ix_fanout_delivery_units_outcome", table_name="fanout_delivery_units")
    op.drop_table("fanout_delivery_units")
    op.drop_index("ix_fanout_jobs_channel_kind", table_name="fanout_jobs")
    op.drop_index("ix_fanout_jobs_status_created", table_name="fanout_jobs")
    op.drop_table("fanout_jobs")
