"""Initial ledger schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from storycredits.models.generation_job import (
    JOB_STATUS_GUARD_FUNCTION,
    JOB_STATUS_GUARD_TRIGGER,
)

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "credit_grants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("consumed", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "remaining",
            sa.Integer(),
            sa.Computed("amount - consumed", persisted=True),
            nullable=False,
        ),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("burned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=False),
        sa.CheckConstraint("amount > 0", name="credit_grants_amount_positive"),
        sa.CheckConstraint(
            "consumed >= 0 AND consumed <= amount",
            name="credit_grants_consumed_within_amount",
        ),
        sa.UniqueConstraint("source_id", name="credit_grants_source_id_key"),
    )
    op.create_index("ix_credit_grants_user_id", "credit_grants", ["user_id"])
    op.create_index(
        "ix_credit_grants_user_expires", "credit_grants", ["user_id", "expires_at"]
    )

    op.create_table(
        "balance_transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "balance_after = balance_before + amount",
            name="balance_transactions_conserved",
        ),
        sa.CheckConstraint(
            "balance_after >= 0", name="balance_transactions_non_negative"
        ),
    )
    op.create_index(
        "ix_balance_transactions_user_id", "balance_transactions", ["user_id"]
    )
    op.create_index("ix_balance_transactions_type", "balance_transactions", ["type"])
    op.create_index(
        "ix_balance_transactions_created_at", "balance_transactions", ["created_at"]
    )

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("payment_id", sa.Text(), nullable=False),
        sa.Column("order_id", sa.Text(), nullable=True),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False),
        sa.Column("provider_status", sa.Text(), nullable=True),
        sa.Column("signature", sa.Text(), nullable=True),
        sa.Column("signature_verified", sa.Boolean(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("plan_id", sa.String(50), nullable=True),
        sa.Column("pack_id", sa.String(50), nullable=True),
        sa.Column("amount_usd", sa.Numeric(), nullable=True),
        sa.Column("currency", sa.Text(), nullable=True),
        sa.Column("raw_data", postgresql.JSONB(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_webhook_events_dedup",
        "webhook_events",
        ["payment_id", "payment_status", "received_at"],
    )
    op.create_index(
        "ix_webhook_events_unprocessed", "webhook_events", ["processed", "received_at"]
    )

    op.create_table(
        "payment_records",
        sa.Column("payment_id", sa.String(255), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("order_id", sa.String(255), nullable=True),
        sa.Column("amount_usd", sa.Numeric(12, 2), nullable=True),
        sa.Column("crypto_amount", sa.Numeric(24, 10), nullable=True),
        sa.Column("currency", sa.String(20), nullable=True),
        sa.Column("plan_id", sa.String(50), nullable=True),
        sa.Column("pack_id", sa.String(50), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=True),
        sa.Column(
            "subscription_expires_at", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("webhook_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("provider_data", postgresql.JSONB(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "(plan_id IS NULL) <> (pack_id IS NULL)",
            name="payment_records_plan_xor_pack",
        ),
    )
    op.create_index("ix_payment_records_user_id", "payment_records", ["user_id"])

    op.create_table(
        "user_subscriptions",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("plan_id", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(20), nullable=True),
        sa.Column(
            "current_period_end", sa.DateTime(timezone=True), nullable=False
        ),
        *_timestamps(),
    )

    op.create_table(
        "kv_store",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("value", postgresql.JSONB(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("credits_charged", sa.Integer(), nullable=False),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="generation_jobs_status_valid",
        ),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.execute(JOB_STATUS_GUARD_FUNCTION)
    op.execute(JOB_STATUS_GUARD_TRIGGER)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS generation_jobs_status_guard ON generation_jobs")
    op.execute("DROP FUNCTION IF EXISTS prevent_failed_job_completion()")
    op.drop_table("generation_jobs")
    op.drop_table("kv_store")
    op.drop_table("user_subscriptions")
    op.drop_table("payment_records")
    op.drop_table("webhook_events")
    op.drop_table("balance_transactions")
    op.drop_table("credit_grants")
