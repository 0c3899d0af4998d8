"""Payment record model shared by all providers."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base, TimestampMixin


class PaymentRecord(Base, TimestampMixin):
    """A checkout the user started, advanced by provider webhooks.

    Buys either a subscription plan or a credit pack, never both.
    """

    __tablename__ = "payment_records"
    __table_args__ = (
        CheckConstraint(
            "(plan_id IS NULL) <> (pack_id IS NULL)",
            name="payment_records_plan_xor_pack",
        ),
    )

    payment_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    provider: Mapped[str] = mapped_column(String(20))
    user_id: Mapped[uuid.UUID] = mapped_column(index=True)
    order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    amount_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    crypto_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(24, 10), nullable=True
    )
    currency: Mapped[str | None] = mapped_column(String(20), nullable=True)

    plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pack_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Normalised PaymentStatus
    status: Mapped[str] = mapped_column(String(20), default="waiting")

    # True once the terminal outcome (grant or no grant) was applied
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Over/under payment or refund after grant
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)

    credits_granted: Mapped[int | None] = mapped_column(nullable=True)
    subscription_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    webhook_count: Mapped[int] = mapped_column(default=0, server_default="0")

    # Last provider payload
    provider_data: Mapped[dict] = mapped_column(JSONB, default=dict)

    def __repr__(self) -> str:
        return (
            f"<PaymentRecord(payment_id={self.payment_id!r}, "
            f"provider={self.provider!r}, status={self.status!r})>"
        )
