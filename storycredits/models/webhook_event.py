"""Webhook event log used for deduplication and replay."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Index, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base


class WebhookEvent(Base):
    """Every webhook delivery we accepted, verified or not.

    Text columns hold whatever the sender put in the body, so they are
    unbounded: an unauthenticated oversized field must not stop the row
    from being written.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index(
            "ix_webhook_events_dedup",
            "payment_id",
            "payment_status",
            "received_at",
        ),
        Index("ix_webhook_events_unprocessed", "processed", "received_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # nowpayments, cryptomus, paddle, lemonsqueezy
    provider: Mapped[str] = mapped_column(String(20))

    payment_id: Mapped[str] = mapped_column(Text)
    order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str] = mapped_column(Text)

    # Normalised status and what the provider actually sent
    payment_status: Mapped[str] = mapped_column(String(20))
    provider_status: Mapped[str | None] = mapped_column(Text, nullable=True)

    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    signature_verified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Ownership carried by the event itself (Paddle and LemonSqueezy custom data)
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    plan_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pack_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    amount_usd: Mapped[Decimal | None] = mapped_column(Numeric, nullable=True)
    currency: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw_data: Mapped[dict] = mapped_column(JSONB, default=dict)

    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    @property
    def has_ownership(self) -> bool:
        """Whether the event itself says who paid and for what."""
        return self.user_id is not None and (
            self.plan_id is not None or self.pack_id is not None
        )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(provider={self.provider!r}, "
            f"payment_id={self.payment_id!r}, status={self.payment_status!r})>"
        )
