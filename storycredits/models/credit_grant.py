"""Credit grant model: one row per batch of credits a user received."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, Computed, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base


class CreditGrant(Base):
    """A batch of credits with its own expiry.

    The spendable balance of a user is the sum of ``remaining`` over grants
    that have not expired. Only ``consumed`` (FIFO engine) and ``burned_at``
    (expiry sweep) change after insert.
    """

    __tablename__ = "credit_grants"
    __table_args__ = (
        CheckConstraint("amount > 0", name="credit_grants_amount_positive"),
        CheckConstraint(
            "consumed >= 0 AND consumed <= amount",
            name="credit_grants_consumed_within_amount",
        ),
        Index("ix_credit_grants_user_expires", "user_id", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    # Owner, an id from the external auth platform
    user_id: Mapped[uuid.UUID] = mapped_column(index=True)

    amount: Mapped[int] = mapped_column(Integer)
    consumed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    # Derived by the database, never written by the application
    remaining: Mapped[int] = mapped_column(
        Integer, Computed("amount - consumed", persisted=True)
    )

    # purchase, subscription, crypto, bonus, initial, admin_grant
    source: Mapped[str] = mapped_column(String(20))

    # Idempotency key: payment id, refund:job:<id>, admin_grant:<uuid>, ...
    source_id: Mapped[str] = mapped_column(String(255), unique=True)

    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    # Set once the unspent remainder was logged as an expiration
    burned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Reason, admin id, plan, provider payload bits
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now and self.remaining > 0

    def __repr__(self) -> str:
        return (
            f"<CreditGrant(source={self.source!r}, amount={self.amount}, "
            f"consumed={self.consumed}, user_id={self.user_id})>"
        )
