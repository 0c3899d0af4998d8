"""Balance transaction model for audit trail."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, DateTime, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base


class BalanceTransaction(Base):
    """Append-only log of every balance movement.

    Records purchases, subscription periods, consumption, refunds, admin
    adjustments and expirations. Rows are never updated.
    """

    __tablename__ = "balance_transactions"
    __table_args__ = (
        CheckConstraint(
            "balance_after = balance_before + amount",
            name="balance_transactions_conserved",
        ),
        CheckConstraint("balance_after >= 0", name="balance_transactions_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(index=True)

    # Amount: positive for credits in, negative for credits out
    amount: Mapped[int] = mapped_column()

    # See TransactionType
    type: Mapped[str] = mapped_column(String(20), index=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Active balance around this transaction
    balance_before: Mapped[int] = mapped_column()
    balance_after: Mapped[int] = mapped_column()

    # FIFO breakdown, grant id, admin id, ...
    metadata_: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<BalanceTransaction(type={self.type!r}, amount={self.amount}, "
            f"user_id={self.user_id})>"
        )
