"""Current subscription per user."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base, TimestampMixin


class UserSubscription(Base, TimestampMixin):
    __tablename__ = "user_subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(primary_key=True)

    plan_id: Mapped[str] = mapped_column(String(50))

    # active, expired, cancelled
    status: Mapped[str] = mapped_column(String(20), default="active")

    provider: Mapped[str | None] = mapped_column(String(20), nullable=True)

    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(user_id={self.user_id}, plan_id={self.plan_id!r}, "
            f"status={self.status!r})>"
        )
