"""Key-value rows read by the frontend, used as the balance cache mirror."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base


def balance_key(user_id) -> str:
    return f"user:{user_id}:balance"


class KVEntry(Base):
    """A cached value. Never the source of truth."""

    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Balance entries: {"balance": int, "updated_at": iso8601}
    value: Mapped[dict] = mapped_column(JSONB)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
