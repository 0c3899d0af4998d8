"""Ledger queries over credit grants, balance transactions and the cache mirror.

These functions run inside the caller's session and never commit. Mutating
callers take the per-user ledger lock first so that balance reads, FIFO
updates and grant inserts for one user are serialized.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

import logfire
from sqlalchemy import Integer, Row, Uuid, column, func, select, update, values
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from storycredits.models import (
    BalanceTransaction,
    CreditGrant,
    KVEntry,
    UserSubscription,
    balance_key,
)

if TYPE_CHECKING:
    from storycredits.credits.fifo import Allocation

# -----------------------------------------------------------------------------
# Locking
# -----------------------------------------------------------------------------


async def lock_user_ledger(session: AsyncSession, user_id: UUID) -> None:
    """Take the per-user transaction-scoped advisory lock.

    Covers users with no grant rows yet, which ``FOR UPDATE`` cannot. Released
    on commit or rollback. Different users never contend.
    """
    await session.execute(
        select(func.pg_advisory_xact_lock(func.hashtextextended(str(user_id), 0)))
    )


# -----------------------------------------------------------------------------
# Balance Queries
# -----------------------------------------------------------------------------


async def get_active_balance(
    session: AsyncSession, user_id: UUID, now: datetime | None = None
) -> int:
    """Sum of ``remaining`` over the user's unexpired grants. 0 if none."""
    now = now or datetime.now(UTC)
    result = await session.execute(
        select(func.coalesce(func.sum(CreditGrant.remaining), 0)).where(
            CreditGrant.user_id == user_id,
            CreditGrant.expires_at > now,
            CreditGrant.remaining > 0,
        )
    )
    return int(result.scalar_one())


async def lock_active_grants(
    session: AsyncSession, user_id: UUID, now: datetime
) -> Sequence[Row]:
    """Lock the user's active grants, soonest expiry first.

    Rows carry ``id``, ``remaining`` and ``expires_at``.
    """
    result = await session.execute(
        select(CreditGrant.id, CreditGrant.remaining, CreditGrant.expires_at)
        .where(
            CreditGrant.user_id == user_id,
            CreditGrant.expires_at > now,
            CreditGrant.remaining > 0,
        )
        .order_by(
            CreditGrant.expires_at.asc(),
            CreditGrant.granted_at.asc(),
            CreditGrant.id.asc(),
        )
        .with_for_update()
    )
    return result.all()


async def list_grants(session: AsyncSession, user_id: UUID) -> Sequence[CreditGrant]:
    """All grants of a user, active or not, newest first."""
    result = await session.execute(
        select(CreditGrant)
        .where(CreditGrant.user_id == user_id)
        .order_by(CreditGrant.granted_at.desc())
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


# -----------------------------------------------------------------------------
# Grant Operations
# -----------------------------------------------------------------------------


async def get_grant_id_by_source_id(
    session: AsyncSession, source_id: str
) -> UUID | None:
    result = await session.execute(
        select(CreditGrant.id).where(CreditGrant.source_id == source_id)
    )
    return result.scalar_one_or_none()


async def insert_grant(
    session: AsyncSession,
    user_id: UUID,
    amount: int,
    source: str,
    source_id: str,
    granted_at: datetime,
    expires_at: datetime,
    metadata: dict | None = None,
) -> UUID | None:
    """Insert a grant unless ``source_id`` is already taken.

    Returns:
        The new grant id, or None when another grant owns ``source_id``.
    """
    stmt = (
        insert(CreditGrant)
        .values(
            user_id=user_id,
            amount=amount,
            consumed=0,
            source=str(source),
            source_id=source_id,
            granted_at=granted_at,
            expires_at=expires_at,
            metadata_=metadata or {},
        )
        .on_conflict_do_nothing(index_elements=[CreditGrant.source_id])
        .returning(CreditGrant.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def apply_allocations(
    session: AsyncSession, allocations: Sequence[Allocation]
) -> None:
    """Add every allocation to its grant's ``consumed`` in one UPDATE."""
    if not allocations:
        return
    deltas = values(
        column("grant_id", Uuid),
        column("take", Integer),
        name="deltas",
    ).data([(a.grant_id, a.take) for a in allocations])

    await session.execute(
        update(CreditGrant)
        .where(CreditGrant.id == deltas.c.grant_id)
        .values(consumed=CreditGrant.consumed + deltas.c.take)
        .execution_options(synchronize_session=False)
    )


# -----------------------------------------------------------------------------
# Transaction Log
# -----------------------------------------------------------------------------


async def record_transaction(
    session: AsyncSession,
    user_id: UUID,
    amount: int,
    transaction_type: str,
    balance_before: int,
    *,
    description: str | None = None,
    metadata: dict | None = None,
    created_at: datetime | None = None,
) -> UUID:
    """Append one balance transaction. ``balance_after`` is derived."""
    stmt = (
        insert(BalanceTransaction)
        .values(
            user_id=user_id,
            amount=amount,
            type=str(transaction_type),
            description=description,
            balance_before=balance_before,
            balance_after=balance_before + amount,
            metadata_=metadata or {},
            created_at=created_at or datetime.now(UTC),
        )
        .returning(BalanceTransaction.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def list_transactions(
    session: AsyncSession, user_id: UUID, limit: int = 50
) -> Sequence[BalanceTransaction]:
    result = await session.execute(
        select(BalanceTransaction)
        .where(BalanceTransaction.user_id == user_id)
        .order_by(BalanceTransaction.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()


# -----------------------------------------------------------------------------
# Cache Mirror
# -----------------------------------------------------------------------------


async def mirror_balance(
    session: AsyncSession,
    user_id: UUID,
    balance: int,
    now: datetime | None = None,
) -> None:
    """Overwrite the cached balance. Last writer wins."""
    now = now or datetime.now(UTC)
    value = {"balance": balance, "updated_at": now.isoformat()}
    stmt = insert(KVEntry).values(key=balance_key(user_id), value=value, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=[KVEntry.key],
        set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
    )
    with logfire.span("db.mirror_balance", user_id=str(user_id), balance=balance):
        await session.execute(stmt)


async def get_cached_balance(session: AsyncSession, user_id: UUID) -> int | None:
    result = await session.execute(
        select(KVEntry.value).where(KVEntry.key == balance_key(user_id))
    )
    value = result.scalar_one_or_none()
    if value is None:
        return None
    return int(value.get("balance", 0))


# -----------------------------------------------------------------------------
# Subscriptions
# -----------------------------------------------------------------------------


async def upsert_subscription(
    session: AsyncSession,
    user_id: UUID,
    plan_id: str,
    period_end: datetime,
    provider: str | None = None,
) -> None:
    """Make ``plan_id`` the user's active subscription until ``period_end``."""
    stmt = insert(UserSubscription).values(
        user_id=user_id,
        plan_id=plan_id,
        status="active",
        provider=provider,
        current_period_end=period_end,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserSubscription.user_id],
        set_={
            "plan_id": stmt.excluded.plan_id,
            "status": "active",
            "provider": func.coalesce(
                stmt.excluded.provider, UserSubscription.provider
            ),
            "current_period_end": stmt.excluded.current_period_end,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)


async def get_subscription(
    session: AsyncSession, user_id: UUID
) -> UserSubscription | None:
    result = await session.execute(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
