"""Periodic ledger maintenance.

- Burn expired grants and log them as ``expiration`` transactions
- Expire lapsed subscriptions
- Replay verified webhooks whose processing failed
- Delete old processed webhooks and long-dead grants
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

import logfire
from sqlalchemy import delete, or_, select, update

from storycredits.credits.types import TransactionType
from storycredits.db.ledger import (
    get_active_balance,
    lock_user_ledger,
    mirror_balance,
    record_transaction,
)
from storycredits.db.webhooks import delete_processed_events, list_replayable_events
from storycredits.models import CreditGrant, UserSubscription

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from storycredits.db.session import DatabaseManager
    from storycredits.payments.gate import WebhookGate


@dataclass(frozen=True, slots=True)
class ExpiryReport:
    users: int = 0
    grants: int = 0
    credits: int = 0
    subscriptions: int = 0


@dataclass(frozen=True, slots=True)
class ReplayReport:
    replayed: int = 0
    failed: int = 0


# -----------------------------------------------------------------------------
# Expiry
# -----------------------------------------------------------------------------


async def expire_grants(
    db: DatabaseManager, now: datetime | None = None
) -> ExpiryReport:
    """Burn the unspent remainder of every expired grant.

    Expired grants already stopped counting toward the balance; this only
    records the loss so transactions keep summing to the active balance.
    Each grant is burned once (``burned_at``). Every user is burned in a
    transaction of their own, so a user's ledger lock is held only while
    that user is handled.
    """
    now = now or datetime.now(UTC)
    async with db.read_session() as session:
        pending = await session.execute(
            select(CreditGrant.user_id)
            .where(
                CreditGrant.expires_at <= now,
                CreditGrant.burned_at.is_(None),
                CreditGrant.remaining > 0,
            )
            .distinct()
        )
        user_ids = pending.scalars().all()

    grants = credits = 0
    with logfire.span("db.expire_grants", users=len(user_ids)):
        for user_id in user_ids:
            async with db.session() as session:
                burned, count = await _burn_user_grants(session, user_id, now)
            grants += count
            credits += burned

        async with db.session() as session:
            lapsed = await session.execute(
                update(UserSubscription)
                .where(
                    UserSubscription.status == "active",
                    UserSubscription.current_period_end <= now,
                )
                .values(status="expired")
                .execution_options(synchronize_session=False)
            )

    report = ExpiryReport(
        users=len(user_ids),
        grants=grants,
        credits=credits,
        subscriptions=lapsed.rowcount or 0,
    )
    logfire.info(
        "grants_expired",
        users=report.users,
        grants=report.grants,
        credits=report.credits,
        subscriptions=report.subscriptions,
    )
    return report


async def _burn_user_grants(
    session: AsyncSession, user_id: UUID, now: datetime
) -> tuple[int, int]:
    await lock_user_ledger(session, user_id)
    result = await session.execute(
        select(CreditGrant.id, CreditGrant.remaining)
        .where(
            CreditGrant.user_id == user_id,
            CreditGrant.expires_at <= now,
            CreditGrant.burned_at.is_(None),
            CreditGrant.remaining > 0,
        )
        .with_for_update(skip_locked=True)
    )
    rows = result.all()
    if not rows:
        return 0, 0

    burned = sum(row.remaining for row in rows)
    grant_ids = [row.id for row in rows]
    await session.execute(
        update(CreditGrant)
        .where(CreditGrant.id.in_(grant_ids))
        .values(burned_at=now)
        .execution_options(synchronize_session=False)
    )

    active = await get_active_balance(session, user_id, now)
    await record_transaction(
        session,
        user_id,
        -burned,
        TransactionType.EXPIRATION,
        active + burned,
        description="Credits expired",
        metadata={"grant_ids": [str(g) for g in grant_ids]},
        created_at=now,
    )
    await mirror_balance(session, user_id, active, now)
    return burned, len(rows)


# -----------------------------------------------------------------------------
# Retention
# -----------------------------------------------------------------------------


async def cleanup_old_webhooks(
    session: AsyncSession, days: int = 90, now: datetime | None = None
) -> int:
    """Delete processed webhook events older than ``days``. Returns the count."""
    now = now or datetime.now(UTC)
    deleted = await delete_processed_events(session, now - timedelta(days=days))
    logfire.info("webhooks_cleaned_up", deleted=deleted, days=days)
    return deleted


async def purge_spent_grants(
    session: AsyncSession, days: int = 30, now: datetime | None = None
) -> int:
    """Delete grants expired over ``days`` ago that are used up or burned."""
    now = now or datetime.now(UTC)
    result = await session.execute(
        delete(CreditGrant).where(
            CreditGrant.expires_at < now - timedelta(days=days),
            or_(CreditGrant.remaining == 0, CreditGrant.burned_at.is_not(None)),
        )
    )
    deleted = result.rowcount or 0
    logfire.info("grants_purged", deleted=deleted, days=days)
    return deleted


# -----------------------------------------------------------------------------
# Replay
# -----------------------------------------------------------------------------


async def replay_unprocessed(
    db: DatabaseManager,
    gate: WebhookGate,
    *,
    older_than: timedelta = timedelta(minutes=5),
    max_age: timedelta = timedelta(days=7),
    now: datetime | None = None,
) -> ReplayReport:
    """Process verified events that are still unprocessed.

    Failures are already stored on the event by the gate; they are counted
    here and retried on the next run until ``max_age``.
    """
    now = now or datetime.now(UTC)
    async with db.read_session() as session:
        webhook_ids = await list_replayable_events(
            session, now - older_than, now - max_age
        )

    replayed = failed = 0
    for webhook_id in webhook_ids:
        try:
            await gate.process(webhook_id, now=now)
            replayed += 1
        except Exception:
            failed += 1
            logfire.exception("webhook_replay_failed", webhook_id=str(webhook_id))

    if webhook_ids:
        logfire.info("webhooks_replayed", replayed=replayed, failed=failed)
    return ReplayReport(replayed=replayed, failed=failed)


# -----------------------------------------------------------------------------
# Driver
# -----------------------------------------------------------------------------


async def run_maintenance(
    db: DatabaseManager,
    gate: WebhookGate,
    *,
    webhook_retention_days: int = 90,
    grant_retention_days: int = 30,
    replay_after: timedelta = timedelta(minutes=5),
    now: datetime | None = None,
) -> None:
    """One maintenance pass. Each step commits on its own."""
    now = now or datetime.now(UTC)
    await replay_unprocessed(db, gate, older_than=replay_after, now=now)
    await expire_grants(db, now)
    async with db.session() as session:
        await cleanup_old_webhooks(session, webhook_retention_days, now)
    async with db.session() as session:
        await purge_spent_grants(session, grant_retention_days, now)


async def run_maintenance_loop(
    db: DatabaseManager,
    gate: WebhookGate,
    *,
    interval: float,
    **options,
) -> None:
    """Run ``run_maintenance`` every ``interval`` seconds until cancelled."""
    while True:
        try:
            await run_maintenance(db, gate, **options)
        except Exception:
            logfire.exception("maintenance_pass_failed")
        await asyncio.sleep(interval)
