"""Webhook event and payment record queries."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from storycredits.models import PaymentRecord, WebhookEvent

if TYPE_CHECKING:
    from storycredits.payments.providers import PaymentEvent

# -----------------------------------------------------------------------------
# Webhook Events
# -----------------------------------------------------------------------------


async def find_recent_duplicate(
    session: AsyncSession,
    payment_id: str,
    payment_status: str,
    signature_verified: bool,
    since: datetime,
) -> UUID | None:
    """Most recent event with the same payment and status received after ``since``.

    Verified and unverified deliveries are never duplicates of each other, so a
    forged event cannot shadow the genuine one.
    """
    result = await session.execute(
        select(WebhookEvent.id)
        .where(
            WebhookEvent.payment_id == payment_id,
            WebhookEvent.payment_status == payment_status,
            WebhookEvent.signature_verified == signature_verified,
            WebhookEvent.received_at > since,
        )
        .order_by(WebhookEvent.received_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def insert_webhook_event(
    session: AsyncSession, event: PaymentEvent, received_at: datetime
) -> UUID:
    stmt = (
        insert(WebhookEvent)
        .values(
            provider=event.provider,
            payment_id=event.payment_id,
            order_id=event.order_id,
            event_type=event.event_type,
            payment_status=str(event.status),
            provider_status=event.provider_status,
            signature=event.signature,
            signature_verified=event.signature_verified,
            raw_data=event.raw_data,
            user_id=event.user_id,
            plan_id=event.plan_id,
            pack_id=event.pack_id,
            amount_usd=event.amount_usd,
            currency=event.currency,
            processed=False,
            processing_error=None if event.signature_verified else "invalid signature",
            received_at=received_at,
        )
        .returning(WebhookEvent.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def get_webhook_event(
    session: AsyncSession, webhook_id: UUID, *, for_update: bool = False
) -> WebhookEvent | None:
    stmt = (
        select(WebhookEvent)
        .where(WebhookEvent.id == webhook_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def set_webhook_error(
    session: AsyncSession, webhook_id: UUID, error: str
) -> None:
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == webhook_id)
        .values(processing_error=error[:2000])
    )


async def list_replayable_events(
    session: AsyncSession, received_before: datetime, received_after: datetime
) -> Sequence[UUID]:
    """Verified events still unprocessed inside the replay window, oldest first."""
    result = await session.execute(
        select(WebhookEvent.id)
        .where(
            WebhookEvent.processed.is_(False),
            WebhookEvent.signature_verified.is_(True),
            WebhookEvent.received_at < received_before,
            WebhookEvent.received_at > received_after,
        )
        .order_by(WebhookEvent.received_at.asc())
    )
    return result.scalars().all()


async def delete_processed_events(session: AsyncSession, before: datetime) -> int:
    result = await session.execute(
        delete(WebhookEvent).where(
            WebhookEvent.processed.is_(True),
            WebhookEvent.received_at < before,
        )
    )
    return result.rowcount or 0


@dataclass(frozen=True, slots=True)
class WebhookStats:
    total: int
    processed: int
    errored: int
    unverified: int
    duplicates: int
    last_received_at: datetime | None


async def get_webhook_stats(session: AsyncSession) -> WebhookStats:
    """Counters for the admin dashboard.

    ``duplicates`` counts events beyond the first per (payment, status).
    """
    totals = await session.execute(
        select(
            func.count(WebhookEvent.id),
            func.count(case((WebhookEvent.processed.is_(True), 1))),
            func.count(
                case(
                    (
                        WebhookEvent.processing_error.is_not(None)
                        & WebhookEvent.signature_verified.is_(True),
                        1,
                    )
                )
            ),
            func.count(case((WebhookEvent.signature_verified.is_(False), 1))),
            func.max(WebhookEvent.received_at),
        )
    )
    total, processed, errored, unverified, last_received_at = totals.one()

    groups = (
        select(func.count().label("n"))
        .select_from(WebhookEvent)
        .group_by(WebhookEvent.payment_id, WebhookEvent.payment_status)
        .subquery()
    )
    duplicates = await session.execute(
        select(func.coalesce(func.sum(groups.c.n - 1), 0))
    )
    return WebhookStats(
        total=total,
        processed=processed,
        errored=errored,
        unverified=unverified,
        duplicates=int(duplicates.scalar_one()),
        last_received_at=last_received_at,
    )


# -----------------------------------------------------------------------------
# Payment Records
# -----------------------------------------------------------------------------


async def create_payment_record(
    session: AsyncSession,
    payment_id: str,
    provider: str,
    user_id: UUID,
    *,
    plan_id: str | None = None,
    pack_id: str | None = None,
    order_id: str | None = None,
    amount_usd: Decimal | None = None,
    crypto_amount: Decimal | None = None,
    currency: str | None = None,
    status: str = "waiting",
    provider_data: dict | None = None,
) -> PaymentRecord:
    """Register a checkout before its first webhook arrives."""
    if (plan_id is None) == (pack_id is None):
        msg = "Exactly one of plan_id or pack_id is required"
        raise ValueError(msg)

    payment = PaymentRecord(
        payment_id=payment_id,
        provider=provider,
        user_id=user_id,
        order_id=order_id,
        plan_id=plan_id,
        pack_id=pack_id,
        amount_usd=amount_usd,
        crypto_amount=crypto_amount,
        currency=currency,
        status=status,
        processed=False,
        needs_review=False,
        webhook_count=0,
        provider_data=provider_data or {},
    )
    session.add(payment)
    await session.flush()
    return payment


async def get_payment_for_update(
    session: AsyncSession, payment_id: str
) -> PaymentRecord | None:
    result = await session.execute(
        select(PaymentRecord)
        .where(PaymentRecord.payment_id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payment(session: AsyncSession, payment_id: str) -> PaymentRecord | None:
    result = await session.execute(
        select(PaymentRecord)
        .where(PaymentRecord.payment_id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def bump_webhook_count(session: AsyncSession, payment_id: str) -> None:
    await session.execute(
        update(PaymentRecord)
        .where(PaymentRecord.payment_id == payment_id)
        .values(webhook_count=PaymentRecord.webhook_count + 1)
    )
