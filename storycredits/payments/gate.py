"""Webhook idempotency gate.

Turns at-least-once provider deliveries into exactly-once credit grants:

1. ``record`` drops redeliveries of the same (payment, status) inside the
   dedup window and durably logs everything else in its own transaction.
2. ``process`` applies one logged event to its payment under a row lock and
   grants credits with ``source_id = payment_id``, which the unique
   constraint on grants makes idempotent no matter how often it runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID

import logfire

from storycredits.credits.expiry import compute_expiry
from storycredits.credits.plans import get_pack, get_plan
from storycredits.credits.service import CreditService
from storycredits.credits.types import GrantSource, TransactionType
from storycredits.db.webhooks import (
    bump_webhook_count,
    create_payment_record,
    find_recent_duplicate,
    get_payment_for_update,
    get_webhook_event,
    insert_webhook_event,
    set_webhook_error,
)
from storycredits.errors import PaymentNotFoundError, UnknownProductError
from storycredits.payments.providers import ADAPTERS
from storycredits.payments.status import (
    ANOMALY_STATUSES,
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    PaymentStatus,
    can_advance,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from storycredits.db.session import DatabaseManager
    from storycredits.models import PaymentRecord, WebhookEvent
    from storycredits.payments.providers import PaymentEvent


class ProcessOutcome(StrEnum):
    """What processing one webhook event did."""

    GRANTED = "granted"  # Credits issued
    ALREADY_GRANTED = "already_granted"  # Payment was processed before
    NO_GRANT = "no_grant"  # Failed, expired or refunded before any grant
    NEEDS_REVIEW = "needs_review"  # Amount anomaly or refund after grant
    STATUS_UPDATED = "status_updated"  # Non-terminal progress
    IGNORED = "ignored"  # Event carries nothing actionable
    ALREADY_PROCESSED = "already_processed"  # Event was handled before


@dataclass(frozen=True, slots=True)
class RecordResult:
    webhook_id: UUID
    duplicate: bool


@dataclass(frozen=True, slots=True)
class GateResult:
    webhook_id: UUID
    duplicate: bool
    verified: bool
    outcome: ProcessOutcome | None = None


class WebhookGate:
    """Records and processes provider webhooks.

    Usage:
        gate = WebhookGate(db)
        event = adapter.parse(raw_body, request.headers)
        result = await gate.receive(event)
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        dedup_window: timedelta = timedelta(minutes=5),
    ) -> None:
        self._db = db
        self._dedup_window = dedup_window

    async def receive(
        self, event: PaymentEvent, *, now: datetime | None = None
    ) -> GateResult:
        """Record the event, then process it if it is new and verified.

        Raises:
            PaymentNotFoundError: If the payment is unknown and the event does
                not say who paid for what.
            UnknownProductError: If the payment's plan or pack is not sold.
        """
        recorded = await self.record(event, now=now)
        if recorded.duplicate or not event.signature_verified:
            return GateResult(
                recorded.webhook_id, recorded.duplicate, event.signature_verified
            )
        outcome = await self.process(recorded.webhook_id, now=now)
        return GateResult(recorded.webhook_id, False, True, outcome)

    async def record(
        self, event: PaymentEvent, *, now: datetime | None = None
    ) -> RecordResult:
        """Log a delivery unless it repeats a recent one. Commits on return."""
        now = now or datetime.now(UTC)
        async with self._db.session() as session:
            duplicate_id = await find_recent_duplicate(
                session,
                event.payment_id,
                str(event.status),
                event.signature_verified,
                now - self._dedup_window,
            )
            if duplicate_id is not None:
                logfire.info(
                    "webhook_duplicate",
                    provider=event.provider,
                    payment_id=event.payment_id,
                    status=str(event.status),
                    webhook_id=str(duplicate_id),
                )
                return RecordResult(duplicate_id, True)

            webhook_id = await insert_webhook_event(session, event, now)
            await bump_webhook_count(session, event.payment_id)

        if event.signature_verified:
            logfire.info(
                "webhook_recorded",
                provider=event.provider,
                payment_id=event.payment_id,
                status=str(event.status),
                webhook_id=str(webhook_id),
            )
        else:
            logfire.warn(
                "webhook_invalid_signature",
                provider=event.provider,
                payment_id=event.payment_id,
                webhook_id=str(webhook_id),
            )
        return RecordResult(webhook_id, False)

    async def process(
        self, webhook_id: UUID, *, now: datetime | None = None
    ) -> ProcessOutcome:
        """Apply a recorded event in one transaction.

        On any failure the transaction rolls back, the error is stored on the
        event in a separate transaction and the event stays unprocessed so a
        replay can pick it up.

        Raises:
            LookupError: If the webhook event does not exist.
            PaymentNotFoundError: If the payment is unknown.
            UnknownProductError: If the plan or pack is not in the catalog.
        """
        now = now or datetime.now(UTC)
        try:
            async with self._db.session() as session:
                outcome = await self._process(session, webhook_id, now)
        except LookupError:
            raise
        except Exception as exc:
            await self._store_error(webhook_id, exc)
            raise

        logfire.info(
            "webhook_processed", webhook_id=str(webhook_id), outcome=str(outcome)
        )
        return outcome

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _process(
        self, session: AsyncSession, webhook_id: UUID, now: datetime
    ) -> ProcessOutcome:
        event = await get_webhook_event(session, webhook_id, for_update=True)
        if event is None:
            msg = f"Webhook event {webhook_id} not found"
            raise LookupError(msg)
        if event.processed:
            return ProcessOutcome.ALREADY_PROCESSED
        if not event.signature_verified:
            return ProcessOutcome.IGNORED

        status = PaymentStatus(event.payment_status)
        if status == PaymentStatus.UNKNOWN:
            # Lifecycle notifications (subscription.updated, ...) move no money
            self._mark_processed(event, now)
            return ProcessOutcome.IGNORED

        payment = await get_payment_for_update(session, event.payment_id)
        if payment is None:
            payment = await self._create_payment_from_event(session, event)
        elif payment.amount_usd is None and event.amount_usd is not None:
            # Checkout registered before the provider quoted a price
            payment.amount_usd = event.amount_usd
            payment.currency = payment.currency or event.currency

        payment.provider_data = event.raw_data
        current = PaymentStatus(payment.status)
        if can_advance(current, status):
            payment.status = str(status)
        elif current != status:
            logfire.info(
                "payment_status_not_advanced",
                payment_id=payment.payment_id,
                current=str(current),
                received=str(status),
            )

        outcome = await self._apply_status(session, payment, event, now)
        self._mark_processed(event, now)
        return outcome

    async def _apply_status(
        self,
        session: AsyncSession,
        payment: PaymentRecord,
        event: WebhookEvent,
        now: datetime,
    ) -> ProcessOutcome:
        status = PaymentStatus(payment.status)

        if status in SUCCESS_STATUSES:
            if payment.processed:
                return ProcessOutcome.ALREADY_GRANTED
            await self._grant_for_payment(session, payment, now)
            return ProcessOutcome.GRANTED

        if status == PaymentStatus.REFUNDED and payment.credits_granted:
            payment.needs_review = True
            logfire.warn(
                "payment_refunded_after_grant",
                payment_id=payment.payment_id,
                user_id=str(payment.user_id),
                credits_granted=payment.credits_granted,
            )
            return ProcessOutcome.NEEDS_REVIEW

        if status in FAILURE_STATUSES:
            if not payment.processed:
                payment.processed = True
                payment.processed_at = now
            return ProcessOutcome.NO_GRANT

        if status in ANOMALY_STATUSES:
            payment.needs_review = True
            logfire.warn(
                "payment_needs_review",
                payment_id=payment.payment_id,
                user_id=str(payment.user_id),
                status=str(status),
                provider_status=event.provider_status,
            )
            return ProcessOutcome.NEEDS_REVIEW

        return ProcessOutcome.STATUS_UPDATED

    async def _grant_for_payment(
        self, session: AsyncSession, payment: PaymentRecord, now: datetime
    ) -> None:
        adapter = ADAPTERS.get(payment.provider)
        crypto = adapter is not None and adapter.crypto
        metadata = {
            "provider": payment.provider,
            "payment_id": payment.payment_id,
            "order_id": payment.order_id,
            "amount_usd": str(payment.amount_usd) if payment.amount_usd else None,
        }

        if payment.plan_id:
            plan = get_plan(payment.plan_id)
            if plan is None:
                msg = f"Unknown plan '{payment.plan_id}' on {payment.payment_id}"
                raise UnknownProductError(msg)
            source = GrantSource.CRYPTO if crypto else GrantSource.SUBSCRIPTION
            amount = plan.credits
            reason = f"{plan.name} subscription"
            transaction_type = TransactionType.SUBSCRIPTION
            payment.subscription_expires_at = compute_expiry(source, now)
        else:
            pack = get_pack(payment.pack_id or "")
            if pack is None:
                msg = f"Unknown pack '{payment.pack_id}' on {payment.payment_id}"
                raise UnknownProductError(msg)
            source = GrantSource.PURCHASE
            amount = pack.total
            reason = f"Credit pack {pack.id}"
            transaction_type = (
                TransactionType.CREDIT_PURCHASE if crypto else TransactionType.PURCHASE
            )

        await CreditService(session).grant(
            payment.user_id,
            amount,
            source,
            payment.payment_id,
            reason=reason,
            metadata=metadata,
            plan_id=payment.plan_id,
            provider=payment.provider,
            transaction_type=transaction_type,
            now=now,
        )
        payment.processed = True
        payment.processed_at = now
        payment.credits_granted = amount

    async def _create_payment_from_event(
        self, session: AsyncSession, event: WebhookEvent
    ) -> PaymentRecord:
        """Register a payment the event fully describes, e.g. a renewal."""
        if not event.has_ownership:
            raise PaymentNotFoundError(event.payment_id)

        payment = await create_payment_record(
            session,
            event.payment_id,
            event.provider,
            event.user_id,
            plan_id=event.plan_id,
            pack_id=event.pack_id if event.plan_id is None else None,
            order_id=event.order_id,
            amount_usd=event.amount_usd,
            currency=event.currency,
            provider_data=event.raw_data,
        )
        payment.webhook_count = 1
        logfire.info(
            "payment_created_from_webhook",
            payment_id=event.payment_id,
            provider=event.provider,
            user_id=str(event.user_id),
        )
        return payment

    @staticmethod
    def _mark_processed(event: WebhookEvent, now: datetime) -> None:
        event.processed = True
        event.processed_at = now
        event.processing_error = None

    async def _store_error(self, webhook_id: UUID, exc: Exception) -> None:
        logfire.error(
            "webhook_processing_failed",
            webhook_id=str(webhook_id),
            error=str(exc),
            error_type=type(exc).__name__,
        )
        async with self._db.session() as session:
            await set_webhook_error(session, webhook_id, f"{type(exc).__name__}: {exc}")
