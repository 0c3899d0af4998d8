"""Webhook gate tests: dedup, status machine, exactly-once grants."""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import select

from storycredits.credits.service import CreditService
from storycredits.credits.types import GrantSource, TransactionType
from storycredits.db.ledger import get_subscription, list_grants, list_transactions
from storycredits.db.webhooks import get_payment, get_webhook_event, get_webhook_stats
from storycredits.errors import PaymentNotFoundError, UnknownProductError
from storycredits.models import WebhookEvent
from storycredits.payments.gate import ProcessOutcome, WebhookGate
from storycredits.payments.providers import PaddleAdapter
from storycredits.payments.status import PaymentStatus

PADDLE_SECRET = "pdl_ntfset_test"


@pytest.fixture
def gate(db_manager):
    return WebhookGate(db_manager, dedup_window=timedelta(minutes=5))


async def _payment(db_manager, payment_id):
    async with db_manager.read_session() as session:
        return await get_payment(session, payment_id)


async def _webhook(db_manager, webhook_id):
    async with db_manager.read_session() as session:
        return await get_webhook_event(session, webhook_id)


async def _balance(db_manager, user_id, now):
    async with db_manager.read_session() as session:
        return await CreditService(session).get_balance(user_id, now=now)


class TestGrantOnSuccess:
    @pytest.mark.asyncio
    async def test_finished_payment_grants_plan_credits(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        result = await gate.receive(make_event("np-1"), now=now)

        assert result.outcome == ProcessOutcome.GRANTED
        assert not result.duplicate
        assert result.verified

        payment = await _payment(db_manager, "np-1")
        assert payment.status == PaymentStatus.FINISHED
        assert payment.processed
        assert payment.credits_granted == 2000
        assert payment.subscription_expires_at == now + timedelta(days=30)
        assert payment.webhook_count == 1

        async with db_manager.read_session() as session:
            [grant] = await list_grants(session, user_id)
            assert grant.source == GrantSource.CRYPTO
            assert grant.source_id == "np-1"
            assert grant.expires_at == now + timedelta(days=30)
            subscription = await get_subscription(session, user_id)
            assert subscription.plan_id == "starter"
            assert subscription.provider == "nowpayments"

        event = await _webhook(db_manager, result.webhook_id)
        assert event.processed
        assert event.processing_error is None

    @pytest.mark.asyncio
    async def test_confirmed_then_finished_grants_once(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, pack_id="pack_2500")

        first = await gate.receive(make_event("np-1", PaymentStatus.CONFIRMED), now=now)
        second = await gate.receive(
            make_event("np-1", PaymentStatus.FINISHED), now=now + timedelta(minutes=1)
        )

        assert first.outcome == ProcessOutcome.GRANTED
        assert second.outcome == ProcessOutcome.ALREADY_GRANTED
        assert (await _payment(db_manager, "np-1")).status == PaymentStatus.FINISHED
        assert await _balance(db_manager, user_id, now) == 2600

        async with db_manager.read_session() as session:
            [tx] = await list_transactions(session, user_id)
            assert tx.type == TransactionType.CREDIT_PURCHASE


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_redelivery_inside_window_is_duplicate(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        first = await gate.receive(make_event("np-1"), now=now)
        again = await gate.receive(make_event("np-1"), now=now + timedelta(minutes=2))

        assert again.duplicate
        assert again.webhook_id == first.webhook_id
        assert again.outcome is None
        assert (await _payment(db_manager, "np-1")).webhook_count == 1
        assert await _balance(db_manager, user_id, now) == 2000

    @pytest.mark.asyncio
    async def test_redelivery_after_window_grants_nothing_new(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        await gate.receive(make_event("np-1"), now=now)
        late = await gate.receive(make_event("np-1"), now=now + timedelta(minutes=10))

        assert not late.duplicate
        assert late.outcome == ProcessOutcome.ALREADY_GRANTED
        assert (await _payment(db_manager, "np-1")).webhook_count == 2
        assert await _balance(db_manager, user_id, now) == 2000

    @pytest.mark.asyncio
    async def test_forged_event_does_not_shadow_genuine_one(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        forged = await gate.receive(make_event("np-1", verified=False), now=now)
        genuine = await gate.receive(make_event("np-1"), now=now + timedelta(seconds=5))

        assert not genuine.duplicate
        assert genuine.webhook_id != forged.webhook_id
        assert genuine.outcome == ProcessOutcome.GRANTED


class TestStatusMachine:
    @pytest.mark.asyncio
    async def test_progress_updates_status_only(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        result = await gate.receive(make_event("np-1", PaymentStatus.CONFIRMING), now=now)

        assert result.outcome == ProcessOutcome.STATUS_UPDATED
        payment = await _payment(db_manager, "np-1")
        assert payment.status == PaymentStatus.CONFIRMING
        assert not payment.processed
        assert await _balance(db_manager, user_id, now) == 0

    @pytest.mark.asyncio
    async def test_late_progress_event_does_not_regress_status(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        await gate.receive(make_event("np-1"), now=now)
        late = await gate.receive(
            make_event("np-1", PaymentStatus.CONFIRMING), now=now + timedelta(minutes=1)
        )

        assert late.outcome == ProcessOutcome.ALREADY_GRANTED
        assert (await _payment(db_manager, "np-1")).status == PaymentStatus.FINISHED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED]
    )
    async def test_failure_closes_payment_without_grant(
        self, gate, db_manager, payment_factory, make_event, user_id, now, status
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        result = await gate.receive(make_event("np-1", status), now=now)

        assert result.outcome == ProcessOutcome.NO_GRANT
        payment = await _payment(db_manager, "np-1")
        assert payment.status == status
        assert payment.processed
        assert payment.credits_granted is None
        assert await _balance(db_manager, user_id, now) == 0

    @pytest.mark.asyncio
    async def test_success_after_failure_is_not_granted(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        await gate.receive(make_event("np-1", PaymentStatus.EXPIRED), now=now)
        result = await gate.receive(
            make_event("np-1"), now=now + timedelta(minutes=1)
        )

        assert result.outcome == ProcessOutcome.NO_GRANT
        assert await _balance(db_manager, user_id, now) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            PaymentStatus.PAID_OVER,
            PaymentStatus.WRONG_AMOUNT,
            PaymentStatus.PARTIALLY_PAID,
        ],
    )
    async def test_amount_anomaly_needs_review(
        self, gate, db_manager, payment_factory, make_event, user_id, now, status
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        result = await gate.receive(make_event("np-1", status), now=now)

        assert result.outcome == ProcessOutcome.NEEDS_REVIEW
        payment = await _payment(db_manager, "np-1")
        assert payment.needs_review
        assert not payment.processed
        assert await _balance(db_manager, user_id, now) == 0

    @pytest.mark.asyncio
    async def test_refund_after_grant_flags_review(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        await gate.receive(make_event("np-1"), now=now)
        result = await gate.receive(
            make_event("np-1", PaymentStatus.REFUNDED), now=now + timedelta(days=2)
        )

        assert result.outcome == ProcessOutcome.NEEDS_REVIEW
        payment = await _payment(db_manager, "np-1")
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.needs_review
        # Granted credits stay; an operator decides on a deduction
        assert await _balance(db_manager, user_id, now) == 2000

    @pytest.mark.asyncio
    async def test_lifecycle_event_is_ignored(self, gate, db_manager, make_event, now):
        result = await gate.receive(
            make_event(
                "sub_01xyz",
                PaymentStatus.UNKNOWN,
                provider="paddle",
                event_type="subscription.updated",
            ),
            now=now,
        )

        assert result.outcome == ProcessOutcome.IGNORED
        assert (await _webhook(db_manager, result.webhook_id)).processed
        assert await _payment(db_manager, "sub_01xyz") is None


class TestPaymentOwnership:
    @pytest.mark.asyncio
    async def test_unknown_payment_is_stored_with_error(
        self, gate, db_manager, make_event, now
    ):
        with pytest.raises(PaymentNotFoundError):
            await gate.receive(make_event("np-missing"), now=now)

        async with db_manager.read_session() as session:
            stats = await get_webhook_stats(session)
        assert stats.total == 1
        assert stats.processed == 0
        assert stats.errored == 1
        assert await _payment(db_manager, "np-missing") is None

    @pytest.mark.asyncio
    async def test_event_with_owner_creates_payment(
        self, gate, db_manager, make_event, user_id, now
    ):
        event = make_event(
            "txn_01abc",
            provider="paddle",
            event_type="transaction.completed",
            user_id=user_id,
            pack_id="pack_5000",
            amount_usd=Decimal("19.99"),
            currency="USD",
        )

        result = await gate.receive(event, now=now)

        assert result.outcome == ProcessOutcome.GRANTED
        payment = await _payment(db_manager, "txn_01abc")
        assert payment.provider == "paddle"
        assert payment.user_id == user_id
        assert payment.pack_id == "pack_5000"
        assert payment.webhook_count == 1
        assert payment.amount_usd == Decimal("19.99")
        assert payment.currency == "USD"

        async with db_manager.read_session() as session:
            [grant] = await list_grants(session, user_id)
            assert grant.source == GrantSource.PURCHASE
            assert grant.amount == 5300
            assert grant.metadata_["amount_usd"] == "19.99"
            [tx] = await list_transactions(session, user_id)
            assert tx.type == TransactionType.PURCHASE

    @pytest.mark.asyncio
    async def test_unknown_plan_is_an_error(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="legacy_gold")

        with pytest.raises(UnknownProductError):
            await gate.receive(make_event("np-1"), now=now)

        payment = await _payment(db_manager, "np-1")
        assert payment.status == PaymentStatus.WAITING
        assert not payment.processed


class TestSignature:
    @pytest.mark.asyncio
    async def test_unverified_event_is_recorded_not_processed(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        result = await gate.receive(make_event("np-1", verified=False), now=now)

        assert not result.verified
        assert result.outcome is None
        event = await _webhook(db_manager, result.webhook_id)
        assert not event.signature_verified
        assert not event.processed
        assert event.processing_error == "invalid signature"
        assert (await _payment(db_manager, "np-1")).status == PaymentStatus.WAITING
        assert await _balance(db_manager, user_id, now) == 0

    @pytest.mark.asyncio
    async def test_processing_unverified_event_directly_is_ignored(
        self, gate, make_event, now
    ):
        recorded = await gate.record(make_event("np-1", verified=False), now=now)

        assert await gate.process(recorded.webhook_id, now=now) == ProcessOutcome.IGNORED

    @pytest.mark.asyncio
    async def test_oversized_unverified_fields_are_still_recorded(
        self, gate, db_manager, make_event, now
    ):
        event = make_event(
            "np-" + "9" * 400,
            verified=False,
            event_type="x" * 5000,
            provider_status="y" * 5000,
        )

        result = await gate.receive(event, now=now)

        assert not result.verified
        stored = await _webhook(db_manager, result.webhook_id)
        assert stored.event_type == "x" * 5000
        assert stored.provider_status == "y" * 5000


class TestPaddleDeliveries:
    user_id = uuid.uuid4()

    def _deliver(self, payload: dict):
        raw = json.dumps(payload).encode()
        h1 = hmac.new(PADDLE_SECRET.encode(), b"1700000000:" + raw, hashlib.sha256)
        header = f"ts=1700000000;h1={h1.hexdigest()}"
        return PaddleAdapter(PADDLE_SECRET).parse(raw, {"Paddle-Signature": header})

    @pytest.mark.asyncio
    async def test_refund_adjustment_reaches_granted_payment(
        self, gate, db_manager, now
    ):
        purchase = self._deliver(
            {
                "event_id": "evt_01",
                "event_type": "transaction.completed",
                "data": {
                    "id": "txn_01",
                    "status": "completed",
                    "custom_data": {"user_id": str(self.user_id)},
                    "items": [{"price": {"id": "pri_01kasjyt0kh2cw523fvp207dpd"}}],
                    "details": {"totals": {"total": "1999"}},
                    "currency_code": "USD",
                },
            }
        )
        refund = self._deliver(
            {
                "event_id": "evt_02",
                "event_type": "adjustment.created",
                "data": {
                    "id": "adj_01",
                    "transaction_id": "txn_01",
                    "action": "refund",
                    "status": "approved",
                    "totals": {"total": "1999"},
                    "currency_code": "USD",
                },
            }
        )

        granted = await gate.receive(purchase, now=now)
        refunded = await gate.receive(refund, now=now + timedelta(days=1))

        assert granted.outcome == ProcessOutcome.GRANTED
        assert refunded.outcome == ProcessOutcome.NEEDS_REVIEW
        payment = await _payment(db_manager, "txn_01")
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.needs_review
        assert payment.credits_granted == 5300
        assert await _payment(db_manager, "adj_01") is None


class TestFailureRecovery:
    @pytest.mark.asyncio
    async def test_failed_grant_rolls_back_and_retry_succeeds(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")

        with patch.object(
            CreditService, "grant", side_effect=RuntimeError("connection reset")
        ):
            with pytest.raises(RuntimeError):
                await gate.receive(make_event("np-1"), now=now)

        payment = await _payment(db_manager, "np-1")
        assert payment.status == PaymentStatus.WAITING
        assert not payment.processed

        async with db_manager.read_session() as session:
            [webhook_id] = await _unprocessed_ids(session)
        event = await _webhook(db_manager, webhook_id)
        assert "connection reset" in event.processing_error

        assert await gate.process(webhook_id, now=now) == ProcessOutcome.GRANTED
        assert await _balance(db_manager, user_id, now) == 2000
        event = await _webhook(db_manager, webhook_id)
        assert event.processed
        assert event.processing_error is None

    @pytest.mark.asyncio
    async def test_processing_twice_is_harmless(
        self, gate, db_manager, payment_factory, make_event, user_id, now
    ):
        await payment_factory("np-1", user_id, plan_id="starter")
        result = await gate.receive(make_event("np-1"), now=now)

        again = await gate.process(result.webhook_id, now=now)

        assert again == ProcessOutcome.ALREADY_PROCESSED
        assert await _balance(db_manager, user_id, now) == 2000

    @pytest.mark.asyncio
    async def test_missing_webhook_raises_lookup_error(self, gate, user_id):
        with pytest.raises(LookupError):
            await gate.process(user_id)


async def _unprocessed_ids(session):
    result = await session.execute(
        select(WebhookEvent.id).where(WebhookEvent.processed.is_(False))
    )
    return list(result.scalars().all())
