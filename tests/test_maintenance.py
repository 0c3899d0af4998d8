"""Maintenance tests: expiry burn, retention and webhook replay."""

from __future__ import annotations

import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update

from storycredits import maintenance
from storycredits.credits.service import CreditService
from storycredits.credits.types import GrantSource, TransactionType
from storycredits.db.ledger import get_cached_balance, get_subscription
from storycredits.db.webhooks import (
    get_payment,
    get_webhook_event,
    get_webhook_stats,
    insert_webhook_event,
)
from storycredits.maintenance import (
    cleanup_old_webhooks,
    expire_grants,
    purge_spent_grants,
    replay_unprocessed,
    run_maintenance,
)
from storycredits.models import CreditGrant, WebhookEvent
from storycredits.payments.gate import WebhookGate
from storycredits.payments.status import PaymentStatus


@pytest.fixture
def ledger(db_manager):
    """Run one CreditService call in its own committed transaction.

    Usage:
        await ledger("grant", user_id, 100, GrantSource.BONUS, "old", now=now)
    """

    async def _call(method, *args, **kwargs):
        async with db_manager.session() as session:
            return await getattr(CreditService(session), method)(*args, **kwargs)

    return _call


class TestExpireGrants:
    @pytest.mark.asyncio
    async def test_burns_unspent_remainder_once(
        self, ledger, db_manager, user_id, now, transactions_of
    ):
        await ledger(
            "grant", user_id, 100, GrantSource.BONUS, "old", now=now - timedelta(days=40)
        )
        await ledger("consume", user_id, 30, now=now - timedelta(days=35))
        await ledger("grant", user_id, 500, GrantSource.PURCHASE, "pack", now=now)

        report = await expire_grants(db_manager, now)

        assert report.grants == 1
        assert report.credits == 70
        async with db_manager.read_session() as session:
            txs = await transactions_of(user_id, session)
            assert await get_cached_balance(session, user_id) == 500
        tx = txs[-1]
        assert tx.type == TransactionType.EXPIRATION
        assert (tx.balance_before, tx.amount, tx.balance_after) == (570, -70, 500)
        assert sum(t.amount for t in txs) == await ledger(
            "get_balance", user_id, now=now
        )

        again = await expire_grants(db_manager, now)
        assert again.grants == 0
        async with db_manager.read_session() as session:
            assert len(await transactions_of(user_id, session)) == len(txs)

    @pytest.mark.asyncio
    async def test_fully_spent_grant_is_not_burned(
        self, ledger, db_manager, user_id, now, transactions_of
    ):
        await ledger(
            "grant", user_id, 100, GrantSource.BONUS, "old", now=now - timedelta(days=40)
        )
        await ledger("consume", user_id, 100, now=now - timedelta(days=35))

        report = await expire_grants(db_manager, now)

        assert report.grants == 0
        async with db_manager.read_session() as session:
            assert len(await transactions_of(user_id, session)) == 2

    @pytest.mark.asyncio
    async def test_each_user_is_burned_in_its_own_transaction(
        self, ledger, db_manager, now
    ):
        for owner in (uuid.uuid4(), uuid.uuid4()):
            await ledger(
                "grant",
                owner,
                100,
                GrantSource.BONUS,
                f"old-{owner}",
                now=now - timedelta(days=40),
            )

        burned_users = []
        free_while_next_burns = []
        real_burn = maintenance._burn_user_grants

        async def burn(session, user_id, when):
            if burned_users:
                # The previous user's lock must already be released
                async with db_manager.session() as other:
                    locked = await other.execute(
                        select(
                            func.pg_try_advisory_xact_lock(
                                func.hashtextextended(str(burned_users[-1]), 0)
                            )
                        )
                    )
                    free_while_next_burns.append(locked.scalar_one())
            burned_users.append(user_id)
            return await real_burn(session, user_id, when)

        with patch.object(maintenance, "_burn_user_grants", side_effect=burn):
            report = await expire_grants(db_manager, now)

        assert report.users == 2
        assert report.credits == 200
        assert free_while_next_burns == [True]

    @pytest.mark.asyncio
    async def test_lapsed_subscription_is_expired(self, ledger, db_manager, user_id, now):
        await ledger(
            "grant",
            user_id,
            2000,
            GrantSource.SUBSCRIPTION,
            "sub-1",
            plan_id="starter",
            now=now - timedelta(days=31),
        )

        report = await expire_grants(db_manager, now)

        assert report.subscriptions >= 1
        async with db_manager.read_session() as session:
            subscription = await get_subscription(session, user_id)
        assert subscription.status == "expired"


class TestRetention:
    @pytest.mark.asyncio
    async def test_cleanup_deletes_only_old_processed_events(
        self, db_session, make_event, now
    ):
        old_done = await insert_webhook_event(
            db_session, make_event("np-1"), now - timedelta(days=100)
        )
        old_pending = await insert_webhook_event(
            db_session, make_event("np-2"), now - timedelta(days=100)
        )
        recent_done = await insert_webhook_event(
            db_session, make_event("np-3"), now - timedelta(days=10)
        )
        await db_session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id.in_([old_done, recent_done]))
            .values(processed=True)
        )

        deleted = await cleanup_old_webhooks(db_session, days=90, now=now)

        assert deleted == 1
        assert await get_webhook_event(db_session, old_done) is None
        assert await get_webhook_event(db_session, old_pending) is not None
        assert await get_webhook_event(db_session, recent_done) is not None

    @pytest.mark.asyncio
    async def test_purge_removes_dead_grants_only(self, ledger, db_manager, user_id, now):
        await ledger(
            "grant", user_id, 100, GrantSource.BONUS, "ancient", now=now - timedelta(days=100)
        )
        await ledger(
            "grant", user_id, 100, GrantSource.BONUS, "recent", now=now - timedelta(days=40)
        )
        await ledger("grant", user_id, 100, GrantSource.PURCHASE, "pack", now=now)
        await expire_grants(db_manager, now)

        async with db_manager.session() as session:
            await purge_spent_grants(session, days=30, now=now)

        async with db_manager.read_session() as session:
            result = await session.execute(
                select(CreditGrant.source_id).where(CreditGrant.user_id == user_id)
            )
            assert sorted(result.scalars().all()) == ["pack", "recent"]


class TestReplay:
    @pytest.mark.asyncio
    async def test_replays_stuck_events_inside_window(
        self, db_manager, payment_factory, make_event, user_id, now
    ):
        gate = WebhookGate(db_manager)
        await payment_factory("np-stuck", user_id, plan_id="starter")
        await payment_factory("np-fresh", user_id, pack_id="pack_500")
        await payment_factory("np-stale", user_id, pack_id="pack_500")

        await gate.record(make_event("np-stuck"), now=now - timedelta(minutes=10))
        await gate.record(make_event("np-fresh"), now=now - timedelta(minutes=1))
        await gate.record(make_event("np-stale"), now=now - timedelta(days=8))
        await gate.record(
            make_event("np-forged", verified=False), now=now - timedelta(minutes=10)
        )

        report = await replay_unprocessed(
            db_manager, gate, older_than=timedelta(minutes=5), now=now
        )

        assert report.replayed == 1
        assert report.failed == 0
        async with db_manager.read_session() as session:
            assert (await get_payment(session, "np-stuck")).processed
            assert not (await get_payment(session, "np-fresh")).processed
            assert not (await get_payment(session, "np-stale")).processed

    @pytest.mark.asyncio
    async def test_failures_are_counted_and_kept(
        self, db_manager, make_event, now
    ):
        gate = WebhookGate(db_manager)
        recorded = await gate.record(
            make_event("np-orphan"), now=now - timedelta(minutes=10)
        )

        report = await replay_unprocessed(db_manager, gate, now=now)

        assert report.failed == 1
        async with db_manager.read_session() as session:
            event = await get_webhook_event(session, recorded.webhook_id)
        assert not event.processed
        assert event.processing_error.startswith("PaymentNotFoundError")

    @pytest.mark.asyncio
    async def test_run_maintenance_pass(
        self, db_manager, payment_factory, make_event, user_id, now
    ):
        gate = WebhookGate(db_manager)
        await payment_factory("np-1", user_id, plan_id="starter")
        await gate.record(
            make_event("np-1", PaymentStatus.FINISHED), now=now - timedelta(minutes=30)
        )

        await run_maintenance(db_manager, gate, now=now)

        async with db_manager.read_session() as session:
            assert (await get_payment(session, "np-1")).credits_granted == 2000
            assert await get_cached_balance(session, user_id) == 2000


class TestWebhookStats:
    @pytest.mark.asyncio
    async def test_counts(self, db_session, make_event, now):
        await insert_webhook_event(db_session, make_event("np-1"), now)
        await insert_webhook_event(
            db_session, make_event("np-1"), now + timedelta(minutes=10)
        )
        await insert_webhook_event(db_session, make_event("np-2", verified=False), now)

        stats = await get_webhook_stats(db_session)

        assert stats.total == 3
        assert stats.unverified == 1
        assert stats.duplicates == 1
        assert stats.processed == 0
        assert stats.last_received_at == now + timedelta(minutes=10)
