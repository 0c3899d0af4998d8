"""Concurrent ledger access: per-user locking and grant idempotency.

These tests commit through separate sessions so that the transactions really
race each other on PostgreSQL.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from storycredits.credits.service import CreditService
from storycredits.credits.types import GrantSource
from storycredits.models import BalanceTransaction, CreditGrant


async def _consume(db_manager, user_id, amount, now):
    async with db_manager.session() as session:
        return await CreditService(session).consume(user_id, amount, "story", now=now)


async def _grant(db_manager, user_id, source_id, now):
    async with db_manager.session() as session:
        return await CreditService(session).grant(
            user_id, 500, GrantSource.PURCHASE, source_id, now=now
        )


class TestConcurrentConsumption:
    @pytest.mark.asyncio
    async def test_only_one_of_two_overlapping_consumes_succeeds(
        self, db_manager, user_id, now
    ):
        async with db_manager.session() as session:
            await CreditService(session).grant(
                user_id, 100, GrantSource.BONUS, "bonus-1", now=now
            )

        first, second = await asyncio.gather(
            _consume(db_manager, user_id, 80, now),
            _consume(db_manager, user_id, 80, now),
        )

        assert sorted([first.success, second.success]) == [False, True]
        async with db_manager.read_session() as session:
            assert await CreditService(session).get_balance(user_id, now=now) == 20
            consumed = await session.execute(
                select(CreditGrant.consumed).where(CreditGrant.user_id == user_id)
            )
            assert consumed.scalar_one() == 80

    @pytest.mark.asyncio
    async def test_many_small_consumes_never_overdraw(self, db_manager, user_id, now):
        async with db_manager.session() as session:
            await CreditService(session).grant(
                user_id, 100, GrantSource.BONUS, "bonus-1", now=now
            )

        results = await asyncio.gather(
            *(_consume(db_manager, user_id, 15, now) for _ in range(10))
        )

        assert sum(r.success for r in results) == 6
        async with db_manager.read_session() as session:
            assert await CreditService(session).get_balance(user_id, now=now) == 10
            total = await session.execute(
                select(func.sum(BalanceTransaction.amount)).where(
                    BalanceTransaction.user_id == user_id
                )
            )
            assert total.scalar_one() == 10


class TestConcurrentGrants:
    @pytest.mark.asyncio
    async def test_duplicate_grant_inserts_one_row(self, db_manager, user_id, now):
        first, second = await asyncio.gather(
            _grant(db_manager, user_id, "pay-1", now),
            _grant(db_manager, user_id, "pay-1", now),
        )

        assert first == second
        async with db_manager.read_session() as session:
            count = await session.execute(
                select(func.count())
                .select_from(CreditGrant)
                .where(CreditGrant.source_id == "pay-1")
            )
            assert count.scalar_one() == 1
            assert await CreditService(session).get_balance(user_id, now=now) == 500
