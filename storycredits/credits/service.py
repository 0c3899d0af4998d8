"""Credit service: balance, FIFO consumption and grants.

This is the main entry point for ledger operations. It handles:
- Active balance and per-grant details
- FIFO consumption with per-user locking
- Idempotent grants (payments, refunds, admin grants)
- Admin exact-balance adjustments
- The cached balance mirror
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import logfire

from storycredits.credits.expiry import compute_expiry
from storycredits.credits.fifo import GrantSlice, allocate_fifo, split_by_permanence
from storycredits.credits.types import (
    GRANT_TRANSACTION_TYPES,
    ConsumeResult,
    GrantDetail,
    GrantSource,
    TransactionType,
)
from storycredits.db.ledger import (
    apply_allocations,
    get_active_balance,
    get_cached_balance,
    get_grant_id_by_source_id,
    insert_grant,
    list_grants,
    lock_active_grants,
    lock_user_ledger,
    mirror_balance,
    record_transaction,
    upsert_subscription,
)
from storycredits.errors import InsufficientBalanceError, InvalidBalanceTargetError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class CreditService:
    """Service for reading and moving credits.

    All methods run in the session's transaction and never commit; wrap them
    in ``DatabaseManager.session()``.

    Usage:
        async with db.session() as session:
            service = CreditService(session)

            result = await service.consume(user_id, 120, "Story: The Lighthouse")
            if not result.success:
                ...  # Tell the user to top up

            # Job failed after consuming, give the credits back
            await service.refund(user_id, 120, source_id=f"refund:job:{job_id}")
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_balance(self, user_id: UUID, *, now: datetime | None = None) -> int:
        return await get_active_balance(self.session, user_id, now)

    async def get_cached_balance(
        self, user_id: UUID, *, now: datetime | None = None
    ) -> int:
        """Cached balance, recomputed and stored on a miss."""
        cached = await get_cached_balance(self.session, user_id)
        if cached is not None:
            return cached
        return await self.resync_balance(user_id, now=now)

    async def resync_balance(
        self, user_id: UUID, *, now: datetime | None = None
    ) -> int:
        """Overwrite the cache mirror from the grants."""
        balance = await get_active_balance(self.session, user_id, now)
        await mirror_balance(self.session, user_id, balance, now)
        return balance

    async def get_credit_details(
        self, user_id: UUID, *, now: datetime | None = None
    ) -> list[GrantDetail]:
        """Every grant of the user with its state at ``now``."""
        now = now or datetime.now(UTC)
        grants = await list_grants(self.session, user_id)
        return [
            GrantDetail(
                id=g.id,
                source=g.source,
                source_id=g.source_id,
                amount=g.amount,
                consumed=g.consumed,
                remaining=g.remaining,
                granted_at=g.granted_at,
                expires_at=g.expires_at,
                is_active=g.is_active(now),
            )
            for g in grants
        ]

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    async def consume(
        self,
        user_id: UUID,
        amount: int,
        description: str | None = None,
        metadata: dict | None = None,
        *,
        transaction_type: TransactionType = TransactionType.CONSUMPTION,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """Spend ``amount`` credits, soonest-expiring grants first.

        Insufficient balance is a normal outcome, not an error: nothing is
        written and ``success`` is False.

        Raises:
            ValueError: If amount is not positive.
        """
        if amount <= 0:
            msg = f"Amount must be positive, got {amount}"
            raise ValueError(msg)
        now = now or datetime.now(UTC)

        with logfire.span(
            "db.consume_credits",
            user_id=str(user_id),
            amount=amount,
            type=str(transaction_type),
        ):
            await lock_user_ledger(self.session, user_id)
            rows = await lock_active_grants(self.session, user_id, now)
            grants = [GrantSlice(r.id, r.remaining, r.expires_at) for r in rows]
            balance = sum(g.remaining for g in grants)

            if balance < amount:
                logfire.info(
                    "consume_rejected_insufficient",
                    user_id=str(user_id),
                    balance=balance,
                    requested=amount,
                )
                return ConsumeResult(
                    success=False, new_balance=balance, error="insufficient_balance"
                )

            allocations = allocate_fifo(grants, amount, now)
            await apply_allocations(self.session, allocations)

            from_expiring, from_permanent = split_by_permanence(allocations)
            new_balance = balance - amount

            await record_transaction(
                self.session,
                user_id,
                -amount,
                transaction_type,
                balance,
                description=description,
                metadata={
                    "consumed_from_expiring": from_expiring,
                    "consumed_from_permanent": from_permanent,
                    "allocations": {str(a.grant_id): a.take for a in allocations},
                    "original_metadata": metadata or {},
                },
                created_at=now,
            )
            await mirror_balance(self.session, user_id, new_balance, now)

            logfire.info(
                "credits_consumed",
                user_id=str(user_id),
                amount=amount,
                new_balance=new_balance,
                grants=len(allocations),
            )
            return ConsumeResult(
                success=True,
                new_balance=new_balance,
                consumed_from_expiring=from_expiring,
                consumed_from_permanent=from_permanent,
            )

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def grant(
        self,
        user_id: UUID,
        amount: int,
        source: GrantSource | str,
        source_id: str,
        *,
        reason: str | None = None,
        metadata: dict | None = None,
        expires_in_days: int | None = None,
        plan_id: str | None = None,
        provider: str | None = None,
        transaction_type: TransactionType | None = None,
        now: datetime | None = None,
    ) -> UUID:
        """Issue a grant exactly once per ``source_id``.

        A repeated ``source_id`` returns the existing grant's id and writes
        nothing, whoever inserted it first.

        Args:
            user_id: Owner of the credits.
            amount: Credits to grant, positive.
            source: Grant source, decides the expiry policy.
            source_id: Idempotency key (payment id, refund key, ...).
            reason: Description stored on the transaction row.
            metadata: Extra context stored on the grant and the transaction.
            expires_in_days: Lifetime for bonus, initial and admin grants.
            plan_id: Subscription plan; upserts user_subscriptions when set.
            provider: Payment provider for the subscription row.
            transaction_type: Override the transaction type implied by source.
            now: Grant time, defaults to the current UTC time.

        Returns:
            The grant id.

        Raises:
            ValueError: If amount or expires_in_days is not positive.
        """
        if amount <= 0:
            msg = f"Amount must be positive, got {amount}"
            raise ValueError(msg)
        source = GrantSource(source)
        now = now or datetime.now(UTC)

        with logfire.span(
            "db.grant_credits",
            user_id=str(user_id),
            amount=amount,
            source=str(source),
            source_id=source_id,
        ):
            existing = await get_grant_id_by_source_id(self.session, source_id)
            if existing is not None:
                logfire.info(
                    "grant_skipped_duplicate",
                    source_id=source_id,
                    grant_id=str(existing),
                )
                return existing

            await lock_user_ledger(self.session, user_id)
            expires_at = compute_expiry(source, now, expires_in_days)
            balance_before = await get_active_balance(self.session, user_id, now)

            grant_metadata = dict(metadata or {})
            if plan_id:
                grant_metadata["plan_id"] = plan_id
            if reason:
                grant_metadata["reason"] = reason

            grant_id = await insert_grant(
                self.session,
                user_id,
                amount,
                source,
                source_id,
                granted_at=now,
                expires_at=expires_at,
                metadata=grant_metadata,
            )
            if grant_id is None:
                # A concurrent transaction committed the same source_id
                existing = await get_grant_id_by_source_id(self.session, source_id)
                logfire.info("grant_lost_race", source_id=source_id)
                return existing

            await record_transaction(
                self.session,
                user_id,
                amount,
                transaction_type or GRANT_TRANSACTION_TYPES[source],
                balance_before,
                description=reason,
                metadata={
                    "grant_id": str(grant_id),
                    "source": str(source),
                    "source_id": source_id,
                    "expires_at": expires_at.isoformat(),
                    **grant_metadata,
                },
                created_at=now,
            )
            await mirror_balance(self.session, user_id, balance_before + amount, now)

            if plan_id and source in (GrantSource.SUBSCRIPTION, GrantSource.CRYPTO):
                await upsert_subscription(
                    self.session, user_id, plan_id, expires_at, provider
                )

            logfire.info(
                "credits_granted",
                user_id=str(user_id),
                amount=amount,
                source=str(source),
                source_id=source_id,
                expires_at=expires_at.isoformat(),
            )
            return grant_id

    async def refund(
        self,
        user_id: UUID,
        amount: int,
        source_id: str,
        reason: str | None = None,
        metadata: dict | None = None,
        *,
        now: datetime | None = None,
    ) -> UUID:
        """Give credits back as a 30-day bonus grant, once per ``source_id``."""
        return await self.grant(
            user_id,
            amount,
            GrantSource.BONUS,
            source_id,
            reason=reason or "Refund",
            metadata=metadata,
            transaction_type=TransactionType.REFUND,
            now=now,
        )

    async def admin_grant(
        self,
        user_id: UUID,
        amount: int,
        *,
        reason: str | None = None,
        admin_id: str | None = None,
        source: GrantSource | str = GrantSource.ADMIN_GRANT,
        expires_in_days: int | None = None,
        now: datetime | None = None,
    ) -> UUID:
        """Operator grant with a fresh source id."""
        grant_id = await self.grant(
            user_id,
            amount,
            source,
            f"admin_grant:{uuid4()}",
            reason=reason,
            metadata={"admin_id": admin_id},
            expires_in_days=expires_in_days,
            transaction_type=TransactionType.ADMIN_GRANT,
            now=now,
        )
        logfire.info(
            "admin_credits_granted",
            user_id=str(user_id),
            amount=amount,
            admin_id=admin_id,
        )
        return grant_id

    async def deduct(
        self,
        user_id: UUID,
        amount: int,
        *,
        reason: str | None = None,
        admin_id: str | None = None,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """Operator deduction through the FIFO engine.

        Raises:
            InsufficientBalanceError: If the balance cannot cover ``amount``.
        """
        result = await self.consume(
            user_id,
            amount,
            reason or "Admin deduction",
            {"admin_id": admin_id},
            transaction_type=TransactionType.ADMIN_DEDUCT,
            now=now,
        )
        if not result.success:
            raise InsufficientBalanceError(user_id, result.new_balance, amount)
        return result

    async def set_exact_balance(
        self,
        user_id: UUID,
        target: int,
        *,
        reason: str | None = None,
        admin_id: str | None = None,
        now: datetime | None = None,
    ) -> UUID | None:
        """Move the active balance to exactly ``target``.

        Grants the difference (365-day admin grant) or consumes it FIFO.

        Returns:
            The new grant id when credits were added, else None.

        Raises:
            InvalidBalanceTargetError: If target is negative.
            InsufficientBalanceError: If the deduction cannot be covered.
        """
        if target < 0:
            msg = f"Target balance must not be negative, got {target}"
            raise InvalidBalanceTargetError(msg)
        now = now or datetime.now(UTC)

        await lock_user_ledger(self.session, user_id)
        current = await get_active_balance(self.session, user_id, now)
        difference = target - current
        adjustment = {
            "reason": reason,
            "admin_id": admin_id,
            "balance_adjustment": difference,
            "old_balance": current,
            "new_balance": target,
        }

        if difference == 0:
            logfire.info("set_balance_noop", user_id=str(user_id), balance=current)
            return None

        if difference > 0:
            return await self.grant(
                user_id,
                difference,
                GrantSource.ADMIN_GRANT,
                f"admin_balance:{uuid4()}",
                reason=reason or "Admin balance adjustment",
                metadata=adjustment,
                expires_in_days=365,
                transaction_type=TransactionType.ADJUSTMENT,
                now=now,
            )

        result = await self.consume(
            user_id,
            -difference,
            reason or "Admin balance adjustment",
            adjustment,
            transaction_type=TransactionType.ADJUSTMENT,
            now=now,
        )
        if not result.success:
            raise InsufficientBalanceError(user_id, result.new_balance, -difference)
        return None
