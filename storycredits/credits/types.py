"""Types for credit operations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from uuid import UUID


class GrantSource(StrEnum):
    """Where a credit grant came from. Decides its expiry policy."""

    PURCHASE = "purchase"  # One-off pack, effectively permanent
    SUBSCRIPTION = "subscription"  # Card subscription period, 30 days
    CRYPTO = "crypto"  # Crypto-paid subscription period, 30 days
    BONUS = "bonus"  # Promotional or refunded credits
    INITIAL = "initial"  # Sign-up credits
    ADMIN_GRANT = "admin_grant"  # Issued by an operator


class TransactionType(StrEnum):
    """Types of balance transactions for audit trail."""

    INITIAL = "initial"  # Sign-up credits
    BONUS = "bonus"  # Promotional credits
    REFUND = "refund"  # Refunded after a failed generation
    ADJUSTMENT = "adjustment"  # Admin set exact balance
    PURCHASE = "purchase"  # Pack bought with card
    SUBSCRIPTION = "subscription"  # Subscription period credits
    ADMIN_GRANT = "admin_grant"  # Operator grant
    ADMIN_DEDUCT = "admin_deduct"  # Operator deduction
    CREDIT_PURCHASE = "credit_purchase"  # Pack bought with crypto
    CONSUMPTION = "consumption"  # Spent on a generation
    EXPIRATION = "expiration"  # Unspent credits burned at expiry


# Transaction logged for a grant unless the caller overrides it
GRANT_TRANSACTION_TYPES: dict[GrantSource, TransactionType] = {
    GrantSource.PURCHASE: TransactionType.PURCHASE,
    GrantSource.SUBSCRIPTION: TransactionType.SUBSCRIPTION,
    GrantSource.CRYPTO: TransactionType.SUBSCRIPTION,
    GrantSource.BONUS: TransactionType.BONUS,
    GrantSource.INITIAL: TransactionType.INITIAL,
    GrantSource.ADMIN_GRANT: TransactionType.ADMIN_GRANT,
}


@dataclass(frozen=True, slots=True)
class ConsumeResult:
    """Outcome of a FIFO consumption.

    On failure nothing was written and new_balance is the untouched balance.
    """

    success: bool
    new_balance: int
    consumed_from_expiring: int = 0
    consumed_from_permanent: int = 0
    error: str | None = None

    @property
    def consumed(self) -> int:
        return self.consumed_from_expiring + self.consumed_from_permanent


@dataclass(frozen=True, slots=True)
class GrantDetail:
    """A single grant as shown to admins."""

    id: UUID
    source: str
    source_id: str
    amount: int
    consumed: int
    remaining: int
    granted_at: datetime
    expires_at: datetime
    is_active: bool
