"""Exceptions raised by the credit ledger and payment processing."""

from __future__ import annotations

from uuid import UUID


class LedgerError(Exception):
    """Base class for ledger errors."""


class InsufficientBalanceError(LedgerError):
    """The user's active balance cannot cover the requested amount."""

    def __init__(self, user_id: UUID, available: int, requested: int):
        self.user_id = user_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance for {user_id}: "
            f"current {available}, requested {requested}"
        )


class InvalidBalanceTargetError(LedgerError):
    """Exact balance target is negative."""


class PaymentNotFoundError(LedgerError):
    """Webhook refers to a payment the ledger has never seen."""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class UnknownProductError(LedgerError):
    """Payment refers to a plan or pack missing from the catalog."""


class IllegalJobTransitionError(LedgerError):
    """A failed job may not be marked completed."""

    def __init__(self, job_id: UUID, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change job {job_id} from '{current}' to '{requested}'. "
            "Start a new job to retry."
        )
