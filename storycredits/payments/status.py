"""Payment status normalisation and the monotonic status machine."""

from __future__ import annotations

from enum import StrEnum


class PaymentStatus(StrEnum):
    """Provider-independent payment status."""

    WAITING = "waiting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    FINISHED = "finished"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    PAID_OVER = "paid_over"
    WRONG_AMOUNT = "wrong_amount"
    UNKNOWN = "unknown"


# Statuses that grant credits
SUCCESS_STATUSES = frozenset({PaymentStatus.CONFIRMED, PaymentStatus.FINISHED})

# Terminal statuses that never grant
FAILURE_STATUSES = frozenset(
    {PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED}
)

# Money arrived but not as ordered, needs a human
ANOMALY_STATUSES = frozenset(
    {
        PaymentStatus.PARTIALLY_PAID,
        PaymentStatus.PAID_OVER,
        PaymentStatus.WRONG_AMOUNT,
    }
)

TERMINAL_STATUSES = SUCCESS_STATUSES | FAILURE_STATUSES | ANOMALY_STATUSES

_RANK: dict[PaymentStatus, int] = {
    PaymentStatus.UNKNOWN: 0,
    PaymentStatus.WAITING: 1,
    PaymentStatus.CONFIRMING: 2,
    PaymentStatus.SENDING: 3,
    PaymentStatus.PARTIALLY_PAID: 4,
    PaymentStatus.CONFIRMED: 5,
    PaymentStatus.FINISHED: 6,
    PaymentStatus.PAID_OVER: 6,
    PaymentStatus.WRONG_AMOUNT: 6,
    PaymentStatus.FAILED: 6,
    PaymentStatus.EXPIRED: 6,
    PaymentStatus.REFUNDED: 7,
}


def rank(status: PaymentStatus) -> int:
    return _RANK[status]


def can_advance(current: PaymentStatus, new: PaymentStatus) -> bool:
    """Whether a payment in ``current`` may move to ``new``.

    Progress is monotonic. Terminal states are final, except that confirmed
    may still become finished and a finished payment may later be refunded.
    """
    if current == new:
        return False
    if current == PaymentStatus.CONFIRMED and new == PaymentStatus.FINISHED:
        return True
    if current in SUCCESS_STATUSES and new == PaymentStatus.REFUNDED:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return rank(new) > rank(current)


# -----------------------------------------------------------------------------
# Provider status maps
# -----------------------------------------------------------------------------

NOWPAYMENTS_STATUSES: dict[str, PaymentStatus] = {
    "waiting": PaymentStatus.WAITING,
    "confirming": PaymentStatus.CONFIRMING,
    "confirmed": PaymentStatus.CONFIRMED,
    "sending": PaymentStatus.SENDING,
    "partially_paid": PaymentStatus.PARTIALLY_PAID,
    "finished": PaymentStatus.FINISHED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "expired": PaymentStatus.EXPIRED,
}

CRYPTOMUS_STATUSES: dict[str, PaymentStatus] = {
    "check": PaymentStatus.WAITING,
    "process": PaymentStatus.CONFIRMING,
    "confirm_check": PaymentStatus.CONFIRMING,
    "paid": PaymentStatus.FINISHED,
    "paid_over": PaymentStatus.PAID_OVER,
    "wrong_amount": PaymentStatus.WRONG_AMOUNT,
    "wrong_amount_waiting": PaymentStatus.PARTIALLY_PAID,
    "fail": PaymentStatus.FAILED,
    "system_fail": PaymentStatus.FAILED,
    "cancel": PaymentStatus.FAILED,
    "refund_process": PaymentStatus.CONFIRMING,
    "refund_paid": PaymentStatus.REFUNDED,
    "refund_fail": PaymentStatus.FAILED,
    "locked": PaymentStatus.CONFIRMING,
}

PADDLE_EVENTS: dict[str, PaymentStatus] = {
    "transaction.created": PaymentStatus.WAITING,
    "transaction.ready": PaymentStatus.WAITING,
    "transaction.billed": PaymentStatus.CONFIRMING,
    "transaction.paid": PaymentStatus.CONFIRMED,
    "transaction.completed": PaymentStatus.FINISHED,
    "transaction.payment_failed": PaymentStatus.FAILED,
    "transaction.canceled": PaymentStatus.FAILED,
    "adjustment.created": PaymentStatus.REFUNDED,
}

LEMONSQUEEZY_EVENTS: dict[str, PaymentStatus] = {
    "order_created": PaymentStatus.FINISHED,
    "order_refunded": PaymentStatus.REFUNDED,
    "subscription_payment_success": PaymentStatus.FINISHED,
    "subscription_payment_failed": PaymentStatus.FAILED,
    "subscription_payment_refunded": PaymentStatus.REFUNDED,
}


def normalize(mapping: dict[str, PaymentStatus], raw: str | None) -> PaymentStatus:
    if raw is None:
        return PaymentStatus.UNKNOWN
    return mapping.get(raw.lower(), PaymentStatus.UNKNOWN)
