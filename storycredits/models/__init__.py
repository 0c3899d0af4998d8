"""SQLAlchemy models for the credit ledger."""

from storycredits.models.balance_transaction import BalanceTransaction
from storycredits.models.base import Base, TimestampMixin
from storycredits.models.credit_grant import CreditGrant
from storycredits.models.generation_job import GenerationJob
from storycredits.models.kv_store import KVEntry, balance_key
from storycredits.models.payment_record import PaymentRecord
from storycredits.models.user_subscription import UserSubscription
from storycredits.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "CreditGrant",
    "BalanceTransaction",
    "WebhookEvent",
    "PaymentRecord",
    "UserSubscription",
    "KVEntry",
    "balance_key",
    "GenerationJob",
]
