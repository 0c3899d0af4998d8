"""Payment webhooks: provider adapters, status machine and the idempotency gate."""

from storycredits.payments.gate import (
    GateResult,
    ProcessOutcome,
    RecordResult,
    WebhookGate,
)
from storycredits.payments.providers import (
    ADAPTERS,
    PaymentEvent,
    ProviderAdapter,
    get_adapter,
)
from storycredits.payments.status import PaymentStatus, can_advance

__all__ = [
    # Providers
    "ADAPTERS",
    "PaymentEvent",
    "ProviderAdapter",
    "get_adapter",
    # Status machine
    "PaymentStatus",
    "can_advance",
    # Gate
    "WebhookGate",
    "GateResult",
    "RecordResult",
    "ProcessOutcome",
]
