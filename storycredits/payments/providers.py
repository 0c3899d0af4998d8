"""Payment provider adapters.

Each adapter verifies a webhook signature against its provider secret and
normalises the provider payload into a ``PaymentEvent``. Adapters never touch
the database; the gate decides what to do with the event.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar
from uuid import UUID

from storycredits.credits.plans import resolve_product
from storycredits.payments.status import (
    CRYPTOMUS_STATUSES,
    LEMONSQUEEZY_EVENTS,
    NOWPAYMENTS_STATUSES,
    PADDLE_EVENTS,
    PaymentStatus,
    normalize,
)


@dataclass(frozen=True, slots=True)
class PaymentEvent:
    """A provider webhook reduced to what the ledger needs."""

    provider: str
    payment_id: str
    event_type: str
    status: PaymentStatus
    provider_status: str | None
    signature_verified: bool
    raw_data: dict[str, Any] = field(repr=False)
    signature: str | None = None
    order_id: str | None = None
    user_id: UUID | None = None
    plan_id: str | None = None
    pack_id: str | None = None
    amount_usd: Decimal | None = None
    currency: str | None = None


def _to_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _to_text(value: Any) -> str | None:
    return None if value is None else str(value)


class _RawNumber(str):
    """A JSON float kept as the text the sender wrote."""


def _sorted_json(value: Any) -> str:
    """Compact JSON with keys sorted at every level, as JavaScript writes it.

    Floats must be parsed as ``_RawNumber``: ``json.dumps`` would turn
    ``0.00005`` into ``5e-05`` and break the signature.
    """
    if isinstance(value, dict):
        items = (
            json.dumps(key, ensure_ascii=False) + ":" + _sorted_json(value[key])
            for key in sorted(value)
        )
        return "{" + ",".join(items) + "}"
    if isinstance(value, list):
        return "[" + ",".join(_sorted_json(item) for item in value) + "]"
    if isinstance(value, _RawNumber):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


class ProviderAdapter:
    """Base adapter. Subclasses implement ``verify`` and ``normalize``."""

    name: ClassVar[str]
    # Crypto processors grant subscription periods as `crypto` grants
    crypto: ClassVar[bool] = False

    def __init__(self, secret: str | None):
        self._secret = secret

    def parse(self, raw_body: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        """Verify and normalise a webhook delivery.

        Raises:
            ValueError: If the body is not a JSON object.
        """
        payload = json.loads(raw_body)
        if not isinstance(payload, dict):
            msg = f"{self.name} webhook body must be a JSON object"
            raise ValueError(msg)

        lowered = {k.lower(): v for k, v in headers.items()}
        signature = self.signature_from(lowered, payload)
        verified = (
            self._secret is not None
            and signature is not None
            and self.verify(raw_body, payload, signature)
        )
        event = self.normalize(payload, verified=verified, signature=signature)
        if not event.payment_id:
            msg = f"{self.name} webhook carries no payment id"
            raise ValueError(msg)
        return event

    def signature_from(
        self, headers: Mapping[str, str], payload: dict[str, Any]
    ) -> str | None:
        raise NotImplementedError

    def verify(self, raw_body: bytes, payload: dict[str, Any], signature: str) -> bool:
        raise NotImplementedError

    def normalize(
        self, payload: dict[str, Any], *, verified: bool, signature: str | None
    ) -> PaymentEvent:
        raise NotImplementedError


class NowPaymentsAdapter(ProviderAdapter):
    """NOWPayments IPN: HMAC-SHA512 over the body with sorted keys."""

    name = "nowpayments"
    crypto = True

    def signature_from(self, headers, payload):
        return headers.get("x-nowpayments-sig")

    def verify(self, raw_body, payload, signature):
        message = _sorted_json(json.loads(raw_body, parse_float=_RawNumber))
        expected = hmac.new(
            self._secret.encode(), message.encode(), hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(expected, signature.lower())

    def normalize(self, payload, *, verified, signature):
        raw_status = _to_text(payload.get("payment_status"))
        return PaymentEvent(
            provider=self.name,
            payment_id=str(payload.get("payment_id", "")),
            order_id=_to_text(payload.get("order_id")),
            event_type="ipn",
            status=normalize(NOWPAYMENTS_STATUSES, raw_status),
            provider_status=raw_status,
            signature=signature,
            signature_verified=verified,
            raw_data=payload,
            amount_usd=_to_decimal(payload.get("price_amount")),
            currency=_to_text(payload.get("pay_currency")),
        )


class CryptomusAdapter(ProviderAdapter):
    """Cryptomus: MD5 of base64(body without ``sign``) plus the API key."""

    name = "cryptomus"
    crypto = True

    def signature_from(self, headers, payload):
        return payload.get("sign") or headers.get("sign")

    def verify(self, raw_body, payload, signature):
        unsigned = {k: v for k, v in payload.items() if k != "sign"}
        compact = json.dumps(unsigned, separators=(",", ":"), ensure_ascii=False)
        # Cryptomus signs PHP json_encode output, which escapes slashes
        for candidate in (compact, compact.replace("/", "\\/")):
            encoded = base64.b64encode(candidate.encode()).decode()
            expected = hashlib.md5((encoded + self._secret).encode()).hexdigest()
            if hmac.compare_digest(expected, signature.lower()):
                return True
        return False

    def normalize(self, payload, *, verified, signature):
        raw_status = _to_text(payload.get("status"))
        return PaymentEvent(
            provider=self.name,
            payment_id=str(payload.get("uuid", "")),
            order_id=_to_text(payload.get("order_id")),
            event_type=_to_text(payload.get("type")) or "payment",
            status=normalize(CRYPTOMUS_STATUSES, raw_status),
            provider_status=raw_status,
            signature=signature,
            signature_verified=verified,
            raw_data=payload,
            amount_usd=_to_decimal(payload.get("payment_amount_usd")),
            currency=_to_text(
                payload.get("payer_currency") or payload.get("currency")
            ),
        )


class PaddleAdapter(ProviderAdapter):
    """Paddle Billing: ``Paddle-Signature: ts=...;h1=...`` over ``ts:body``."""

    name = "paddle"

    def signature_from(self, headers, payload):
        return headers.get("paddle-signature")

    def verify(self, raw_body, payload, signature):
        parts = dict(
            part.strip().split("=", 1) for part in signature.split(";") if "=" in part
        )
        ts, h1 = parts.get("ts"), parts.get("h1")
        if not ts or not h1:
            return False
        signed = ts.encode() + b":" + raw_body
        expected = hmac.new(self._secret.encode(), signed, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, h1)

    def normalize(self, payload, *, verified, signature):
        event_type = _to_text(payload.get("event_type")) or ""
        data = payload.get("data") or {}
        custom = data.get("custom_data") or {}
        items = data.get("items") or [{}]
        price_id = (items[0].get("price") or {}).get("id") or items[0].get("price_id")
        plan_id, pack_id = resolve_product(custom.get("plan_id") or price_id)

        # Transactions nest totals under details, adjustments do not
        totals = (data.get("details") or {}).get("totals") or data.get("totals") or {}
        total = totals.get("total")
        amount = _to_decimal(total)

        # Adjustments (refunds) have their own adj_ id and point at the transaction
        if event_type.startswith("adjustment."):
            payment_id = data.get("transaction_id", "")
        else:
            # Subscription lifecycle events carry a subscription id, not a payment
            payment_id = data.get("id", "")

        status = normalize(PADDLE_EVENTS, event_type)
        return PaymentEvent(
            provider=self.name,
            payment_id=str(payment_id or ""),
            order_id=_to_text(payload.get("event_id")),
            event_type=event_type,
            status=status,
            provider_status=_to_text(data.get("status")),
            signature=signature,
            signature_verified=verified,
            raw_data=payload,
            user_id=_to_uuid(custom.get("user_id")),
            plan_id=plan_id,
            pack_id=pack_id,
            # Paddle totals are in minor units
            amount_usd=amount / 100 if amount is not None else None,
            currency=_to_text(data.get("currency_code")),
        )


class LemonSqueezyAdapter(ProviderAdapter):
    """LemonSqueezy: ``X-Signature`` is HMAC-SHA256 hex of the raw body."""

    name = "lemonsqueezy"

    def signature_from(self, headers, payload):
        return headers.get("x-signature")

    def verify(self, raw_body, payload, signature):
        expected = hmac.new(self._secret.encode(), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    def normalize(self, payload, *, verified, signature):
        meta = payload.get("meta") or {}
        custom = meta.get("custom_data") or {}
        data = payload.get("data") or {}
        attributes = data.get("attributes") or {}
        event_name = _to_text(meta.get("event_name")) or ""

        variant_id = attributes.get("variant_id") or (
            attributes.get("first_order_item") or {}
        ).get("variant_id")
        product = custom.get("plan_id") or custom.get("pack_id") or variant_id
        plan_id, pack_id = resolve_product(str(product) if product else None)

        total = _to_decimal(attributes.get("total_usd", attributes.get("total")))
        return PaymentEvent(
            provider=self.name,
            # Orders and subscription invoices are numbered independently
            payment_id=(
                f"{data.get('type', 'unknown')}:{data['id']}" if data.get("id") else ""
            ),
            order_id=str(attributes.get("order_id") or "") or None,
            event_type=event_name,
            status=normalize(LEMONSQUEEZY_EVENTS, event_name),
            provider_status=_to_text(attributes.get("status")),
            signature=signature,
            signature_verified=verified,
            raw_data=payload,
            user_id=_to_uuid(custom.get("user_id")),
            plan_id=plan_id,
            pack_id=pack_id,
            amount_usd=total / 100 if total is not None else None,
            currency=_to_text(attributes.get("currency")),
        )


ADAPTERS: dict[str, type[ProviderAdapter]] = {
    adapter.name: adapter
    for adapter in (
        NowPaymentsAdapter,
        CryptomusAdapter,
        PaddleAdapter,
        LemonSqueezyAdapter,
    )
}


def get_adapter(provider: str, secrets: Mapping[str, str | None]) -> ProviderAdapter:
    """Build the adapter for ``provider`` with its configured secret.

    Raises:
        KeyError: If the provider is not supported.
    """
    return ADAPTERS[provider](secrets.get(provider))
