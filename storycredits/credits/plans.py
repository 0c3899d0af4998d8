"""Subscription plans, credit packs and provider product mappings."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Plan:
    """A monthly subscription plan."""

    id: str
    name: str
    credits: int  # Credits granted per 30-day period


@dataclass(frozen=True, slots=True)
class CreditPack:
    """A one-off purchasable credit pack."""

    id: str
    credits: int
    bonus: int = 0  # Extra credits on top

    @property
    def total(self) -> int:
        return self.credits + self.bonus


PLANS: dict[str, Plan] = {
    "starter": Plan("starter", "Starter", 2000),
    "pro": Plan("pro", "Pro", 6000),
    "ultimate": Plan("ultimate", "Ultimate", 20000),
}

CREDIT_PACKS: dict[str, CreditPack] = {
    "pack_500": CreditPack("pack_500", 500),
    "pack_1000": CreditPack("pack_1000", 1000),
    "pack_2500": CreditPack("pack_2500", 2500, 100),
    "pack_5000": CreditPack("pack_5000", 5000, 300),
    "pack_10000": CreditPack("pack_10000", 10000, 1000),
    "pack_25000": CreditPack("pack_25000", 25000, 3000),
}

# Paddle price id -> plan or pack id
PADDLE_PRICES: dict[str, str] = {
    "pri_01kaseyhggrqz2x9j73ma2cwwc": "starter",
    "pri_01kasewrjdgwem95fc233cn9we": "pro",
    "pri_01kasetbgrprt81dr7tfe69knx": "ultimate",
    "pri_01kasjcz3c4zzk84jfhn18pen9": "pack_500",
    "pri_01kasjsv3wdxcbjjr8731skn88": "pack_2500",
    "pri_01kasjyt0kh2cw523fvp207dpd": "pack_5000",
    "pri_01kasjg4rf5j0qgmxsxqzv2f90": "pack_10000",
}

# LemonSqueezy variant id -> plan id (live and test mode stores)
LEMONSQUEEZY_VARIANTS: dict[str, str] = {
    "720643": "starter",
    "720649": "pro",
    "720658": "ultimate",
    "1134259": "starter",
    "1134267": "pro",
    "1134281": "ultimate",
}


def get_plan(plan_id: str) -> Plan | None:
    return PLANS.get(plan_id)


def get_pack(pack_id: str) -> CreditPack | None:
    return CREDIT_PACKS.get(pack_id)


def resolve_product(product_id: str | None) -> tuple[str | None, str | None]:
    """Split a plan-or-pack id into (plan_id, pack_id).

    Accepts catalog ids directly as well as Paddle prices and LemonSqueezy
    variants. Returns (None, None) for anything unknown.
    """
    if not product_id:
        return None, None
    product_id = PADDLE_PRICES.get(product_id) or LEMONSQUEEZY_VARIANTS.get(
        product_id, product_id
    )
    if product_id in PLANS:
        return product_id, None
    if product_id in CREDIT_PACKS:
        return None, product_id
    return None, None
