"""Expiry policy per grant source."""

from __future__ import annotations

from datetime import datetime, timedelta

from storycredits.credits.types import GrantSource

SUBSCRIPTION_PERIOD = timedelta(days=30)
DEFAULT_GRANT_PERIOD = timedelta(days=30)
ADMIN_BALANCE_PERIOD = timedelta(days=365)

# Purchased packs never really expire
PERMANENT_PERIOD = timedelta(days=365 * 100)

# Grants expiring later than this count as permanent in breakdowns
PERMANENT_HORIZON = timedelta(days=365 * 50)


def compute_expiry(
    source: GrantSource,
    granted_at: datetime,
    expires_in_days: int | None = None,
) -> datetime:
    """Compute when a grant issued at ``granted_at`` stops counting.

    Subscription and crypto periods are fixed at 30 days, purchases are
    permanent, everything else honours ``expires_in_days`` (default 30).
    """
    if source in (GrantSource.SUBSCRIPTION, GrantSource.CRYPTO):
        return granted_at + SUBSCRIPTION_PERIOD
    if source == GrantSource.PURCHASE:
        return granted_at + PERMANENT_PERIOD
    if expires_in_days is not None:
        if expires_in_days <= 0:
            msg = f"expires_in_days must be positive, got {expires_in_days}"
            raise ValueError(msg)
        return granted_at + timedelta(days=expires_in_days)
    return granted_at + DEFAULT_GRANT_PERIOD


def is_permanent(expires_at: datetime, now: datetime) -> bool:
    return expires_at - now > PERMANENT_HORIZON
