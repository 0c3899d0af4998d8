"""First-expiring-first-consumed allocation over active grants."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from storycredits.credits.expiry import is_permanent


@dataclass(frozen=True, slots=True)
class GrantSlice:
    """The part of an active grant that is still spendable."""

    id: UUID
    remaining: int
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class Allocation:
    grant_id: UUID
    take: int
    permanent: bool


def allocate_fifo(
    grants: Sequence[GrantSlice], amount: int, now: datetime
) -> list[Allocation]:
    """Spread ``amount`` over grants in expiry order.

    ``grants`` must already be sorted by ``expires_at`` ascending. Each grant
    gives ``min(remaining, still_needed)``. Grants that end up untouched are
    not part of the result.

    Raises:
        ValueError: If amount is not positive or exceeds the total remaining.
    """
    if amount <= 0:
        msg = f"Amount must be positive, got {amount}"
        raise ValueError(msg)

    total = sum(g.remaining for g in grants)
    if total < amount:
        msg = f"Cannot allocate {amount} from {total} remaining credits"
        raise ValueError(msg)

    allocations: list[Allocation] = []
    needed = amount
    for grant in grants:
        if needed == 0:
            break
        take = min(grant.remaining, needed)
        if take <= 0:
            continue
        allocations.append(
            Allocation(grant.id, take, is_permanent(grant.expires_at, now))
        )
        needed -= take
    return allocations


def split_by_permanence(allocations: Sequence[Allocation]) -> tuple[int, int]:
    """Return (consumed_from_expiring, consumed_from_permanent)."""
    permanent = sum(a.take for a in allocations if a.permanent)
    expiring = sum(a.take for a in allocations if not a.permanent)
    return expiring, permanent
