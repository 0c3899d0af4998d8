"""Credit economy: grant sources, expiry, FIFO allocation and the service.

Provides:
- Plan and pack catalog with provider product mappings
- Expiry policy per grant source
- FIFO allocation over active grants
- Credit service for balance, consumption and grants
"""

from storycredits.credits.expiry import compute_expiry, is_permanent
from storycredits.credits.fifo import Allocation, GrantSlice, allocate_fifo
from storycredits.credits.plans import (
    CREDIT_PACKS,
    PLANS,
    CreditPack,
    Plan,
    get_pack,
    get_plan,
    resolve_product,
)
from storycredits.credits.service import CreditService
from storycredits.credits.types import (
    ConsumeResult,
    GrantDetail,
    GrantSource,
    TransactionType,
)

__all__ = [
    # Catalog
    "Plan",
    "CreditPack",
    "PLANS",
    "CREDIT_PACKS",
    "get_plan",
    "get_pack",
    "resolve_product",
    # Policy
    "compute_expiry",
    "is_permanent",
    "GrantSlice",
    "Allocation",
    "allocate_fifo",
    # Service
    "CreditService",
    # Types
    "ConsumeResult",
    "GrantDetail",
    "GrantSource",
    "TransactionType",
]
