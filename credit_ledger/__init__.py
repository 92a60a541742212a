"""
Credit Ledger and Style Unlocks

This module provides:
- Append-only credit ledger with a running balance snapshot per entry
- Spend-to-unlock with automatic rollback entries on failure
- Idempotent credit grants keyed by purchase receipt
- Per-user serialised balance changes
- Audit-friendly structure
"""

from .models import (
    LedgerSource,
    LedgerEntry,
    CatalogItem,
    Product,
    Entitlement,
    SpendResult,
    PurchaseGrantResult,
    UserBalance,
)
from .catalog import Catalog
from .storage import Storage, InMemoryStorage
from .service import CreditService

__all__ = [
    "LedgerSource",
    "LedgerEntry",
    "CatalogItem",
    "Product",
    "Entitlement",
    "SpendResult",
    "PurchaseGrantResult",
    "UserBalance",
    "Catalog",
    "Storage",
    "InMemoryStorage",
    "CreditService",
]
