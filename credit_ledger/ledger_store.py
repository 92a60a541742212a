"""
Append-only credit ledger.

Invariants:
- balance_after == previous balance_after (0 for the first entry) + delta
- balance_after is never negative
- entries are never updated or deleted; corrections are new ROLLBACK entries
The current balance is the newest entry's balance_after, never a sum.
"""

import logging
import time
from typing import Optional

from .errors import (
    ConcurrentAppend, DuplicateReceiptError, InsufficientBalanceError, StorageFault, UniqueViolation,
)
from .models import LedgerEntry, LedgerSource
from .storage import Storage

logger = logging.getLogger(__name__)


class LedgerStore:
    def __init__(self, storage: Storage, *, max_attempts: int = 5, backoff_base: float = 0.01):
        self.storage = storage
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base

    def get_balance(self, user_id: str) -> int:
        latest = self.storage.latest_entry(user_id)
        return latest.balance_after if latest else 0

    def append(
        self,
        user_id: str,
        delta: int,
        source: LedgerSource,
        receipt_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        """
        Append one entry. On return the entry is committed; on raise nothing was.

        Raises InsufficientBalanceError when the entry would take the balance
        below zero, DuplicateReceiptError when receipt_id is already recorded.
        """
        with self.storage.user_lock(user_id):
            for attempt in range(self.max_attempts):
                previous = self.storage.latest_entry(user_id)
                balance = previous.balance_after if previous else 0
                new_balance = balance + delta
                if new_balance < 0:
                    raise InsufficientBalanceError(
                        f"Insufficient credits. Required: {-delta}, available: {balance}",
                        balance_after=balance,
                        required=-delta,
                    )
                try:
                    return self.storage.insert_entry(
                        user_id=user_id,
                        delta=delta,
                        balance_after=new_balance,
                        source=source,
                        receipt_id=receipt_id,
                        metadata=metadata or {},
                        expected_previous_id=previous.id if previous else None,
                    )
                except UniqueViolation as exc:
                    raise DuplicateReceiptError(f"Receipt {receipt_id} already processed") from exc
                except ConcurrentAppend:
                    logger.info("Concurrent append for user %s, retrying (attempt %d)", user_id, attempt + 1)
                    time.sleep(self.backoff_base * (2 ** attempt))

        raise StorageFault(f"Could not append ledger entry for {user_id} after {self.max_attempts} attempts")

    def find_by_receipt(self, receipt_id: str) -> Optional[LedgerEntry]:
        return self.storage.find_entry_by_receipt(receipt_id)

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> tuple[list[LedgerEntry], int]:
        return self.storage.list_entries(user_id, limit, offset), self.storage.count_entries(user_id)
