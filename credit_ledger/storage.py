"""
Persistence seam for ledger entries, entitlements and users.

Backends enforce the two unique indexes themselves:
- receipt_id among ledger entries (idempotent purchase grants)
- (user_id, item_id) among entitlements (one unlock per user and style)
Violations raise UniqueViolation; callers never check-then-insert.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import UUID, uuid4

from .errors import ConcurrentAppend, UniqueViolation
from .models import Entitlement, LedgerEntry, LedgerSource, User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Storage(ABC):
    def __init__(self):
        # user_id -> [lock, holders and waiters]
        self._user_locks: dict[str, list] = {}
        self._user_locks_guard = threading.Lock()

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """
        Serialise work for one user inside this process. Re-entrant.

        A user's lock lives only while someone holds or waits on it.
        """
        with self._user_locks_guard:
            slot = self._user_locks.get(user_id)
            if slot is None:
                slot = self._user_locks[user_id] = [threading.RLock(), 0]
            slot[1] += 1
        try:
            with slot[0]:
                yield
        finally:
            with self._user_locks_guard:
                slot[1] -= 1
                if slot[1] == 0:
                    del self._user_locks[user_id]

    # Users

    @abstractmethod
    def ensure_user(self, user_id: str) -> User: ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def set_user_unlocked(self, user_id: str) -> User: ...

    # Ledger

    @abstractmethod
    def latest_entry(self, user_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def insert_entry(
        self,
        *,
        user_id: str,
        delta: int,
        balance_after: int,
        source: LedgerSource,
        receipt_id: Optional[str],
        metadata: dict,
        expected_previous_id: Optional[UUID],
    ) -> LedgerEntry:
        """Insert only if the user's latest entry is still expected_previous_id."""

    @abstractmethod
    def find_entry_by_receipt(self, receipt_id: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """Newest first."""

    @abstractmethod
    def count_entries(self, user_id: str) -> int: ...

    # Entitlements

    @abstractmethod
    def insert_entitlement(self, user_id: str, item_id: str) -> Entitlement: ...

    @abstractmethod
    def get_entitlement(self, user_id: str, item_id: str) -> Optional[Entitlement]: ...

    @abstractmethod
    def list_entitlements(self, user_id: str) -> list[Entitlement]: ...


class InMemoryStorage(Storage):
    def __init__(self):
        super().__init__()
        self.users: dict[str, dict] = {}
        self.ledger_entries: dict[str, list[dict]] = {}
        self.entitlements: dict[tuple[str, str], dict] = {}
        self.receipt_index: dict[str, dict] = {}
        self._table_lock = threading.Lock()

    def ensure_user(self, user_id: str) -> User:
        with self._table_lock:
            user_data = self.users.setdefault(user_id, {
                "id": user_id, "is_unlocked": False, "created_at": utcnow(),
            })
            return User(**user_data)

    def get_user(self, user_id: str) -> Optional[User]:
        user_data = self.users.get(user_id)
        return User(**user_data) if user_data else None

    def set_user_unlocked(self, user_id: str) -> User:
        self.ensure_user(user_id)
        with self._table_lock:
            self.users[user_id]["is_unlocked"] = True
            return User(**self.users[user_id])

    def latest_entry(self, user_id: str) -> Optional[LedgerEntry]:
        with self._table_lock:
            entries = self.ledger_entries.get(user_id)
            return LedgerEntry(**entries[-1]) if entries else None

    def insert_entry(
        self,
        *,
        user_id: str,
        delta: int,
        balance_after: int,
        source: LedgerSource,
        receipt_id: Optional[str],
        metadata: dict,
        expected_previous_id: Optional[UUID],
    ) -> LedgerEntry:
        with self._table_lock:
            entries = self.ledger_entries.setdefault(user_id, [])
            previous_id = entries[-1]["id"] if entries else None
            if previous_id != expected_previous_id:
                raise ConcurrentAppend(f"ledger for {user_id} moved past {expected_previous_id}")
            if receipt_id is not None and receipt_id in self.receipt_index:
                raise UniqueViolation("credits_ledger_receipt_id_key", receipt_id)

            entry_data = {
                "id": uuid4(),
                "sequence": len(entries) + 1,
                "user_id": user_id,
                "delta": delta,
                "balance_after": balance_after,
                "source": source,
                "receipt_id": receipt_id,
                "metadata": dict(metadata),
                "created_at": utcnow(),
            }
            entry = LedgerEntry(**entry_data)
            entries.append(entry_data)
            if receipt_id is not None:
                self.receipt_index[receipt_id] = entry_data
            return entry

    def find_entry_by_receipt(self, receipt_id: str) -> Optional[LedgerEntry]:
        entry_data = self.receipt_index.get(receipt_id)
        return LedgerEntry(**entry_data) if entry_data else None

    def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        with self._table_lock:
            newest_first = list(reversed(self.ledger_entries.get(user_id, [])))
        return [LedgerEntry(**e) for e in newest_first[offset:offset + limit]]

    def count_entries(self, user_id: str) -> int:
        return len(self.ledger_entries.get(user_id, []))

    def insert_entitlement(self, user_id: str, item_id: str) -> Entitlement:
        key = (user_id, item_id)
        with self._table_lock:
            if key in self.entitlements:
                raise UniqueViolation("user_styles_pkey", key)
            self.entitlements[key] = {
                "user_id": user_id, "item_id": item_id, "unlocked_at": utcnow(),
            }
            return Entitlement(**self.entitlements[key])

    def get_entitlement(self, user_id: str, item_id: str) -> Optional[Entitlement]:
        data = self.entitlements.get((user_id, item_id))
        return Entitlement(**data) if data else None

    def list_entitlements(self, user_id: str) -> list[Entitlement]:
        with self._table_lock:
            rows = [e for (owner, _), e in self.entitlements.items() if owner == user_id]
        rows.sort(key=lambda e: e["unlocked_at"])
        return [Entitlement(**e) for e in rows]
