"""
Tests for the SQLAlchemy storage backend on SQLite.

Tests cover:
1. Schema-level unique constraints
2. Conditional ledger inserts
3. Full spend and purchase flows on SQL storage
4. Separate writers on one database file
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from credit_ledger.config import Settings
from credit_ledger.errors import (
    AlreadyOwnedError,
    ConcurrentAppend,
    InsufficientBalanceError,
    UniqueViolation,
)
from credit_ledger.ledger_store import LedgerStore
from credit_ledger.models import LedgerSource
from credit_ledger.service import CreditService
from credit_ledger.sql_storage import SqlStorage


USER_ID = "user-sql"


@pytest.fixture
def storage():
    return SqlStorage.from_url("sqlite://")


@pytest.fixture
def sql_service(storage, settings):
    return CreditService(storage=storage, settings=settings)


def insert(storage, delta, balance_after, expected_previous_id=None, receipt_id=None):
    return storage.insert_entry(
        user_id=USER_ID,
        delta=delta,
        balance_after=balance_after,
        source=LedgerSource.IAP_CREDIT_PACK,
        receipt_id=receipt_id,
        metadata={"product_id": "credits_40_399"},
        expected_previous_id=expected_previous_id,
    )


class TestSchemaConstraints:
    """Tests for constraints enforced by the database."""

    def test_entitlement_unique_per_user_and_style(self, storage):
        storage.insert_entitlement(USER_ID, "neon")

        with pytest.raises(UniqueViolation):
            storage.insert_entitlement(USER_ID, "neon")

        assert [e.item_id for e in storage.list_entitlements(USER_ID)] == ["neon"]

    def test_receipt_unique(self, storage):
        first = insert(storage, 40, 40, receipt_id="R1")

        with pytest.raises(UniqueViolation):
            insert(storage, 40, 80, expected_previous_id=first.id, receipt_id="R1")

        assert storage.count_entries(USER_ID) == 1

    def test_stale_expected_previous_entry(self, storage):
        insert(storage, 40, 40, receipt_id="R1")

        with pytest.raises(ConcurrentAppend):
            insert(storage, 40, 40, expected_previous_id=None, receipt_id="R2")

        assert storage.count_entries(USER_ID) == 1

    def test_entries_round_trip(self, storage):
        first = insert(storage, 40, 40, receipt_id="R1")
        second = insert(storage, 40, 80, expected_previous_id=first.id, receipt_id="R2")

        assert storage.latest_entry(USER_ID) == second
        assert second.sequence == 2
        assert storage.find_entry_by_receipt("R1") == first
        assert storage.find_entry_by_receipt("R1").metadata == {"product_id": "credits_40_399"}
        assert storage.list_entries(USER_ID) == [second, first]

    def test_user_unlock_flag(self, storage):
        assert storage.get_user(USER_ID) is None

        storage.ensure_user(USER_ID)
        storage.ensure_user(USER_ID)
        user = storage.set_user_unlocked(USER_ID)

        assert user.is_unlocked is True
        assert storage.get_user(USER_ID).is_unlocked is True


class TestFlowsOnSqlStorage:
    """End-to-end service flows against SQL storage."""

    def test_spend_scenarios(self, sql_service):
        with pytest.raises(InsufficientBalanceError):
            sql_service.spend_and_unlock(USER_ID, "neon")

        sql_service.grant_from_purchase(USER_ID, "credits_120_999", "R1")
        result = sql_service.spend_and_unlock(USER_ID, "neon")
        assert result.balance_after == 90

        with pytest.raises(AlreadyOwnedError):
            sql_service.spend_and_unlock(USER_ID, "neon")

        assert sql_service.get_balance(USER_ID) == 90
        assert sql_service.list_unlocked(USER_ID) == {"neon"}

    def test_unlock_product_and_replay(self, sql_service):
        first = sql_service.grant_from_purchase(USER_ID, "unlock_plus_899", "R1", verified_credits=100)
        second = sql_service.grant_from_purchase(USER_ID, "unlock_plus_899", "R1", verified_credits=100)

        assert second == first
        assert first.balance_after == 100
        assert sql_service.entitlements.is_user_unlocked(USER_ID) is True
        assert sql_service.list_unlocked(USER_ID) == {"minimal", "dark_gradient", "asphalt"}
        assert sql_service.ledger.history(USER_ID)[1] == 1


class CollidingSqlStorage(SqlStorage):
    """Another writer commits between this storage's read of the latest entry and its insert."""

    def __init__(self, engine, **kwargs):
        super().__init__(engine, **kwargs)
        self.rival_append = None
        self.collisions_left = 0
        self._inserting = False

    def insert_entry(self, **kwargs):
        self._inserting = True
        try:
            return super().insert_entry(**kwargs)
        finally:
            self._inserting = False

    def _latest_row(self, session, user_id):
        row = super()._latest_row(session, user_id)
        if self._inserting and self.collisions_left > 0:
            self.collisions_left -= 1
            self.rival_append()
        return row


class RivalUnlockSqlStorage(SqlStorage):
    """Another process lands the same unlock between this process's debit and its grant."""

    def __init__(self, engine, **kwargs):
        super().__init__(engine, **kwargs)
        self.rival_unlock = None

    def insert_entitlement(self, user_id, item_id):
        if self.rival_unlock is not None:
            rival, self.rival_unlock = self.rival_unlock, None
            rival()
        return super().insert_entitlement(user_id, item_id)


@pytest.fixture
def open_storage(tmp_path):
    """Open storages on one SQLite file; each has its own lock table, like separate processes."""
    database_url = f"sqlite:///{tmp_path / 'ledger.db'}"
    opened = []

    def _open(storage_class=SqlStorage):
        storage = storage_class.from_url(database_url)
        opened.append(storage)
        return storage

    yield _open
    for storage in opened:
        storage.engine.dispose()


def assert_continuous(entries):
    balance = 0
    for entry in sorted(entries, key=lambda e: e.sequence):
        balance += entry.delta
        assert entry.balance_after == balance


class TestSeparateWriters:
    """Two storages on one database, arbitrated only by the schema."""

    def test_sequence_collision_is_a_concurrent_append(self, open_storage):
        """The per-user sequence key rejects an insert computed from a stale entry."""
        first = open_storage()
        second = open_storage(CollidingSqlStorage)
        seed = insert(first, 100, 100, receipt_id="R1")
        second.rival_append = lambda: insert(first, -30, 70, expected_previous_id=seed.id)
        second.collisions_left = 1

        with pytest.raises(ConcurrentAppend):
            insert(second, -30, 70, expected_previous_id=seed.id)

        entries = second.list_entries(USER_ID)
        assert [e.balance_after for e in entries] == [70, 100]
        assert_continuous(entries)

    def test_ledger_store_retries_after_collision(self, open_storage):
        """The losing writer recomputes its balance from the winner's entry."""
        first = open_storage()
        second = open_storage(CollidingSqlStorage)
        seed = insert(first, 100, 100, receipt_id="R1")
        second.rival_append = lambda: insert(first, -30, 70, expected_previous_id=seed.id)
        second.collisions_left = 1

        entry = LedgerStore(second, max_attempts=3, backoff_base=0.0).append(
            USER_ID, -30, LedgerSource.STYLE_UNLOCK, metadata={"item_id": "neon"},
        )

        assert entry.sequence == 3
        assert entry.balance_after == 40
        assert second.collisions_left == 0
        assert_continuous(first.list_entries(USER_ID))

    def test_lost_unlock_is_refunded(self, open_storage, settings):
        """When another process wins the unlock the loser's debit is reversed."""
        winner = CreditService(storage=open_storage(), settings=settings)
        loser_storage = open_storage(RivalUnlockSqlStorage)
        loser = CreditService(storage=loser_storage, settings=settings)
        winner.grant_from_purchase(USER_ID, "credits_120_999", "R1")
        won = []
        loser_storage.rival_unlock = lambda: won.append(winner.spend_and_unlock(USER_ID, "neon"))

        with pytest.raises(AlreadyOwnedError) as exc_info:
            loser.spend_and_unlock(USER_ID, "neon")

        assert won[0].balance_after == 60
        assert exc_info.value.balance_after == 90
        assert loser.get_balance(USER_ID) == 90
        assert loser.list_unlocked(USER_ID) == {"neon"}

        entries = loser_storage.list_entries(USER_ID)
        assert_continuous(entries)
        assert [e.source for e in reversed(entries)] == [
            LedgerSource.IAP_CREDIT_PACK,
            LedgerSource.STYLE_UNLOCK,
            LedgerSource.STYLE_UNLOCK,
            LedgerSource.ROLLBACK,
        ]
        assert entries[0].metadata["reason"] == "already_owned"

    def test_racing_spends_charge_once(self, open_storage):
        """Threads spread over two storages race for one style; one charge survives."""
        settings = Settings(retry_backoff_base=0.001, append_max_attempts=50, database_url=None)
        services = [
            CreditService(storage=open_storage(), settings=settings),
            CreditService(storage=open_storage(), settings=settings),
        ]
        services[0].grant_from_purchase(USER_ID, "credits_120_999", "R1")

        barrier = threading.Barrier(8)

        def spend(service):
            barrier.wait()
            try:
                return service.spend_and_unlock(USER_ID, "neon")
            except AlreadyOwnedError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(spend, [services[n % 2] for n in range(8)]))

        successes = [o for o in outcomes if not isinstance(o, AlreadyOwnedError)]
        assert len(successes) == 1
        assert services[0].get_balance(USER_ID) == 90
        assert len(services[1].storage.list_entitlements(USER_ID)) == 1

        entries = services[1].storage.list_entries(USER_ID, limit=100)
        assert_continuous(entries)
        debits = [e for e in entries if e.source == LedgerSource.STYLE_UNLOCK]
        refunds = [e for e in entries if e.source == LedgerSource.ROLLBACK]
        assert len(refunds) == len(debits) - 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
