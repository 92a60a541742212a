"""
SQLAlchemy storage backend.

Concurrency is carried by the schema:
- UNIQUE(user_id, sequence) on credits_ledger: two appends computed from the
  same previous entry cannot both commit, the loser gets ConcurrentAppend.
- UNIQUE(receipt_id) on credits_ledger: one grant per purchase receipt.
- PRIMARY KEY(user_id, style_id) on user_styles: one unlock per style.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Integer, JSON, String,
    UniqueConstraint, create_engine, func, select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConcurrentAppend, StorageFault, UniqueViolation
from .models import Entitlement, LedgerEntry, LedgerSource, User
from .storage import Storage, utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    is_unlocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class LedgerEntryRow(Base):
    """Append-only. Rows are never updated or deleted."""

    __tablename__ = "credits_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="credits_ledger_user_sequence_key"),
        UniqueConstraint("receipt_id", name="credits_ledger_receipt_id_key"),
        CheckConstraint("balance_after >= 0", name="credits_ledger_balance_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    source = Column(String(32), nullable=False)
    receipt_id = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class UserStyleRow(Base):
    __tablename__ = "user_styles"

    user_id = Column(String, primary_key=True)
    item_id = Column("style_id", String, primary_key=True)
    unlocked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _user_from_row(row: UserRow) -> User:
    return User(id=row.id, is_unlocked=row.is_unlocked, created_at=_as_utc(row.created_at))


def _entitlement_from_row(row: UserStyleRow) -> Entitlement:
    return Entitlement(user_id=row.user_id, item_id=row.item_id, unlocked_at=_as_utc(row.unlocked_at))


def _entry_from_row(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=UUID(row.id),
        sequence=row.sequence,
        user_id=row.user_id,
        delta=row.delta,
        balance_after=row.balance_after,
        source=LedgerSource(row.source),
        receipt_id=row.receipt_id,
        metadata=row.metadata_json or {},
        created_at=_as_utc(row.created_at),
    )


class SqlStorage(Storage):
    def __init__(self, engine: Engine, *, create_schema: bool = True):
        super().__init__()
        self.engine = engine
        self.Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "SqlStorage":
        if database_url.startswith("sqlite"):
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
            engine = create_engine(database_url, **engine_kwargs)
        else:
            engine = create_engine(database_url, pool_pre_ping=True, pool_size=5, max_overflow=10)
        return cls(engine, **kwargs)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.Session.begin() as session:
                yield session
        except (IntegrityError, ConcurrentAppend, UniqueViolation):
            raise
        except SQLAlchemyError as exc:
            logger.error("Storage operation failed: %s", exc)
            raise StorageFault(f"storage operation failed: {exc.__class__.__name__}") from exc

    # Users

    def ensure_user(self, user_id: str) -> User:
        try:
            with self._session() as session:
                row = session.get(UserRow, user_id)
                if row is None:
                    row = UserRow(id=user_id, is_unlocked=False, created_at=utcnow())
                    session.add(row)
                    session.flush()
                return _user_from_row(row)
        except IntegrityError:
            # Created by a concurrent request
            return self.get_user(user_id)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._session() as session:
            row = session.get(UserRow, user_id)
            return _user_from_row(row) if row else None

    def set_user_unlocked(self, user_id: str) -> User:
        self.ensure_user(user_id)
        with self._session() as session:
            row = session.get(UserRow, user_id)
            row.is_unlocked = True
            session.flush()
            return _user_from_row(row)

    # Ledger

    def _latest_row(self, session: Session, user_id: str) -> Optional[LedgerEntryRow]:
        return session.execute(
            select(LedgerEntryRow)
            .where(LedgerEntryRow.user_id == user_id)
            .order_by(LedgerEntryRow.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def latest_entry(self, user_id: str) -> Optional[LedgerEntry]:
        with self._session() as session:
            row = self._latest_row(session, user_id)
            return _entry_from_row(row) if row else None

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
        try:
            with self._session() as session:
                previous = self._latest_row(session, user_id)
                previous_id = UUID(previous.id) if previous else None
                if previous_id != expected_previous_id:
                    raise ConcurrentAppend(f"ledger for {user_id} moved past {expected_previous_id}")
                row = LedgerEntryRow(
                    id=str(uuid4()),
                    user_id=user_id,
                    sequence=(previous.sequence if previous else 0) + 1,
                    delta=delta,
                    balance_after=balance_after,
                    source=source.value,
                    receipt_id=receipt_id,
                    metadata_json=dict(metadata),
                    created_at=utcnow(),
                )
                session.add(row)
                session.flush()
                return _entry_from_row(row)
        except IntegrityError as exc:
            if receipt_id is not None and self.find_entry_by_receipt(receipt_id) is not None:
                raise UniqueViolation("credits_ledger_receipt_id_key", receipt_id) from exc
            raise ConcurrentAppend(f"ledger for {user_id} was appended concurrently") from exc

    def find_entry_by_receipt(self, receipt_id: str) -> Optional[LedgerEntry]:
        with self._session() as session:
            row = session.execute(
                select(LedgerEntryRow).where(LedgerEntryRow.receipt_id == receipt_id)
            ).scalar_one_or_none()
            return _entry_from_row(row) if row else None

    def list_entries(self, user_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        with self._session() as session:
            rows = session.execute(
                select(LedgerEntryRow)
                .where(LedgerEntryRow.user_id == user_id)
                .order_by(LedgerEntryRow.sequence.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [_entry_from_row(row) for row in rows]

    def count_entries(self, user_id: str) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count()).select_from(LedgerEntryRow).where(LedgerEntryRow.user_id == user_id)
            ).scalar_one()

    # Entitlements

    def insert_entitlement(self, user_id: str, item_id: str) -> Entitlement:
        try:
            with self._session() as session:
                row = UserStyleRow(user_id=user_id, item_id=item_id, unlocked_at=utcnow())
                session.add(row)
                session.flush()
                return _entitlement_from_row(row)
        except IntegrityError as exc:
            raise UniqueViolation("user_styles_pkey", (user_id, item_id)) from exc

    def get_entitlement(self, user_id: str, item_id: str) -> Optional[Entitlement]:
        with self._session() as session:
            row = session.get(UserStyleRow, (user_id, item_id))
            return _entitlement_from_row(row) if row else None

    def list_entitlements(self, user_id: str) -> list[Entitlement]:
        with self._session() as session:
            rows = session.execute(
                select(UserStyleRow)
                .where(UserStyleRow.user_id == user_id)
                .order_by(UserStyleRow.unlocked_at, UserStyleRow.item_id)
            ).scalars().all()
            return [_entitlement_from_row(row) for row in rows]
