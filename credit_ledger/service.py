import logging
import time
from typing import Iterable, Optional

from .catalog import Catalog
from .config import Settings, get_settings
from .entitlements import EntitlementTracker
from .errors import (
    AlreadyOwnedError,
    DuplicateReceiptError,
    InsufficientBalanceError,
    InvalidReceiptError,
    ItemNotFoundError,
    LedgerServiceError,
    PartialGrantFailure,
    ReceiptConflictError,
    ReceiptNotFoundError,
    StorageFault,
    UnknownProductError,
)
from .ledger_store import LedgerStore
from .models import (
    CatalogItem,
    LedgerEntry,
    LedgerHistoryResponse,
    LedgerSource,
    PurchaseGrantResult,
    SpendResult,
    UserBalance,
)
from .storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)

__all__ = [
    "CreditService",
    "build_storage",
    "LedgerServiceError",
    "AlreadyOwnedError",
    "InsufficientBalanceError",
    "InvalidReceiptError",
    "ItemNotFoundError",
    "PartialGrantFailure",
    "ReceiptConflictError",
    "ReceiptNotFoundError",
    "StorageFault",
    "UnknownProductError",
]


def build_storage(settings: Settings) -> Storage:
    if settings.database_url:
        from .sql_storage import SqlStorage
        return SqlStorage.from_url(settings.database_url)
    return InMemoryStorage()


class CreditService:
    """
    Spends credits on style unlocks and grants credits from purchases.

    Every mutating call re-reads the balance from the ledger; nothing here
    caches it between requests.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        catalog: Optional[Catalog] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or build_storage(self.settings)
        self.catalog = catalog or Catalog.default(self.settings)
        self.ledger = LedgerStore(
            self.storage,
            max_attempts=self.settings.append_max_attempts,
            backoff_base=self.settings.retry_backoff_base,
        )
        self.entitlements = EntitlementTracker(self.storage)

    # Spending

    def spend_and_unlock(self, user_id: str, item_id: str) -> SpendResult:
        item = self.catalog.get_item(item_id)
        if item is None or not item.active:
            raise ItemNotFoundError(f"Style {item_id} not found")

        self.storage.ensure_user(user_id)
        with self.storage.user_lock(user_id):
            if self.entitlements.has_unlocked(user_id, item_id):
                raise AlreadyOwnedError(
                    f"Style {item_id} already owned",
                    balance_after=self.ledger.get_balance(user_id),
                )
            if item.is_free:
                return self._unlock_free(user_id, item)
            return self._unlock_paid(user_id, item)

    def _unlock_free(self, user_id: str, item: CatalogItem) -> SpendResult:
        outcome = self.entitlements.grant(user_id, item.id)
        if outcome.already_granted:
            raise AlreadyOwnedError(
                f"Style {item.id} already owned",
                balance_after=self.ledger.get_balance(user_id),
            )

        if self.settings.record_included_unlocks:
            entry = self.ledger.append(
                user_id, 0, LedgerSource.STYLE_UNLOCK,
                metadata={"item_id": item.id, "item_title": item.title, "cost": 0, "included": True},
            )
            balance = entry.balance_after
        else:
            balance = self.ledger.get_balance(user_id)

        logger.info("User %s unlocked included style %s", user_id, item.id)
        return SpendResult(item_id=item.id, cost=0, balance_after=balance, low_balance=self.is_low_balance(balance))

    def _unlock_paid(self, user_id: str, item: CatalogItem) -> SpendResult:
        debit = self.ledger.append(
            user_id, -item.cost, LedgerSource.STYLE_UNLOCK,
            metadata={"item_id": item.id, "item_title": item.title, "cost": item.cost},
        )

        try:
            outcome = self.entitlements.grant(user_id, item.id)
        except Exception as exc:
            try:
                self._compensate(user_id, debit, item, reason="entitlement_grant_failed", error=exc)
            except StorageFault as rollback_error:
                logger.error(
                    "Debit %s for user %s left unreversed after failed unlock of %s: %s",
                    debit.id, user_id, item.id, rollback_error,
                )
            raise

        if outcome.already_granted:
            # Another request won the unlock; only the winner keeps the charge.
            refund = self._compensate(user_id, debit, item, reason="already_owned")
            raise AlreadyOwnedError(f"Style {item.id} already owned", balance_after=refund.balance_after)

        logger.info(
            "User %s unlocked style %s for %d credits, balance %d",
            user_id, item.id, item.cost, debit.balance_after,
        )
        return SpendResult(
            item_id=item.id,
            cost=item.cost,
            balance_after=debit.balance_after,
            low_balance=self.is_low_balance(debit.balance_after),
        )

    def _compensate(
        self,
        user_id: str,
        debit: LedgerEntry,
        item: CatalogItem,
        *,
        reason: str,
        error: Optional[BaseException] = None,
    ) -> LedgerEntry:
        metadata = {
            "reason": reason,
            "item_id": item.id,
            "reversed_entry_id": str(debit.id),
            "original_source": debit.source.value,
        }
        if error is not None:
            metadata["error"] = f"{error.__class__.__name__}: {error}"

        attempts = self.settings.compensation_max_attempts
        for attempt in range(attempts):
            try:
                refund = self.ledger.append(user_id, -debit.delta, LedgerSource.ROLLBACK, metadata=metadata)
            except StorageFault:
                if attempt >= attempts - 1:
                    logger.error(
                        "Rollback of ledger entry %s for user %s failed after %d attempts",
                        debit.id, user_id, attempts,
                    )
                    raise
                time.sleep(self.settings.retry_backoff_base * (2 ** attempt))
                continue
            logger.warning(
                "Rolled back %d credits for user %s (%s), entry %s",
                -debit.delta, user_id, reason, debit.id,
            )
            return refund

    # Purchases

    def grant_from_purchase(
        self,
        user_id: str,
        product_id: str,
        receipt_id: str,
        verified_credits: Optional[int] = None,
        also_unlocks: Optional[Iterable[str]] = None,
    ) -> PurchaseGrantResult:
        """
        Grant credits for a verified purchase receipt.

        Safe under at-least-once delivery: a receipt already in the ledger
        returns the original result and changes nothing.
        """
        if not receipt_id:
            raise InvalidReceiptError("Receipt id is required")

        existing = self.ledger.find_by_receipt(receipt_id)
        if existing:
            logger.warning("Receipt %s already processed, returning original grant", receipt_id)
            return self._finish_replay(self._replay(existing, user_id))

        product = self.catalog.get_product(product_id)
        if product is None:
            raise UnknownProductError(f"Unknown product {product_id}")

        credits = product.credits if verified_credits is None else int(verified_credits)
        if credits < 0:
            raise InvalidReceiptError(f"Receipt {receipt_id} carries a negative credit amount")

        unlock_items = list(product.unlocks_items if also_unlocks is None else also_unlocks)
        source = LedgerSource.IAP_UNLOCK if product.unlocks else LedgerSource.IAP_CREDIT_PACK

        self.storage.ensure_user(user_id)
        try:
            entry = self.ledger.append(
                user_id, credits, source,
                receipt_id=receipt_id,
                metadata={
                    "product_id": product.id,
                    "price": str(product.price),
                    "unlocks_items": unlock_items if product.unlocks else [],
                },
            )
        except DuplicateReceiptError:
            logger.warning("Receipt %s recorded by a concurrent request", receipt_id)
            return self._finish_replay(self._replay(self.ledger.find_by_receipt(receipt_id), user_id))

        result = self._purchase_result(entry)
        if result.unlocked:
            self._apply_unlock(result)

        logger.info(
            "Granted %d credits to user %s for %s (receipt %s), balance %d",
            credits, user_id, product.id, receipt_id, entry.balance_after,
        )
        return result

    def complete_purchase_entitlements(self, user_id: str, receipt_id: str) -> PurchaseGrantResult:
        """Re-run only the unlock step of a recorded purchase. Never grants credits."""
        entry = self.ledger.find_by_receipt(receipt_id)
        if entry is None:
            raise ReceiptNotFoundError(f"Receipt {receipt_id} not found")
        result = self._replay(entry, user_id)
        if result.unlocked:
            self._apply_unlock(result)
        return result

    def _replay(self, entry: LedgerEntry, user_id: str) -> PurchaseGrantResult:
        if entry.user_id != user_id:
            raise ReceiptConflictError(f"Receipt {entry.receipt_id} belongs to another user")
        return self._purchase_result(entry)

    def _finish_replay(self, result: PurchaseGrantResult) -> PurchaseGrantResult:
        """Complete an unlock an earlier attempt left half-applied. Never grants credits."""
        if result.unlocked and not self._unlock_applied(result):
            logger.warning(
                "Receipt %s replayed with an incomplete unlock, completing it for user %s",
                result.receipt_id, result.user_id,
            )
            self._apply_unlock(result)
        return result

    def _unlock_applied(self, result: PurchaseGrantResult) -> bool:
        if not self.entitlements.is_user_unlocked(result.user_id):
            return False
        return set(result.unlocked_items) <= self.entitlements.list_unlocked(result.user_id)

    def _purchase_result(self, entry: LedgerEntry) -> PurchaseGrantResult:
        unlocked = entry.source == LedgerSource.IAP_UNLOCK
        return PurchaseGrantResult(
            user_id=entry.user_id,
            product_id=entry.metadata.get("product_id", ""),
            receipt_id=entry.receipt_id,
            credits_granted=entry.delta,
            balance_after=entry.balance_after,
            unlocked=unlocked,
            unlocked_items=list(entry.metadata.get("unlocks_items", [])) if unlocked else [],
            low_balance=self.is_low_balance(entry.balance_after),
        )

    def _apply_unlock(self, result: PurchaseGrantResult) -> None:
        try:
            self.entitlements.mark_user_unlocked(result.user_id)
            for item_id in result.unlocked_items:
                self.entitlements.grant(result.user_id, item_id)
        except Exception as exc:
            logger.error(
                "Credits for receipt %s granted but unlock failed for user %s: %s",
                result.receipt_id, result.user_id, exc,
            )
            raise PartialGrantFailure(
                f"Credits granted but unlock for receipt {result.receipt_id} did not complete",
                result=result,
            ) from exc

    # Reads

    def is_low_balance(self, balance: int) -> bool:
        return 0 < balance <= self.settings.low_balance_threshold

    def get_balance(self, user_id: str) -> int:
        return self.ledger.get_balance(user_id)

    def get_balance_summary(self, user_id: str) -> UserBalance:
        latest = self.storage.latest_entry(user_id)
        return UserBalance(
            user_id=user_id,
            current_balance=latest.balance_after if latest else 0,
            total_entries=self.storage.count_entries(user_id),
            is_unlocked=self.entitlements.is_user_unlocked(user_id),
            last_transaction_at=latest.created_at if latest else None,
        )

    def list_unlocked(self, user_id: str) -> set[str]:
        return self.entitlements.list_unlocked(user_id)

    def list_active(self) -> list[CatalogItem]:
        return self.catalog.list_active()

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        entries, total = self.ledger.history(user_id, limit, offset)
        return LedgerHistoryResponse(
            user_id=user_id,
            entries=entries,
            total_count=total,
            current_balance=self.ledger.get_balance(user_id),
        )
