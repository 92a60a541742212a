from typing import Optional


class LedgerServiceError(Exception):
    code = "ledger_error"

    def __init__(self, message: str, *, balance_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.balance_after = balance_after

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "balance_after": self.balance_after,
        }


class ItemNotFoundError(LedgerServiceError):
    code = "item_not_found"


class UnknownProductError(LedgerServiceError):
    code = "unknown_product"


class AlreadyOwnedError(LedgerServiceError):
    code = "already_owned"


class InsufficientBalanceError(LedgerServiceError):
    code = "insufficient_balance"

    def __init__(self, message: str, *, balance_after: int, required: int):
        super().__init__(message, balance_after=balance_after)
        self.required = required


class DuplicateReceiptError(LedgerServiceError):
    """Receipt already recorded. Callers replay the original result instead of failing."""

    code = "duplicate_receipt"


class ReceiptNotFoundError(LedgerServiceError):
    code = "receipt_not_found"


class ReceiptConflictError(LedgerServiceError):
    code = "receipt_conflict"


class InvalidReceiptError(LedgerServiceError):
    code = "invalid_receipt"


class StorageFault(LedgerServiceError):
    code = "storage_fault"


class PartialGrantFailure(LedgerServiceError):
    """Credits are durably granted but the unlock step did not finish.

    ``result`` holds the committed credit grant. Retry only the entitlement
    step; credits are never granted twice for the same receipt.
    """

    code = "partial_grant_failure"

    def __init__(self, message: str, *, result):
        super().__init__(message, balance_after=result.balance_after)
        self.result = result

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["receipt_id"] = self.result.receipt_id
        data["credits_granted"] = self.result.credits_granted
        return data


# Storage-level signals, handled inside the package.

class UniqueViolation(Exception):
    def __init__(self, constraint: str, key):
        super().__init__(f"unique constraint {constraint} violated for {key!r}")
        self.constraint = constraint
        self.key = key


class ConcurrentAppend(Exception):
    """The user's latest ledger entry changed between read and insert."""
