"""
Purchase receipt verification seam.

Store-side cryptographic verification lives outside this package; the
service only consumes the verdict.
"""

from typing import Optional, Protocol

from pydantic import BaseModel


class VerifiedReceipt(BaseModel):
    valid: bool
    product_id: str
    receipt_id: Optional[str] = None


class ReceiptVerifier(Protocol):
    def verify(self, receipt_data: str, product_id: str) -> VerifiedReceipt: ...


class TrustingReceiptVerifier:
    """Development verifier: any non-empty receipt is valid and is its own id."""

    def verify(self, receipt_data: str, product_id: str) -> VerifiedReceipt:
        receipt_data = (receipt_data or "").strip()
        if not receipt_data:
            return VerifiedReceipt(valid=False, product_id=product_id)
        return VerifiedReceipt(valid=True, product_id=product_id, receipt_id=receipt_data)
