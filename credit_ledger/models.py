from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class LedgerSource(str, Enum):
    IAP_UNLOCK = "iap_unlock"
    IAP_CREDIT_PACK = "iap_credit_pack"
    STYLE_UNLOCK = "style_unlock"
    ROLLBACK = "rollback"


class User(BaseModel):
    id: str
    is_unlocked: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CatalogItem(BaseModel):
    id: str
    title: str
    cost: int = Field(default=0, ge=0)
    included: bool = False
    active: bool = True
    sort_order: int = 0

    model_config = ConfigDict(frozen=True)

    @property
    def is_free(self) -> bool:
        return self.included or self.cost == 0


class Product(BaseModel):
    id: str
    credits: int = Field(..., ge=0)
    unlocks: bool = False
    unlocks_items: tuple[str, ...] = ()
    price: Decimal = Decimal("0.00")

    model_config = ConfigDict(frozen=True)


class LedgerEntry(BaseModel):
    id: UUID
    sequence: int
    user_id: str
    delta: int
    balance_after: int = Field(..., ge=0)
    source: LedgerSource
    receipt_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class Entitlement(BaseModel):
    user_id: str
    item_id: str
    unlocked_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GrantOutcome(BaseModel):
    already_granted: bool


# Requests

class SpendRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    style_id: str = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {"user_id": "user-123", "style_id": "neon"}
    })


class UnlockStyleRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class PurchaseRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
    receipt_data: str = Field(..., min_length=1, description="Opaque store receipt")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "user-123",
            "product_id": "unlock_plus_899",
            "receipt_data": "MIIT...base64",
        }
    })


class CompleteEntitlementsRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


# Responses

class SpendResult(BaseModel):
    success: bool = True
    item_id: str
    cost: int
    balance_after: int
    low_balance: bool = False


class PurchaseGrantResult(BaseModel):
    success: bool = True
    user_id: str
    product_id: str
    receipt_id: str
    credits_granted: int
    balance_after: int
    unlocked: bool
    unlocked_items: list[str] = Field(default_factory=list)
    low_balance: bool = False


class UserBalance(BaseModel):
    user_id: str
    current_balance: int
    total_entries: int
    is_unlocked: bool = False
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class UnlockedStylesResponse(BaseModel):
    user_id: str
    style_ids: list[str]


class CatalogResponse(BaseModel):
    styles: list[CatalogItem]
