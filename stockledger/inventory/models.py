import uuid
from datetime import datetime
from typing import Any, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from stockledger.common.constants import SYSTEM_ACTOR
from stockledger.common.utils import as_utc
from stockledger.config.settings import config_settings
from stockledger.inventory.constants import DEFAULT_ADJUSTMENT_REASON


class ApiModel(BaseModel):
    """Wire models speak camelCase (the checkout client's shape), python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------------------------------------
# per-operation options

class StockUpdateOptions(BaseModel):
    reason: str = Field(DEFAULT_ADJUSTMENT_REASON, max_length=500)
    actor_id: str = SYSTEM_ACTOR
    order_id: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"extra": "forbid"}


class ReservationOptions(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=128)
    actor_id: str = SYSTEM_ACTOR
    timeout_minutes: int = Field(default_factory=lambda: config_settings.RESERVATION_TTL_MINUTES, gt=0)

    model_config = {"extra": "forbid"}


# ---------------------------------------------------------------------------------------------
# inputs

ProductRef = Union[uuid.UUID, str]


class CartLine(ApiModel):
    product_id: ProductRef
    quantity: int


class ValidationLine(ApiModel):
    id: str
    quantity: int = Field(..., ge=0)


class OrderLine(BaseModel):
    product_id: ProductRef
    quantity: int = Field(..., gt=0)


class FulfillmentOrder(BaseModel):
    """What the order workflow hands over once payment is confirmed."""
    id: str
    user_id: Optional[str] = None
    items: List[OrderLine]


class StockLevelIn(ApiModel):
    stock_quantity: int = Field(..., ge=0)
    reason: Optional[str] = Field(None, max_length=500)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ValidateStockIn(ApiModel):
    items: List[ValidationLine] = Field(..., min_length=1)


class ReserveIn(ApiModel):
    order_id: str = Field(..., min_length=1, max_length=128)
    items: List[CartLine] = Field(..., min_length=1)
    timeout_minutes: Optional[int] = Field(None, gt=0)


class ReleaseIn(ApiModel):
    order_id: str = Field(..., min_length=1, max_length=128)


# ---------------------------------------------------------------------------------------------
# outputs

class ProductStockOut(ApiModel):
    id: uuid.UUID = Field(validation_alias="public_id")
    name: str
    category: Optional[str] = None
    base_price: int
    stock_quantity: int = Field(validation_alias="stock_qty")
    version: int
    updated_at: Optional[datetime] = None

    @field_validator("updated_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)


class LedgerEntryOut(ApiModel):
    """Ledger row as clients see it: every identifier is a public uuid, never a table key."""
    id: uuid.UUID = Field(validation_alias="public_id")
    product_id: uuid.UUID
    transaction_type: str
    entry_kind: str
    quantity: int
    previous_quantity: int
    new_quantity: int
    reason: str
    actor_id: str
    order_id: Optional[str] = None
    notes: Optional[str] = None
    expires_at: Optional[datetime] = None
    reference_entry_id: Optional[uuid.UUID] = None
    created_at: datetime

    @field_validator("created_at", "expires_at")
    @classmethod
    def _utc(cls, v):
        return as_utc(v)

    @classmethod
    def from_entry(cls, entry, product_public_id: uuid.UUID,
                   reference_public_id: Optional[uuid.UUID] = None) -> "LedgerEntryOut":
        return cls(
            id=entry.public_id,
            product_id=product_public_id,
            transaction_type=entry.transaction_type,
            entry_kind=entry.entry_kind,
            quantity=entry.quantity,
            previous_quantity=entry.previous_quantity,
            new_quantity=entry.new_quantity,
            reason=entry.reason,
            actor_id=entry.actor_id,
            order_id=entry.order_id,
            notes=entry.notes,
            expires_at=entry.expires_at,
            reference_entry_id=reference_public_id,
            created_at=entry.created_at,
        )


class StockMutationResult(ApiModel):
    product: ProductStockOut
    ledger_entry: LedgerEntryOut


class StockAdjustmentResult(ApiModel):
    product_id: uuid.UUID
    stock_quantity: int
    previous_quantity: int
    change: int
    ledger_entry: LedgerEntryOut


class ValidationLineResult(ApiModel):
    id: str
    name: Optional[str] = None
    in_stock: bool
    requested: int
    available: int
    message: Optional[str] = None


class StockValidationResult(ApiModel):
    valid: bool
    items: List[ValidationLineResult]
    out_of_stock_items: List[ValidationLineResult]


class StockBucket(ApiModel):
    count: int
    products: List[ProductStockOut]


class LowStockReport(ApiModel):
    threshold: int
    low_stock: StockBucket
    out_of_stock: StockBucket


class InventoryPage(ApiModel):
    items: List[ProductStockOut]
    next_cursor: Optional[str] = None
    has_more: bool


def dump(model: BaseModel) -> Any:
    return model.model_dump(mode="json", by_alias=True)
