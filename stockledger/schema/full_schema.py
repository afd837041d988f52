import enum
import uuid
from datetime import datetime
from typing import List, Optional
from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlmodel import Column, Field, Relationship, SQLModel, String
from uuid6 import uuid7
from stockledger.common.utils import now


class LedgerTransactionType(str, enum.Enum):
    ADDITION = "addition"
    REDUCTION = "reduction"
    ADJUSTMENT = "adjustment"


class LedgerEntryKind(str, enum.Enum):
    STOCK_CHANGE = "stock_change"   # direct mutation (admin adjustment, collaborator delta)
    RESERVATION = "reservation"     # temporary hold for a pending order
    RELEASE = "release"             # reverses one reservation entry
    FULFILLMENT = "fulfillment"     # permanent decrement after payment


# Catalog CRUD lives elsewhere, this service only owns stock_qty and version.
class Product(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(
        default_factory=uuid7,
        sa_column=Column(Uuid(), unique=True, index=True, nullable=False)
    )
    name: str = Field(sa_column=Column(String(255), nullable=False, unique=True))
    description: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    category: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True, index=True))
    base_price: int = Field(default=0, description="Price in minor units (int)")

    stock_qty: int = Field(default=0, sa_column=Column(Integer(), nullable=False, default=0))
    version: int = Field(default=0, sa_column=Column(Integer(), nullable=False, default=0))

    created_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False, default=now))
    updated_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False, default=now, onupdate=now))

    ledger_entries: List["InventoryLedgerEntry"] = Relationship(back_populates="product")

    __table_args__ = (
        CheckConstraint("stock_qty >= 0", name="ck_product_stock_qty_non_negative"),
    )


# Append-only audit trail, one row per accepted change of Product.stock_qty.
# Only `notes` of a reservation row is ever touched after insert (release annotation).
class InventoryLedgerEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: uuid.UUID = Field(
        default_factory=uuid7,
        sa_column=Column(Uuid(), unique=True, index=True, nullable=False)
    )
    product_id: int = Field(sa_column=Column(ForeignKey("product.id", ondelete="RESTRICT"), nullable=False))
    transaction_type: str = Field(sa_column=Column(String(16), nullable=False))
    entry_kind: str = Field(default=LedgerEntryKind.STOCK_CHANGE.value, sa_column=Column(String(16), nullable=False))
    quantity: int = Field(sa_column=Column(Integer(), nullable=False))
    previous_quantity: int = Field(sa_column=Column(Integer(), nullable=False))
    new_quantity: int = Field(sa_column=Column(Integer(), nullable=False))
    reason: str = Field(sa_column=Column(String(500), nullable=False))
    actor_id: str = Field(sa_column=Column(String(128), nullable=False))
    order_id: Optional[str] = Field(default=None, sa_column=Column(String(128), nullable=True))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text(), nullable=True))
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    reference_entry_id: Optional[int] = Field(
        default=None,
        sa_column=Column(ForeignKey("inventoryledgerentry.id", ondelete="RESTRICT"), nullable=True, index=True),
    )
    created_at: datetime = Field(default_factory=now,
        sa_column=Column(DateTime(timezone=True), nullable=False, default=now))

    product: Optional["Product"] = Relationship(back_populates="ledger_entries")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_ledger_quantity_non_negative"),
        CheckConstraint("previous_quantity >= 0", name="ck_ledger_previous_quantity_non_negative"),
        CheckConstraint("new_quantity >= 0", name="ck_ledger_new_quantity_non_negative"),
        Index("ix_ledger_product_created_at", "product_id", "created_at"),
        Index("ix_ledger_order_id", "order_id"),
        Index("ix_ledger_entry_kind", "entry_kind"),
        Index("ix_ledger_actor_id", "actor_id"),
    )
