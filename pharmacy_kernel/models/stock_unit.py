"""
Module: pharmacy_kernel.models.stock_unit
Responsibility: ORM persistence for stock-keeping units (one purchasable batch
    of a medicine) and the goods-received records that increase them.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - quantity >= 0 (CHECK constraint; the stock ledger's guarded decrement
      makes a violation a programming error, not a user-facing condition).
    - Stock units are never deleted (ORM listener); status is soft only,
      because historical sales reference them.
    - StockReceipt rows are append-only.

Audit relevance:
    StockUnit.quantity is the single source of truth for available stock.
    Every increase is justified by a StockReceipt or a compensating void;
    every decrease by a SaleLine, DispensingLine or RegisterEntry.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base, TrackedBase, UUIDString


class StockUnitStatus(str, Enum):
    """Soft lifecycle status of a stock unit."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class StockUnit(TrackedBase):
    """
    One batch of a product held in stock.

    Contract:
        quantity is mutated only by StockLedgerService (guarded decrement,
        receive, restore).  A non-null schedule_class marks the unit as a
        controlled substance whose every movement is also written to the
        controlled-substance register.
    """

    __tablename__ = "stock_units"

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_unit_quantity_non_negative"),
        CheckConstraint("unit_price >= 0", name="ck_stock_unit_price_non_negative"),
        Index("idx_stock_unit_batch", "batch_number"),
        Index("idx_stock_unit_product", "product_name"),
        Index("idx_stock_unit_schedule", "schedule_class"),
    )

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    generic_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Selling price per unit
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)

    # Last landed cost per unit
    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)

    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # e.g. "SCHEDULE_II"; NULL for uncontrolled stock
    schedule_class: Mapped[str | None] = mapped_column(String(30), nullable=True)

    status: Mapped[StockUnitStatus] = mapped_column(
        String(20),
        nullable=False,
        default=StockUnitStatus.ACTIVE,
    )

    @property
    def is_controlled(self) -> bool:
        return self.schedule_class is not None

    @property
    def is_active(self) -> bool:
        return self.status == StockUnitStatus.ACTIVE

    def is_expired(self, on: date) -> bool:
        return self.expiry_date < on

    def __repr__(self) -> str:
        return f"<StockUnit {self.product_name} batch {self.batch_number}: {self.quantity}>"


class StockReceipt(Base):
    """
    Append-only goods-received record.

    Each row justifies one increase of StockUnit.quantity.
    """

    __tablename__ = "stock_receipts"

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_receipt_quantity_positive"),
        Index("idx_stock_receipt_unit", "stock_unit_id"),
    )

    stock_unit_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_units.id"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(nullable=False)

    supplier_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Goods-received note or invoice number
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True)

    received_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<StockReceipt {self.stock_unit_id}: +{self.quantity}>"
