"""
Module: pharmacy_kernel.models.sale
Responsibility: ORM persistence for completed sales, their lines, and the
    compensating void records that reverse them.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - invoice_number is unique (allocated from a locked per-day counter).
    - total = max(0, subtotal - discount - points_discount) and
      sum(line_total) = subtotal (computed by domain.pricing, asserted by
      the settlement engine before insert).
    - SaleTransaction, SaleLine and SaleVoid rows are immutable once
      flushed.  A void never edits the sale; it adds a SaleVoid row
      (UNIQUE per sale) plus reversing ledger entries.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmacy_kernel.db.base import Base, UUIDString


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE_MONEY = "mobile_money"
    CREDIT = "credit"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"


class SaleTransaction(Base):
    """A settled sale.  Immutable once flushed."""

    __tablename__ = "sale_transactions"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_sale_invoice_number"),
        CheckConstraint("total >= 0", name="ck_sale_total_non_negative"),
        CheckConstraint("discount >= 0", name="ck_sale_discount_non_negative"),
        Index("idx_sale_customer", "customer_id"),
        Index("idx_sale_occurred", "occurred_at"),
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)

    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    discount: Mapped[Decimal] = mapped_column(nullable=False)
    points_redeemed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    points_discount: Mapped[Decimal] = mapped_column(nullable=False)
    total: Mapped[Decimal] = mapped_column(nullable=False)
    points_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    payment_method: Mapped[PaymentMethod] = mapped_column(String(20), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(String(20), nullable=False)

    customer_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("customers.id"),
        nullable=True,
    )

    operator_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    lines: Mapped[list["SaleLine"]] = relationship(
        back_populates="sale",
        order_by="SaleLine.line_no",
    )

    def __repr__(self) -> str:
        return f"<SaleTransaction {self.invoice_number}: {self.total}>"


class SaleLine(Base):
    """One cart line of a sale, priced at settlement time."""

    __tablename__ = "sale_lines"

    __table_args__ = (
        UniqueConstraint("sale_id", "line_no", name="uq_sale_line_no"),
        CheckConstraint("quantity > 0", name="ck_sale_line_quantity_positive"),
        Index("idx_sale_line_unit", "stock_unit_id"),
    )

    sale_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sale_transactions.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    stock_unit_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_units.id"),
        nullable=False,
    )

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    line_total: Mapped[Decimal] = mapped_column(nullable=False)

    sale: Mapped[SaleTransaction] = relationship(back_populates="lines")


class SaleVoid(Base):
    """Compensating record: the referenced sale has been reversed."""

    __tablename__ = "sale_voids"

    __table_args__ = (
        UniqueConstraint("sale_id", name="uq_sale_void_sale"),
    )

    sale_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("sale_transactions.id"),
        nullable=False,
    )

    reason: Mapped[str] = mapped_column(String(500), nullable=False)

    operator_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
