"""
Module: pharmacy_kernel.models.prescription
Responsibility: ORM persistence for prescriptions, their items, and the
    dispensing events that fulfil them (fully or partially).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - 0 <= quantity_dispensed <= quantity_prescribed per item (CHECK).
    - DispensingEvent and DispensingLine rows are append-only; the cumulative
      quantity_dispensed on each item is their running projection, written
      in the same transaction.
    - Status is recomputed by the dispensing resolver after each event; it
      is never set directly by callers (except cancellation).
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmacy_kernel.db.base import Base, TrackedBase, UUIDString


class PrescriptionStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    DISPENSED = "dispensed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Prescription(TrackedBase):
    """
    A prescription awaiting or undergoing dispensing.

    Contract:
        status and the items' quantity_dispensed are mutated only by
        PrescriptionService inside a settlement unit of work.
    """

    __tablename__ = "prescriptions"

    __table_args__ = (
        UniqueConstraint("prescription_number", name="uq_prescription_number"),
        Index("idx_prescription_status", "status"),
        Index("idx_prescription_customer", "customer_id"),
    )

    prescription_number: Mapped[str] = mapped_column(String(100), nullable=False)

    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    patient_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    prescriber_name: Mapped[str] = mapped_column(String(255), nullable=False)
    prescriber_reg_no: Mapped[str | None] = mapped_column(String(100), nullable=True)

    customer_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("customers.id"),
        nullable=True,
    )

    issued_on: Mapped[date] = mapped_column(Date, nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PrescriptionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=PrescriptionStatus.PENDING,
    )

    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    items: Mapped[list["PrescriptionItem"]] = relationship(
        back_populates="prescription",
        order_by="PrescriptionItem.line_no",
    )

    def __repr__(self) -> str:
        return f"<Prescription {self.prescription_number} ({self.status})>"


class PrescriptionItem(Base):
    """One prescribed product with its cumulative fulfilment."""

    __tablename__ = "prescription_items"

    __table_args__ = (
        UniqueConstraint("prescription_id", "line_no", name="uq_prescription_item_line"),
        CheckConstraint("quantity_prescribed > 0", name="ck_rx_item_prescribed_positive"),
        CheckConstraint("quantity_dispensed >= 0", name="ck_rx_item_dispensed_non_negative"),
        CheckConstraint(
            "quantity_dispensed <= quantity_prescribed",
            name="ck_rx_item_not_over_dispensed",
        ),
    )

    prescription_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescriptions.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    # Prescribed stock unit; other units are substitutes
    stock_unit_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("stock_units.id"),
        nullable=True,
    )

    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    dosage: Mapped[str | None] = mapped_column(String(255), nullable=True)

    quantity_prescribed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quantity_dispensed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    substitution_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    prescription: Mapped[Prescription] = relationship(back_populates="items")

    @property
    def remaining(self) -> int:
        return self.quantity_prescribed - self.quantity_dispensed


class DispensingEvent(Base):
    """One dispensing action against a prescription.  Append-only."""

    __tablename__ = "dispensing_events"

    __table_args__ = (
        Index("idx_dispensing_prescription", "prescription_id"),
    )

    prescription_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescriptions.id"),
        nullable=False,
    )

    total: Mapped[Decimal] = mapped_column(nullable=False)

    # Status of the prescription after this event
    resulting_status: Mapped[PrescriptionStatus] = mapped_column(String(20), nullable=False)

    pharmacist_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    pharmacist_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    counseling_provided: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    lines: Mapped[list["DispensingLine"]] = relationship(
        back_populates="event",
        order_by="DispensingLine.line_no",
    )


class DispensingLine(Base):
    """Quantity of one prescription item supplied from one stock unit."""

    __tablename__ = "dispensing_lines"

    __table_args__ = (
        UniqueConstraint("event_id", "line_no", name="uq_dispensing_line_no"),
        CheckConstraint("quantity > 0", name="ck_dispensing_line_quantity_positive"),
        Index("idx_dispensing_line_item", "prescription_item_id"),
    )

    event_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("dispensing_events.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    prescription_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescription_items.id"),
        nullable=False,
    )

    stock_unit_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_units.id"),
        nullable=False,
    )

    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    line_total: Mapped[Decimal] = mapped_column(nullable=False)

    is_substitution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    event: Mapped[DispensingEvent] = relationship(back_populates="lines")
