"""
Module: pharmacy_kernel.models.register
Responsibility: ORM persistence for the controlled-substance register, an
    append-only balance chain per controlled stock unit.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - balance_after = balance_before + quantity_in - quantity_out (CHECK).
    - balance_after >= 0 (CHECK).
    - UNIQUE(stock_unit_id, unit_sequence): two entries can never claim the
      same position in a unit's chain, so a concurrent append that slipped
      past the row lock fails at flush instead of forking the chain.
    - entry_number is globally unique and monotonic (locked counter).
    - Entries are never updated or deleted, except that verified_by_id and
      verified_at may be set once (ORM listener in db/immutability.py).

Audit relevance:
    The register is the regulatory record.  The "current balance" of a unit
    is the balance_after of its highest unit_sequence; there is no separate
    counter column that could diverge from the entries that justify it.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base, UUIDString


class RegisterTransactionType(str, Enum):
    """Kinds of controlled-substance movement."""

    RECEIPT = "receipt"
    SALE = "sale"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    ADJUSTMENT = "adjustment"
    DESTRUCTION = "destruction"
    RETURN = "return"


class RegisterEntry(Base):
    """
    One line of the controlled-substance register.

    Contract:
        Created only by ControlledRegisterService.append_entry(), which
        computes balance_before from the previous entry of the same unit
        while holding that unit's row lock.
    """

    __tablename__ = "register_entries"

    __table_args__ = (
        UniqueConstraint("entry_number", name="uq_register_entry_number"),
        UniqueConstraint("stock_unit_id", "unit_sequence", name="uq_register_unit_sequence"),
        CheckConstraint("quantity_in >= 0", name="ck_register_quantity_in"),
        CheckConstraint("quantity_out >= 0", name="ck_register_quantity_out"),
        CheckConstraint("balance_after >= 0", name="ck_register_balance_non_negative"),
        CheckConstraint(
            "balance_after = balance_before + quantity_in - quantity_out",
            name="ck_register_balance_arithmetic",
        ),
        Index("idx_register_unit", "stock_unit_id"),
        Index("idx_register_type", "transaction_type"),
        Index("idx_register_occurred", "occurred_at"),
        Index("idx_register_sale", "sale_id"),
    )

    # Global monotonic number, allocated by SequenceService
    entry_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Human-facing code, e.g. CSR-MAIN-2026-000042
    entry_code: Mapped[str] = mapped_column(String(50), nullable=False)

    stock_unit_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("stock_units.id"),
        nullable=False,
    )

    # 1-based position in this stock unit's chain
    unit_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    transaction_type: Mapped[RegisterTransactionType] = mapped_column(
        String(20),
        nullable=False,
    )

    quantity_in: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    quantity_out: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Snapshot of the stock unit at recording time
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)
    schedule_class: Mapped[str] = mapped_column(String(30), nullable=False)

    # Patient / prescription context (SALE, RETURN)
    patient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    patient_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    prescription_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    prescriber_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    prescriber_reg_no: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Supplier / counterparty context (RECEIPT, TRANSFER_IN, TRANSFER_OUT)
    supplier_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    supplier_license: Mapped[str | None] = mapped_column(String(100), nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Destruction context
    witness_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    witness_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    destruction_method: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Adjustment reason or free-text notes
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Links to the settlement that produced the movement
    sale_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    dispensing_event_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reverses_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("register_entries.id"),
        nullable=True,
    )

    recorded_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    recorded_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    verified_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True, active_history=True)
    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, active_history=True
    )

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def is_verified(self) -> bool:
        return self.verified_by_id is not None

    def __repr__(self) -> str:
        return (
            f"<RegisterEntry {self.entry_code} {self.transaction_type} "
            f"{self.balance_before}->{self.balance_after}>"
        )
