"""
Module: pharmacy_kernel.models.customer
Responsibility: ORM persistence for customers and their two sub-ledgers
    (loyalty points and store credit).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - loyalty_points >= 0, credit_balance >= 0, credit_limit >= 0 (CHECK).
    - credit_balance <= credit_limit (CHECK).  Payments never raise the
      balance, so the constraint only bites on charges.
    - LoyaltyTransaction and CreditTransaction rows are append-only.  The
      customer's cached balances are a projection of these rows: summing a
      customer's transactions always reproduces the cached value
      (CustomerLedgerService.verify_projection).
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
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base, TrackedBase, UUIDString


class CustomerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class LoyaltyTransactionType(str, Enum):
    EARN = "earn"
    REDEEM = "redeem"
    ADJUST = "adjust"
    REVERSAL = "reversal"


class CreditTransactionType(str, Enum):
    OPENING_BALANCE = "opening_balance"
    CHARGE = "charge"
    PAYMENT = "payment"
    REVERSAL = "reversal"


class Customer(TrackedBase):
    """
    Customer master record with cached sub-ledger balances.

    Contract:
        loyalty_points and credit_balance are mutated only by
        CustomerLedgerService, in the same flush as the transaction row
        that justifies the change.
    """

    __tablename__ = "customers"

    __table_args__ = (
        UniqueConstraint("customer_code", name="uq_customer_code"),
        CheckConstraint("loyalty_points >= 0", name="ck_customer_points_non_negative"),
        CheckConstraint("credit_balance >= 0", name="ck_customer_credit_non_negative"),
        CheckConstraint("credit_limit >= 0", name="ck_customer_limit_non_negative"),
        CheckConstraint("credit_balance <= credit_limit", name="ck_customer_within_limit"),
        Index("idx_customer_phone", "phone"),
    )

    customer_code: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    loyalty_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    credit_balance: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0.00"))

    credit_limit: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0.00"))

    status: Mapped[CustomerStatus] = mapped_column(
        String(20),
        nullable=False,
        default=CustomerStatus.ACTIVE,
    )

    @property
    def available_credit(self) -> Decimal:
        return self.credit_limit - self.credit_balance

    @property
    def is_active(self) -> bool:
        return self.status == CustomerStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<Customer {self.customer_code}: {self.name}>"


class LoyaltyTransaction(Base):
    """Append-only loyalty points movement (signed)."""

    __tablename__ = "loyalty_transactions"

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_loyalty_balance_non_negative"),
        UniqueConstraint("customer_id", "customer_sequence", name="uq_loyalty_customer_sequence"),
        Index("idx_loyalty_customer", "customer_id"),
        Index("idx_loyalty_sale", "sale_id"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("customers.id"),
        nullable=False,
    )

    # Position within the customer's ledger; orders rows sharing a timestamp
    customer_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    transaction_type: Mapped[LoyaltyTransactionType] = mapped_column(String(20), nullable=False)

    # Signed: negative for redemption / reversal of earned points
    points: Mapped[int] = mapped_column(BigInteger, nullable=False)

    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False)

    sale_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    operator_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CreditTransaction(Base):
    """Append-only store-credit movement (signed; positive = charge)."""

    __tablename__ = "credit_transactions"

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_credit_balance_non_negative"),
        UniqueConstraint("customer_id", "customer_sequence", name="uq_credit_customer_sequence"),
        Index("idx_credit_customer", "customer_id"),
        Index("idx_credit_sale", "sale_id"),
    )

    customer_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("customers.id"),
        nullable=False,
    )

    # Position within the customer's ledger; orders rows sharing a timestamp
    customer_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    transaction_type: Mapped[CreditTransactionType] = mapped_column(String(20), nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    balance_after: Mapped[Decimal] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False)

    sale_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    operator_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
