"""Read-only customer and sub-ledger queries."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.domain.dtos import CustomerBalances
from pharmacy_kernel.models.customer import (
    CreditTransaction,
    CreditTransactionType,
    Customer,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from pharmacy_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LoyaltyHistoryRow:
    transaction_type: LoyaltyTransactionType
    points: int
    balance_after: int
    description: str
    sale_id: UUID | None
    occurred_at: datetime


@dataclass(frozen=True)
class CreditHistoryRow:
    transaction_type: CreditTransactionType
    amount: Decimal
    balance_after: Decimal
    description: str
    sale_id: UUID | None
    occurred_at: datetime


class CustomerSelector(BaseSelector):
    def balances(self, customer_id: UUID) -> CustomerBalances | None:
        customer = self.session.get(Customer, customer_id)
        return CustomerBalances.from_model(customer) if customer else None

    def by_code(self, customer_code: str) -> CustomerBalances | None:
        customer = self.session.execute(
            select(Customer).where(Customer.customer_code == customer_code)
        ).scalar_one_or_none()
        return CustomerBalances.from_model(customer) if customer else None

    def loyalty_history(self, customer_id: UUID) -> list[LoyaltyHistoryRow]:
        rows = self.session.execute(
            select(LoyaltyTransaction)
            .where(LoyaltyTransaction.customer_id == customer_id)
            .order_by(LoyaltyTransaction.customer_sequence)
        ).scalars()
        return [
            LoyaltyHistoryRow(
                transaction_type=LoyaltyTransactionType(row.transaction_type),
                points=row.points,
                balance_after=row.balance_after,
                description=row.description,
                sale_id=row.sale_id,
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]

    def credit_history(self, customer_id: UUID) -> list[CreditHistoryRow]:
        rows = self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.customer_id == customer_id)
            .order_by(CreditTransaction.customer_sequence)
        ).scalars()
        return [
            CreditHistoryRow(
                transaction_type=CreditTransactionType(row.transaction_type),
                amount=row.amount,
                balance_after=row.balance_after,
                description=row.description,
                sale_id=row.sale_id,
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]
