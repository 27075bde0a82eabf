"""
CustomerService -- customer master data.

Responsibility:
    Registers customers and maintains their non-ledger attributes.
    Opening balances are booked through CustomerLedgerService so that the
    cached balances stay a projection of the transaction rows from the
    very first write.
"""

from decimal import Decimal
from uuid import UUID

from pharmacy_kernel.db.types import ZERO, to_money
from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.exceptions import ValidationError
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.customer import (
    CreditTransactionType,
    Customer,
    CustomerStatus,
    LoyaltyTransactionType,
)
from pharmacy_kernel.services.base import BaseService
from pharmacy_kernel.services.customer_ledger import CustomerLedgerService

logger = get_logger("services.customer")


class CustomerService(BaseService):
    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._ledger = CustomerLedgerService(session, self._clock)

    def create_customer(
        self,
        customer_code: str,
        name: str,
        created_by_id: UUID,
        phone: str | None = None,
        credit_limit: Decimal = ZERO,
        opening_points: int = 0,
        opening_credit: Decimal = ZERO,
    ) -> Customer:
        """
        Insert a customer, optionally with opening loyalty / credit balances.

        Raises:
            ValidationError: Blank code or name, negative amounts, or an
                opening credit balance above the limit.
        """
        if not customer_code or not customer_code.strip():
            raise ValidationError("customer_code is required", field="customer_code")
        if not name or not name.strip():
            raise ValidationError("name is required", field="name")
        credit_limit = to_money(credit_limit)
        opening_credit = to_money(opening_credit)
        if credit_limit < 0:
            raise ValidationError("credit_limit must not be negative", field="credit_limit")
        if opening_points < 0:
            raise ValidationError("opening_points must not be negative", field="opening_points")
        if opening_credit < 0 or opening_credit > credit_limit:
            raise ValidationError(
                "opening_credit must be between 0 and the credit limit",
                field="opening_credit",
            )

        customer = Customer(
            customer_code=customer_code.strip(),
            name=name.strip(),
            phone=phone,
            loyalty_points=0,
            credit_balance=ZERO,
            credit_limit=credit_limit,
            status=CustomerStatus.ACTIVE,
            created_by_id=created_by_id,
        )
        self.session.add(customer)
        self.session.flush()

        if opening_points:
            self._ledger.apply_loyalty_delta(
                customer.id,
                opening_points,
                LoyaltyTransactionType.ADJUST,
                "Opening balance",
                operator_id=created_by_id,
            )
        if opening_credit:
            self._ledger.apply_credit_delta(
                customer.id,
                opening_credit,
                CreditTransactionType.OPENING_BALANCE,
                "Opening balance",
                operator_id=created_by_id,
            )

        logger.info(
            "customer_created",
            extra={"customer_id": str(customer.id), "customer_code": customer.customer_code},
        )
        return self._ledger.lock_customer(customer.id)

    def set_credit_limit(self, customer_id: UUID, credit_limit: Decimal, operator_id: UUID) -> Customer:
        """A limit below the outstanding balance is refused."""
        credit_limit = to_money(credit_limit)
        customer = self._ledger.lock_customer(customer_id, require_active=False)
        if credit_limit < customer.credit_balance:
            raise ValidationError(
                f"Credit limit {credit_limit} is below the outstanding balance "
                f"{customer.credit_balance}",
                field="credit_limit",
            )
        customer.credit_limit = credit_limit
        customer.updated_by_id = operator_id
        self.session.flush()
        return customer

    def deactivate(self, customer_id: UUID, operator_id: UUID) -> Customer:
        customer = self._ledger.lock_customer(customer_id, require_active=False)
        customer.status = CustomerStatus.INACTIVE
        customer.updated_by_id = operator_id
        self.session.flush()
        logger.info("customer_deactivated", extra={"customer_id": str(customer_id)})
        return customer
