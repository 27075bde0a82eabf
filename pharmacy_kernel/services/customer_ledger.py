"""
CustomerLedgerService -- loyalty points and store credit sub-ledgers.

Responsibility:
    Applies signed deltas to a customer's loyalty points and credit
    balance, each paired with an append-only transaction row, and checks
    that the cached balances still equal the sum of their transactions.

Architecture position:
    Kernel > Services -- imperative shell, called by SettlementEngine.

Invariants enforced:
    - loyalty_points >= 0.
    - 0 <= credit_balance <= credit_limit.
    - Cached balance == sum of the customer's transaction rows (projection).
    - Each change is a single guarded UPDATE, so a concurrent redemption
      or charge can never drive a balance past its bound even if two
      settlements read the same starting value.

Failure modes:
    - CustomerNotFoundError, CustomerInactiveError
    - InsufficientPointsError, CreditLimitExceededError,
      PaymentExceedsBalanceError
    - LedgerProjectionMismatchError from verify_projection()
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update

from pharmacy_kernel.db.types import ZERO, to_money
from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.exceptions import (
    CreditLimitExceededError,
    CustomerInactiveError,
    CustomerNotFoundError,
    InsufficientPointsError,
    LedgerProjectionMismatchError,
    PaymentExceedsBalanceError,
)
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.customer import (
    CreditTransaction,
    CreditTransactionType,
    Customer,
    LoyaltyTransaction,
    LoyaltyTransactionType,
)
from pharmacy_kernel.services.base import BaseService

logger = get_logger("services.customer_ledger")


class CustomerLedgerService(BaseService):
    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def _reload(self, customer_id: UUID) -> Customer | None:
        return self.session.execute(
            select(Customer)
            .where(Customer.id == customer_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _next_sequence(self, model, customer_id: UUID) -> int:
        # Called after the guarded UPDATE, so the customer row is write-locked
        last = self.session.execute(
            select(func.max(model.customer_sequence)).where(model.customer_id == customer_id)
        ).scalar()
        return (last or 0) + 1

    def lock_customer(self, customer_id: UUID, require_active: bool = True) -> Customer:
        """Take the customer's row lock (always after any stock unit locks)."""
        customer = self.session.execute(
            select(Customer)
            .where(Customer.id == customer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if customer is None:
            raise CustomerNotFoundError(str(customer_id))
        if require_active and not customer.is_active:
            raise CustomerInactiveError(str(customer_id))
        return customer

    # ------------------------------------------------------------------
    # Loyalty
    # ------------------------------------------------------------------

    def apply_loyalty_delta(
        self,
        customer_id: UUID,
        points: int,
        transaction_type: LoyaltyTransactionType,
        description: str,
        sale_id: UUID | None = None,
        operator_id: UUID | None = None,
    ) -> int:
        """
        Add ``points`` (signed) to the loyalty balance.

        Returns:
            The new balance.  A zero delta writes nothing.

        Raises:
            InsufficientPointsError: The balance would go negative.
        """
        if points == 0:
            customer = self._reload(customer_id)
            if customer is None:
                raise CustomerNotFoundError(str(customer_id))
            return customer.loyalty_points

        result = self.session.execute(
            update(Customer)
            .where(Customer.id == customer_id, Customer.loyalty_points + points >= 0)
            .values(loyalty_points=Customer.loyalty_points + points)
            .execution_options(synchronize_session=False)
        )
        customer = self._reload(customer_id)
        if customer is None:
            raise CustomerNotFoundError(str(customer_id))
        if result.rowcount == 0:
            raise InsufficientPointsError(str(customer_id), -points, customer.loyalty_points)

        self.session.add(
            LoyaltyTransaction(
                customer_id=customer_id,
                customer_sequence=self._next_sequence(LoyaltyTransaction, customer_id),
                transaction_type=transaction_type,
                points=points,
                balance_after=customer.loyalty_points,
                description=description,
                sale_id=sale_id,
                operator_id=operator_id,
                occurred_at=self._clock.now(),
            )
        )
        self.session.flush()
        logger.info(
            "loyalty_delta_applied",
            extra={
                "customer_id": str(customer_id),
                "points": points,
                "transaction_type": transaction_type.value,
                "balance_after": customer.loyalty_points,
            },
        )
        return customer.loyalty_points

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------

    def apply_credit_delta(
        self,
        customer_id: UUID,
        amount: Decimal,
        transaction_type: CreditTransactionType,
        description: str,
        sale_id: UUID | None = None,
        operator_id: UUID | None = None,
    ) -> Decimal:
        """
        Add ``amount`` (signed; positive is a charge) to the credit balance.

        The new balance is computed in Decimal from the locked row, then
        written by an UPDATE guarded on the unchanged old balance and the
        bounds, so a lost update is impossible even on a backend without
        row locks.

        Returns:
            The new credit balance.

        Raises:
            CreditLimitExceededError: A charge would pass the limit.
            PaymentExceedsBalanceError: A payment larger than the balance.
        """
        amount = to_money(amount)
        customer = self.lock_customer(customer_id, require_active=False)
        if amount == ZERO:
            return customer.credit_balance

        old_balance = customer.credit_balance
        new_balance = old_balance + amount
        if amount > 0 and new_balance > customer.credit_limit:
            raise CreditLimitExceededError(
                str(customer_id), old_balance, amount, customer.credit_limit
            )
        if amount < 0 and new_balance < ZERO:
            raise PaymentExceedsBalanceError(str(customer_id), -amount, old_balance)

        result = self.session.execute(
            update(Customer)
            .where(
                Customer.id == customer_id,
                Customer.credit_balance == old_balance,
                Customer.credit_limit >= new_balance,
            )
            .values(credit_balance=new_balance)
            .execution_options(synchronize_session=False)
        )
        customer = self._reload(customer_id)
        if result.rowcount == 0:
            # The guard only fails if the row moved under us
            if amount > 0:
                raise CreditLimitExceededError(
                    str(customer_id), customer.credit_balance, amount, customer.credit_limit
                )
            raise PaymentExceedsBalanceError(str(customer_id), -amount, customer.credit_balance)

        self.session.add(
            CreditTransaction(
                customer_id=customer_id,
                customer_sequence=self._next_sequence(CreditTransaction, customer_id),
                transaction_type=transaction_type,
                amount=amount,
                balance_after=customer.credit_balance,
                description=description,
                sale_id=sale_id,
                operator_id=operator_id,
                occurred_at=self._clock.now(),
            )
        )
        self.session.flush()
        logger.info(
            "credit_delta_applied",
            extra={
                "customer_id": str(customer_id),
                "amount": amount,
                "transaction_type": transaction_type.value,
                "balance_after": customer.credit_balance,
            },
        )
        return customer.credit_balance

    # ------------------------------------------------------------------
    # Projection check
    # ------------------------------------------------------------------

    def verify_projection(self, customer_id: UUID) -> bool:
        """
        Rebuild both balances from the transaction rows and compare.

        Raises:
            LedgerProjectionMismatchError: Cached value differs.
        """
        customer = self._reload(customer_id)
        if customer is None:
            raise CustomerNotFoundError(str(customer_id))

        points = self.session.execute(
            select(LoyaltyTransaction.points).where(LoyaltyTransaction.customer_id == customer_id)
        ).scalars().all()
        reconstructed_points = sum(points)
        if reconstructed_points != customer.loyalty_points:
            logger.critical(
                "ledger_projection_mismatch",
                extra={"customer_id": str(customer_id), "ledger": "loyalty"},
            )
            raise LedgerProjectionMismatchError(
                str(customer_id), "loyalty", customer.loyalty_points, reconstructed_points
            )

        amounts = self.session.execute(
            select(CreditTransaction.amount).where(CreditTransaction.customer_id == customer_id)
        ).scalars().all()
        reconstructed_credit = sum(amounts, ZERO)
        if reconstructed_credit != customer.credit_balance:
            logger.critical(
                "ledger_projection_mismatch",
                extra={"customer_id": str(customer_id), "ledger": "credit"},
            )
            raise LedgerProjectionMismatchError(
                str(customer_id), "credit", customer.credit_balance, reconstructed_credit
            )
        return True
