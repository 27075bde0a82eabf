"""
Typed Exception Hierarchy for the Pharmacy Settlement Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Settlement failures must be handled precisely by the terminal layer: an
InsufficientStock rejection is shown to the cashier with the available
quantity, a ConcurrencyConflict is retried, an AlreadyVerified is treated as
success.  Callers therefore catch by TYPE and read structured attributes,
never parse message strings.

Every exception:
  1. Has a ``code`` class attribute (machine-readable, API-safe)
  2. Carries its context as attributes (stock_unit_id, available, ...)
  3. Inherits from PharmacyKernelError so the settlement boundary can
     convert any of them into a typed result

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    PharmacyKernelError (base)
    |
    +-- ValidationError
    |   +-- MissingRegisterContextError
    |
    +-- StockError
    |   +-- InsufficientStockError
    |   +-- StockUnitNotFoundError
    |   +-- StockUnitInactiveError
    |
    +-- RegisterError
    |   +-- NotControlledError
    |   +-- NegativeRegisterBalanceError
    |   +-- RegisterEntryNotFoundError
    |   +-- AlreadyVerifiedError
    |   +-- BalanceChainBrokenError
    |
    +-- CustomerLedgerError
    |   +-- CustomerNotFoundError
    |   +-- CustomerInactiveError
    |   +-- InsufficientPointsError
    |   +-- CreditLimitExceededError
    |   +-- PaymentExceedsBalanceError
    |   +-- LedgerProjectionMismatchError
    |
    +-- PrescriptionError
    |   +-- PrescriptionNotFoundError
    |   +-- PrescriptionItemNotFoundError
    |   +-- PrescriptionNotDispensableError
    |   +-- OverDispenseError
    |   +-- SubstitutionNotAllowedError
    |
    +-- SaleError
    |   +-- SaleNotFoundError
    |   +-- SaleAlreadyVoidedError
    |
    +-- ConcurrencyConflictError
    +-- StorageFaultError
    +-- ImmutabilityViolationError
    +-- AuditChainBrokenError

===============================================================================
RETRY SEMANTICS
===============================================================================

Code                        | Caller action
----------------------------|------------------------------------------------
VALIDATION_ERROR            | Correct the request, then resubmit
INSUFFICIENT_STOCK          | Re-check stock, adjust the cart
INSUFFICIENT_POINTS         | Redeem fewer points
CREDIT_LIMIT_EXCEEDED       | Choose another payment method
ALREADY_VERIFIED            | Nothing to do (idempotency guard)
CONCURRENCY_CONFLICT        | Retry the whole settlement from scratch
STORAGE_FAULT               | Retry later; nothing was applied

===============================================================================
"""

from decimal import Decimal


class PharmacyKernelError(Exception):
    """
    Base exception for all pharmacy kernel errors.

    All subclasses define a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "PHARMACY_KERNEL_ERROR"


# Validation


class ValidationError(PharmacyKernelError):
    """Malformed or missing request fields; raised before any mutation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class MissingRegisterContextError(ValidationError):
    """A register entry lacks the context its transaction type requires."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, transaction_type: str, missing_fields: tuple[str, ...]):
        self.transaction_type = transaction_type
        self.missing_fields = missing_fields
        super().__init__(
            f"{transaction_type} entries require: {', '.join(missing_fields)}",
            field=missing_fields[0] if missing_fields else None,
        )


# Stock ledger


class StockError(PharmacyKernelError):
    """Base exception for stock ledger errors."""

    code: str = "STOCK_ERROR"


class InsufficientStockError(StockError):
    """Requested quantity exceeds the quantity on hand."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        stock_unit_id: str,
        requested: int,
        available: int,
        line_index: int | None = None,
    ):
        self.stock_unit_id = stock_unit_id
        self.requested = requested
        self.available = available
        self.line_index = line_index
        where = f" (line {line_index})" if line_index is not None else ""
        super().__init__(
            f"Insufficient stock for {stock_unit_id}{where}: "
            f"requested {requested}, available {available}"
        )


class StockUnitNotFoundError(StockError):
    """Stock unit with given ID was not found."""

    code: str = "STOCK_UNIT_NOT_FOUND"

    def __init__(self, stock_unit_id: str, line_index: int | None = None):
        self.stock_unit_id = stock_unit_id
        self.line_index = line_index
        super().__init__(f"Stock unit not found: {stock_unit_id}")


class StockUnitInactiveError(StockError):
    """Stock unit is soft-deactivated and cannot be sold or dispensed."""

    code: str = "STOCK_UNIT_INACTIVE"

    def __init__(self, stock_unit_id: str, line_index: int | None = None):
        self.stock_unit_id = stock_unit_id
        self.line_index = line_index
        super().__init__(f"Stock unit is inactive: {stock_unit_id}")


# Controlled-substance register


class RegisterError(PharmacyKernelError):
    """Base exception for controlled-substance register errors."""

    code: str = "REGISTER_ERROR"


class NotControlledError(RegisterError):
    """Register entry submitted for a stock unit with no schedule class."""

    code: str = "NOT_CONTROLLED"

    def __init__(self, stock_unit_id: str):
        self.stock_unit_id = stock_unit_id
        super().__init__(f"Stock unit is not a controlled substance: {stock_unit_id}")


class NegativeRegisterBalanceError(RegisterError):
    """The entry would drive the register balance below zero."""

    code: str = "NEGATIVE_REGISTER_BALANCE"

    def __init__(self, stock_unit_id: str, balance_before: int, quantity_out: int):
        self.stock_unit_id = stock_unit_id
        self.balance_before = balance_before
        self.quantity_out = quantity_out
        super().__init__(
            f"Register balance for {stock_unit_id} is {balance_before}, "
            f"cannot record {quantity_out} out"
        )


class RegisterEntryNotFoundError(RegisterError):
    """Register entry with given ID was not found."""

    code: str = "REGISTER_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Register entry not found: {entry_id}")


class AlreadyVerifiedError(RegisterError):
    """Register entry was already verified (idempotency guard)."""

    code: str = "ALREADY_VERIFIED"

    def __init__(self, entry_id: str, verified_by_id: str):
        self.entry_id = entry_id
        self.verified_by_id = verified_by_id
        super().__init__(f"Register entry {entry_id} already verified by {verified_by_id}")


class BalanceChainBrokenError(RegisterError):
    """A register entry's balance_before does not continue the chain."""

    code: str = "BALANCE_CHAIN_BROKEN"

    def __init__(
        self,
        stock_unit_id: str,
        unit_sequence: int,
        expected_balance: int,
        actual_balance: int,
    ):
        self.stock_unit_id = stock_unit_id
        self.unit_sequence = unit_sequence
        self.expected_balance = expected_balance
        self.actual_balance = actual_balance
        super().__init__(
            f"Balance chain broken for {stock_unit_id} at position {unit_sequence}: "
            f"expected {expected_balance}, found {actual_balance}"
        )


# Customer sub-ledgers


class CustomerLedgerError(PharmacyKernelError):
    """Base exception for loyalty and credit ledger errors."""

    code: str = "CUSTOMER_LEDGER_ERROR"


class CustomerNotFoundError(CustomerLedgerError):
    """Customer with given ID was not found."""

    code: str = "CUSTOMER_NOT_FOUND"

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer not found: {customer_id}")


class CustomerInactiveError(CustomerLedgerError):
    """Customer is inactive and cannot take part in new transactions."""

    code: str = "CUSTOMER_INACTIVE"

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer is inactive: {customer_id}")


class InsufficientPointsError(CustomerLedgerError):
    """Loyalty redemption exceeds the customer's balance."""

    code: str = "INSUFFICIENT_POINTS"

    def __init__(self, customer_id: str, requested: int, available: int):
        self.customer_id = customer_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Customer {customer_id} has {available} points, cannot redeem {requested}"
        )


class CreditLimitExceededError(CustomerLedgerError):
    """Credit charge would push the balance over the limit."""

    code: str = "CREDIT_LIMIT_EXCEEDED"

    def __init__(
        self,
        customer_id: str,
        credit_balance: Decimal,
        amount: Decimal,
        credit_limit: Decimal,
    ):
        self.customer_id = customer_id
        self.credit_balance = credit_balance
        self.amount = amount
        self.credit_limit = credit_limit
        self.resulting_balance = credit_balance + amount
        super().__init__(
            f"Credit limit exceeded for {customer_id}: "
            f"{self.resulting_balance} > {credit_limit}"
        )


class PaymentExceedsBalanceError(CustomerLedgerError):
    """Credit payment is larger than the outstanding balance."""

    code: str = "PAYMENT_EXCEEDS_BALANCE"

    def __init__(self, customer_id: str, amount: Decimal, credit_balance: Decimal):
        self.customer_id = customer_id
        self.amount = amount
        self.credit_balance = credit_balance
        super().__init__(
            f"Payment {amount} exceeds credit balance {credit_balance} for {customer_id}"
        )


class LedgerProjectionMismatchError(CustomerLedgerError):
    """Cached customer balance differs from the sum of its transactions."""

    code: str = "LEDGER_PROJECTION_MISMATCH"

    def __init__(self, customer_id: str, ledger: str, cached, reconstructed):
        self.customer_id = customer_id
        self.ledger = ledger
        self.cached = cached
        self.reconstructed = reconstructed
        super().__init__(
            f"{ledger} projection mismatch for {customer_id}: "
            f"cached {cached}, reconstructed {reconstructed}"
        )


# Prescriptions


class PrescriptionError(PharmacyKernelError):
    """Base exception for prescription dispensing errors."""

    code: str = "PRESCRIPTION_ERROR"


class PrescriptionNotFoundError(PrescriptionError):
    """Prescription with given ID was not found."""

    code: str = "PRESCRIPTION_NOT_FOUND"

    def __init__(self, prescription_id: str):
        self.prescription_id = prescription_id
        super().__init__(f"Prescription not found: {prescription_id}")


class PrescriptionItemNotFoundError(PrescriptionError):
    """Item does not belong to the prescription being dispensed."""

    code: str = "PRESCRIPTION_ITEM_NOT_FOUND"

    def __init__(self, prescription_id: str, item_id: str, line_index: int | None = None):
        self.prescription_id = prescription_id
        self.item_id = item_id
        self.line_index = line_index
        super().__init__(f"Item {item_id} is not part of prescription {prescription_id}")


class PrescriptionNotDispensableError(PrescriptionError):
    """Prescription is expired, cancelled or already fully dispensed."""

    code: str = "PRESCRIPTION_NOT_DISPENSABLE"

    def __init__(self, prescription_id: str, status: str):
        self.prescription_id = prescription_id
        self.status = status
        super().__init__(f"Prescription {prescription_id} cannot be dispensed: {status}")


class OverDispenseError(PrescriptionError):
    """Dispensing would exceed the prescribed quantity for an item."""

    code: str = "OVER_DISPENSE"

    def __init__(self, item_id: str, requested: int, remaining: int, line_index: int | None = None):
        self.item_id = item_id
        self.requested = requested
        self.remaining = remaining
        self.line_index = line_index
        super().__init__(
            f"Cannot dispense {requested} for item {item_id}: only {remaining} remaining"
        )


class SubstitutionNotAllowedError(PrescriptionError):
    """Substitute stock used for an item that forbids substitution."""

    code: str = "SUBSTITUTION_NOT_ALLOWED"

    def __init__(self, item_id: str, line_index: int | None = None):
        self.item_id = item_id
        self.line_index = line_index
        super().__init__(f"Substitution not allowed for prescription item {item_id}")


# Sales


class SaleError(PharmacyKernelError):
    """Base exception for completed-sale errors."""

    code: str = "SALE_ERROR"


class SaleNotFoundError(SaleError):
    """Sale with given ID was not found."""

    code: str = "SALE_NOT_FOUND"

    def __init__(self, sale_id: str):
        self.sale_id = sale_id
        super().__init__(f"Sale not found: {sale_id}")


class SaleAlreadyVoidedError(SaleError):
    """Sale already has a compensating void."""

    code: str = "SALE_ALREADY_VOIDED"

    def __init__(self, sale_id: str):
        self.sale_id = sale_id
        super().__init__(f"Sale already voided: {sale_id}")


# Infrastructure


class ConcurrencyConflictError(PharmacyKernelError):
    """
    Conflicting concurrent write detected at commit.

    The caller should retry the whole settlement; its inputs may be stale.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Concurrency conflict on {entity_type} {entity_id}: {reason}")


class StorageFaultError(PharmacyKernelError):
    """The transaction could not commit for infrastructure reasons."""

    code: str = "STORAGE_FAULT"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Storage fault: {reason}")


class ImmutabilityViolationError(PharmacyKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class AuditChainBrokenError(PharmacyKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
