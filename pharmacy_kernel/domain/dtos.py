"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable request objects that callers hand to the
    SettlementEngine, the SettlementResult envelope it returns, and the
    read-side records (receipts, register entries, stock units, customer
    balances) built from ORM rows at the persistence boundary.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods exist as boundary converters but are only
    invoked from the service and selector layers.

Invariants enforced:
    - Requests validate themselves with ``validate()``, which the engine
      calls inside its settlement boundary so a malformed request becomes
      a VALIDATION_ERROR result, never an uncaught exception.
    - Monetary fields are Decimal; floats are rejected.

Data flow:
    SaleRequest      -> SettlementEngine.settle_sale -> SettlementResult[SaleReceipt]
    DispenseRequest  -> SettlementEngine.dispense    -> SettlementResult[DispensingRecord]
    RegisterEntryRequest -> append_controlled_entry  -> SettlementResult[RegisterEntryInfo]
    ReceiveStockRequest  -> receive_stock            -> SettlementResult[StockUnitInfo]
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar
from uuid import UUID

from pharmacy_kernel.domain.register_context import RegisterContext, SaleContext
from pharmacy_kernel.exceptions import ValidationError
from pharmacy_kernel.models.prescription import PrescriptionStatus
from pharmacy_kernel.models.register import RegisterTransactionType
from pharmacy_kernel.models.sale import PaymentMethod, PaymentStatus

if TYPE_CHECKING:
    from pharmacy_kernel.models.customer import Customer
    from pharmacy_kernel.models.prescription import Prescription
    from pharmacy_kernel.models.register import RegisterEntry
    from pharmacy_kernel.models.sale import SaleTransaction
    from pharmacy_kernel.models.stock_unit import StockUnit

T = TypeVar("T")


def _require_decimal(value: Any, name: str) -> None:
    if isinstance(value, float) or not isinstance(value, (Decimal, int)):
        raise ValidationError(f"{name} must be a Decimal amount", field=name)


def _require_positive_int(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer", field=name)


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------


class SettlementStatus(str, Enum):
    """Outcome class of a settlement call."""

    COMPLETED = "completed"
    # Business rule or validation failure; nothing was applied
    REJECTED = "rejected"
    # Concurrent write detected; retry the whole call
    CONFLICT = "conflict"
    # Infrastructure failure or lock timeout; nothing was applied
    STORAGE_FAULT = "storage_fault"


@dataclass(frozen=True)
class SettlementResult(Generic[T]):
    """
    Typed outcome of one SettlementEngine call.

    Contract:
        Exactly one of ``value`` (on COMPLETED) or ``error_code`` (otherwise)
        is set.  A non-COMPLETED result means zero side effects were applied.
    """

    status: SettlementStatus
    value: T | None = None
    error_code: str | None = None
    message: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == SettlementStatus.COMPLETED

    @property
    def is_retryable(self) -> bool:
        """True when the caller should simply resubmit the same request."""
        return self.status in (SettlementStatus.CONFLICT, SettlementStatus.STORAGE_FAULT)

    @classmethod
    def completed(cls, value: T) -> SettlementResult[T]:
        return cls(status=SettlementStatus.COMPLETED, value=value)

    @classmethod
    def failed(
        cls,
        status: SettlementStatus,
        error_code: str,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> SettlementResult[T]:
        return cls(
            status=status,
            error_code=error_code,
            message=message,
            details=dict(details or {}),
        )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CartLine:
    stock_unit_id: UUID
    quantity: int


@dataclass(frozen=True)
class SaleRequest:
    """
    A cart plus payment choice, submitted by one terminal.

    controlled_context carries the patient identification that every
    controlled line's SALE register entry needs; it is required as soon as
    any cart line is a controlled stock unit.
    """

    lines: tuple[CartLine, ...]
    payment_method: PaymentMethod
    operator_id: UUID
    operator_name: str | None = None
    customer_id: UUID | None = None
    discount: Decimal = Decimal("0")
    loyalty_points_to_redeem: int = 0
    controlled_context: SaleContext | None = None
    notes: str | None = None

    def validate(self) -> None:
        if not self.lines:
            raise ValidationError("A sale needs at least one cart line", field="lines")
        for index, line in enumerate(self.lines):
            _require_positive_int(line.quantity, f"lines[{index}].quantity")
        try:
            PaymentMethod(self.payment_method)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown payment method: {self.payment_method!r}",
                field="payment_method",
            ) from exc
        _require_decimal(self.discount, "discount")
        if self.discount < 0:
            raise ValidationError("Discount must not be negative", field="discount")
        if (
            isinstance(self.loyalty_points_to_redeem, bool)
            or not isinstance(self.loyalty_points_to_redeem, int)
            or self.loyalty_points_to_redeem < 0
        ):
            raise ValidationError(
                "loyalty_points_to_redeem must be a non-negative integer",
                field="loyalty_points_to_redeem",
            )
        if self.loyalty_points_to_redeem and self.customer_id is None:
            raise ValidationError(
                "Redeeming loyalty points requires a customer",
                field="customer_id",
            )
        if PaymentMethod(self.payment_method) == PaymentMethod.CREDIT and self.customer_id is None:
            raise ValidationError(
                "Credit sales require a customer",
                field="customer_id",
            )


@dataclass(frozen=True)
class DispenseLineRequest:
    prescription_item_id: UUID
    stock_unit_id: UUID
    quantity: int
    # None: use the stock unit's current selling price
    unit_price: Decimal | None = None
    is_substitution: bool = False


@dataclass(frozen=True)
class DispenseRequest:
    prescription_id: UUID
    lines: tuple[DispenseLineRequest, ...]
    pharmacist_id: UUID
    pharmacist_name: str | None = None
    notes: str | None = None
    counseling_provided: bool = False

    def validate(self) -> None:
        if not self.lines:
            raise ValidationError("A dispensing needs at least one line", field="lines")
        for index, line in enumerate(self.lines):
            _require_positive_int(line.quantity, f"lines[{index}].quantity")
            if line.unit_price is not None:
                _require_decimal(line.unit_price, f"lines[{index}].unit_price")
                if line.unit_price < 0:
                    raise ValidationError(
                        "Unit price must not be negative",
                        field=f"lines[{index}].unit_price",
                    )


@dataclass(frozen=True)
class RegisterEntryRequest:
    """
    A stand-alone controlled-substance movement.

    ``context`` is normally a RegisterContext variant.  A plain mapping with
    a ``transaction_type`` key is also accepted; it is turned into the
    matching variant inside the settlement boundary, so missing fields
    come back as a VALIDATION_ERROR result.
    """

    stock_unit_id: UUID
    context: RegisterContext | Mapping[str, Any]
    recorded_by_id: UUID
    quantity_in: int = 0
    quantity_out: int = 0
    recorded_by_name: str | None = None


@dataclass(frozen=True)
class PrescriptionItemSpec:
    product_name: str
    quantity_prescribed: int
    # Prescribed stock unit; None when only the product is named
    stock_unit_id: UUID | None = None
    dosage: str | None = None
    substitution_allowed: bool = False


@dataclass(frozen=True)
class NewStockUnitSpec:
    """Goods received for a batch that may not exist yet."""

    product_name: str
    batch_number: str
    expiry_date: date
    unit_price: Decimal | None = None
    generic_name: str | None = None
    schedule_class: str | None = None


@dataclass(frozen=True)
class ReceiveStockRequest:
    quantity: int
    unit_cost: Decimal
    received_by_id: UUID
    stock_unit_id: UUID | None = None
    new_unit: NewStockUnitSpec | None = None
    supplier_name: str | None = None
    supplier_license: str | None = None
    reference: str | None = None
    received_by_name: str | None = None

    def validate(self) -> None:
        if (self.stock_unit_id is None) == (self.new_unit is None):
            raise ValidationError(
                "Provide exactly one of stock_unit_id or new_unit",
                field="stock_unit_id",
            )
        _require_positive_int(self.quantity, "quantity")
        _require_decimal(self.unit_cost, "unit_cost")
        if self.unit_cost < 0:
            raise ValidationError("Unit cost must not be negative", field="unit_cost")
        if self.new_unit is not None:
            if not self.new_unit.product_name or not self.new_unit.product_name.strip():
                raise ValidationError("product_name is required", field="new_unit.product_name")
            if not self.new_unit.batch_number or not self.new_unit.batch_number.strip():
                raise ValidationError("batch_number is required", field="new_unit.batch_number")
            if self.new_unit.unit_price is not None:
                _require_decimal(self.new_unit.unit_price, "new_unit.unit_price")
                if self.new_unit.unit_price < 0:
                    raise ValidationError(
                        "Unit price must not be negative",
                        field="new_unit.unit_price",
                    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SaleReceipt:
    sale_id: UUID
    invoice_number: str
    line_totals: tuple[Decimal, ...]
    subtotal: Decimal
    discount: Decimal
    points_discount: Decimal
    total: Decimal
    loyalty_points_earned: int
    loyalty_points_redeemed: int
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    customer_id: UUID | None = None
    register_entry_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class VoidReceipt:
    void_id: UUID
    sale_id: UUID
    invoice_number: str
    points_reversed: int
    points_refunded: int
    credit_reversed: Decimal
    register_entry_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class DispensedLine:
    prescription_item_id: UUID
    stock_unit_id: UUID
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    is_substitution: bool


@dataclass(frozen=True)
class DispensingRecord:
    event_id: UUID
    prescription_id: UUID
    status: PrescriptionStatus
    total: Decimal
    lines: tuple[DispensedLine, ...]
    register_entry_ids: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class RegisterEntryInfo:
    id: UUID
    entry_number: int
    entry_code: str
    stock_unit_id: UUID
    unit_sequence: int
    transaction_type: RegisterTransactionType
    quantity_in: int
    quantity_out: int
    balance_before: int
    balance_after: int
    product_name: str
    batch_number: str
    schedule_class: str
    occurred_at: datetime
    recorded_by_id: UUID
    patient_name: str | None = None
    prescription_number: str | None = None
    prescriber_name: str | None = None
    supplier_name: str | None = None
    counterparty_name: str | None = None
    witness_name: str | None = None
    reason: str | None = None
    sale_id: UUID | None = None
    dispensing_event_id: UUID | None = None
    verified_by_id: UUID | None = None
    verified_at: datetime | None = None

    @property
    def is_verified(self) -> bool:
        return self.verified_by_id is not None

    @classmethod
    def from_model(cls, model: RegisterEntry) -> RegisterEntryInfo:
        return cls(
            id=model.id,
            entry_number=model.entry_number,
            entry_code=model.entry_code,
            stock_unit_id=model.stock_unit_id,
            unit_sequence=model.unit_sequence,
            transaction_type=RegisterTransactionType(model.transaction_type),
            quantity_in=model.quantity_in,
            quantity_out=model.quantity_out,
            balance_before=model.balance_before,
            balance_after=model.balance_after,
            product_name=model.product_name,
            batch_number=model.batch_number,
            schedule_class=model.schedule_class,
            occurred_at=model.occurred_at,
            recorded_by_id=model.recorded_by_id,
            patient_name=model.patient_name,
            prescription_number=model.prescription_number,
            prescriber_name=model.prescriber_name,
            supplier_name=model.supplier_name,
            counterparty_name=model.counterparty_name,
            witness_name=model.witness_name,
            reason=model.reason,
            sale_id=model.sale_id,
            dispensing_event_id=model.dispensing_event_id,
            verified_by_id=model.verified_by_id,
            verified_at=model.verified_at,
        )


@dataclass(frozen=True)
class StockUnitInfo:
    id: UUID
    product_name: str
    batch_number: str
    expiry_date: date
    unit_price: Decimal
    quantity: int
    schedule_class: str | None
    status: str
    generic_name: str | None = None
    unit_cost: Decimal | None = None

    @property
    def is_controlled(self) -> bool:
        return self.schedule_class is not None

    @classmethod
    def from_model(cls, model: StockUnit) -> StockUnitInfo:
        return cls(
            id=model.id,
            product_name=model.product_name,
            batch_number=model.batch_number,
            expiry_date=model.expiry_date,
            unit_price=model.unit_price,
            quantity=model.quantity,
            schedule_class=model.schedule_class,
            status=str(getattr(model.status, "value", model.status)),
            generic_name=model.generic_name,
            unit_cost=model.unit_cost,
        )


@dataclass(frozen=True)
class CustomerBalances:
    customer_id: UUID
    customer_code: str
    name: str
    loyalty_points: int
    credit_balance: Decimal
    credit_limit: Decimal

    @property
    def available_credit(self) -> Decimal:
        return self.credit_limit - self.credit_balance

    @classmethod
    def from_model(cls, model: Customer) -> CustomerBalances:
        return cls(
            customer_id=model.id,
            customer_code=model.customer_code,
            name=model.name,
            loyalty_points=model.loyalty_points,
            credit_balance=model.credit_balance,
            credit_limit=model.credit_limit,
        )


@dataclass(frozen=True)
class SaleLineInfo:
    line_no: int
    stock_unit_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class SaleInfo:
    id: UUID
    invoice_number: str
    subtotal: Decimal
    discount: Decimal
    points_redeemed: int
    points_discount: Decimal
    total: Decimal
    points_earned: int
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    customer_id: UUID | None
    operator_id: UUID
    occurred_at: datetime
    lines: tuple[SaleLineInfo, ...]
    is_voided: bool = False

    @classmethod
    def from_model(cls, model: SaleTransaction, is_voided: bool = False) -> SaleInfo:
        return cls(
            id=model.id,
            invoice_number=model.invoice_number,
            subtotal=model.subtotal,
            discount=model.discount,
            points_redeemed=model.points_redeemed,
            points_discount=model.points_discount,
            total=model.total,
            points_earned=model.points_earned,
            payment_method=PaymentMethod(model.payment_method),
            payment_status=PaymentStatus(model.payment_status),
            customer_id=model.customer_id,
            operator_id=model.operator_id,
            occurred_at=model.occurred_at,
            lines=tuple(
                SaleLineInfo(
                    line_no=line.line_no,
                    stock_unit_id=line.stock_unit_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in sorted(model.lines, key=lambda x: x.line_no)
            ),
            is_voided=is_voided,
        )


@dataclass(frozen=True)
class PrescriptionItemInfo:
    id: UUID
    line_no: int
    product_name: str
    stock_unit_id: UUID | None
    quantity_prescribed: int
    quantity_dispensed: int
    substitution_allowed: bool

    @property
    def remaining(self) -> int:
        return self.quantity_prescribed - self.quantity_dispensed


@dataclass(frozen=True)
class PrescriptionInfo:
    id: UUID
    prescription_number: str
    patient_name: str
    prescriber_name: str
    expiry_date: date
    status: PrescriptionStatus
    items: tuple[PrescriptionItemInfo, ...]

    @classmethod
    def from_model(cls, model: Prescription) -> PrescriptionInfo:
        return cls(
            id=model.id,
            prescription_number=model.prescription_number,
            patient_name=model.patient_name,
            prescriber_name=model.prescriber_name,
            expiry_date=model.expiry_date,
            status=PrescriptionStatus(model.status),
            items=tuple(
                PrescriptionItemInfo(
                    id=item.id,
                    line_no=item.line_no,
                    product_name=item.product_name,
                    stock_unit_id=item.stock_unit_id,
                    quantity_prescribed=item.quantity_prescribed,
                    quantity_dispensed=item.quantity_dispensed,
                    substitution_allowed=item.substitution_allowed,
                )
                for item in sorted(model.items, key=lambda x: x.line_no)
            ),
        )
