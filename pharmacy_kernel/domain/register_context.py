"""
Register context -- the per-type payload of a controlled-substance entry.

Responsibility:
    Models the conditional context fields of a register entry as a tagged
    union: one frozen dataclass per transaction type.  Each variant declares
    the fields its type requires and the direction its quantity may move,
    and rejects incomplete data at construction.  A RegisterContext that
    exists is therefore always a complete one.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Variants:
    ReceiptContext       RECEIPT       in    supplier_name
    TransferInContext    TRANSFER_IN   in    supplier_name
    ReturnContext        RETURN        in    patient_name
    SaleContext          SALE          out   patient_name
    TransferOutContext   TRANSFER_OUT  out   counterparty_name
    DestructionContext   DESTRUCTION   out   witness_name, witness_role,
                                             destruction_method
    AdjustmentContext    ADJUSTMENT    either reason

Failure modes:
    - MissingRegisterContextError when a required field is absent or blank.
    - ValidationError from check_quantities() when the movement does not
      match the variant's direction.
"""

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import ClassVar, Union

from pharmacy_kernel.exceptions import MissingRegisterContextError, ValidationError
from pharmacy_kernel.models.register import RegisterTransactionType


class Direction(str, Enum):
    IN = "in"
    OUT = "out"
    EITHER = "either"


def _missing(obj, names: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(
        name for name in names
        if getattr(obj, name) is None or not str(getattr(obj, name)).strip()
    )


@dataclass(frozen=True)
class _BaseContext:
    transaction_type: ClassVar[RegisterTransactionType]
    direction: ClassVar[Direction]
    required: ClassVar[tuple[str, ...]] = ()

    def __post_init__(self) -> None:
        missing = _missing(self, self.required)
        if missing:
            raise MissingRegisterContextError(self.transaction_type.value, missing)

    def check_quantities(self, quantity_in: int, quantity_out: int) -> None:
        """
        Validate the movement against this variant's direction.

        Exactly one of quantity_in / quantity_out is positive and the other
        is zero.
        """
        if quantity_in < 0 or quantity_out < 0:
            raise ValidationError("Register quantities must not be negative", field="quantity")
        if (quantity_in > 0) == (quantity_out > 0):
            raise ValidationError(
                "Exactly one of quantity_in and quantity_out must be positive",
                field="quantity",
            )
        if self.direction == Direction.IN and quantity_out:
            raise ValidationError(
                f"{self.transaction_type.value} entries only record quantity_in",
                field="quantity_out",
            )
        if self.direction == Direction.OUT and quantity_in:
            raise ValidationError(
                f"{self.transaction_type.value} entries only record quantity_out",
                field="quantity_in",
            )

    def to_columns(self) -> dict:
        """Column values for RegisterEntry (field names match the model)."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def as_dict(self) -> dict:
        data = asdict(self)
        data["transaction_type"] = self.transaction_type.value
        return data


@dataclass(frozen=True)
class ReceiptContext(_BaseContext):
    supplier_name: str
    supplier_license: str | None = None
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.RECEIPT
    direction: ClassVar = Direction.IN
    required: ClassVar = ("supplier_name",)


@dataclass(frozen=True)
class TransferInContext(_BaseContext):
    supplier_name: str
    supplier_license: str | None = None
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.TRANSFER_IN
    direction: ClassVar = Direction.IN
    required: ClassVar = ("supplier_name",)


@dataclass(frozen=True)
class SaleContext(_BaseContext):
    patient_name: str
    patient_id: str | None = None
    prescription_number: str | None = None
    prescriber_name: str | None = None
    prescriber_reg_no: str | None = None
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.SALE
    direction: ClassVar = Direction.OUT
    required: ClassVar = ("patient_name",)


@dataclass(frozen=True)
class ReturnContext(_BaseContext):
    patient_name: str
    patient_id: str | None = None
    prescription_number: str | None = None
    prescriber_name: str | None = None
    prescriber_reg_no: str | None = None
    reason: str | None = None
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.RETURN
    direction: ClassVar = Direction.IN
    required: ClassVar = ("patient_name",)


@dataclass(frozen=True)
class TransferOutContext(_BaseContext):
    counterparty_name: str
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.TRANSFER_OUT
    direction: ClassVar = Direction.OUT
    required: ClassVar = ("counterparty_name",)


@dataclass(frozen=True)
class AdjustmentContext(_BaseContext):
    reason: str
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.ADJUSTMENT
    direction: ClassVar = Direction.EITHER
    required: ClassVar = ("reason",)


@dataclass(frozen=True)
class DestructionContext(_BaseContext):
    witness_name: str
    witness_role: str
    destruction_method: str
    reason: str | None = None
    notes: str | None = None

    transaction_type: ClassVar = RegisterTransactionType.DESTRUCTION
    direction: ClassVar = Direction.OUT
    required: ClassVar = ("witness_name", "witness_role", "destruction_method")


RegisterContext = Union[
    ReceiptContext,
    TransferInContext,
    SaleContext,
    ReturnContext,
    TransferOutContext,
    AdjustmentContext,
    DestructionContext,
]

CONTEXT_TYPES: dict[RegisterTransactionType, type] = {
    ctx.transaction_type: ctx
    for ctx in (
        ReceiptContext,
        TransferInContext,
        SaleContext,
        ReturnContext,
        TransferOutContext,
        AdjustmentContext,
        DestructionContext,
    )
}


def build_context(transaction_type: RegisterTransactionType | str, **values) -> RegisterContext:
    """
    Build the context variant for a transaction type from loose keyword data.

    Unknown keys are ignored so a flat form payload can be passed through.

    Raises:
        ValidationError: Unknown transaction type.
        MissingRegisterContextError: Required field absent for that type.
    """
    try:
        tx_type = RegisterTransactionType(transaction_type)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown register transaction type: {transaction_type!r}",
            field="transaction_type",
        ) from exc
    cls = CONTEXT_TYPES[tx_type]
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in values.items() if k in names}
    for name in cls.required:
        kwargs.setdefault(name, None)
    return cls(**kwargs)
