"""
Dispensing resolver -- pure prescription fulfilment logic.

Responsibility:
    Given a frozen snapshot of a prescription and of stock on hand, computes
    per-item remaining quantities, validates a proposed dispensing against
    those remainders and the chosen stock units, and derives the
    prescription status after a dispensing.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The settlement
    engine builds the snapshot from locked rows, calls validate_dispense(),
    and raises the typed error for the first problem.

Status rules:
    CANCELLED  the prescription was cancelled
    DISPENSED  every item's cumulative dispensed equals prescribed
    EXPIRED    today > expiry_date and not DISPENSED / CANCELLED
    PARTIAL    some but not all quantity dispensed
    PENDING    nothing dispensed yet
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from uuid import UUID

from pharmacy_kernel.domain.dtos import DispenseLineRequest
from pharmacy_kernel.exceptions import (
    InsufficientStockError,
    OverDispenseError,
    PharmacyKernelError,
    PrescriptionItemNotFoundError,
    PrescriptionNotDispensableError,
    StockUnitInactiveError,
    StockUnitNotFoundError,
    SubstitutionNotAllowedError,
)
from pharmacy_kernel.models.prescription import PrescriptionStatus

NOT_DISPENSABLE = frozenset(
    {PrescriptionStatus.DISPENSED, PrescriptionStatus.EXPIRED, PrescriptionStatus.CANCELLED}
)


@dataclass(frozen=True)
class ItemSnapshot:
    item_id: UUID
    quantity_prescribed: int
    quantity_dispensed: int
    substitution_allowed: bool
    # Prescribed stock unit; None when the prescription names only a product
    stock_unit_id: UUID | None = None

    @property
    def remaining(self) -> int:
        return self.quantity_prescribed - self.quantity_dispensed


@dataclass(frozen=True)
class PrescriptionSnapshot:
    prescription_id: UUID
    expiry_date: date
    cancelled: bool
    items: tuple[ItemSnapshot, ...]

    def item(self, item_id: UUID) -> ItemSnapshot | None:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None


@dataclass(frozen=True)
class StockSnapshot:
    stock_unit_id: UUID
    quantity: int
    is_active: bool = True


class DispenseProblemKind(str, Enum):
    NOT_DISPENSABLE = "not_dispensable"
    UNKNOWN_ITEM = "unknown_item"
    OVER_DISPENSE = "over_dispense"
    SUBSTITUTION_NOT_ALLOWED = "substitution_not_allowed"
    UNKNOWN_STOCK_UNIT = "unknown_stock_unit"
    STOCK_UNIT_INACTIVE = "stock_unit_inactive"
    INSUFFICIENT_STOCK = "insufficient_stock"


@dataclass(frozen=True)
class DispenseProblem:
    kind: DispenseProblemKind
    line_index: int | None = None
    item_id: UUID | None = None
    stock_unit_id: UUID | None = None
    requested: int = 0
    # Remaining prescribed quantity or stock on hand, depending on kind
    limit: int = 0
    status: PrescriptionStatus | None = None


def remaining_quantities(snapshot: PrescriptionSnapshot) -> dict[UUID, int]:
    """Per-item quantity still to be dispensed."""
    return {item.item_id: item.remaining for item in snapshot.items}


def derive_status(snapshot: PrescriptionSnapshot, today: date) -> PrescriptionStatus:
    if snapshot.cancelled:
        return PrescriptionStatus.CANCELLED
    if snapshot.items and all(item.remaining == 0 for item in snapshot.items):
        return PrescriptionStatus.DISPENSED
    if today > snapshot.expiry_date:
        return PrescriptionStatus.EXPIRED
    if any(item.quantity_dispensed > 0 for item in snapshot.items):
        return PrescriptionStatus.PARTIAL
    return PrescriptionStatus.PENDING


def is_substitution(item: ItemSnapshot, line: DispenseLineRequest) -> bool:
    """A line substitutes when flagged, or when it uses another stock unit than prescribed."""
    if line.is_substitution:
        return True
    return item.stock_unit_id is not None and line.stock_unit_id != item.stock_unit_id


def validate_dispense(
    snapshot: PrescriptionSnapshot,
    lines: Sequence[DispenseLineRequest],
    stock: Mapping[UUID, StockSnapshot],
    today: date,
) -> list[DispenseProblem]:
    """
    Check a proposed dispensing against the prescription and stock.

    Quantities accumulate across lines, both per prescription item and per
    stock unit, so splitting one item over several lines cannot exceed the
    prescribed quantity or the stock on hand.

    Returns:
        Problems in line order; empty when the dispensing may proceed.
    """
    status = derive_status(snapshot, today)
    if status in NOT_DISPENSABLE:
        return [DispenseProblem(kind=DispenseProblemKind.NOT_DISPENSABLE, status=status)]

    problems: list[DispenseProblem] = []
    per_item: dict[UUID, int] = {}
    per_unit: dict[UUID, int] = {}

    for index, line in enumerate(lines):
        item = snapshot.item(line.prescription_item_id)
        if item is None:
            problems.append(
                DispenseProblem(
                    kind=DispenseProblemKind.UNKNOWN_ITEM,
                    line_index=index,
                    item_id=line.prescription_item_id,
                )
            )
            continue

        per_item[item.item_id] = per_item.get(item.item_id, 0) + line.quantity
        if per_item[item.item_id] > item.remaining:
            problems.append(
                DispenseProblem(
                    kind=DispenseProblemKind.OVER_DISPENSE,
                    line_index=index,
                    item_id=item.item_id,
                    requested=per_item[item.item_id],
                    limit=item.remaining,
                )
            )

        if is_substitution(item, line) and not item.substitution_allowed:
            problems.append(
                DispenseProblem(
                    kind=DispenseProblemKind.SUBSTITUTION_NOT_ALLOWED,
                    line_index=index,
                    item_id=item.item_id,
                    stock_unit_id=line.stock_unit_id,
                )
            )

        unit = stock.get(line.stock_unit_id)
        if unit is None:
            problems.append(
                DispenseProblem(
                    kind=DispenseProblemKind.UNKNOWN_STOCK_UNIT,
                    line_index=index,
                    stock_unit_id=line.stock_unit_id,
                )
            )
            continue
        if not unit.is_active:
            problems.append(
                DispenseProblem(
                    kind=DispenseProblemKind.STOCK_UNIT_INACTIVE,
                    line_index=index,
                    stock_unit_id=line.stock_unit_id,
                )
            )
            continue

        per_unit[unit.stock_unit_id] = per_unit.get(unit.stock_unit_id, 0) + line.quantity
        if per_unit[unit.stock_unit_id] > unit.quantity:
            problems.append(
                DispenseProblem(
                    kind=DispenseProblemKind.INSUFFICIENT_STOCK,
                    line_index=index,
                    stock_unit_id=unit.stock_unit_id,
                    requested=per_unit[unit.stock_unit_id],
                    limit=unit.quantity,
                )
            )

    return problems


def apply_dispense(
    snapshot: PrescriptionSnapshot,
    lines: Sequence[DispenseLineRequest],
) -> PrescriptionSnapshot:
    """Snapshot after the (already validated) lines are dispensed."""
    added: dict[UUID, int] = {}
    for line in lines:
        added[line.prescription_item_id] = added.get(line.prescription_item_id, 0) + line.quantity
    return replace(
        snapshot,
        items=tuple(
            replace(item, quantity_dispensed=item.quantity_dispensed + added.get(item.item_id, 0))
            for item in snapshot.items
        ),
    )


def problem_to_error(snapshot: PrescriptionSnapshot, problem: DispenseProblem) -> PharmacyKernelError:
    """Typed exception for a dispensing problem."""
    kind = problem.kind
    if kind == DispenseProblemKind.NOT_DISPENSABLE:
        return PrescriptionNotDispensableError(str(snapshot.prescription_id), problem.status.value)
    if kind == DispenseProblemKind.UNKNOWN_ITEM:
        return PrescriptionItemNotFoundError(
            str(snapshot.prescription_id), str(problem.item_id), problem.line_index
        )
    if kind == DispenseProblemKind.OVER_DISPENSE:
        return OverDispenseError(
            str(problem.item_id), problem.requested, problem.limit, problem.line_index
        )
    if kind == DispenseProblemKind.SUBSTITUTION_NOT_ALLOWED:
        return SubstitutionNotAllowedError(str(problem.item_id), problem.line_index)
    if kind == DispenseProblemKind.UNKNOWN_STOCK_UNIT:
        return StockUnitNotFoundError(str(problem.stock_unit_id), problem.line_index)
    if kind == DispenseProblemKind.STOCK_UNIT_INACTIVE:
        return StockUnitInactiveError(str(problem.stock_unit_id), problem.line_index)
    return InsufficientStockError(
        str(problem.stock_unit_id), problem.requested, problem.limit, problem.line_index
    )
