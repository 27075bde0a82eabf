"""
Pricing -- pure sale arithmetic.

Responsibility:
    Computes line totals, subtotal, loyalty discount, total and points
    earned for a cart whose unit prices were captured from locked stock
    rows.  Also detects the first cart line whose cumulative quantity
    exceeds what is on hand.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - sum(line_total) == subtotal.
    - total == max(0, subtotal - discount - points_discount).
    - points_discount <= subtotal - discount (else ValidationError).
    - points earned == floor(total / points_earn_rate), never negative.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from uuid import UUID

from pharmacy_kernel.db.types import ZERO, round_money
from pharmacy_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class PricedLine:
    line_index: int
    stock_unit_id: UUID
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class SaleTotals:
    subtotal: Decimal
    discount: Decimal
    points_redeemed: int
    points_discount: Decimal
    total: Decimal


@dataclass(frozen=True)
class Shortfall:
    """First cart line that cannot be covered by stock on hand."""

    line_index: int
    stock_unit_id: UUID
    requested: int
    available: int


def price_line(line_index: int, stock_unit_id: UUID, quantity: int, unit_price: Decimal) -> PricedLine:
    return PricedLine(
        line_index=line_index,
        stock_unit_id=stock_unit_id,
        quantity=quantity,
        unit_price=unit_price,
        line_total=round_money(unit_price * quantity),
    )


def find_shortfall(
    lines: Sequence[tuple[UUID, int]],
    available: Mapping[UUID, int],
) -> Shortfall | None:
    """
    Return the first line whose cumulative request exceeds availability.

    Quantities accumulate per stock unit, so two lines of 6 against 10 on
    hand fail at the second line.  ``requested`` is the cumulative amount.
    """
    running: dict[UUID, int] = {}
    for index, (stock_unit_id, quantity) in enumerate(lines):
        running[stock_unit_id] = running.get(stock_unit_id, 0) + quantity
        on_hand = available.get(stock_unit_id, 0)
        if running[stock_unit_id] > on_hand:
            return Shortfall(
                line_index=index,
                stock_unit_id=stock_unit_id,
                requested=running[stock_unit_id],
                available=on_hand,
            )
    return None


def compute_totals(
    line_totals: Sequence[Decimal],
    discount: Decimal,
    points_to_redeem: int,
    points_value: Decimal,
) -> SaleTotals:
    """
    Compute the sale totals.

    Raises:
        ValidationError: Negative discount or points, or a points discount
            larger than what remains after the cash discount.
    """
    if discount < 0:
        raise ValidationError("Discount must not be negative", field="discount")
    if points_to_redeem < 0:
        raise ValidationError(
            "Loyalty points to redeem must not be negative",
            field="loyalty_points_to_redeem",
        )

    subtotal = round_money(sum(line_totals, ZERO))
    discount = round_money(discount)
    points_discount = round_money(points_value * points_to_redeem)

    if points_to_redeem and points_discount > subtotal - discount:
        raise ValidationError(
            f"Points discount {points_discount} exceeds payable amount "
            f"{max(subtotal - discount, ZERO)}",
            field="loyalty_points_to_redeem",
        )

    total = max(ZERO, subtotal - discount - points_discount)
    return SaleTotals(
        subtotal=subtotal,
        discount=discount,
        points_redeemed=points_to_redeem,
        points_discount=points_discount,
        total=round_money(total),
    )


def points_earned(total: Decimal, points_earn_rate: Decimal) -> int:
    """floor(total / points_earn_rate); a zero total earns nothing."""
    if total <= 0:
        return 0
    return int((total / points_earn_rate).to_integral_value(rounding=ROUND_FLOOR))
