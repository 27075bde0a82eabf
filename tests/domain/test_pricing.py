"""
Tests for the pure sale arithmetic (pharmacy_kernel/domain/pricing.py).

Property tests cover the totals identities over arbitrary carts; the
example tests pin the worked scenarios (two lines, loyalty redemption,
cumulative shortfall).
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pharmacy_kernel.domain.pricing import (
    compute_totals,
    find_shortfall,
    points_earned,
    price_line,
)
from pharmacy_kernel.exceptions import ValidationError

prices = st.decimals(
    min_value=Decimal("0.00"),
    max_value=Decimal("99999.99"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
quantities = st.integers(min_value=1, max_value=500)


class TestPriceLine:
    def test_line_total_is_price_times_quantity(self):
        line = price_line(0, uuid4(), 3, Decimal("12.50"))
        assert line.line_total == Decimal("37.50")

    def test_line_total_rounded_to_cents(self):
        line = price_line(0, uuid4(), 3, Decimal("0.333"))
        assert line.line_total == Decimal("1.00")

    @given(unit_price=prices, quantity=quantities)
    def test_line_total_never_negative(self, unit_price, quantity):
        assert price_line(0, uuid4(), quantity, unit_price).line_total >= 0


class TestComputeTotals:
    def test_two_line_cash_sale(self):
        totals = compute_totals(
            [Decimal("25.00"), Decimal("45.00")], Decimal("0"), 0, Decimal("1")
        )
        assert totals.subtotal == Decimal("70.00")
        assert totals.total == Decimal("70.00")
        assert totals.points_discount == Decimal("0.00")

    def test_points_discount_reduces_total(self):
        totals = compute_totals([Decimal("150.00")], Decimal("0"), 50, Decimal("1"))
        assert totals.points_discount == Decimal("50.00")
        assert totals.total == Decimal("100.00")
        assert totals.points_redeemed == 50

    def test_cash_discount_and_points_together(self):
        totals = compute_totals([Decimal("100.00")], Decimal("20.00"), 30, Decimal("1"))
        assert totals.total == Decimal("50.00")

    def test_points_may_cover_whole_payable_amount(self):
        totals = compute_totals([Decimal("40.00")], Decimal("0"), 40, Decimal("1"))
        assert totals.total == Decimal("0.00")

    def test_points_beyond_payable_amount_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            compute_totals([Decimal("40.00")], Decimal("0"), 41, Decimal("1"))
        assert exc_info.value.field == "loyalty_points_to_redeem"

    def test_discount_larger_than_subtotal_floors_at_zero(self):
        totals = compute_totals([Decimal("10.00")], Decimal("15.00"), 0, Decimal("1"))
        assert totals.total == Decimal("0.00")

    def test_negative_discount_rejected(self):
        with pytest.raises(ValidationError):
            compute_totals([Decimal("10.00")], Decimal("-1"), 0, Decimal("1"))

    def test_negative_points_rejected(self):
        with pytest.raises(ValidationError):
            compute_totals([Decimal("10.00")], Decimal("0"), -1, Decimal("1"))

    @given(
        line_totals=st.lists(prices, min_size=1, max_size=20),
        discount=st.decimals(min_value=Decimal("0"), max_value=Decimal("500"), places=2),
    )
    @settings(max_examples=200)
    def test_subtotal_is_sum_and_total_bounded(self, line_totals, discount):
        totals = compute_totals(line_totals, discount, 0, Decimal("1"))
        assert totals.subtotal == sum(line_totals, Decimal("0"))
        assert Decimal("0") <= totals.total <= totals.subtotal
        assert totals.total == max(Decimal("0"), totals.subtotal - totals.discount)

    @given(
        line_totals=st.lists(prices, min_size=1, max_size=10),
        points=st.integers(min_value=0, max_value=5000),
    )
    @settings(max_examples=200)
    def test_points_discount_never_exceeds_payable(self, line_totals, points):
        subtotal = sum(line_totals, Decimal("0"))
        if Decimal(points) > subtotal:
            with pytest.raises(ValidationError):
                compute_totals(line_totals, Decimal("0"), points, Decimal("1"))
            return
        totals = compute_totals(line_totals, Decimal("0"), points, Decimal("1"))
        assert totals.total == subtotal - Decimal(points)
        assert totals.total >= 0


class TestPointsEarned:
    @pytest.mark.parametrize(
        "total, expected",
        [
            (Decimal("0.00"), 0),
            (Decimal("99.99"), 0),
            (Decimal("100.00"), 1),
            (Decimal("250.00"), 2),
            (Decimal("1000.00"), 10),
        ],
    )
    def test_floor_of_total_over_rate(self, total, expected):
        assert points_earned(total, Decimal("100")) == expected

    @given(total=prices)
    def test_never_negative_and_floor(self, total):
        earned = points_earned(total, Decimal("100"))
        assert earned >= 0
        assert earned * 100 <= total < (earned + 1) * 100


class TestFindShortfall:
    def test_none_when_stock_covers_cart(self):
        unit = uuid4()
        assert find_shortfall([(unit, 5), (unit, 5)], {unit: 10}) is None

    def test_cumulative_quantity_per_unit(self):
        unit = uuid4()
        shortfall = find_shortfall([(unit, 6), (unit, 6)], {unit: 10})
        assert shortfall is not None
        assert shortfall.line_index == 1
        assert shortfall.requested == 12
        assert shortfall.available == 10

    def test_first_failing_line_reported(self):
        a, b = uuid4(), uuid4()
        shortfall = find_shortfall([(a, 1), (b, 3), (a, 1)], {a: 5, b: 2})
        assert shortfall.line_index == 1
        assert shortfall.stock_unit_id == b

    def test_unknown_unit_counts_as_zero(self):
        unit = uuid4()
        shortfall = find_shortfall([(unit, 1)], {})
        assert shortfall.available == 0

    @given(
        on_hand=st.integers(min_value=0, max_value=50),
        requests=st.lists(st.integers(min_value=1, max_value=20), min_size=1, max_size=8),
    )
    def test_shortfall_iff_total_exceeds_on_hand(self, on_hand, requests):
        unit = uuid4()
        shortfall = find_shortfall([(unit, q) for q in requests], {unit: on_hand})
        assert (shortfall is None) == (sum(requests) <= on_hand)
