"""
Tests for the pure dispensing resolver (pharmacy_kernel/domain/dispensing.py).

Covers status derivation, the cumulative over-dispense bound, substitution
rules and stock checks, without a database.
"""

from datetime import date, timedelta
from uuid import uuid4

from hypothesis import given
from hypothesis import strategies as st

from pharmacy_kernel.domain.dispensing import (
    DispenseProblemKind,
    ItemSnapshot,
    PrescriptionSnapshot,
    StockSnapshot,
    apply_dispense,
    derive_status,
    is_substitution,
    problem_to_error,
    remaining_quantities,
    validate_dispense,
)
from pharmacy_kernel.domain.dtos import DispenseLineRequest
from pharmacy_kernel.exceptions import (
    InsufficientStockError,
    OverDispenseError,
    PrescriptionNotDispensableError,
    SubstitutionNotAllowedError,
)
from pharmacy_kernel.models.prescription import PrescriptionStatus

TODAY = date(2026, 3, 15)


def _snapshot(*items: ItemSnapshot, expiry=TODAY + timedelta(days=30), cancelled=False):
    return PrescriptionSnapshot(
        prescription_id=uuid4(),
        expiry_date=expiry,
        cancelled=cancelled,
        items=tuple(items),
    )


def _item(prescribed=20, dispensed=0, substitution_allowed=False, stock_unit_id=None):
    return ItemSnapshot(
        item_id=uuid4(),
        quantity_prescribed=prescribed,
        quantity_dispensed=dispensed,
        substitution_allowed=substitution_allowed,
        stock_unit_id=stock_unit_id,
    )


class TestDeriveStatus:
    def test_pending_when_nothing_dispensed(self):
        assert derive_status(_snapshot(_item()), TODAY) == PrescriptionStatus.PENDING

    def test_partial(self):
        assert derive_status(_snapshot(_item(dispensed=5)), TODAY) == PrescriptionStatus.PARTIAL

    def test_dispensed_when_every_item_complete(self):
        snapshot = _snapshot(_item(dispensed=20), _item(prescribed=10, dispensed=10))
        assert derive_status(snapshot, TODAY) == PrescriptionStatus.DISPENSED

    def test_expired_after_expiry_date(self):
        snapshot = _snapshot(_item(dispensed=5), expiry=TODAY - timedelta(days=1))
        assert derive_status(snapshot, TODAY) == PrescriptionStatus.EXPIRED

    def test_valid_on_expiry_date_itself(self):
        snapshot = _snapshot(_item(), expiry=TODAY)
        assert derive_status(snapshot, TODAY) == PrescriptionStatus.PENDING

    def test_fully_dispensed_stays_dispensed_after_expiry(self):
        snapshot = _snapshot(_item(dispensed=20), expiry=TODAY - timedelta(days=1))
        assert derive_status(snapshot, TODAY) == PrescriptionStatus.DISPENSED

    def test_cancelled_wins(self):
        snapshot = _snapshot(_item(dispensed=20), cancelled=True)
        assert derive_status(snapshot, TODAY) == PrescriptionStatus.CANCELLED


class TestValidateDispense:
    def test_valid_partial_dispense(self):
        unit = uuid4()
        item = _item(stock_unit_id=unit)
        snapshot = _snapshot(item)
        lines = [DispenseLineRequest(item.item_id, unit, 10)]
        stock = {unit: StockSnapshot(unit, 100)}

        assert validate_dispense(snapshot, lines, stock, TODAY) == []
        after = apply_dispense(snapshot, lines)
        assert derive_status(after, TODAY) == PrescriptionStatus.PARTIAL
        assert remaining_quantities(after) == {item.item_id: 10}

    def test_second_dispense_completes(self):
        unit = uuid4()
        item = _item(dispensed=10, stock_unit_id=unit)
        snapshot = _snapshot(item)
        lines = [DispenseLineRequest(item.item_id, unit, 10)]

        assert validate_dispense(snapshot, lines, {unit: StockSnapshot(unit, 50)}, TODAY) == []
        assert derive_status(apply_dispense(snapshot, lines), TODAY) == PrescriptionStatus.DISPENSED

    def test_over_dispense_across_split_lines(self):
        unit = uuid4()
        item = _item(prescribed=20, dispensed=10, stock_unit_id=unit)
        snapshot = _snapshot(item)
        lines = [
            DispenseLineRequest(item.item_id, unit, 6),
            DispenseLineRequest(item.item_id, unit, 6),
        ]

        problems = validate_dispense(snapshot, lines, {unit: StockSnapshot(unit, 100)}, TODAY)
        assert [p.kind for p in problems] == [DispenseProblemKind.OVER_DISPENSE]
        assert problems[0].line_index == 1
        assert problems[0].requested == 12
        assert problems[0].limit == 10

        error = problem_to_error(snapshot, problems[0])
        assert isinstance(error, OverDispenseError)
        assert error.code == "OVER_DISPENSE"

    def test_dispensed_prescription_not_dispensable(self):
        unit = uuid4()
        item = _item(dispensed=20, stock_unit_id=unit)
        snapshot = _snapshot(item)
        problems = validate_dispense(
            snapshot, [DispenseLineRequest(item.item_id, unit, 1)], {unit: StockSnapshot(unit, 5)}, TODAY
        )
        assert problems[0].kind == DispenseProblemKind.NOT_DISPENSABLE
        assert isinstance(problem_to_error(snapshot, problems[0]), PrescriptionNotDispensableError)

    def test_expired_prescription_not_dispensable(self):
        unit = uuid4()
        item = _item(stock_unit_id=unit)
        snapshot = _snapshot(item, expiry=TODAY - timedelta(days=1))
        problems = validate_dispense(
            snapshot, [DispenseLineRequest(item.item_id, unit, 1)], {unit: StockSnapshot(unit, 5)}, TODAY
        )
        assert problems[0].status == PrescriptionStatus.EXPIRED

    def test_unknown_item(self):
        unit = uuid4()
        snapshot = _snapshot(_item(stock_unit_id=unit))
        problems = validate_dispense(
            snapshot, [DispenseLineRequest(uuid4(), unit, 1)], {unit: StockSnapshot(unit, 5)}, TODAY
        )
        assert problems[0].kind == DispenseProblemKind.UNKNOWN_ITEM

    def test_substitution_refused_when_not_allowed(self):
        prescribed_unit, other_unit = uuid4(), uuid4()
        item = _item(stock_unit_id=prescribed_unit, substitution_allowed=False)
        snapshot = _snapshot(item)
        problems = validate_dispense(
            snapshot,
            [DispenseLineRequest(item.item_id, other_unit, 5)],
            {other_unit: StockSnapshot(other_unit, 50)},
            TODAY,
        )
        assert [p.kind for p in problems] == [DispenseProblemKind.SUBSTITUTION_NOT_ALLOWED]
        assert isinstance(problem_to_error(snapshot, problems[0]), SubstitutionNotAllowedError)

    def test_substitution_allowed(self):
        prescribed_unit, other_unit = uuid4(), uuid4()
        item = _item(stock_unit_id=prescribed_unit, substitution_allowed=True)
        line = DispenseLineRequest(item.item_id, other_unit, 5)
        assert validate_dispense(
            _snapshot(item), [line], {other_unit: StockSnapshot(other_unit, 50)}, TODAY
        ) == []
        assert is_substitution(item, line)

    def test_product_only_item_is_not_a_substitution(self):
        item = _item(stock_unit_id=None)
        assert not is_substitution(item, DispenseLineRequest(item.item_id, uuid4(), 1))

    def test_insufficient_stock(self):
        unit = uuid4()
        item = _item(stock_unit_id=unit)
        snapshot = _snapshot(item)
        problems = validate_dispense(
            snapshot, [DispenseLineRequest(item.item_id, unit, 8)], {unit: StockSnapshot(unit, 5)}, TODAY
        )
        assert problems[0].kind == DispenseProblemKind.INSUFFICIENT_STOCK
        error = problem_to_error(snapshot, problems[0])
        assert isinstance(error, InsufficientStockError)
        assert error.available == 5

    def test_inactive_stock_unit(self):
        unit = uuid4()
        item = _item(stock_unit_id=unit)
        problems = validate_dispense(
            _snapshot(item),
            [DispenseLineRequest(item.item_id, unit, 1)],
            {unit: StockSnapshot(unit, 5, is_active=False)},
            TODAY,
        )
        assert problems[0].kind == DispenseProblemKind.STOCK_UNIT_INACTIVE

    @given(
        prescribed=st.integers(min_value=1, max_value=100),
        dispensed=st.integers(min_value=0, max_value=100),
        requests=st.lists(st.integers(min_value=1, max_value=40), min_size=1, max_size=5),
    )
    def test_accepted_dispensing_never_exceeds_prescribed(self, prescribed, dispensed, requests):
        dispensed = min(dispensed, prescribed - 1)
        unit = uuid4()
        item = _item(prescribed=prescribed, dispensed=dispensed, stock_unit_id=unit)
        snapshot = _snapshot(item)
        lines = [DispenseLineRequest(item.item_id, unit, q) for q in requests]

        problems = validate_dispense(snapshot, lines, {unit: StockSnapshot(unit, 10_000)}, TODAY)
        if problems:
            assert dispensed + sum(requests) > prescribed
        else:
            after = apply_dispense(snapshot, lines)
            assert 0 <= after.items[0].quantity_dispensed <= prescribed
