"""
Tests for SettlementEngine sales, voids and transaction handling.

Every rejected settlement is checked for zero side effects: stock, customer
balances, sale rows, sequence counters and the audit trail are exactly as
they were before the call.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from pharmacy_kernel.domain.dtos import CartLine, SaleRequest, SettlementStatus
from pharmacy_kernel.exceptions import ConcurrencyConflictError, StorageFaultError
from pharmacy_kernel.models.audit_event import AuditAction, AuditEvent
from pharmacy_kernel.models.customer import LoyaltyTransactionType
from pharmacy_kernel.models.register import RegisterEntry, RegisterTransactionType
from pharmacy_kernel.models.sale import PaymentMethod, PaymentStatus, SaleTransaction, SaleVoid
from pharmacy_kernel.models.stock_unit import StockUnit, StockUnitStatus
from pharmacy_kernel.selectors.customer_selector import CustomerSelector
from pharmacy_kernel.selectors.register_selector import RegisterSelector
from pharmacy_kernel.selectors.sale_selector import SaleSelector
from pharmacy_kernel.selectors.stock_selector import StockSelector
from pharmacy_kernel.services.auditor_service import AuditorService
from pharmacy_kernel.services.controlled_register import ControlledRegisterService
from pharmacy_kernel.services.customer_ledger import CustomerLedgerService
from pharmacy_kernel.services.customer_service import CustomerService
from pharmacy_kernel.services.settlement_engine import SettlementEngine, translate_db_error


def _count(session, model) -> int:
    return session.scalar(select(func.count()).select_from(model))


def _quantity(session, unit_id) -> int:
    return StockSelector(session).get(unit_id).quantity


def _request(operator_id, *lines, payment_method=PaymentMethod.CASH, **kwargs) -> SaleRequest:
    return SaleRequest(
        lines=tuple(CartLine(unit_id, quantity) for unit_id, quantity in lines),
        payment_method=payment_method,
        operator_id=operator_id,
        **kwargs,
    )


class TestCashSales:
    def test_whole_stock_sold_then_second_sale_rejected(
        self, settlement_engine, make_stock_unit, session, operator_id
    ):
        unit = make_stock_unit(quantity=10, unit_price=Decimal("100.00"))

        first = settlement_engine.settle_sale(_request(operator_id, (unit.id, 10)))
        assert first.status == SettlementStatus.COMPLETED
        assert first.value.total == Decimal("1000.00")
        assert first.value.line_totals == (Decimal("1000.00"),)
        assert first.value.invoice_number == "INV-20260315-0001"
        assert first.value.payment_status == PaymentStatus.PAID
        assert _quantity(session, unit.id) == 0

        second = settlement_engine.settle_sale(_request(operator_id, (unit.id, 10)))
        assert second.status == SettlementStatus.REJECTED
        assert second.error_code == "INSUFFICIENT_STOCK"
        assert second.details["requested"] == 10
        assert second.details["available"] == 0
        assert second.details["line_index"] == 0
        assert not second.is_retryable
        assert _count(session, SaleTransaction) == 1

    def test_two_line_totals_and_invoice_sequence(self, settlement_engine, make_stock_unit, operator_id):
        a = make_stock_unit(unit_price=Decimal("12.50"))
        b = make_stock_unit(product_name="Ibuprofen 400mg", unit_price=Decimal("8.00"))

        receipt = settlement_engine.settle_sale(_request(operator_id, (a.id, 2), (b.id, 3))).value
        assert receipt.line_totals == (Decimal("25.00"), Decimal("24.00"))
        assert receipt.subtotal == Decimal("49.00")
        assert receipt.total == Decimal("49.00")

        again = settlement_engine.settle_sale(_request(operator_id, (a.id, 1))).value
        assert again.invoice_number == "INV-20260315-0002"

    def test_discount_applied(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit(unit_price=Decimal("50.00"))
        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 2), discount=Decimal("15.00"))
        ).value
        assert receipt.discount == Decimal("15.00")
        assert receipt.total == Decimal("85.00")

    def test_price_captured_from_stock_row(self, settlement_engine, make_stock_unit, session, operator_id):
        unit = make_stock_unit(unit_price=Decimal("12.50"))
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1))).value

        sale = SaleSelector(session).get(receipt.sale_id)
        assert sale.lines[0].unit_price == Decimal("12.50")
        assert sale.lines[0].product_name == "Paracetamol 500mg"

    def test_walk_in_sale_earns_no_points(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit(unit_price=Decimal("500.00"))
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1))).value
        assert receipt.loyalty_points_earned == 0

    def test_unknown_stock_unit(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit()
        missing = uuid4()
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1), (missing, 1)))
        assert result.error_code == "STOCK_UNIT_NOT_FOUND"
        assert result.details["line_index"] == 1

    def test_inactive_stock_unit(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit(status=StockUnitStatus.INACTIVE)
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1)))
        assert result.error_code == "STOCK_UNIT_INACTIVE"

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"discount": 1.5}, "discount"),
            ({"discount": Decimal("-1")}, "discount"),
            ({"loyalty_points_to_redeem": 10}, "customer_id"),
            ({"payment_method": PaymentMethod.CREDIT}, "customer_id"),
            ({"payment_method": "cheque"}, "payment_method"),
        ],
    )
    def test_malformed_request_is_validation_error(
        self, settlement_engine, make_stock_unit, session, operator_id, kwargs, field
    ):
        unit = make_stock_unit(quantity=5)
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1), **kwargs))
        assert result.status == SettlementStatus.REJECTED
        assert result.error_code == "VALIDATION_ERROR"
        assert result.details["field"] == field
        assert _quantity(session, unit.id) == 5

    def test_empty_cart(self, settlement_engine, operator_id):
        result = settlement_engine.settle_sale(_request(operator_id))
        assert result.error_code == "VALIDATION_ERROR"

    def test_non_positive_quantity(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit()
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 0)))
        assert result.error_code == "VALIDATION_ERROR"
        assert result.details["field"] == "lines[0].quantity"


class TestCustomerSales:
    def test_points_earned_on_total(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        customer = make_customer()
        unit = make_stock_unit(unit_price=Decimal("125.00"))

        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 2), customer_id=customer.id)
        ).value
        assert receipt.total == Decimal("250.00")
        assert receipt.loyalty_points_earned == 2

        balances = CustomerSelector(session).balances(customer.id)
        assert balances.loyalty_points == 2
        history = CustomerSelector(session).loyalty_history(customer.id)
        assert [row.transaction_type for row in history] == [LoyaltyTransactionType.EARN]

    def test_redeem_points(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        customer = make_customer(opening_points=100)
        unit = make_stock_unit(unit_price=Decimal("150.00"))

        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), customer_id=customer.id, loyalty_points_to_redeem=50)
        ).value
        assert receipt.points_discount == Decimal("50.00")
        assert receipt.total == Decimal("100.00")
        assert receipt.loyalty_points_redeemed == 50
        assert receipt.loyalty_points_earned == 1
        assert CustomerSelector(session).balances(customer.id).loyalty_points == 51
        assert CustomerLedgerService(session).verify_projection(customer.id)

    def test_redeeming_more_points_than_held_changes_nothing(
        self, settlement_engine, make_stock_unit, make_customer, session, operator_id
    ):
        customer = make_customer(opening_points=100)
        unit = make_stock_unit(quantity=10, unit_price=Decimal("100.00"))
        audit_before = _count(session, AuditEvent)

        result = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 10), customer_id=customer.id, loyalty_points_to_redeem=150)
        )
        assert result.status == SettlementStatus.REJECTED
        assert result.error_code == "INSUFFICIENT_POINTS"
        assert result.details["requested"] == 150
        assert result.details["available"] == 100

        assert _quantity(session, unit.id) == 10
        assert CustomerSelector(session).balances(customer.id).loyalty_points == 100
        assert _count(session, SaleTransaction) == 0
        assert _count(session, AuditEvent) == audit_before

    def test_credit_limit_exceeded_changes_nothing(
        self, settlement_engine, make_stock_unit, make_customer, session, operator_id
    ):
        customer = make_customer(credit_limit=Decimal("10000.00"), opening_credit=Decimal("8000.00"))
        unit = make_stock_unit(quantity=5, unit_price=Decimal("3000.00"))

        result = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), payment_method=PaymentMethod.CREDIT, customer_id=customer.id)
        )
        assert result.error_code == "CREDIT_LIMIT_EXCEEDED"
        assert result.details["resulting_balance"] == Decimal("11000.00")
        assert result.details["credit_limit"] == Decimal("10000.00")

        assert _quantity(session, unit.id) == 5
        assert CustomerSelector(session).balances(customer.id).credit_balance == Decimal("8000.00")
        assert _count(session, SaleTransaction) == 0

    def test_credit_sale_charges_balance(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        customer = make_customer(credit_limit=Decimal("1000.00"))
        unit = make_stock_unit(unit_price=Decimal("300.00"))

        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), payment_method=PaymentMethod.CREDIT, customer_id=customer.id)
        ).value
        assert receipt.payment_status == PaymentStatus.PENDING

        balances = CustomerSelector(session).balances(customer.id)
        assert balances.credit_balance == Decimal("300.00")
        assert balances.available_credit == Decimal("700.00")
        assert CustomerLedgerService(session).verify_projection(customer.id)

    def test_credit_sale_up_to_exact_limit(self, settlement_engine, make_stock_unit, make_customer, operator_id):
        customer = make_customer(credit_limit=Decimal("300.00"))
        unit = make_stock_unit(unit_price=Decimal("300.00"))
        result = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), payment_method=PaymentMethod.CREDIT, customer_id=customer.id)
        )
        assert result.is_success

    def test_unknown_customer(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit()
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1), customer_id=uuid4()))
        assert result.error_code == "CUSTOMER_NOT_FOUND"

    def test_inactive_customer(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        customer = make_customer()
        CustomerService(session).deactivate(customer.id, operator_id)
        session.commit()
        unit = make_stock_unit()
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1), customer_id=customer.id))
        assert result.error_code == "CUSTOMER_INACTIVE"


class TestControlledSales:
    def test_controlled_line_needs_patient_identification(
        self, settlement_engine, make_controlled_unit, session, operator_id
    ):
        unit = make_controlled_unit(quantity=20)
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 5)))
        assert result.error_code == "VALIDATION_ERROR"
        assert result.details["field"] == "controlled_context"
        assert _quantity(session, unit.id) == 20
        assert RegisterSelector(session).current_balance(unit.id) == 20

    def test_controlled_sale_appends_register_entry(
        self, settlement_engine, make_controlled_unit, make_stock_unit, controlled_context, session, operator_id
    ):
        unit = make_controlled_unit(quantity=20)
        other = make_stock_unit()

        receipt = settlement_engine.settle_sale(
            _request(operator_id, (other.id, 1), (unit.id, 5), controlled_context=controlled_context)
        ).value
        assert len(receipt.register_entry_ids) == 1

        entry = RegisterSelector(session).get_entry(receipt.register_entry_ids[0])
        assert entry.transaction_type == RegisterTransactionType.SALE
        assert entry.balance_before == 20
        assert entry.balance_after == 15
        assert entry.quantity_out == 5
        assert entry.patient_name == "Jane Mwangi"
        assert entry.prescription_number == "RX-1001"
        assert entry.sale_id == receipt.sale_id
        assert entry.entry_code == "CSR-MAIN-2026-000002"
        assert entry.schedule_class == "SCHEDULE_II"
        assert _quantity(session, unit.id) == 15

    def test_failure_after_first_write_rolls_everything_back(
        self, settlement_engine, make_stock_unit, controlled_context, session, operator_id
    ):
        plain = make_stock_unit(quantity=10)
        # Listed while empty, then stock appears outside the register
        drifted = make_stock_unit(product_name="Pethidine 50mg", quantity=0)
        assert settlement_engine.mark_controlled(drifted.id, operator_id).is_success
        session.get(StockUnit, drifted.id).quantity = 10
        session.commit()

        result = settlement_engine.settle_sale(
            _request(operator_id, (plain.id, 4), (drifted.id, 5), controlled_context=controlled_context)
        )
        assert result.error_code == "NEGATIVE_REGISTER_BALANCE"

        assert _quantity(session, plain.id) == 10
        assert _quantity(session, drifted.id) == 10
        assert _count(session, SaleTransaction) == 0
        assert _count(session, RegisterEntry) == 0

        # The invoice counter was not consumed either
        ok = settlement_engine.settle_sale(_request(operator_id, (plain.id, 1)))
        assert ok.value.invoice_number == "INV-20260315-0001"


class TestAuditAndLogging:
    def test_sale_writes_one_audit_event(self, settlement_engine, make_stock_unit, session, clock, operator_id):
        unit = make_stock_unit()
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 3))).value

        auditor = AuditorService(session, clock)
        trace = auditor.get_trace("SaleTransaction", receipt.sale_id)
        assert [entry.action for entry in trace] == [AuditAction.SALE_SETTLED]
        assert trace[0].payload["invoice_number"] == receipt.invoice_number
        assert trace[0].actor_id == operator_id
        assert auditor.validate_chain()

    def test_settlement_logs_share_correlation_id(
        self, settlement_engine, make_stock_unit, captured_logs, operator_id
    ):
        unit = make_stock_unit()
        settlement_engine.settle_sale(_request(operator_id, (unit.id, 1)))

        logs = captured_logs()
        started = next(r for r in logs if r["message"] == "settlement_started")
        completed = next(r for r in logs if r["message"] == "settlement_completed")
        settled = next(r for r in logs if r["message"] == "sale_settled")
        assert started["operation"] == "settle_sale"
        assert started["operator_id"] == str(operator_id)
        assert started["correlation_id"] == completed["correlation_id"] == settled["correlation_id"]
        assert "duration_ms" in completed

    def test_rejection_logged_with_error_code(
        self, settlement_engine, make_stock_unit, captured_logs, operator_id
    ):
        unit = make_stock_unit(quantity=1)
        settlement_engine.settle_sale(_request(operator_id, (unit.id, 2)))

        rejected = [r for r in captured_logs() if r["message"] == "settlement_rejected"]
        assert len(rejected) == 1
        assert rejected[0]["error_code"] == "INSUFFICIENT_STOCK"
        assert rejected[0]["status"] == "rejected"


class TestVoidSale:
    def test_void_restores_stock(self, settlement_engine, make_stock_unit, session, operator_id):
        unit = make_stock_unit(quantity=10)
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 4))).value

        result = settlement_engine.void_sale(receipt.sale_id, "Wrong item scanned", operator_id)
        assert result.is_success
        assert result.value.invoice_number == receipt.invoice_number
        assert _quantity(session, unit.id) == 10

        sale = SaleSelector(session).get(receipt.sale_id)
        assert sale.is_voided
        assert sale.total == receipt.total

    def test_second_void_rejected(self, settlement_engine, make_stock_unit, session, operator_id):
        unit = make_stock_unit(quantity=10)
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 4))).value
        assert settlement_engine.void_sale(receipt.sale_id, "Duplicate", operator_id).is_success

        again = settlement_engine.void_sale(receipt.sale_id, "Duplicate", operator_id)
        assert again.error_code == "SALE_ALREADY_VOIDED"
        assert _quantity(session, unit.id) == 10
        assert _count(session, SaleVoid) == 1

    def test_void_controlled_sale_appends_return(
        self, settlement_engine, make_controlled_unit, controlled_context, session, operator_id
    ):
        unit = make_controlled_unit(quantity=20)
        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 5), controlled_context=controlled_context)
        ).value

        void = settlement_engine.void_sale(receipt.sale_id, "Patient declined", operator_id).value
        assert len(void.register_entry_ids) == 1

        entry = RegisterSelector(session).get_entry(void.register_entry_ids[0])
        assert entry.transaction_type == RegisterTransactionType.RETURN
        assert entry.quantity_in == 5
        assert entry.balance_before == 15
        assert entry.balance_after == 20
        assert entry.patient_name == "Jane Mwangi"
        reverses = session.get(RegisterEntry, entry.id).reverses_entry_id
        assert reverses == receipt.register_entry_ids[0]
        assert ControlledRegisterService(session).validate_chain(unit.id) == 3

    def test_void_after_unit_listed_as_controlled(
        self, settlement_engine, make_stock_unit, controlled_context, session, operator_id
    ):
        unit = make_stock_unit(product_name="Tramadol 50mg", quantity=10)
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 4))).value
        assert settlement_engine.mark_controlled(unit.id, operator_id).is_success

        void = settlement_engine.void_sale(receipt.sale_id, "Wrong patient", operator_id).value
        assert len(void.register_entry_ids) == 1

        entry = RegisterSelector(session).get_entry(void.register_entry_ids[0])
        assert entry.transaction_type == RegisterTransactionType.ADJUSTMENT
        assert (entry.balance_before, entry.balance_after) == (6, 10)
        assert RegisterSelector(session).current_balance(unit.id) == _quantity(session, unit.id) == 10
        assert ControlledRegisterService(session).validate_chain(unit.id) == 2

        whole_stock = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 10), controlled_context=controlled_context)
        )
        assert whole_stock.is_success

    def test_void_reverses_loyalty(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        customer = make_customer(opening_points=100)
        unit = make_stock_unit(unit_price=Decimal("150.00"))
        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), customer_id=customer.id, loyalty_points_to_redeem=50)
        ).value

        void = settlement_engine.void_sale(receipt.sale_id, "Customer returned item", operator_id).value
        assert void.points_refunded == 50
        assert void.points_reversed == 1
        assert CustomerSelector(session).balances(customer.id).loyalty_points == 100
        assert CustomerLedgerService(session).verify_projection(customer.id)

    def test_void_reverses_credit_charge(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        customer = make_customer(credit_limit=Decimal("1000.00"))
        unit = make_stock_unit(unit_price=Decimal("300.00"))
        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), payment_method=PaymentMethod.CREDIT, customer_id=customer.id)
        ).value

        void = settlement_engine.void_sale(receipt.sale_id, "Billing error", operator_id).value
        assert void.credit_reversed == Decimal("300.00")
        assert CustomerSelector(session).balances(customer.id).credit_balance == Decimal("0.00")
        assert CustomerLedgerService(session).verify_projection(customer.id)

    def test_void_refused_once_earned_points_are_spent(
        self, settlement_engine, make_stock_unit, make_customer, session, operator_id
    ):
        customer = make_customer()
        unit = make_stock_unit(quantity=5, unit_price=Decimal("500.00"))
        receipt = settlement_engine.settle_sale(
            _request(operator_id, (unit.id, 1), customer_id=customer.id)
        ).value
        assert receipt.loyalty_points_earned == 5
        assert settlement_engine.adjust_loyalty_points(customer.id, -5, "Points expired", operator_id).is_success

        result = settlement_engine.void_sale(receipt.sale_id, "Late return", operator_id)
        assert result.error_code == "INSUFFICIENT_POINTS"
        assert _quantity(session, unit.id) == 4
        assert _count(session, SaleVoid) == 0

    def test_unknown_sale(self, settlement_engine, operator_id):
        assert settlement_engine.void_sale(uuid4(), "Typo", operator_id).error_code == "SALE_NOT_FOUND"

    def test_reason_required(self, settlement_engine, make_stock_unit, operator_id):
        unit = make_stock_unit()
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1))).value
        result = settlement_engine.void_sale(receipt.sale_id, "   ", operator_id)
        assert result.error_code == "VALIDATION_ERROR"

    def test_void_audited(self, settlement_engine, make_stock_unit, session, clock, operator_id):
        unit = make_stock_unit()
        receipt = settlement_engine.settle_sale(_request(operator_id, (unit.id, 1))).value
        settlement_engine.void_sale(receipt.sale_id, "Wrong item", operator_id)

        trace = AuditorService(session, clock).get_trace("SaleTransaction", receipt.sale_id)
        assert [entry.action for entry in trace] == [AuditAction.SALE_SETTLED, AuditAction.SALE_VOIDED]


class TestTransactionBoundary:
    def test_storage_fault_reported_and_rolled_back(
        self, settlement_engine, make_stock_unit, session, operator_id, monkeypatch
    ):
        unit = make_stock_unit(quantity=10)

        def _locked(name):
            raise OperationalError("UPDATE sequence_counters", {}, Exception("database is locked"))

        monkeypatch.setattr(settlement_engine._sequences, "next_value", _locked)
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 3)))

        assert result.status == SettlementStatus.STORAGE_FAULT
        assert result.error_code == "STORAGE_FAULT"
        assert result.is_retryable
        assert _quantity(session, unit.id) == 10

    def test_integrity_error_is_conflict(self, settlement_engine, make_stock_unit, session, operator_id, monkeypatch):
        unit = make_stock_unit(quantity=10)

        def _collide(name):
            raise IntegrityError("INSERT INTO sale_transactions", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(settlement_engine._sequences, "next_value", _collide)
        result = settlement_engine.settle_sale(_request(operator_id, (unit.id, 3)))

        assert result.status == SettlementStatus.CONFLICT
        assert result.is_retryable
        assert _quantity(session, unit.id) == 10

    def test_unexpected_exception_propagates(
        self, settlement_engine, make_stock_unit, session, operator_id, monkeypatch, captured_logs
    ):
        unit = make_stock_unit(quantity=10)

        def _boom(ids):
            raise RuntimeError("bug")

        monkeypatch.setattr(settlement_engine._stock, "lock_units", _boom)
        with pytest.raises(RuntimeError):
            settlement_engine.settle_sale(_request(operator_id, (unit.id, 3)))

        assert any(r["message"] == "settlement_failed" for r in captured_logs())
        assert _quantity(session, unit.id) == 10

    def test_caller_owned_transaction(self, session, clock, policy, make_stock_unit, operator_id):
        unit = make_stock_unit(quantity=10)
        engine = SettlementEngine(session, clock, policy, auto_commit=False)

        assert engine.settle_sale(_request(operator_id, (unit.id, 3))).is_success
        assert _quantity(session, unit.id) == 7

        session.rollback()
        assert _quantity(session, unit.id) == 10
        assert _count(session, SaleTransaction) == 0


class TestTranslateDbError:
    def test_integrity_error_is_conflict(self):
        exc = IntegrityError("INSERT", {}, Exception("duplicate key"))
        assert isinstance(translate_db_error(exc), ConcurrencyConflictError)

    def test_deadlock_is_conflict(self):
        exc = OperationalError("UPDATE", {}, Exception("deadlock detected"))
        assert isinstance(translate_db_error(exc), ConcurrencyConflictError)

    def test_serialization_failure_pgcode_is_conflict(self):
        class _PgError(Exception):
            pgcode = "40001"

        exc = OperationalError("UPDATE", {}, _PgError("could not serialize access"))
        assert isinstance(translate_db_error(exc), ConcurrencyConflictError)

    def test_lock_timeout_is_storage_fault(self):
        class _PgError(Exception):
            pgcode = "55P03"

        exc = OperationalError("SELECT", {}, _PgError("canceling statement due to lock timeout"))
        assert isinstance(translate_db_error(exc), StorageFaultError)

    def test_sqlite_busy_is_storage_fault(self):
        exc = OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))
        assert isinstance(translate_db_error(exc), StorageFaultError)
