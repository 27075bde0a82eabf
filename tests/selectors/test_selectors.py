"""Tests for the read-only selectors."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from pharmacy_kernel.domain.dtos import CartLine, PrescriptionItemSpec, SaleRequest
from pharmacy_kernel.models.customer import LoyaltyTransactionType
from pharmacy_kernel.models.prescription import PrescriptionStatus
from pharmacy_kernel.models.sale import PaymentMethod, PaymentStatus
from pharmacy_kernel.models.stock_unit import StockUnitStatus
from pharmacy_kernel.selectors.customer_selector import CustomerSelector
from pharmacy_kernel.selectors.prescription_selector import PrescriptionSelector
from pharmacy_kernel.selectors.register_selector import RegisterSelector
from pharmacy_kernel.selectors.sale_selector import SaleSelector
from pharmacy_kernel.selectors.stock_selector import StockSelector


class TestSaleSelector:
    def test_by_invoice(self, settlement_engine, make_stock_unit, session, operator_id):
        unit = make_stock_unit(unit_price=Decimal("12.50"))
        receipt = settlement_engine.settle_sale(
            SaleRequest((CartLine(unit.id, 4),), PaymentMethod.CARD, operator_id)
        ).value

        info = SaleSelector(session).by_invoice(receipt.invoice_number)
        assert info.id == receipt.sale_id
        assert info.total == Decimal("50.00")
        assert info.payment_status == PaymentStatus.PAID
        assert [(line.line_no, line.quantity) for line in info.lines] == [(1, 4)]
        assert not info.is_voided

        assert SaleSelector(session).by_invoice("INV-20260315-9999") is None
        assert SaleSelector(session).get(uuid4()) is None

    def test_for_customer_in_settlement_order(
        self, settlement_engine, make_stock_unit, make_customer, session, clock, operator_id
    ):
        unit = make_stock_unit(unit_price=Decimal("100.00"))
        customer = make_customer()
        invoices = []
        for quantity in (1, 2):
            invoices.append(
                settlement_engine.settle_sale(
                    SaleRequest(
                        (CartLine(unit.id, quantity),),
                        PaymentMethod.CASH,
                        operator_id,
                        customer_id=customer.id,
                    )
                ).value.invoice_number
            )
            clock.advance(60)
        settlement_engine.void_sale(
            SaleSelector(session).by_invoice(invoices[0]).id, "Wrong customer", operator_id
        )

        sales = SaleSelector(session).for_customer(customer.id)
        assert [sale.invoice_number for sale in sales] == invoices
        assert [sale.is_voided for sale in sales] == [True, False]

    def test_invoice_numbers_for_day(self, settlement_engine, make_stock_unit, session, operator_id):
        unit = make_stock_unit()
        for _ in range(3):
            settlement_engine.settle_sale(SaleRequest((CartLine(unit.id, 1),), PaymentMethod.CASH, operator_id))

        selector = SaleSelector(session)
        assert selector.invoice_numbers_for_day(date(2026, 3, 15)) == [
            "INV-20260315-0001",
            "INV-20260315-0002",
            "INV-20260315-0003",
        ]
        assert selector.invoice_numbers_for_day(date(2026, 3, 16)) == []


class TestPrescriptionSelector:
    def test_by_number(self, make_stock_unit, make_prescription, session):
        unit = make_stock_unit()
        rx = make_prescription([PrescriptionItemSpec("Paracetamol 500mg", 10, unit.id)])

        info = PrescriptionSelector(session).by_number(rx.prescription_number)
        assert info.id == rx.id
        assert info.status == PrescriptionStatus.PENDING
        assert info.items[0].remaining == 10
        assert PrescriptionSelector(session).by_number("RX-MISSING") is None

    def test_status_derived_for_date(self, make_stock_unit, make_prescription, session):
        unit = make_stock_unit()
        rx = make_prescription([PrescriptionItemSpec("Paracetamol 500mg", 10, unit.id)])
        selector = PrescriptionSelector(session)
        assert selector.get(rx.id, as_of=date(2026, 4, 14)).status == PrescriptionStatus.PENDING
        assert selector.get(rx.id, as_of=date(2026, 4, 15)).status == PrescriptionStatus.EXPIRED


class TestCustomerSelector:
    def test_loyalty_history_follows_sales(self, settlement_engine, make_stock_unit, make_customer, session, operator_id):
        unit = make_stock_unit(unit_price=Decimal("100.00"))
        customer = make_customer(opening_points=20)
        settlement_engine.settle_sale(
            SaleRequest(
                (CartLine(unit.id, 3),),
                PaymentMethod.CASH,
                operator_id,
                customer_id=customer.id,
                loyalty_points_to_redeem=20,
            )
        )

        history = CustomerSelector(session).loyalty_history(customer.id)
        assert [row.transaction_type for row in history] == [
            LoyaltyTransactionType.ADJUST,
            LoyaltyTransactionType.REDEEM,
            LoyaltyTransactionType.EARN,
        ]
        assert [row.points for row in history] == [20, -20, 2]
        assert CustomerSelector(session).balances(customer.id).loyalty_points == 2

    def test_unknown_customer(self, session):
        assert CustomerSelector(session).balances(uuid4()) is None


class TestRegisterAndStockSelectors:
    def test_unverified_lists_open_entries(self, make_controlled_unit, session):
        first = make_controlled_unit(quantity=10)
        second = make_controlled_unit(product_name="Diazepam 5mg", quantity=30)
        open_entries = RegisterSelector(session).unverified()
        assert {entry.stock_unit_id for entry in open_entries} == {first.id, second.id}

    def test_unit_without_entries_has_zero_balance(self, make_stock_unit, session):
        unit = make_stock_unit()
        assert RegisterSelector(session).current_balance(unit.id) == 0
        assert RegisterSelector(session).get_entry(uuid4()) is None

    def test_inactive_units_hidden_by_default(self, make_stock_unit, session):
        active = make_stock_unit()
        make_stock_unit(status=StockUnitStatus.INACTIVE)
        assert [unit.id for unit in StockSelector(session).list_units()] == [active.id]
        assert len(StockSelector(session).list_units(active_only=False)) == 2
