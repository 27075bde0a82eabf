"""
Concurrent settlement tests.

Several terminals (threads, one session each) settle against the same
stock unit or customer at the same moment.  Whatever interleaving the
database picks, stock never goes negative, the controlled register chain
stays continuous and loyalty balances stay non-negative.

Runs against the file-backed SQLite database by default (writers are
serialized by BEGIN IMMEDIATE) and against PostgreSQL when DATABASE_URL
points at one (row locks).
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from pharmacy_kernel.domain.dtos import CartLine, SaleRequest, SettlementStatus
from pharmacy_kernel.models.sale import PaymentMethod
from pharmacy_kernel.selectors.customer_selector import CustomerSelector
from pharmacy_kernel.selectors.register_selector import RegisterSelector
from pharmacy_kernel.selectors.stock_selector import StockSelector
from pharmacy_kernel.services.auditor_service import AuditorService
from pharmacy_kernel.services.controlled_register import ControlledRegisterService
from pharmacy_kernel.services.customer_ledger import CustomerLedgerService
from pharmacy_kernel.services.settlement_engine import SettlementEngine

pytestmark = pytest.mark.slow_locks

TERMINALS = 8


def _acceptable(result, rejection_code: str) -> bool:
    if result.status == SettlementStatus.COMPLETED:
        return True
    if result.status == SettlementStatus.REJECTED:
        return result.error_code == rejection_code
    return result.is_retryable


def _run_terminals(session_factory, clock, policy, requests):
    """Submit one request per terminal, all released by the same barrier."""
    barrier = Barrier(len(requests))

    def terminal(request):
        terminal_session = session_factory()
        engine = SettlementEngine(terminal_session, clock, policy)
        barrier.wait()
        try:
            return engine.settle_sale(request)
        finally:
            terminal_session.close()

    with ThreadPoolExecutor(max_workers=len(requests)) as pool:
        return list(pool.map(terminal, requests))


class TestConcurrentSales:
    def test_no_oversell(self, make_stock_unit, session, session_factory, clock, policy, operator_id):
        unit = make_stock_unit(quantity=10, unit_price=Decimal("100.00"))
        session.close()

        request = SaleRequest((CartLine(unit.id, 3),), PaymentMethod.CASH, operator_id)
        results = _run_terminals(session_factory, clock, policy, [request] * TERMINALS)

        assert all(_acceptable(r, "INSUFFICIENT_STOCK") for r in results)
        completed = [r for r in results if r.is_success]
        assert 1 <= len(completed) <= 3

        check = session_factory()
        remaining = StockSelector(check).get(unit.id).quantity
        assert remaining == 10 - 3 * len(completed)
        assert remaining >= 0

        invoices = [r.value.invoice_number for r in completed]
        assert len(set(invoices)) == len(invoices)
        assert AuditorService(check, clock).validate_chain()

    def test_whole_stock_race_has_single_winner(
        self, make_stock_unit, session, session_factory, clock, policy, operator_id
    ):
        unit = make_stock_unit(quantity=10, unit_price=Decimal("100.00"))
        session.close()

        request = SaleRequest((CartLine(unit.id, 10),), PaymentMethod.CASH, operator_id)
        results = _run_terminals(session_factory, clock, policy, [request] * 2)

        assert all(_acceptable(r, "INSUFFICIENT_STOCK") for r in results)
        assert sum(1 for r in results if r.is_success) == 1
        assert StockSelector(session_factory()).get(unit.id).quantity == 0

    def test_controlled_register_chain_stays_continuous(
        self, make_controlled_unit, controlled_context, session, session_factory, clock, policy, operator_id
    ):
        unit = make_controlled_unit(quantity=20)
        session.close()

        request = SaleRequest(
            (CartLine(unit.id, 4),),
            PaymentMethod.CASH,
            operator_id,
            controlled_context=controlled_context,
        )
        results = _run_terminals(session_factory, clock, policy, [request] * TERMINALS)
        assert all(_acceptable(r, "INSUFFICIENT_STOCK") for r in results)
        completed = sum(1 for r in results if r.is_success)

        check = session_factory()
        entries = RegisterSelector(check).entries_for_unit(unit.id)
        assert len(entries) == 1 + completed
        assert ControlledRegisterService(check).validate_chain(unit.id) == len(entries)
        assert entries[-1].balance_after == StockSelector(check).get(unit.id).quantity
        assert len({entry.entry_code for entry in entries}) == len(entries)


class TestConcurrentRedemptions:
    def test_points_never_overspent(
        self, make_stock_unit, make_customer, session, session_factory, clock, policy, operator_id
    ):
        unit = make_stock_unit(quantity=100, unit_price=Decimal("80.00"))
        customer = make_customer(opening_points=100)
        session.close()

        request = SaleRequest(
            (CartLine(unit.id, 1),),
            PaymentMethod.CASH,
            operator_id,
            customer_id=customer.id,
            loyalty_points_to_redeem=60,
        )
        results = _run_terminals(session_factory, clock, policy, [request] * 4)

        assert all(_acceptable(r, "INSUFFICIENT_POINTS") for r in results)
        assert sum(1 for r in results if r.is_success) == 1

        check = session_factory()
        # 100 - 60 redeemed; 20.00 paid earns nothing at one point per 100
        assert CustomerSelector(check).balances(customer.id).loyalty_points == 40
        assert CustomerLedgerService(check).verify_projection(customer.id)
