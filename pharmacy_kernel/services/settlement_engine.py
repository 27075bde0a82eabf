"""
SettlementEngine -- the single writer of every pharmacy ledger.

Responsibility:
    Turns one caller intent (a cart, a dispensing, a register movement,
    goods received, a void, a credit payment, a loyalty adjustment) into
    one database transaction that validates, locks, computes, writes and
    commits the mutations of every ledger involved.  Returns a typed
    SettlementResult; never lets a business failure escape as an
    exception.

Architecture position:
    Kernel > Services -- imperative shell, top of the service layer.
    Owns the transaction boundary: the services it composes only flush.

Invariants enforced:
    - Atomicity: a non-COMPLETED result means nothing was applied.  The
      unit of work rolls back on every exception, including failures at
      commit.
    - Lock ordering: prescription, then stock units (ascending id), then
      the customer row, then sequence counters in the order
      register_entry, register_code, invoice, audit_event.
    - Prices are captured from the locked stock rows, never from the caller.
    - Every accepted settlement appends exactly one hash-chained AuditEvent.

Failure modes (as SettlementResult):
    REJECTED       any PharmacyKernelError except the two below
    CONFLICT       ConcurrencyConflictError, IntegrityError, deadlock or
                   serialization failure
    STORAGE_FAULT  StorageFaultError, lock timeout, any other database error

Audit relevance:
    settlement_started / settlement_completed / settlement_rejected log
    events carry a per-call correlation_id, so one settlement's service
    logs can be pulled out of a busy multi-terminal stream.
"""

import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from pharmacy_kernel.db.types import ZERO, to_money
from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.domain.dispensing import (
    StockSnapshot,
    apply_dispense,
    derive_status,
    is_substitution,
    problem_to_error,
    validate_dispense,
)
from pharmacy_kernel.domain.dtos import (
    CustomerBalances,
    DispensedLine,
    DispenseRequest,
    DispensingRecord,
    ReceiveStockRequest,
    RegisterEntryInfo,
    RegisterEntryRequest,
    SaleReceipt,
    SaleRequest,
    SettlementResult,
    SettlementStatus,
    StockUnitInfo,
    VoidReceipt,
)
from pharmacy_kernel.domain.policy import SettlementPolicy
from pharmacy_kernel.domain.pricing import compute_totals, find_shortfall, points_earned, price_line
from pharmacy_kernel.domain.register_context import (
    AdjustmentContext,
    CONTEXT_TYPES,
    ReceiptContext,
    ReturnContext,
    SaleContext,
    build_context,
)
from pharmacy_kernel.exceptions import (
    ConcurrencyConflictError,
    CreditLimitExceededError,
    InsufficientPointsError,
    InsufficientStockError,
    PharmacyKernelError,
    SaleAlreadyVoidedError,
    SaleNotFoundError,
    StockUnitInactiveError,
    StockUnitNotFoundError,
    StorageFaultError,
    ValidationError,
)
from pharmacy_kernel.logging_config import LogContext, get_logger
from pharmacy_kernel.models.audit_event import AuditAction
from pharmacy_kernel.models.customer import CreditTransactionType, LoyaltyTransactionType
from pharmacy_kernel.models.register import RegisterTransactionType
from pharmacy_kernel.models.sale import (
    PaymentMethod,
    PaymentStatus,
    SaleLine,
    SaleTransaction,
    SaleVoid,
)
from pharmacy_kernel.services.auditor_service import AuditorService
from pharmacy_kernel.services.controlled_register import ControlledRegisterService
from pharmacy_kernel.services.customer_ledger import CustomerLedgerService
from pharmacy_kernel.services.prescription_service import (
    PrescriptionService,
    ResolvedDispenseLine,
)
from pharmacy_kernel.services.sequence_service import SequenceService
from pharmacy_kernel.services.stock_ledger import StockLedgerService

logger = get_logger("services.settlement")

T = TypeVar("T")

# PostgreSQL SQLSTATEs
_PG_DEADLOCK = "40P01"
_PG_SERIALIZATION_FAILURE = "40001"
_PG_LOCK_NOT_AVAILABLE = "55P03"
_PG_QUERY_CANCELED = "57014"


def translate_db_error(exc: SQLAlchemyError) -> PharmacyKernelError:
    """
    Map a database exception onto the kernel's concurrency / storage errors.

    Deadlocks, serialization failures and unique-key collisions mean a
    concurrent writer won and the settlement may simply be retried.  Lock
    timeouts and everything else are storage faults.
    """
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None)
    message = str(orig if orig is not None else exc).lower()

    if isinstance(exc, IntegrityError):
        return ConcurrencyConflictError("database", "-", f"integrity violation: {message}")
    if isinstance(exc, OperationalError):
        if pgcode in (_PG_DEADLOCK, _PG_SERIALIZATION_FAILURE) or "deadlock" in message:
            return ConcurrencyConflictError("database", "-", message)
        if pgcode in (_PG_LOCK_NOT_AVAILABLE, _PG_QUERY_CANCELED) or "locked" in message:
            return StorageFaultError(f"lock wait timed out: {message}")
    return StorageFaultError(message)


def _status_for(exc: PharmacyKernelError) -> SettlementStatus:
    if isinstance(exc, ConcurrencyConflictError):
        return SettlementStatus.CONFLICT
    if isinstance(exc, StorageFaultError):
        return SettlementStatus.STORAGE_FAULT
    return SettlementStatus.REJECTED


def _details(exc: PharmacyKernelError) -> dict[str, Any]:
    return {key: value for key, value in vars(exc).items() if not key.startswith("_")}


class SettlementEngine:
    """
    Contract:
        Every public method returns a SettlementResult.  With
        ``auto_commit=True`` (the default) each call is its own committed
        transaction; with ``auto_commit=False`` each call runs inside a
        savepoint of the caller's transaction, and the caller commits.

    Usage:
        engine = SettlementEngine(session, clock, policy)
        result = engine.settle_sale(SaleRequest(...))
        if result.is_success:
            print(result.value.invoice_number)
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: SettlementPolicy | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._policy = policy or SettlementPolicy()
        self._auto_commit = auto_commit

        self._sequences = SequenceService(session)
        self._stock = StockLedgerService(session, self._clock)
        self._register = ControlledRegisterService(
            session, self._clock, self._policy, self._sequences
        )
        self._customers = CustomerLedgerService(session, self._clock)
        self._prescriptions = PrescriptionService(session, self._clock, self._policy)
        self._auditor = AuditorService(session, self._clock, self._sequences)

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self):
        """Commit everything written inside the block, or nothing."""
        if self._auto_commit:
            try:
                yield self._session
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise
        else:
            savepoint = self._session.begin_nested()
            try:
                yield self._session
                savepoint.commit()
            except Exception:
                if savepoint.is_active:
                    savepoint.rollback()
                raise

    def _run(
        self,
        operation: str,
        operator_id: UUID,
        work: Callable[[], T],
        **log_context: str | None,
    ) -> SettlementResult[T]:
        correlation_id = str(uuid4())
        with LogContext.bind(
            correlation_id=correlation_id,
            operator_id=str(operator_id),
            operation=operation,
            **log_context,
        ):
            logger.info("settlement_started")
            t0 = time.monotonic()
            try:
                with self._unit_of_work():
                    value = work()
            except PharmacyKernelError as exc:
                failure = exc
            except SQLAlchemyError as exc:
                failure = translate_db_error(exc)
                logger.warning(
                    "settlement_database_error",
                    extra={"error_code": failure.code},
                    exc_info=True,
                )
            except Exception:
                logger.error(
                    "settlement_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise
            else:
                logger.info(
                    "settlement_completed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                )
                return SettlementResult.completed(value)

            status = _status_for(failure)
            logger.info(
                "settlement_rejected",
                extra={
                    "status": status.value,
                    "error_code": failure.code,
                    "reason": str(failure),
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return SettlementResult.failed(status, failure.code, str(failure), _details(failure))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _next_invoice_number(self) -> str:
        day_key = self._clock.today().strftime("%Y%m%d")
        number = self._sequences.next_value(SequenceService.invoice_sequence(day_key))
        return f"{self._policy.invoice_prefix}-{day_key}-{number:04d}"

    @staticmethod
    def _require_operator(operator_id: UUID, field: str) -> None:
        if not isinstance(operator_id, UUID):
            raise ValidationError(f"{field} must be a UUID", field=field)

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def settle_sale(self, request: SaleRequest) -> SettlementResult[SaleReceipt]:
        """
        Settle a cart: stock, register, loyalty, credit and the sale record.

        Preconditions:
            - Controlled lines need ``request.controlled_context``.
            - Redeeming points or paying on credit needs a customer.

        Postconditions:
            - On COMPLETED every ledger reflects the sale and the receipt
              carries the invoice number, totals and points.
            - Otherwise nothing was written.
        """
        return self._run("settle_sale", request.operator_id, lambda: self._settle_sale(request))

    def _settle_sale(self, request: SaleRequest) -> SaleReceipt:
        request.validate()
        self._require_operator(request.operator_id, "operator_id")

        # Locks and reads; nothing below writes until every check passed
        units = self._stock.lock_units(line.stock_unit_id for line in request.lines)
        for index, line in enumerate(request.lines):
            unit = units.get(line.stock_unit_id)
            if unit is None:
                raise StockUnitNotFoundError(str(line.stock_unit_id), index)
            if not unit.is_active:
                raise StockUnitInactiveError(str(line.stock_unit_id), index)

        controlled_context = request.controlled_context
        if any(units[line.stock_unit_id].is_controlled for line in request.lines):
            if not isinstance(controlled_context, SaleContext):
                raise ValidationError(
                    "Controlled items require patient identification",
                    field="controlled_context",
                )

        shortfall = find_shortfall(
            [(line.stock_unit_id, line.quantity) for line in request.lines],
            {unit_id: unit.quantity for unit_id, unit in units.items()},
        )
        if shortfall is not None:
            raise InsufficientStockError(
                str(shortfall.stock_unit_id),
                shortfall.requested,
                shortfall.available,
                shortfall.line_index,
            )

        priced = [
            price_line(index, line.stock_unit_id, line.quantity, units[line.stock_unit_id].unit_price)
            for index, line in enumerate(request.lines)
        ]
        totals = compute_totals(
            [line.line_total for line in priced],
            to_money(request.discount),
            request.loyalty_points_to_redeem,
            self._policy.points_value,
        )

        payment_method = PaymentMethod(request.payment_method)
        customer = None
        if request.customer_id is not None:
            customer = self._customers.lock_customer(request.customer_id)
            if totals.points_redeemed > customer.loyalty_points:
                raise InsufficientPointsError(
                    str(customer.id), totals.points_redeemed, customer.loyalty_points
                )
            if (
                payment_method == PaymentMethod.CREDIT
                and customer.credit_balance + totals.total > customer.credit_limit
            ):
                raise CreditLimitExceededError(
                    str(customer.id), customer.credit_balance, totals.total, customer.credit_limit
                )
        earned = points_earned(totals.total, self._policy.points_earn_rate) if customer else 0

        # Writes
        sale_id = uuid4()
        register_entry_ids = []
        for line in priced:
            self._stock.reserve_and_decrement(line.stock_unit_id, line.quantity, line.line_index)
            if units[line.stock_unit_id].is_controlled:
                entry = self._register.append_entry(
                    line.stock_unit_id,
                    controlled_context,
                    quantity_in=0,
                    quantity_out=line.quantity,
                    recorded_by_id=request.operator_id,
                    recorded_by_name=request.operator_name,
                    sale_id=sale_id,
                )
                register_entry_ids.append(entry.id)

        invoice_number = self._next_invoice_number()

        if customer is not None:
            if totals.points_redeemed:
                self._customers.apply_loyalty_delta(
                    customer.id,
                    -totals.points_redeemed,
                    LoyaltyTransactionType.REDEEM,
                    f"Redeemed on {invoice_number}",
                    sale_id=sale_id,
                    operator_id=request.operator_id,
                )
            if payment_method == PaymentMethod.CREDIT and totals.total > ZERO:
                self._customers.apply_credit_delta(
                    customer.id,
                    totals.total,
                    CreditTransactionType.CHARGE,
                    f"Credit sale {invoice_number}",
                    sale_id=sale_id,
                    operator_id=request.operator_id,
                )
            if earned:
                self._customers.apply_loyalty_delta(
                    customer.id,
                    earned,
                    LoyaltyTransactionType.EARN,
                    f"Earned on {invoice_number}",
                    sale_id=sale_id,
                    operator_id=request.operator_id,
                )

        payment_status = (
            PaymentStatus.PENDING if payment_method == PaymentMethod.CREDIT else PaymentStatus.PAID
        )
        sale = SaleTransaction(
            id=sale_id,
            invoice_number=invoice_number,
            subtotal=totals.subtotal,
            discount=totals.discount,
            points_redeemed=totals.points_redeemed,
            points_discount=totals.points_discount,
            total=totals.total,
            points_earned=earned,
            payment_method=payment_method,
            payment_status=payment_status,
            customer_id=request.customer_id,
            operator_id=request.operator_id,
            notes=request.notes,
            occurred_at=self._clock.now(),
            lines=[
                SaleLine(
                    line_no=line.line_index + 1,
                    stock_unit_id=line.stock_unit_id,
                    product_name=units[line.stock_unit_id].product_name,
                    batch_number=units[line.stock_unit_id].batch_number,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in priced
            ],
        )
        self._session.add(sale)
        self._session.flush()

        self._auditor.record(
            "SaleTransaction",
            sale_id,
            AuditAction.SALE_SETTLED,
            request.operator_id,
            {
                "invoice_number": invoice_number,
                "lines": [
                    {
                        "stock_unit_id": line.stock_unit_id,
                        "quantity": line.quantity,
                        "unit_price": line.unit_price,
                    }
                    for line in priced
                ],
                "subtotal": totals.subtotal,
                "total": totals.total,
                "payment_method": payment_method,
                "customer_id": request.customer_id,
                "points_redeemed": totals.points_redeemed,
                "points_earned": earned,
            },
        )

        logger.info(
            "sale_settled",
            extra={
                "invoice_number": invoice_number,
                "total": totals.total,
                "line_count": len(priced),
                "controlled_entries": len(register_entry_ids),
            },
        )
        return SaleReceipt(
            sale_id=sale_id,
            invoice_number=invoice_number,
            line_totals=tuple(line.line_total for line in priced),
            subtotal=totals.subtotal,
            discount=totals.discount,
            points_discount=totals.points_discount,
            total=totals.total,
            loyalty_points_earned=earned,
            loyalty_points_redeemed=totals.points_redeemed,
            payment_method=payment_method,
            payment_status=payment_status,
            customer_id=request.customer_id,
            register_entry_ids=tuple(register_entry_ids),
        )

    def void_sale(
        self,
        sale_id: UUID,
        reason: str,
        operator_id: UUID,
        operator_name: str | None = None,
    ) -> SettlementResult[VoidReceipt]:
        """
        Reverse a settled sale with compensating entries.

        The sale row is left untouched.  A SaleVoid row (one per sale) is
        added, stock is restored, controlled lines get RETURN register
        entries mirroring the original SALE entries, restored quantity with no SALE
        entry to mirror goes in as an ADJUSTMENT, points earned are
        taken back, points redeemed are refunded, and a credit charge is
        reversed.
        """
        return self._run(
            "void_sale",
            operator_id,
            lambda: self._void_sale(sale_id, reason, operator_id, operator_name),
        )

    def _void_sale(
        self,
        sale_id: UUID,
        reason: str,
        operator_id: UUID,
        operator_name: str | None,
    ) -> VoidReceipt:
        if not reason or not reason.strip():
            raise ValidationError("A void needs a reason", field="reason")
        self._require_operator(operator_id, "operator_id")

        sale = self._session.execute(
            select(SaleTransaction).where(SaleTransaction.id == sale_id)
        ).scalar_one_or_none()
        if sale is None:
            raise SaleNotFoundError(str(sale_id))

        already = self._session.execute(
            select(SaleVoid.id).where(SaleVoid.sale_id == sale_id)
        ).scalar_one_or_none()
        if already is not None:
            raise SaleAlreadyVoidedError(str(sale_id))

        void = SaleVoid(
            sale_id=sale_id,
            reason=reason.strip(),
            operator_id=operator_id,
            occurred_at=self._clock.now(),
        )
        self._session.add(void)
        try:
            self._session.flush()
        except IntegrityError as exc:
            # Another terminal voided the same sale first
            raise SaleAlreadyVoidedError(str(sale_id)) from exc

        lines = list(sale.lines)
        units = self._stock.lock_units(line.stock_unit_id for line in lines)
        unmatched: dict[UUID, int] = defaultdict(int)
        for line in lines:
            self._stock.restore_stock(line.stock_unit_id, line.quantity)
            unmatched[line.stock_unit_id] += line.quantity

        register_entry_ids = []
        for original in self._register.entries_for_sale(sale_id):
            if RegisterTransactionType(original.transaction_type) != RegisterTransactionType.SALE:
                continue
            unit = units.get(original.stock_unit_id)
            if unit is None or not unit.is_controlled:
                continue
            entry = self._register.append_entry(
                original.stock_unit_id,
                ReturnContext(
                    patient_name=original.patient_name,
                    patient_id=original.patient_id,
                    prescription_number=original.prescription_number,
                    prescriber_name=original.prescriber_name,
                    prescriber_reg_no=original.prescriber_reg_no,
                    reason=f"Void of {sale.invoice_number}: {reason.strip()}",
                ),
                quantity_in=original.quantity_out,
                quantity_out=0,
                recorded_by_id=operator_id,
                recorded_by_name=operator_name,
                sale_id=sale_id,
                reverses_entry_id=original.id,
            )
            register_entry_ids.append(entry.id)
            unmatched[original.stock_unit_id] -= original.quantity_out

        # Restored quantity with no SALE entry to mirror (the unit was listed
        # as controlled after the sale) still has to reach the register
        for stock_unit_id, quantity in sorted(unmatched.items()):
            if quantity <= 0 or not units[stock_unit_id].is_controlled:
                continue
            entry = self._register.append_entry(
                stock_unit_id,
                AdjustmentContext(reason=f"Void of {sale.invoice_number}: {reason.strip()}"),
                quantity_in=quantity,
                quantity_out=0,
                recorded_by_id=operator_id,
                recorded_by_name=operator_name,
                sale_id=sale_id,
            )
            register_entry_ids.append(entry.id)

        credit_reversed = ZERO
        if sale.customer_id is not None:
            self._customers.lock_customer(sale.customer_id, require_active=False)
            if sale.points_redeemed:
                self._customers.apply_loyalty_delta(
                    sale.customer_id,
                    sale.points_redeemed,
                    LoyaltyTransactionType.REVERSAL,
                    f"Refund of points redeemed on {sale.invoice_number}",
                    sale_id=sale_id,
                    operator_id=operator_id,
                )
            if sale.points_earned:
                self._customers.apply_loyalty_delta(
                    sale.customer_id,
                    -sale.points_earned,
                    LoyaltyTransactionType.REVERSAL,
                    f"Reversal of points earned on {sale.invoice_number}",
                    sale_id=sale_id,
                    operator_id=operator_id,
                )
            if PaymentMethod(sale.payment_method) == PaymentMethod.CREDIT and sale.total > ZERO:
                self._customers.apply_credit_delta(
                    sale.customer_id,
                    -sale.total,
                    CreditTransactionType.REVERSAL,
                    f"Void of credit sale {sale.invoice_number}",
                    sale_id=sale_id,
                    operator_id=operator_id,
                )
                credit_reversed = sale.total

        self._auditor.record(
            "SaleTransaction",
            sale_id,
            AuditAction.SALE_VOIDED,
            operator_id,
            {
                "invoice_number": sale.invoice_number,
                "reason": reason.strip(),
                "points_refunded": sale.points_redeemed,
                "points_reversed": sale.points_earned,
                "credit_reversed": credit_reversed,
            },
        )
        return VoidReceipt(
            void_id=void.id,
            sale_id=sale_id,
            invoice_number=sale.invoice_number,
            points_reversed=sale.points_earned,
            points_refunded=sale.points_redeemed,
            credit_reversed=credit_reversed,
            register_entry_ids=tuple(register_entry_ids),
        )

    # ------------------------------------------------------------------
    # Dispensing
    # ------------------------------------------------------------------

    def dispense(self, request: DispenseRequest) -> SettlementResult[DispensingRecord]:
        """
        Dispense (part of) a prescription.

        Controlled lines get SALE register entries carrying the
        prescription's patient and prescriber.
        """
        return self._run(
            "dispense",
            request.pharmacist_id,
            lambda: self._dispense(request),
            prescription_id=str(request.prescription_id),
        )

    def _dispense(self, request: DispenseRequest) -> DispensingRecord:
        request.validate()
        self._require_operator(request.pharmacist_id, "pharmacist_id")
        today = self._clock.today()

        prescription, items = self._prescriptions.lock_prescription(request.prescription_id)
        units = self._stock.lock_units(line.stock_unit_id for line in request.lines)

        snapshot = self._prescriptions.snapshot(prescription, items)
        stock = {
            unit_id: StockSnapshot(unit_id, unit.quantity, unit.is_active)
            for unit_id, unit in units.items()
        }
        problems = validate_dispense(snapshot, request.lines, stock, today)
        if problems:
            raise problem_to_error(snapshot, problems[0])

        resolved = [
            ResolvedDispenseLine(
                request=line,
                unit_price=(
                    to_money(line.unit_price)
                    if line.unit_price is not None
                    else units[line.stock_unit_id].unit_price
                ),
                is_substitution=is_substitution(snapshot.item(line.prescription_item_id), line),
            )
            for line in request.lines
        ]
        resulting_status = derive_status(apply_dispense(snapshot, request.lines), today)

        for index, line in enumerate(request.lines):
            self._stock.reserve_and_decrement(line.stock_unit_id, line.quantity, index)

        event = self._prescriptions.record_dispensing(
            prescription,
            items,
            resolved,
            resulting_status,
            pharmacist_id=request.pharmacist_id,
            pharmacist_name=request.pharmacist_name,
            notes=request.notes,
            counseling_provided=request.counseling_provided,
        )

        register_entry_ids = []
        controlled_lines = [
            line for line in request.lines if units[line.stock_unit_id].is_controlled
        ]
        if controlled_lines:
            context = SaleContext(
                patient_name=prescription.patient_name,
                patient_id=prescription.patient_id,
                prescription_number=prescription.prescription_number,
                prescriber_name=prescription.prescriber_name,
                prescriber_reg_no=prescription.prescriber_reg_no,
            )
            for line in controlled_lines:
                entry = self._register.append_entry(
                    line.stock_unit_id,
                    context,
                    quantity_in=0,
                    quantity_out=line.quantity,
                    recorded_by_id=request.pharmacist_id,
                    recorded_by_name=request.pharmacist_name,
                    dispensing_event_id=event.id,
                )
                register_entry_ids.append(entry.id)

        self._auditor.record(
            "Prescription",
            prescription.id,
            AuditAction.DISPENSED,
            request.pharmacist_id,
            {
                "event_id": event.id,
                "prescription_number": prescription.prescription_number,
                "lines": [
                    {
                        "prescription_item_id": line.request.prescription_item_id,
                        "stock_unit_id": line.request.stock_unit_id,
                        "quantity": line.request.quantity,
                        "is_substitution": line.is_substitution,
                    }
                    for line in resolved
                ],
                "resulting_status": resulting_status,
                "total": event.total,
            },
        )
        return DispensingRecord(
            event_id=event.id,
            prescription_id=prescription.id,
            status=resulting_status,
            total=event.total,
            lines=tuple(
                DispensedLine(
                    prescription_item_id=line.request.prescription_item_id,
                    stock_unit_id=line.request.stock_unit_id,
                    quantity=line.request.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                    is_substitution=line.is_substitution,
                )
                for line in resolved
            ),
            register_entry_ids=tuple(register_entry_ids),
        )

    # ------------------------------------------------------------------
    # Controlled-substance register
    # ------------------------------------------------------------------

    def append_controlled_entry(self, request: RegisterEntryRequest) -> SettlementResult[RegisterEntryInfo]:
        """
        Record a stand-alone register movement (receipt, transfer,
        adjustment, destruction, return ...).

        The same movement is applied to the stock on hand in the same
        transaction, so the register balance and the stock quantity move
        together.
        """
        return self._run(
            "append_controlled_entry",
            request.recorded_by_id,
            lambda: self._append_controlled_entry(request),
            stock_unit_id=str(request.stock_unit_id),
        )

    def _append_controlled_entry(self, request: RegisterEntryRequest) -> RegisterEntryInfo:
        self._require_operator(request.recorded_by_id, "recorded_by_id")
        context = request.context
        if isinstance(context, Mapping):
            values = dict(context)
            transaction_type = values.pop("transaction_type", None)
            if transaction_type is None:
                raise ValidationError("transaction_type is required", field="transaction_type")
            context = build_context(transaction_type, **values)
        elif not isinstance(context, tuple(CONTEXT_TYPES.values())):
            raise ValidationError(
                f"context must be a register context or a mapping, got {type(context).__name__}",
                field="context",
            )
        for name in ("quantity_in", "quantity_out"):
            value = getattr(request, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer", field=name)

        self._stock.lock_unit(request.stock_unit_id)
        entry = self._register.append_entry(
            request.stock_unit_id,
            context,
            quantity_in=request.quantity_in,
            quantity_out=request.quantity_out,
            recorded_by_id=request.recorded_by_id,
            recorded_by_name=request.recorded_by_name,
        )
        if request.quantity_out:
            self._stock.reserve_and_decrement(request.stock_unit_id, request.quantity_out)
        else:
            self._stock.restore_stock(request.stock_unit_id, request.quantity_in)

        self._auditor.record(
            "RegisterEntry",
            entry.id,
            AuditAction.REGISTER_ENTRY_APPENDED,
            request.recorded_by_id,
            {
                "entry_code": entry.entry_code,
                "stock_unit_id": request.stock_unit_id,
                "context": context.as_dict(),
                "quantity_in": request.quantity_in,
                "quantity_out": request.quantity_out,
                "balance_after": entry.balance_after,
            },
        )
        return RegisterEntryInfo.from_model(entry)

    def verify_controlled_entry(self, entry_id: UUID, verifier_id: UUID) -> SettlementResult[RegisterEntryInfo]:
        """Stamp an entry as verified; a second verification is ALREADY_VERIFIED."""
        return self._run(
            "verify_controlled_entry",
            verifier_id,
            lambda: self._verify_controlled_entry(entry_id, verifier_id),
        )

    def _verify_controlled_entry(self, entry_id: UUID, verifier_id: UUID) -> RegisterEntryInfo:
        self._require_operator(verifier_id, "verifier_id")
        entry = self._register.verify_entry(entry_id, verifier_id)
        self._auditor.record(
            "RegisterEntry",
            entry.id,
            AuditAction.REGISTER_ENTRY_VERIFIED,
            verifier_id,
            {"entry_code": entry.entry_code, "verified_at": entry.verified_at},
        )
        return RegisterEntryInfo.from_model(entry)

    def mark_controlled(
        self,
        stock_unit_id: UUID,
        operator_id: UUID,
        schedule_class: str | None = None,
        operator_name: str | None = None,
    ) -> SettlementResult[StockUnitInfo]:
        """
        Put a stock unit under register control.

        An opening ADJUSTMENT entry brings the register balance up to the
        quantity on hand, so later sales never find the register short.
        """
        return self._run(
            "mark_controlled",
            operator_id,
            lambda: self._mark_controlled(stock_unit_id, operator_id, schedule_class, operator_name),
            stock_unit_id=str(stock_unit_id),
        )

    def _mark_controlled(
        self,
        stock_unit_id: UUID,
        operator_id: UUID,
        schedule_class: str | None,
        operator_name: str | None,
    ) -> StockUnitInfo:
        self._require_operator(operator_id, "operator_id")
        schedule_class = (schedule_class or self._policy.default_schedule_class).strip()
        if not schedule_class:
            raise ValidationError("schedule_class must not be blank", field="schedule_class")

        unit = self._stock.set_schedule_class(stock_unit_id, schedule_class, operator_id)
        delta = unit.quantity - self._register.current_balance(stock_unit_id)
        opening_entry = None
        if delta:
            opening_entry = self._register.append_entry(
                stock_unit_id,
                AdjustmentContext(reason="Opening balance on controlled listing"),
                quantity_in=max(delta, 0),
                quantity_out=max(-delta, 0),
                recorded_by_id=operator_id,
                recorded_by_name=operator_name,
            )

        self._auditor.record(
            "StockUnit",
            stock_unit_id,
            AuditAction.CONTROLLED_STATUS_SET,
            operator_id,
            {
                "schedule_class": schedule_class,
                "opening_entry_id": opening_entry.id if opening_entry else None,
                "quantity": unit.quantity,
            },
        )
        return StockUnitInfo.from_model(unit)

    # ------------------------------------------------------------------
    # Stock intake
    # ------------------------------------------------------------------

    def receive_stock(self, request: ReceiveStockRequest) -> SettlementResult[StockUnitInfo]:
        """
        Goods received into an existing or new stock unit.

        A controlled unit also gets a RECEIPT register entry, which needs
        the supplier's name.
        """
        return self._run(
            "receive_stock",
            request.received_by_id,
            lambda: self._receive_stock(request),
            stock_unit_id=str(request.stock_unit_id) if request.stock_unit_id else None,
        )

    def _receive_stock(self, request: ReceiveStockRequest) -> StockUnitInfo:
        request.validate()
        self._require_operator(request.received_by_id, "received_by_id")

        outcome = self._stock.receive_stock(request, self._policy.default_markup)
        unit = outcome.unit
        if unit.is_controlled:
            self._register.append_entry(
                unit.id,
                ReceiptContext(
                    supplier_name=request.supplier_name,
                    supplier_license=request.supplier_license,
                    notes=request.reference,
                ),
                quantity_in=request.quantity,
                quantity_out=0,
                recorded_by_id=request.received_by_id,
                recorded_by_name=request.received_by_name,
            )

        self._auditor.record(
            "StockUnit",
            unit.id,
            AuditAction.STOCK_RECEIVED,
            request.received_by_id,
            {
                "receipt_id": outcome.receipt.id,
                "quantity": request.quantity,
                "unit_cost": outcome.receipt.unit_cost,
                "supplier_name": request.supplier_name,
                "reference": request.reference,
                "created_unit": outcome.created,
            },
        )
        return StockUnitInfo.from_model(unit)

    # ------------------------------------------------------------------
    # Customer sub-ledgers
    # ------------------------------------------------------------------

    def record_credit_payment(
        self,
        customer_id: UUID,
        amount: Decimal,
        operator_id: UUID,
        reference: str | None = None,
    ) -> SettlementResult[CustomerBalances]:
        """Apply a payment against the customer's outstanding credit."""
        return self._run(
            "record_credit_payment",
            operator_id,
            lambda: self._record_credit_payment(customer_id, amount, operator_id, reference),
        )

    def _record_credit_payment(
        self,
        customer_id: UUID,
        amount: Decimal,
        operator_id: UUID,
        reference: str | None,
    ) -> CustomerBalances:
        self._require_operator(operator_id, "operator_id")
        if isinstance(amount, float) or not isinstance(amount, (Decimal, int)):
            raise ValidationError("amount must be a Decimal amount", field="amount")
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", field="amount")

        self._customers.lock_customer(customer_id, require_active=False)
        description = f"Payment {reference}" if reference else "Payment"
        self._customers.apply_credit_delta(
            customer_id,
            -amount,
            CreditTransactionType.PAYMENT,
            description,
            operator_id=operator_id,
        )
        customer = self._customers.lock_customer(customer_id, require_active=False)
        self._auditor.record(
            "Customer",
            customer_id,
            AuditAction.CREDIT_PAYMENT_RECORDED,
            operator_id,
            {"amount": amount, "reference": reference, "credit_balance": customer.credit_balance},
        )
        return CustomerBalances.from_model(customer)

    def adjust_loyalty_points(
        self,
        customer_id: UUID,
        points: int,
        reason: str,
        operator_id: UUID,
    ) -> SettlementResult[CustomerBalances]:
        """Manual loyalty correction (signed)."""
        return self._run(
            "adjust_loyalty_points",
            operator_id,
            lambda: self._adjust_loyalty_points(customer_id, points, reason, operator_id),
        )

    def _adjust_loyalty_points(
        self,
        customer_id: UUID,
        points: int,
        reason: str,
        operator_id: UUID,
    ) -> CustomerBalances:
        self._require_operator(operator_id, "operator_id")
        if isinstance(points, bool) or not isinstance(points, int) or points == 0:
            raise ValidationError("points must be a non-zero integer", field="points")
        if not reason or not reason.strip():
            raise ValidationError("A loyalty adjustment needs a reason", field="reason")

        self._customers.lock_customer(customer_id, require_active=False)
        self._customers.apply_loyalty_delta(
            customer_id,
            points,
            LoyaltyTransactionType.ADJUST,
            reason.strip(),
            operator_id=operator_id,
        )
        customer = self._customers.lock_customer(customer_id, require_active=False)
        self._auditor.record(
            "Customer",
            customer_id,
            AuditAction.LOYALTY_ADJUSTED,
            operator_id,
            {"points": points, "reason": reason.strip(), "loyalty_points": customer.loyalty_points},
        )
        return CustomerBalances.from_model(customer)
