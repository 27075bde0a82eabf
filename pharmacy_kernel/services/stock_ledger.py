"""
StockLedgerService -- on-hand quantity per stock unit.

Responsibility:
    The only writer of StockUnit.quantity.  Locks stock units in a fixed
    order, decrements with a single guarded UPDATE, increments on goods
    received and on compensating voids, and records StockReceipt rows.

Architecture position:
    Kernel > Services -- imperative shell, called by SettlementEngine.

Invariants enforced:
    - quantity >= 0.  The availability check and the decrement are one
      statement (``... WHERE quantity >= :q``), so no interleaving of
      another terminal's sale can oversell, even without the row lock.
    - Lock ordering: stock units are always locked in ascending id order,
      so two settlements over overlapping carts cannot deadlock.
    - Stock units are never deleted; deactivate() is soft.

Failure modes:
    - StockUnitNotFoundError, InsufficientStockError.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select, update

from pharmacy_kernel.db.types import round_money, to_money
from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.domain.dtos import NewStockUnitSpec, ReceiveStockRequest
from pharmacy_kernel.exceptions import InsufficientStockError, StockUnitNotFoundError, ValidationError
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.stock_unit import StockReceipt, StockUnit, StockUnitStatus
from pharmacy_kernel.services.base import BaseService

logger = get_logger("services.stock_ledger")


@dataclass(frozen=True)
class ReceiveOutcome:
    unit: StockUnit
    receipt: StockReceipt
    created: bool


class StockLedgerService(BaseService):
    def __init__(self, session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Locking and reads
    # ------------------------------------------------------------------

    def lock_units(self, stock_unit_ids: Iterable[UUID]) -> dict[UUID, StockUnit]:
        """
        Lock the given stock units in ascending id order.

        Unknown ids are simply absent from the result; the caller decides
        which line to blame.
        """
        ids = sorted(set(stock_unit_ids), key=str)
        if not ids:
            return {}
        rows = self.session.execute(
            select(StockUnit)
            .where(StockUnit.id.in_(ids))
            .order_by(StockUnit.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {row.id: row for row in rows}

    def lock_unit(self, stock_unit_id: UUID) -> StockUnit:
        unit = self.lock_units([stock_unit_id]).get(stock_unit_id)
        if unit is None:
            raise StockUnitNotFoundError(str(stock_unit_id))
        return unit

    def _reload(self, stock_unit_id: UUID) -> StockUnit | None:
        return self.session.execute(
            select(StockUnit)
            .where(StockUnit.id == stock_unit_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def reserve_and_decrement(
        self,
        stock_unit_id: UUID,
        quantity: int,
        line_index: int | None = None,
    ) -> int:
        """
        Atomically check availability and decrement.

        Returns:
            The new on-hand quantity.

        Raises:
            StockUnitNotFoundError: Unknown stock unit.
            InsufficientStockError: Fewer than ``quantity`` on hand.
        """
        if quantity <= 0:
            raise ValueError(f"Decrement quantity must be positive, got {quantity}")

        result = self.session.execute(
            update(StockUnit)
            .where(StockUnit.id == stock_unit_id, StockUnit.quantity >= quantity)
            .values(quantity=StockUnit.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        unit = self._reload(stock_unit_id)
        if result.rowcount == 0:
            if unit is None:
                raise StockUnitNotFoundError(str(stock_unit_id), line_index)
            logger.info(
                "stock_decrement_rejected",
                extra={
                    "stock_unit_id": str(stock_unit_id),
                    "requested": quantity,
                    "available": unit.quantity,
                },
            )
            raise InsufficientStockError(str(stock_unit_id), quantity, unit.quantity, line_index)

        logger.debug(
            "stock_decremented",
            extra={
                "stock_unit_id": str(stock_unit_id),
                "quantity": quantity,
                "new_quantity": unit.quantity,
            },
        )
        return unit.quantity

    def _increment(self, stock_unit_id: UUID, quantity: int) -> int:
        if quantity <= 0:
            raise ValueError(f"Increment quantity must be positive, got {quantity}")
        result = self.session.execute(
            update(StockUnit)
            .where(StockUnit.id == stock_unit_id)
            .values(quantity=StockUnit.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StockUnitNotFoundError(str(stock_unit_id))
        return self._reload(stock_unit_id).quantity

    def restore_stock(self, stock_unit_id: UUID, quantity: int) -> int:
        """Put quantity back on hand (compensating void or RETURN entry)."""
        new_quantity = self._increment(stock_unit_id, quantity)
        logger.debug(
            "stock_restored",
            extra={
                "stock_unit_id": str(stock_unit_id),
                "quantity": quantity,
                "new_quantity": new_quantity,
            },
        )
        return new_quantity

    def find_matching_unit(self, spec: NewStockUnitSpec) -> StockUnit | None:
        """Existing unit with the same batch number and product name (case-insensitive)."""
        return self.session.execute(
            select(StockUnit)
            .where(
                StockUnit.batch_number == spec.batch_number.strip(),
                func.lower(StockUnit.product_name) == spec.product_name.strip().lower(),
            )
            .order_by(StockUnit.id)
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def create_unit(
        self,
        spec: NewStockUnitSpec,
        unit_cost: Decimal,
        markup: Decimal,
        created_by_id: UUID,
    ) -> StockUnit:
        """Insert a new, empty stock unit priced at cost x markup unless a price is given."""
        unit_price = (
            to_money(spec.unit_price)
            if spec.unit_price is not None
            else round_money(unit_cost * markup)
        )
        unit = StockUnit(
            product_name=spec.product_name.strip(),
            generic_name=spec.generic_name,
            batch_number=spec.batch_number.strip(),
            expiry_date=spec.expiry_date,
            unit_price=unit_price,
            unit_cost=unit_cost,
            quantity=0,
            schedule_class=spec.schedule_class,
            status=StockUnitStatus.ACTIVE,
            created_by_id=created_by_id,
        )
        self.session.add(unit)
        self.session.flush()
        logger.info(
            "stock_unit_created",
            extra={
                "stock_unit_id": str(unit.id),
                "product_name": unit.product_name,
                "batch_number": unit.batch_number,
                "unit_price": unit_price,
            },
        )
        return unit

    def receive_stock(self, request: ReceiveStockRequest, markup: Decimal) -> ReceiveOutcome:
        """
        Record goods received.  Increments are always permitted.

        A new-unit spec matching an existing unit (same batch, same product
        name ignoring case) is merged into that unit.
        A merge that would change the unit's schedule class is refused.
        """
        unit_cost = to_money(request.unit_cost)
        created = False
        if request.stock_unit_id is not None:
            unit = self.lock_unit(request.stock_unit_id)
        else:
            unit = self.find_matching_unit(request.new_unit)
            if unit is None:
                unit = self.create_unit(request.new_unit, unit_cost, markup, request.received_by_id)
                created = True
            elif request.new_unit.schedule_class and request.new_unit.schedule_class != unit.schedule_class:
                raise ValidationError(
                    f"Batch {unit.batch_number} is already on hand with schedule "
                    f"{unit.schedule_class or 'none'}, not {request.new_unit.schedule_class}",
                    field="new_unit.schedule_class",
                )

        unit.unit_cost = unit_cost
        unit.updated_by_id = request.received_by_id
        self.session.flush()

        new_quantity = self._increment(unit.id, request.quantity)

        receipt = StockReceipt(
            stock_unit_id=unit.id,
            quantity=request.quantity,
            unit_cost=unit_cost,
            total_cost=round_money(unit_cost * request.quantity),
            supplier_name=request.supplier_name,
            reference=request.reference,
            received_by_id=request.received_by_id,
            received_at=self._clock.now(),
        )
        self.session.add(receipt)
        self.session.flush()

        logger.info(
            "stock_received",
            extra={
                "stock_unit_id": str(unit.id),
                "quantity": request.quantity,
                "new_quantity": new_quantity,
                "created_unit": created,
            },
        )
        return ReceiveOutcome(unit=unit, receipt=receipt, created=created)

    def deactivate(self, stock_unit_id: UUID, operator_id: UUID) -> StockUnit:
        unit = self.lock_unit(stock_unit_id)
        unit.status = StockUnitStatus.INACTIVE
        unit.updated_by_id = operator_id
        self.session.flush()
        logger.info("stock_unit_deactivated", extra={"stock_unit_id": str(stock_unit_id)})
        return unit

    def set_schedule_class(self, stock_unit_id: UUID, schedule_class: str, operator_id: UUID) -> StockUnit:
        unit = self.lock_unit(stock_unit_id)
        unit.schedule_class = schedule_class
        unit.updated_by_id = operator_id
        self.session.flush()
        return unit
