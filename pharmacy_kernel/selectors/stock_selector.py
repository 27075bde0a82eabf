"""Read-only stock queries."""

from datetime import date
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.domain.dtos import StockUnitInfo
from pharmacy_kernel.models.stock_unit import StockReceipt, StockUnit, StockUnitStatus
from pharmacy_kernel.selectors.base import BaseSelector


class StockSelector(BaseSelector):
    def get(self, stock_unit_id: UUID) -> StockUnitInfo | None:
        unit = self.session.get(StockUnit, stock_unit_id)
        return StockUnitInfo.from_model(unit) if unit else None

    def list_units(self, active_only: bool = True, controlled_only: bool = False) -> list[StockUnitInfo]:
        query = select(StockUnit).order_by(StockUnit.product_name, StockUnit.batch_number)
        if active_only:
            query = query.where(StockUnit.status == StockUnitStatus.ACTIVE.value)
        if controlled_only:
            query = query.where(StockUnit.schedule_class.is_not(None))
        return [StockUnitInfo.from_model(unit) for unit in self.session.execute(query).scalars()]

    def low_stock(self, threshold: int) -> list[StockUnitInfo]:
        """Active units with quantity at or below ``threshold``."""
        query = (
            select(StockUnit)
            .where(
                StockUnit.status == StockUnitStatus.ACTIVE.value,
                StockUnit.quantity <= threshold,
            )
            .order_by(StockUnit.quantity, StockUnit.product_name)
        )
        return [StockUnitInfo.from_model(unit) for unit in self.session.execute(query).scalars()]

    def expiring(self, on_or_before: date) -> list[StockUnitInfo]:
        """Active units with stock on hand that expire on or before the date."""
        query = (
            select(StockUnit)
            .where(
                StockUnit.status == StockUnitStatus.ACTIVE.value,
                StockUnit.quantity > 0,
                StockUnit.expiry_date <= on_or_before,
            )
            .order_by(StockUnit.expiry_date)
        )
        return [StockUnitInfo.from_model(unit) for unit in self.session.execute(query).scalars()]

    def received_quantity(self, stock_unit_id: UUID) -> int:
        """Total quantity ever received into a unit through goods-received."""
        quantities = self.session.execute(
            select(StockReceipt.quantity).where(StockReceipt.stock_unit_id == stock_unit_id)
        ).scalars().all()
        return sum(quantities)
