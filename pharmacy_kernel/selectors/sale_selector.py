"""Read-only sale queries."""

from datetime import date
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.domain.dtos import SaleInfo
from pharmacy_kernel.models.sale import SaleTransaction, SaleVoid
from pharmacy_kernel.selectors.base import BaseSelector


class SaleSelector(BaseSelector):
    def _is_voided(self, sale_id: UUID) -> bool:
        return self.session.execute(
            select(SaleVoid.id).where(SaleVoid.sale_id == sale_id)
        ).scalar_one_or_none() is not None

    def get(self, sale_id: UUID) -> SaleInfo | None:
        sale = self.session.get(SaleTransaction, sale_id)
        return SaleInfo.from_model(sale, self._is_voided(sale.id)) if sale else None

    def by_invoice(self, invoice_number: str) -> SaleInfo | None:
        sale = self.session.execute(
            select(SaleTransaction).where(SaleTransaction.invoice_number == invoice_number)
        ).scalar_one_or_none()
        return SaleInfo.from_model(sale, self._is_voided(sale.id)) if sale else None

    def for_customer(self, customer_id: UUID) -> list[SaleInfo]:
        sales = self.session.execute(
            select(SaleTransaction)
            .where(SaleTransaction.customer_id == customer_id)
            .order_by(SaleTransaction.occurred_at, SaleTransaction.invoice_number)
        ).scalars().all()
        return [SaleInfo.from_model(sale, self._is_voided(sale.id)) for sale in sales]

    def invoice_numbers_for_day(self, day: date) -> list[str]:
        prefix_day = day.strftime("%Y%m%d")
        return list(
            self.session.execute(
                select(SaleTransaction.invoice_number)
                .where(SaleTransaction.invoice_number.like(f"%-{prefix_day}-%"))
                .order_by(SaleTransaction.invoice_number)
            ).scalars()
        )
