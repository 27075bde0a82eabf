"""Read-only prescription queries."""

from dataclasses import replace
from datetime import date
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.domain.dispensing import ItemSnapshot, PrescriptionSnapshot, derive_status
from pharmacy_kernel.domain.dtos import PrescriptionInfo
from pharmacy_kernel.models.prescription import DispensingEvent, Prescription
from pharmacy_kernel.selectors.base import BaseSelector


class PrescriptionSelector(BaseSelector):
    def get(self, prescription_id: UUID, as_of: date | None = None) -> PrescriptionInfo | None:
        """
        The prescription with its items.

        With ``as_of``, the status is re-derived for that day, so a
        prescription whose expiry passed since the last dispensing shows
        as EXPIRED.
        """
        prescription = self.session.get(Prescription, prescription_id)
        if prescription is None:
            return None
        info = PrescriptionInfo.from_model(prescription)
        if as_of is None:
            return info
        snapshot = PrescriptionSnapshot(
            prescription_id=info.id,
            expiry_date=info.expiry_date,
            cancelled=prescription.cancelled,
            items=tuple(
                ItemSnapshot(
                    item_id=item.id,
                    quantity_prescribed=item.quantity_prescribed,
                    quantity_dispensed=item.quantity_dispensed,
                    substitution_allowed=item.substitution_allowed,
                    stock_unit_id=item.stock_unit_id,
                )
                for item in info.items
            ),
        )
        return replace(info, status=derive_status(snapshot, as_of))

    def by_number(self, prescription_number: str) -> PrescriptionInfo | None:
        prescription = self.session.execute(
            select(Prescription).where(Prescription.prescription_number == prescription_number)
        ).scalar_one_or_none()
        return PrescriptionInfo.from_model(prescription) if prescription else None

    def dispensing_event_ids(self, prescription_id: UUID) -> list[UUID]:
        return list(
            self.session.execute(
                select(DispensingEvent.id)
                .where(DispensingEvent.prescription_id == prescription_id)
                .order_by(DispensingEvent.occurred_at, DispensingEvent.id)
            ).scalars()
        )
