"""
PrescriptionService -- prescription records and their fulfilment projection.

Responsibility:
    Creates prescriptions, locks them for dispensing, builds the frozen
    snapshots the dispensing resolver works on, and writes the outcome of
    a validated dispensing (event rows, cumulative quantities, status).

Architecture position:
    Kernel > Services -- imperative shell.  Validation of a dispensing is
    the pure resolver's job (domain/dispensing.py); this service only
    persists what the resolver accepted.

Invariants enforced:
    - 0 <= quantity_dispensed <= quantity_prescribed (CHECK, plus the
      resolver's bound before any write).
    - Status is only ever the resolver's derive_status() of the stored
      quantities, except for explicit cancellation.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.db.types import round_money
from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.domain.dispensing import (
    ItemSnapshot,
    PrescriptionSnapshot,
    derive_status,
)
from pharmacy_kernel.domain.dtos import DispenseLineRequest, PrescriptionItemSpec
from pharmacy_kernel.domain.policy import SettlementPolicy
from pharmacy_kernel.exceptions import (
    PrescriptionNotDispensableError,
    PrescriptionNotFoundError,
    ValidationError,
)
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.prescription import (
    DispensingEvent,
    DispensingLine,
    Prescription,
    PrescriptionItem,
    PrescriptionStatus,
)
from pharmacy_kernel.models.stock_unit import StockUnit
from pharmacy_kernel.services.base import BaseService

logger = get_logger("services.prescription")


@dataclass(frozen=True)
class ResolvedDispenseLine:
    """A validated dispensing line with its price fixed."""

    request: DispenseLineRequest
    unit_price: Decimal
    is_substitution: bool

    @property
    def line_total(self) -> Decimal:
        return round_money(self.unit_price * self.request.quantity)


class PrescriptionService(BaseService):
    def __init__(self, session, clock: Clock | None = None, policy: SettlementPolicy | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._policy = policy or SettlementPolicy()

    def _has_controlled_item(self, items: Sequence[PrescriptionItemSpec]) -> bool:
        unit_ids = [item.stock_unit_id for item in items if item.stock_unit_id is not None]
        if not unit_ids:
            return False
        schedules = self.session.execute(
            select(StockUnit.schedule_class).where(StockUnit.id.in_(unit_ids))
        ).scalars().all()
        return any(schedule is not None for schedule in schedules)

    def create_prescription(
        self,
        prescription_number: str,
        patient_name: str,
        prescriber_name: str,
        items: Sequence[PrescriptionItemSpec],
        created_by_id: UUID,
        issued_on: date | None = None,
        expiry_date: date | None = None,
        patient_id: str | None = None,
        prescriber_reg_no: str | None = None,
        customer_id: UUID | None = None,
    ) -> Prescription:
        """
        Record a new prescription.

        Without an explicit expiry date the prescription is valid for the
        policy's validity period, shortened when any item is a controlled
        stock unit.

        Raises:
            ValidationError: Missing identification or empty / non-positive items.
        """
        if not prescription_number or not prescription_number.strip():
            raise ValidationError("prescription_number is required", field="prescription_number")
        if not patient_name or not patient_name.strip():
            raise ValidationError("patient_name is required", field="patient_name")
        if not prescriber_name or not prescriber_name.strip():
            raise ValidationError("prescriber_name is required", field="prescriber_name")
        if not items:
            raise ValidationError("A prescription needs at least one item", field="items")
        for index, item in enumerate(items):
            if item.quantity_prescribed <= 0:
                raise ValidationError(
                    "quantity_prescribed must be positive",
                    field=f"items[{index}].quantity_prescribed",
                )

        issued_on = issued_on or self._clock.today()
        if expiry_date is None:
            days = (
                self._policy.controlled_prescription_validity_days
                if self._has_controlled_item(items)
                else self._policy.prescription_validity_days
            )
            expiry_date = issued_on + timedelta(days=days)
        if expiry_date < issued_on:
            raise ValidationError("expiry_date is before issued_on", field="expiry_date")

        prescription = Prescription(
            prescription_number=prescription_number.strip(),
            patient_name=patient_name.strip(),
            patient_id=patient_id,
            prescriber_name=prescriber_name.strip(),
            prescriber_reg_no=prescriber_reg_no,
            customer_id=customer_id,
            issued_on=issued_on,
            expiry_date=expiry_date,
            status=PrescriptionStatus.PENDING,
            cancelled=False,
            created_by_id=created_by_id,
            items=[
                PrescriptionItem(
                    line_no=line_no,
                    stock_unit_id=item.stock_unit_id,
                    product_name=item.product_name,
                    dosage=item.dosage,
                    quantity_prescribed=item.quantity_prescribed,
                    quantity_dispensed=0,
                    substitution_allowed=item.substitution_allowed,
                )
                for line_no, item in enumerate(items, start=1)
            ],
        )
        self.session.add(prescription)
        self.session.flush()
        logger.info(
            "prescription_created",
            extra={
                "prescription_id": str(prescription.id),
                "prescription_number": prescription.prescription_number,
                "item_count": len(items),
            },
        )
        return prescription

    def lock_prescription(self, prescription_id: UUID) -> tuple[Prescription, list[PrescriptionItem]]:
        """Lock the prescription row, then its items in line order."""
        prescription = self.session.execute(
            select(Prescription)
            .where(Prescription.id == prescription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if prescription is None:
            raise PrescriptionNotFoundError(str(prescription_id))
        items = self.session.execute(
            select(PrescriptionItem)
            .where(PrescriptionItem.prescription_id == prescription_id)
            .order_by(PrescriptionItem.line_no)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return prescription, list(items)

    @staticmethod
    def snapshot(prescription: Prescription, items: Sequence[PrescriptionItem]) -> PrescriptionSnapshot:
        return PrescriptionSnapshot(
            prescription_id=prescription.id,
            expiry_date=prescription.expiry_date,
            cancelled=prescription.cancelled,
            items=tuple(
                ItemSnapshot(
                    item_id=item.id,
                    quantity_prescribed=item.quantity_prescribed,
                    quantity_dispensed=item.quantity_dispensed,
                    substitution_allowed=item.substitution_allowed,
                    stock_unit_id=item.stock_unit_id,
                )
                for item in items
            ),
        )

    def record_dispensing(
        self,
        prescription: Prescription,
        items: Sequence[PrescriptionItem],
        lines: Sequence[ResolvedDispenseLine],
        resulting_status: PrescriptionStatus,
        pharmacist_id: UUID,
        pharmacist_name: str | None = None,
        notes: str | None = None,
        counseling_provided: bool = False,
    ) -> DispensingEvent:
        """
        Persist an accepted dispensing: the event, its lines, the new
        cumulative quantities and the resulting status.
        """
        by_id = {item.id: item for item in items}
        for line in lines:
            item = by_id[line.request.prescription_item_id]
            item.quantity_dispensed = item.quantity_dispensed + line.request.quantity

        prescription.status = resulting_status
        prescription.updated_by_id = pharmacist_id

        total = round_money(sum((line.line_total for line in lines), Decimal("0")))
        event = DispensingEvent(
            prescription_id=prescription.id,
            total=total,
            resulting_status=resulting_status,
            pharmacist_id=pharmacist_id,
            pharmacist_name=pharmacist_name,
            notes=notes,
            counseling_provided=counseling_provided,
            occurred_at=self._clock.now(),
            lines=[
                DispensingLine(
                    line_no=line_no,
                    prescription_item_id=line.request.prescription_item_id,
                    stock_unit_id=line.request.stock_unit_id,
                    quantity=line.request.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                    is_substitution=line.is_substitution,
                )
                for line_no, line in enumerate(lines, start=1)
            ],
        )
        self.session.add(event)
        self.session.flush()
        logger.info(
            "dispensing_recorded",
            extra={
                "prescription_id": str(prescription.id),
                "event_id": str(event.id),
                "resulting_status": resulting_status.value,
                "total": total,
            },
        )
        return event

    def cancel(self, prescription_id: UUID, operator_id: UUID) -> Prescription:
        """
        Cancel a prescription that is not yet fully dispensed.

        Raises:
            PrescriptionNotDispensableError: Already dispensed or cancelled.
        """
        prescription, items = self.lock_prescription(prescription_id)
        status = derive_status(self.snapshot(prescription, items), self._clock.today())
        if status in (PrescriptionStatus.DISPENSED, PrescriptionStatus.CANCELLED):
            raise PrescriptionNotDispensableError(str(prescription_id), status.value)
        prescription.cancelled = True
        prescription.status = PrescriptionStatus.CANCELLED
        prescription.updated_by_id = operator_id
        self.session.flush()
        logger.info("prescription_cancelled", extra={"prescription_id": str(prescription_id)})
        return prescription

    def refresh_status(self, prescription_id: UUID) -> PrescriptionStatus:
        """Store the status as of today (moves lapsed prescriptions to EXPIRED)."""
        prescription, items = self.lock_prescription(prescription_id)
        status = derive_status(self.snapshot(prescription, items), self._clock.today())
        if PrescriptionStatus(prescription.status) != status:
            prescription.status = status
            self.session.flush()
        return status
