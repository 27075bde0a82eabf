"""Read-only controlled-substance register queries."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from pharmacy_kernel.domain.dtos import RegisterEntryInfo
from pharmacy_kernel.models.register import RegisterEntry, RegisterTransactionType
from pharmacy_kernel.selectors.base import BaseSelector


class RegisterSelector(BaseSelector):
    def get_entry(self, entry_id: UUID) -> RegisterEntryInfo | None:
        entry = self.session.get(RegisterEntry, entry_id)
        return RegisterEntryInfo.from_model(entry) if entry else None

    def entries_for_unit(self, stock_unit_id: UUID) -> list[RegisterEntryInfo]:
        """The unit's chain in order."""
        entries = self.session.execute(
            select(RegisterEntry)
            .where(RegisterEntry.stock_unit_id == stock_unit_id)
            .order_by(RegisterEntry.unit_sequence)
        ).scalars()
        return [RegisterEntryInfo.from_model(entry) for entry in entries]

    def current_balance(self, stock_unit_id: UUID) -> int:
        balance = self.session.execute(
            select(RegisterEntry.balance_after)
            .where(RegisterEntry.stock_unit_id == stock_unit_id)
            .order_by(RegisterEntry.unit_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()
        return balance or 0

    def entries_between(
        self,
        start: datetime,
        end: datetime,
        transaction_type: RegisterTransactionType | None = None,
    ) -> list[RegisterEntryInfo]:
        """Entries with start <= occurred_at < end, in entry_number order."""
        query = select(RegisterEntry).where(
            RegisterEntry.occurred_at >= start,
            RegisterEntry.occurred_at < end,
        )
        if transaction_type is not None:
            query = query.where(RegisterEntry.transaction_type == transaction_type.value)
        entries = self.session.execute(query.order_by(RegisterEntry.entry_number)).scalars()
        return [RegisterEntryInfo.from_model(entry) for entry in entries]

    def unverified(self) -> list[RegisterEntryInfo]:
        entries = self.session.execute(
            select(RegisterEntry)
            .where(RegisterEntry.verified_by_id.is_(None))
            .order_by(RegisterEntry.entry_number)
        ).scalars()
        return [RegisterEntryInfo.from_model(entry) for entry in entries]
