"""
ControlledRegisterService -- the controlled-substance balance chain.

Responsibility:
    Appends register entries for controlled stock units, each carrying the
    balance before and after the movement, and verifies / validates the
    per-unit chain.

Architecture position:
    Kernel > Services -- imperative shell, called by SettlementEngine.

Invariants enforced:
    - Per unit, entries form a chain: entry k's balance_before equals entry
      k-1's balance_after; the first entry starts from 0.
    - balance_after >= 0.
    - balance_before is read while the unit's row lock is held, and the
      chain position is protected by UNIQUE(stock_unit_id, unit_sequence).
    - Every entry carries the context its transaction type requires
      (guaranteed by the RegisterContext variant it is built from).

Failure modes:
    - StockUnitNotFoundError, NotControlledError
    - ValidationError (direction), NegativeRegisterBalanceError
    - ConcurrencyConflictError when another writer claimed the same chain
      position
    - RegisterEntryNotFoundError, AlreadyVerifiedError on verification
    - BalanceChainBrokenError from validate_chain()
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from pharmacy_kernel.domain.clock import Clock, SystemClock
from pharmacy_kernel.domain.policy import SettlementPolicy
from pharmacy_kernel.domain.register_context import RegisterContext
from pharmacy_kernel.exceptions import (
    AlreadyVerifiedError,
    BalanceChainBrokenError,
    ConcurrencyConflictError,
    NegativeRegisterBalanceError,
    NotControlledError,
    RegisterEntryNotFoundError,
    StockUnitNotFoundError,
)
from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.register import RegisterEntry
from pharmacy_kernel.models.stock_unit import StockUnit
from pharmacy_kernel.services.base import BaseService
from pharmacy_kernel.services.sequence_service import SequenceService

logger = get_logger("services.controlled_register")


class ControlledRegisterService(BaseService):
    """
    Contract:
        append_entry() takes the stock unit's row lock itself.  Callers that
        already hold it (the settlement engine) re-acquire it at no cost.
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        policy: SettlementPolicy | None = None,
        sequence_service: SequenceService | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._policy = policy or SettlementPolicy()
        self._sequence_service = sequence_service or SequenceService(session)

    def _lock_unit(self, stock_unit_id: UUID) -> StockUnit:
        unit = self.session.execute(
            select(StockUnit)
            .where(StockUnit.id == stock_unit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if unit is None:
            raise StockUnitNotFoundError(str(stock_unit_id))
        return unit

    def latest_entry(self, stock_unit_id: UUID) -> RegisterEntry | None:
        return self.session.execute(
            select(RegisterEntry)
            .where(RegisterEntry.stock_unit_id == stock_unit_id)
            .order_by(RegisterEntry.unit_sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    def current_balance(self, stock_unit_id: UUID) -> int:
        """balance_after of the unit's latest entry, 0 when it has none."""
        latest = self.latest_entry(stock_unit_id)
        return latest.balance_after if latest is not None else 0

    def _entry_code(self, year: int, number: int) -> str:
        return f"{self._policy.register_prefix}-{self._policy.branch_code}-{year}-{number:06d}"

    def append_entry(
        self,
        stock_unit_id: UUID,
        context: RegisterContext,
        quantity_in: int,
        quantity_out: int,
        recorded_by_id: UUID,
        recorded_by_name: str | None = None,
        sale_id: UUID | None = None,
        dispensing_event_id: UUID | None = None,
        reverses_entry_id: UUID | None = None,
    ) -> RegisterEntry:
        """
        Append one entry to the unit's chain and flush it.

        Returns:
            The created RegisterEntry.
        """
        unit = self._lock_unit(stock_unit_id)
        if not unit.is_controlled:
            raise NotControlledError(str(stock_unit_id))

        context.check_quantities(quantity_in, quantity_out)

        latest = self.latest_entry(stock_unit_id)
        balance_before = latest.balance_after if latest is not None else 0
        unit_sequence = latest.unit_sequence + 1 if latest is not None else 1
        balance_after = balance_before + quantity_in - quantity_out
        if balance_after < 0:
            raise NegativeRegisterBalanceError(str(stock_unit_id), balance_before, quantity_out)

        now = self._clock.now()
        entry_number = self._sequence_service.next_value(SequenceService.REGISTER_ENTRY)
        code_number = self._sequence_service.next_value(
            SequenceService.register_code_sequence(self._policy.branch_code, now.year)
        )

        entry = RegisterEntry(
            entry_number=entry_number,
            entry_code=self._entry_code(now.year, code_number),
            stock_unit_id=stock_unit_id,
            unit_sequence=unit_sequence,
            transaction_type=context.transaction_type,
            quantity_in=quantity_in,
            quantity_out=quantity_out,
            balance_before=balance_before,
            balance_after=balance_after,
            product_name=unit.product_name,
            batch_number=unit.batch_number,
            schedule_class=unit.schedule_class,
            sale_id=sale_id,
            dispensing_event_id=dispensing_event_id,
            reverses_entry_id=reverses_entry_id,
            recorded_by_id=recorded_by_id,
            recorded_by_name=recorded_by_name,
            occurred_at=now,
            **context.to_columns(),
        )
        self.session.add(entry)
        try:
            self.session.flush()
        except IntegrityError as exc:
            if "unit_sequence" not in str(exc.orig):
                raise
            logger.warning(
                "register_chain_position_taken",
                extra={"stock_unit_id": str(stock_unit_id), "unit_sequence": unit_sequence},
            )
            raise ConcurrencyConflictError(
                "StockUnit", str(stock_unit_id), f"register position {unit_sequence} already taken"
            ) from exc

        logger.info(
            "register_entry_appended",
            extra={
                "entry_code": entry.entry_code,
                "stock_unit_id": str(stock_unit_id),
                "transaction_type": context.transaction_type.value,
                "balance_before": balance_before,
                "balance_after": balance_after,
            },
        )
        return entry

    def verify_entry(self, entry_id: UUID, verified_by_id: UUID) -> RegisterEntry:
        """
        Stamp a register entry as verified.  Allowed once per entry.

        Raises:
            RegisterEntryNotFoundError, AlreadyVerifiedError
        """
        entry = self.session.execute(
            select(RegisterEntry)
            .where(RegisterEntry.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if entry is None:
            raise RegisterEntryNotFoundError(str(entry_id))
        if entry.verified_by_id is not None:
            raise AlreadyVerifiedError(str(entry_id), str(entry.verified_by_id))

        entry.verified_by_id = verified_by_id
        entry.verified_at = self._clock.now()
        self.session.flush()
        logger.info(
            "register_entry_verified",
            extra={"entry_code": entry.entry_code, "verified_by_id": str(verified_by_id)},
        )
        return entry

    def entries_for_sale(self, sale_id: UUID) -> list[RegisterEntry]:
        return list(
            self.session.execute(
                select(RegisterEntry)
                .where(RegisterEntry.sale_id == sale_id)
                .order_by(RegisterEntry.entry_number)
            ).scalars().all()
        )

    def validate_chain(self, stock_unit_id: UUID) -> int:
        """
        Walk the unit's entries in chain order and check every link.

        Returns:
            The number of entries checked.

        Raises:
            BalanceChainBrokenError: A gap in positions, a balance_before
                that does not continue the previous balance_after, or a
                row whose own arithmetic does not add up.
        """
        entries = self.session.execute(
            select(RegisterEntry)
            .where(RegisterEntry.stock_unit_id == stock_unit_id)
            .order_by(RegisterEntry.unit_sequence)
            .execution_options(populate_existing=True)
        ).scalars().all()

        expected_balance = 0
        for position, entry in enumerate(entries, start=1):
            if entry.unit_sequence != position or entry.balance_before != expected_balance:
                logger.critical(
                    "register_chain_broken",
                    extra={"stock_unit_id": str(stock_unit_id), "unit_sequence": entry.unit_sequence},
                )
                raise BalanceChainBrokenError(
                    str(stock_unit_id), entry.unit_sequence, expected_balance, entry.balance_before
                )
            computed = entry.balance_before + entry.quantity_in - entry.quantity_out
            if entry.balance_after != computed or computed < 0:
                raise BalanceChainBrokenError(
                    str(stock_unit_id), entry.unit_sequence, computed, entry.balance_after
                )
            expected_balance = entry.balance_after

        return len(entries)
