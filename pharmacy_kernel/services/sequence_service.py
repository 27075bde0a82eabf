"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing numbers for register entries, register
    entry codes, invoice numbers and audit events.  Uses the
    ``sequence_counters`` table with row-level locking
    (``SELECT ... FOR UPDATE``), never an aggregate max + 1 over the
    numbered table, which races under concurrent settlements.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Strict monotonicity per sequence name.
    - Transactional: an increment is visible only after the caller
      commits; a rollback returns the value.

Failure modes:
    - IntegrityError on concurrent first creation of a counter, handled via
      savepoint rollback and re-read.

Lock ordering:
    Within one settlement, counters are always taken in the order
    register_entry, register_code, invoice, audit_event.  Every caller
    follows that order, so counter locks cannot deadlock.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from pharmacy_kernel.logging_config import get_logger
from pharmacy_kernel.models.sequence import SequenceCounter
from pharmacy_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Usage:
        number = SequenceService(session).next_value(SequenceService.REGISTER_ENTRY)
    """

    REGISTER_ENTRY = "register_entry"
    AUDIT_EVENT = "audit_event"

    @staticmethod
    def invoice_sequence(day_key: str) -> str:
        """Per-day invoice counter, e.g. ``invoice:20260315``."""
        return f"invoice:{day_key}"

    @staticmethod
    def register_code_sequence(branch_code: str, year: int) -> str:
        """Per-branch, per-year register code counter."""
        return f"register_code:{branch_code}:{year}"

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self.session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the named counter (creating it on first use) and increment it.

        Returns:
            The next value, always > 0.
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # First use; another transaction may create it simultaneously.
            # The savepoint keeps the rest of the settlement intact.
            savepoint = self.session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self.session.add(counter)
                self.session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self.session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never used."""
        counter = self.session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
