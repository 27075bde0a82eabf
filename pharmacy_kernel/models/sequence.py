"""
Module: pharmacy_kernel.models.sequence
Responsibility: Named counter rows backing SequenceService.
Architecture position: Kernel > Models.  May import from db/base.py only.

Each row is one named sequence (global register entry numbers, audit
sequence, per-day invoice numbers, per-branch-year register codes).  The row
is locked with SELECT ... FOR UPDATE while it is incremented, so values are
strictly monotonic and never reused after commit.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from pharmacy_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # e.g. "register_entry", "audit_event", "invoice:20260315"
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
