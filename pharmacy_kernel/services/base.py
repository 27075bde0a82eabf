"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every service in the kernel layer.  Services use ``session.flush()``,
    never ``session.commit()``: the SettlementEngine owns the transaction
    boundary, so stock, register and customer writes either all commit
    together or all roll back together.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Guarantees:
        - The service never calls ``session.commit()`` or
          ``session.rollback()``.

    Non-goals:
        - Read-only queries belong in ``pharmacy_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
