"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Settlement records are evidence: a sale, a register line, a loyalty or credit
movement.  They are never edited in place, only compensated by new records
(a SaleVoid and its reversing entries).  This module catches edits made
through SQLAlchemy before any SQL reaches the database.

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
    [before_delete event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Guarded single-statement UPDATEs issued by the ledger services
(``UPDATE stock_units SET quantity = quantity - :q ...``) bypass the ORM
flush and therefore these listeners; they only ever touch the mutable
master records (StockUnit, Customer).

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                      | Rule
----------------------------|--------------------------------------------------
SaleTransaction, SaleLine   | Never updated or deleted
SaleVoid                    | Never updated or deleted
LoyaltyTransaction          | Never updated or deleted
CreditTransaction           | Never updated or deleted
DispensingEvent / Line      | Never updated or deleted
StockReceipt                | Never updated or deleted
AuditEvent                  | Never updated or deleted
RegisterEntry               | Only verified_by_id / verified_at, only from NULL;
                            | never deleted
StockUnit                   | Never deleted (status is soft)

===============================================================================
USAGE
===============================================================================

    from pharmacy_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from pharmacy_kernel.exceptions import ImmutabilityViolationError
from pharmacy_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Fields that may be written exactly once on an otherwise frozen register entry
REGISTER_VERIFICATION_FIELDS = frozenset({"verified_by_id", "verified_at"})


def _blocked(target, operation: str, reason: str, field: str | None = None):
    entity_type = type(target).__name__
    extra = {
        "entity_type": entity_type,
        "entity_id": str(target.id),
        "operation": operation,
    }
    if field is not None:
        extra["field"] = field
    logger.error("immutability_violation_blocked", extra=extra)
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_columns(mapper, target) -> list[str]:
    # Collection changes (e.g. a child appended via back_populates) mark the
    # parent dirty without touching any of its columns.
    return [
        prop.key
        for prop in mapper.column_attrs
        if get_history(target, prop.key).has_changes()
    ]


def _check_append_only_update(mapper, connection, target):
    """Any column change on an append-only record is a violation."""
    changed = _changed_columns(mapper, target)
    if not changed:
        return
    _blocked(
        target,
        "UPDATE",
        f"{type(target).__name__} records are append-only and cannot be modified",
        field=changed[0],
    )


def _check_append_only_delete(mapper, connection, target):
    _blocked(
        target,
        "DELETE",
        f"{type(target).__name__} records are append-only and cannot be deleted",
    )


def _check_register_entry_update(mapper, connection, target):
    """
    Allow only the one-time verification stamp on a register entry.

    verified_by_id / verified_at may change from NULL to a value; every
    other column is frozen from insert.
    """
    for key in _changed_columns(mapper, target):
        if key not in REGISTER_VERIFICATION_FIELDS:
            _blocked(
                target,
                "UPDATE",
                f"Cannot modify field '{key}' on a register entry",
                field=key,
            )
        previous = get_history(target, key).deleted
        if previous and previous[0] is not None:
            _blocked(
                target,
                "UPDATE",
                f"Register entry already verified; '{key}' is frozen",
                field=key,
            )


def _check_stock_unit_delete(mapper, connection, target):
    _blocked(
        target,
        "DELETE",
        "Stock units are referenced by sales and the register; deactivate instead",
    )


def _listener_table():
    from pharmacy_kernel.models import (
        AuditEvent,
        CreditTransaction,
        DispensingEvent,
        DispensingLine,
        LoyaltyTransaction,
        RegisterEntry,
        SaleLine,
        SaleTransaction,
        SaleVoid,
        StockReceipt,
        StockUnit,
    )

    table = []
    for model in (
        SaleTransaction,
        SaleLine,
        SaleVoid,
        LoyaltyTransaction,
        CreditTransaction,
        DispensingEvent,
        DispensingLine,
        StockReceipt,
        AuditEvent,
    ):
        table.append((model, "before_update", _check_append_only_update))
        table.append((model, "before_delete", _check_append_only_delete))

    table.append((RegisterEntry, "before_update", _check_register_entry_update))
    table.append((RegisterEntry, "before_delete", _check_append_only_delete))
    table.append((StockUnit, "before_delete", _check_stock_unit_delete))
    return table


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: listeners already registered are skipped.
    """
    for target, event_name, listener_fn in _listener_table():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners():
    """Remove immutability enforcement event listeners.  FOR TESTING ONLY."""
    for target, event_name, listener_fn in _listener_table():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
    logger.debug("immutability_listeners_unregistered")
