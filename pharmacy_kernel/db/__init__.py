"""Database layer - engine, base classes, types, and immutability."""

from pharmacy_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from pharmacy_kernel.db.engine import (
    build_engine,
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)
from pharmacy_kernel.db.types import Money, Quantity, Sequence

__all__ = [
    "build_engine",
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "Money",
    "Quantity",
    "Sequence",
]
