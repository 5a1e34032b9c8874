"""Database layer - engine, base classes, column types, and immutability."""

from expense_kernel.db.base import UUID, Base, TimestampedBase, UTCDateTime, UUIDString
from expense_kernel.db.engine import create_tables, get_engine, get_session, session_scope

__all__ = [
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TimestampedBase",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
