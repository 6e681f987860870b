"""Database layer - engine, base classes and transactional scopes."""

from backoffice_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from backoffice_kernel.db.engine import (
    SessionFactory,
    create_engine,
    create_session_factory,
    create_tables,
    read_scope,
    transaction_scope,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "create_tables",
    "read_scope",
    "transaction_scope",
    "SessionFactory",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
]
