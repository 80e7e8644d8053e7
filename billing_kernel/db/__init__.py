"""Database layer - engine, base classes, money helpers."""

from billing_kernel.db.base import UUID, Base, ScopedBase, TrackedBase, UUIDString
from billing_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session,
    init_engine_from_url,
    session_scope,
)
from billing_kernel.db.types import check_money_precision, round_money, to_decimal

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "ScopedBase",
    "UUIDString",
    "UUID",
    "check_money_precision",
    "round_money",
    "to_decimal",
]
