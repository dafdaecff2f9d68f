"""Database layer - engine, base classes, and decimal types."""

from costing_kernel.db.base import UUID, Base, UUIDString
from costing_kernel.db.engine import (
    build_engine,
    build_engine_from_settings,
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_config,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from costing_kernel.db.types import Cost, ExactDecimal, Identifier, Qty, round_cost, to_decimal

__all__ = [
    "build_engine",
    "build_engine_from_settings",
    "init_engine_from_url",
    "init_engine_from_config",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "drop_tables",
    "reset_engine",
    "Base",
    "UUIDString",
    "UUID",
    "ExactDecimal",
    "Cost",
    "Qty",
    "Identifier",
    "round_cost",
    "to_decimal",
]
