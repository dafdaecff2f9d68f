"""
Module: costing_kernel.db.locking
Responsibility: Stock-level transaction locks and translation of
    store-level lock failures into the kernel's retryable ContentionError.
Architecture position: Kernel > DB.  Imports exceptions and logging only.

Failure modes translated:
    - PostgreSQL 55P03 lock_not_available (lock_timeout exceeded)
    - PostgreSQL 40P01 deadlock_detected
    - PostgreSQL 40001 serialization_failure
    - SQLite "database is locked" (busy timeout exceeded)
Everything else propagates unchanged.
"""

import hashlib
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from costing_kernel.exceptions import ContentionError
from costing_kernel.logging_config import get_logger

logger = get_logger("db.locking")

_CONTENTION_SQLSTATES = frozenset({"55P03", "40P01", "40001"})

_CONTENTION_MESSAGES = (
    "database is locked",
    "lock timeout",
    "deadlock detected",
    "could not obtain lock",
)


def is_contention_error(exc: DBAPIError) -> bool:
    """True if the driver error is a lock wait timeout, deadlock or serialization abort."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONTENTION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(fragment in message for fragment in _CONTENTION_MESSAGES)


@contextmanager
def lock_errors_as_contention(operation: str) -> Iterator[None]:
    """Re-raise lock wait failures inside the block as ContentionError."""
    try:
        yield
    except DBAPIError as exc:
        if not is_contention_error(exc):
            raise
        detail = str(getattr(exc, "orig", exc))
        logger.warning("lock_contention", extra={
            "operation": operation,
            "detail": detail,
        })
        raise ContentionError(operation, detail) from exc


def stock_lock_key(product_id: str, warehouse_id: str) -> int:
    """Signed 64-bit advisory lock key for one product at one warehouse."""
    digest = hashlib.sha256(f"{product_id}|{warehouse_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def acquire_stock_lock(session: Session, product_id: str, warehouse_id: str) -> None:
    """
    Serialize stock decisions for (product, warehouse) until the transaction ends.

    PostgreSQL takes a transaction-scoped advisory lock, bounded by the
    connection's lock_timeout.  SQLite already runs every transaction as
    BEGIN IMMEDIATE, which holds the database write lock, so there is
    nothing further to take.

    Raises:
        ContentionError: The lock wait timed out or deadlocked.
    """
    if session.get_bind().dialect.name != "postgresql":
        return
    key = stock_lock_key(product_id, warehouse_id)
    with lock_errors_as_contention("acquire_stock_lock"):
        session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
    logger.debug("stock_lock_acquired", extra={
        "product_id": product_id,
        "warehouse_id": warehouse_id,
        "lock_key": key,
    })
