"""
Module: costing_kernel.db.engine
Responsibility: Build SQLAlchemy engines with the locking behaviour the
    batch ledger relies on, hold the process-wide engine and session
    factory, and provide the commit-or-rollback unit of work.
Architecture position: Kernel > DB.  May import from db/base.py and
    models (table creation only).  Configuration arrives as a plain
    settings object; this module never imports costing_config.

Invariants enforced:
    - PostgreSQL sessions run at READ COMMITTED; mutations lock the batch
      rows they touch with SELECT ... FOR UPDATE.
    - Lock waits are bounded: PostgreSQL gets ``SET lock_timeout`` on every
      new connection; SQLite gets a busy timeout of the same length.
    - SQLite (development and test store) ignores FOR UPDATE, so every
      transaction is opened with BEGIN IMMEDIATE.  Writers serialize on the
      database lock instead of racing on stale reads.

Failure modes:
    - RuntimeError if the module-level engine is used before
      init_engine_from_url() / init_engine_from_config().
    - OperationalError when a lock wait exceeds the configured timeout
      (callers translate it with lock_errors_as_contention).
"""

import atexit
from contextlib import contextmanager
from typing import Generator, Protocol

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from costing_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


class EngineSettings(Protocol):
    """Connection settings; CostingConfig satisfies this."""

    database_url: str
    echo: bool
    pool_size: int
    max_overflow: int
    pool_timeout: int
    lock_timeout_ms: int


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    lock_timeout_ms: int = 5000,
) -> Engine:
    """
    Build an engine without touching module-level state.

    Args:
        database_url: PostgreSQL or SQLite connection URL.
        echo: Log all SQL statements.
        pool_size: Pooled connections (PostgreSQL only).
        max_overflow: Connections beyond pool_size (PostgreSQL only).
        pool_timeout: Seconds to wait for a pooled connection.
        lock_timeout_ms: Upper bound on any single row/database lock wait.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": lock_timeout_ms / 1000,
            },
        )
        _serialize_sqlite_writers(engine)
        return engine

    engine = create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
        isolation_level="READ COMMITTED",
    )
    _bound_postgres_lock_waits(engine, lock_timeout_ms)
    return engine


def build_engine_from_settings(settings: EngineSettings) -> Engine:
    return build_engine(
        settings.database_url,
        echo=settings.echo,
        pool_size=settings.pool_size,
        max_overflow=settings.max_overflow,
        pool_timeout=settings.pool_timeout,
        lock_timeout_ms=settings.lock_timeout_ms,
    )


def _serialize_sqlite_writers(engine: Engine) -> None:
    # pysqlite's own BEGIN handling is disabled so ours can be IMMEDIATE
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _bound_postgres_lock_waits(engine: Engine, lock_timeout_ms: int) -> None:
    @event.listens_for(engine, "connect")
    def _set_lock_timeout(dbapi_connection, connection_record):
        with dbapi_connection.cursor() as cursor:
            cursor.execute(f"SET lock_timeout = {int(lock_timeout_ms)}")


def _install(engine: Engine, lock_timeout_ms: int) -> Engine:
    global _engine, _SessionFactory
    if _engine is not None and _engine is not engine:
        _engine.dispose()
    _engine = engine
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
    logger.info("engine_initialized", extra={
        "dialect": engine.dialect.name,
        "lock_timeout_ms": lock_timeout_ms,
    })
    return engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    lock_timeout_ms: int = 5000,
) -> Engine:
    """Build an engine and make it the process-wide default."""
    engine = build_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        lock_timeout_ms=lock_timeout_ms,
    )
    return _install(engine, lock_timeout_ms)


def init_engine_from_config(settings: EngineSettings) -> Engine:
    """Like init_engine_from_url(), taking everything from a CostingConfig."""
    return _install(build_engine_from_settings(settings), settings.lock_timeout_ms)


def _require_factory() -> sessionmaker[Session]:
    if _SessionFactory is None:
        raise RuntimeError(
            "Engine not initialized. Call init_engine_from_url() or init_engine_from_config() first."
        )
    return _SessionFactory


def get_engine() -> Engine:
    _require_factory()
    return _engine


def get_session() -> Session:
    return _require_factory()()


def get_session_factory() -> sessionmaker[Session]:
    """Session factory for callers that open one session per unit of work or thread."""
    return _require_factory()


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    One unit of work: commit on normal exit, roll back and re-raise on error.

    Usage:
        with session_scope() as session:
            CostingEngine(session, clock).commit(quote)
    """
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create inventory_batches, stock_movements, product_costing and consumption_records."""
    from costing_kernel.db.base import Base
    import costing_kernel.models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """Drop every costing table.  Tests and local resets only."""
    from costing_kernel.db.base import Base
    import costing_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """Dispose the process-wide engine and forget the session factory."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None


atexit.register(reset_engine)
