"""
Module: fleet_kernel.db.engine
Responsibility: One process-wide SQLAlchemy engine, its session factory,
    and the commit-or-rollback scope the workflow coordinator runs every
    operation inside.
Architecture position: Kernel > DB.  Imports db/base.py and, inside
    functions, db/immutability.py and the models package.

Backends:
    - PostgreSQL (production): READ COMMITTED, row locks via
      SELECT ... FOR UPDATE, version-checked UPDATEs.
    - File-backed SQLite (embedding, tests): FOR UPDATE is a no-op, so the
      database-wide write lock stands in for row locks.  A transaction
      that loses the race fails with "database is locked", which the
      coordinator reports as a retryable conflict.

Failure modes:
    - RuntimeError from any accessor used before init_engine_from_url().
"""

import atexit
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fleet_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "database engine is not initialized; call init_engine_from_url() first"


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Create the engine and session factory, replacing any previous ones.

    Also registers the ORM immutability listeners (idempotent), so the
    ledger and invoices are guarded for every session the factory makes.

    ``pool_timeout`` doubles as SQLite's busy timeout: how long a writer
    waits for the database lock before giving up.
    """
    global _engine, _factory

    if _engine is not None:
        _engine.dispose()

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": pool_timeout, "check_same_thread": False},
        )
        event.listen(engine, "connect", _on_sqlite_connect)
        event.listen(engine, "begin", _on_sqlite_begin)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            isolation_level="READ COMMITTED",
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=pool_pre_ping,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
        )

    _engine = engine
    _factory = sessionmaker(bind=engine, expire_on_commit=False)

    from fleet_kernel.db.immutability import register_immutability_listeners

    register_immutability_listeners()

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": engine.dialect.name, "echo": echo},
    )
    return engine


def _on_sqlite_connect(dbapi_connection, connection_record):
    # pysqlite's implicit BEGIN skips SELECTs; issue our own instead.
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _on_sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Return the factory; threads each draw their own session from it."""
    if _factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _factory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """
    Yield a session that is committed on clean exit and rolled back on error.

    The session is always closed.  Exceptions propagate unchanged after
    the rollback.
    """
    session = (factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back")
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create every kernel table that does not exist yet."""
    from fleet_kernel.db.base import Base
    import fleet_kernel.models  # noqa: F401

    Base.metadata.create_all(get_engine())


def drop_tables() -> None:
    """Drop every kernel table.  Destroys all workflow data."""
    from fleet_kernel.db.base import Base
    import fleet_kernel.models  # noqa: F401

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose of the engine and forget the factory (test teardown)."""
    global _engine, _factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _factory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
