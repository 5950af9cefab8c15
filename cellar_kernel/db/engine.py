"""
Engine and session factory for the cellar ledger.

One process-wide engine is initialized from a database URL.  PostgreSQL
runs at READ COMMITTED and the services take ``SELECT ... FOR UPDATE``
row locks on vessels, batches and counters.  SQLite has no row locks, so
every SQLite transaction opens with ``BEGIN IMMEDIATE``: concurrent
writers queue on the database write lock and a writer that waits past
the busy timeout gets ``OperationalError: database is locked`` (mapped to
ConcurrencyConflictError by the ledger facade).

Sessions never commit on their own; CellarLedger owns the transaction.
"""

import atexit
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from cellar_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None

_NOT_INITIALIZED = "database engine not initialized; call init_engine_from_url() first"


def _sqlite_engine(url: str, echo: bool, busy_timeout: int) -> Engine:
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
    )

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _record):
        # Hand BEGIN over to SQLAlchemy so the "begin" hook below decides it.
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _begin(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def _postgres_engine(url: str, echo: bool, pool_size: int, pool_recycle: int) -> Engine:
    return create_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=pool_size // 2,
        pool_pre_ping=True,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    pool_recycle: int = 1800,
    sqlite_busy_timeout: int = 30,
) -> Engine:
    """
    Create the engine and session factory, replacing any previous pair.

    Args:
        database_url: ``postgresql://...`` or ``sqlite:///path/cellar.db``.
        echo: Log every SQL statement.
        pool_size: PostgreSQL connection pool size.
        pool_recycle: Seconds before a pooled PostgreSQL connection is replaced.
        sqlite_busy_timeout: Seconds a SQLite writer waits for the write lock.
    """
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()

    if database_url.startswith("sqlite"):
        _engine = _sqlite_engine(database_url, echo, sqlite_busy_timeout)
    else:
        _engine = _postgres_engine(database_url, echo, pool_size, pool_recycle)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory handed to CellarLedger; each call opens an independent session."""
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)
    return _session_factory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Commit on clean exit, roll back and re-raise otherwise; always close."""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    from cellar_kernel.db.base import Base
    from cellar_kernel.models import import_all_models

    import_all_models()
    Base.metadata.create_all(get_engine())
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop every ledger table. Tests only."""
    from cellar_kernel.db.base import Base
    from cellar_kernel.models import import_all_models

    import_all_models()
    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


atexit.register(reset_engine)
