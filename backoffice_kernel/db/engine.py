"""
Module: backoffice_kernel.db.engine
Responsibility: SQLAlchemy engine construction, session factories and the
    transactional scope used by every unit of work in the engine.

Invariants enforced:
    - Sessions are produced by an explicit ``sessionmaker`` handed to each
      service; no module-level session state.
    - ``transaction_scope()`` commits on success and rolls back on any
      exception, so one item of work is one committed transaction.

Failure modes:
    - OperationalError when the database is unreachable (propagates).
"""

from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backoffice_kernel.db.base import Base
from backoffice_kernel.logging_config import get_logger

logger = get_logger("db.engine")


SessionFactory = Callable[[], Session]


def create_engine(
    database_url: str,
    echo: bool = False,
    pool_pre_ping: bool = True,
) -> Engine:
    """
    Create the SQLAlchemy engine for ``database_url``.

    PostgreSQL runs at READ COMMITTED with explicit row locks where the
    engine needs them; SQLite (tests, single-user installs) uses its
    defaults.
    """
    kwargs: dict = {"echo": echo, "pool_pre_ping": pool_pre_ping}
    if database_url.startswith("postgresql"):
        kwargs["isolation_level"] = "READ COMMITTED"
    elif database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}

    engine = _sa_create_engine(database_url, **kwargs)
    logger.info(
        "engine_initialized",
        extra={"dialect": engine.dialect.name, "echo": echo},
    )
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory with ``expire_on_commit=False`` so DTOs survive commit."""
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_tables(engine: Engine) -> None:
    """Create every table registered on ``Base.metadata``.

    Model modules register their tables on import; import them first.
    """
    Base.metadata.create_all(engine)


@contextmanager
def transaction_scope(
    session_factory: SessionFactory,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Postconditions: On normal exit, session is committed and closed.
        On exception, session is rolled back and closed.  The exception
        is re-raised to the caller.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


@contextmanager
def read_scope(
    session_factory: SessionFactory,
) -> Generator[Session, None, None]:
    """Read-only scope: never commits, always rolls back and closes."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
