"""
Canopy Database Session Management.

Single entry point for DB initialisation plus the ``TransactionScope`` every
operation receives. Only the task runner opens root transactions; operations
get the scope handed to them and can only open nested (SAVEPOINT) scopes from
it, so the atomicity boundary of any operation is visible in its signature.
"""

from __future__ import annotations

import enum
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

import sqlalchemy
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from canopy.db.base import Base


class TransactionMode(str, enum.Enum):
    """How a (sub)task relates to the transaction of its caller."""
    SHARED = "shared"   # runs in the caller's transaction
    OWN = "own"         # runs in its own nested transaction (savepoint)


class TransactionScope:
    """
    Handle on an open transaction.

    ``session`` is what the stores query through; ``nested()`` opens a
    savepoint that commits on success and rolls back on error without touching
    the enclosing transaction.
    """

    def __init__(self, session: Session, depth: int = 0):
        self._session = session
        self.depth = depth

    @property
    def session(self) -> Session:
        return self._session

    @contextmanager
    def nested(self) -> Generator["TransactionScope", None, None]:
        with self._session.begin_nested():
            yield TransactionScope(self._session, self.depth + 1)

    @contextmanager
    def enter(self, mode: TransactionMode) -> Generator["TransactionScope", None, None]:
        """Scope for a subtask running with the given transaction mode."""
        if mode is TransactionMode.OWN:
            with self.nested() as scope:
                yield scope
        else:
            yield self

    def __repr__(self) -> str:
        return f"<TransactionScope(depth={self.depth})>"


def _configure_sqlite(engine: Engine) -> None:
    """
    pysqlite defers BEGIN, which breaks SAVEPOINTs, unless transaction control
    is taken over; foreign keys (cascades) are off unless enabled per
    connection.
    """

    @sqlalchemy.event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        # subtree queries are LIKE-prefix matches on ids
        cursor.execute("PRAGMA case_sensitive_like=ON")
        cursor.close()

    @sqlalchemy.event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(
    db_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    echo: bool = False,
) -> Engine:
    """Create an engine; SQLite URLs get a single shared connection."""
    if db_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(db_url, echo=echo, **kwargs)
        _configure_sqlite(engine)
        return engine

    return create_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        echo=echo,
    )


def init_db(
    db_url: str,
    create_tables: bool = False,
    **engine_kwargs: Any,
) -> sessionmaker:
    """
    Initialise the database and return a session factory.

    Args:
        db_url:        SQLAlchemy URL (postgresql://... in production,
                       sqlite:// for tests).
        create_tables: When True, run ``Base.metadata.create_all()``.
        engine_kwargs: Pool settings forwarded to ``create_db_engine``.
    """
    engine = create_db_engine(db_url, **engine_kwargs)
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def transaction_scope(session_factory: sessionmaker) -> Generator[TransactionScope, None, None]:
    """
    Open a root transaction: commit on success, roll back on error.

    Usage:
        with transaction_scope(factory) as scope:
            item_store.get(scope.session, item_id)
    """
    session: Session = session_factory()
    try:
        with session.begin():
            yield TransactionScope(session)
    finally:
        session.close()


def dispose(session_factory: Optional[sessionmaker]) -> None:
    """Dispose the engine bound to a session factory (close its pool)."""
    if session_factory is None:
        return
    bind = session_factory.kw.get("bind")
    if bind is not None:
        bind.dispose()
