"""
CaseVault Database Session Management.

``init_db()`` is the single entry point for database setup (CLI, facade,
tests). Services receive a plain session factory and open transactions
through ``session_scope()``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session, scoped_session, sessionmaker

from casevault.db.base import Base, engine_registry

ENGINE_NAME = "casevault"

# Thread-local session registry, populated by init_db()
_scoped_factory: Optional[scoped_session] = None


def init_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Initialise the CaseVault database.

    1. Registers the "casevault" engine in the EngineRegistry.
    2. For SQLite, enables foreign keys and a busy timeout on every new
       connection so cascades and concurrent writers behave.
    3. Optionally runs ``Base.metadata.create_all()`` (bootstrap/tests).
    4. Stores a thread-safe ``scoped_session`` for ``get_session()``.

    Returns:
        A ``sessionmaker`` bound to the engine (``expire_on_commit=False``).
    """
    global _scoped_factory

    engine = engine_registry.register(
        ENGINE_NAME, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    if create_tables:
        Base.metadata.create_all(engine)

    factory = engine_registry.get_session_factory(ENGINE_NAME)
    if _scoped_factory is not None:
        _scoped_factory.remove()
    _scoped_factory = scoped_session(factory)
    return factory


def get_session() -> Session:
    """Thread-local session for the CaseVault database."""
    if _scoped_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _scoped_factory()


@contextmanager
def session_scope(
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """
    Transaction scope: commit on success, roll back on error, always close.

    Usage:
        with session_scope(factory) as session:
            session.add(doc)
    """
    session = session_factory() if session_factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_db() -> None:
    """Release thread-local sessions and dispose the engine."""
    global _scoped_factory
    if _scoped_factory is not None:
        _scoped_factory.remove()
        _scoped_factory = None
    engine_registry.dispose(ENGINE_NAME)
