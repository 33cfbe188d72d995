"""
CaseVault Database Base: SQLAlchemy declarative base, mixins and engine registry.

Provides:
- Base: declarative base for all CaseVault models
- AuditMixin: created_at, updated_at, created_by, updated_by
- SoftDeleteMixin: is_deleted, deleted_at, deleted_by
- EngineRegistry: named engines with their session factories
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, String, create_engine, text
from sqlalchemy.types import TypeDecorator
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger("casevault.db.base")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every backend.

    Values are normalised to UTC on the way in; naive values coming back
    (SQLite keeps no offset) are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all CaseVault models."""
    pass


class AuditMixin:
    """Adds created_at, updated_at, created_by, updated_by columns."""
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)
    created_by = Column(String(100), nullable=True)
    updated_by = Column(String(100), nullable=True)


class SoftDeleteMixin:
    """Adds is_deleted, deleted_at, deleted_by columns for soft delete support."""
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(UTCDateTime(), nullable=True)
    deleted_by = Column(String(100), nullable=True)


class EngineRegistry:
    """
    Registry of named SQLAlchemy engines.

    Usage:
        registry = EngineRegistry()
        registry.register("casevault", "sqlite:///casevault.db")
        session = registry.get_session("casevault")
    """

    def __init__(self):
        self._engines: Dict[str, Engine] = {}
        self._session_factories: Dict[str, sessionmaker] = {}

    def register(
        self,
        name: str,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
        pool_pre_ping: bool = True,
        **kwargs: Any,
    ) -> Engine:
        """
        Create and register an engine, replacing (and disposing) any engine
        already registered under ``name``.

        SQLite does not take queue-pool sizing, so those options are only
        passed for server databases.
        """
        if url.startswith("sqlite"):
            kwargs.setdefault("connect_args", {"check_same_thread": False})
            engine = create_engine(url, **kwargs)
        else:
            engine = create_engine(
                url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=pool_pre_ping,
                **kwargs,
            )

        if name in self._engines:
            self._engines[name].dispose()
        self._engines[name] = engine
        self._session_factories[name] = sessionmaker(bind=engine, expire_on_commit=False)
        return engine

    def get(self, name: str) -> Engine:
        if name not in self._engines:
            raise KeyError(f"Engine '{name}' not registered. Available: {list(self._engines.keys())}")
        return self._engines[name]

    def get_session_factory(self, name: str) -> sessionmaker:
        if name not in self._session_factories:
            raise KeyError(f"Session factory '{name}' not found. Available: {list(self._session_factories.keys())}")
        return self._session_factories[name]

    def get_session(self, name: str) -> Session:
        return self.get_session_factory(name)()

    def dispose(self, name: Optional[str] = None) -> None:
        """Dispose one engine, or all of them when no name is given."""
        names = [name] if name else list(self._engines)
        for n in names:
            engine = self._engines.pop(n, None)
            self._session_factories.pop(n, None)
            if engine is not None:
                engine.dispose()

    @property
    def registered_names(self) -> list:
        return list(self._engines.keys())

    def health_check(self, name: str) -> bool:
        """True when the engine can run ``SELECT 1``."""
        try:
            with self.get(name).connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except (KeyError, SQLAlchemyError) as e:
            logger.warning(f"Health check failed for engine '{name}': {e}")
            return False


# Global engine registry singleton
engine_registry = EngineRegistry()
