"""
Database engine and session management (SQLAlchemy 2.0 async).

Two databases are owned by this service:
- the request store, holding forget_requests and forget_request_targets
- the identity store (home shard), holding the central user and actor tables

Shard databases are managed separately by rtbf.db.shards.

Design decisions:
- All ORM models import Base from here to keep metadata centralized
- Identity tables live on their own metadata (IdentityBase) because they are
  never created by our migrations
- Services own their transaction boundaries through the session factory
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from rtbf.config import Settings, get_settings

log = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the request store models.

    Centralizing the metadata here ensures Alembic can discover all tables
    by importing this module.
    """

    type_annotation_map: dict[Any, Any] = {}


class IdentityBase(DeclarativeBase):
    """Declarative base for the identity store tables (user, actor)."""


def build_engine(url: str, *, echo: bool = False, for_test: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Uses NullPool in test mode to avoid connection leaks between test cases.
    SQLite URLs never get pool sizing arguments.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if for_test:
        kwargs["poolclass"] = NullPool
    elif not url.startswith("sqlite"):
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
                "pool_recycle": 300,  # Recycle connections every 5 minutes
            }
        )
    engine = create_async_engine(url, **kwargs)
    if url.startswith("sqlite"):
        _use_immediate_transactions(engine)
    return engine


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    The driver's deferred BEGIN lets two read-then-write transactions
    deadlock on lock upgrade; BEGIN IMMEDIATE makes them queue instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Avoid lazy-load issues after commit
        autoflush=True,
    )


# Module-level singletons, initialized in lifespan / CLI startup
_engine: AsyncEngine | None = None
_identity_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_db(settings: Settings | None = None, *, for_test: bool = False) -> None:
    """Initialize the request store and identity store engines.

    Called once during application startup (or test setup).
    """
    global _engine, _identity_engine, _session_factory
    cfg = settings or get_settings()
    _engine = build_engine(cfg.database_url, echo=cfg.db_echo_sql, for_test=for_test)
    _identity_engine = build_engine(
        cfg.identity_database_url, echo=cfg.db_echo_sql, for_test=for_test
    )
    _session_factory = make_session_factory(_engine)
    log.info(
        "database.initialized",
        url=cfg.database_url.split("@")[-1],
        identity_url=cfg.identity_database_url.split("@")[-1],
    )


async def close_db() -> None:
    """Dispose both engines and release all connections."""
    global _engine, _identity_engine, _session_factory
    for engine in (_engine, _identity_engine):
        if engine is not None:
            await engine.dispose()
    _engine = None
    _identity_engine = None
    _session_factory = None
    log.info("database.closed")


def get_engine() -> AsyncEngine:
    """Return the request store engine (raises if not initialized)."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_identity_engine() -> AsyncEngine:
    """Return the identity store engine (raises if not initialized)."""
    if _identity_engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _identity_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory

