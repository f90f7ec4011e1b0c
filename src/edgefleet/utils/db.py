"""Async engine, session pool and SQLite tuning for the fleet registry."""

from __future__ import annotations

from typing import Any, ClassVar

from sqlalchemy import event, text
from sqlalchemy.engine.interfaces import DBAPIConnection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import ConnectionPoolEntry, StaticPool

_MEMORY_URL = "sqlite+aiosqlite://"
_SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Declarative base for the devices and device_tasks tables."""


def _tune_sqlite(dbapi_connection: DBAPIConnection, _: ConnectionPoolEntry) -> None:
    """WAL lets device polls read while a claim or report is writing."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


class Database:
    """Engine and session pool held as class-level state.

    Database.init() runs once in AppFactory._build; DAOs receive the
    returned pool. File-backed SQLite gets WAL and a busy timeout, the
    in-memory URL shares one connection so every session sees the same data.
    """

    _engine: ClassVar[AsyncEngine | None] = None
    _pool: ClassVar[async_sessionmaker[AsyncSession] | None] = None

    @staticmethod
    def init(database_url: str, *, echo: bool = False) -> async_sessionmaker[AsyncSession]:
        """Create the engine and session pool. Returns the pool."""
        kwargs: dict[str, Any] = {"echo": echo}
        if database_url == _MEMORY_URL:
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_async_engine(database_url, **kwargs)
        if database_url.startswith("sqlite") and database_url != _MEMORY_URL:
            event.listen(engine.sync_engine, "connect", _tune_sqlite)
        Database._engine = engine
        Database._pool = async_sessionmaker(engine, expire_on_commit=False)
        return Database._pool

    @staticmethod
    async def create_tables() -> None:
        """Create the devices and device_tasks tables if missing."""
        import edgefleet.models

        _ = edgefleet.models  # registers the tables on Base.metadata
        assert Database._engine is not None, "call Database.init() first"
        async with Database._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    @staticmethod
    async def ping() -> bool:
        """True if the database answers a trivial query."""
        if Database._engine is None:
            return False
        try:
            async with Database._engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError):
            return False
        return True

    @staticmethod
    async def close() -> None:
        """Dispose the engine and forget the pool."""
        if Database._engine is not None:
            await Database._engine.dispose()
            Database._engine = None
            Database._pool = None
