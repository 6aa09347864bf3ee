"""Database engine and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from overseer_credits.database.models import Base

if TYPE_CHECKING:
    from overseer_credits.config import Settings

logger = structlog.get_logger()

# Seconds a SQLite connection waits for another writer before failing
SQLITE_BUSY_TIMEOUT = 30


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine with pool settings from configuration.

    SQLite URLs get a NullPool so every session opens its own connection.
    """
    if settings.DATABASE_URL.startswith("sqlite"):
        return create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DB_ECHO,
            poolclass=NullPool,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DB_ECHO,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_POOL_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )
    _setup_pool_listeners(engine, settings.DB_POOL_MAX_OVERFLOW)
    return engine


def _setup_pool_listeners(async_engine: AsyncEngine, max_overflow: int) -> None:
    """Warn when the connection pool runs at capacity."""
    pool = async_engine.sync_engine.pool

    @event.listens_for(pool, "checkout")
    def _on_checkout(
        _dbapi_conn: object, _connection_record: object, _connection_proxy: object
    ) -> None:
        checked_out = pool.checkedout()  # type: ignore[attr-defined]
        pool_size = pool.size()  # type: ignore[attr-defined]
        if checked_out >= pool_size:
            logger.warning(
                "DB pool at capacity",
                checked_out=checked_out,
                pool_size=pool_size,
                overflow=pool.overflow(),  # type: ignore[attr-defined]
                max_overflow=max_overflow,
            )

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(
        _dbapi_conn: object, _connection_record: object, exception: Exception | None
    ) -> None:
        logger.warning(
            "DB connection invalidated",
            exception=str(exception) if exception else None,
        )


def _setup_sqlite_transactions(async_engine: AsyncEngine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    SQLite has no SELECT ... FOR UPDATE and pysqlite defers BEGIN until the
    first write, so two read-modify-write transactions could both read the
    same balance. Taking the write lock at BEGIN serializes them instead.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: Any, _connection_record: object) -> None:
        # Stop the driver from emitting its own BEGIN
        dbapi_conn.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Owns the engine and the session factory shared by all components."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        if engine.dialect.name == "sqlite":
            _setup_sqlite_transactions(engine)
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Database:
        return cls(create_engine_from_settings(settings))

    async def create_all(self) -> None:
        """Create tables from models (development/test only, migrations own production)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")

    async def dispose(self) -> None:
        """Close the connection pool."""
        logger.info("Closing database connection pool")
        await self.engine.dispose()
