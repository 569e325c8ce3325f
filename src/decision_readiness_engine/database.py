"""Primary database engine, session factory, and declarative base.

Key exports:
- Base                 — Declarative base for all ORM models
- TZDateTime           — Timezone-aware datetime column type
- init_database(...)   — Call at startup to initialize the engine
- create_schema()      — Create missing tables
- close_database()     — Call at shutdown to dispose the engine
- get_db_session()     — FastAPI dependency yielding a transactional session
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, event
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from decision_readiness_engine.observability import get_logger

logger = get_logger(__name__)

# Module-level engine and session factory, initialized by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


class Base(DeclarativeBase):
    """Declarative base shared by every ORM model."""


class TZDateTime(TypeDecorator[datetime]):
    """DateTime column that always stores and returns UTC-aware values.

    PostgreSQL round-trips the offset natively. SQLite drops it, so values
    read back without tzinfo are re-attached to UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; attach a timezone")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy, not the sqlite3 driver, emit BEGIN so SAVEPOINT works.

    Args:
        engine: An engine on a SQLite URL.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN")


def init_database(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    **engine_kwargs: Any,
) -> AsyncEngine:
    """Initialize the database engine and session factory.

    Must be called once at application startup before any session is used.

    Args:
        database_url: SQLAlchemy async database URL.
        echo: Echo SQL statements to the log.
        pool_size: Connection pool size. Not applied to SQLite URLs.
        **engine_kwargs: Extra keyword arguments for create_async_engine.

    Returns:
        The initialized AsyncEngine.
    """
    global _engine, _session_factory  # noqa: PLW0603

    if not database_url.startswith("sqlite"):
        engine_kwargs.setdefault("pool_size", pool_size)
        engine_kwargs.setdefault("pool_pre_ping", True)

    _engine = create_async_engine(database_url, echo=echo, **engine_kwargs)
    if _engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(_engine)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.info("Database engine initialized", dialect=_engine.dialect.name)
    return _engine


async def create_schema() -> None:
    """Create all tables registered on Base that do not exist yet.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _engine is None:
        raise RuntimeError("Database has not been initialized. Call init_database() first.")

    # Registers the ORM tables on Base.metadata
    from decision_readiness_engine.core import models  # noqa: F401

    async with _engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured", tables=sorted(Base.metadata.tables))


async def close_database() -> None:
    """Dispose the database engine. Must be called at application shutdown."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing database engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a session committed at request end.

    Yields:
        AsyncSession: A session on the primary database.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database has not been initialized. Call init_database() in the application lifespan handler."
        )

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory for work outside a request-scoped session.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError("Database has not been initialized. Call init_database() first.")
    return _session_factory
