"""Async database engine and session management.

One engine per process. Request handlers get a session per request through
``get_async_session``; the deposit bridge and log sync open their own short
sessions from ``get_session_factory()`` for every unit of work, so a slow
chain scan never holds a request's transaction open.

Lifecycle hooks (``init_db`` / ``close_db``) are called from the FastAPI
lifespan and from ``simulation.py``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from deal_escrow.config import get_settings
from deal_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Create the engine on first use. SQLite URLs skip the connection pool options."""
    global _engine
    if _engine is None:
        settings = get_settings()
        options: dict = {"echo": settings.db_echo_sql}
        if not settings.database_url.startswith("sqlite"):
            options.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_pre_ping=True,
            )
        _engine = create_async_engine(settings.database_url, **options)
        logger.info(
            "database.engine_created",
            dialect=_engine.dialect.name,
            pool_size=options.get("pool_size"),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session: committed on success, rolled back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def ping_database() -> str:
    """``"healthy"`` or ``"unhealthy: <reason>"``, for the health endpoint."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("database.ping_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


async def init_db() -> None:
    """Create missing tables when DB_CREATE_TABLES is set."""
    from deal_escrow.infrastructure.database.orm_models import Base

    if not get_settings().db_create_tables:
        logger.info("database.create_tables_skipped")
        return
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.tables_created", tables=len(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
