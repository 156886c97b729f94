"""
Engine and session management for the order store.

One async engine per process. Request handlers get a session through
``get_db``, which commits when the handler returns and rolls back when it
raises, so a webhook that fails half way leaves no partial order update
behind and the gateway's redelivery starts from a clean slate.
"""
from collections.abc import AsyncGenerator
from typing import Any, Dict

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from config import get_settings
from database.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(database_url: str) -> Dict[str, Any]:
    settings = get_settings()
    options: Dict[str, Any] = {"echo": settings.database_echo}
    # aiosqlite (local development) does not take queue pool sizing
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    return options


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        database_url = get_settings().database_url
        _engine = create_async_engine(database_url, **_engine_options(database_url))
        logger.info(
            "database_engine_created",
            backend=make_url(database_url).get_backend_name(),
            database=make_url(database_url).database,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Return the session factory bound to the process engine.

    Sessions keep attributes loaded after commit; the reconciliation engine
    reloads an order explicitly after every compare-and-set instead.
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    FastAPI dependency yielding one unit of work per request.

    Example:
        @router.get("/orders/{order_id}")
        async def get_order(order_id: UUID, db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """
    Create the order tables when they do not exist yet.

    Production schemas are managed by Alembic; this covers local runs and
    fresh test databases.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_schema_ready", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose of the engine so pooled connections are released on shutdown."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("database_engine_disposed")
