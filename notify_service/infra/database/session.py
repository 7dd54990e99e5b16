"""Database engine and session management.

The engine and session factory are created on first use from DB_ settings,
so importing this module never opens a connection or loads a driver.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from notify_service.core.settings import get_app_settings, get_db_settings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create (once) the async engine for the configured database."""
    db_settings = get_db_settings()
    kwargs = db_settings.sqlalchemy_engine_kwargs()
    kwargs["echo"] = kwargs.get("echo", False) or get_app_settings().debug
    return create_async_engine(db_settings.get_sqlalchemy_url(), **kwargs)


@lru_cache(maxsize=1)
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the shared engine."""
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """Get async database session.

    Example:
        async with get_async_session() as session:
            result = await session.execute(select(Notification))
    """
    async with get_sessionmaker()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_database() -> None:
    """Verify connectivity, retrying while the database comes up.

    Uses DB_STARTUP_RETRY_ATTEMPTS and DB_STARTUP_RETRY_DELAY; the delay
    doubles after each failed attempt.

    Raises:
        SQLAlchemyError: If every attempt fails.
    """
    db_settings = get_db_settings()
    delay = db_settings.startup_retry_delay
    attempts = db_settings.startup_retry_attempts

    for attempt in range(1, attempts + 1):
        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning(
                "Database connection attempt failed",
                extra={"attempt": attempt, "max_attempts": attempts, "error": str(exc)},
            )
            if attempt == attempts:
                logger.error("Failed to connect to database", extra={"error": str(exc)})
                raise
            await asyncio.sleep(delay)
            delay *= 2
        else:
            logger.info(
                "Database connection established",
                extra={"host": db_settings.host, "sqlite": db_settings.is_sqlite},
            )
            return


async def close_database() -> None:
    """Dispose the engine; called during application shutdown."""
    if get_engine.cache_info().currsize == 0:
        return
    logger.info("Closing database connection")
    await get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()


__all__ = [
    "close_database",
    "get_async_session",
    "get_engine",
    "get_sessionmaker",
    "init_database",
]
