"""Database dependencies for FastAPI route handlers.

Two session getters share one session factory:

1. ``get_db_session()`` (this module): FastAPI dependency, session lives for
   the request.
2. ``get_async_session()`` (infra.database): async context manager for the
   dispatcher, CLI commands and scripts.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notify_service.infra.database import get_async_session


async def get_db_session() -> AsyncGenerator[AsyncSession]:
    """FastAPI dependency for database session.

    Example:
        @router.get("/")
        async def list_notifications(session: DbSessionDep): ...
    """
    async with get_async_session() as session:
        yield session


DbSessionDep = Annotated[AsyncSession, Depends(get_db_session)]
