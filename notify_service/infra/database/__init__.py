"""Database infrastructure."""

from notify_service.infra.database.session import (
    close_database,
    get_async_session,
    get_engine,
    get_sessionmaker,
    init_database,
)

__all__ = [
    "close_database",
    "get_async_session",
    "get_engine",
    "get_sessionmaker",
    "init_database",
]
