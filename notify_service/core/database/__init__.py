"""Database building blocks: declarative base, repository, exceptions."""

from __future__ import annotations

from notify_service.core.database.base import (
    NAMING_CONVENTION,
    Base,
    TimestampMixin,
    UUIDv7PKMixin,
    UUIDv7TimestampedBase,
    generate_uuid7,
)
from notify_service.core.database.exceptions import NotFoundError, RepositoryError
from notify_service.core.database.repository import BaseRepository, SearchResult

__all__ = [
    "NAMING_CONVENTION",
    "Base",
    "BaseRepository",
    "NotFoundError",
    "RepositoryError",
    "SearchResult",
    "TimestampMixin",
    "UUIDv7PKMixin",
    "UUIDv7TimestampedBase",
    "generate_uuid7",
]
