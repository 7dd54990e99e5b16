"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the
process.

Testing:
    Clear the cache to force a reload after changing the environment:
    get_notification_settings.cache_clear()
"""

from __future__ import annotations

from functools import lru_cache

from .app import AppSettings
from .logs import LoggingSettings
from .notifications import NotificationSettings, PushSettings
from .postgres import PostgresSettings


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    """Get cached application settings.

    Returns:
        Validated and frozen AppSettings instance.
    """
    return AppSettings()


@lru_cache(maxsize=1)
def get_db_settings() -> PostgresSettings:
    """Get cached database settings.

    Returns:
        Validated and frozen PostgresSettings instance.
    """
    return PostgresSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings.

    Returns:
        Validated and frozen LoggingSettings instance.
    """
    return LoggingSettings()


@lru_cache(maxsize=1)
def get_notification_settings() -> NotificationSettings:
    """Get cached dispatcher settings.

    Returns:
        Validated and frozen NotificationSettings instance.
    """
    return NotificationSettings()


@lru_cache(maxsize=1)
def get_push_settings() -> PushSettings:
    """Get cached push provider settings.

    Returns:
        Validated and frozen PushSettings instance.
    """
    return PushSettings()


def clear_all_caches() -> None:
    """Drop every cached settings instance (used by tests)."""
    get_app_settings.cache_clear()
    get_db_settings.cache_clear()
    get_logging_settings.cache_clear()
    get_notification_settings.cache_clear()
    get_push_settings.cache_clear()
