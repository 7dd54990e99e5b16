"""CLI command modules."""

from notify_service.cli.commands import database, dispatch, server

__all__ = [
    "database",
    "dispatch",
    "server",
]
