"""Realtime (WebSocket) delivery of in-app events."""

from __future__ import annotations

from notify_service.infra.realtime.manager import (
    ConnectionInfo,
    ConnectionManager,
    RealtimePublisher,
    get_connection_manager,
    stop_connection_manager,
)

__all__ = [
    "ConnectionInfo",
    "ConnectionManager",
    "RealtimePublisher",
    "get_connection_manager",
    "stop_connection_manager",
]
