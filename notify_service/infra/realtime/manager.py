"""In-process WebSocket connection manager.

Tracks live connections per user and delivers in-app events to them. Only
clients connected to this process receive events; there is no cross-instance
fan-out.
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol
from uuid import uuid4

if TYPE_CHECKING:
    from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RealtimePublisher(Protocol):
    """Sink for live in-app events."""

    async def publish(self, user_id: str, event: str, payload: dict[str, Any]) -> int: ...


@dataclass
class ConnectionInfo:
    """Metadata about a WebSocket connection."""

    connection_id: str
    websocket: WebSocket
    user_id: str
    connected_at: float = field(default_factory=time.time)


class ConnectionManager:
    """Manages WebSocket connections keyed by user.

    Example:
        manager = get_connection_manager()

        connection_id = await manager.connect(websocket, user_id)
        try:
            async for _ in websocket.iter_text():
                pass
        finally:
            await manager.disconnect(connection_id)

        await manager.publish(user_id, "notification:new", payload)
    """

    def __init__(self, max_connections: int = 10_000) -> None:
        self._max_connections = max_connections
        # connection_id -> ConnectionInfo
        self._connections: dict[str, ConnectionInfo] = {}

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        """Accept a WebSocket connection for ``user_id``.

        Raises:
            ConnectionRefusedError: If max connections reached
        """
        if len(self._connections) >= self._max_connections:
            logger.warning(
                "Connection refused: max connections reached",
                extra={"max": self._max_connections},
            )
            raise ConnectionRefusedError("Maximum connections reached")

        await websocket.accept()

        connection_id = str(uuid4())
        self._connections[connection_id] = ConnectionInfo(
            connection_id=connection_id,
            websocket=websocket,
            user_id=user_id,
        )

        logger.info(
            "WebSocket connected",
            extra={
                "connection_id": connection_id,
                "user_id": user_id,
                "total_connections": len(self._connections),
            },
        )
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        conn_info = self._connections.pop(connection_id, None)
        if conn_info is None:
            return

        with contextlib.suppress(Exception):
            await conn_info.websocket.close()

        logger.info(
            "WebSocket disconnected",
            extra={
                "connection_id": connection_id,
                "user_id": conn_info.user_id,
                "duration_seconds": time.time() - conn_info.connected_at,
                "total_connections": len(self._connections),
            },
        )

    async def send_to_connection(self, connection_id: str, message: dict[str, Any]) -> bool:
        """Send a message to one connection; dead connections are dropped."""
        conn_info = self._connections.get(connection_id)
        if conn_info is None:
            return False

        try:
            await conn_info.websocket.send_json(message)
        except Exception as e:
            logger.warning(
                "Failed to send message to connection",
                extra={"connection_id": connection_id, "error": str(e)},
            )
            await self.disconnect(connection_id)
            return False
        return True

    async def send_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        """Send a message to every connection of a user.

        Returns:
            Number of connections the message was sent to
        """
        count = 0
        for conn_info in list(self._connections.values()):
            if conn_info.user_id == user_id and await self.send_to_connection(
                conn_info.connection_id, message
            ):
                count += 1
        return count

    async def publish(self, user_id: str, event: str, payload: dict[str, Any]) -> int:
        """Deliver ``event`` with ``payload`` to the user's live connections."""
        count = await self.send_to_user(user_id, {"event": event, "data": payload})
        logger.debug(
            "Realtime event published",
            extra={"user_id": user_id, "event": event, "connections": count},
        )
        return count

    def user_connection_count(self, user_id: str) -> int:
        return sum(1 for conn in self._connections.values() if conn.user_id == user_id)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def stop(self) -> None:
        """Close every connection (application shutdown)."""
        closed = len(self._connections)
        for conn_info in list(self._connections.values()):
            with contextlib.suppress(Exception):
                await conn_info.websocket.close(code=1001, reason="Server shutdown")
        self._connections.clear()

        logger.info("Connection manager stopped", extra={"connections_closed": closed})


_manager: ConnectionManager | None = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide connection manager, created on first use."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager


async def stop_connection_manager() -> None:
    global _manager
    if _manager is not None:
        await _manager.stop()
        _manager = None
