"""HTTP-facing exceptions for the notifications feature."""

from __future__ import annotations

from typing import Any

from notify_service.core.exceptions import NotFoundException


class NotificationNotFoundException(NotFoundException):
    """Notification does not exist or does not belong to the caller."""

    def __init__(self, notification_id: Any) -> None:
        super().__init__(
            detail=f"Notification {notification_id} not found",
            type="notification-not-found",
            extra={"notification_id": str(notification_id)},
        )


class DeviceNotFoundException(NotFoundException):
    """Push token is not registered to the caller."""

    def __init__(self) -> None:
        super().__init__(
            detail="Device token is not registered for this user",
            type="device-not-found",
        )
