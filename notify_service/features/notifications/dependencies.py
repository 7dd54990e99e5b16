"""FastAPI dependencies for the notifications feature.

Provides Annotated type aliases for route handlers.

Example usage:
    from notify_service.features.notifications.dependencies import (
        NotificationServiceDep,
        SessionDep,
        CurrentUserIdDep,
    )

    @router.get("/unread-count")
    async def unread_count(
        user_id: CurrentUserIdDep,
        session: SessionDep,
        service: NotificationServiceDep,
    ) -> UnreadCountResponse:
        return UnreadCountResponse(count=await service.get_unread_count(session, user_id))
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from notify_service.core.dependencies.auth import CurrentUserIdDep, OptionalUserIdDep
from notify_service.core.dependencies.database import DbSessionDep
from notify_service.features.notifications.service import (
    NotificationService,
    get_notification_service,
)

SessionDep = DbSessionDep

NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]

__all__ = [
    "CurrentUserIdDep",
    "NotificationServiceDep",
    "OptionalUserIdDep",
    "SessionDep",
]
