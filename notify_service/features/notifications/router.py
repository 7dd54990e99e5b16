"""API router for the notifications feature.

Endpoints:
- POST /dispatch: create and dispatch notifications (producers)
- GET /, GET /unread-count, GET /{id}: recipient inbox
- POST /{id}/read, /read-all, /{id}/archive, /{id}/unarchive, /{id}/ack
- POST /devices, DELETE /devices/{push_token}: push registrations
- GET/PATCH /preferences: delivery preferences
- GET /admin, GET /admin/{id}, POST /admin/{id}/resend: operator console
- POST /{id}/cancel: administrative cancel
- WS /ws: live in-app events
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from notify_service.features.notifications.dependencies import (
    CurrentUserIdDep,
    NotificationServiceDep,
    OptionalUserIdDep,
    SessionDep,
)
from notify_service.features.notifications.schemas import (
    AdminNotificationFilters,
    AdminNotificationListResponse,
    AdminNotificationRead,
    CancelRequest,
    CancelResult,
    DeviceRead,
    DeviceRegister,
    DispatchRequest,
    DispatchResult,
    MarkAllReadResponse,
    NotificationListFilters,
    NotificationListResponse,
    NotificationRead,
    PreferencesRead,
    PreferencesUpdate,
    UnreadCountResponse,
)
from notify_service.infra.logging import get_lazy_logger
from notify_service.infra.realtime import get_connection_manager

router = APIRouter(prefix="/notifications", tags=["notifications"])

# Standard logger for INFO/WARNING/ERROR
logger = logging.getLogger(__name__)
# Lazy logger for DEBUG (zero overhead when DEBUG disabled)
lazy_logger = get_lazy_logger(__name__)


# ──────────────────────────────────────────────────────────────
# Producers
# ──────────────────────────────────────────────────────────────


@router.post(
    "/dispatch",
    response_model=DispatchResult,
    status_code=status.HTTP_201_CREATED,
    summary="Dispatch a notification",
    description="""
Create one notification per recipient and queue delivery on the requested
channels. In-app delivery happens immediately unless `scheduled_at` is in the
future; other channels are picked up by the dispatcher.

A `deduplication_key` that already exists answers with the existing
notification id and counts it as deduplicated.
""",
)
async def dispatch_notification(
    payload: DispatchRequest,
    actor_id: OptionalUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> DispatchResult:
    return await service.dispatch(session, payload, created_by=actor_id)


# ──────────────────────────────────────────────────────────────
# Inbox
# ──────────────────────────────────────────────────────────────


@router.get(
    "/",
    response_model=NotificationListResponse,
    summary="List my notifications",
)
async def list_notifications(
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
    status_filter: Annotated[
        Literal["unread", "read"] | None,
        Query(alias="status", description="Filter by read state"),
    ] = None,
    archived: bool = False,
    topic: str | None = None,
    priority: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    search: Annotated[str | None, Query(max_length=200)] = None,
    limit: int = 20,
    offset: int = 0,
) -> NotificationListResponse:
    """List the caller's notifications, newest first.

    ``limit`` is clamped to 1-100 and ``offset`` to zero or more.
    """
    filters = NotificationListFilters(
        status=status_filter,
        archived=archived,
        topic=topic,
        priority=priority,
        since=since,
        until=until,
        search=search,
        limit=limit,
        offset=offset,
    )
    return await service.list_for_user(session, user_id, filters)


@router.get(
    "/unread-count",
    response_model=UnreadCountResponse,
    summary="Count my unread notifications",
)
async def unread_count(
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> UnreadCountResponse:
    return UnreadCountResponse(count=await service.get_unread_count(session, user_id))


@router.post(
    "/read-all",
    response_model=MarkAllReadResponse,
    summary="Mark all my notifications read",
)
async def mark_all_read(
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> MarkAllReadResponse:
    return MarkAllReadResponse(updated=await service.mark_all_read(session, user_id))


# ──────────────────────────────────────────────────────────────
# Devices
# ──────────────────────────────────────────────────────────────


@router.post(
    "/devices",
    response_model=DeviceRead,
    status_code=status.HTTP_201_CREATED,
    summary="Register a push device",
    description="Upsert by push token. A token registered by another user moves to the caller.",
)
async def register_device(
    payload: DeviceRegister,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> DeviceRead:
    return await service.register_device(session, user_id, payload)


@router.delete(
    "/devices/{push_token}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unregister a push device",
)
async def unregister_device(
    push_token: str,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> None:
    await service.unregister_device(session, user_id, push_token)


# ──────────────────────────────────────────────────────────────
# Preferences
# ──────────────────────────────────────────────────────────────


@router.get(
    "/preferences",
    response_model=PreferencesRead,
    summary="Get my delivery preferences",
)
async def get_preferences(
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> PreferencesRead:
    return await service.get_preferences(session, user_id)


@router.patch(
    "/preferences",
    response_model=PreferencesRead,
    summary="Update my delivery preferences",
    description="""
Partial update. Omitted fields keep their stored value; `quiet_hours` merges
field by field; `topic_overrides` and `priority_overrides` merge per key and
a `null` value removes that key's override.
""",
)
async def update_preferences(
    payload: PreferencesUpdate,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> PreferencesRead:
    return await service.update_preferences(session, user_id, payload)


# ──────────────────────────────────────────────────────────────
# Live events
# ──────────────────────────────────────────────────────────────


@router.websocket("/ws")
async def notifications_websocket(
    websocket: WebSocket,
    user_id: Annotated[str, Query(min_length=1, description="Recipient user id")],
) -> None:
    """Stream live in-app events for ``user_id``.

    Server → Client:
        - {"event": "notification:new", "data": {...formatted notification}}
        - {"type": "pong"} in reply to {"type": "ping"}
    """
    manager = get_connection_manager()
    connection_id: str | None = None
    try:
        connection_id = await manager.connect(websocket, user_id)
        async for raw_message in websocket.iter_text():
            try:
                message = json.loads(raw_message)
            except json.JSONDecodeError:
                lazy_logger.debug(lambda: f"ws: ignoring non-JSON message from {connection_id}")
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
    except ConnectionRefusedError as e:
        logger.warning("WebSocket connection refused", extra={"reason": str(e)})
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason=str(e))
    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected normally")
    finally:
        if connection_id is not None:
            await manager.disconnect(connection_id)


# ──────────────────────────────────────────────────────────────
# Operator console
# ──────────────────────────────────────────────────────────────


@router.get(
    "/admin",
    response_model=AdminNotificationListResponse,
    summary="List notifications I dispatched (admin)",
)
async def list_admin_notifications(
    admin_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
    recipient_user_id: str | None = None,
    event_key: str | None = None,
    topic: str | None = None,
    priority: str | None = None,
    status_filter: Annotated[
        str | None,
        Query(alias="status", description="Filter by lifecycle status"),
    ] = None,
    search: Annotated[str | None, Query(max_length=200)] = None,
    limit: int = 20,
    offset: int = 0,
) -> AdminNotificationListResponse:
    """List notifications dispatched by the caller, newest first.

    ``search`` matches title, body, event key or topic.
    """
    filters = AdminNotificationFilters(
        recipient_user_id=recipient_user_id,
        event_key=event_key,
        topic=topic,
        priority=priority,
        status=status_filter,
        search=search,
        limit=limit,
        offset=offset,
    )
    return await service.list_admin(session, admin_id, filters)


@router.get(
    "/admin/{notification_id}",
    response_model=AdminNotificationRead,
    summary="Get a notification I dispatched (admin)",
)
async def get_admin_notification(
    notification_id: UUID,
    admin_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> AdminNotificationRead:
    return await service.get_admin(session, notification_id, admin_id)


@router.post(
    "/admin/{notification_id}/resend",
    response_model=DispatchResult,
    status_code=status.HTTP_201_CREATED,
    summary="Resend a notification I dispatched (admin)",
    description="""
Dispatch a fresh copy to the same recipient on the same channels. The copy
has no deduplication key and no schedule.
""",
)
async def resend_admin_notification(
    notification_id: UUID,
    admin_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> DispatchResult:
    return await service.resend(session, notification_id, admin_id)


# ──────────────────────────────────────────────────────────────
# Single notification
# ──────────────────────────────────────────────────────────────


@router.get(
    "/{notification_id}",
    response_model=NotificationRead,
    summary="Get one of my notifications",
)
async def get_notification(
    notification_id: UUID,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> NotificationRead:
    return await service.get_for_user(session, notification_id, user_id)


@router.post(
    "/{notification_id}/read",
    response_model=NotificationRead,
    summary="Mark a notification read",
)
async def mark_read(
    notification_id: UUID,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> NotificationRead:
    return await service.mark_read(session, notification_id, user_id)


@router.post(
    "/{notification_id}/archive",
    response_model=NotificationRead,
    summary="Archive a notification",
)
async def archive(
    notification_id: UUID,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> NotificationRead:
    return await service.archive(session, notification_id, user_id)


@router.post(
    "/{notification_id}/unarchive",
    response_model=NotificationRead,
    summary="Restore an archived notification",
)
async def unarchive(
    notification_id: UUID,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> NotificationRead:
    return await service.unarchive(session, notification_id, user_id)


@router.post(
    "/{notification_id}/ack",
    response_model=NotificationRead,
    summary="Acknowledge a notification",
    description="Records the acknowledgement and marks the notification read.",
)
async def acknowledge(
    notification_id: UUID,
    user_id: CurrentUserIdDep,
    session: SessionDep,
    service: NotificationServiceDep,
) -> NotificationRead:
    return await service.acknowledge(session, notification_id, user_id)


@router.post(
    "/{notification_id}/cancel",
    response_model=CancelResult,
    summary="Cancel pending deliveries (admin)",
    description="""
Cancel every delivery that is not yet delivered, failed or cancelled, using
the same compare-and-set as the dispatcher. A delivery currently being sent
is left alone unless its claim has gone stale.
""",
)
async def cancel_notification(
    notification_id: UUID,
    session: SessionDep,
    service: NotificationServiceDep,
    payload: CancelRequest | None = None,
) -> CancelResult:
    reason = payload.reason if payload else None
    return await service.cancel(session, notification_id, reason)
