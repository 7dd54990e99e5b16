"""In-app channel: the stored notification is the delivery, plus a live event."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from notify_service.features.notifications.channels.base import DeliveryOutcome, finish, load_preferences
from notify_service.features.notifications.constants import (
    ERROR_MESSAGES,
    IN_APP_EVENT,
    Channel,
    DeliveryStatus,
    ErrorCode,
)
from notify_service.features.notifications.lifecycle import refresh_lifecycle_status
from notify_service.features.notifications.policy import DeliveryPreferences, should_deliver
from notify_service.features.notifications.schemas import NotificationRead

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from notify_service.features.notifications.models import Notification, NotificationDelivery
    from notify_service.infra.realtime import RealtimePublisher

logger = logging.getLogger(__name__)


class InAppChannelProcessor:
    """Deliver in-app notifications.

    Delivery succeeds as soon as policy allows it; the live event to connected
    clients is best effort and its failure never changes the outcome.
    """

    channel = Channel.IN_APP.value

    def __init__(self, publisher: RealtimePublisher | None = None) -> None:
        self._publisher = publisher

    async def process(
        self,
        session: AsyncSession,
        notification: Notification,
        delivery: NotificationDelivery,
        now: datetime,
    ) -> DeliveryOutcome:
        preferences = await load_preferences(session, notification.recipient_user_id)
        return await self.deliver(notification, delivery, now, preferences)

    async def after_commit(self, notification: Notification, outcome: DeliveryOutcome) -> None:
        if outcome.status == DeliveryStatus.DELIVERED:
            await self.publish(notification)

    async def deliver(
        self,
        notification: Notification,
        delivery: NotificationDelivery,
        now: datetime,
        preferences: DeliveryPreferences,
    ) -> DeliveryOutcome:
        """Resolve policy and deliver with preferences already loaded.

        Used by the dispatcher and directly at creation time. Callers publish
        the live event themselves once the row is committed.
        """
        if not should_deliver(preferences, notification, self.channel, now):
            return finish(
                delivery,
                DeliveryStatus.CANCELLED,
                now,
                error_code=ErrorCode.IN_APP_DISABLED.value,
                error_message=ERROR_MESSAGES[ErrorCode.IN_APP_DISABLED],
            )

        outcome = finish(delivery, DeliveryStatus.DELIVERED, now)
        refresh_lifecycle_status(notification)
        return outcome

    async def publish(self, notification: Notification) -> None:
        if self._publisher is None or not notification.recipient_user_id:
            return
        try:
            payload = NotificationRead.from_model(notification).model_dump(mode="json")
            await self._publisher.publish(notification.recipient_user_id, IN_APP_EVENT, payload)
        except Exception as exc:
            logger.warning(
                "Failed to publish in-app event",
                extra={
                    "notification_id": str(notification.id),
                    "user_id": notification.recipient_user_id,
                    "error": str(exc),
                },
            )
