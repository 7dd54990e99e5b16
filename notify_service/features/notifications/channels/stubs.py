"""Email, SMS and webhook processors.

No provider is wired for these channels. They honour policy so a denial is
recorded as such, and otherwise cancel with a not-configured code. They never
retry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from notify_service.features.notifications.channels.base import DeliveryOutcome, finish, load_preferences
from notify_service.features.notifications.constants import (
    Channel,
    DeliveryStatus,
    channel_disabled_code,
    not_configured_code,
)
from notify_service.features.notifications.policy import should_deliver

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from notify_service.features.notifications.models import Notification, NotificationDelivery


class NotConfiguredChannelProcessor:
    """Placeholder processor for a channel without a provider."""

    def __init__(self, channel: Channel | str) -> None:
        self.channel = Channel(channel).value

    async def process(
        self,
        session: AsyncSession,
        notification: Notification,
        delivery: NotificationDelivery,
        now: datetime,
    ) -> DeliveryOutcome:
        preferences = await load_preferences(session, notification.recipient_user_id)

        if not should_deliver(preferences, notification, self.channel, now):
            return finish(
                delivery,
                DeliveryStatus.CANCELLED,
                now,
                error_code=channel_disabled_code(self.channel),
                error_message=f"Delivery on {self.channel} disabled by preferences or policy.",
            )

        return finish(
            delivery,
            DeliveryStatus.CANCELLED,
            now,
            error_code=not_configured_code(self.channel),
            error_message=f"No provider configured for {self.channel} delivery.",
        )

    async def after_commit(self, notification: Notification, outcome: DeliveryOutcome) -> None:
        return None


def build_stub_processors() -> list[NotConfiguredChannelProcessor]:
    return [NotConfiguredChannelProcessor(c) for c in (Channel.EMAIL, Channel.SMS, Channel.WEBHOOK)]
