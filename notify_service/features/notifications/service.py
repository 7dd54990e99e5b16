"""Notification facade used by the HTTP layer, the CLI and other features."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from notify_service.core.exceptions import BadRequestException
from notify_service.core.settings import get_notification_settings
from notify_service.features.notifications.channels import InAppChannelProcessor, load_preferences
from notify_service.features.notifications.constants import (
    ERROR_MESSAGES,
    TERMINAL_DELIVERY_STATUSES,
    Audience,
    Channel,
    DeliveryStatus,
    ErrorCode,
    LifecycleStatus,
)
from notify_service.features.notifications.exceptions import (
    DeviceNotFoundException,
    NotificationNotFoundException,
)
from notify_service.features.notifications.lifecycle import (
    build_initial_deliveries,
    normalize_channels,
    refresh_lifecycle_status,
)
from notify_service.features.notifications.metrics import (
    notification_created_total,
    notification_deduplicated_total,
    notification_delivery_outcome_total,
    notification_purged_total,
)
from notify_service.features.notifications.models import Notification
from notify_service.features.notifications.policy import (
    DeliveryPolicy,
    DeliveryPreferences,
    merge_preferences,
)
from notify_service.features.notifications.repository import (
    NotificationRepository,
    UserDeviceRepository,
    UserNotificationPreferenceRepository,
    get_notification_repository,
    get_user_device_repository,
    get_user_notification_preference_repository,
)
from notify_service.features.notifications.schemas import (
    AdminNotificationFilters,
    AdminNotificationListResponse,
    AdminNotificationRead,
    CancelResult,
    DeliveryPolicyIn,
    DeviceRead,
    DeviceRegister,
    DispatchRequest,
    DispatchResult,
    NotificationListFilters,
    NotificationListResponse,
    NotificationRead,
    Pagination,
    PreferencesRead,
    PreferencesUpdate,
)
from notify_service.infra.realtime import get_connection_manager
from notify_service.utils.timeutils import ensure_utc, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from notify_service.core.settings.notifications import NotificationSettings
    from notify_service.infra.realtime import RealtimePublisher

logger = logging.getLogger(__name__)


class NotificationService:
    """Service for creating notifications and serving recipients.

    Provides:
    - dispatch with fan-out and deduplication
    - immediate in-app delivery at creation time
    - inbox listing, read / archive / acknowledge state
    - device registration and preference management
    - administrative cancel and expiry purge

    Mutating operations commit the session they are given.
    """

    def __init__(
        self,
        repository: NotificationRepository | None = None,
        device_repository: UserDeviceRepository | None = None,
        preference_repository: UserNotificationPreferenceRepository | None = None,
        *,
        settings: NotificationSettings | None = None,
        publisher: RealtimePublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository or get_notification_repository()
        self._devices = device_repository or get_user_device_repository()
        self._preferences = preference_repository or get_user_notification_preference_repository()
        self._settings = settings or get_notification_settings()
        self._in_app = InAppChannelProcessor(publisher)
        self._clock = clock

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        session: AsyncSession,
        request: DispatchRequest,
        *,
        created_by: str | None = None,
    ) -> DispatchResult:
        """Create one notification per recipient and deliver in-app right away.

        Deduplication keys are stored per recipient as ``<key>:<user_id>``, so
        the same key reaches each user once whether it was sent to them alone
        or as part of a fan-out. A key that already exists answers with the
        existing notification instead of creating another.

        Raises:
            BadRequestException: If the request has no usable recipient or
                inconsistent timing.
        """
        self._validate(request)

        try:
            return await self._dispatch(session, request, created_by)
        except IntegrityError:
            # A concurrent request inserted one of our deduplication keys
            # between lookup and flush; the retry finds it.
            await session.rollback()
            logger.info(
                "Deduplication key race, retrying dispatch",
                extra={"event_key": request.event_key},
            )
            return await self._dispatch(session, request, created_by)

    def _validate(self, request: DispatchRequest) -> None:
        if request.audience == Audience.USER and not request.resolved_recipients():
            raise BadRequestException(
                detail="A user notification needs recipient_user_id or recipients",
                type="missing-recipient",
            )
        if request.audience == Audience.COMPANY and not (
            request.recipient_company_id or request.resolved_recipients()
        ):
            raise BadRequestException(
                detail="A company notification needs recipient_company_id or recipients",
                type="missing-recipient",
            )
        scheduled_at = ensure_utc(request.scheduled_at)
        expires_at = ensure_utc(request.expires_at)
        if scheduled_at and expires_at and expires_at <= scheduled_at:
            raise BadRequestException(
                detail="expires_at must be later than scheduled_at",
                type="invalid-schedule",
            )

    async def _dispatch(
        self,
        session: AsyncSession,
        request: DispatchRequest,
        created_by: str | None,
    ) -> DispatchResult:
        now = self._clock()
        recipients = request.resolved_recipients()
        targets: list[str | None] = list(recipients) if recipients else [None]

        channels = normalize_channels(request.channels, request.priority)
        policy = self._policy_document(request)
        scheduled_at = ensure_utc(request.scheduled_at)
        runs_now = scheduled_at is None or scheduled_at <= now

        notification_ids: list[UUID] = []
        created: list[Notification] = []
        deduplicated = 0

        for user_id in targets:
            dedup_key = request.deduplication_key
            if dedup_key and user_id:
                dedup_key = f"{dedup_key}:{user_id}"

            if dedup_key:
                existing = await self._repository.get_by_dedup_key(session, dedup_key)
                if existing is not None:
                    notification_ids.append(existing.id)
                    deduplicated += 1
                    continue

            notification = Notification(
                audience=request.audience.value,
                recipient_user_id=user_id,
                recipient_company_id=request.recipient_company_id,
                recipients=list(request.recipients),
                event_key=request.event_key,
                topic=request.topic,
                priority=request.priority,
                title=request.title,
                body=request.body,
                data=dict(request.data),
                action=request.action,
                requires_ack=request.requires_ack,
                is_silent=request.is_silent,
                created_by=created_by,
                channels=channels,
                delivery_policy=policy,
                status=LifecycleStatus.QUEUED.value,
                deduplication_key=dedup_key,
                scheduled_at=scheduled_at,
                expires_at=ensure_utc(request.expires_at),
            )
            notification.deliveries = build_initial_deliveries(channels, now)
            session.add(notification)
            created.append(notification)

        delivered_in_app: list[Notification] = []
        in_app_outcomes: list[str] = []
        preference_cache: dict[str | None, DeliveryPreferences] = {}
        for notification in created:
            delivery = notification.delivery_for(Channel.IN_APP)
            if delivery is not None and runs_now:
                user_id = notification.recipient_user_id
                if user_id not in preference_cache:
                    preference_cache[user_id] = await load_preferences(session, user_id, self._preferences)
                delivery.attempt_count = 1
                outcome = await self._in_app.deliver(notification, delivery, now, preference_cache[user_id])
                in_app_outcomes.append(outcome.status.value)
                if outcome.status == DeliveryStatus.DELIVERED:
                    delivered_in_app.append(notification)
            refresh_lifecycle_status(notification)

        await session.flush()
        notification_ids.extend(n.id for n in created)
        await session.commit()

        for notification in created:
            notification_created_total.labels(priority=notification.priority).inc()
        if deduplicated:
            notification_deduplicated_total.inc(deduplicated)
        for status in in_app_outcomes:
            notification_delivery_outcome_total.labels(channel=Channel.IN_APP.value, status=status).inc()
        for notification in delivered_in_app:
            await self._in_app.publish(notification)

        logger.info(
            "Notifications dispatched",
            extra={
                "event_key": request.event_key,
                "created": len(created),
                "deduplicated": deduplicated,
                "channels": channels,
                "scheduled": not runs_now,
            },
        )
        return DispatchResult(
            notification_ids=notification_ids,
            created=len(created),
            deduplicated=deduplicated,
        )

    def _policy_document(self, request: DispatchRequest) -> dict[str, Any]:
        raw = request.delivery_policy.model_dump(exclude_none=True) if request.delivery_policy else {}
        return DeliveryPolicy.from_document(
            raw,
            default_max_retries=self._settings.default_max_retries,
        ).to_document()

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def list_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        filters: NotificationListFilters | None = None,
    ) -> NotificationListResponse:
        filters = filters or NotificationListFilters()
        result = await self._repository.list_for_user(
            session,
            user_id,
            status=filters.status,
            archived=filters.archived,
            topic=filters.topic,
            priority=filters.priority,
            since=ensure_utc(filters.since),
            until=ensure_utc(filters.until),
            search=filters.search,
            limit=filters.limit,
            offset=filters.offset,
        )
        return NotificationListResponse(
            items=[NotificationRead.from_model(n) for n in result.items],
            pagination=Pagination(
                total=result.total,
                limit=result.limit,
                offset=result.offset,
                has_more=result.has_more,
            ),
        )

    async def get_unread_count(self, session: AsyncSession, user_id: str) -> int:
        return await self._repository.count_unread(session, user_id)

    async def _get_owned(self, session: AsyncSession, notification_id: UUID, user_id: str) -> Notification:
        notification = await self._repository.get_for_user(session, notification_id, user_id)
        if notification is None:
            raise NotificationNotFoundException(notification_id)
        return notification

    async def get_for_user(self, session: AsyncSession, notification_id: UUID, user_id: str) -> NotificationRead:
        return NotificationRead.from_model(await self._get_owned(session, notification_id, user_id))

    async def mark_read(self, session: AsyncSession, notification_id: UUID, user_id: str) -> NotificationRead:
        notification = await self._get_owned(session, notification_id, user_id)
        if notification.read_at is None:
            notification.read_at = self._clock()
            await session.commit()
        return NotificationRead.from_model(notification)

    async def mark_all_read(self, session: AsyncSession, user_id: str) -> int:
        count = await self._repository.mark_all_read(session, user_id, self._clock())
        await session.commit()
        return count

    async def archive(self, session: AsyncSession, notification_id: UUID, user_id: str) -> NotificationRead:
        notification = await self._get_owned(session, notification_id, user_id)
        if notification.archived_at is None:
            notification.archived_at = self._clock()
            await session.commit()
        return NotificationRead.from_model(notification)

    async def unarchive(self, session: AsyncSession, notification_id: UUID, user_id: str) -> NotificationRead:
        notification = await self._get_owned(session, notification_id, user_id)
        if notification.archived_at is not None:
            notification.archived_at = None
            await session.commit()
        return NotificationRead.from_model(notification)

    async def acknowledge(self, session: AsyncSession, notification_id: UUID, user_id: str) -> NotificationRead:
        """Record the recipient's acknowledgement; acknowledging also reads."""
        notification = await self._get_owned(session, notification_id, user_id)
        if notification.ack_at is None:
            now = self._clock()
            notification.ack_at = now
            notification.read_at = notification.read_at or now
            await session.commit()
        return NotificationRead.from_model(notification)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def register_device(self, session: AsyncSession, user_id: str, payload: DeviceRegister) -> DeviceRead:
        device = await self._devices.upsert(
            session,
            user_id=user_id,
            push_token=payload.push_token,
            now=self._clock(),
            platform=payload.platform.value,
            provider=payload.provider,
            device_id=payload.device_id,
            app_version=payload.app_version,
        )
        await session.commit()
        logger.info(
            "Push device registered",
            extra={"user_id": user_id, "platform": payload.platform.value, "provider": payload.provider},
        )
        return DeviceRead.model_validate(device)

    async def unregister_device(self, session: AsyncSession, user_id: str, push_token: str) -> None:
        device = await self._devices.deactivate_for_user(session, user_id, push_token)
        if device is None:
            raise DeviceNotFoundException()
        await session.commit()

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def get_preferences(self, session: AsyncSession, user_id: str) -> PreferencesRead:
        document = await self._preferences.get_document(session, user_id)
        return PreferencesRead.model_validate(DeliveryPreferences.from_document(document).to_document())

    async def update_preferences(
        self,
        session: AsyncSession,
        user_id: str,
        update: PreferencesUpdate,
    ) -> PreferencesRead:
        current = await self._preferences.get_document(session, user_id)
        merged = merge_preferences(current, update.model_dump(exclude_unset=True))
        await self._preferences.save_document(session, user_id, merged)
        await session.commit()
        return PreferencesRead.model_validate(merged)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def cancel(
        self,
        session: AsyncSession,
        notification_id: UUID,
        reason: str | None = None,
    ) -> CancelResult:
        """Cancel every delivery that has not reached a terminal state.

        Each delivery goes through the same compare-and-set as a dispatcher
        claim, so a delivery being processed right now is left alone unless
        its claim has gone stale.

        Raises:
            NotificationNotFoundException: If the notification does not exist.
        """
        notification = await self._repository.load_for_dispatch(session, notification_id)
        if notification is None:
            raise NotificationNotFoundException(notification_id)

        now = self._clock()
        stale_before = now - timedelta(seconds=self._settings.claim_timeout_seconds)
        message = reason or ERROR_MESSAGES[ErrorCode.CANCELLED_BY_ADMIN]
        cancelled: list[str] = []

        for delivery in list(notification.deliveries):
            if delivery.status in TERMINAL_DELIVERY_STATUSES:
                continue
            sent_at = ensure_utc(delivery.sent_at)
            if delivery.status == DeliveryStatus.SENDING and sent_at is not None and sent_at > stale_before:
                logger.info(
                    "Delivery in flight, not cancelled",
                    extra={"notification_id": str(notification_id), "channel": delivery.channel},
                )
                continue

            changed = await self._repository.compare_and_set_delivery(
                session,
                notification_id,
                delivery.channel,
                observed_status=delivery.status,
                observed_attempts=delivery.attempt_count,
                values={
                    "status": DeliveryStatus.CANCELLED.value,
                    "error_code": ErrorCode.CANCELLED_BY_ADMIN.value,
                    "error_message": message,
                    "next_retry_at": None,
                    "updated_at": now,
                },
            )
            if changed:
                cancelled.append(delivery.channel)
                await session.refresh(delivery)

        if cancelled:
            notification.cancelled_at = now
        status = refresh_lifecycle_status(notification)
        await session.commit()

        logger.info(
            "Notification cancelled by administrator",
            extra={
                "notification_id": str(notification_id),
                "cancelled_channels": cancelled,
                "lifecycle_status": status.value,
            },
        )
        return CancelResult(
            notification_id=notification_id,
            cancelled_channels=cancelled,
            lifecycle_status=status.value,
        )

    async def list_admin(
        self,
        session: AsyncSession,
        created_by: str,
        filters: AdminNotificationFilters | None = None,
    ) -> AdminNotificationListResponse:
        """List notifications the operator dispatched, newest first."""
        filters = filters or AdminNotificationFilters()
        result = await self._repository.list_created_by(
            session,
            created_by,
            recipient_user_id=filters.recipient_user_id,
            event_key=filters.event_key,
            topic=filters.topic,
            priority=filters.priority,
            status=filters.status,
            search=filters.search,
            limit=filters.limit,
            offset=filters.offset,
        )
        return AdminNotificationListResponse(
            items=[AdminNotificationRead.from_model(n) for n in result.items],
            pagination=Pagination(
                total=result.total,
                limit=result.limit,
                offset=result.offset,
                has_more=result.has_more,
            ),
        )

    async def _get_created(self, session: AsyncSession, notification_id: UUID, created_by: str) -> Notification:
        notification = await self._repository.get_created_by(session, notification_id, created_by)
        if notification is None:
            raise NotificationNotFoundException(notification_id)
        return notification

    async def get_admin(
        self,
        session: AsyncSession,
        notification_id: UUID,
        created_by: str,
    ) -> AdminNotificationRead:
        return AdminNotificationRead.from_model(await self._get_created(session, notification_id, created_by))

    async def resend(self, session: AsyncSession, notification_id: UUID, created_by: str) -> DispatchResult:
        """Dispatch a fresh copy of one of the operator's notifications.

        The copy goes to the same recipient on the same channels with the same
        content and policy. It has no deduplication key and no schedule, so it
        is always created and delivered now.

        Raises:
            NotificationNotFoundException: If the operator did not dispatch it.
        """
        original = await self._get_created(session, notification_id, created_by)
        request = DispatchRequest(
            title=original.title,
            body=original.body,
            event_key=original.event_key,
            topic=original.topic,
            priority=original.priority,
            channels=list(original.channels),
            data=dict(original.data or {}),
            action=original.action,
            requires_ack=original.requires_ack,
            is_silent=original.is_silent,
            expires_at=ensure_utc(original.expires_at),
            delivery_policy=DeliveryPolicyIn.model_validate(original.delivery_policy or {}),
            audience=Audience(original.audience),
            recipient_user_id=original.recipient_user_id,
            recipient_company_id=original.recipient_company_id,
        )

        result = await self.dispatch(session, request, created_by=created_by)
        logger.info(
            "Notification resent",
            extra={
                "notification_id": str(notification_id),
                "resent_as": [str(nid) for nid in result.notification_ids],
                "created_by": created_by,
            },
        )
        return result

    async def purge_expired(self, session: AsyncSession) -> int:
        count = await self._repository.purge_expired(session, self._clock())
        await session.commit()
        if count:
            notification_purged_total.inc(count)
        return count


_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    """Process-wide service publishing live events through the connection manager."""
    global _service
    if _service is None:
        _service = NotificationService(publisher=get_connection_manager())
    return _service


def reset_notification_service() -> None:
    global _service
    _service = None
