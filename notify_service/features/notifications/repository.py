"""Repositories for the notifications feature.

The dispatch claim lives here: a single conditional UPDATE on
``notification_deliveries`` keyed by (notification_id, channel) that only
succeeds when the row still has the status and attempt count the caller
observed. Everything else is ordinary lookups and bulk statements.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, func, or_, select, update

from notify_service.core.database.repository import BaseRepository, SearchResult
from notify_service.features.notifications.constants import (
    DEFAULT_PUSH_PROVIDER,
    DISPATCHABLE_STATUSES,
    DeliveryStatus,
    LifecycleStatus,
)
from notify_service.features.notifications.models import (
    Notification,
    NotificationDelivery,
    UserDevice,
    UserNotificationPreference,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement


def claim_eligibility(now: datetime, claim_timeout_seconds: int) -> ColumnElement[bool]:
    """Delivery rows the dispatcher may claim at ``now``.

    Queued rows whose retry time has come, or sending rows whose previous
    claim went stale (the claimer died before recording an outcome).
    """
    stale_before = now - timedelta(seconds=claim_timeout_seconds)
    return or_(
        and_(
            NotificationDelivery.status == DeliveryStatus.QUEUED.value,
            or_(
                NotificationDelivery.next_retry_at.is_(None),
                NotificationDelivery.next_retry_at <= now,
            ),
        ),
        and_(
            NotificationDelivery.status == DeliveryStatus.SENDING.value,
            or_(
                NotificationDelivery.sent_at.is_(None),
                NotificationDelivery.sent_at <= stale_before,
            ),
        ),
    )


class NotificationRepository(BaseRepository[Notification]):
    """Repository for Notification aggregates and their deliveries.

    Inherits from BaseRepository:
        - get(session, id) -> Notification | None
        - get_or_raise(session, id) -> Notification
        - get_by(session, attr, value) -> Notification | None
        - search(session, statement, limit, offset) -> SearchResult[Notification]
        - create(session, instance) -> Notification
        - delete(session, instance) -> None

    Feature-specific methods below.
    """

    def __init__(self) -> None:
        super().__init__(Notification)

    async def get_by_dedup_key(self, session: AsyncSession, key: str) -> Notification | None:
        return await self.get_by(session, Notification.deduplication_key, key)

    async def get_for_user(
        self,
        session: AsyncSession,
        notification_id: UUID,
        user_id: str,
    ) -> Notification | None:
        """Get a notification only if ``user_id`` is its recipient."""
        stmt = select(Notification).where(
            Notification.id == notification_id,
            Notification.recipient_user_id == user_id,
        )
        result = await session.execute(stmt)
        instance = result.scalar_one_or_none()

        self._lazy.debug(
            lambda: f"db.get_for_user({notification_id}, user={user_id}) -> {'found' if instance else 'not found'}"
        )
        return instance

    async def load_for_dispatch(self, session: AsyncSession, notification_id: UUID) -> Notification | None:
        """Reload a notification and its deliveries, overwriting identity-map state.

        Needed after the claim UPDATE, which bypasses the ORM.
        """
        stmt = (
            select(Notification)
            .where(Notification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_dispatch_candidates(
        self,
        session: AsyncSession,
        channel: str,
        now: datetime,
        *,
        claim_timeout_seconds: int,
        limit: int,
    ) -> Sequence[Notification]:
        """Notifications with a claimable delivery on ``channel``, oldest first.

        Args:
            session: Database session
            channel: Channel to scan
            now: Reference time for scheduling and retry checks
            claim_timeout_seconds: Age after which a ``sending`` claim is stale
            limit: Batch size

        Returns:
            Sequence of notifications (deliveries loaded)
        """
        stmt = (
            select(Notification)
            .join(
                NotificationDelivery,
                and_(
                    NotificationDelivery.notification_id == Notification.id,
                    NotificationDelivery.channel == channel,
                ),
            )
            .where(
                Notification.status.in_([s.value for s in DISPATCHABLE_STATUSES]),
                Notification.archived_at.is_(None),
                or_(Notification.scheduled_at.is_(None), Notification.scheduled_at <= now),
                claim_eligibility(now, claim_timeout_seconds),
            )
            .order_by(Notification.created_at.asc(), Notification.id.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        items = result.scalars().all()

        self._lazy.debug(lambda: f"db.find_dispatch_candidates: channel={channel}, limit={limit} -> {len(items)} items")
        return items

    async def compare_and_set_delivery(
        self,
        session: AsyncSession,
        notification_id: UUID,
        channel: str,
        *,
        observed_status: str,
        observed_attempts: int,
        values: dict[str, Any],
        extra_criteria: ColumnElement[bool] | None = None,
    ) -> bool:
        """Update one delivery only if it is still in the observed state.

        Returns:
            True when exactly one row changed.
        """
        stmt = (
            update(NotificationDelivery)
            .where(
                NotificationDelivery.notification_id == notification_id,
                NotificationDelivery.channel == channel,
                NotificationDelivery.status == observed_status,
                NotificationDelivery.attempt_count == observed_attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if extra_criteria is not None:
            stmt = stmt.where(extra_criteria)
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def claim_delivery(
        self,
        session: AsyncSession,
        notification_id: UUID,
        channel: str,
        *,
        observed_status: str,
        observed_attempts: int,
        now: datetime,
        claim_timeout_seconds: int,
    ) -> bool:
        """Atomically move a delivery to ``sending`` for this caller.

        On success the aggregate is set to ``dispatching`` in the same
        transaction. A False return is a claim conflict: another dispatcher
        (or an admin cancel) got there first.
        """
        claimed = await self.compare_and_set_delivery(
            session,
            notification_id,
            channel,
            observed_status=observed_status,
            observed_attempts=observed_attempts,
            values={
                "status": DeliveryStatus.SENDING.value,
                "sent_at": now,
                "attempt_count": NotificationDelivery.attempt_count + 1,
                "updated_at": now,
            },
            extra_criteria=claim_eligibility(now, claim_timeout_seconds),
        )
        if not claimed:
            self._lazy.debug(lambda: f"db.claim_delivery({notification_id}, {channel}) -> conflict")
            return False

        await session.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(status=LifecycleStatus.DISPATCHING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self._lazy.debug(lambda: f"db.claim_delivery({notification_id}, {channel}) -> claimed")
        return True

    async def list_for_user(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        status: str | None = None,
        archived: bool = False,
        topic: str | None = None,
        priority: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SearchResult[Notification]:
        """Inbox listing for one recipient, newest first.

        Args:
            session: Database session
            user_id: Recipient
            status: ``unread`` or ``read``
            archived: List archived instead of active notifications
            topic: Exact topic
            priority: Exact priority
            since: Created at or after
            until: Created at or before
            search: Case-insensitive substring of title or body
            limit: Page size
            offset: Results to skip

        Returns:
            SearchResult with notifications and pagination info
        """
        stmt = select(Notification).where(Notification.recipient_user_id == user_id)

        if archived:
            stmt = stmt.where(Notification.archived_at.is_not(None))
        else:
            stmt = stmt.where(Notification.archived_at.is_(None))

        if status == "unread":
            stmt = stmt.where(Notification.read_at.is_(None))
        elif status == "read":
            stmt = stmt.where(Notification.read_at.is_not(None))

        if topic:
            stmt = stmt.where(Notification.topic == topic)
        if priority:
            stmt = stmt.where(Notification.priority == priority)
        if since:
            stmt = stmt.where(Notification.created_at >= since)
        if until:
            stmt = stmt.where(Notification.created_at <= until)
        if search:
            pattern = f"%{search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Notification.title).like(pattern),
                    func.lower(Notification.body).like(pattern),
                )
            )

        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        search_result = await self.search(session, stmt, limit=limit, offset=offset)

        self._lazy.debug(
            lambda: f"db.list_for_user: user={user_id}, status={status}, archived={archived}, topic={topic}, "
            f"priority={priority}, search={search!r} -> {len(search_result.items)}/{search_result.total}"
        )
        return search_result

    async def get_created_by(
        self,
        session: AsyncSession,
        notification_id: UUID,
        created_by: str,
    ) -> Notification | None:
        """Get a notification only if ``created_by`` dispatched it."""
        stmt = select(Notification).where(
            Notification.id == notification_id,
            Notification.created_by == created_by,
        )
        instance = (await session.execute(stmt)).scalar_one_or_none()

        self._lazy.debug(
            lambda: f"db.get_created_by({notification_id}, by={created_by}) -> {'found' if instance else 'not found'}"
        )
        return instance

    async def list_created_by(
        self,
        session: AsyncSession,
        created_by: str,
        *,
        recipient_user_id: str | None = None,
        event_key: str | None = None,
        topic: str | None = None,
        priority: str | None = None,
        status: str | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> SearchResult[Notification]:
        """Notifications dispatched by one operator, newest first.

        ``search`` matches title, body, event key or topic, case-insensitively.
        """
        stmt = select(Notification).where(Notification.created_by == created_by)

        if recipient_user_id:
            stmt = stmt.where(Notification.recipient_user_id == recipient_user_id)
        if event_key:
            stmt = stmt.where(Notification.event_key == event_key)
        if topic:
            stmt = stmt.where(Notification.topic == topic)
        if priority:
            stmt = stmt.where(Notification.priority == priority)
        if status:
            stmt = stmt.where(Notification.status == status)
        if search:
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Notification.title).like(pattern),
                    func.lower(Notification.body).like(pattern),
                    func.lower(Notification.event_key).like(pattern),
                    func.lower(Notification.topic).like(pattern),
                )
            )

        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        search_result = await self.search(session, stmt, limit=limit, offset=offset)

        self._lazy.debug(
            lambda: f"db.list_created_by: by={created_by}, event_key={event_key}, status={status}, "
            f"search={search!r} -> {len(search_result.items)}/{search_result.total}"
        )
        return search_result

    async def count_unread(self, session: AsyncSession, user_id: str) -> int:
        stmt = select(func.count(Notification.id)).where(
            Notification.recipient_user_id == user_id,
            Notification.read_at.is_(None),
            Notification.archived_at.is_(None),
        )
        count = (await session.execute(stmt)).scalar_one()
        self._lazy.debug(lambda: f"db.count_unread(user={user_id}) -> {count}")
        return count

    async def mark_all_read(self, session: AsyncSession, user_id: str, now: datetime) -> int:
        """Stamp ``read_at`` on every unread, unarchived notification of the user."""
        result = await session.execute(
            update(Notification)
            .where(
                Notification.recipient_user_id == user_id,
                Notification.read_at.is_(None),
                Notification.archived_at.is_(None),
            )
            .values(read_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        self._logger.info(
            "Marked notifications read",
            extra={"user_id": user_id, "count": count, "operation": "db.mark_all_read"},
        )
        return count

    async def purge_expired(self, session: AsyncSession, now: datetime) -> int:
        """Delete notifications whose ``expires_at`` has passed.

        Deliveries are removed explicitly so the purge does not depend on the
        database enforcing ON DELETE CASCADE.
        """
        expired_ids = select(Notification.id).where(
            Notification.expires_at.is_not(None),
            Notification.expires_at <= now,
        )
        await session.execute(
            delete(NotificationDelivery)
            .where(NotificationDelivery.notification_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            delete(Notification)
            .where(Notification.id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0

        if count:
            self._logger.info(
                "Purged expired notifications",
                extra={"count": count, "as_of": now.isoformat(), "operation": "db.purge_expired"},
            )
        else:
            self._lazy.debug(lambda: f"db.purge_expired: nothing expired as of {now}")
        return count


class UserDeviceRepository(BaseRepository[UserDevice]):
    """Repository for push device registrations."""

    def __init__(self) -> None:
        super().__init__(UserDevice)

    async def list_active(
        self,
        session: AsyncSession,
        user_id: str,
        provider: str = DEFAULT_PUSH_PROVIDER,
    ) -> Sequence[UserDevice]:
        stmt = (
            select(UserDevice)
            .where(
                UserDevice.user_id == user_id,
                UserDevice.provider == provider,
                UserDevice.is_active.is_(True),
            )
            .order_by(UserDevice.created_at.asc())
        )
        result = await session.execute(stmt)
        items = result.scalars().all()

        self._lazy.debug(lambda: f"db.list_active: user={user_id}, provider={provider} -> {len(items)} devices")
        return items

    async def upsert(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        push_token: str,
        now: datetime,
        platform: str,
        provider: str = DEFAULT_PUSH_PROVIDER,
        device_id: str | None = None,
        app_version: str | None = None,
    ) -> UserDevice:
        """Register a token for ``user_id``, taking it over if another user had it."""
        device = await self.get_by(session, UserDevice.push_token, push_token)
        if device is None:
            device = UserDevice(push_token=push_token, user_id=user_id)
            session.add(device)
        elif device.user_id != user_id:
            self._logger.info(
                "Push token reassigned",
                extra={"from_user_id": device.user_id, "to_user_id": user_id, "operation": "db.upsert"},
            )

        device.user_id = user_id
        device.provider = provider
        device.platform = platform
        device.device_id = device_id
        device.app_version = app_version
        device.is_active = True
        device.last_seen_at = now
        device.last_error_at = None
        device.last_error_message = None

        await session.flush()
        return device

    async def deactivate_for_user(self, session: AsyncSession, user_id: str, push_token: str) -> UserDevice | None:
        """Deactivate the caller's own token; None if they do not own it."""
        stmt = select(UserDevice).where(
            UserDevice.user_id == user_id,
            UserDevice.push_token == push_token,
        )
        device = (await session.execute(stmt)).scalar_one_or_none()
        if device is None:
            self._lazy.debug(lambda: f"db.deactivate_for_user(user={user_id}) -> not found")
            return None

        device.is_active = False
        await session.flush()
        return device

    async def deactivate_token(
        self,
        session: AsyncSession,
        push_token: str,
        *,
        now: datetime,
        error_message: str | None = None,
    ) -> int:
        """Mark a token dead after the provider rejected it. Idempotent."""
        result = await session.execute(
            update(UserDevice)
            .where(UserDevice.push_token == push_token)
            .values(
                is_active=False,
                last_error_at=now,
                last_error_message=error_message,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            self._logger.info(
                "Deactivated push token",
                extra={"error_message": error_message, "operation": "db.deactivate_token"},
            )
        return count


class UserNotificationPreferenceRepository(BaseRepository[UserNotificationPreference]):
    """Repository for per-user preference documents."""

    def __init__(self) -> None:
        super().__init__(UserNotificationPreference)

    async def get_for_user(self, session: AsyncSession, user_id: str) -> UserNotificationPreference | None:
        return await self.get_by(session, UserNotificationPreference.user_id, user_id)

    async def get_document(self, session: AsyncSession, user_id: str) -> dict[str, Any] | None:
        """Stored preference document, or None when the user has none."""
        row = await self.get_for_user(session, user_id)
        return dict(row.preferences) if row is not None else None

    async def save_document(
        self,
        session: AsyncSession,
        user_id: str,
        document: dict[str, Any],
    ) -> UserNotificationPreference:
        row = await self.get_for_user(session, user_id)
        if row is None:
            row = UserNotificationPreference(user_id=user_id, preferences=document)
            session.add(row)
        else:
            row.preferences = document
        await session.flush()

        self._lazy.debug(lambda: f"db.save_document(user={user_id})")
        return row


# Singleton getters
_notification_repository: NotificationRepository | None = None
_device_repository: UserDeviceRepository | None = None
_preference_repository: UserNotificationPreferenceRepository | None = None


def get_notification_repository() -> NotificationRepository:
    global _notification_repository
    if _notification_repository is None:
        _notification_repository = NotificationRepository()
    return _notification_repository


def get_user_device_repository() -> UserDeviceRepository:
    global _device_repository
    if _device_repository is None:
        _device_repository = UserDeviceRepository()
    return _device_repository


def get_user_notification_preference_repository() -> UserNotificationPreferenceRepository:
    global _preference_repository
    if _preference_repository is None:
        _preference_repository = UserNotificationPreferenceRepository()
    return _preference_repository


__all__ = [
    "NotificationRepository",
    "UserDeviceRepository",
    "UserNotificationPreferenceRepository",
    "claim_eligibility",
    "get_notification_repository",
    "get_user_device_repository",
    "get_user_notification_preference_repository",
]
