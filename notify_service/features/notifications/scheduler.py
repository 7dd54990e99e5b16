"""Dispatch scheduler.

A periodic cycle turns due deliveries into channel attempts:

    for channel in push, email, sms, webhook, in_app:
        fetch candidates (oldest first, up to batch_size)
        for each candidate:
            claim (conditional UPDATE) -> commit
            process -> recompute status -> commit -> after_commit hook

The claim is committed before the provider is called, so a delivery whose
outcome never gets recorded stays ``sending`` until ``claim_timeout_seconds``
passes and another cycle reclaims it. A processor that raises counts as a
failed attempt and is retried with backoff like any other transient failure.

A globally disabled channel is swept instead: each due delivery is claimed
and cancelled with ``<channel>_globally_disabled``.

Cycles never overlap. APScheduler runs the job with ``max_instances=1`` and
the scheduler holds an ``asyncio.Lock``, so a manual ``run_cycle`` racing the
timer is skipped rather than run twice.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
import logging
import time
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from notify_service.core.settings import get_notification_settings, get_push_settings
from notify_service.features.notifications.backoff import BackoffPolicy
from notify_service.features.notifications.channels import (
    DeliveryOutcome,
    InAppChannelProcessor,
    PushChannelProcessor,
    build_stub_processors,
)
from notify_service.features.notifications.constants import (
    PROVIDER_CHANNELS,
    Channel,
    DeliveryStatus,
    globally_disabled_code,
    processor_exception_code,
)
from notify_service.features.notifications.lifecycle import (
    apply_delivery_state,
    refresh_lifecycle_status,
    schedule_retry_or_fail,
)
from notify_service.features.notifications.policy import DeliveryPolicy
from notify_service.features.notifications.metrics import (
    notification_claim_conflicts_total,
    notification_delivery_outcome_total,
    notification_dispatch_cycle_duration_seconds,
    notification_dispatch_cycles_skipped_total,
    notification_dispatch_errors_total,
    notification_purged_total,
)
from notify_service.features.notifications.providers import ExpoPushProvider
from notify_service.features.notifications.repository import (
    NotificationRepository,
    get_notification_repository,
)
from notify_service.infra.logging import get_lazy_logger, log_context
from notify_service.utils.timeutils import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from notify_service.core.settings.notifications import NotificationSettings, PushSettings
    from notify_service.features.notifications.channels import ChannelProcessor
    from notify_service.features.notifications.providers import PushProvider
    from notify_service.infra.realtime import RealtimePublisher

logger = logging.getLogger(__name__)
lazy_logger = get_lazy_logger(__name__)

DISPATCH_ORDER: tuple[Channel, ...] = (*PROVIDER_CHANNELS, Channel.IN_APP)

DISPATCH_JOB_ID = "notification_dispatch"
PURGE_JOB_ID = "notification_purge"


@dataclass
class ChannelCycleStats:
    candidates: int = 0
    claimed: int = 0
    conflicts: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    errors: int = 0

    def record(self, outcome: DeliveryOutcome) -> None:
        if outcome.status == DeliveryStatus.DELIVERED:
            self.delivered += 1
        elif outcome.status == DeliveryStatus.QUEUED:
            self.retried += 1
        elif outcome.status == DeliveryStatus.FAILED:
            self.failed += 1
        elif outcome.status == DeliveryStatus.CANCELLED:
            self.cancelled += 1


@dataclass
class DispatchCycleReport:
    """What one dispatch cycle did, per channel.

    ``skipped`` is set when another cycle held the lock; ``aborted`` when a
    storage error stopped the cycle early.
    """

    cycle_id: str
    started_at: datetime
    skipped: bool = False
    aborted: bool = False
    duration_seconds: float = 0.0
    channels: dict[str, ChannelCycleStats] = field(default_factory=dict)

    def stats(self, channel: str) -> ChannelCycleStats:
        return self.channels.setdefault(channel, ChannelCycleStats())

    @property
    def totals(self) -> ChannelCycleStats:
        total = ChannelCycleStats()
        for stats in self.channels.values():
            for name, value in asdict(stats).items():
                setattr(total, name, getattr(total, name) + value)
        return total

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "skipped": self.skipped,
            "aborted": self.aborted,
            "duration_seconds": round(self.duration_seconds, 4),
            "channels": {name: asdict(stats) for name, stats in self.channels.items()},
            "totals": asdict(self.totals),
        }


@dataclass(frozen=True, slots=True)
class _Candidate:
    notification_id: UUID
    status: str
    attempt_count: int


def backoff_from_settings(settings: NotificationSettings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.retry_max_delay_seconds,
    )


class DispatchScheduler:
    """Periodic dispatcher for queued deliveries.

    Collaborators are injected: the session factory, one processor per
    channel, settings and the clock. ``create()`` wires the production
    defaults (Expo provider, stub processors for unconfigured channels).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processors: Iterable[ChannelProcessor],
        *,
        settings: NotificationSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        repository: NotificationRepository | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._processors: dict[str, ChannelProcessor] = {p.channel: p for p in processors}
        self._settings = settings or get_notification_settings()
        self._backoff = backoff_from_settings(self._settings)
        self._clock = clock
        self._repository = repository or get_notification_repository()
        self._lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None

        missing = [c.value for c in DISPATCH_ORDER if c.value not in self._processors]
        if missing:
            msg = f"No processor registered for channels: {', '.join(missing)}"
            raise ValueError(msg)

    @classmethod
    def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: NotificationSettings | None = None,
        push_settings: PushSettings | None = None,
        provider: PushProvider | None = None,
        publisher: RealtimePublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> DispatchScheduler:
        settings = settings or get_notification_settings()
        provider = provider or ExpoPushProvider.from_settings(push_settings or get_push_settings())
        backoff = backoff_from_settings(settings)
        processors: list[ChannelProcessor] = [
            PushChannelProcessor(
                provider,
                backoff=backoff,
                default_max_retries=settings.default_max_retries,
            ),
            InAppChannelProcessor(publisher),
            *build_stub_processors(),
        ]
        return cls(session_factory, processors, settings=settings, clock=clock)

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> DispatchCycleReport:
        """Run one dispatch cycle unless one is already in progress."""
        now = self._clock()
        report = DispatchCycleReport(cycle_id=uuid4().hex[:12], started_at=now)

        if self._lock.locked():
            report.skipped = True
            notification_dispatch_cycles_skipped_total.inc()
            logger.info("Dispatch cycle skipped, previous cycle still running")
            return report

        async with self._lock:
            start_time = time.perf_counter()
            with log_context(dispatch_cycle_id=report.cycle_id):
                try:
                    for channel in DISPATCH_ORDER:
                        if self._settings.is_channel_enabled(channel):
                            await self._dispatch_channel(channel.value, now, report)
                        else:
                            await self._sweep_disabled_channel(channel.value, now, report)
                except SQLAlchemyError:
                    report.aborted = True
                    logger.exception("Dispatch cycle aborted by a storage error")
                finally:
                    report.duration_seconds = time.perf_counter() - start_time
                    notification_dispatch_cycle_duration_seconds.observe(report.duration_seconds)

                totals = report.totals
                if totals.claimed or totals.conflicts or report.aborted:
                    logger.info(
                        "Dispatch cycle finished",
                        extra={
                            "claimed": totals.claimed,
                            "delivered": totals.delivered,
                            "retried": totals.retried,
                            "failed": totals.failed,
                            "cancelled": totals.cancelled,
                            "conflicts": totals.conflicts,
                            "errors": totals.errors,
                            "aborted": report.aborted,
                            "duration_seconds": round(report.duration_seconds, 4),
                        },
                    )
                else:
                    lazy_logger.debug(lambda: f"dispatch cycle {report.cycle_id}: nothing due")
        return report

    async def _find_candidates(self, channel: str, now: datetime) -> list[_Candidate]:
        async with self._session_factory() as session:
            notifications = await self._repository.find_dispatch_candidates(
                session,
                channel,
                now,
                claim_timeout_seconds=self._settings.claim_timeout_seconds,
                limit=self._settings.batch_size,
            )
            candidates = []
            for notification in notifications:
                delivery = notification.delivery_for(channel)
                if delivery is not None:
                    candidates.append(
                        _Candidate(
                            notification_id=notification.id,
                            status=delivery.status,
                            attempt_count=delivery.attempt_count,
                        )
                    )
            return candidates

    async def _claim(
        self,
        session: AsyncSession,
        channel: str,
        candidate: _Candidate,
        now: datetime,
        stats: ChannelCycleStats,
    ) -> bool:
        claimed = await self._repository.claim_delivery(
            session,
            candidate.notification_id,
            channel,
            observed_status=candidate.status,
            observed_attempts=candidate.attempt_count,
            now=now,
            claim_timeout_seconds=self._settings.claim_timeout_seconds,
        )
        if claimed:
            stats.claimed += 1
        else:
            await session.rollback()
            stats.conflicts += 1
            notification_claim_conflicts_total.labels(channel=channel).inc()
        return claimed

    async def _dispatch_channel(self, channel: str, now: datetime, report: DispatchCycleReport) -> None:
        stats = report.stats(channel)
        processor = self._processors[channel]
        candidates = await self._find_candidates(channel, now)
        stats.candidates += len(candidates)

        for candidate in candidates:
            with log_context(notification_id=str(candidate.notification_id), channel=channel):
                async with self._session_factory() as session:
                    if not await self._claim(session, channel, candidate, now, stats):
                        continue
                    await session.commit()

                outcome = await self._process_claimed(processor, candidate.notification_id, now, stats)
                if outcome is None:
                    continue

                stats.record(outcome)
                notification_delivery_outcome_total.labels(channel=channel, status=outcome.status.value).inc()

    async def _process_claimed(
        self,
        processor: ChannelProcessor,
        notification_id: UUID,
        now: datetime,
        stats: ChannelCycleStats,
    ) -> DeliveryOutcome | None:
        channel = processor.channel
        async with self._session_factory() as session:
            notification = await self._repository.load_for_dispatch(session, notification_id)
            delivery = notification.delivery_for(channel) if notification else None
            if notification is None or delivery is None:
                return None

            try:
                outcome = await processor.process(session, notification, delivery, now)
            except SQLAlchemyError:
                raise
            except Exception as exc:
                stats.errors += 1
                notification_dispatch_errors_total.labels(channel=channel).inc()
                logger.exception("Channel processor failed")
                await session.rollback()
                return await self._record_processor_error(session, notification_id, channel, now, exc)

            refresh_lifecycle_status(notification)
            await session.commit()

        await processor.after_commit(notification, outcome)
        return outcome

    async def _record_processor_error(
        self,
        session: AsyncSession,
        notification_id: UUID,
        channel: str,
        now: datetime,
        exc: Exception,
    ) -> DeliveryOutcome | None:
        """Count a raising processor as a failed attempt of the claimed delivery."""
        notification = await self._repository.load_for_dispatch(session, notification_id)
        delivery = notification.delivery_for(channel) if notification else None
        if notification is None or delivery is None or delivery.status != DeliveryStatus.SENDING:
            return None

        policy = DeliveryPolicy.from_document(
            notification.delivery_policy,
            default_max_retries=self._settings.default_max_retries,
        )
        error_code = processor_exception_code(channel)
        error_message = str(exc) or type(exc).__name__
        status = schedule_retry_or_fail(
            delivery,
            now,
            max_retries=policy.max_retries,
            backoff=self._backoff,
            error_code=error_code,
            error_message=error_message,
        )
        refresh_lifecycle_status(notification)
        await session.commit()
        return DeliveryOutcome(
            channel=channel,
            status=status,
            error_code=error_code,
            error_message=error_message,
        )

    async def _sweep_disabled_channel(self, channel: str, now: datetime, report: DispatchCycleReport) -> None:
        stats = report.stats(channel)
        candidates = await self._find_candidates(channel, now)
        stats.candidates += len(candidates)
        if not candidates:
            return

        code = globally_disabled_code(channel)
        for candidate in candidates:
            async with self._session_factory() as session:
                if not await self._claim(session, channel, candidate, now, stats):
                    continue

                notification = await self._repository.load_for_dispatch(session, candidate.notification_id)
                delivery = notification.delivery_for(channel) if notification else None
                if notification is None or delivery is None:
                    await session.rollback()
                    continue

                apply_delivery_state(
                    delivery,
                    DeliveryStatus.CANCELLED,
                    now,
                    error_code=code,
                    error_message=f"Delivery on {channel} is disabled by the operator.",
                )
                refresh_lifecycle_status(notification)
                await session.commit()

            stats.cancelled += 1
            notification_delivery_outcome_total.labels(channel=channel, status=DeliveryStatus.CANCELLED.value).inc()

        logger.info(
            "Cancelled deliveries on globally disabled channel",
            extra={"channel": channel, "cancelled": stats.cancelled},
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_expired(self) -> int:
        """Delete notifications past their ``expires_at``."""
        now = self._clock()
        async with self._session_factory() as session:
            count = await self._repository.purge_expired(session, now)
            await session.commit()
        if count:
            notification_purged_total.inc(count)
        return count

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def _purge_job(self) -> None:
        try:
            await self.purge_expired()
        except SQLAlchemyError:
            logger.exception("Expired notification purge failed")

    def start(self) -> None:
        """Start the periodic jobs. Must be called from a running event loop."""
        if self.running:
            logger.warning("Dispatch scheduler is already running")
            return

        scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )
        scheduler.add_job(
            func=self.run_cycle,
            trigger=IntervalTrigger(seconds=self._settings.dispatch_interval_seconds),
            id=DISPATCH_JOB_ID,
            name="Dispatch due notification deliveries",
            replace_existing=True,
        )
        scheduler.add_job(
            func=self._purge_job,
            trigger=IntervalTrigger(seconds=self._settings.purge_interval_seconds),
            id=PURGE_JOB_ID,
            name="Purge expired notifications",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler

        logger.info(
            "Dispatch scheduler started",
            extra={
                "interval_seconds": self._settings.dispatch_interval_seconds,
                "batch_size": self._settings.batch_size,
                "purge_interval_seconds": self._settings.purge_interval_seconds,
            },
        )

    async def stop(self) -> None:
        """Stop the timer and wait for an in-flight cycle to finish."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        async with self._lock:
            pass
        logger.info("Dispatch scheduler stopped")

    def get_job_status(self) -> list[dict[str, Any]]:
        if self._scheduler is None:
            return []
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]


_scheduler: DispatchScheduler | None = None


def get_dispatch_scheduler() -> DispatchScheduler | None:
    """The scheduler started with the application, if any."""
    return _scheduler


def set_dispatch_scheduler(scheduler: DispatchScheduler | None) -> None:
    global _scheduler
    _scheduler = scheduler
