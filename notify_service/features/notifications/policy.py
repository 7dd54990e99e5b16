"""Delivery policy resolution.

Pure functions: given a recipient's stored preferences, a notification's
topic/priority/delivery policy and the current instant, decide whether a
channel may be used. Nothing here touches the database.

Rules for one channel, first match wins:

1. master switch off and priority is not critical -> deny
2. notification forbids the channel (allow_in_app / allow_push false) -> deny
3. topic override for the channel -> use it
4. priority override for the channel -> use it
5. push only: push switched off -> allow only for critical notifications
   that keep allow_critical_override
6. push only: quiet hours active, not critical, respect_quiet_hours -> deny
7. otherwise the channel's own preference flag
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from notify_service.features.notifications.backoff import resolve_max_retries
from notify_service.features.notifications.constants import (
    KNOWN_PRIORITIES,
    Channel,
    Priority,
)
from notify_service.utils.timeutils import ensure_utc

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")

OVERRIDE_SECTIONS = ("topic_overrides", "priority_overrides")


class PolicyTarget(Protocol):
    """What the resolver needs from a notification."""

    topic: str
    priority: str
    delivery_policy: dict[str, Any]


def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _clean_overrides(raw: Any) -> dict[str, dict[str, bool]]:
    if not isinstance(raw, dict):
        return {}
    cleaned: dict[str, dict[str, bool]] = {}
    for key, channels in raw.items():
        if not isinstance(channels, dict):
            continue
        flags = {str(ch): flag for ch, flag in channels.items() if isinstance(flag, bool)}
        if flags:
            cleaned[str(key)] = flags
    return cleaned


@dataclass(frozen=True, slots=True)
class QuietHours:
    enabled: bool = False
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"

    @classmethod
    def from_document(cls, doc: Any) -> QuietHours:
        if not isinstance(doc, dict):
            return cls()
        defaults = cls()
        return cls(
            enabled=_as_bool(doc.get("enabled"), defaults.enabled),
            start=str(doc.get("start") or defaults.start),
            end=str(doc.get("end") or defaults.end),
            timezone=str(doc.get("timezone") or defaults.timezone),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "start": self.start,
            "end": self.end,
            "timezone": self.timezone,
        }


@dataclass(frozen=True, slots=True)
class DeliveryPreferences:
    """A recipient's delivery preferences with defaults applied.

    Override maps look like ``{"compliance": {"push": False}}``; the inner
    keys are channel names.
    """

    master_enabled: bool = True
    in_app_enabled: bool = True
    push_enabled: bool = True
    email_enabled: bool = False
    sms_enabled: bool = False
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    topic_overrides: dict[str, dict[str, bool]] = field(default_factory=dict)
    priority_overrides: dict[str, dict[str, bool]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any] | None) -> DeliveryPreferences:
        """Build preferences from a stored document, defaulting absent or invalid keys."""
        doc = doc or {}
        defaults = cls()
        return cls(
            master_enabled=_as_bool(doc.get("master_enabled"), defaults.master_enabled),
            in_app_enabled=_as_bool(doc.get("in_app_enabled"), defaults.in_app_enabled),
            push_enabled=_as_bool(doc.get("push_enabled"), defaults.push_enabled),
            email_enabled=_as_bool(doc.get("email_enabled"), defaults.email_enabled),
            sms_enabled=_as_bool(doc.get("sms_enabled"), defaults.sms_enabled),
            quiet_hours=QuietHours.from_document(doc.get("quiet_hours")),
            topic_overrides=_clean_overrides(doc.get("topic_overrides")),
            priority_overrides=_clean_overrides(doc.get("priority_overrides")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "master_enabled": self.master_enabled,
            "in_app_enabled": self.in_app_enabled,
            "push_enabled": self.push_enabled,
            "email_enabled": self.email_enabled,
            "sms_enabled": self.sms_enabled,
            "quiet_hours": self.quiet_hours.to_document(),
            "topic_overrides": {k: dict(v) for k, v in self.topic_overrides.items()},
            "priority_overrides": {k: dict(v) for k, v in self.priority_overrides.items()},
        }

    def channel_flag(self, channel: str) -> bool:
        """Global preference flag for a channel; webhook has none and allows."""
        return {
            Channel.IN_APP: self.in_app_enabled,
            Channel.PUSH: self.push_enabled,
            Channel.EMAIL: self.email_enabled,
            Channel.SMS: self.sms_enabled,
        }.get(channel, True)


def merge_preferences(current: Mapping[str, Any] | None, partial: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a partial update to a stored preference document.

    Top-level keys are replaced. ``quiet_hours`` merges field by field.
    Override maps merge per key, and each key's channel map merges too; a
    ``None`` value for a key removes that override. Keys whose value is
    ``None`` at the top level are ignored.
    """
    merged = DeliveryPreferences.from_document(current).to_document()

    for key, value in partial.items():
        if value is None:
            continue
        if key == "quiet_hours" and isinstance(value, dict):
            merged["quiet_hours"] = {
                **merged["quiet_hours"],
                **{k: v for k, v in value.items() if v is not None},
            }
        elif key in OVERRIDE_SECTIONS and isinstance(value, dict):
            section = dict(merged[key])
            for name, channels in value.items():
                if channels is None:
                    section.pop(name, None)
                elif isinstance(channels, dict):
                    section[name] = {**section.get(name, {}), **channels}
            merged[key] = section
        else:
            merged[key] = value

    return DeliveryPreferences.from_document(merged).to_document()


@dataclass(frozen=True, slots=True)
class DeliveryPolicy:
    """Per-notification delivery flags."""

    allow_in_app: bool = True
    allow_push: bool = True
    respect_quiet_hours: bool = True
    allow_critical_override: bool = True
    max_retries: int = 4

    @classmethod
    def from_document(cls, doc: Mapping[str, Any] | None, *, default_max_retries: int = 4) -> DeliveryPolicy:
        doc = doc or {}
        return cls(
            allow_in_app=doc.get("allow_in_app") is not False,
            allow_push=doc.get("allow_push") is not False,
            respect_quiet_hours=doc.get("respect_quiet_hours") is not False,
            allow_critical_override=doc.get("allow_critical_override") is not False,
            max_retries=resolve_max_retries(dict(doc), default_max_retries),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "allow_in_app": self.allow_in_app,
            "allow_push": self.allow_push,
            "respect_quiet_hours": self.respect_quiet_hours,
            "allow_critical_override": self.allow_critical_override,
            "max_retries": self.max_retries,
        }


def normalize_priority(priority: str | None) -> str:
    """Unknown or missing priorities are treated as normal."""
    return priority if priority in KNOWN_PRIORITIES else Priority.NORMAL.value


def parse_minutes(value: str) -> int | None:
    """``"HH:MM"`` to minutes after midnight, or None when malformed."""
    match = _HHMM.match(value.strip()) if isinstance(value, str) else None
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def is_within_quiet_hours(quiet_hours: QuietHours, now: datetime) -> bool:
    """Whether ``now`` falls inside the recipient's half-open quiet window.

    ``start == end`` means always on; ``start > end`` wraps midnight. Bad
    times or an unknown timezone make the window inactive.
    """
    if not quiet_hours.enabled:
        return False

    start = parse_minutes(quiet_hours.start)
    end = parse_minutes(quiet_hours.end)
    if start is None or end is None:
        logger.debug(
            "Ignoring malformed quiet hours",
            extra={"start": quiet_hours.start, "end": quiet_hours.end},
        )
        return False

    try:
        zone = ZoneInfo(quiet_hours.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Ignoring quiet hours with unknown timezone", extra={"timezone": quiet_hours.timezone})
        return False

    local = ensure_utc(now).astimezone(zone)
    current = local.hour * 60 + local.minute

    if start == end:
        return True
    if start < end:
        return start <= current < end
    return current >= start or current < end


def _override(section: dict[str, dict[str, bool]], key: str, channel: str) -> bool | None:
    flags = section.get(key)
    if not flags:
        return None
    return flags.get(channel)


def should_deliver(
    preferences: DeliveryPreferences,
    notification: PolicyTarget,
    channel: str,
    now: datetime,
) -> bool:
    """Decide whether ``notification`` may be delivered on ``channel`` right now."""
    priority = normalize_priority(notification.priority)
    critical = priority == Priority.CRITICAL
    policy = DeliveryPolicy.from_document(notification.delivery_policy)

    if not preferences.master_enabled and not critical:
        return False

    if channel == Channel.IN_APP and not policy.allow_in_app:
        return False
    if channel == Channel.PUSH and not policy.allow_push:
        return False

    topic_override = _override(preferences.topic_overrides, notification.topic, channel)
    if topic_override is not None:
        return topic_override

    priority_override = _override(preferences.priority_overrides, priority, channel)
    if priority_override is not None:
        return priority_override

    if channel == Channel.PUSH:
        if not preferences.push_enabled:
            return critical and policy.allow_critical_override
        if (
            not critical
            and policy.respect_quiet_hours
            and is_within_quiet_hours(preferences.quiet_hours, now)
        ):
            return False
        return True

    return preferences.channel_flag(channel)
