"""Retry scheduling for failed delivery attempts.

Fixed ladder, no jitter: a single dispatcher owns the retries, so there is no
thundering herd to spread out.

    attempt 1 -> base
    attempt 2 -> 4 x base
    attempt 3 -> 20 x base
    attempt 4+ -> 60 x base

Each step is capped at ``max_delay_seconds``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

BACKOFF_MULTIPLIERS: tuple[int, ...] = (1, 4, 20, 60)

DEFAULT_MAX_RETRIES = 4
MAX_RETRIES_CEILING = 10


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_delay_seconds: int = 30
    max_delay_seconds: int = 1800

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_delay_seconds", max(1, int(self.base_delay_seconds)))
        object.__setattr__(
            self, "max_delay_seconds", max(self.base_delay_seconds, int(self.max_delay_seconds))
        )

    def delay_for_attempt(self, attempt: int) -> timedelta:
        """Delay after the given (1-based) failed attempt."""
        index = min(max(attempt, 1) - 1, len(BACKOFF_MULTIPLIERS) - 1)
        seconds = min(self.base_delay_seconds * BACKOFF_MULTIPLIERS[index], self.max_delay_seconds)
        return timedelta(seconds=seconds)

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + self.delay_for_attempt(attempt)


def resolve_max_retries(delivery_policy: dict | None, default: int = DEFAULT_MAX_RETRIES) -> int:
    """Attempt budget for a notification, clamped to 0-10.

    Non-integer values fall back to ``default``.
    """
    value = (delivery_policy or {}).get("max_retries")
    if isinstance(value, bool) or not isinstance(value, int):
        value = default
    return min(max(value, 0), MAX_RETRIES_CEILING)


def is_exhausted(attempt_count: int, max_retries: int) -> bool:
    """True once no further attempt may be scheduled.

    A budget of 0 still allows the attempt that was just made, it just never
    schedules another.
    """
    return attempt_count >= max_retries
