"""Tests for the retry ladder and attempt budgets."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from notify_service.features.notifications.backoff import (
    BackoffPolicy,
    is_exhausted,
    resolve_max_retries,
)


@pytest.mark.parametrize(
    ("attempt", "seconds"),
    [(1, 30), (2, 120), (3, 600), (4, 1800), (9, 1800), (0, 30)],
)
def test_default_ladder(attempt: int, seconds: int) -> None:
    assert BackoffPolicy().delay_for_attempt(attempt) == timedelta(seconds=seconds)


def test_delays_are_capped() -> None:
    policy = BackoffPolicy(base_delay_seconds=60, max_delay_seconds=300)

    assert policy.delay_for_attempt(1) == timedelta(seconds=60)
    assert policy.delay_for_attempt(2) == timedelta(seconds=240)
    assert policy.delay_for_attempt(3) == timedelta(seconds=300)


def test_max_delay_never_below_base() -> None:
    policy = BackoffPolicy(base_delay_seconds=100, max_delay_seconds=10)
    assert policy.max_delay_seconds == 100


def test_next_retry_at() -> None:
    now = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
    assert BackoffPolicy().next_retry_at(2, now) == now + timedelta(minutes=2)


@pytest.mark.parametrize(
    ("policy", "expected"),
    [
        (None, 4),
        ({}, 4),
        ({"max_retries": 2}, 2),
        ({"max_retries": 0}, 0),
        ({"max_retries": -3}, 0),
        ({"max_retries": 50}, 10),
        ({"max_retries": "3"}, 4),
        ({"max_retries": True}, 4),
    ],
)
def test_resolve_max_retries(policy: dict | None, expected: int) -> None:
    assert resolve_max_retries(policy) == expected


def test_is_exhausted() -> None:
    assert not is_exhausted(1, 4)
    assert is_exhausted(4, 4)
    assert is_exhausted(1, 0)
