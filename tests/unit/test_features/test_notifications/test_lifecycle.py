"""Tests for channel normalisation, delivery transitions and aggregate status."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from notify_service.features.notifications.backoff import BackoffPolicy
from notify_service.features.notifications.constants import DeliveryStatus, LifecycleStatus
from notify_service.features.notifications.lifecycle import (
    apply_delivery_state,
    build_initial_deliveries,
    compute_lifecycle_status,
    is_retry_pending,
    normalize_channels,
    schedule_retry_or_fail,
)
from notify_service.features.notifications.models import NotificationDelivery

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _d(status: str, error_code: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(status=status, error_code=error_code)


class TestNormalizeChannels:
    def test_keeps_request_order_and_drops_duplicates(self) -> None:
        assert normalize_channels(["push", "in_app", "push"], "normal") == ["push", "in_app"]

    def test_drops_unknown_and_normalises_case(self) -> None:
        assert normalize_channels([" PUSH ", "pager", "email"], "normal") == ["push", "email"]

    def test_nothing_known_falls_back_to_in_app(self) -> None:
        assert normalize_channels(["pager", "fax"], "high") == ["in_app"]

    def test_empty_request_falls_back_to_in_app(self) -> None:
        assert normalize_channels([], "critical") == ["in_app"]

    @pytest.mark.parametrize(
        ("priority", "expected"),
        [
            ("low", ["in_app"]),
            ("normal", ["in_app"]),
            ("high", ["in_app", "push"]),
            ("critical", ["in_app", "push"]),
            ("bogus", ["in_app"]),
            (None, ["in_app"]),
        ],
    )
    def test_no_request_uses_priority_defaults(self, priority: str | None, expected: list[str]) -> None:
        assert normalize_channels(None, priority) == expected

    def test_accepts_a_generator(self) -> None:
        assert normalize_channels((c for c in ["sms", "sms", "webhook"]), "normal") == ["sms", "webhook"]


class TestComputeLifecycleStatus:
    def test_no_deliveries_is_queued(self) -> None:
        assert compute_lifecycle_status([]) == LifecycleStatus.QUEUED

    def test_all_cancelled(self) -> None:
        deliveries = [_d("cancelled", "push_disabled"), _d("cancelled", "in_app_disabled")]
        assert compute_lifecycle_status(deliveries) == LifecycleStatus.CANCELLED

    def test_delivered_and_cancelled_is_completed(self) -> None:
        assert compute_lifecycle_status([_d("delivered"), _d("cancelled")]) == LifecycleStatus.COMPLETED

    def test_all_delivered_is_completed(self) -> None:
        assert compute_lifecycle_status([_d("delivered"), _d("delivered")]) == LifecycleStatus.COMPLETED

    def test_retry_pending_next_to_delivered_is_partially_sent(self) -> None:
        deliveries = [_d("delivered"), _d("queued", "missing_device_token")]
        assert compute_lifecycle_status(deliveries) == LifecycleStatus.PARTIALLY_SENT

    def test_failed_next_to_queued_is_partially_sent(self) -> None:
        assert compute_lifecycle_status([_d("failed", "x"), _d("queued")]) == LifecycleStatus.PARTIALLY_SENT

    def test_fresh_queued_next_to_delivered_is_dispatching(self) -> None:
        assert compute_lifecycle_status([_d("delivered"), _d("queued")]) == LifecycleStatus.DISPATCHING

    def test_sending_is_dispatching(self) -> None:
        assert compute_lifecycle_status([_d("sending"), _d("cancelled")]) == LifecycleStatus.DISPATCHING

    def test_all_failed_is_partially_sent(self) -> None:
        assert compute_lifecycle_status([_d("failed", "x"), _d("failed", "y")]) == LifecycleStatus.PARTIALLY_SENT

    def test_failed_next_to_cancelled_is_partially_sent(self) -> None:
        assert compute_lifecycle_status([_d("failed", "x"), _d("cancelled")]) == LifecycleStatus.PARTIALLY_SENT

    def test_is_idempotent(self) -> None:
        deliveries = [_d("delivered"), _d("queued", "push_send_failed")]
        assert compute_lifecycle_status(deliveries) == compute_lifecycle_status(deliveries)


def test_is_retry_pending_requires_error_code() -> None:
    assert is_retry_pending(_d("queued", "push_send_failed"))
    assert not is_retry_pending(_d("queued"))
    assert not is_retry_pending(_d("failed", "push_send_failed"))


def test_build_initial_deliveries() -> None:
    deliveries = build_initial_deliveries(["in_app", "push"], NOW)

    assert [d.channel for d in deliveries] == ["in_app", "push"]
    assert [d.position for d in deliveries] == [0, 1]
    assert all(d.status == DeliveryStatus.QUEUED and d.attempt_count == 0 for d in deliveries)
    assert all(d.requested_at == NOW for d in deliveries)


class TestApplyDeliveryState:
    def test_delivered_clears_errors(self) -> None:
        delivery = NotificationDelivery(channel="push", status="queued", attempt_count=1)
        delivery.error_code = "missing_device_token"
        delivery.next_retry_at = NOW + timedelta(seconds=30)

        apply_delivery_state(delivery, DeliveryStatus.DELIVERED, NOW, provider_message_id="ticket-1")

        assert delivery.status == "delivered"
        assert delivery.delivered_at == NOW
        assert delivery.sent_at == NOW
        assert delivery.provider_message_id == "ticket-1"
        assert delivery.error_code is None
        assert delivery.next_retry_at is None

    def test_failed_stamps_failure_time(self) -> None:
        delivery = NotificationDelivery(channel="push", status="sending", attempt_count=4)

        apply_delivery_state(delivery, DeliveryStatus.FAILED, NOW, error_code="push_send_failed", error_message="no")

        assert delivery.status == "failed"
        assert delivery.failure_at == NOW
        assert delivery.error_code == "push_send_failed"
        assert delivery.next_retry_at is None


class TestScheduleRetryOrFail:
    def test_requeues_with_backoff_while_budget_remains(self) -> None:
        delivery = NotificationDelivery(channel="push", status="sending", attempt_count=1)

        status = schedule_retry_or_fail(
            delivery,
            NOW,
            max_retries=4,
            backoff=BackoffPolicy(),
            error_code="missing_device_token",
            error_message="No active push token found for user.",
        )

        assert status == DeliveryStatus.QUEUED
        assert delivery.status == "queued"
        assert delivery.next_retry_at == NOW + timedelta(seconds=30)
        assert delivery.error_code == "missing_device_token"

    def test_fails_when_budget_is_spent(self) -> None:
        delivery = NotificationDelivery(channel="push", status="sending", attempt_count=2)

        status = schedule_retry_or_fail(
            delivery,
            NOW,
            max_retries=2,
            backoff=BackoffPolicy(),
            error_code="push_send_failed",
            error_message="Push provider failed to deliver.",
        )

        assert status == DeliveryStatus.FAILED
        assert delivery.failure_at == NOW
        assert delivery.next_retry_at is None

    def test_zero_budget_never_retries(self) -> None:
        delivery = NotificationDelivery(channel="push", status="sending", attempt_count=1)

        status = schedule_retry_or_fail(
            delivery,
            NOW,
            max_retries=0,
            backoff=BackoffPolicy(),
            error_code="push_send_failed",
            error_message="Push provider failed to deliver.",
        )

        assert status == DeliveryStatus.FAILED
