"""Prometheus metrics for notification delivery.

Usage:
    from notify_service.features.notifications.metrics import (
        notification_created_total,
        notification_delivery_outcome_total,
    )

    notification_created_total.labels(priority="high").inc()
    notification_delivery_outcome_total.labels(channel="push", status="delivered").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

from notify_service.infra.metrics.prometheus import REGISTRY

# =============================================================================
# Lifecycle
# =============================================================================

notification_created_total = Counter(
    "notification_created_total",
    "Total number of notifications created",
    labelnames=["priority"],
    registry=REGISTRY,
)

notification_deduplicated_total = Counter(
    "notification_deduplicated_total",
    "Dispatch requests answered with an existing notification",
    registry=REGISTRY,
)

notification_purged_total = Counter(
    "notification_purged_total",
    "Notifications deleted after their expiry",
    registry=REGISTRY,
)

# =============================================================================
# Dispatch
# =============================================================================

notification_delivery_outcome_total = Counter(
    "notification_delivery_outcome_total",
    "Delivery outcomes by channel and resulting status",
    labelnames=["channel", "status"],
    registry=REGISTRY,
)
"""
Labels:
    channel: in_app, push, email, sms, webhook
    status: delivered, queued (retry scheduled), failed, cancelled
"""

notification_claim_conflicts_total = Counter(
    "notification_claim_conflicts_total",
    "Claims lost to a concurrent dispatcher or cancel",
    labelnames=["channel"],
    registry=REGISTRY,
)

notification_dispatch_errors_total = Counter(
    "notification_dispatch_errors_total",
    "Unexpected errors while processing a claimed delivery",
    labelnames=["channel"],
    registry=REGISTRY,
)

notification_dispatch_cycle_duration_seconds = Histogram(
    "notification_dispatch_cycle_duration_seconds",
    "Duration of one dispatch cycle",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

notification_dispatch_cycles_skipped_total = Counter(
    "notification_dispatch_cycles_skipped_total",
    "Ticks skipped because a cycle was still running",
    registry=REGISTRY,
)

# =============================================================================
# Push provider
# =============================================================================

push_provider_request_duration_seconds = Histogram(
    "push_provider_request_duration_seconds",
    "Latency of one push provider call",
    labelnames=["provider"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

push_provider_messages_total = Counter(
    "push_provider_messages_total",
    "Push messages by provider verdict",
    labelnames=["provider", "result"],
    registry=REGISTRY,
)
