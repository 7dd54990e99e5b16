"""Notifications feature: multi-channel delivery with a polling dispatcher.

This feature provides:
- Creation with per-recipient fan-out and deduplication keys
- Immediate in-app delivery plus live WebSocket events
- Push delivery through a pluggable provider (Expo)
- Per-user preferences: channel flags, quiet hours, topic/priority overrides
- Per-channel delivery rows claimed by compare-and-set, with retry backoff

Architecture:
    - Models: Notification, NotificationDelivery, UserDevice, UserNotificationPreference
    - Lifecycle: aggregate status derived from the delivery rows
    - Policy: preference and per-notification policy evaluation
    - Channels: processors for in_app, push and the unconfigured channels
    - Scheduler: periodic dispatch cycle and expiry purge (APScheduler)

Example:
    ```python
    service = get_notification_service()
    result = await service.dispatch(
        session,
        DispatchRequest(
            title="Verification approved",
            body="Your company profile is now verified.",
            event_key="company.verification.approved",
            recipient_user_id="user-123",
            priority="high",
        ),
    )
    ```
"""
