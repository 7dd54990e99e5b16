"""Notification dispatch settings."""

from __future__ import annotations

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class NotificationSettings(BaseSettings):
    """Dispatcher, channel kill switch and retry configuration.

    Environment variables use NOTIFY_ prefix.
    Example: NOTIFY_PUSH_ENABLED=false, NOTIFY_BATCH_SIZE=50
    """

    # ─────────────────────────────────────────────────────
    # Dispatcher
    # ─────────────────────────────────────────────────────
    dispatcher_enabled: bool = Field(
        default=True,
        description="Start the periodic dispatch cycle with the application.",
    )
    dispatch_interval_seconds: float = Field(
        default=10.0,
        ge=0.5,
        le=3600.0,
        description="Seconds between dispatch cycles.",
    )
    batch_size: int = Field(
        default=30,
        ge=1,
        le=1000,
        description="Maximum candidates fetched per channel per cycle.",
    )
    claim_timeout_seconds: int = Field(
        default=300,
        ge=30,
        le=86400,
        description="A delivery left in 'sending' longer than this may be claimed again.",
    )
    purge_interval_seconds: int = Field(
        default=3600,
        ge=60,
        le=86400,
        description="Seconds between expired-notification purges.",
    )

    # ─────────────────────────────────────────────────────
    # Channel kill switches
    # ─────────────────────────────────────────────────────
    push_enabled: bool = Field(default=True, description="Allow push delivery.")
    email_enabled: bool = Field(default=False, description="Allow email delivery.")
    sms_enabled: bool = Field(default=False, description="Allow SMS delivery.")
    webhook_enabled: bool = Field(default=False, description="Allow webhook delivery.")

    # ─────────────────────────────────────────────────────
    # Retry / backoff
    # ─────────────────────────────────────────────────────
    retry_base_delay_seconds: int = Field(
        default=30,
        ge=1,
        le=3600,
        description="Delay before the first retry; later retries scale from it.",
    )
    retry_max_delay_seconds: int = Field(
        default=1800,
        ge=1,
        le=86400,
        description="Upper bound for any single retry delay.",
    )
    default_max_retries: int = Field(
        default=4,
        ge=0,
        le=10,
        description="Attempt budget when a notification does not set its own.",
    )

    model_config = SettingsConfigDict(
        env_prefix="NOTIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @model_validator(mode="after")
    def validate_retry_bounds(self) -> NotificationSettings:
        """Ensure the maximum retry delay is not below the base delay."""
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            msg = "retry_max_delay_seconds must be >= retry_base_delay_seconds"
            raise ValueError(msg)
        return self

    def is_channel_enabled(self, channel: str) -> bool:
        """Operator kill switch lookup. In-app cannot be switched off."""
        return {
            "push": self.push_enabled,
            "email": self.email_enabled,
            "sms": self.sms_enabled,
            "webhook": self.webhook_enabled,
        }.get(channel, True)


class PushSettings(BaseSettings):
    """Push provider credentials and transport settings.

    Environment variables use PUSH_ prefix.
    Example: PUSH_EXPO_ACCESS_TOKEN=..., PUSH_REQUEST_TIMEOUT_SECONDS=3
    """

    provider: str = Field(default="expo", description="Push provider identifier.")
    expo_push_url: str = Field(
        default="https://exp.host/--/api/v2/push/send",
        description="Expo push send endpoint.",
    )
    expo_access_token: SecretStr | None = Field(
        default=None,
        description="Optional Expo access token (enhanced push security).",
    )
    request_timeout_seconds: float = Field(
        default=5.0,
        ge=0.5,
        le=60.0,
        description="Timeout for a single provider call.",
    )
    chunk_size: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Messages per provider call (Expo allows at most 100).",
    )

    model_config = SettingsConfigDict(
        env_prefix="PUSH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
