"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the Token
Alert Hub, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings.

    The database is optional: without it rules come from a JSON file and the
    delivery log is not persisted.
    """

    model_config = SettingsConfigDict(env_prefix="")

    url: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="PostgreSQL or SQLite connection string",
    )
    pool_size: int = Field(default=5, alias="DATABASE_POOL_SIZE", ge=1)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate database URL format."""
        if v is None:
            return v
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite")):
            raise ValueError("DATABASE_URL must be a PostgreSQL or SQLite connection string")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class RedisSettings(BaseSettings):
    """Redis connection and event stream settings."""

    model_config = SettingsConfigDict(env_prefix="")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )
    stream_name: str = Field(default="events", alias="EVENT_STREAM")
    consumer_group: str = Field(default="alert-pipeline", alias="EVENT_CONSUMER_GROUP")
    consumer_name: str = Field(default="worker-1", alias="EVENT_CONSUMER_NAME")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class DiscordSettings(BaseSettings):
    """Discord notification settings."""

    model_config = SettingsConfigDict(env_prefix="DISCORD_")

    webhook_url: SecretStr | None = Field(
        default=None,
        alias="DISCORD_WEBHOOK_URL",
        description="Discord webhook URL for alerts",
    )
    username: str | None = Field(default=None, alias="DISCORD_USERNAME")

    @property
    def enabled(self) -> bool:
        """Check if Discord notifications are enabled."""
        return self.webhook_url is not None


class TelegramSettings(BaseSettings):
    """Telegram notification settings."""

    model_config = SettingsConfigDict(env_prefix="TELEGRAM_")

    bot_token: SecretStr | None = Field(
        default=None,
        alias="TELEGRAM_BOT_TOKEN",
        description="Telegram bot token",
    )
    chat_id: str | None = Field(
        default=None,
        alias="TELEGRAM_CHAT_ID",
        description="Telegram chat ID for alerts",
    )

    @property
    def enabled(self) -> bool:
        """Check if Telegram notifications are enabled."""
        return self.bot_token is not None and self.chat_id is not None


class WebhookSettings(BaseSettings):
    """Generic webhook notification settings."""

    model_config = SettingsConfigDict(env_prefix="WEBHOOK_")

    url: SecretStr | None = Field(
        default=None,
        alias="WEBHOOK_URL",
        description="Endpoint receiving JSON alert payloads",
    )
    auth_header: SecretStr | None = Field(
        default=None,
        alias="WEBHOOK_AUTH_HEADER",
        description="Value sent in the Authorization header",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: SecretStr | None) -> SecretStr | None:
        if v is None:
            return v
        if not v.get_secret_value().startswith(("http://", "https://")):
            raise ValueError("WEBHOOK_URL must be an HTTP(S) endpoint")
        return v

    @property
    def enabled(self) -> bool:
        return self.url is not None


class AlertingSettings(BaseSettings):
    """Rule evaluation, dedup, batching and delivery settings."""

    model_config = SettingsConfigDict(env_prefix="ALERT_")

    rules_file: str | None = Field(
        default=None,
        alias="ALERT_RULES_FILE",
        description="JSON rules file used when no database is configured",
    )
    dedup_window_seconds: float = Field(default=300, alias="ALERT_DEDUP_WINDOW", gt=0)
    dedup_bucket_seconds: float | None = Field(default=None, alias="ALERT_DEDUP_BUCKET", gt=0)
    dedup_backend: Literal["memory", "redis", "sql"] = Field(
        default="redis", alias="ALERT_DEDUP_BACKEND"
    )

    batch_enabled: bool = Field(default=True, alias="ALERT_BATCH_ENABLED")
    batch_window_seconds: float = Field(default=30, alias="ALERT_BATCH_WINDOW", gt=0)
    batch_min_size: int = Field(default=2, alias="ALERT_BATCH_MIN_SIZE", ge=1)
    batch_max_size: int = Field(default=10, alias="ALERT_BATCH_MAX_SIZE", ge=1)

    retry_base_delay: float = Field(default=1.0, alias="ALERT_RETRY_BASE_DELAY", ge=0)
    retry_max_delay: float = Field(default=30.0, alias="ALERT_RETRY_MAX_DELAY", ge=0)
    retry_max_attempts: int = Field(default=5, alias="ALERT_RETRY_MAX_ATTEMPTS", ge=1)

    max_concurrency: int = Field(default=10, alias="ALERT_MAX_CONCURRENCY", ge=1)
    channel_type_concurrency: int = Field(default=4, alias="ALERT_CHANNEL_CONCURRENCY", ge=1)

    delivery_log_retention_days: int = Field(default=7, alias="ALERT_DELIVERY_LOG_RETENTION_DAYS", ge=1)
    history_enabled: bool = Field(default=True, alias="ALERT_HISTORY_ENABLED")
    history_retention_days: int = Field(default=30, alias="ALERT_HISTORY_RETENTION_DAYS", ge=1)
    sweep_interval_seconds: float = Field(default=60, alias="ALERT_SWEEP_INTERVAL", gt=0)

    @model_validator(mode="after")
    def validate_batch_sizes(self) -> AlertingSettings:
        if self.batch_min_size > self.batch_max_size:
            raise ValueError("ALERT_BATCH_MIN_SIZE must not exceed ALERT_BATCH_MAX_SIZE")
        return self


class HubSettings(BaseSettings):
    """Realtime broadcast hub settings."""

    model_config = SettingsConfigDict(env_prefix="HUB_")

    enabled: bool = Field(default=True, alias="HUB_ENABLED")
    host: str = Field(default="0.0.0.0", alias="HUB_HOST")
    port: int = Field(default=8765, alias="HUB_PORT", ge=1, le=65535)
    path: str = Field(default="/ws", alias="HUB_PATH")
    ping_interval: float = Field(default=30.0, alias="HUB_PING_INTERVAL", gt=0)
    max_missed_pongs: int = Field(default=1, alias="HUB_MAX_MISSED_PONGS", ge=1)
    api_keys: SecretStr | None = Field(
        default=None,
        alias="HUB_API_KEYS",
        description="Comma-separated name:key pairs accepted by the hub",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from token_alert_hub.config import get_settings

        settings = get_settings()
        print(settings.hub.port)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Nested configuration groups
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    discord: DiscordSettings = Field(default_factory=DiscordSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    alerting: AlertingSettings = Field(default_factory=AlertingSettings)
    hub: HubSettings = Field(default_factory=HubSettings)

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    health_port: int = Field(
        default=8080,
        alias="HEALTH_PORT",
        description="HTTP port for health check endpoints",
        ge=1,
        le=65535,
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Evaluate rules without sending alerts",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "database_url": self._redact_url(self.database.url) if self.database.url else "(not set)",
            "redis_url": self._redact_url(self.redis.url),
            "event_stream": self.redis.stream_name,
            "discord_enabled": str(self.discord.enabled),
            "telegram_enabled": str(self.telegram.enabled),
            "webhook_enabled": str(self.webhook.enabled),
            "alerting": {
                "rules_file": self.alerting.rules_file or "(not set)",
                "dedup_window_seconds": str(self.alerting.dedup_window_seconds),
                "dedup_backend": self.alerting.dedup_backend,
                "batch_enabled": str(self.alerting.batch_enabled),
                "batch_window_seconds": str(self.alerting.batch_window_seconds),
                "retry_max_attempts": str(self.alerting.retry_max_attempts),
            },
            "hub": {
                "enabled": str(self.hub.enabled),
                "address": f"{self.hub.host}:{self.hub.port}{self.hub.path}",
                "api_keys": "(set)" if self.hub.api_keys else "(not set)",
            },
            "log_level": self.log_level,
            "health_port": str(self.health_port),
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call reloads the environment."""
    get_settings.cache_clear()
