"""Alerting layer - suppression, batching and multi-channel delivery."""

from token_alert_hub.alerter.batcher import AlertBatcher
from token_alert_hub.alerter.channels.discord import DiscordChannel
from token_alert_hub.alerter.channels.telegram import TelegramChannel
from token_alert_hub.alerter.channels.webhook import WebhookChannel
from token_alert_hub.alerter.dedup import (
    DedupStore,
    MemoryDedupStore,
    NearDuplicateFilter,
    RedisDedupStore,
    SimilarityStrategy,
    build_dedup_key,
)
from token_alert_hub.alerter.formatter import AlertFormatter
from token_alert_hub.alerter.history import AlertHistory, AlertRecord
from token_alert_hub.alerter.models import (
    Batch,
    DeliveryError,
    DeliveryRecord,
    DeliveryStatus,
    FormattedAlert,
    InvalidTransitionError,
    SendResult,
)
from token_alert_hub.alerter.ratelimit import RateDecision, RateLimiter
from token_alert_hub.alerter.scheduler import (
    ChannelAdapter,
    DeliveryLog,
    DeliveryScheduler,
    DeliveryStats,
    RetryPolicy,
)

__all__ = [
    "AlertBatcher",
    "AlertFormatter",
    "AlertHistory",
    "AlertRecord",
    "Batch",
    "ChannelAdapter",
    "DedupStore",
    "DeliveryError",
    "DeliveryLog",
    "DeliveryRecord",
    "DeliveryScheduler",
    "DeliveryStats",
    "DeliveryStatus",
    "DiscordChannel",
    "FormattedAlert",
    "InvalidTransitionError",
    "MemoryDedupStore",
    "NearDuplicateFilter",
    "RateDecision",
    "RateLimiter",
    "RedisDedupStore",
    "RetryPolicy",
    "SendResult",
    "SimilarityStrategy",
    "TelegramChannel",
    "WebhookChannel",
    "build_dedup_key",
]
