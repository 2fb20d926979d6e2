"""Alert channel implementations for various platforms."""

from token_alert_hub.alerter.channels.base import HttpChannel, classify_status
from token_alert_hub.alerter.channels.discord import DiscordChannel
from token_alert_hub.alerter.channels.telegram import TelegramChannel
from token_alert_hub.alerter.channels.webhook import WebhookChannel

__all__ = [
    "DiscordChannel",
    "HttpChannel",
    "TelegramChannel",
    "WebhookChannel",
    "classify_status",
]
