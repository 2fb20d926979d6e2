"""Discord webhook channel implementation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from token_alert_hub.alerter.channels.base import HttpChannel

if TYPE_CHECKING:
    from token_alert_hub.alerter.models import DeliveryRecord, FormattedAlert, SendResult

logger = logging.getLogger(__name__)


class DiscordChannel(HttpChannel):
    """Discord webhook channel for sending alerts."""

    channel_type = "discord"

    def __init__(
        self,
        webhook_url: str,
        *,
        channel_id: str = "discord",
        username: str | None = None,
        rate_limit_per_minute: int = 30,
        timeout: float = 10.0,
    ) -> None:
        """Initialize Discord channel.

        Args:
            webhook_url: Discord webhook URL.
            channel_id: Id rules use to target this channel.
            username: Optional display name override for the webhook.
            rate_limit_per_minute: Maximum messages per minute (Discord limit is 30).
            timeout: HTTP request timeout in seconds.
        """
        super().__init__(
            channel_id, rate_limit_per_minute=rate_limit_per_minute, timeout=timeout
        )
        self.webhook_url = webhook_url
        self.username = username

    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        """Post the alert embed to the webhook.

        Args:
            record: Delivery record being attempted.
            message: Formatted alert with discord_embed.

        Returns:
            SendResult describing this single attempt.
        """
        payload: dict[str, object] = {"embeds": [message.discord_embed]}
        if self.username:
            payload["username"] = self.username

        result = await self._post(self.webhook_url, payload)
        if result.ok:
            logger.info(f"Discord alert delivered ({record.id})")
        else:
            logger.warning(f"Discord delivery failed ({record.id}): {result.error}")
        return result
