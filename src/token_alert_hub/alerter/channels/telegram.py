"""Telegram Bot API channel implementation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from token_alert_hub.alerter.channels.base import HttpChannel, classify_status
from token_alert_hub.alerter.models import SendResult

if TYPE_CHECKING:
    from token_alert_hub.alerter.models import DeliveryRecord, FormattedAlert

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot{token}/sendMessage"


class TelegramChannel(HttpChannel):
    """Telegram Bot API channel for sending alerts."""

    channel_type = "telegram"

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        channel_id: str = "telegram",
        rate_limit_per_minute: int = 20,
        timeout: float = 10.0,
    ) -> None:
        """Initialize Telegram channel.

        Args:
            bot_token: Telegram bot token.
            chat_id: Target chat/channel ID.
            channel_id: Id rules use to target this channel.
            rate_limit_per_minute: Maximum messages per minute.
            timeout: HTTP request timeout in seconds.
        """
        super().__init__(
            channel_id, rate_limit_per_minute=rate_limit_per_minute, timeout=timeout
        )
        self.chat_id = chat_id
        self._api_url = TELEGRAM_API_BASE.format(token=bot_token)

    def _classify(self, response: httpx.Response) -> SendResult:
        """Telegram reports errors in the JSON body as well as the status."""
        try:
            result = response.json()
        except ValueError:
            return classify_status(response.status_code, response.text)

        if result.get("ok"):
            return SendResult.success()

        error_code = result.get("error_code") or response.status_code
        description = result.get("description", "Unknown error")
        return classify_status(int(error_code), description)

    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        """Send the alert to the configured chat.

        Args:
            record: Delivery record being attempted.
            message: Formatted alert with telegram_markdown.

        Returns:
            SendResult describing this single attempt.
        """
        payload = {
            "chat_id": self.chat_id,
            "text": message.telegram_markdown,
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": True,
        }

        result = await self._post(self._api_url, payload)
        if result.ok:
            logger.info(f"Telegram alert delivered ({record.id})")
        else:
            logger.warning(f"Telegram API error ({record.id}): {result.error}")
        return result
