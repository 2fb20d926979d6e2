"""Generic JSON webhook channel."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from token_alert_hub import __version__
from token_alert_hub.alerter.channels.base import HttpChannel

if TYPE_CHECKING:
    from token_alert_hub.alerter.models import DeliveryRecord, FormattedAlert, SendResult

logger = logging.getLogger(__name__)

USER_AGENT = f"token-alert-hub/{__version__}"


class WebhookChannel(HttpChannel):
    """POSTs the structured alert payload to an arbitrary endpoint.

    The delivery record id is sent as ``Idempotency-Key`` so receivers can
    drop the duplicates that retries may produce.
    """

    channel_type = "webhook"

    def __init__(
        self,
        url: str,
        *,
        channel_id: str = "webhook",
        headers: dict[str, str] | None = None,
        rate_limit_per_minute: int = 60,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(
            channel_id, rate_limit_per_minute=rate_limit_per_minute, timeout=timeout
        )
        self.url = url
        self.headers = dict(headers or {})

    def build_payload(self, record: DeliveryRecord, message: FormattedAlert) -> dict[str, Any]:
        payload = dict(message.payload)
        payload.setdefault("title", message.title)
        payload.setdefault("text", message.plain_text)
        payload["delivery"] = {
            "id": record.id,
            "channel": record.channel_id,
            "attempt": record.retry_count + 1,
        }
        payload["metadata"] = {"source": "token-alert-hub", "version": __version__}
        return payload

    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        headers = {
            "User-Agent": USER_AGENT,
            **self.headers,
            "Idempotency-Key": record.id,
        }
        result = await self._post(self.url, self.build_payload(record, message), headers)
        if result.ok:
            logger.info(f"Webhook delivered {record.id} to {self.url}")
        else:
            logger.warning(f"Webhook delivery failed ({record.id}): {result.error}")
        return result
