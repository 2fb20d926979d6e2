"""Shared HTTP plumbing for channel adapters."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from token_alert_hub.alerter.models import SendResult

if TYPE_CHECKING:
    from token_alert_hub.alerter.models import DeliveryRecord, FormattedAlert

logger = logging.getLogger(__name__)


def classify_status(status_code: int, detail: str = "") -> SendResult:
    """Map an HTTP status code to a delivery outcome.

    2xx is success. 408, 429 and 5xx are worth retrying; any other status
    is a terminal failure.
    """
    if 200 <= status_code < 300:
        return SendResult.success()
    error = f"HTTP {status_code}"
    if detail:
        error = f"{error}: {detail[:200]}"
    if status_code in (408, 429) or status_code >= 500:
        return SendResult.retry(error)
    return SendResult.fail(error)


class HttpChannel(ABC):
    """Base class for adapters that deliver over one HTTP POST.

    Each ``send`` is a single attempt. Retries are the scheduler's job; the
    adapter only reports whether a failure is worth retrying. A client-side
    per-minute throttle keeps us under the provider's published limits.
    """

    channel_type = "http"

    def __init__(
        self,
        channel_id: str,
        *,
        rate_limit_per_minute: int = 30,
        timeout: float = 10.0,
    ) -> None:
        self.channel_id = channel_id
        self.rate_limit_per_minute = rate_limit_per_minute
        self.timeout = timeout

        # Rate limiting state
        self._request_times: list[float] = []
        self._lock = asyncio.Lock()

    async def _wait_for_rate_limit(self) -> None:
        """Wait if the per-minute budget is used up."""
        async with self._lock:
            now = asyncio.get_running_loop().time()
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.rate_limit_per_minute:
                wait_time = 60 - (now - self._request_times[0])
                if wait_time > 0:
                    logger.debug(f"{self.channel_id} rate limit hit, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)

            self._request_times.append(asyncio.get_running_loop().time())

    def _classify(self, response: httpx.Response) -> SendResult:
        return classify_status(response.status_code, response.text)

    async def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> SendResult:
        await self._wait_for_rate_limit()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"{self.channel_id} request timed out")
            return SendResult.retry("timeout")
        except httpx.HTTPError as e:
            logger.warning(f"{self.channel_id} transport error: {e}")
            return SendResult.retry(str(e) or type(e).__name__)
        return self._classify(response)

    @abstractmethod
    async def send(self, record: DeliveryRecord, message: FormattedAlert) -> SendResult:
        """Make one delivery attempt and classify the outcome."""
