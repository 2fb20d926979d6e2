"""Redis Streams event feed.

Monitoring events are written to a Redis Stream as a single JSON ``payload``
field and read back by the pipeline through a consumer group, so several
pipeline workers can share one feed.
"""

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import ResponseError

from token_alert_hub.rules.models import Event

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_STREAM_NAME = "events"
DEFAULT_MAX_LEN = 100_000
DEFAULT_BLOCK_MS = 1000
DEFAULT_COUNT = 10
PAYLOAD_FIELD = "payload"


class StreamError(Exception):
    """Base exception for event stream errors."""

    pass


class ConsumerGroupExistsError(StreamError):
    """Raised when trying to create a consumer group that already exists."""

    pass


@dataclass
class StreamEntry:
    """Represents an entry read from a Redis Stream."""

    entry_id: str
    event: Event


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


def serialize_event(event: Event) -> dict[str, str]:
    """Serialize an Event to stream fields."""
    return {PAYLOAD_FIELD: json.dumps(event.to_dict(), default=str)}


def deserialize_event(data: dict[bytes | str, bytes | str]) -> Event:
    """Deserialize an Event from raw stream fields.

    Raises:
        StreamError: If the payload is missing or malformed.
    """
    fields = {_decode(k): _decode(v) for k, v in data.items()}
    raw = fields.get(PAYLOAD_FIELD)
    if raw is None:
        raise StreamError("Entry has no payload field")
    try:
        return Event.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as e:
        raise StreamError(f"Malformed event payload: {e}") from e


class EventStream:
    """Event feed on top of Redis Streams.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        stream = EventStream(redis)
        await stream.ensure_consumer_group("alert-pipeline")

        entries = await stream.read_events("alert-pipeline", "worker-1")
        for entry in entries:
            await engine.process(entry.event)
            await stream.ack("alert-pipeline", entry.entry_id)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        stream_name: str = DEFAULT_STREAM_NAME,
        *,
        max_len: int = DEFAULT_MAX_LEN,
    ) -> None:
        """Initialize the event stream.

        Args:
            redis: Redis async client.
            stream_name: Name of the Redis Stream.
            max_len: Maximum number of entries to keep in stream.
        """
        self._redis = redis
        self._stream_name = stream_name
        self._max_len = max_len

    @property
    def stream_name(self) -> str:
        return self._stream_name

    async def publish(self, event: Event) -> str:
        """Append an event to the stream.

        Returns:
            The entry ID assigned by Redis.
        """
        entry_id = await self._redis.xadd(
            self._stream_name,
            serialize_event(event),  # type: ignore[arg-type]
            maxlen=self._max_len,
        )
        return _decode(entry_id)

    async def publish_batch(self, events: Sequence[Event]) -> list[str]:
        """Append several events using one pipeline round trip."""
        if not events:
            return []

        pipe = self._redis.pipeline()
        for event in events:
            pipe.xadd(self._stream_name, serialize_event(event), maxlen=self._max_len)  # type: ignore[arg-type]
        results = await pipe.execute()
        return [_decode(entry_id) for entry_id in results]

    async def create_consumer_group(
        self,
        group_name: str,
        start_id: str = "0",
        *,
        mkstream: bool = True,
    ) -> None:
        """Create a consumer group for the stream.

        Args:
            group_name: Name of the consumer group.
            start_id: ID to start reading from ("0" = beginning, "$" = new only).
            mkstream: Create the stream if it doesn't exist.

        Raises:
            ConsumerGroupExistsError: If the group already exists.
        """
        try:
            await self._redis.xgroup_create(
                self._stream_name,
                group_name,
                id=start_id,
                mkstream=mkstream,
            )
            logger.info(f"Created consumer group '{group_name}' on stream '{self._stream_name}'")
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                raise ConsumerGroupExistsError(
                    f"Consumer group '{group_name}' already exists"
                ) from e
            raise

    async def ensure_consumer_group(self, group_name: str, start_id: str = "0") -> bool:
        """Ensure a consumer group exists.

        Returns:
            True if the group was created, False if it already existed.
        """
        try:
            await self.create_consumer_group(group_name, start_id)
            return True
        except ConsumerGroupExistsError:
            return False

    async def _decode_results(self, group_name: str, results: Any) -> list[StreamEntry]:
        entries: list[StreamEntry] = []
        if not results:
            return entries

        poisoned: list[str] = []
        # Results format: [[stream_name, [(entry_id, data), ...]]]
        for _stream_name, stream_entries in results:
            for entry_id, data in stream_entries:
                entry_id_str = _decode(entry_id)
                if not data:
                    continue
                try:
                    entries.append(StreamEntry(entry_id=entry_id_str, event=deserialize_event(data)))
                except StreamError as e:
                    logger.warning(f"Dropping entry {entry_id_str}: {e}")
                    poisoned.append(entry_id_str)

        # Malformed entries are acknowledged so they do not stay pending forever
        if poisoned:
            await self.ack(group_name, *poisoned)
        return entries

    async def read_events(
        self,
        group_name: str,
        consumer_name: str,
        *,
        count: int = DEFAULT_COUNT,
        block_ms: int = DEFAULT_BLOCK_MS,
    ) -> list[StreamEntry]:
        """Read new events as a member of a consumer group.

        Args:
            group_name: Consumer group name.
            consumer_name: Name of this consumer within the group.
            count: Maximum number of entries to read.
            block_ms: Milliseconds to block waiting for new entries.

        Returns:
            Decoded entries; malformed ones are acked and skipped.
        """
        results = await self._redis.xreadgroup(
            group_name,
            consumer_name,
            {self._stream_name: ">"},
            count=count,
            block=block_ms,
        )
        return await self._decode_results(group_name, results)

    async def read_pending(
        self,
        group_name: str,
        consumer_name: str,
        *,
        count: int = DEFAULT_COUNT,
    ) -> list[StreamEntry]:
        """Re-read entries delivered to this consumer but never acknowledged.

        Used after a restart to recover events that were in flight.
        """
        results = await self._redis.xreadgroup(
            group_name,
            consumer_name,
            {self._stream_name: "0"},
            count=count,
        )
        return await self._decode_results(group_name, results)

    async def ack(self, group_name: str, *entry_ids: str) -> int:
        """Acknowledge processed entries. Returns the number acknowledged."""
        if not entry_ids:
            return 0
        result = await self._redis.xack(self._stream_name, group_name, *entry_ids)
        return int(result)

    async def get_stream_length(self) -> int:
        result = await self._redis.xlen(self._stream_name)
        return int(result)

    async def trim_stream(self, max_len: int | None = None) -> int:
        """Trim the stream. Returns the number of entries removed."""
        result = await self._redis.xtrim(self._stream_name, maxlen=max_len or self._max_len)
        return int(result)
