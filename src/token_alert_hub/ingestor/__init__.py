"""Event ingestion layer - Redis Streams event feed."""

from token_alert_hub.ingestor.stream import (
    ConsumerGroupExistsError,
    EventStream,
    StreamEntry,
    StreamError,
    deserialize_event,
    serialize_event,
)

__all__ = [
    "ConsumerGroupExistsError",
    "EventStream",
    "StreamEntry",
    "StreamError",
    "deserialize_event",
    "serialize_event",
]
