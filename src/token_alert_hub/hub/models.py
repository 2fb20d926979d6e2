"""Data models for the broadcast hub."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

# Frame types sent by the hub
FRAME_STATUS = "status"
FRAME_ERROR = "error"
FRAME_ALERT = "alert"
FRAME_TOKEN_UPDATE = "token_update"
FRAME_PATTERN = "pattern_detected"

# Broadcast channels clients can subscribe to
CHANNEL_ALERTS = "alerts"
CHANNEL_TOKENS = "tokens"
CHANNEL_PATTERNS = "patterns"


class ConnectionState(Enum):
    """Lifecycle of a client connection."""

    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Identity:
    """Authenticated principal behind a connection."""

    id: str
    name: str


class Transport(Protocol):
    """What the hub needs from a live connection.

    ``websockets`` server connections satisfy this directly.
    """

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    async def ping(self) -> Awaitable[Any]:
        """Send a ping; the returned awaitable completes when the pong arrives."""
        ...


@dataclass
class ClientConnection:
    """A live client connection and its session state."""

    transport: Transport
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: ConnectionState = ConnectionState.CONNECTED
    identity: Identity | None = None
    subscriptions: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_pong: datetime | None = None
    awaiting_pong: bool = False
    missed_pongs: int = 0

    @property
    def is_authenticated(self) -> bool:
        return self.state in (ConnectionState.AUTHENTICATED, ConnectionState.SUBSCRIBED)

    @property
    def is_open(self) -> bool:
        return self.state is not ConnectionState.DISCONNECTED

    def mark_alive(self, now: datetime) -> None:
        self.awaiting_pong = False
        self.missed_pongs = 0
        self.last_pong = now


def make_frame(frame_type: str, data: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Build an outbound frame; every frame carries an ISO-8601 timestamp."""
    return {
        "type": frame_type,
        "data": data,
        "timestamp": (now or datetime.now(UTC)).isoformat(),
    }
