"""Broadcast hub - realtime fan-out to authenticated WebSocket clients."""

from token_alert_hub.hub.auth import CredentialValidator, StaticCredentialValidator, hash_key
from token_alert_hub.hub.models import (
    CHANNEL_ALERTS,
    CHANNEL_PATTERNS,
    CHANNEL_TOKENS,
    ClientConnection,
    ConnectionState,
    Identity,
    Transport,
    make_frame,
)
from token_alert_hub.hub.server import BroadcastHub

__all__ = [
    "CHANNEL_ALERTS",
    "CHANNEL_PATTERNS",
    "CHANNEL_TOKENS",
    "BroadcastHub",
    "ClientConnection",
    "ConnectionState",
    "CredentialValidator",
    "Identity",
    "StaticCredentialValidator",
    "Transport",
    "hash_key",
    "make_frame",
]
