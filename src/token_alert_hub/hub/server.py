"""Broadcast hub: fans alerts and updates out to live client connections.

Clients connect over WebSocket at ``/ws``, authenticate with an API key,
subscribe to channels (``alerts``, ``tokens``, ``patterns``) and then receive
JSON frames for everything broadcast on those channels.

Registry mutations never await between reading and writing, and broadcasts
iterate a snapshot, so connections closing mid-broadcast are safe.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from token_alert_hub.hub.models import (
    CHANNEL_ALERTS,
    CHANNEL_PATTERNS,
    CHANNEL_TOKENS,
    FRAME_ALERT,
    FRAME_ERROR,
    FRAME_PATTERN,
    FRAME_STATUS,
    FRAME_TOKEN_UPDATE,
    ClientConnection,
    ConnectionState,
    Transport,
    make_frame,
)
from token_alert_hub.metrics import HUB_CONNECTIONS, HUB_FRAMES_SENT

if TYPE_CHECKING:
    from token_alert_hub.hub.auth import CredentialValidator

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/ws"
DEFAULT_PING_INTERVAL = 30.0  # seconds
DEFAULT_MAX_MISSED_PONGS = 1

# Close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008

_SEND_ERRORS = (websockets.ConnectionClosed, OSError)


class BroadcastHub:
    """Connection registry plus the client frame protocol.

    Example:
        ```python
        hub = BroadcastHub(StaticCredentialValidator.from_setting("bot:secret"))
        await hub.start("0.0.0.0", 8765)
        await hub.broadcast_alert(alert.to_payload())
        ```
    """

    def __init__(
        self,
        validator: CredentialValidator,
        *,
        ping_interval: float = DEFAULT_PING_INTERVAL,
        max_missed_pongs: int = DEFAULT_MAX_MISSED_PONGS,
        path: str = DEFAULT_PATH,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        """Initialize the hub.

        Args:
            validator: Resolves auth tokens to identities.
            ping_interval: Seconds between liveness ticks.
            max_missed_pongs: Unanswered pings before a connection is dropped.
                With 1, a connection that has not answered the previous ping
                when the next one is due is closed instead of pinged again.
            path: Request path WebSocket clients must connect to.
            now: Wall clock used for frame timestamps.
        """
        self.validator = validator
        self.ping_interval = ping_interval
        self.max_missed_pongs = max_missed_pongs
        self.path = path
        self._now = now

        self._connections: dict[str, ClientConnection] = {}
        self._by_identity: dict[str, set[str]] = {}

        self._server: Server | None = None
        self._liveness_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def connections(self) -> list[ClientConnection]:
        """Snapshot of the registry."""
        return list(self._connections.values())

    def connections_for(self, identity_id: str) -> list[ClientConnection]:
        ids = self._by_identity.get(identity_id, set())
        return [self._connections[c] for c in ids if c in self._connections]

    def _update_gauges(self) -> None:
        authenticated = sum(1 for c in self._connections.values() if c.is_authenticated)
        HUB_CONNECTIONS.labels(state="total").set(len(self._connections))
        HUB_CONNECTIONS.labels(state="authenticated").set(authenticated)

    async def connect(self, transport: Transport) -> ClientConnection:
        """Register a new connection and greet it."""
        conn = ClientConnection(transport=transport, connected_at=self._now())
        self._connections[conn.connection_id] = conn
        self._update_gauges()
        logger.info("Hub connection opened: %s", conn.connection_id)
        await self._send(conn, FRAME_STATUS, {"message": "Connected. Please authenticate."})
        return conn

    def disconnect(self, conn: ClientConnection) -> None:
        """Remove a connection from the registry. Idempotent."""
        conn.state = ConnectionState.DISCONNECTED
        if self._connections.pop(conn.connection_id, None) is None:
            return
        if conn.identity is not None:
            ids = self._by_identity.get(conn.identity.id)
            if ids is not None:
                ids.discard(conn.connection_id)
                if not ids:
                    del self._by_identity[conn.identity.id]
        self._update_gauges()
        logger.info("Hub connection closed: %s", conn.connection_id)

    async def _close(self, conn: ClientConnection, code: int, reason: str) -> None:
        self.disconnect(conn)
        with contextlib.suppress(*_SEND_ERRORS):
            await conn.transport.close(code, reason)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send_text(self, conn: ClientConnection, frame_type: str, text: str) -> bool:
        if not conn.is_open:
            return False
        try:
            await conn.transport.send(text)
        except _SEND_ERRORS as e:
            logger.debug("Dropping hub connection %s: %s", conn.connection_id, e)
            self.disconnect(conn)
            return False
        HUB_FRAMES_SENT.labels(type=frame_type).inc()
        return True

    async def _send(self, conn: ClientConnection, frame_type: str, data: dict[str, Any]) -> bool:
        frame = make_frame(frame_type, data, self._now())
        return await self._send_text(conn, frame_type, json.dumps(frame, default=str))

    async def _send_error(self, conn: ClientConnection, message: str) -> bool:
        return await self._send(conn, FRAME_ERROR, {"message": message})

    # ------------------------------------------------------------------
    # Client frames
    # ------------------------------------------------------------------

    async def handle_message(self, conn: ClientConnection, raw: str | bytes) -> None:
        """Handle one inbound frame.

        Malformed frames get an error reply; the connection stays open.
        """
        try:
            frame = json.loads(raw)
        except (ValueError, TypeError):
            await self._send_error(conn, "Invalid message format")
            return
        if not isinstance(frame, dict):
            await self._send_error(conn, "Invalid message format")
            return

        data = frame.get("data")
        if not isinstance(data, dict):
            data = {}
        message_type = frame.get("type")

        if message_type == "auth":
            token = data.get("token") or data.get("apiKey") or frame.get("token")
            await self._handle_auth(conn, token)
        elif message_type == "subscribe":
            await self._handle_subscribe(conn, data.get("channels", frame.get("channels")))
        elif message_type == "unsubscribe":
            await self._handle_unsubscribe(conn, data.get("channels", frame.get("channels")))
        elif message_type == "ping":
            conn.mark_alive(self._now())
            await self._send(conn, FRAME_STATUS, {"pong": True})
        else:
            await self._send_error(conn, "Unknown message type")

    async def _handle_auth(self, conn: ClientConnection, token: Any) -> None:
        if not token or not isinstance(token, str):
            await self._send_error(conn, "API key required")
            await self._close(conn, CLOSE_POLICY_VIOLATION, "API key required")
            return

        identity = await self.validator.validate(token)
        if identity is None:
            logger.warning("Hub authentication failed for %s", conn.connection_id)
            await self._send_error(conn, "Invalid API key")
            await self._close(conn, CLOSE_POLICY_VIOLATION, "Invalid API key")
            return
        if not conn.is_open:
            return

        if conn.identity is not None and conn.identity.id != identity.id:
            self._by_identity.get(conn.identity.id, set()).discard(conn.connection_id)
        conn.identity = identity
        self._by_identity.setdefault(identity.id, set()).add(conn.connection_id)
        if conn.state is ConnectionState.CONNECTED:
            conn.state = ConnectionState.AUTHENTICATED
        self._update_gauges()

        logger.info("Hub connection %s authenticated as %s", conn.connection_id, identity.name)
        await self._send(
            conn,
            FRAME_STATUS,
            {"message": "Authenticated successfully", "authenticated": True},
        )

    @staticmethod
    def _parse_channels(value: Any) -> list[str] | None:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return None
        channels = [c for c in value if isinstance(c, str) and c]
        return channels or None

    async def _handle_subscribe(self, conn: ClientConnection, value: Any) -> None:
        if not conn.is_authenticated:
            await self._send_error(conn, "Authentication required")
            return
        channels = self._parse_channels(value)
        if channels is None:
            await self._send_error(conn, "No channels specified")
            return

        conn.subscriptions.update(channels)
        conn.state = ConnectionState.SUBSCRIBED
        logger.info("Hub connection %s subscribed to %s", conn.connection_id, ", ".join(channels))
        await self._send(
            conn,
            FRAME_STATUS,
            {"message": "Subscribed to channels", "channels": sorted(conn.subscriptions)},
        )

    async def _handle_unsubscribe(self, conn: ClientConnection, value: Any) -> None:
        if not conn.is_authenticated:
            await self._send_error(conn, "Authentication required")
            return
        channels = self._parse_channels(value)
        if channels is None:
            await self._send_error(conn, "No channels specified")
            return

        conn.subscriptions.difference_update(channels)
        if not conn.subscriptions:
            conn.state = ConnectionState.AUTHENTICATED
        await self._send(
            conn,
            FRAME_STATUS,
            {"message": "Unsubscribed from channels", "channels": sorted(conn.subscriptions)},
        )

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        message_type: str,
        data: dict[str, Any],
        channel: str | None = None,
    ) -> int:
        """Send a frame to every authenticated connection on a channel.

        Args:
            message_type: Frame type.
            data: Frame payload.
            channel: Only connections subscribed to this channel receive the
                frame; None means every authenticated connection.

        Returns:
            Number of connections the frame was written to.
        """
        text = json.dumps(make_frame(message_type, data, self._now()), default=str)
        targets = [
            conn
            for conn in list(self._connections.values())
            if conn.is_authenticated and (channel is None or channel in conn.subscriptions)
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._send_text(conn, message_type, text) for conn in targets)
        )
        return sum(1 for ok in results if ok)

    async def broadcast_alert(self, data: dict[str, Any]) -> int:
        return await self.broadcast(FRAME_ALERT, data, CHANNEL_ALERTS)

    async def broadcast_token_update(self, data: dict[str, Any]) -> int:
        return await self.broadcast(FRAME_TOKEN_UPDATE, data, CHANNEL_TOKENS)

    async def broadcast_pattern(self, data: dict[str, Any]) -> int:
        return await self.broadcast(FRAME_PATTERN, data, CHANNEL_PATTERNS)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def _on_pong(self, conn: ClientConnection, waiter: asyncio.Future[Any]) -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        conn.mark_alive(self._now())

    async def check_liveness(self) -> list[ClientConnection]:
        """Run one liveness tick.

        Connections that missed ``max_missed_pongs`` consecutive pings are
        closed and removed; every other connection is pinged.

        Returns:
            The connections that were removed.
        """
        removed = []
        for conn in self.connections():
            if conn.awaiting_pong:
                conn.missed_pongs += 1
                if conn.missed_pongs >= self.max_missed_pongs:
                    logger.info("Hub connection %s unresponsive, closing", conn.connection_id)
                    await self._close(conn, CLOSE_GOING_AWAY, "Ping timeout")
                    removed.append(conn)
                    continue

            try:
                waiter = await conn.transport.ping()
            except _SEND_ERRORS as e:
                logger.debug("Ping failed for %s: %s", conn.connection_id, e)
                self.disconnect(conn)
                removed.append(conn)
                continue

            conn.awaiting_pong = True
            future = asyncio.ensure_future(waiter)
            future.add_done_callback(lambda f, c=conn: self._on_pong(c, f))
        return removed

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error("Liveness check failed: %s", e)

    # ------------------------------------------------------------------
    # WebSocket server
    # ------------------------------------------------------------------

    async def serve_connection(self, websocket: ServerConnection) -> None:
        """Handler passed to the websockets server."""
        request = websocket.request
        if request is not None and request.path.split("?", 1)[0] != self.path:
            await websocket.close(CLOSE_POLICY_VIOLATION, "Unknown path")
            return

        conn = await self.connect(websocket)
        try:
            async for raw in websocket:
                if not conn.is_open:
                    break
                await self.handle_message(conn, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.disconnect(conn)

    async def start(self, host: str, port: int) -> None:
        """Start the WebSocket server and the liveness loop."""
        # Liveness is driven by the hub's own loop
        self._server = await serve(self.serve_connection, host, port, ping_interval=None)
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        logger.info("Broadcast hub listening on ws://%s:%d%s", host, port, self.path)

    async def stop(self) -> None:
        """Close every connection and stop the server."""
        if self._liveness_task is not None:
            self._liveness_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._liveness_task
            self._liveness_task = None

        for conn in self.connections():
            await self._close(conn, CLOSE_GOING_AWAY, "Server shutting down")

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("Broadcast hub stopped")
