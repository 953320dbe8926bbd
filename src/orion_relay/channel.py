# Orion Agent
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Orion Agent.
#
# Orion Agent is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Channel session -- one authenticated duplex connection to the peer.

The relay never talks to the gateway directly. It goes through a
``Connector`` that produces ``Connection`` objects (send / recv / close
of raw text frames); authentication, signing and gateway discovery
live behind that interface. ``WebSocketConnector`` is the production
implementation.

A ``ChannelSession`` wraps one connection:
  - inbound frames are decoded and handed to the ``on_message`` handler;
    frames that fail to decode are logged and dropped
  - ``send`` on a closed session is a logged no-op
  - peer close, transport error and explicit ``close()`` all end up in
    the ``on_closed`` handler, exactly once, with a reason string

Sessions are never reused. When one closes, the relay opens a new one.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .codec import DecodeError, decode, encode
from .exceptions import ChannelClosedError, ConnectError
from .messages import RelayMessage, SetupProxyClient

if TYPE_CHECKING:
    from .config import RelayConfig

logger = logging.getLogger("orion.relay.channel")

MessageHandler = Callable[[RelayMessage], None]
ClosedHandler = Callable[[str], None]

# Header names sent on the WebSocket upgrade request
IDENTITY_HEADER = "X-Orion-Relay-Identity"
PEER_HEADER = "X-Orion-Relay-Peer"


# ---------------------------------------------------------------------------
# Channel collaborator interface
# ---------------------------------------------------------------------------


class Connection(ABC):
    """A raw duplex frame connection."""

    @abstractmethod
    async def send(self, frame: str) -> None:
        """Send one frame. Raises ChannelClosedError if the connection is gone."""
        ...

    @abstractmethod
    async def recv(self) -> str | bytes:
        """Wait for the next frame. Raises ChannelClosedError on closure."""
        ...

    @abstractmethod
    async def close(self, reason: str = "") -> None:
        """Close the connection. Safe to call more than once."""
        ...


class Connector(ABC):
    """Opens connections to the peer's channel gateway."""

    @abstractmethod
    async def connect(self, config: RelayConfig) -> Connection:
        """Perform the handshake. Raises ConnectError on failure."""
        ...


# ---------------------------------------------------------------------------
# WebSocket implementation
# ---------------------------------------------------------------------------


def _close_reason(exc: ConnectionClosed) -> str:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return "connection lost without close frame"
    if frame.reason:
        return f"closed with code {frame.code}: {frame.reason}"
    return f"closed with code {frame.code}"


class WebSocketConnection(Connection):
    """``Connection`` over a websockets client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    async def send(self, frame: str) -> None:
        try:
            await self._ws.send(frame)
        except ConnectionClosed as exc:
            raise ChannelClosedError(_close_reason(exc)) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            raise ChannelClosedError(_close_reason(exc)) from exc

    async def close(self, reason: str = "") -> None:
        # Close frame reasons are limited to 123 bytes
        await self._ws.close(code=1000, reason=reason.encode("utf-8")[:120].decode("utf-8", "ignore"))


class WebSocketConnector(Connector):
    """Connects to the gateway over WebSocket.

    The client identity is taken from the config or, when empty,
    generated once per process and reused across reconnects.
    """

    def __init__(self, identity: str = "") -> None:
        self._identity = identity or uuid.uuid4().hex

    @property
    def identity(self) -> str:
        return self._identity

    def build_headers(self, config: RelayConfig) -> dict[str, str]:
        headers = {IDENTITY_HEADER: config.identity or self._identity}
        if config.peer_id:
            headers[PEER_HEADER] = config.peer_id
        if config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"
        return headers

    async def connect(self, config: RelayConfig) -> Connection:
        try:
            ws = await connect(
                config.gateway_url,
                additional_headers=self.build_headers(config),
                max_size=config.max_frame_bytes,
                open_timeout=config.connect_timeout,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise ConnectError(f"cannot connect to {config.gateway_url}: {exc}") from exc
        logger.info("Connected to gateway %s", config.gateway_url)
        return WebSocketConnection(ws)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class ChannelSession:
    """One live connection instance, owned by the relay agent."""

    def __init__(self, connection: Connection, session_id: int = 0) -> None:
        self._connection = connection
        self.session_id = session_id
        self._message_handler: MessageHandler | None = None
        self._closed_handler: ClosedHandler | None = None
        self._reader_task: asyncio.Task | None = None
        self._closed = False
        self._close_reason: str | None = None

        self.frames_received = 0
        self.frames_dropped = 0
        self.frames_sent = 0

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<ChannelSession #{self.session_id} {state}>"

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    def on_message(self, handler: MessageHandler) -> None:
        """Register the handler for decoded inbound messages.

        The handler runs on the session's reader task and must not block.
        """
        self._message_handler = handler

    def on_closed(self, handler: ClosedHandler) -> None:
        """Register the handler invoked once when the session closes."""
        self._closed_handler = handler

    def start(self) -> None:
        """Begin delivering inbound frames."""
        if self._reader_task is not None:
            return
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"relay-session-{self.session_id}"
        )

    async def send(self, message: RelayMessage) -> bool:
        """Send a message. Returns False (and logs) if the session is closed."""
        if self._closed:
            logger.warning(
                "Session #%d closed (%s); dropping outbound %s",
                self.session_id,
                self._close_reason,
                type(message).__name__,
            )
            return False

        try:
            await self._connection.send(encode(message))
        except ChannelClosedError as exc:
            logger.warning(
                "Session #%d closed while sending %s: %s",
                self.session_id,
                type(message).__name__,
                exc.reason,
            )
            self._mark_closed(exc.reason)
            return False

        self.frames_sent += 1
        return True

    async def close(self, reason: str = "closed by relay") -> None:
        """Close the session explicitly."""
        if self._closed:
            return
        self._mark_closed(reason)

        task = self._reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        await self._close_connection(reason)

    async def _read_loop(self) -> None:
        try:
            while not self._closed:
                frame = await self._connection.recv()
                message = decode(frame)
                if isinstance(message, DecodeError):
                    self.frames_dropped += 1
                    logger.warning(
                        "Session #%d dropped malformed frame: %s", self.session_id, message
                    )
                    continue

                self.frames_received += 1
                self._deliver(message)
        except ChannelClosedError as exc:
            reason = exc.reason
        except Exception as exc:
            logger.exception("Session #%d reader failed", self.session_id)
            reason = f"transport error: {exc}"
        else:
            return

        if not self._closed:
            self._mark_closed(reason)
            await self._close_connection(reason)

    def _deliver(self, message: RelayMessage) -> None:
        if self._message_handler is None:
            logger.debug("Session #%d has no handler; ignoring %s", self.session_id, message)
            return
        try:
            self._message_handler(message)
        except Exception:
            logger.exception("Message handler failed on session #%d", self.session_id)

    def _mark_closed(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        logger.info("Session #%d closed: %s", self.session_id, reason)

        if self._closed_handler is None:
            return
        try:
            self._closed_handler(reason)
        except Exception:
            logger.exception("Close handler failed on session #%d", self.session_id)

    async def _close_connection(self, reason: str) -> None:
        try:
            await self._connection.close(reason)
        except Exception as exc:
            logger.debug("Error closing connection for session #%d: %s", self.session_id, exc)


async def open_session(
    config: RelayConfig, connector: Connector, session_id: int = 0
) -> ChannelSession:
    """Open and, if configured, register a new session.

    Raises ConnectError if the handshake fails, times out, or the
    connection drops during proxy registration.
    """
    try:
        connection = await asyncio.wait_for(
            connector.connect(config), timeout=config.connect_timeout
        )
    except asyncio.TimeoutError as exc:
        raise ConnectError(
            f"handshake with {config.gateway_url} timed out after {config.connect_timeout}s"
        ) from exc

    session = ChannelSession(connection, session_id=session_id)
    if not config.announce_on_connect:
        return session
    try:
        announced = await session.send(SetupProxyClient())
    except Exception:
        await session.close("proxy registration failed")
        raise
    if not announced:
        raise ConnectError("channel closed during proxy registration")
    return session
