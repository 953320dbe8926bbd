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
"""Relay agent -- the dispatcher between the peer's channel and the network.

  Sandbox peer <--channel--> RelayAgent --> RequestExecutor --> Internet

State machine (no terminal state while running):

  DISCONNECTED --start/closed--> CONNECTING --open ok--> CONNECTED
        ^                             |                      |
        +-------- open failed --------+------- closed -------+

Failed handshakes back off exponentially (capped). A session that was
established and then dropped is replaced immediately, unless it closed
before carrying any inbound frame and before
``reconnect_stable_after`` seconds; such a session counts as another
failed attempt and the backoff keeps growing.

Every inbound HttpRequest runs as its own task, so a slow or failing
call never delays the others. Each task sends exactly one terminal
message (HttpResponse or Error) for its request id.

Executions belong to the session that received them. When that session
closes, its in-flight executions are cancelled and their results are
dropped; a result is never sent on a different session than the one
that carried the request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from .audit import AuditEntry, AuditLogger
from .channel import ChannelSession, Connector, WebSocketConnector, open_session
from .config import RelayConfig
from .exceptions import ConnectError
from .executor import KIND_UNEXPECTED, ExecutionError, RequestExecutor
from .messages import (
    ChannelState,
    ErrorMessage,
    HttpRequestMessage,
    HttpResponseMessage,
    RelayMessage,
)

logger = logging.getLogger("orion.relay.agent")

StateListener = Callable[[ChannelState], None]


class RelayAgent:
    """Owns the current channel session and dispatches relay work.

    Usage:
        agent = RelayAgent(load_config())
        await agent.run()        # until agent.stop() is called
    """

    def __init__(
        self,
        config: RelayConfig,
        connector: Connector | None = None,
        executor: RequestExecutor | None = None,
        audit: AuditLogger | None = None,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._config = config
        self._connector = connector or WebSocketConnector(config.identity)
        self._executor = executor or RequestExecutor(
            default_timeout=config.request_timeout,
            follow_redirects=config.follow_redirects,
        )
        self._owns_audit = audit is None and config.audit_enabled
        self._audit = AuditLogger(config.audit_log_path) if self._owns_audit else audit
        self._on_state_change = on_state_change

        self._state = ChannelState.DISCONNECTED
        # The only reference shared with executions; replaced on reconnect
        self._session: ChannelSession | None = None
        # (session_id, request_id) -> execution task
        self._inflight: dict[tuple[int, int], asyncio.Task] = {}

        self._stop_event = asyncio.Event()
        self._running = False
        self._session_counter = 0
        self._connect_failures = 0

        self._stats = {
            "sessions_opened": 0,
            "connect_failures": 0,
            "requests_received": 0,
            "responses_sent": 0,
            "errors_sent": 0,
            "abandoned": 0,
            "duplicates_dropped": 0,
            "ignored_messages": 0,
            "undeliverable": 0,
            "unstable_sessions": 0,
        }

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def session(self) -> ChannelSession | None:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect, serve, and reconnect until ``stop()`` is called."""
        if self._running:
            logger.warning("Relay agent already running")
            return

        self._running = True
        self._stop_event.clear()
        logger.info("Relay agent starting (gateway=%s)", self._config.gateway_url)
        try:
            while not self._stop_event.is_set():
                await self._connect_and_serve()
        finally:
            await self._shutdown()
            self._running = False
            logger.info("Relay agent stopped")

    def stop(self) -> None:
        """Ask ``run()`` to return. Safe to call from a signal handler."""
        self._stop_event.set()

    async def _connect_and_serve(self) -> None:
        self._set_state(ChannelState.CONNECTING)
        self._session_counter += 1
        session_id = self._session_counter

        try:
            session = await open_session(self._config, self._connector, session_id)
        except ConnectError as exc:
            await self._connect_failed(str(exc))
            return
        except Exception as exc:
            logger.exception("Unexpected error opening session #%d", session_id)
            await self._connect_failed(f"unexpected error: {exc}")
            return

        self._stats["sessions_opened"] += 1
        closed = asyncio.Event()

        self._session = session
        session.on_message(lambda message: self._dispatch(session, message))
        session.on_closed(lambda reason: self._handle_closed(session, reason, closed))
        self._set_state(ChannelState.CONNECTED)
        logger.info("Session #%d connected", session_id)
        opened_at = time.monotonic()
        session.start()

        await self._wait_for(closed)
        if self._stop_event.is_set():
            return

        uptime = time.monotonic() - opened_at
        if (
            session.frames_received
            or session.frames_dropped
            or uptime >= self._config.reconnect_stable_after
        ):
            self._connect_failures = 0
        else:
            self._stats["unstable_sessions"] += 1
            await self._connect_failed(
                f"session #{session_id} closed after {uptime:.1f}s without traffic",
                count_stat=False,
            )

    async def _connect_failed(self, reason: str, count_stat: bool = True) -> None:
        self._connect_failures += 1
        if count_stat:
            self._stats["connect_failures"] += 1
        self._set_state(ChannelState.DISCONNECTED)
        delay = self._config.backoff_delay(self._connect_failures)
        logger.warning(
            "Connect attempt %d failed: %s -- retrying in %.1fs",
            self._connect_failures,
            reason,
            delay,
        )
        await self._sleep(delay)

    async def _shutdown(self) -> None:
        session = self._session
        if session is not None:
            await session.close("relay shutting down")

        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

        self._session = None
        self._set_state(ChannelState.DISCONNECTED)
        if self._owns_audit and self._audit is not None:
            self._audit.close()

    async def _sleep(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _wait_for(self, event: asyncio.Event) -> None:
        """Wait until ``event`` is set or the agent is stopped."""
        waiters = [
            asyncio.create_task(event.wait()),
            asyncio.create_task(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def _set_state(self, state: ChannelState) -> None:
        if state == self._state:
            return
        logger.debug("Channel state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    def _handle_closed(self, session: ChannelSession, reason: str, closed: asyncio.Event) -> None:
        if session is self._session:
            self._session = None
            self._set_state(ChannelState.DISCONNECTED)
            if not self._stop_event.is_set():
                logger.warning("Session #%d lost (%s); reconnecting", session.session_id, reason)

        current = asyncio.current_task()
        for (session_id, request_id), task in list(self._inflight.items()):
            if session_id == session.session_id and task is not current:
                logger.debug("Cancelling request %d of closed session #%d", request_id, session_id)
                task.cancel()
        closed.set()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, session: ChannelSession, message: RelayMessage) -> None:
        if session is not self._session:
            logger.debug("Ignoring message from superseded session #%d", session.session_id)
            return
        self._connect_failures = 0

        if isinstance(message, HttpRequestMessage):
            self._spawn_request(session, message)
        elif isinstance(message, ErrorMessage):
            logger.warning(
                "Peer reported error (request_id=%s): %s", message.request_id, message.message
            )
        else:
            # HttpResponse / SetupProxyClient are agent -> peer only
            self._stats["ignored_messages"] += 1
            logger.warning(
                "Ignoring unexpected %s from peer on session #%d",
                type(message).__name__,
                session.session_id,
            )

    def _spawn_request(self, session: ChannelSession, message: HttpRequestMessage) -> None:
        key = (session.session_id, message.request_id)
        if key in self._inflight:
            self._stats["duplicates_dropped"] += 1
            logger.warning(
                "Request %d already in flight on session #%d; dropping duplicate",
                message.request_id,
                session.session_id,
            )
            return

        self._stats["requests_received"] += 1
        task = asyncio.create_task(
            self._relay_request(session, message), name=f"relay-request-{message.request_id}"
        )
        self._inflight[key] = task
        task.add_done_callback(lambda _t, key=key: self._inflight.pop(key, None))

    async def _relay_request(self, session: ChannelSession, message: HttpRequestMessage) -> None:
        request_id = message.request_id
        request = message.request
        request_size = len(request.body or b"")
        logger.info("Request %d: %s %s", request_id, request.method.value, request.url)

        start_time = time.time()
        try:
            result = await self._executor.execute(request, timeout=self._config.request_timeout)
        except asyncio.CancelledError:
            self._stats["abandoned"] += 1
            self._record(
                AuditEntry.abandoned(
                    request_id,
                    session.session_id,
                    request.method.value,
                    request.url,
                    duration_ms=(time.time() - start_time) * 1000,
                )
            )
            raise
        except Exception as exc:
            logger.exception("Executor raised for request %d", request_id)
            result = ExecutionError(message=f"internal relay error: {exc}", kind=KIND_UNEXPECTED)

        duration_ms = (time.time() - start_time) * 1000

        if isinstance(result, ExecutionError):
            outbound: RelayMessage = ErrorMessage(message=str(result), request_id=request_id)
            self._record(
                AuditEntry.failed(
                    request_id,
                    session.session_id,
                    request.method.value,
                    request.url,
                    error=str(result),
                    duration_ms=duration_ms,
                    request_size=request_size,
                )
            )
        else:
            outbound = HttpResponseMessage(request_id=request_id, response=result)
            self._record(
                AuditEntry.response(
                    request_id,
                    session.session_id,
                    request.method.value,
                    request.url,
                    status_code=result.status,
                    duration_ms=duration_ms,
                    request_size=request_size,
                    response_size=len(result.body),
                )
            )
            logger.info("Request %d: status %d in %.1f ms", request_id, result.status, duration_ms)

        await self._send(session, outbound)

    async def _send(self, session: ChannelSession, message: RelayMessage) -> bool:
        if session is not self._session or not session.is_open:
            self._stats["undeliverable"] += 1
            logger.warning(
                "Session #%d is gone; dropping %s", session.session_id, type(message).__name__
            )
            return False

        sent = await session.send(message)
        if not sent:
            self._stats["undeliverable"] += 1
        elif isinstance(message, ErrorMessage):
            self._stats["errors_sent"] += 1
        else:
            self._stats["responses_sent"] += 1
        return sent

    def _record(self, entry: AuditEntry) -> None:
        if self._audit is not None:
            self._audit.log(entry)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        """Get relay status for diagnostics."""
        session = self._session
        return {
            "running": self._running,
            "state": self._state.value,
            "gateway_url": self._config.gateway_url,
            "session_id": session.session_id if session is not None else None,
            "inflight": len(self._inflight),
            "consecutive_connect_failures": self._connect_failures,
            "stats": self.stats,
            "audit_entries": self._audit.entry_count if self._audit is not None else 0,
        }
