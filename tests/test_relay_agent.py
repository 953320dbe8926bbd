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
"""Tests for the relay agent: dispatch, concurrency, reconnect."""

from __future__ import annotations

import asyncio

import pytest

from orion_relay.audit import OUTCOME_ABANDONED, OUTCOME_ERROR, OUTCOME_RESPONSE, AuditLogger
from orion_relay.config import RelayConfig
from orion_relay.executor import ExecutionError
from orion_relay.messages import (
    ChannelState,
    ErrorMessage,
    HttpHeader,
    HttpMethod,
    HttpRequest,
    HttpRequestMessage,
    HttpResponse,
    HttpResponseMessage,
    SetupProxyClient,
)
from orion_relay.relay import RelayAgent
from relay_fakes import FakeConnector, StubExecutor, ok_handler, wait_until


def _config(**kwargs) -> RelayConfig:
    defaults = dict(
        gateway_url="ws://gateway.test/ws",
        audit_enabled=False,
        connect_timeout=1.0,
        reconnect_backoff_base=0.01,
        reconnect_backoff_max=0.05,
    )
    defaults.update(kwargs)
    return RelayConfig(**defaults)


def _get(request_id: int, url: str = "http://example.test/a") -> HttpRequestMessage:
    return HttpRequestMessage(request_id, HttpRequest(url=url, method=HttpMethod.GET))


def _terminal(connection) -> list:
    return [
        m
        for m in connection.sent_messages
        if isinstance(m, (HttpResponseMessage, ErrorMessage))
    ]


class _Harness:
    """Runs a RelayAgent in the background against fake collaborators."""

    def __init__(
        self, handler=ok_handler, failures: int = 0, error=None, audit=None, **config
    ) -> None:
        self.connector = FakeConnector(failures=failures, error=error)
        self.executor = StubExecutor(handler)
        self.states: list[ChannelState] = []
        self.agent = RelayAgent(
            _config(**config),
            connector=self.connector,
            executor=self.executor,
            audit=audit,
            on_state_change=self.states.append,
        )
        self.task: asyncio.Task | None = None

    async def __aenter__(self) -> _Harness:
        self.task = asyncio.create_task(self.agent.run())
        await wait_until(lambda: self.agent.state == ChannelState.CONNECTED)
        return self

    async def __aexit__(self, *exc) -> None:
        self.agent.stop()
        await asyncio.wait_for(self.task, timeout=2.0)

    @property
    def connection(self):
        return self.connector.connections[-1]


class TestDispatch:
    """Inbound requests produce exactly one terminal message."""

    @pytest.mark.asyncio
    async def test_example_response(self):
        async def handler(request):
            return HttpResponse(
                status=200, headers=(HttpHeader("content-type", "text/plain"),), body=b"ok"
            )

        async with _Harness(handler) as h:
            h.connection.feed_message(_get(7))
            await wait_until(lambda: _terminal(h.connection))

            assert _terminal(h.connection) == [
                HttpResponseMessage(
                    7,
                    HttpResponse(
                        status=200,
                        headers=(HttpHeader("content-type", "text/plain"),),
                        body=b"ok",
                    ),
                )
            ]
            assert h.executor.calls[0] == HttpRequest(
                url="http://example.test/a", method=HttpMethod.GET
            )

    @pytest.mark.asyncio
    async def test_announces_after_connect(self):
        async with _Harness() as h:
            assert h.connection.sent_messages[0] == SetupProxyClient()

    @pytest.mark.asyncio
    async def test_failure_reported_and_next_request_served(self):
        async def handler(request):
            if "nonexistent" in request.url:
                return ExecutionError("GET http://nonexistent.invalid connection failed")
            return HttpResponse(status=200, body=b"ten")

        async with _Harness(handler) as h:
            h.connection.feed_message(_get(9, "http://nonexistent.invalid"))
            h.connection.feed_message(_get(10))
            await wait_until(lambda: len(_terminal(h.connection)) == 2)

            by_id = {m.request_id: m for m in _terminal(h.connection)}
            assert isinstance(by_id[9], ErrorMessage)
            assert by_id[9].message
            assert isinstance(by_id[10], HttpResponseMessage)
            assert by_id[10].response.body == b"ten"
            assert h.agent.state == ChannelState.CONNECTED

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_error(self):
        async def handler(request):
            raise RuntimeError("stub blew up")

        async with _Harness(handler) as h:
            h.connection.feed_message(_get(3))
            await wait_until(lambda: _terminal(h.connection))

            [message] = _terminal(h.connection)
            assert isinstance(message, ErrorMessage)
            assert message.request_id == 3
            assert "stub blew up" in message.message

    @pytest.mark.asyncio
    async def test_one_terminal_message_per_request(self):
        async with _Harness() as h:
            for request_id in range(20):
                h.connection.feed_message(_get(request_id))
            await wait_until(lambda: len(_terminal(h.connection)) == 20)
            await asyncio.sleep(0.05)

            ids = [m.request_id for m in _terminal(h.connection)]
            assert sorted(ids) == list(range(20))
            assert h.agent.stats["responses_sent"] == 20

    @pytest.mark.asyncio
    async def test_duplicate_inflight_id_dropped(self):
        release = asyncio.Event()

        async def handler(request):
            await release.wait()
            return HttpResponse(status=200)

        async with _Harness(handler) as h:
            h.connection.feed_message(_get(5))
            h.connection.feed_message(_get(5))
            await wait_until(lambda: h.agent.stats["duplicates_dropped"] == 1)
            release.set()
            await wait_until(lambda: _terminal(h.connection))
            await asyncio.sleep(0.05)

            assert len(_terminal(h.connection)) == 1
            assert len(h.executor.calls) == 1


class TestIgnoredTraffic:
    """Frames the relay does not act on."""

    @pytest.mark.asyncio
    async def test_unknown_variant_dropped_session_stays_open(self):
        async with _Harness() as h:
            session = h.agent.session
            h.connection.feed('{"HttpTeleport": [1, {"url": "x"}]}')
            h.connection.feed_message(_get(2))
            await wait_until(lambda: _terminal(h.connection))

            assert [m.request_id for m in _terminal(h.connection)] == [2]
            assert session.frames_dropped == 1
            assert h.agent.session is session
            assert h.connector.attempts == 1

    @pytest.mark.asyncio
    async def test_inbound_response_error_and_setup_ignored(self):
        async with _Harness() as h:
            h.connection.feed_message(HttpResponseMessage(1, HttpResponse(status=200)))
            h.connection.feed_message(ErrorMessage("peer side problem", request_id=1))
            h.connection.feed_message(SetupProxyClient())
            h.connection.feed_message(_get(4))
            await wait_until(lambda: _terminal(h.connection))

            assert [m.request_id for m in _terminal(h.connection)] == [4]
            assert h.agent.stats["ignored_messages"] == 2
            assert len(h.executor.calls) == 1


class TestConcurrency:
    """A slow call never holds up the others."""

    @pytest.mark.asyncio
    async def test_hanging_request_does_not_block_others(self):
        hang = asyncio.Event()

        async def handler(request):
            if request.url.endswith("/slow"):
                await hang.wait()
                return ExecutionError("GET /slow timed out")
            return HttpResponse(status=200, body=request.url.encode())

        async with _Harness(handler) as h:
            h.connection.feed_message(_get(0, "http://example.test/slow"))
            for request_id in range(1, 6):
                h.connection.feed_message(_get(request_id, f"http://example.test/{request_id}"))

            await wait_until(lambda: len(_terminal(h.connection)) == 5)
            assert {m.request_id for m in _terminal(h.connection)} == {1, 2, 3, 4, 5}
            await wait_until(lambda: h.agent.inflight_count == 1)

            hang.set()
            await wait_until(lambda: len(_terminal(h.connection)) == 6)
            last = _terminal(h.connection)[-1]
            assert isinstance(last, ErrorMessage)
            assert last.request_id == 0


class TestReconnect:
    """Channel loss is followed by a fresh session."""

    @pytest.mark.asyncio
    async def test_reconnect_resumes_service(self):
        async with _Harness() as h:
            first = h.connection
            first_session = h.agent.session
            first.drop("closed with code 1006")

            await wait_until(lambda: len(h.connector.connections) == 2)
            await wait_until(lambda: h.agent.state == ChannelState.CONNECTED)
            second = h.connection
            assert h.agent.session is not first_session
            assert first_session.is_open is False

            second.feed_message(_get(11))
            await wait_until(lambda: _terminal(second))
            assert [m.request_id for m in _terminal(second)] == [11]
            assert h.states == [
                ChannelState.CONNECTING,
                ChannelState.CONNECTED,
                ChannelState.DISCONNECTED,
                ChannelState.CONNECTING,
                ChannelState.CONNECTED,
            ]

    @pytest.mark.asyncio
    async def test_connect_failures_retry_with_backoff(self):
        async with _Harness(failures=3) as h:
            assert h.connector.attempts == 4
            assert h.agent.stats["connect_failures"] == 3
            assert h.agent.get_status()["consecutive_connect_failures"] == 3
            assert h.states[:2] == [ChannelState.CONNECTING, ChannelState.DISCONNECTED]

            h.connection.feed_message(_get(1))
            await wait_until(lambda: _terminal(h.connection))
            assert h.agent.get_status()["consecutive_connect_failures"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_connector_error_is_retried(self):
        async with _Harness(failures=2, error=RuntimeError("collaborator bug")) as h:
            assert h.connector.attempts == 3
            assert h.agent.stats["connect_failures"] == 2
            assert h.agent.is_running is True

            h.connection.feed_message(_get(5))
            await wait_until(lambda: _terminal(h.connection))
            assert [m.request_id for m in _terminal(h.connection)] == [5]

    @pytest.mark.asyncio
    async def test_sessions_dropped_without_traffic_back_off(self):
        async with _Harness() as h:
            for count in range(2, 5):
                h.connection.drop()
                await wait_until(lambda: len(h.connector.connections) == count)
                await wait_until(lambda: h.agent.state == ChannelState.CONNECTED)

            assert h.agent.stats["unstable_sessions"] == 3
            assert h.agent.stats["connect_failures"] == 0
            assert h.agent.get_status()["consecutive_connect_failures"] == 3

            h.connection.feed_message(_get(1))
            await wait_until(lambda: _terminal(h.connection))
            assert h.agent.get_status()["consecutive_connect_failures"] == 0

    @pytest.mark.asyncio
    async def test_long_lived_silent_session_clears_failures(self):
        async with _Harness(failures=2, reconnect_stable_after=0.0) as h:
            assert h.agent.get_status()["consecutive_connect_failures"] == 2
            h.connection.drop()
            await wait_until(lambda: len(h.connector.connections) == 2)
            await wait_until(lambda: h.agent.state == ChannelState.CONNECTED)

            assert h.agent.get_status()["consecutive_connect_failures"] == 0
            assert h.agent.stats["unstable_sessions"] == 0

    @pytest.mark.asyncio
    async def test_inflight_request_cancelled_with_its_session(self, tmp_path):
        started = asyncio.Event()

        async def handler(request):
            if request.url.endswith("/slow"):
                started.set()
                await asyncio.sleep(10)
            return HttpResponse(status=200)

        audit = AuditLogger(tmp_path / "audit.log")
        async with _Harness(handler, audit=audit) as h:
            first = h.connection
            first.feed_message(_get(1, "http://example.test/slow"))
            await started.wait()

            first.drop()
            await wait_until(lambda: len(h.connector.connections) == 2)
            await wait_until(lambda: h.agent.inflight_count == 0)
            second = h.connection
            await asyncio.sleep(0.05)

            assert _terminal(first) == []
            assert _terminal(second) == []
            assert h.agent.stats["abandoned"] == 1

        [entry] = audit.read_recent()
        assert entry.outcome == OUTCOME_ABANDONED
        assert entry.request_id == 1


class TestLifecycle:
    """Start, stop, status and audit."""

    @pytest.mark.asyncio
    async def test_stop_closes_session(self):
        h = _Harness()
        async with h:
            session = h.agent.session
        assert h.agent.is_running is False
        assert h.agent.state == ChannelState.DISCONNECTED
        assert session.is_open is False
        assert h.connection.close_reason == "relay shutting down"

    @pytest.mark.asyncio
    async def test_stop_during_backoff(self):
        agent = RelayAgent(
            _config(reconnect_backoff_base=30, reconnect_backoff_max=30),
            connector=FakeConnector(failures=100),
            executor=StubExecutor(ok_handler),
        )
        task = asyncio.create_task(agent.run())
        await wait_until(lambda: agent.stats["connect_failures"] == 1)
        agent.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert agent.state == ChannelState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_status(self):
        async with _Harness() as h:
            status = h.agent.get_status()
            assert status["running"] is True
            assert status["state"] == "connected"
            assert status["session_id"] == h.agent.session.session_id
            assert status["inflight"] == 0
            assert isinstance(status["stats"], dict)

    @pytest.mark.asyncio
    async def test_audit_records_outcomes(self, tmp_path):
        async def handler(request):
            if request.url.endswith("/bad"):
                return ExecutionError("GET http://example.test/bad connection failed")
            return HttpResponse(status=204)

        audit = AuditLogger(tmp_path / "audit.log")
        async with _Harness(handler, audit=audit) as h:
            h.connection.feed_message(_get(1, "http://example.test/good"))
            h.connection.feed_message(_get(2, "http://example.test/bad"))
            await wait_until(lambda: len(_terminal(h.connection)) == 2)

        entries = {e.request_id: e for e in audit.read_recent()}
        assert entries[1].outcome == OUTCOME_RESPONSE
        assert entries[1].status_code == 204
        assert entries[1].hostname == "example.test"
        assert entries[2].outcome == OUTCOME_ERROR
        assert "connection failed" in entries[2].error
