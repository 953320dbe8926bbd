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
"""Relay message model.

In-memory shapes exchanged with the sandboxed peer over the channel.
The peer cannot reach the network; it ships an HTTP request intent to
the relay, the relay performs the call, and the result comes back
tagged with the peer's request id.

  Peer (sandbox) --HttpRequest(id, req)--> Relay --> Internet
  Peer (sandbox) <--HttpResponse(id, resp) / Error(id, msg)-- Relay
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

# Request ids are unsigned 64-bit on the peer side
MAX_REQUEST_ID = 2**64 - 1


class HttpMethod(str, Enum):
    """Closed set of methods the peer may ask for."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"


class ChannelState(str, Enum):
    """Lifecycle of the relay's channel. There is no terminal state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class HttpHeader:
    """A single header pair. Case and duplicates are left untouched."""

    name: str
    value: str


@dataclass(frozen=True)
class HttpRequest:
    """An outbound call the peer wants performed.

    ``body`` is ``None`` when the peer sent no payload, which is distinct
    from ``b""`` (an explicitly empty payload).
    """

    url: str
    method: HttpMethod
    headers: tuple[HttpHeader, ...] = ()
    body: bytes | None = None

    @property
    def header_pairs(self) -> list[tuple[str, str]]:
        return [(h.name, h.value) for h in self.headers]


@dataclass(frozen=True)
class HttpResponse:
    """Result of a completed outbound call. ``body`` is always present."""

    status: int
    headers: tuple[HttpHeader, ...] = ()
    body: bytes = b""


# ---------------------------------------------------------------------------
# Message variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HttpRequestMessage:
    """Peer -> relay: perform ``request`` and answer under ``request_id``."""

    request_id: int
    request: HttpRequest


@dataclass(frozen=True)
class HttpResponseMessage:
    """Relay -> peer: the response for ``request_id``."""

    request_id: int
    response: HttpResponse


@dataclass(frozen=True)
class ErrorMessage:
    """Failure report. ``request_id`` is None for channel or decode level errors."""

    message: str
    request_id: int | None = None


@dataclass(frozen=True)
class SetupProxyClient:
    """Relay -> peer: register this connection as a request executor."""


RelayMessage = Union[HttpRequestMessage, HttpResponseMessage, ErrorMessage, SetupProxyClient]
