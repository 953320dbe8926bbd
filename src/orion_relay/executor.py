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
"""Request executor -- performs the peer's HTTP calls.

Each call opens its own ``httpx.AsyncClient`` so that no connection pool
is shared between calls; a failing call cannot leave state behind that
affects another one. Failures come back as an ``ExecutionError`` value
and are never raised past ``execute``.

GET bodies are dropped before sending. Peers must not rely on a GET
body surviving the relay; every other method forwards the body as given.

Only the headers the peer supplied are sent; httpx's client defaults
(Accept, Accept-Encoding, Connection, User-Agent) are removed, and httpx
adds nothing beyond Host and Content-Length. Response bodies
are returned as received on the wire (no content decoding), which is
consistent because compression is only ever negotiated by the peer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import httpx

from .messages import HttpHeader, HttpMethod, HttpRequest, HttpResponse

logger = logging.getLogger("orion.relay.executor")

# Failure categories reported in ExecutionError.kind
KIND_TIMEOUT = "timeout"
KIND_CONNECT = "connect"
KIND_INVALID_URL = "invalid_url"
KIND_TRANSPORT = "transport"
KIND_UNEXPECTED = "unexpected"

# Transport default when neither the call nor the executor sets a timeout
_DEFAULT_TRANSPORT_TIMEOUT = 30.0


@dataclass(frozen=True)
class ExecutionError:
    """An outbound call that did not produce a response."""

    message: str
    kind: str = KIND_TRANSPORT

    def __str__(self) -> str:
        return self.message


class RequestExecutor:
    """Executes ``HttpRequest`` descriptors against the real network.

    Usage:
        executor = RequestExecutor(default_timeout=30)
        result = await executor.execute(request)
        if isinstance(result, ExecutionError):
            ...
    """

    def __init__(
        self,
        default_timeout: float | None = None,
        follow_redirects: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._default_timeout = default_timeout
        self._follow_redirects = follow_redirects
        # Injected in tests (httpx.MockTransport); None means the real network
        self._transport = transport

    async def execute(
        self, request: HttpRequest, timeout: float | None = None
    ) -> HttpResponse | ExecutionError:
        """Perform ``request`` and return the response or an ExecutionError."""
        effective_timeout = timeout if timeout is not None else self._default_timeout
        if effective_timeout is None:
            effective_timeout = _DEFAULT_TRANSPORT_TIMEOUT

        content = request.body
        if request.method is HttpMethod.GET and content is not None:
            logger.debug("Dropping %d byte body from GET %s", len(content), request.url)
            content = None

        start_time = time.time()
        try:
            # Whole-call deadline; httpx timeouts only bound each connect/read phase
            status, headers, body = await asyncio.wait_for(
                self._perform(request, content, effective_timeout), effective_timeout
            )
        except asyncio.TimeoutError:
            return self._failure(
                request, KIND_TIMEOUT, f"timed out after {effective_timeout}s", start_time
            )
        except httpx.TimeoutException as exc:
            return self._failure(
                request, KIND_TIMEOUT, f"timed out after {effective_timeout}s: {exc}", start_time
            )
        except httpx.ConnectError as exc:
            return self._failure(request, KIND_CONNECT, f"connection failed: {exc}", start_time)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            return self._failure(request, KIND_INVALID_URL, f"invalid URL: {exc}", start_time)
        except httpx.HTTPError as exc:
            return self._failure(request, KIND_TRANSPORT, f"request failed: {exc}", start_time)
        except Exception as exc:
            logger.exception("Unexpected error executing %s %s", request.method.value, request.url)
            return self._failure(request, KIND_UNEXPECTED, f"unexpected error: {exc}", start_time)

        duration_ms = (time.time() - start_time) * 1000
        logger.debug(
            "%s %s -> %d (%d bytes, %.1f ms)",
            request.method.value,
            request.url,
            status,
            len(body),
            duration_ms,
        )
        return HttpResponse(status=status, headers=headers, body=body)

    async def _perform(
        self, request: HttpRequest, content: bytes | None, timeout: float
    ) -> tuple[int, tuple[HttpHeader, ...], bytes]:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=self._follow_redirects,
            transport=self._transport,
        ) as client:
            _clear_default_headers(client)
            async with client.stream(
                request.method.value,
                request.url,
                headers=request.header_pairs,
                content=content,
            ) as resp:
                body = b"".join([chunk async for chunk in resp.aiter_raw()])
                headers = tuple(
                    HttpHeader(name=k, value=v) for k, v in resp.headers.multi_items()
                )
                return resp.status_code, headers, body

    def _failure(
        self, request: HttpRequest, kind: str, detail: str, start_time: float
    ) -> ExecutionError:
        duration_ms = (time.time() - start_time) * 1000
        message = f"{request.method.value} {request.url} {detail}"
        logger.warning("Outbound call failed after %.1f ms: %s", duration_ms, message)
        return ExecutionError(message=message, kind=kind)


def _clear_default_headers(client: httpx.AsyncClient) -> None:
    # Request headers are merged over these, so the peer's own values still apply
    for name in list(client.headers.keys()):
        del client.headers[name]
