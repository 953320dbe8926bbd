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
"""Relay message codec.

Translates between channel frames and the in-memory message variants.
A frame is one JSON object with a single key naming the variant:

  {"HttpRequest":  [id, {"url", "method", "headers", "body"}]}
  {"HttpResponse": [id, {"status", "headers", "body"}]}
  {"Error":        [id | null, "message"]}
  {"SetupProxyClient": null}

Byte payloads travel as base64 strings and are never interpreted as
text. A request body of ``null`` means "no body"; ``""`` means an
explicitly empty body.

``decode`` never raises on malformed input: it returns a ``DecodeError``
carrying a diagnostic instead.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from .messages import (
    MAX_REQUEST_ID,
    ErrorMessage,
    HttpHeader,
    HttpMethod,
    HttpRequest,
    HttpRequestMessage,
    HttpResponse,
    HttpResponseMessage,
    RelayMessage,
    SetupProxyClient,
)

TAG_HTTP_REQUEST = "HttpRequest"
TAG_HTTP_RESPONSE = "HttpResponse"
TAG_ERROR = "Error"
TAG_SETUP_PROXY_CLIENT = "SetupProxyClient"

KNOWN_TAGS = frozenset({TAG_HTTP_REQUEST, TAG_HTTP_RESPONSE, TAG_ERROR, TAG_SETUP_PROXY_CLIENT})


@dataclass(frozen=True)
class DecodeError:
    """A frame that could not be decoded into a relay message."""

    reason: str

    def __str__(self) -> str:
        return self.reason


class _FrameError(ValueError):
    """Internal signal for a structurally invalid frame."""


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode(message: RelayMessage) -> str:
    """Serialize a message variant to a JSON text frame."""
    return json.dumps(to_wire(message), separators=(",", ":"))


def to_wire(message: RelayMessage) -> dict[str, Any]:
    """Build the JSON-compatible tagged object for a message."""
    if isinstance(message, HttpRequestMessage):
        req = message.request
        return {
            TAG_HTTP_REQUEST: [
                message.request_id,
                {
                    "url": req.url,
                    "method": req.method.value,
                    "headers": _encode_headers(req.headers),
                    "body": None if req.body is None else _encode_bytes(req.body),
                },
            ]
        }
    if isinstance(message, HttpResponseMessage):
        resp = message.response
        return {
            TAG_HTTP_RESPONSE: [
                message.request_id,
                {
                    "status": resp.status,
                    "headers": _encode_headers(resp.headers),
                    "body": _encode_bytes(resp.body),
                },
            ]
        }
    if isinstance(message, ErrorMessage):
        return {TAG_ERROR: [message.request_id, message.message]}
    if isinstance(message, SetupProxyClient):
        return {TAG_SETUP_PROXY_CLIENT: None}
    raise TypeError(f"Not a relay message: {type(message).__name__}")


def _encode_headers(headers: tuple[HttpHeader, ...]) -> list[dict[str, str]]:
    return [{"name": h.name, "value": h.value} for h in headers]


def _encode_bytes(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(frame: str | bytes | bytearray) -> RelayMessage | DecodeError:
    """Parse a raw channel frame.

    Returns the decoded message, or a ``DecodeError`` for anything that
    is not a structurally valid frame.
    """
    try:
        if isinstance(frame, (bytes, bytearray)):
            frame = bytes(frame).decode("utf-8")
        if not isinstance(frame, str):
            raise _FrameError(f"frame must be text or bytes, got {type(frame).__name__}")
        raw = json.loads(frame)
        return from_wire(raw)
    except _FrameError as exc:
        return DecodeError(str(exc))
    except UnicodeDecodeError as exc:
        return DecodeError(f"frame is not valid UTF-8: {exc}")
    except (ValueError, RecursionError) as exc:
        return DecodeError(f"frame is not valid JSON: {exc}")


def from_wire(raw: Any) -> RelayMessage:
    """Build a message from an already-parsed JSON object.

    Raises ``ValueError`` on a malformed object; ``decode`` turns that
    into a ``DecodeError``.
    """
    if not isinstance(raw, dict) or len(raw) != 1:
        raise _FrameError("frame must be an object with exactly one variant tag")

    tag, payload = next(iter(raw.items()))
    if tag == TAG_HTTP_REQUEST:
        request_id, body = _pair(tag, payload)
        return HttpRequestMessage(
            request_id=_request_id(request_id), request=_decode_request(body)
        )
    if tag == TAG_HTTP_RESPONSE:
        request_id, body = _pair(tag, payload)
        return HttpResponseMessage(
            request_id=_request_id(request_id), response=_decode_response(body)
        )
    if tag == TAG_ERROR:
        request_id, message = _pair(tag, payload)
        if not isinstance(message, str):
            raise _FrameError("Error message must be a string")
        return ErrorMessage(
            message=message,
            request_id=None if request_id is None else _request_id(request_id),
        )
    if tag == TAG_SETUP_PROXY_CLIENT:
        if payload is not None:
            raise _FrameError("SetupProxyClient carries no payload")
        return SetupProxyClient()
    raise _FrameError(f"unknown variant tag: {tag!r}")


def _pair(tag: str, payload: Any) -> tuple[Any, Any]:
    if not isinstance(payload, list) or len(payload) != 2:
        raise _FrameError(f"{tag} payload must be a two-element array")
    return payload[0], payload[1]


def _request_id(value: Any) -> int:
    # bool is an int subclass; true/false are not ids
    if isinstance(value, bool) or not isinstance(value, int):
        raise _FrameError(f"request id must be an integer, got {type(value).__name__}")
    if value < 0 or value > MAX_REQUEST_ID:
        raise _FrameError(f"request id out of range: {value}")
    return value


def _decode_request(body: Any) -> HttpRequest:
    if not isinstance(body, dict):
        raise _FrameError("HttpRequest descriptor must be an object")
    for key in ("url", "method", "headers"):
        if key not in body:
            raise _FrameError(f"HttpRequest descriptor missing field: {key}")

    url = body["url"]
    if not isinstance(url, str):
        raise _FrameError("url must be a string")

    method = body["method"]
    if not isinstance(method, str):
        raise _FrameError("method must be a string tag")
    try:
        http_method = HttpMethod(method)
    except ValueError:
        raise _FrameError(f"unsupported method: {method!r}") from None

    raw_body = body.get("body")
    return HttpRequest(
        url=url,
        method=http_method,
        headers=_decode_headers(body["headers"]),
        body=None if raw_body is None else _decode_bytes("body", raw_body),
    )


def _decode_response(body: Any) -> HttpResponse:
    if not isinstance(body, dict):
        raise _FrameError("HttpResponse descriptor must be an object")
    for key in ("status", "headers", "body"):
        if key not in body:
            raise _FrameError(f"HttpResponse descriptor missing field: {key}")

    status = body["status"]
    if isinstance(status, bool) or not isinstance(status, int) or status < 0:
        raise _FrameError("status must be a non-negative integer")

    return HttpResponse(
        status=status,
        headers=_decode_headers(body["headers"]),
        body=_decode_bytes("body", body["body"]),
    )


def _decode_headers(raw: Any) -> tuple[HttpHeader, ...]:
    if not isinstance(raw, list):
        raise _FrameError("headers must be an array")
    headers = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise _FrameError("header entry must be an object")
        name = entry.get("name")
        value = entry.get("value")
        if not isinstance(name, str) or not isinstance(value, str):
            raise _FrameError("header name and value must be strings")
        headers.append(HttpHeader(name=name, value=value))
    return tuple(headers)


def _decode_bytes(field_name: str, raw: Any) -> bytes:
    if not isinstance(raw, str):
        raise _FrameError(f"{field_name} must be a base64 string")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise _FrameError(f"{field_name} is not valid base64") from None
