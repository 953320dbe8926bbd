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
"""Relay audit logger.

Every request the peer asks the relay to perform is recorded on the
host side, outside the sandbox, whether it produced a response, an
error, or was abandoned because its session went away.

Log format: JSON Lines (one JSON object per line) for easy parsing.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TextIO
from urllib.parse import urlparse

logger = logging.getLogger("orion.relay.audit")

OUTCOME_RESPONSE = "response"
OUTCOME_ERROR = "error"
OUTCOME_ABANDONED = "abandoned"


def _hostname(url: str) -> str:
    try:
        return urlparse(url).hostname or ""
    except ValueError:
        return ""


@dataclass
class AuditEntry:
    """A single relayed request."""

    timestamp: float
    outcome: str  # "response", "error", "abandoned"
    request_id: int
    session_id: int
    method: str
    url: str
    hostname: str
    status_code: int = 0  # 0 if no response was produced
    request_size: int = 0
    response_size: int = 0
    duration_ms: float = 0.0
    error: str = ""

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def _base(
        cls, outcome: str, request_id: int, session_id: int, method: str, url: str, **extra
    ) -> AuditEntry:
        return cls(
            timestamp=time.time(),
            outcome=outcome,
            request_id=request_id,
            session_id=session_id,
            method=method,
            url=url,
            hostname=_hostname(url),
            **extra,
        )

    @classmethod
    def response(
        cls,
        request_id: int,
        session_id: int,
        method: str,
        url: str,
        status_code: int,
        duration_ms: float = 0.0,
        request_size: int = 0,
        response_size: int = 0,
    ) -> AuditEntry:
        """Create an entry for a request answered with a response."""
        return cls._base(
            OUTCOME_RESPONSE,
            request_id,
            session_id,
            method,
            url,
            status_code=status_code,
            duration_ms=duration_ms,
            request_size=request_size,
            response_size=response_size,
        )

    @classmethod
    def failed(
        cls,
        request_id: int,
        session_id: int,
        method: str,
        url: str,
        error: str,
        duration_ms: float = 0.0,
        request_size: int = 0,
    ) -> AuditEntry:
        """Create an entry for a request reported back as an Error."""
        return cls._base(
            OUTCOME_ERROR,
            request_id,
            session_id,
            method,
            url,
            error=error,
            duration_ms=duration_ms,
            request_size=request_size,
        )

    @classmethod
    def abandoned(
        cls, request_id: int, session_id: int, method: str, url: str, duration_ms: float = 0.0
    ) -> AuditEntry:
        """Create an entry for a request cancelled with its session."""
        return cls._base(
            OUTCOME_ABANDONED,
            request_id,
            session_id,
            method,
            url,
            error="session closed before completion",
            duration_ms=duration_ms,
        )


class AuditLogger:
    """Thread-safe audit logger that writes JSON Lines to a host-side file."""

    def __init__(self, log_path: str | Path | None = None) -> None:
        if log_path is None:
            from .config import DEFAULT_AUDIT_LOG_PATH

            log_path = DEFAULT_AUDIT_LOG_PATH

        self._path = Path(log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._file: TextIO | None = None
        self._entry_count = 0

    def _ensure_open(self) -> TextIO:
        """Lazily open the log file."""
        if self._file is None or self._file.closed:
            self._file = open(self._path, "a", encoding="utf-8")
        return self._file

    def log(self, entry: AuditEntry) -> None:
        """Write an audit entry to the log file (thread-safe)."""
        line = entry.to_json() + "\n"
        with self._lock:
            try:
                f = self._ensure_open()
                f.write(line)
                f.flush()
                self._entry_count += 1
            except OSError as exc:
                logger.error("Failed to write audit entry: %s", exc)

    def close(self) -> None:
        """Close the log file."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
                self._file = None

    @property
    def entry_count(self) -> int:
        """Number of entries written in this session."""
        return self._entry_count

    @property
    def path(self) -> Path:
        return self._path

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        """Read the N most recent audit entries."""
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
            for line in lines[-n:]:
                try:
                    entries.append(AuditEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError):
                    continue
        except OSError as exc:
            logger.error("Failed to read audit log: %s", exc)

        return entries

    def get_stats(self) -> dict:
        """Get summary statistics from the audit log."""
        entries = self.read_recent(1000)
        return {
            "total_requests": len(entries),
            "responses": sum(1 for e in entries if e.outcome == OUTCOME_RESPONSE),
            "errors": sum(1 for e in entries if e.outcome == OUTCOME_ERROR),
            "abandoned": sum(1 for e in entries if e.outcome == OUTCOME_ABANDONED),
            "unique_hosts": len({e.hostname for e in entries}),
        }

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
