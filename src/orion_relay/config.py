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
"""Relay agent configuration.

The relay runs on the HOST side, next to the sandbox, and is the only
component with outbound network access. Its configuration lives on the
host filesystem and is read once at start-up.

Config location: ~/.orion/relay_config.yaml  (host-side)

Environment overrides (applied after the file):
  ORION_RELAY_GATEWAY_URL, ORION_RELAY_PEER_ID, ORION_RELAY_AUTH_TOKEN
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

logger = logging.getLogger("orion.relay.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
_ORION_HOME = Path(os.environ.get("ORION_HOME", Path.home() / ".orion"))
DEFAULT_CONFIG_PATH = _ORION_HOME / "relay_config.yaml"
DEFAULT_AUDIT_LOG_PATH = _ORION_HOME / "relay_audit.log"

ENV_GATEWAY_URL = "ORION_RELAY_GATEWAY_URL"
ENV_PEER_ID = "ORION_RELAY_PEER_ID"
ENV_AUTH_TOKEN = "ORION_RELAY_AUTH_TOKEN"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class RelayConfig:
    """Full relay agent configuration."""

    # Channel gateway (ws:// or wss://)
    gateway_url: str = ""

    # Opaque id of the peer service behind the gateway
    peer_id: str = ""

    # Client identity; empty = random per process
    identity: str = ""

    # Bearer credential presented on connect (never logged)
    auth_token: str = ""

    # Handshake timeout (seconds)
    connect_timeout: float = 10.0

    # Per-call timeout for outbound requests; None = transport default
    request_timeout: float | None = None

    follow_redirects: bool = True

    # Reconnect backoff after failed handshakes (seconds)
    reconnect_backoff_base: float = 1.0
    reconnect_backoff_max: float = 60.0

    # A session that closes sooner than this without any inbound frame
    # counts as a failed attempt for backoff purposes
    reconnect_stable_after: float = 30.0

    # Register as a proxy client right after each handshake
    announce_on_connect: bool = True

    # Largest inbound frame accepted from the channel
    max_frame_bytes: int = 16 * 1024 * 1024  # 16 MB

    audit_enabled: bool = True
    audit_log_path: str = str(DEFAULT_AUDIT_LOG_PATH)

    log_level: str = "INFO"

    def validate(self) -> None:
        """Raise ConfigError if the config cannot be used to start the relay."""
        if not self.gateway_url.strip():
            raise ConfigError(
                f"gateway_url is not set (config file or {ENV_GATEWAY_URL})"
            )
        if not self.gateway_url.startswith(("ws://", "wss://")):
            raise ConfigError(f"gateway_url must be ws:// or wss://, got {self.gateway_url!r}")
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout must be positive")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive when set")
        if self.reconnect_backoff_base < 0:
            raise ConfigError("reconnect_backoff_base must not be negative")
        if self.reconnect_backoff_max < self.reconnect_backoff_base:
            raise ConfigError("reconnect_backoff_max must be >= reconnect_backoff_base")
        if self.reconnect_stable_after < 0:
            raise ConfigError("reconnect_stable_after must not be negative")
        if self.max_frame_bytes <= 0:
            raise ConfigError("max_frame_bytes must be positive")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(_LOG_LEVELS)}")

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based, capped exponential)."""
        if attempt <= 0:
            return 0.0
        return min(self.reconnect_backoff_base * (2 ** (attempt - 1)), self.reconnect_backoff_max)


def load_config(path: Path | str | None = None, env: dict[str, str] | None = None) -> RelayConfig:
    """Load relay configuration from YAML, then apply environment overrides.

    If the file does not exist or cannot be parsed, defaults are used.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.info("No relay config at %s -- using defaults", config_path)
        config = RelayConfig()
    else:
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            if raw is None:
                config = RelayConfig()
            elif not isinstance(raw, dict):
                logger.warning("Invalid relay config (not a dict) -- using defaults")
                config = RelayConfig()
            else:
                config = _parse_config(raw)
        except (OSError, yaml.YAMLError, ValueError, TypeError) as exc:
            logger.error("Failed to load relay config: %s -- using defaults", exc)
            config = RelayConfig()

    return apply_env_overrides(config, os.environ if env is None else env)


def apply_env_overrides(config: RelayConfig, env: Any) -> RelayConfig:
    if env.get(ENV_GATEWAY_URL):
        config.gateway_url = env[ENV_GATEWAY_URL]
    if env.get(ENV_PEER_ID):
        config.peer_id = env[ENV_PEER_ID]
    if env.get(ENV_AUTH_TOKEN):
        config.auth_token = env[ENV_AUTH_TOKEN]
    return config


def save_config(config: RelayConfig, path: Path | str | None = None) -> None:
    """Save relay configuration to YAML file. The auth token is not written."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "channel": {
            "gateway_url": config.gateway_url,
            "peer_id": config.peer_id,
            "identity": config.identity,
            "connect_timeout": config.connect_timeout,
            "announce_on_connect": config.announce_on_connect,
            "max_frame_bytes": config.max_frame_bytes,
        },
        "reconnect": {
            "backoff_base": config.reconnect_backoff_base,
            "backoff_max": config.reconnect_backoff_max,
            "stable_after": config.reconnect_stable_after,
        },
        "requests": {
            "timeout": config.request_timeout,
            "follow_redirects": config.follow_redirects,
        },
        "audit": {
            "enabled": config.audit_enabled,
            "path": config.audit_log_path,
        },
        "log_level": config.log_level,
    }
    config_path.write_text(
        yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
    )
    logger.info("Saved relay config to %s", config_path)


def _parse_config(raw: dict) -> RelayConfig:
    """Parse raw YAML dict into RelayConfig."""
    channel = _section(raw, "channel")
    reconnect = _section(raw, "reconnect")
    requests = _section(raw, "requests")
    audit = _section(raw, "audit")

    defaults = RelayConfig()
    request_timeout = requests.get("timeout", defaults.request_timeout)

    return RelayConfig(
        gateway_url=str(channel.get("gateway_url", defaults.gateway_url) or ""),
        peer_id=str(channel.get("peer_id", defaults.peer_id) or ""),
        identity=str(channel.get("identity", defaults.identity) or ""),
        auth_token=str(channel.get("auth_token", defaults.auth_token) or ""),
        connect_timeout=float(channel.get("connect_timeout", defaults.connect_timeout)),
        announce_on_connect=bool(channel.get("announce_on_connect", defaults.announce_on_connect)),
        max_frame_bytes=int(channel.get("max_frame_bytes", defaults.max_frame_bytes)),
        reconnect_backoff_base=float(
            reconnect.get("backoff_base", defaults.reconnect_backoff_base)
        ),
        reconnect_backoff_max=float(reconnect.get("backoff_max", defaults.reconnect_backoff_max)),
        reconnect_stable_after=float(
            reconnect.get("stable_after", defaults.reconnect_stable_after)
        ),
        request_timeout=None if request_timeout is None else float(request_timeout),
        follow_redirects=bool(requests.get("follow_redirects", defaults.follow_redirects)),
        audit_enabled=bool(audit.get("enabled", defaults.audit_enabled)),
        audit_log_path=str(audit.get("path", defaults.audit_log_path)),
        log_level=str(raw.get("log_level", defaults.log_level)).upper(),
    )


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name, {})
    if not isinstance(section, dict):
        logger.warning("Ignoring relay config section %r (not a mapping)", name)
        return {}
    return section
