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
"""Relay agent CLI entry point.

Runs the relay as a standalone process on the HOST side, next to the
sandbox it serves.

Usage:
    orion-relay [--config PATH] [--gateway-url URL] [--peer-id ID]
                [--request-timeout SECONDS] [--log-level LEVEL]
    python -m orion_relay ...
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from .config import load_config
from .exceptions import ConfigError
from .relay import RelayAgent

logger = logging.getLogger("orion.relay.server")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orion-relay",
        description="Orion Relay -- HTTP relay for network-isolated sandboxes",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to relay_config.yaml (default: ~/.orion/relay_config.yaml)",
    )
    parser.add_argument(
        "--gateway-url",
        default=None,
        help="Channel gateway WebSocket URL (overrides config)",
    )
    parser.add_argument(
        "--peer-id",
        default=None,
        help="Peer service identifier (overrides config)",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help="Per-request timeout in seconds (overrides config)",
    )
    parser.add_argument(
        "--no-audit",
        action="store_true",
        help="Disable the JSON Lines audit log",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config, INFO)",
    )
    return parser


async def _serve(agent: RelayAgent) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _on_signal, agent, signum)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass
    await agent.run()


def _on_signal(agent: RelayAgent, signum: int) -> None:
    logger.info("Received signal %d, shutting down...", signum)
    agent.stop()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the relay agent."""
    args = build_parser().parse_args(argv)

    config = load_config(args.config)

    # Apply CLI overrides
    if args.gateway_url is not None:
        config.gateway_url = args.gateway_url
    if args.peer_id is not None:
        config.peer_id = args.peer_id
    if args.request_timeout is not None:
        config.request_timeout = args.request_timeout
    if args.no_audit:
        config.audit_enabled = False
    if args.log_level is not None:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config.validate()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    logger.info("=" * 60)
    logger.info("Orion Relay")
    logger.info("=" * 60)
    logger.info("  Gateway: %s", config.gateway_url)
    logger.info("  Peer: %s", config.peer_id or "(unset)")
    logger.info("  Request timeout: %s", config.request_timeout or "transport default")
    logger.info("  Audit log: %s", config.audit_log_path if config.audit_enabled else "disabled")
    logger.info("=" * 60)

    try:
        asyncio.run(_serve(RelayAgent(config)))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
