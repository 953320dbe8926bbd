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
"""Orion Relay -- HTTP over a duplex channel.

Host-side agent that performs HTTP calls on behalf of a sandboxed peer
with no outbound network access. The peer sends request intents over a
persistent authenticated channel; the relay executes them and answers
on the same channel, tagged with the peer's request id.

Architecture:
  Sandbox peer <--channel (WebSocket)--> RelayAgent (Host) --> Internet

Properties:
  - Every request runs concurrently; one slow call never blocks another
  - Exactly one HttpResponse or Error per request id
  - Malformed frames are dropped, never fatal
  - Channel loss triggers reconnect with capped exponential backoff
  - Full audit logging: every relayed request logged host-side
"""

__version__ = "0.1.0"
