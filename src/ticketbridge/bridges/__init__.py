# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
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
"""
Ticket Bridge -- Relay Bridges

Customers talk to a Telegram bot; staff answer in per-ticket Discord
channels. BridgeManager relays between them.

Reliability model:
  1. Each platform session is supervised (heartbeat + backoff reconnect)
  2. Undeliverable messages wait in a bounded retry queue
  3. Outbound calls pass a per-route token bucket limiter
  4. Identical floods are cut off after a bounded number of repeats
  5. Every relay is logged to ~/.ticketbridge/logs/bridge.log

Usage:
    from ticketbridge.bridges.manager import BridgeManager
    from ticketbridge.bridges.telegram_bridge import TelegramOrigin
    from ticketbridge.bridges.discord_bridge import DiscordStaff

    manager = BridgeManager(TelegramOrigin(tg_token), DiscordStaff(dc_token), store)
    await manager.start()
"""
