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
Ticket Bridge -- Telegram <-> Discord support-ticket relay.

Customers open tickets from a Telegram bot; staff answer them in per-ticket
Discord channels. The bridge relays messages and media both ways, keeps
platform sessions alive, and queues what it cannot deliver yet.
"""

__version__ = "1.0.0"
__author__ = "Ticket Bridge Team"
