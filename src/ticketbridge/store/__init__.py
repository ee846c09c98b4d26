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
"""Ticket persistence: the TicketStore interface and its implementations."""

from ticketbridge.store.base import (
    TERMINAL_STATUSES,
    Category,
    MessageRecord,
    Ticket,
    TicketStatus,
    TicketStore,
    User,
    can_transition,
)
from ticketbridge.store.memory import InMemoryTicketStore
from ticketbridge.store.sqlite import SQLiteTicketStore

__all__ = [
    "TERMINAL_STATUSES",
    "Category",
    "InMemoryTicketStore",
    "MessageRecord",
    "SQLiteTicketStore",
    "Ticket",
    "TicketStatus",
    "TicketStore",
    "User",
    "can_transition",
]
