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
"""Staff commands issued inside ticket channels.

Each command resolves the ticket from the channel it was typed in, applies
the lifecycle change through the store or BridgeManager, tells the customer
where that matters, and returns a reply for the staff member.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ticketbridge.bridges.base import ForwardOutcome, StaffAction
from ticketbridge.core.errors import BridgeError
from ticketbridge.store.base import Ticket, TicketStatus

if TYPE_CHECKING:
    from ticketbridge.bridges.manager import BridgeManager

logger = logging.getLogger("ticketbridge.bridges.commands")

COMMANDS = ("claim", "paid", "close", "reopen", "ping", "delete", "info")


class StaffCommandHandler:
    """Dispatches StaffAction objects to ``cmd_<name>`` methods."""

    def __init__(self, manager: BridgeManager):
        self.manager = manager

    @property
    def store(self):
        return self.manager.store

    async def handle(self, action: StaffAction) -> str:
        name = action.name.lower().lstrip("!/")
        if name not in COMMANDS:
            return f"❓ Unknown command: {action.name}"

        ticket = await self.store.get_ticket_by_channel(action.channel_id)
        if ticket is None:
            return "❌ This channel is not linked to a ticket."

        handler = getattr(self, f"cmd_{name}")
        try:
            reply = await handler(ticket, action)
        except BridgeError as exc:
            logger.warning("Command %s on ticket %s failed: %s", name, ticket.id, exc.message)
            return f"❌ {exc.message}"
        logger.info("Command %s on ticket %s by %s", name, ticket.id, action.staff_user_id)
        return reply

    async def cmd_claim(self, ticket: Ticket, action: StaffAction) -> str:
        if ticket.is_terminal:
            return f"❌ Ticket #{ticket.id} is {ticket.status.value}."
        if ticket.claimed_by and ticket.claimed_by != action.staff_user_id:
            return f"❌ Ticket #{ticket.id} is already claimed by <@{ticket.claimed_by}>."
        await self.store.update_ticket_claim(ticket.id, action.staff_user_id)
        await self.manager.set_ticket_status(ticket, TicketStatus.IN_PROGRESS)
        await self.manager.notify_origin_user(
            ticket, f"✅ Your ticket #{ticket.id} has been claimed by {action.staff_name}."
        )
        return f"✅ Ticket #{ticket.id} claimed by <@{action.staff_user_id}>."

    async def cmd_paid(self, ticket: Ticket, action: StaffAction) -> str:
        try:
            amount = float(action.args[0])
        except (IndexError, ValueError):
            return "Usage: !paid <amount>"
        if amount <= 0:
            return "❌ Amount must be positive."
        await self.store.update_ticket_payment(ticket.id, amount)
        await self.manager.set_ticket_status(ticket, TicketStatus.PAID)
        return f"💰 Ticket #{ticket.id} marked as paid: {amount:g}"

    async def cmd_close(self, ticket: Ticket, action: StaffAction) -> str:
        if ticket.is_terminal:
            return f"❌ Ticket #{ticket.id} is already {ticket.status.value}."
        await self.manager.notify_origin_user(
            ticket, f"🔒 Your ticket #{ticket.id} has been closed by {action.staff_name}."
        )
        await self.manager.move_to_transcripts(ticket.id)
        return f"🔒 Ticket #{ticket.id} closed."

    async def cmd_reopen(self, ticket: Ticket, action: StaffAction) -> str:
        status = await self.manager.move_from_transcripts(ticket.id)
        if status != TicketStatus.OPEN:
            return f"❌ Ticket #{ticket.id} could not be re-opened, its channel is gone."
        await self.manager.notify_origin_user(ticket, f"🔓 Your ticket #{ticket.id} was re-opened.")
        return f"🔓 Ticket #{ticket.id} re-opened."

    async def cmd_ping(self, ticket: Ticket, action: StaffAction) -> str:
        result = await self.manager.forward_ping_to_origin(ticket.id, action.staff_name)
        if result.outcome == ForwardOutcome.SENT:
            return "🔔 Customer pinged."
        if result.outcome == ForwardOutcome.QUEUED:
            return "🔔 Customer is unreachable right now, the ping is queued."
        return f"❌ Ping not sent: {result.outcome.value}"

    async def cmd_delete(self, ticket: Ticket, action: StaffAction) -> str:
        await self.manager.set_ticket_status(ticket, TicketStatus.DELETED)
        self.manager.dedup.reset_ticket(ticket.id)
        return f"🗑️ Ticket #{ticket.id} marked as deleted."

    async def cmd_info(self, ticket: Ticket, action: StaffAction) -> str:
        user = await self.store.get_user(ticket.user_id)
        lines = [
            f"**Ticket #{ticket.id}** ({ticket.status.value})",
            f"Customer: {user.name if user else 'unknown'}",
        ]
        if user and user.origin_id:
            lines.append(f"Telegram ID: {user.origin_id}")
        if ticket.claimed_by:
            lines.append(f"Claimed by: <@{ticket.claimed_by}>")
        if ticket.amount is not None:
            lines.append(f"Paid: {ticket.amount:g}")
        return "\n".join(lines)
