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
"""Customer-side ticket opening: /start and /cancel.

/start lists the services (categories), the customer replies with a number,
answers the category's questions one message at a time, and the ticket is
created with those answers before its staff channel is requested. Sessions
live in memory only and lapse after ``timeout`` seconds without a reply.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from ticketbridge.bridges.base import InboundEvent
from ticketbridge.core.errors import BridgeError, ChannelCapacityError, ValidationError
from ticketbridge.store.base import Category, Ticket, TicketStatus, User

if TYPE_CHECKING:
    from ticketbridge.bridges.manager import BridgeManager

logger = logging.getLogger("ticketbridge.bridges.intake")

INTAKE_COMMANDS = ("start", "cancel")


@dataclass
class IntakeSession:
    """One customer part-way through opening a ticket."""
    origin_id: str
    chat_id: str
    display_name: str
    menu: list[int] = field(default_factory=list)     # Category ids in offered order
    category: Category | None = None
    answers: list[dict[str, str]] = field(default_factory=list)
    touched_at: float = 0.0

    @property
    def next_question(self) -> str | None:
        if self.category is None:
            return None
        index = len(self.answers)
        if index < len(self.category.questions):
            return self.category.questions[index]
        return None


class TicketIntake:
    """Walks origin users from /start to a ticket with a staff channel."""

    def __init__(
        self,
        manager: BridgeManager,
        timeout: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.manager = manager
        self.timeout = timeout
        self._clock = clock
        self._sessions: dict[str, IntakeSession] = {}

    @property
    def store(self):
        return self.manager.store

    def active(self, origin_id: str) -> bool:
        session = self._sessions.get(str(origin_id))
        if session is None:
            return False
        if self._clock() - session.touched_at > self.timeout:
            logger.debug("Intake for %s expired", origin_id)
            del self._sessions[str(origin_id)]
            return False
        return True

    def cancel(self, origin_id: str) -> str:
        if self._sessions.pop(str(origin_id), None) is None:
            return "ℹ️ Nothing to cancel. Use /start to open a ticket."
        return "✅ Ticket creation canceled. Use /start to begin again."

    async def start(self, event: InboundEvent) -> str:
        """Offer the service menu, or jump straight to ``/start <number>``."""
        user = await self.store.get_user_by_origin_id(str(event.user_id))
        if user is not None and user.is_banned:
            return "⛔ You are not allowed to open tickets."

        categories = await self.store.get_categories()
        if not categories:
            return "No services are available right now. Please try again later."

        session = IntakeSession(
            origin_id=str(event.user_id),
            chat_id=event.chat_id,
            display_name=event.display_name,
            menu=[c.id for c in categories],
            touched_at=self._clock(),
        )
        self._sessions[session.origin_id] = session

        parts = event.text.split()
        if len(parts) > 1:
            return await self._choose(session, parts[1], categories)

        lines = [
            f"{index}. {'🔴 ' + c.name + ' (closed)' if c.is_closed else c.name}"
            for index, c in enumerate(categories, start=1)
        ]
        return "Which service do you need? Reply with its number:\n" + "\n".join(lines)

    async def handle_reply(self, event: InboundEvent) -> str:
        """Take the next menu choice or answer from a customer in intake."""
        session = self._sessions[str(event.user_id)]
        session.touched_at = self._clock()
        text = event.text.strip()

        if session.category is None:
            categories = [c for c in await self.store.get_categories() if c.id in session.menu]
            return await self._choose(session, text, categories)

        if not text:
            return "Please answer with a text message."
        session.answers.append({"question": session.next_question or "", "answer": text})
        return await self._ask_or_finish(session)

    async def _choose(self, session: IntakeSession, choice: str, categories: list[Category]) -> str:
        by_id = {c.id: c for c in categories}
        try:
            index = int(choice.lstrip("#"))
        except ValueError:
            index = 0
        category = None
        if 1 <= index <= len(session.menu):
            category = by_id.get(session.menu[index - 1])
        if category is None:
            return f"Please reply with a number from 1 to {len(session.menu)}, or /cancel."
        if category.is_closed:
            return (
                f"⛔ {category.name} is currently closed. "
                "Pick another service or use /cancel."
            )

        existing = await self._open_ticket_in(session.origin_id, category.id)
        if existing is not None:
            del self._sessions[session.origin_id]
            await self.manager.set_active_ticket(session.origin_id, existing.id)
            return (
                f"ℹ️ You already have an active {category.name} ticket (#{existing.id}). "
                "Your messages now go there."
            )

        session.category = category
        return await self._ask_or_finish(session)

    async def _open_ticket_in(self, origin_id: str, category_id: int) -> Ticket | None:
        user = await self.store.get_user_by_origin_id(origin_id)
        if user is None:
            return None
        for ticket in await self.store.get_tickets_by_user(user.id):
            if ticket.category_id == category_id and not ticket.is_terminal:
                return ticket
        return None

    async def _ask_or_finish(self, session: IntakeSession) -> str:
        question = session.next_question
        if question is not None:
            total = len(session.category.questions)
            return f"Question {len(session.answers) + 1}/{total}\n{question}"
        del self._sessions[session.origin_id]
        return await self._open_ticket(session)

    async def _open_ticket(self, session: IntakeSession) -> str:
        user = await self.store.get_user_by_origin_id(session.origin_id)
        if user is None:
            user = await self.store.create_user(
                User(id=0, origin_id=session.origin_id, display_name=session.display_name)
            )
        elif user.is_banned:
            return "⛔ You are not allowed to open tickets."

        ticket = await self.store.create_ticket(
            Ticket(id=0, user_id=user.id, category_id=session.category.id,
                   answers=list(session.answers))
        )
        await self.manager.set_active_ticket(session.origin_id, ticket.id)
        logger.info("Ticket %s opened by %s in %s", ticket.id, session.origin_id,
                    session.category.name)

        try:
            await self.manager.create_ticket_channel(ticket)
        except ChannelCapacityError:
            return (
                f"🕓 Ticket #{ticket.id} created. All staff channels are busy, so it is "
                "queued; send your messages here and they will be delivered once staff pick it up."
            )
        except ValidationError as exc:
            logger.error("Ticket %s cannot get a channel: %s", ticket.id, exc.message)
            return f"❌ Ticket #{ticket.id} could not be opened: {exc.message}"
        except BridgeError as exc:
            logger.warning("Ticket %s waits for a channel: %s", ticket.id, exc.message)
            await self.manager.set_ticket_status(ticket, TicketStatus.PENDING)
            return (
                f"✅ Ticket #{ticket.id} created. Staff will see it shortly; "
                "send your messages here."
            )
        return f"✅ Ticket #{ticket.id} created. Staff have been notified; send your messages here."
