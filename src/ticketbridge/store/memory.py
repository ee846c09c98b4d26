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
"""In-memory TicketStore, for tests and local runs without a database."""

from __future__ import annotations

import dataclasses
import time

from ticketbridge.store.base import (
    TERMINAL_STATUSES,
    Category,
    MessageRecord,
    Ticket,
    TicketStatus,
    TicketStore,
    User,
)


class InMemoryTicketStore(TicketStore):
    """Dict-backed store. Returns copies so callers cannot mutate stored rows."""

    def __init__(self) -> None:
        self._tickets: dict[int, Ticket] = {}
        self._users: dict[int, User] = {}
        self._categories: dict[int, Category] = {}
        self._messages: list[MessageRecord] = []
        self._next_ids = {"ticket": 1, "user": 1, "category": 1, "message": 1}

    def _next_id(self, kind: str) -> int:
        value = self._next_ids[kind]
        self._next_ids[kind] = value + 1
        return value

    def _ticket(self, ticket_id: int) -> Ticket:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            raise KeyError(f"Ticket {ticket_id} not found")
        return ticket

    # Tickets

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        if not ticket.id:
            ticket = dataclasses.replace(ticket, id=self._next_id("ticket"))
        else:
            self._next_ids["ticket"] = max(self._next_ids["ticket"], ticket.id + 1)
        self._tickets[ticket.id] = dataclasses.replace(ticket)
        return dataclasses.replace(ticket)

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return dataclasses.replace(ticket) if ticket else None

    async def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> None:
        ticket = self._ticket(ticket_id)
        ticket.status = TicketStatus(status)
        if ticket.status in TERMINAL_STATUSES:
            ticket.completed_at = ticket.completed_at or time.time()
        else:
            ticket.completed_at = None

    async def update_ticket_channel(self, ticket_id: int, channel_id: str | None) -> None:
        self._ticket(ticket_id).staff_channel_id = channel_id

    async def update_ticket_claim(self, ticket_id: int, staff_id: str | None) -> None:
        self._ticket(ticket_id).claimed_by = staff_id

    async def update_ticket_payment(self, ticket_id: int, amount: float) -> None:
        self._ticket(ticket_id).amount = amount

    async def get_ticket_by_channel(self, channel_id: str) -> Ticket | None:
        for ticket in reversed(list(self._tickets.values())):
            if ticket.staff_channel_id == channel_id:
                return dataclasses.replace(ticket)
        return None

    async def get_tickets_by_category(self, category_id: int) -> list[Ticket]:
        return [dataclasses.replace(t) for t in self._tickets.values() if t.category_id == category_id]

    async def get_tickets_by_user(self, user_id: int) -> list[Ticket]:
        return [dataclasses.replace(t) for t in self._tickets.values() if t.user_id == user_id]

    async def get_tickets_by_status(self, status: TicketStatus) -> list[Ticket]:
        return [dataclasses.replace(t) for t in self._tickets.values() if t.status == status]

    # Users

    async def create_user(self, user: User) -> User:
        if not user.id:
            user = dataclasses.replace(user, id=self._next_id("user"))
        else:
            self._next_ids["user"] = max(self._next_ids["user"], user.id + 1)
        self._users[user.id] = dataclasses.replace(user)
        return dataclasses.replace(user)

    async def get_user(self, user_id: int) -> User | None:
        user = self._users.get(user_id)
        return dataclasses.replace(user) if user else None

    async def get_user_by_origin_id(self, origin_id: str) -> User | None:
        for user in self._users.values():
            if user.origin_id == str(origin_id):
                return dataclasses.replace(user)
        return None

    # Categories

    async def create_category(self, category: Category) -> Category:
        if not category.id:
            category = dataclasses.replace(category, id=self._next_id("category"))
        else:
            self._next_ids["category"] = max(self._next_ids["category"], category.id + 1)
        self._categories[category.id] = dataclasses.replace(category)
        return dataclasses.replace(category)

    async def get_category(self, category_id: int) -> Category | None:
        category = self._categories.get(category_id)
        return dataclasses.replace(category) if category else None

    async def get_categories(self) -> list[Category]:
        return [dataclasses.replace(c) for c in sorted(self._categories.values(), key=lambda c: c.id)]

    # Messages

    async def create_message(self, record: MessageRecord) -> MessageRecord:
        record = dataclasses.replace(record, id=self._next_id("message"))
        self._messages.append(record)
        return dataclasses.replace(record)

    async def get_messages(self, ticket_id: int) -> list[MessageRecord]:
        return [dataclasses.replace(m) for m in self._messages if m.ticket_id == ticket_id]
