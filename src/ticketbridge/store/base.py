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
"""Ticket store: domain records and the persistence interface."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class TicketStatus(str, Enum):
    OPEN = "open"
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    PAID = "paid"
    CLOSED = "closed"
    DELETED = "deleted"
    TRANSCRIPT = "transcript"


TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.CLOSED, TicketStatus.DELETED, TicketStatus.TRANSCRIPT}
)


def can_transition(current: TicketStatus, new: TicketStatus, reopen: bool = False) -> bool:
    """Statuses only move toward terminal, except an explicit re-open."""
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        if new in TERMINAL_STATUSES:
            # closed -> transcript/deleted, transcript -> deleted
            return current != TicketStatus.DELETED
        return reopen and current != TicketStatus.DELETED
    return True


@dataclass
class User:
    """A customer (origin) or staff member known to the bridge."""

    id: int
    origin_id: str = ""
    staff_id: str = ""
    username: str = ""
    display_name: str = ""
    is_banned: bool = False

    @property
    def name(self) -> str:
        return self.display_name or self.username or f"user-{self.id}"


@dataclass
class Category:
    """A ticket category (service) with its staff-side containers."""

    id: int
    name: str
    questions: list[str] = field(default_factory=list)
    staff_role_id: str = ""
    staff_parent_id: str = ""
    transcript_parent_id: str = ""
    is_closed: bool = False


@dataclass
class Ticket:
    id: int
    user_id: int
    category_id: int | None = None
    status: TicketStatus = TicketStatus.OPEN
    staff_channel_id: str | None = None
    claimed_by: str | None = None
    amount: float | None = None
    answers: list[dict[str, str]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class MessageRecord:
    """Durable record of one relayed message."""

    ticket_id: int
    content: str
    platform: str
    author_name: str = ""
    author_id: int | None = None
    attachments: list[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    id: int | None = None


class TicketStore(ABC):
    """Async persistence for users, categories, tickets and message records."""

    # Tickets

    @abstractmethod
    async def create_ticket(self, ticket: Ticket) -> Ticket: ...

    @abstractmethod
    async def get_ticket(self, ticket_id: int) -> Ticket | None: ...

    @abstractmethod
    async def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> None: ...

    @abstractmethod
    async def update_ticket_channel(self, ticket_id: int, channel_id: str | None) -> None: ...

    @abstractmethod
    async def update_ticket_claim(self, ticket_id: int, staff_id: str | None) -> None: ...

    @abstractmethod
    async def update_ticket_payment(self, ticket_id: int, amount: float) -> None: ...

    @abstractmethod
    async def get_ticket_by_channel(self, channel_id: str) -> Ticket | None: ...

    @abstractmethod
    async def get_tickets_by_category(self, category_id: int) -> list[Ticket]: ...

    @abstractmethod
    async def get_tickets_by_user(self, user_id: int) -> list[Ticket]: ...

    @abstractmethod
    async def get_tickets_by_status(self, status: TicketStatus) -> list[Ticket]: ...

    # Users

    @abstractmethod
    async def create_user(self, user: User) -> User: ...

    @abstractmethod
    async def get_user(self, user_id: int) -> User | None: ...

    @abstractmethod
    async def get_user_by_origin_id(self, origin_id: str) -> User | None: ...

    # Categories

    @abstractmethod
    async def create_category(self, category: Category) -> Category: ...

    @abstractmethod
    async def get_category(self, category_id: int) -> Category | None: ...

    @abstractmethod
    async def get_categories(self) -> list[Category]: ...

    # Messages

    @abstractmethod
    async def create_message(self, record: MessageRecord) -> MessageRecord: ...

    @abstractmethod
    async def get_messages(self, ticket_id: int) -> list[MessageRecord]: ...

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
