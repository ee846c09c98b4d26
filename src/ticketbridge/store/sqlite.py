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
SQLite-backed TicketStore.

Location: ~/.ticketbridge/tickets.db unless configured otherwise.

Each call opens its own connection and runs in a worker thread so the event
loop never blocks on disk I/O.
"""

import asyncio
import json
import sqlite3
import time
from pathlib import Path
from typing import Any

from ticketbridge.store.base import (
    TERMINAL_STATUSES,
    Category,
    MessageRecord,
    Ticket,
    TicketStatus,
    TicketStore,
    User,
)


class SQLiteTicketStore(TicketStore):
    """TicketStore persisted in a single SQLite file."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ── Schema ───────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        conn = self._connect()
        c = conn.cursor()

        c.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                origin_id TEXT UNIQUE,
                staff_id TEXT,
                username TEXT,
                display_name TEXT,
                is_banned INTEGER DEFAULT 0
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                questions TEXT DEFAULT '[]',
                staff_role_id TEXT DEFAULT '',
                staff_parent_id TEXT DEFAULT '',
                transcript_parent_id TEXT DEFAULT '',
                is_closed INTEGER DEFAULT 0
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                category_id INTEGER,
                status TEXT DEFAULT 'open',
                staff_channel_id TEXT,
                claimed_by TEXT,
                amount REAL,
                answers TEXT DEFAULT '[]',
                created_at REAL,
                completed_at REAL
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ticket_id INTEGER NOT NULL,
                content TEXT,
                platform TEXT,
                author_name TEXT,
                author_id INTEGER,
                attachments TEXT DEFAULT '[]',
                created_at REAL
            )
        """)

        c.execute("CREATE INDEX IF NOT EXISTS idx_tickets_channel ON tickets(staff_channel_id)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_messages_ticket ON messages(ticket_id)")

        conn.commit()
        conn.close()

    # ── Plumbing ─────────────────────────────────────────────────────────

    def _run(self, sql: str, params: tuple = (), fetch: str = "") -> Any:
        conn = self._connect()
        try:
            cur = conn.execute(sql, params)
            if fetch == "one":
                result = cur.fetchone()
            elif fetch == "all":
                result = cur.fetchall()
            else:
                result = cur.lastrowid
            conn.commit()
            return result
        finally:
            conn.close()

    async def _execute(self, sql: str, params: tuple = (), fetch: str = "") -> Any:
        return await asyncio.to_thread(self._run, sql, params, fetch)

    @staticmethod
    def _row_to_ticket(row: sqlite3.Row) -> Ticket:
        return Ticket(
            id=row["id"],
            user_id=row["user_id"],
            category_id=row["category_id"],
            status=TicketStatus(row["status"]),
            staff_channel_id=row["staff_channel_id"],
            claimed_by=row["claimed_by"],
            amount=row["amount"],
            answers=json.loads(row["answers"] or "[]"),
            created_at=row["created_at"] or 0.0,
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            origin_id=row["origin_id"] or "",
            staff_id=row["staff_id"] or "",
            username=row["username"] or "",
            display_name=row["display_name"] or "",
            is_banned=bool(row["is_banned"]),
        )

    # ── Tickets ──────────────────────────────────────────────────────────

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        ticket_id = await self._execute(
            "INSERT INTO tickets (user_id, category_id, status, staff_channel_id, claimed_by,"
            " amount, answers, created_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                ticket.user_id,
                ticket.category_id,
                TicketStatus(ticket.status).value,
                ticket.staff_channel_id,
                ticket.claimed_by,
                ticket.amount,
                json.dumps(ticket.answers),
                ticket.created_at,
                ticket.completed_at,
            ),
        )
        ticket.id = ticket_id
        return ticket

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        row = await self._execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,), "one")
        return self._row_to_ticket(row) if row else None

    async def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> None:
        status = TicketStatus(status)
        if status in TERMINAL_STATUSES:
            await self._execute(
                "UPDATE tickets SET status = ?, completed_at = COALESCE(completed_at, ?)"
                " WHERE id = ?",
                (status.value, time.time(), ticket_id),
            )
        else:
            await self._execute(
                "UPDATE tickets SET status = ?, completed_at = NULL WHERE id = ?",
                (status.value, ticket_id),
            )

    async def update_ticket_channel(self, ticket_id: int, channel_id: str | None) -> None:
        await self._execute(
            "UPDATE tickets SET staff_channel_id = ? WHERE id = ?", (channel_id, ticket_id)
        )

    async def update_ticket_claim(self, ticket_id: int, staff_id: str | None) -> None:
        await self._execute("UPDATE tickets SET claimed_by = ? WHERE id = ?", (staff_id, ticket_id))

    async def update_ticket_payment(self, ticket_id: int, amount: float) -> None:
        await self._execute("UPDATE tickets SET amount = ? WHERE id = ?", (amount, ticket_id))

    async def get_ticket_by_channel(self, channel_id: str) -> Ticket | None:
        row = await self._execute(
            "SELECT * FROM tickets WHERE staff_channel_id = ? ORDER BY id DESC LIMIT 1",
            (channel_id,),
            "one",
        )
        return self._row_to_ticket(row) if row else None

    async def get_tickets_by_category(self, category_id: int) -> list[Ticket]:
        rows = await self._execute(
            "SELECT * FROM tickets WHERE category_id = ? ORDER BY id", (category_id,), "all"
        )
        return [self._row_to_ticket(r) for r in rows]

    async def get_tickets_by_user(self, user_id: int) -> list[Ticket]:
        rows = await self._execute(
            "SELECT * FROM tickets WHERE user_id = ? ORDER BY id", (user_id,), "all"
        )
        return [self._row_to_ticket(r) for r in rows]

    async def get_tickets_by_status(self, status: TicketStatus) -> list[Ticket]:
        rows = await self._execute(
            "SELECT * FROM tickets WHERE status = ? ORDER BY id", (TicketStatus(status).value,), "all"
        )
        return [self._row_to_ticket(r) for r in rows]

    # ── Users ────────────────────────────────────────────────────────────

    async def create_user(self, user: User) -> User:
        user.id = await self._execute(
            "INSERT INTO users (origin_id, staff_id, username, display_name, is_banned)"
            " VALUES (?, ?, ?, ?, ?)",
            (
                user.origin_id or None,
                user.staff_id,
                user.username,
                user.display_name,
                int(user.is_banned),
            ),
        )
        return user

    async def get_user(self, user_id: int) -> User | None:
        row = await self._execute("SELECT * FROM users WHERE id = ?", (user_id,), "one")
        return self._row_to_user(row) if row else None

    async def get_user_by_origin_id(self, origin_id: str) -> User | None:
        row = await self._execute(
            "SELECT * FROM users WHERE origin_id = ?", (str(origin_id),), "one"
        )
        return self._row_to_user(row) if row else None

    # ── Categories ───────────────────────────────────────────────────────

    async def create_category(self, category: Category) -> Category:
        category.id = await self._execute(
            "INSERT INTO categories (name, questions, staff_role_id, staff_parent_id,"
            " transcript_parent_id, is_closed) VALUES (?, ?, ?, ?, ?, ?)",
            (
                category.name,
                json.dumps(category.questions),
                category.staff_role_id,
                category.staff_parent_id,
                category.transcript_parent_id,
                int(category.is_closed),
            ),
        )
        return category

    async def get_category(self, category_id: int) -> Category | None:
        row = await self._execute("SELECT * FROM categories WHERE id = ?", (category_id,), "one")
        return self._row_to_category(row) if row else None

    async def get_categories(self) -> list[Category]:
        rows = await self._execute("SELECT * FROM categories ORDER BY id", (), "all")
        return [self._row_to_category(r) for r in rows]

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            questions=json.loads(row["questions"] or "[]"),
            staff_role_id=row["staff_role_id"] or "",
            staff_parent_id=row["staff_parent_id"] or "",
            transcript_parent_id=row["transcript_parent_id"] or "",
            is_closed=bool(row["is_closed"]),
        )

    # ── Messages ─────────────────────────────────────────────────────────

    async def create_message(self, record: MessageRecord) -> MessageRecord:
        record.id = await self._execute(
            "INSERT INTO messages (ticket_id, content, platform, author_name, author_id,"
            " attachments, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                record.ticket_id,
                record.content,
                record.platform,
                record.author_name,
                record.author_id,
                json.dumps(record.attachments),
                record.created_at,
            ),
        )
        return record

    async def get_messages(self, ticket_id: int) -> list[MessageRecord]:
        rows = await self._execute(
            "SELECT * FROM messages WHERE ticket_id = ? ORDER BY id", (ticket_id,), "all"
        )
        return [
            MessageRecord(
                id=r["id"],
                ticket_id=r["ticket_id"],
                content=r["content"] or "",
                platform=r["platform"] or "",
                author_name=r["author_name"] or "",
                author_id=r["author_id"],
                attachments=json.loads(r["attachments"] or "[]"),
                created_at=r["created_at"] or 0.0,
            )
            for r in rows
        ]
