# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Tests for /start and /cancel, and for pending tickets getting channels later."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from fakes import FakeOrigin, FakeStaff, fast_settings, seed_ticket
from ticketbridge.bridges.base import ORIGIN, STAFF, ForwardOutcome, InboundEvent
from ticketbridge.bridges.manager import BridgeManager
from ticketbridge.core.errors import ChannelCapacityError, PlatformUnavailableError
from ticketbridge.store.base import Category, Ticket, TicketStatus, User
from ticketbridge.store.memory import InMemoryTicketStore


@pytest_asyncio.fixture
async def bridge():
    manager = BridgeManager(
        FakeOrigin(), FakeStaff(), InMemoryTicketStore(), fast_settings(), log=MagicMock()
    )
    await manager.origin_supervisor.start()
    await manager.staff_supervisor.start()
    yield manager
    await manager.stop()


async def _services(store, questions=("Which game?", "Current rank?")):
    boosting = await store.create_category(
        Category(id=0, name="Boosting", questions=list(questions), staff_role_id="<@&555>",
                 staff_parent_id="parent-active")
    )
    await store.create_category(Category(id=0, name="Coaching", is_closed=True))
    return boosting


async def _say(manager, text, user="2002", kind=None):
    kind = kind or ("command" if text.startswith("/") else "message")
    event = InboundEvent(platform=ORIGIN, kind=kind, user_id=user, display_name="Carol",
                         text=text, chat_id=user)
    return await manager.handle_event(event)


async def _only_ticket(store, origin_id="2002"):
    user = await store.get_user_by_origin_id(origin_id)
    tickets = await store.get_tickets_by_user(user.id)
    assert len(tickets) == 1
    return tickets[0]


class TestStart:
    @pytest.mark.asyncio
    async def test_menu_questions_then_ticket_with_channel(self, bridge):
        await _services(bridge.store)

        menu = await _say(bridge, "/start")
        assert "1. Boosting" in menu
        assert "2. 🔴 Coaching (closed)" in menu
        assert await _say(bridge, "1") == "Question 1/2\nWhich game?"
        assert await _say(bridge, "Chess") == "Question 2/2\nCurrent rank?"
        done = await _say(bridge, "Gold")

        ticket = await _only_ticket(bridge.store)
        assert done.startswith(f"✅ Ticket #{ticket.id} created")
        assert ticket.status == TicketStatus.OPEN
        assert ticket.staff_channel_id
        assert ticket.answers == [
            {"question": "Which game?", "answer": "Chess"},
            {"question": "Current rank?", "answer": "Gold"},
        ]
        assert bridge.staff.created_channels == [("parent-active", "boosting-1")]
        fields = bridge.staff.posts[0]["embeds"][0]["fields"]
        assert [f["value"] for f in fields] == ["Chess", "Gold"]
        assert (await bridge.store.get_user_by_origin_id("2002")).display_name == "Carol"
        assert bridge.origin.sent[-1] == ("2002", done)

        result = await _say(bridge, "hello staff")
        assert result.outcome == ForwardOutcome.SENT
        assert result.ticket_id == ticket.id

    @pytest.mark.asyncio
    async def test_start_with_number_and_no_questions(self, bridge):
        await _services(bridge.store, questions=())
        reply = await _say(bridge, "/start 1")
        ticket = await _only_ticket(bridge.store)
        assert reply.startswith(f"✅ Ticket #{ticket.id} created")
        assert not bridge.intake.active("2002")

    @pytest.mark.asyncio
    async def test_closed_service_refused(self, bridge):
        await _services(bridge.store)
        reply = await _say(bridge, "/start 2")
        assert reply.startswith("⛔ Coaching is currently closed")
        assert bridge.intake.active("2002")
        assert bridge.staff.created_channels == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("choice", ["0", "3", "boosting"])
    async def test_bad_choice_asks_again(self, bridge, choice):
        await _services(bridge.store)
        await _say(bridge, "/start")
        reply = await _say(bridge, choice)
        assert reply.startswith("Please reply with a number from 1 to 2")
        assert bridge.intake.active("2002")

    @pytest.mark.asyncio
    async def test_no_services(self, bridge):
        assert (await _say(bridge, "/start")).startswith("No services are available")

    @pytest.mark.asyncio
    async def test_banned_user_refused(self, bridge):
        await _services(bridge.store)
        await bridge.store.create_user(User(id=0, origin_id="2002", is_banned=True))
        assert (await _say(bridge, "/start")).startswith("⛔ You are not allowed")
        assert not bridge.intake.active("2002")

    @pytest.mark.asyncio
    async def test_second_ticket_in_same_service_reuses_first(self, bridge):
        ticket = await seed_ticket(bridge.store, origin_id="2002")
        reply = await _say(bridge, "/start 1")
        assert f"#{ticket.id}" in reply
        assert await _only_ticket(bridge.store) == ticket
        assert await bridge.resolve_active_ticket("2002") == ticket.id
        assert bridge.staff.created_channels == []

    @pytest.mark.asyncio
    async def test_intake_lapses_after_timeout(self):
        now = [0.0]
        manager = BridgeManager(
            FakeOrigin(), FakeStaff(), InMemoryTicketStore(), fast_settings(intake_timeout=60.0),
            clock=lambda: now[0], log=MagicMock(),
        )
        try:
            await _services(manager.store)
            await _say(manager, "/start")
            assert manager.intake.active("2002")
            now[0] = 61.0
            assert not manager.intake.active("2002")
            assert await _say(manager, "1") is None
        finally:
            await manager.stop()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_ends_intake(self, bridge):
        await _services(bridge.store)
        await _say(bridge, "/start")
        assert (await _say(bridge, "/cancel")).startswith("✅ Ticket creation canceled")
        assert await _say(bridge, "1") is None
        assert bridge.origin.sent[-1][1].startswith("You have no open ticket")
        assert await bridge.store.get_user_by_origin_id("2002") is None

    @pytest.mark.asyncio
    async def test_cancel_with_nothing_started(self, bridge):
        assert (await _say(bridge, "/cancel")).startswith("ℹ️ Nothing to cancel")


class TestPendingRetry:
    @pytest.mark.asyncio
    async def test_full_service_queues_until_retry_opens_channel(self, bridge):
        await _services(bridge.store, questions=())
        bridge.staff.capacity_full = True

        reply = await _say(bridge, "/start 1")
        ticket = await _only_ticket(bridge.store)
        assert reply.startswith(f"🕓 Ticket #{ticket.id} created")
        assert ticket.status == TicketStatus.PENDING

        result = await _say(bridge, "are you there?")
        assert result.outcome == ForwardOutcome.TICKET_PENDING

        assert await bridge.retry_pending_tickets() == 0
        bridge.staff.capacity_full = False
        assert await bridge.retry_pending_tickets() == 1

        ticket = await bridge.store.get_ticket(ticket.id)
        assert ticket.status == TicketStatus.OPEN
        assert ticket.staff_channel_id
        await bridge.drain_retry_queue(STAFF)
        assert [s["content"] for s in bridge.staff.webhook_sends] == ["are you there?"]

    @pytest.mark.asyncio
    async def test_staff_failure_leaves_ticket_pending(self, bridge):
        await _services(bridge.store, questions=())
        bridge.staff.create_error = PlatformUnavailableError("discord unreachable")

        reply = await _say(bridge, "/start 1")
        ticket = await _only_ticket(bridge.store)
        assert "Staff will see it shortly" in reply
        assert ticket.status == TicketStatus.PENDING

        bridge.staff.create_error = None
        assert await bridge.retry_pending_tickets() == 1
        assert (await bridge.store.get_ticket(ticket.id)).staff_channel_id

    @pytest.mark.asyncio
    async def test_retry_waits_for_staff_connection(self, bridge):
        ticket = await seed_ticket(bridge.store, channel_id=None, status=TicketStatus.PENDING)
        await bridge.staff_supervisor.stop()
        assert await bridge.retry_pending_tickets() == 0
        assert (await bridge.store.get_ticket(ticket.id)).staff_channel_id is None

    @pytest.mark.asyncio
    async def test_full_service_skipped_for_rest_of_pass(self, bridge):
        first = await seed_ticket(bridge.store, channel_id=None, status=TicketStatus.PENDING)
        second = await bridge.store.create_ticket(
            Ticket(id=0, user_id=first.user_id, category_id=first.category_id,
                   status=TicketStatus.PENDING)
        )
        bridge.staff.create_channel = AsyncMock(side_effect=ChannelCapacityError("full"))
        assert await bridge.retry_pending_tickets() == 0
        assert bridge.staff.create_channel.await_count == 1
        assert (await bridge.store.get_ticket(second.id)).status == TicketStatus.PENDING
