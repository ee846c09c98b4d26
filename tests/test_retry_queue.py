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
"""Tests for the bounded retry queue."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from ticketbridge.bridges.base import ORIGIN, STAFF, OutboundMessage
from ticketbridge.bridges.retry_queue import RetryQueue
from ticketbridge.core.errors import DeliveryDeferred, PlatformUnavailableError, ValidationError


def _msg(content: str, platform: str = STAFF, ticket_id: int = 1) -> OutboundMessage:
    return OutboundMessage(platform=platform, ticket_id=ticket_id, sender_name="Alice", content=content)


class _Recorder:
    """Deliver callback that records content and fails on request."""

    def __init__(self, fail_on=(), error=None):
        self.delivered: list[str] = []
        self.fail_on = set(fail_on)
        self.error = error or PlatformUnavailableError("down")

    async def __call__(self, message: OutboundMessage) -> None:
        await asyncio.sleep(0)
        if message.content in self.fail_on:
            raise self.error
        self.delivered.append(message.content)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        queue = RetryQueue(max_size=2)
        first, second, third = _msg("1"), _msg("2"), _msg("3")
        assert await queue.enqueue(first) == []
        await queue.enqueue(second)
        dropped = await queue.enqueue(third)
        assert dropped == [first]
        assert [m.content for m in queue.pending()] == ["2", "3"]
        assert queue.stats()["dropped"] == 1

    @pytest.mark.asyncio
    async def test_enqueue_logs_to_live_log(self):
        log = MagicMock()
        queue = RetryQueue(log=log)
        await queue.enqueue(_msg("hi"))
        log.queue.assert_called_once()
        assert log.queue.call_args.args[:3] == ("enqueue", STAFF, 1)

    @pytest.mark.asyncio
    async def test_pending_filters_by_platform(self):
        queue = RetryQueue()
        await queue.enqueue(_msg("a", STAFF))
        await queue.enqueue(_msg("b", ORIGIN))
        assert [m.content for m in queue.pending(ORIGIN)] == ["b"]
        assert queue.stats()["pending_staff"] == 1

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            RetryQueue(max_size=0)


class TestDrain:
    @pytest.mark.asyncio
    async def test_delivers_in_order(self):
        queue = RetryQueue()
        for content in "abc":
            await queue.enqueue(_msg(content))
        deliver = _Recorder()
        report = await queue.drain(STAFF, deliver)
        assert deliver.delivered == ["a", "b", "c"]
        assert report.delivered == 3
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_failure_stops_drain_and_keeps_order(self):
        queue = RetryQueue(max_attempts=3)
        for content in "abc":
            await queue.enqueue(_msg(content))
        report = await queue.drain(STAFF, _Recorder(fail_on={"b"}))
        assert report.delivered == 1
        assert report.failed == 1
        remaining = queue.pending()
        assert [m.content for m in remaining] == ["b", "c"]
        assert remaining[0].attempts == 1
        assert remaining[1].attempts == 0

    @pytest.mark.asyncio
    async def test_discards_after_max_attempts(self):
        queue = RetryQueue(max_attempts=2)
        await queue.enqueue(_msg("x"))
        deliver = _Recorder(fail_on={"x"})
        await queue.drain(STAFF, deliver)
        assert len(queue) == 1
        report = await queue.drain(STAFF, deliver)
        assert report.discarded == 1
        assert len(queue) == 0
        assert queue.stats()["discarded"] == 1

    @pytest.mark.asyncio
    async def test_validation_error_discards_and_continues(self):
        queue = RetryQueue()
        for content in "abc":
            await queue.enqueue(_msg(content))
        deliver = _Recorder(fail_on={"a"}, error=ValidationError("ticket closed"))
        report = await queue.drain(STAFF, deliver)
        assert report.discarded == 1
        assert deliver.delivered == ["b", "c"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_deferred_messages_keep_attempts(self):
        queue = RetryQueue(max_attempts=1)
        await queue.enqueue(_msg("wait"))
        await queue.enqueue(_msg("go"))
        deliver = _Recorder(fail_on={"wait"}, error=DeliveryDeferred("no channel yet"))
        for _ in range(3):
            report = await queue.drain(STAFF, deliver)
        assert report.deferred == 1
        assert deliver.delivered == ["go"]
        assert [(m.content, m.attempts) for m in queue.pending()] == [("wait", 0)]

    @pytest.mark.asyncio
    async def test_drain_only_touches_one_platform(self):
        queue = RetryQueue()
        await queue.enqueue(_msg("to-staff", STAFF))
        await queue.enqueue(_msg("to-origin", ORIGIN))
        deliver = _Recorder()
        await queue.drain(STAFF, deliver)
        assert deliver.delivered == ["to-staff"]
        assert [m.content for m in queue.pending()] == ["to-origin"]

    @pytest.mark.asyncio
    async def test_concurrent_drains_deliver_each_message_once(self):
        queue = RetryQueue()
        for i in range(20):
            await queue.enqueue(_msg(str(i)))
        deliver = _Recorder()
        await asyncio.gather(queue.drain(STAFF, deliver), queue.drain(STAFF, deliver))
        assert sorted(deliver.delivered, key=int) == [str(i) for i in range(20)]
        assert len(deliver.delivered) == 20

    @pytest.mark.asyncio
    async def test_requeued_messages_go_ahead_of_new_ones(self):
        queue = RetryQueue()
        await queue.enqueue(_msg("old"))

        async def deliver(message):
            await queue.enqueue(_msg("new"))
            raise PlatformUnavailableError("down")

        await queue.drain(STAFF, deliver)
        assert [m.content for m in queue.pending()] == ["old", "new"]

    @pytest.mark.asyncio
    async def test_clear(self):
        queue = RetryQueue()
        await queue.enqueue(_msg("a", STAFF))
        await queue.enqueue(_msg("b", ORIGIN))
        assert await queue.clear(STAFF) == 1
        assert await queue.clear() == 1
