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
"""Tests for the token bucket rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeClock, RecordingSleep
from ticketbridge.bridges.limiter import TokenBucketLimiter
from ticketbridge.core.config import DEFAULT_RATE_LIMITS, RateLimitRule
from ticketbridge.core.errors import RateLimitedError


def _limiter(rules, clock=None, **kwargs):
    clock = clock or FakeClock()
    return TokenBucketLimiter(rules, clock=clock, sleep=RecordingSleep(clock), **kwargs), clock


class TestTryAcquire:
    """Non-waiting token takes."""

    def test_burst_up_to_capacity(self):
        limiter, _ = _limiter({"global": RateLimitRule(3, 3.0)})
        assert [limiter.try_acquire("global") for _ in range(4)] == [True, True, True, False]

    def test_refills_linearly(self):
        limiter, clock = _limiter({"global": RateLimitRule(3, 3.0)})
        for _ in range(3):
            limiter.try_acquire("global")
        clock.advance(0.5)
        assert limiter.try_acquire("global") is False
        clock.advance(0.5)
        assert limiter.try_acquire("global") is True

    def test_refill_never_exceeds_capacity(self):
        limiter, clock = _limiter({"global": RateLimitRule(2, 1.0)})
        clock.advance(100)
        assert [limiter.try_acquire("global") for _ in range(3)] == [True, True, False]

    def test_keys_are_independent(self):
        limiter, _ = _limiter({"webhook": RateLimitRule(1, 5.0)})
        assert limiter.try_acquire("webhook", "chan-a") is True
        assert limiter.try_acquire("webhook", "chan-a") is False
        assert limiter.try_acquire("webhook", "chan-b") is True

    def test_unknown_resource_uses_global_rule(self):
        limiter, _ = _limiter({"global": RateLimitRule(2, 1.0)})
        assert [limiter.try_acquire("mystery") for _ in range(3)] == [True, True, False]

    def test_no_rule_at_all_raises(self):
        limiter, _ = _limiter({"webhook": RateLimitRule(1, 1.0)})
        with pytest.raises(KeyError):
            limiter.try_acquire("channel_edit")

    def test_default_rules(self):
        limiter = TokenBucketLimiter()
        stats = limiter.get_stats()
        assert stats["_rejected"] == {"count": 0}
        assert limiter.try_acquire("channel_create", "parent") is True
        assert limiter.get_stats()["channel_create:parent"]["capacity"] == (
            DEFAULT_RATE_LIMITS["channel_create"].capacity
        )


class TestAcquire:
    """Waiting acquisition with FIFO order and deadlines."""

    @pytest.mark.asyncio
    async def test_immediate_when_tokens_available(self):
        limiter, clock = _limiter({"global": RateLimitRule(2, 2.0)})
        await limiter.acquire("global")
        await limiter.acquire("global")
        assert clock.now == 0.0

    @pytest.mark.asyncio
    async def test_waits_for_refill(self):
        limiter, clock = _limiter({"global": RateLimitRule(2, 2.0)})
        await limiter.acquire("global")
        await limiter.acquire("global")
        await limiter.acquire("global")
        assert clock.now == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_waiters_served_in_arrival_order(self):
        limiter, clock = _limiter({"global": RateLimitRule(1, 1.0)})
        await limiter.acquire("global")
        order = []

        async def worker(i):
            await limiter.acquire("global")
            order.append(i)

        await asyncio.gather(*(worker(i) for i in range(4)))
        assert order == [0, 1, 2, 3]
        assert clock.now == pytest.approx(4.0)

    @pytest.mark.asyncio
    async def test_try_acquire_does_not_jump_the_queue(self):
        limiter, _ = _limiter({"global": RateLimitRule(1, 1.0)})
        await limiter.acquire("global")
        waiter = asyncio.ensure_future(limiter.acquire("global"))
        await asyncio.sleep(0)
        assert limiter.try_acquire("global") is False
        await waiter

    @pytest.mark.asyncio
    async def test_wait_past_deadline_raises(self):
        limiter, clock = _limiter({"global": RateLimitRule(1, 100.0)})
        await limiter.acquire("global")
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.acquire("global", timeout=5.0)
        assert clock.now == pytest.approx(5.0)
        assert exc_info.value.retry_after == pytest.approx(95.0)
        assert limiter.get_stats()["_rejected"]["count"] == 1

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self):
        limiter, _ = _limiter({"global": RateLimitRule(1, 100.0)}, default_timeout=2.0)
        await limiter.acquire("global")
        with pytest.raises(RateLimitedError):
            await limiter.acquire("global")

    @pytest.mark.asyncio
    async def test_close_fails_parked_waiters(self):
        limiter = TokenBucketLimiter({"global": RateLimitRule(1, 100.0)}, default_timeout=None)
        await limiter.acquire("global")
        waiter = asyncio.ensure_future(limiter.acquire("global"))
        await asyncio.sleep(0)
        await limiter.close()
        with pytest.raises(RateLimitedError):
            await waiter


class TestHousekeeping:
    """Idle bucket pruning and stats."""

    def test_prune_idle_drops_full_unused_buckets(self):
        limiter, clock = _limiter(
            {"global": RateLimitRule(5, 1.0), "webhook": RateLimitRule(1, 1.0)}, idle_timeout=10.0
        )
        limiter.try_acquire("global")
        limiter.try_acquire("webhook", "chan-1")
        clock.advance(11)
        assert limiter.prune_idle() == 1
        assert "webhook:chan-1" not in limiter.get_stats()
        assert "global:global" in limiter.get_stats()

    def test_prune_keeps_recent_buckets(self):
        limiter, clock = _limiter({"webhook": RateLimitRule(1, 1.0)}, idle_timeout=10.0)
        limiter.try_acquire("webhook", "chan-1")
        clock.advance(5)
        assert limiter.prune_idle() == 0

    def test_stats_report_tokens(self):
        limiter, _ = _limiter({"global": RateLimitRule(4, 1.0)})
        limiter.try_acquire("global")
        stats = limiter.get_stats()["global:global"]
        assert stats == {"tokens": 3.0, "capacity": 4, "waiting": 0}
