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
"""Tests for connection supervision: backoff, reconnects, heartbeats."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeClock, FakeOrigin, RecordingSleep
from ticketbridge.bridges.supervisor import (
    BackoffPolicy,
    ConnectionState,
    ConnectionSupervisor,
    InvalidTransitionError,
)
from ticketbridge.core.errors import PlatformUnavailableError, SessionConflictError


def _supervisor(platform=None, policy=None, **kwargs):
    platform = platform or FakeOrigin()
    clock = FakeClock()
    sleep = RecordingSleep(clock)
    kwargs.setdefault("heartbeat_interval", 3600.0)
    kwargs.setdefault("connect_timeout", 2.0)
    kwargs.setdefault("start_timeout", 5.0)
    supervisor = ConnectionSupervisor(
        platform,
        "Telegram",
        policy or BackoffPolicy(1.0, 60.0, 2.0, 0.0),
        clock=clock,
        sleep=sleep,
        rng=lambda: 0.5,
        **kwargs,
    )
    return supervisor, platform, sleep


# =========================================================================
# Backoff
# =========================================================================


class TestBackoffPolicy:
    def test_exponential_then_capped(self):
        policy = BackoffPolicy(1.0, 60.0, 2.0, 0.0)
        assert [policy.base_delay(n) for n in range(8)] == [1, 2, 4, 8, 16, 32, 60, 60]

    def test_jitter_bounds(self):
        policy = BackoffPolicy(10.0, 60.0, 2.0, 0.2)
        assert policy.delay(0, rng=lambda: 0.0) == pytest.approx(8.0)
        assert policy.delay(0, rng=lambda: 1.0) == pytest.approx(12.0)
        assert policy.delay(0, rng=lambda: 0.5) == pytest.approx(10.0)

    def test_jittered_delay_stays_in_range(self):
        policy = BackoffPolicy(1.0, 60.0, 2.0, 0.2)
        for attempt in range(10):
            base = policy.base_delay(attempt)
            delay = policy.delay(attempt)
            assert base * 0.8 <= delay <= base * 1.2


# =========================================================================
# Start / stop
# =========================================================================


class TestStart:
    @pytest.mark.asyncio
    async def test_start_connects(self):
        supervisor, platform, _ = _supervisor()
        assert await supervisor.start() is True
        assert supervisor.state == ConnectionState.CONNECTED
        assert supervisor.is_connected
        assert platform.connects == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self):
        platform = FakeOrigin()
        platform.connect_errors = [PlatformUnavailableError("a"), PlatformUnavailableError("b")]
        supervisor, _, sleep = _supervisor(platform, max_reconnect_attempts=5)
        assert await supervisor.start() is True
        assert platform.connects == 3
        assert sleep.delays == [1.0, 2.0]
        assert supervisor.reconnect_attempts == 0
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        platform = FakeOrigin()
        platform.up = False
        supervisor, _, _ = _supervisor(platform, max_reconnect_attempts=3)
        assert await supervisor.start() is False
        assert supervisor.state == ConnectionState.DISCONNECTED
        assert platform.connects == 3
        assert "down" in supervisor.last_error

    @pytest.mark.asyncio
    async def test_session_conflict_cleans_up_and_cools_down(self):
        platform = FakeOrigin()
        platform.connect_errors = [SessionConflictError("409 Conflict")]
        supervisor, _, sleep = _supervisor(platform, session_conflict_cooldown=15.0)
        assert await supervisor.start() is True
        assert platform.cleanups == 1
        assert sleep.delays == [15.0]
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_concurrent_starts_share_one_attempt(self):
        platform = FakeOrigin()
        platform.connect_gate = asyncio.Event()
        supervisor, _, _ = _supervisor(platform)

        async def release():
            await asyncio.sleep(0.01)
            platform.connect_gate.set()

        first, second, _ = await asyncio.gather(supervisor.start(), supervisor.start(), release())
        assert first is True and second is True
        assert platform.connects == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_start_when_connected_is_noop(self):
        supervisor, platform, _ = _supervisor()
        await supervisor.start()
        assert await supervisor.start() is True
        assert platform.connects == 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_disconnects(self):
        supervisor, platform, _ = _supervisor()
        await supervisor.start()
        await supervisor.stop()
        assert supervisor.state == ConnectionState.DISCONNECTED
        assert platform.disconnects == 1
        assert supervisor.status()["connected_for"] == 0.0

    @pytest.mark.asyncio
    async def test_restart_after_giving_up(self):
        platform = FakeOrigin()
        platform.up = False
        supervisor, _, _ = _supervisor(platform, max_reconnect_attempts=1)
        assert await supervisor.start() is False
        platform.up = True
        assert await supervisor.restart() is True
        assert supervisor.is_connected
        await supervisor.stop()


# =========================================================================
# State machine & heartbeat
# =========================================================================


class TestStateAndHeartbeat:
    def test_invalid_transition_rejected(self):
        supervisor, _, _ = _supervisor()
        with pytest.raises(InvalidTransitionError):
            supervisor._transition(ConnectionState.CONNECTED)

    @pytest.mark.asyncio
    async def test_listeners_see_transitions(self):
        supervisor, _, _ = _supervisor()
        seen = []
        supervisor.add_listener(lambda state, sup: seen.append(state))
        await supervisor.start()
        await supervisor.stop()
        assert seen == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_supervision(self):
        supervisor, _, _ = _supervisor()

        def broken(state, sup):
            raise RuntimeError("listener bug")

        supervisor.add_listener(broken)
        assert await supervisor.start() is True
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_healthy_check_resets_failures(self):
        supervisor, platform, _ = _supervisor(max_failed_heartbeats=3)
        await supervisor.start()
        platform.alive = False
        await supervisor.check_health()
        platform.alive = True
        assert await supervisor.check_health() is True
        assert supervisor.failed_heartbeats == 0
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_lost_heartbeats_trigger_reconnect(self):
        supervisor, platform, _ = _supervisor(max_failed_heartbeats=2)
        await supervisor.start()
        platform.alive = False
        assert await supervisor.check_health() is False
        assert supervisor.state == ConnectionState.CONNECTED

        await supervisor.check_health()
        assert supervisor.state == ConnectionState.RECONNECTING
        assert "heartbeat lost" in supervisor.last_error

        platform.alive = True
        assert await supervisor._connect_task is True
        assert supervisor.state == ConnectionState.CONNECTED
        assert platform.connects == 2
        assert platform.disconnects >= 1
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_check_exception_counts_as_failure(self):
        supervisor, platform, _ = _supervisor(max_failed_heartbeats=5)
        await supervisor.start()

        async def broken_check():
            raise PlatformUnavailableError("liveness check timed out")

        platform.check_alive = broken_check
        assert await supervisor.check_health() is False
        assert supervisor.failed_heartbeats == 1
        await supervisor.stop()
