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
"""Connection supervision for one platform session.

Lifecycle::

    disconnected -> connecting -> connected
                         |            |
                         v            v  (connect error / heartbeats lost)
                    reconnecting <----+
                         |
                         +--> connecting   (after backoff delay)
                         +--> disconnected (attempts exhausted, needs restart())

Backoff is exponential with +/- jitter. A session conflict (another process
polling with the same token) waits a fixed cooldown and asks the platform
to clean the stale session up before trying again.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from ticketbridge.bridges.base import PlatformClient
from ticketbridge.core.errors import SessionConflictError

logger = logging.getLogger("ticketbridge.bridges.supervisor")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.RECONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}


class InvalidTransitionError(ValueError):
    """Raised when an invalid connection state transition is attempted."""


@dataclass
class BackoffPolicy:
    """Exponential backoff with symmetric jitter."""

    initial_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    jitter: float = 0.2

    def base_delay(self, attempt: int) -> float:
        """Delay before jitter for the given zero-based attempt."""
        return min(self.max_delay, self.initial_delay * (self.factor ** max(0, attempt)))

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        base = self.base_delay(attempt)
        return base * (1 + self.jitter * (2 * rng() - 1))


StateListener = Callable[[ConnectionState, "ConnectionSupervisor"], Any]


class ConnectionSupervisor:
    """Keeps one platform session alive.

    Args:
        platform: The adapter whose session is supervised.
        label: Name used in logs ("Telegram", "Discord").
        policy: Reconnect backoff curve.
        clock, sleep, rng: Injectable time, wait and jitter sources.
        log: Optional BridgeLogger for state transitions.
    """

    def __init__(
        self,
        platform: PlatformClient,
        label: str = "",
        policy: BackoffPolicy | None = None,
        *,
        heartbeat_interval: float = 60.0,
        max_failed_heartbeats: int = 3,
        max_reconnect_attempts: int = 5,
        session_conflict_cooldown: float = 15.0,
        connect_timeout: float = 30.0,
        start_timeout: float = 180.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        log=None,
    ) -> None:
        self.platform = platform
        self.label = label or platform.name
        self.policy = policy or BackoffPolicy()
        self._heartbeat_interval = heartbeat_interval
        self._max_failed_heartbeats = max_failed_heartbeats
        self._max_reconnect_attempts = max_reconnect_attempts
        self._conflict_cooldown = session_conflict_cooldown
        self._connect_timeout = connect_timeout
        self._start_timeout = start_timeout
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._log = log

        self.state = ConnectionState.DISCONNECTED
        self.last_error = ""
        self.reconnect_attempts = 0
        self.failed_heartbeats = 0
        self.connected_since: float | None = None

        self._stopping = False
        self._connect_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._listeners: list[StateListener] = []

    # =========================================================================
    # State
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: ConnectionState) -> None:
        if new_state == self.state:
            return
        valid = VALID_TRANSITIONS.get(self.state, set())
        if new_state not in valid:
            raise InvalidTransitionError(
                f"Cannot transition from {self.state.value} to {new_state.value}. "
                f"Valid: {', '.join(s.value for s in valid) or 'none'}"
            )
        previous = self.state
        self.state = new_state
        logger.info("%s: %s -> %s", self.label, previous.value, new_state.value)
        if self._log:
            self._log.connection(self.label, new_state.value, previous.value,
                                 attempts=self.reconnect_attempts, error=self.last_error)
        for listener in list(self._listeners):
            try:
                listener(new_state, self)
            except Exception as exc:
                logger.error("%s: state listener failed: %s", self.label, exc)

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "connected": self.is_connected,
            "last_error": self.last_error,
            "reconnect_attempts": self.reconnect_attempts,
            "failed_heartbeats": self.failed_heartbeats,
            "connected_for": (
                self._clock() - self.connected_since if self.connected_since is not None else 0.0
            ),
        }

    # =========================================================================
    # Start / stop
    # =========================================================================

    async def start(self) -> bool:
        """Connect, retrying with backoff. Returns True once connected.

        A call made while another start is in flight waits for that attempt
        (bounded by ``start_timeout``) instead of opening a second session.
        """
        if self._connect_task is not None and not self._connect_task.done():
            logger.info("%s: start already in progress, waiting for it", self.label)
            return await self._await_connect()
        if self.is_connected:
            return True

        self._stopping = False
        if self.state == ConnectionState.DISCONNECTED:
            self.reconnect_attempts = 0
        self._connect_task = asyncio.create_task(self._connect_loop())
        return await self._await_connect()

    async def _await_connect(self) -> bool:
        task = self._connect_task
        try:
            return await asyncio.wait_for(asyncio.shield(task), self._start_timeout)
        except asyncio.TimeoutError:
            logger.warning("%s: start did not finish within %.0fs", self.label, self._start_timeout)
            return False

    async def stop(self) -> None:
        """Cancel the heartbeat and any reconnect loop, then close the session."""
        self._stopping = True
        current = asyncio.current_task()
        tasks = [
            t
            for t in (self._heartbeat_task, self._connect_task)
            if t is not None and not t.done() and t is not current
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat_task = None
        self._connect_task = None

        await self._safe_disconnect()
        self.connected_since = None
        self._transition(ConnectionState.DISCONNECTED)

    async def restart(self) -> bool:
        await self.stop()
        self.reconnect_attempts = 0
        self.failed_heartbeats = 0
        return await self.start()

    # =========================================================================
    # Connect loop
    # =========================================================================

    async def _connect_loop(self) -> bool:
        while not self._stopping:
            self._transition(ConnectionState.CONNECTING)
            try:
                await asyncio.wait_for(self.platform.connect(), self._connect_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.last_error = str(exc) or type(exc).__name__
                self.reconnect_attempts += 1
                await self._safe_disconnect()

                if self.reconnect_attempts >= self._max_reconnect_attempts:
                    logger.error(
                        "%s: giving up after %d attempts: %s",
                        self.label,
                        self.reconnect_attempts,
                        self.last_error,
                    )
                    self._transition(ConnectionState.DISCONNECTED)
                    return False

                self._transition(ConnectionState.RECONNECTING)
                if isinstance(exc, SessionConflictError):
                    delay = self._conflict_cooldown
                    logger.warning(
                        "%s: session conflict, cleaning up and waiting %.1fs",
                        self.label,
                        delay,
                    )
                    await self._cleanup_session()
                else:
                    delay = self.policy.delay(self.reconnect_attempts - 1, self._rng)
                    logger.warning(
                        "%s: connect failed (%s), retry %d/%d in %.1fs",
                        self.label,
                        self.last_error,
                        self.reconnect_attempts,
                        self._max_reconnect_attempts,
                        delay,
                    )
                await self._sleep(delay)
                continue

            self.reconnect_attempts = 0
            self.failed_heartbeats = 0
            self.last_error = ""
            self.connected_since = self._clock()
            self._transition(ConnectionState.CONNECTED)
            self._ensure_heartbeat()
            return True
        return False

    async def _reconnect(self) -> bool:
        await self._sleep(self.policy.delay(0, self._rng))
        return await self._connect_loop()

    async def _trigger_reconnect(self, reason: str) -> None:
        if self._stopping or (self._connect_task is not None and not self._connect_task.done()):
            return
        self.last_error = reason
        self.reconnect_attempts = 0
        self.connected_since = None
        self._transition(ConnectionState.RECONNECTING)
        await self._safe_disconnect()
        self._connect_task = asyncio.create_task(self._reconnect())

    async def _safe_disconnect(self) -> None:
        try:
            await asyncio.wait_for(self.platform.disconnect(), self._connect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s: disconnect failed: %s", self.label, exc)

    async def _cleanup_session(self) -> None:
        try:
            await asyncio.wait_for(self.platform.cleanup_session(), self._connect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s: session cleanup failed: %s", self.label, exc)

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while not self._stopping:
            await self._sleep(self._heartbeat_interval)
            if self.state == ConnectionState.CONNECTED:
                await self.check_health()

    async def check_health(self) -> bool:
        """Check the session once; enough consecutive failures force a reconnect."""
        error = ""
        try:
            ok = await asyncio.wait_for(self.platform.check_alive(), self._connect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            ok = False
            error = str(exc)

        if ok:
            self.failed_heartbeats = 0
            return True

        self.failed_heartbeats += 1
        logger.warning(
            "%s: heartbeat failed (%d/%d) %s",
            self.label,
            self.failed_heartbeats,
            self._max_failed_heartbeats,
            error,
        )
        if self.failed_heartbeats >= self._max_failed_heartbeats:
            self.failed_heartbeats = 0
            await self._trigger_reconnect(f"heartbeat lost: {error or 'check failed'}")
        return False
