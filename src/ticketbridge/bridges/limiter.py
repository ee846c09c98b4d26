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
"""Token bucket rate limiter for outbound platform calls.

One bucket per (resource class, key). Resource classes are the platform's
limit families (``global``, ``webhook``, ``channel_create``, ``channel_edit``,
``messages_fetch``, ``application``); the key narrows a class to one route,
for example one channel's webhook. Tokens refill linearly and lazily.

Callers that find the bucket empty park in a FIFO wait queue. A single
drain task per bucket sleeps until the next token is due, refills, and wakes
waiters in arrival order. A waiter whose deadline passes is failed with
RateLimitedError instead of waiting forever.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ticketbridge.core.config import DEFAULT_RATE_LIMITS, RateLimitRule
from ticketbridge.core.errors import RateLimitedError

logger = logging.getLogger("ticketbridge.bridges.limiter")

_EPSILON = 1e-9
_MIN_SLEEP = 0.001


@dataclass
class _Waiter:
    future: asyncio.Future
    deadline: float | None


@dataclass
class TokenBucket:
    """A single bucket. Not thread-safe on its own; guarded by the limiter."""

    resource: str
    key: str
    capacity: int
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float
    last_used: float
    waiters: deque = field(default_factory=deque)
    drainer: asyncio.Task | None = None

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    def take(self, now: float) -> bool:
        self.refill(now)
        if self.tokens >= 1 - _EPSILON:
            self.tokens = max(0.0, self.tokens - 1)
            self.last_used = now
            return True
        return False

    def seconds_until_token(self) -> float:
        missing = 1 - self.tokens
        if missing <= _EPSILON:
            return 0.0
        return missing / self.refill_rate

    @property
    def is_full(self) -> bool:
        return self.tokens >= self.capacity - _EPSILON


class TokenBucketLimiter:
    """Rate limiter keyed by resource class and route key.

    Args:
        rules: Bucket shape per resource class. Unknown classes fall back
            to the ``global`` rule.
        clock: Monotonic time source, injectable for tests.
        sleep: Coroutine used to wait between refills, injectable for tests.
        default_timeout: Wait bound applied when ``acquire`` gets no timeout.
        idle_timeout: Seconds a full, unused per-key bucket survives
            ``prune_idle``.
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_timeout: float | None = 30.0,
        idle_timeout: float = 600.0,
    ) -> None:
        self._rules = dict(rules or DEFAULT_RATE_LIMITS)
        self._clock = clock
        self._sleep = sleep
        self._default_timeout = default_timeout
        self._idle_timeout = idle_timeout
        self._buckets: dict[tuple[str, str], TokenBucket] = {}
        self._lock = threading.Lock()
        self._rejected = 0

    # =========================================================================
    # Buckets
    # =========================================================================

    def _rule_for(self, resource: str) -> RateLimitRule:
        rule = self._rules.get(resource) or self._rules.get("global")
        if rule is None:
            raise KeyError(f"No rate limit rule for {resource!r}")
        return rule

    def _bucket(self, resource: str, key: str) -> TokenBucket:
        bucket = self._buckets.get((resource, key))
        if bucket is None:
            rule = self._rule_for(resource)
            now = self._clock()
            bucket = TokenBucket(
                resource=resource,
                key=key,
                capacity=rule.capacity,
                refill_rate=rule.refill_rate,
                tokens=float(rule.capacity),
                last_refill=now,
                last_used=now,
            )
            self._buckets[(resource, key)] = bucket
        return bucket

    # =========================================================================
    # Acquire
    # =========================================================================

    def try_acquire(self, resource: str, key: str = "global") -> bool:
        """Take a token if one is available right now. Never waits."""
        with self._lock:
            bucket = self._bucket(resource, key)
            if bucket.waiters:
                return False
            return bucket.take(self._clock())

    async def acquire(self, resource: str, key: str = "global", timeout: float | None = None) -> None:
        """Take a token, waiting in FIFO order if the bucket is empty.

        Raises:
            RateLimitedError: The wait exceeded ``timeout`` (or the default).
        """
        if timeout is None:
            timeout = self._default_timeout
        with self._lock:
            bucket = self._bucket(resource, key)
            now = self._clock()
            if not bucket.waiters and bucket.take(now):
                return
            waiter = _Waiter(
                future=asyncio.get_running_loop().create_future(),
                deadline=now + timeout if timeout is not None else None,
            )
            bucket.waiters.append(waiter)
            if bucket.drainer is None or bucket.drainer.done():
                bucket.drainer = asyncio.create_task(self._drain(bucket))

        try:
            await waiter.future
        except asyncio.CancelledError:
            # A cancelled waiter is skipped by the drain loop.
            waiter.future.cancel()
            raise

    async def _drain(self, bucket: TokenBucket) -> None:
        while True:
            with self._lock:
                now = self._clock()
                bucket.refill(now)

                pending: deque = deque()
                for waiter in bucket.waiters:
                    if waiter.future.done():
                        continue
                    if waiter.deadline is not None and now >= waiter.deadline:
                        self._rejected += 1
                        waiter.future.set_exception(
                            RateLimitedError(
                                f"Rate limit wait expired for {bucket.resource}:{bucket.key}",
                                context="limiter",
                                retry_after=bucket.seconds_until_token(),
                            )
                        )
                        continue
                    pending.append(waiter)

                while pending and bucket.tokens >= 1 - _EPSILON:
                    waiter = pending.popleft()
                    bucket.tokens = max(0.0, bucket.tokens - 1)
                    bucket.last_used = now
                    waiter.future.set_result(None)

                bucket.waiters = pending
                if not pending:
                    bucket.drainer = None
                    return

                delay = bucket.seconds_until_token()
                deadlines = [w.deadline - now for w in pending if w.deadline is not None]
                if deadlines:
                    delay = min(delay, min(deadlines))
            await self._sleep(max(delay, _MIN_SLEEP))

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def prune_idle(self) -> int:
        """Drop per-key buckets that are full, have no waiters and sat idle.

        Buckets keyed ``global`` are kept. Returns the number removed.
        """
        removed = 0
        with self._lock:
            now = self._clock()
            for ident, bucket in list(self._buckets.items()):
                if bucket.key == "global" or bucket.waiters:
                    continue
                bucket.refill(now)
                if bucket.is_full and now - bucket.last_used >= self._idle_timeout:
                    del self._buckets[ident]
                    removed += 1
        if removed:
            logger.debug("Pruned %d idle rate-limit buckets", removed)
        return removed

    def get_stats(self) -> dict[str, dict[str, float]]:
        """Current tokens and queue depth per bucket."""
        with self._lock:
            now = self._clock()
            stats = {}
            for (resource, key), bucket in self._buckets.items():
                bucket.refill(now)
                stats[f"{resource}:{key}"] = {
                    "tokens": round(bucket.tokens, 3),
                    "capacity": bucket.capacity,
                    "waiting": len(bucket.waiters),
                }
            stats["_rejected"] = {"count": self._rejected}
            return stats

    async def close(self) -> None:
        """Cancel drain tasks; parked waiters are failed."""
        with self._lock:
            drainers = [b.drainer for b in self._buckets.values() if b.drainer is not None]
            for bucket in self._buckets.values():
                for waiter in bucket.waiters:
                    if not waiter.future.done():
                        waiter.future.set_exception(
                            RateLimitedError("Limiter closed", context="limiter")
                        )
                bucket.waiters.clear()
                bucket.drainer = None
        for task in drainers:
            task.cancel()
        if drainers:
            await asyncio.gather(*drainers, return_exceptions=True)
