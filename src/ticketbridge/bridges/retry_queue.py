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
"""Bounded FIFO retry queue for messages that could not be delivered.

Messages keep their order per target platform. A drain removes a platform's
messages from the queue before delivering them, so two drains can never
send the same message twice. A message that keeps failing is discarded once
its attempt counter reaches ``max_attempts``; when the queue is full the
oldest message is dropped to make room.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from ticketbridge.bridges.base import OutboundMessage
from ticketbridge.core.errors import DeliveryDeferred, ValidationError

logger = logging.getLogger("ticketbridge.bridges.retry_queue")

Deliver = Callable[[OutboundMessage], Awaitable[None]]


@dataclass
class DrainReport:
    """What one drain pass did."""

    platform: str
    delivered: int = 0
    failed: int = 0
    discarded: int = 0
    deferred: int = 0


class RetryQueue:
    """FIFO queue with a size cap and a per-message attempt cap."""

    def __init__(self, max_size: int = 1000, max_attempts: int = 3, log=None) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._max_attempts = max_attempts
        self._log = log
        self._queue: deque[OutboundMessage] = deque()
        self._lock = asyncio.Lock()
        self._drain_locks: dict[str, asyncio.Lock] = {}
        self._dropped = 0
        self._delivered = 0
        self._discarded = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def max_size(self) -> int:
        return self._max_size

    def pending(self, platform: str | None = None) -> list[OutboundMessage]:
        """Snapshot of queued messages, optionally for one platform."""
        return [m for m in self._queue if platform is None or m.platform == platform]

    def _trim(self) -> list[OutboundMessage]:
        dropped = []
        while len(self._queue) > self._max_size:
            oldest = self._queue.popleft()
            dropped.append(oldest)
            self._dropped += 1
            logger.warning(
                "Retry queue full, dropped oldest message %s for ticket %s",
                oldest.message_id,
                oldest.ticket_id,
            )
            if self._log:
                self._log.queue("drop", oldest.platform, len(self._queue),
                                message_id=oldest.message_id, ticket_id=oldest.ticket_id)
        return dropped

    async def enqueue(self, message: OutboundMessage) -> list[OutboundMessage]:
        """Queue a message. Returns any messages dropped to make room."""
        async with self._lock:
            self._queue.append(message)
            dropped = self._trim()
            size = len(self._queue)
        if self._log:
            self._log.queue("enqueue", message.platform, size,
                            message_id=message.message_id, ticket_id=message.ticket_id)
        return dropped

    async def drain(self, platform: str, deliver: Deliver) -> DrainReport:
        """Try to deliver every queued message for ``platform`` in order.

        ``deliver`` raising ValidationError discards the message at once,
        DeliveryDeferred keeps it without counting an attempt, and any other
        exception counts as a failed attempt. Draining stops at the first
        failed attempt so later messages do not overtake it.
        """
        report = DrainReport(platform=platform)
        drain_lock = self._drain_locks.setdefault(platform, asyncio.Lock())
        async with drain_lock:
            async with self._lock:
                batch = [m for m in self._queue if m.platform == platform]
                if not batch:
                    return report
                self._queue = deque(m for m in self._queue if m.platform != platform)

            keep: list[OutboundMessage] = []
            for index, message in enumerate(batch):
                try:
                    await deliver(message)
                except ValidationError as exc:
                    report.discarded += 1
                    self._discard(message, str(exc))
                    continue
                except DeliveryDeferred:
                    report.deferred += 1
                    keep.append(message)
                    continue
                except asyncio.CancelledError:
                    keep.extend(batch[index:])
                    await self._requeue(keep)
                    raise
                except Exception as exc:
                    message.attempts += 1
                    message.last_error = str(exc)
                    report.failed += 1
                    if message.attempts >= self._max_attempts:
                        report.discarded += 1
                        self._discard(message, str(exc))
                    else:
                        keep.append(message)
                    keep.extend(batch[index + 1:])
                    break
                else:
                    report.delivered += 1
                    self._delivered += 1
                    if self._log:
                        self._log.queue("deliver", platform, len(self._queue),
                                        message_id=message.message_id,
                                        ticket_id=message.ticket_id)

            await self._requeue(keep)

        if report.delivered or report.discarded or report.failed:
            logger.info(
                "Drained %s: delivered=%d failed=%d discarded=%d deferred=%d",
                platform,
                report.delivered,
                report.failed,
                report.discarded,
                report.deferred,
            )
        return report

    async def _requeue(self, messages: list[OutboundMessage]) -> None:
        if not messages:
            return
        async with self._lock:
            # Put them back ahead of anything queued meanwhile.
            self._queue.extendleft(reversed(messages))
            self._trim()

    def _discard(self, message: OutboundMessage, reason: str) -> None:
        self._discarded += 1
        logger.error(
            "Discarding message %s for ticket %s after %d attempts: %s",
            message.message_id,
            message.ticket_id,
            message.attempts,
            reason,
        )
        if self._log:
            self._log.queue("discard", message.platform, len(self._queue),
                            message_id=message.message_id, ticket_id=message.ticket_id,
                            attempts=message.attempts, error=reason)

    async def clear(self, platform: str | None = None) -> int:
        async with self._lock:
            before = len(self._queue)
            if platform is None:
                self._queue.clear()
            else:
                self._queue = deque(m for m in self._queue if m.platform != platform)
            return before - len(self._queue)

    def stats(self) -> dict[str, int]:
        per_platform: dict[str, int] = {}
        for message in self._queue:
            per_platform[message.platform] = per_platform.get(message.platform, 0) + 1
        return {
            "size": len(self._queue),
            "max_size": self._max_size,
            "dropped": self._dropped,
            "delivered": self._delivered,
            "discarded": self._discarded,
            **{f"pending_{p}": n for p, n in per_platform.items()},
        }
