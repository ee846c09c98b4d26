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
"""Relay webhook pool for the staff platform.

Messages from customers are posted into ticket channels through webhooks so
each one shows the customer's name instead of the bot's. Creating webhooks
is slow and tightly rate limited, so endpoints are leased per channel and
reused until they fail repeatedly or sit idle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from ticketbridge.bridges.base import Attachment, StaffPlatform, WebhookInfo
from ticketbridge.bridges.limiter import TokenBucketLimiter

logger = logging.getLogger("ticketbridge.bridges.webhook_pool")


@dataclass
class WebhookLease:
    """A cached relay endpoint for one channel."""

    channel_id: str
    webhook: WebhookInfo
    last_used: float
    failures: int = 0
    discarded: bool = False


class WebhookPool:
    """Per-channel cache of relay webhooks.

    Args:
        staff: Staff platform used to list, create and delete webhooks.
        limiter: Shared limiter; lookups and creation take ``webhook`` tokens.
        max_failures: Consecutive failures that retire a lease.
        idle_timeout: Seconds without use before a lease is swept.
        max_per_channel: Relay webhooks tolerated on one channel.
        relay_name: Name that marks a webhook as ours.
    """

    def __init__(
        self,
        staff: StaffPlatform,
        limiter: TokenBucketLimiter,
        max_failures: int = 3,
        idle_timeout: float = 1800.0,
        max_per_channel: int = 5,
        relay_name: str = "Message Relay",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.staff = staff
        self._limiter = limiter
        self._max_failures = max_failures
        self._idle_timeout = idle_timeout
        self._max_per_channel = max_per_channel
        self._relay_name = relay_name
        self._clock = clock
        self._leases: dict[str, WebhookLease] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._retired_leases: list[WebhookLease] = []
        self._created = 0
        self._retired = 0

    def __len__(self) -> int:
        return len(self._leases)

    def _channel_lock(self, channel_id: str) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    def _usable(self, lease: WebhookLease, now: float) -> bool:
        return (
            not lease.discarded
            and lease.failures < self._max_failures
            and now - lease.last_used < self._idle_timeout
        )

    async def lease_for(self, channel_id: str) -> WebhookLease:
        """Return a usable lease for ``channel_id``, discovering or creating one."""
        async with self._channel_lock(channel_id):
            now = self._clock()
            lease = self._leases.get(channel_id)
            if lease is not None and self._usable(lease, now):
                lease.last_used = now
                return lease

            await self._limiter.acquire("webhook", channel_id)
            webhook = await self._discover(channel_id)
            if webhook is None:
                await self._limiter.acquire("webhook", channel_id)
                webhook = await self.staff.create_webhook(channel_id, self._relay_name)
                self._created += 1
                logger.info("Created relay webhook %s for channel %s", webhook.id, channel_id)

            lease = WebhookLease(channel_id=channel_id, webhook=webhook, last_used=self._clock())
            self._leases[channel_id] = lease
            return lease

    async def _discover(self, channel_id: str) -> WebhookInfo | None:
        """Reuse the newest relay webhook, deleting extras over the cap."""
        retired = {lease.webhook.id for lease in self._retired_leases}
        existing = [
            w for w in await self.staff.list_webhooks(channel_id, self._relay_name)
            if w.id not in retired
        ]
        existing.sort(key=lambda w: w.created_at)
        if len(existing) >= self._max_per_channel:
            excess = existing[: len(existing) - self._max_per_channel + 1]
            for webhook in excess:
                try:
                    await self.staff.delete_webhook(webhook)
                except Exception as exc:
                    logger.warning("Could not delete old webhook %s: %s", webhook.id, exc)
            existing = existing[len(excess):]
        return existing[-1] if existing else None

    def report_success(self, lease: WebhookLease) -> None:
        lease.failures = 0
        lease.last_used = self._clock()

    def report_failure(self, lease: WebhookLease) -> None:
        lease.failures += 1
        if lease.failures >= self._max_failures and not lease.discarded:
            lease.discarded = True
            self._retired += 1
            if self._leases.get(lease.channel_id) is lease:
                del self._leases[lease.channel_id]
            self._retired_leases.append(lease)
            logger.warning(
                "Retired webhook %s for channel %s after %d failures",
                lease.webhook.id,
                lease.channel_id,
                lease.failures,
            )

    async def send(
        self,
        channel_id: str,
        content: str,
        username: str,
        avatar_url: str = "",
        attachments: list[Attachment] | None = None,
    ) -> None:
        """Post through the channel's relay webhook, tracking the outcome."""
        lease = await self.lease_for(channel_id)
        await self._limiter.acquire("global")
        try:
            await self.staff.send_via_webhook(
                lease.webhook, content, username, avatar_url=avatar_url, attachments=attachments
            )
        except Exception:
            self.report_failure(lease)
            raise
        self.report_success(lease)

    def forget(self, channel_id: str) -> None:
        """Drop a channel's lease without touching the platform."""
        self._leases.pop(channel_id, None)

    async def sweep(self) -> int:
        """Evict idle or retired leases and delete their webhooks.

        Returns the number of leases removed.
        """
        now = self._clock()
        removed = 0
        retired, self._retired_leases = self._retired_leases, []
        for lease in retired:
            removed += 1
            try:
                await self.staff.delete_webhook(lease.webhook)
            except Exception as exc:
                logger.warning("Could not delete failed webhook %s: %s", lease.webhook.id, exc)
        for channel_id, lease in list(self._leases.items()):
            if self._usable(lease, now):
                continue
            async with self._channel_lock(channel_id):
                if self._leases.get(channel_id) is not lease:
                    continue
                del self._leases[channel_id]
                removed += 1
                try:
                    await self.staff.delete_webhook(lease.webhook)
                except Exception as exc:
                    logger.warning("Could not delete idle webhook %s: %s", lease.webhook.id, exc)
            self._locks.pop(channel_id, None)
        self._limiter.prune_idle()
        if removed:
            logger.info("Webhook sweep removed %d leases", removed)
        return removed

    def stats(self) -> dict[str, int]:
        return {
            "leases": len(self._leases),
            "created": self._created,
            "retired": self._retired,
        }
