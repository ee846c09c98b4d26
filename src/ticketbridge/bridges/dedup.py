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
"""Bounded-repeat message deduplication.

The same content sent to the same ticket on the same platform is accepted up
to ``max_duplicates`` times inside the window, then rejected. This stops
loops and accidental floods without blocking a customer who legitimately
types "ok" twice.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("ticketbridge.bridges.dedup")


@dataclass
class DedupRecord:
    platform: str
    ticket_id: int
    fingerprint: str
    counter: int
    last_seen: float


def fingerprint(content: str, extra: str = "") -> str:
    """Short, fast content hash. Not meant to resist collisions on purpose."""
    digest = hashlib.md5(f"{content}\x00{extra}".encode("utf-8"), usedforsecurity=False)
    return digest.hexdigest()[:16]


class MessageDeduplicator:
    """Counts identical messages per (platform, ticket, content).

    Args:
        max_duplicates: Identical messages accepted per window.
        window: Seconds after the last accepted copy before a record expires.
        max_entries: High-water mark that triggers cleanup.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        max_duplicates: int = 10,
        window: float = 600.0,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_duplicates < 1:
            raise ValueError("max_duplicates must be at least 1")
        self._max_duplicates = max_duplicates
        self._window = window
        self._max_entries = max_entries
        self._low_water = max(1, int(max_entries * 0.9))
        self._clock = clock
        self._records: dict[tuple[str, int, str], DedupRecord] = {}
        self._lock = threading.Lock()
        self._rejected = 0

    def __len__(self) -> int:
        return len(self._records)

    def should_accept(self, platform: str, ticket_id: int, content: str, extra: str = "") -> bool:
        """Record one occurrence and decide whether it may be relayed."""
        key = (platform, ticket_id, fingerprint(content, extra))
        with self._lock:
            now = self._clock()
            record = self._records.get(key)
            if record is not None and now - record.last_seen > self._window:
                del self._records[key]
                record = None

            if record is None:
                self._records[key] = DedupRecord(platform, ticket_id, key[2], 1, now)
                if len(self._records) > self._max_entries:
                    self._cleanup(now)
                return True

            if record.counter >= self._max_duplicates:
                # Rejections do not extend the record's life.
                self._rejected += 1
                logger.info(
                    "Duplicate limit reached for ticket %s on %s (%d copies)",
                    ticket_id,
                    platform,
                    record.counter,
                )
                return False

            record.counter += 1
            record.last_seen = now
            return True

    def _cleanup(self, now: float) -> None:
        for key, record in list(self._records.items()):
            if now - record.last_seen > self._window:
                del self._records[key]
        if len(self._records) > self._low_water:
            oldest = sorted(self._records.items(), key=lambda item: item[1].last_seen)
            for key, _record in oldest[: len(self._records) - self._low_water]:
                del self._records[key]
        logger.debug("Dedup cleanup left %d records", len(self._records))

    def reset_ticket(self, ticket_id: int) -> int:
        """Forget every record for a ticket. Returns how many were removed."""
        with self._lock:
            keys = [k for k in self._records if k[1] == ticket_id]
            for key in keys:
                del self._records[key]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "records": len(self._records),
                "max_entries": self._max_entries,
                "max_duplicates": self._max_duplicates,
                "rejected": self._rejected,
            }
