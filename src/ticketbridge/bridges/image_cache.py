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
"""Byte-bounded TTL cache for relayed images.

Entries hold the downloaded buffer, the origin platform's native file
handle, or both. A buffer lets the bridge re-upload without downloading
again; a native handle lets it re-send to the origin without uploading at
all. The cache never holds more than ``max_bytes`` of buffers, and no entry
is served past its TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("ticketbridge.bridges.image_cache")

DEFAULT_TTL = 24 * 60 * 60
DEFAULT_MAX_BYTES = 500 * 1024 * 1024


@dataclass
class CacheEntry:
    """One cached image."""

    key: str
    buffer: bytes | None = None
    native_handle: str | None = None
    size: int = 0
    timestamp: float = 0.0


class ImageCache:
    """TTL + total-size bounded image cache.

    Args:
        ttl: Seconds an entry stays valid after it was stored.
        max_bytes: Upper bound on the sum of cached buffer sizes.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._max_bytes = max_bytes
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._current_bytes = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._rejected = 0
        self._evicted = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self._ttl

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._current_bytes -= entry.size

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for ``key``, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._expired(entry, self._clock()):
                self._remove(key)
                self._misses += 1
                return None
            self._hits += 1
            return entry

    def put(self, key: str, buffer: bytes | None = None, native_handle: str | None = None) -> bool:
        """Store a buffer and/or native handle under ``key``.

        Fields not given keep the value already cached for ``key``. Returns
        False, and caches nothing, when the buffer cannot fit even after an
        eviction pass.
        """
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if existing is not None and self._expired(existing, now):
                self._remove(key)
                existing = None

            if existing is not None:
                if buffer is None:
                    buffer = existing.buffer
                if native_handle is None:
                    native_handle = existing.native_handle

            size = len(buffer) if buffer is not None else 0
            if size > self._max_bytes:
                self._rejected += 1
                logger.warning(
                    "Image %s too large to cache (%d bytes, budget %d)", key, size, self._max_bytes
                )
                return False

            # The old copy of this key does not count against the new one.
            self._remove(key)
            if self._current_bytes + size > self._max_bytes:
                self._evict(now, needed=size)
            if self._current_bytes + size > self._max_bytes:
                self._rejected += 1
                logger.warning("Image cache full, could not store %s (%d bytes)", key, size)
                return False

            self._entries[key] = CacheEntry(
                key=key, buffer=buffer, native_handle=native_handle, size=size, timestamp=now
            )
            self._current_bytes += size
            return True

    def _evict(self, now: float, needed: int = 0) -> int:
        """Drop expired entries, then oldest ones until ``needed`` bytes fit."""
        removed = 0
        for key, entry in list(self._entries.items()):
            if self._expired(entry, now):
                self._remove(key)
                removed += 1

        if self._current_bytes + needed > self._max_bytes:
            for entry in sorted(self._entries.values(), key=lambda e: e.timestamp):
                if self._current_bytes + needed <= self._max_bytes:
                    break
                self._remove(entry.key)
                removed += 1

        self._evicted += removed
        return removed

    def sweep(self) -> int:
        """Run an eviction pass. Returns the number of entries removed."""
        with self._lock:
            removed = self._evict(self._clock())
        if removed:
            logger.info(
                "Image cache sweep removed %d entries (%d bytes in use)",
                removed,
                self._current_bytes,
            )
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._current_bytes = 0

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "bytes": self._current_bytes,
                "max_bytes": self._max_bytes,
                "hits": self._hits,
                "misses": self._misses,
                "rejected": self._rejected,
                "evicted": self._evicted,
            }
