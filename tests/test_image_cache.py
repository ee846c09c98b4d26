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
"""Tests for the byte-bounded image cache."""

from __future__ import annotations

import random

from fakes import FakeClock
from ticketbridge.bridges.image_cache import ImageCache


def _cache(ttl=100.0, max_bytes=100):
    clock = FakeClock()
    return ImageCache(ttl=ttl, max_bytes=max_bytes, clock=clock), clock


class TestImageCacheBasics:
    def test_put_and_get(self):
        cache, _ = _cache()
        assert cache.put("origin_abc", buffer=b"x" * 10) is True
        entry = cache.get("origin_abc")
        assert entry.buffer == b"x" * 10
        assert entry.size == 10
        assert cache.current_bytes == 10

    def test_miss_counts(self):
        cache, _ = _cache()
        assert cache.get("nope") is None
        assert cache.stats()["misses"] == 1

    def test_native_handle_only_entry_is_free(self):
        cache, _ = _cache()
        cache.put("https://cdn/a.png", native_handle="file-1")
        assert cache.current_bytes == 0
        assert cache.get("https://cdn/a.png").native_handle == "file-1"

    def test_put_merges_with_existing_entry(self):
        cache, _ = _cache()
        cache.put("k", buffer=b"y" * 20)
        cache.put("k", native_handle="file-9")
        entry = cache.get("k")
        assert entry.buffer == b"y" * 20
        assert entry.native_handle == "file-9"
        assert cache.current_bytes == 20

    def test_replacing_buffer_adjusts_size(self):
        cache, _ = _cache()
        cache.put("k", buffer=b"a" * 30)
        cache.put("k", buffer=b"b" * 10)
        assert cache.current_bytes == 10
        assert len(cache) == 1


class TestImageCacheBounds:
    def test_oldest_entry_evicted_to_fit(self):
        cache, clock = _cache(max_bytes=100)
        cache.put("a", buffer=b"a" * 60)
        clock.advance(1)
        cache.put("b", buffer=b"b" * 60)
        assert cache.get("a") is None
        assert cache.get("b") is not None
        assert cache.current_bytes == 60
        assert cache.stats()["evicted"] == 1

    def test_oversized_image_rejected(self):
        cache, _ = _cache(max_bytes=100)
        cache.put("small", buffer=b"s" * 50)
        assert cache.put("huge", buffer=b"h" * 101) is False
        assert cache.get("huge") is None
        assert cache.get("small") is not None
        assert cache.stats()["rejected"] == 1

    def test_total_bytes_never_exceed_budget(self):
        cache, clock = _cache(max_bytes=1000)
        rng = random.Random(7)
        for i in range(200):
            cache.put(f"k{i % 40}", buffer=b"z" * rng.randint(1, 400))
            clock.advance(rng.random())
            assert cache.current_bytes <= 1000
        assert cache.current_bytes == sum(e.size for e in cache._entries.values())


class TestImageCacheExpiry:
    def test_entry_expires_after_ttl(self):
        cache, clock = _cache(ttl=10.0)
        cache.put("k", buffer=b"x" * 5)
        clock.advance(10.5)
        assert cache.get("k") is None
        assert len(cache) == 0
        assert cache.current_bytes == 0

    def test_expired_entry_not_merged(self):
        cache, clock = _cache(ttl=10.0)
        cache.put("k", buffer=b"x" * 5)
        clock.advance(11)
        cache.put("k", native_handle="file-2")
        assert cache.get("k").buffer is None

    def test_sweep_removes_only_expired(self):
        cache, clock = _cache(ttl=10.0)
        cache.put("old", buffer=b"o" * 5)
        clock.advance(8)
        cache.put("new", buffer=b"n" * 5)
        clock.advance(3)
        assert cache.sweep() == 1
        assert cache.get("new") is not None
        assert cache.current_bytes == 5

    def test_clear(self):
        cache, _ = _cache()
        cache.put("k", buffer=b"x")
        cache.clear()
        assert len(cache) == 0
        assert cache.current_bytes == 0
