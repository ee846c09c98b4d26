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
"""Image handling for relayed messages.

Downloads images from either platform, validates their size, and keeps
them in the ImageCache so a picture is fetched at most once per TTL. When
an image goes to the origin platform, the native file handle it returns is
cached under the source URL, letting later re-sends skip the upload.
"""

from __future__ import annotations

import asyncio
import logging
import re

from ticketbridge.bridges.base import MediaPayload, OriginPlatform, StaffPlatform
from ticketbridge.bridges.image_cache import ImageCache
from ticketbridge.core.errors import PlatformUnavailableError, ValidationError

logger = logging.getLogger("ticketbridge.bridges.media")

MIN_IMAGE_BYTES = 32
MAX_IMAGE_BYTES = 10 * 1024 * 1024

IMAGE_URL_RE = re.compile(r"https?://\S+?\.(?:jpe?g|png|gif)(?:\?\S*)?(?=\s|$)", re.IGNORECASE)


def extract_image_url(text: str) -> tuple[str | None, str]:
    """Split the first image URL out of ``text``. Returns (url, remaining text)."""
    match = IMAGE_URL_RE.search(text or "")
    if not match:
        return None, text
    remaining = (text[: match.start()] + text[match.end():]).strip()
    return match.group(0), remaining


class MediaProcessor:
    """Fetch, validate and cache images.

    Args:
        cache: Shared image cache.
        min_bytes, max_bytes: Accepted image size range.
        timeout: Seconds allowed for one download.
    """

    def __init__(
        self,
        cache: ImageCache,
        min_bytes: int = MIN_IMAGE_BYTES,
        max_bytes: int = MAX_IMAGE_BYTES,
        timeout: float = 30.0,
    ) -> None:
        self.cache = cache
        self._min_bytes = min_bytes
        self._max_bytes = max_bytes
        self._timeout = timeout

    def validate(self, data: bytes | None, source: str = "") -> bytes:
        if not data:
            raise ValidationError(f"Empty image from {source or 'unknown source'}", context="media")
        size = len(data)
        if size < self._min_bytes:
            raise ValidationError(
                f"Image too small ({size} bytes)", context="media", details={"source": source}
            )
        if size > self._max_bytes:
            raise ValidationError(
                f"Image too large ({size} bytes, limit {self._max_bytes})",
                context="media",
                details={"source": source},
            )
        return data

    @staticmethod
    def cache_key(media: MediaPayload) -> str:
        if media.source == "origin_file":
            return f"origin_{media.ref}"
        if media.source == "url":
            return f"staff_{media.ref}"
        return ""

    async def load(
        self,
        media: MediaPayload,
        origin: OriginPlatform | None = None,
        staff: StaffPlatform | None = None,
    ) -> bytes:
        """Return validated image bytes for ``media``, downloading on a cache miss."""
        if media.data is not None:
            return self.validate(media.data, media.source)

        key = self.cache_key(media)
        if not key:
            raise ValidationError(f"Unknown media source {media.source!r}", context="media")

        entry = self.cache.get(key)
        if entry is not None and entry.buffer is not None:
            return entry.buffer

        try:
            if media.source == "origin_file":
                if origin is None:
                    raise PlatformUnavailableError("Origin platform not available", context="media")
                data = await asyncio.wait_for(origin.fetch_file(media.ref), self._timeout)
            else:
                if staff is None:
                    raise PlatformUnavailableError("Staff platform not available", context="media")
                data = await asyncio.wait_for(staff.fetch_attachment(media.ref), self._timeout)
        except asyncio.TimeoutError as exc:
            raise PlatformUnavailableError(
                f"Timed out downloading {media.source} image", context="media"
            ) from exc

        data = self.validate(data, media.source)
        self.cache.put(key, buffer=data)
        return data

    def native_handle_for(self, url: str) -> str | None:
        """Origin-side file handle previously returned for an image URL."""
        entry = self.cache.get(url)
        return entry.native_handle if entry is not None else None

    def remember_native_handle(self, url: str, handle: str | None, data: bytes | None = None) -> None:
        if handle:
            self.cache.put(url, buffer=data, native_handle=handle)
