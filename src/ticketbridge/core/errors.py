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
"""
Ticket Bridge -- Error taxonomy.

Every failure the bridge can raise derives from BridgeError. Components
raise these internally; BridgeManager converts per-message failures into
ForwardResult outcomes so only platform-wide startup problems escape.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base error for the bridge.

    Attributes:
        context: Where the error happened (component or operation name).
        code: Optional machine-readable code (platform error code, HTTP status).
        details: Free-form diagnostic fields, logged alongside the error.
    """

    def __init__(
        self,
        message: str,
        context: str = "",
        code: str | int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "code": self.code,
            "details": self.details,
        }


class PlatformUnavailableError(BridgeError):
    """A platform session is down, unreachable, or timed out."""


class RateLimitedError(BridgeError):
    """A rate-limit wait expired, or the platform answered 429."""

    def __init__(self, message: str, retry_after: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class SessionConflictError(PlatformUnavailableError):
    """Another process is polling with the same credentials (HTTP 409)."""


class ValidationError(BridgeError, ValueError):
    """Input or state is not acceptable; retrying will not help."""


class ResourceExhaustedError(BridgeError):
    """A bounded structure (queue, cache, pool) had no room."""


class ChannelCapacityError(ResourceExhaustedError):
    """The staff container cannot hold another ticket channel."""


class ChannelMissingError(BridgeError):
    """The staff channel referenced by a ticket no longer exists."""


class DeliveryDeferred(BridgeError):
    """A queued message cannot be delivered yet; keep it without counting an attempt."""


class BridgeStartupError(BridgeError):
    """Neither platform could be started."""


class BridgeDisabledError(BridgeError):
    """The bridge is disabled after a failed startup."""


def is_channel_capacity_message(text: str) -> bool:
    """True if a platform error message reports the per-container channel cap."""
    lowered = (text or "").lower()
    return "maximum number of channels in category" in lowered or "channel limit" in lowered
