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
Ticket Bridge -- Platform Interfaces

Abstract interfaces for the two sides of the bridge and the data classes
that travel between them. The customer side ("origin", Telegram) and the
staff side ("staff", Discord) each get an adapter implementing these.

Adapters do not talk to the store or to each other. They translate platform
events into InboundEvent objects and push them into the sink BridgeManager
hands them; BridgeManager decides what to do with each one.
"""

import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Any, Callable

ORIGIN = "origin"
STAFF = "staff"
PLATFORMS = (ORIGIN, STAFF)


def split_text(text: str, max_length: int, chunk_length: int) -> List[str]:
    """Split text longer than max_length into chunk_length pieces."""
    if len(text) <= max_length:
        return [text]
    return [text[i:i + chunk_length] for i in range(0, len(text), chunk_length)]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class MediaPayload:
    """An image travelling with a message."""
    source: str                      # "origin_file", "url" or "buffer"
    ref: str = ""                    # Origin file id or attachment URL
    data: Optional[bytes] = None     # Already-downloaded bytes
    filename: str = "photo.jpg"
    content_type: str = ""


@dataclass
class Attachment:
    """A file ready to upload."""
    filename: str
    data: bytes


@dataclass
class WebhookInfo:
    """A relay endpoint on the staff platform."""
    id: str
    url: str
    channel_id: str
    name: str = ""
    created_at: float = 0.0


@dataclass
class StaffAction:
    """A staff command invoked in a ticket channel."""
    name: str                        # claim, paid, close, reopen, ping, delete, info
    channel_id: str
    staff_user_id: str
    staff_name: str = ""
    args: List[str] = field(default_factory=list)


@dataclass
class InboundEvent:
    """A normalized platform event waiting on the ingestion queue."""
    platform: str                    # ORIGIN or STAFF
    kind: str                        # "message", "edit" or "action"
    user_id: str = ""
    display_name: str = ""
    text: str = ""
    chat_id: str = ""                # Origin chat or staff channel
    ticket_id: Optional[int] = None
    media: List[MediaPayload] = field(default_factory=list)
    action: Optional[StaffAction] = None
    avatar_url: str = ""
    received_at: float = field(default_factory=time.time)


@dataclass
class OutboundMessage:
    """A message waiting in the retry queue."""
    platform: str                    # Target platform
    ticket_id: int
    sender_name: str
    content: str
    media: Optional[MediaPayload] = None
    avatar_url: str = ""
    attempts: int = 0
    last_error: str = ""
    parts_sent: int = 0              # Text chunks already delivered
    enqueued_at: float = field(default_factory=time.time)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class ForwardOutcome(str, Enum):
    SENT = "sent"
    QUEUED = "queued"
    TICKET_PENDING = "ticket_pending"
    TICKET_CLOSED = "ticket_closed"
    DUPLICATE = "duplicate_message"
    VALIDATION_ERROR = "validation_error"
    BRIDGE_DISABLED = "bridge_disabled"


_USER_MESSAGES = {
    ForwardOutcome.SENT: "Message delivered.",
    ForwardOutcome.QUEUED: "The support team is temporarily unreachable. "
                           "Your message is queued and will be delivered shortly.",
    ForwardOutcome.TICKET_PENDING: "All support channels are busy. Your ticket is pending "
                                   "and your message will be delivered once a channel opens.",
    ForwardOutcome.TICKET_CLOSED: "This ticket is closed. Please open a new ticket.",
    ForwardOutcome.DUPLICATE: "You have sent this message too many times. It was not delivered.",
    ForwardOutcome.VALIDATION_ERROR: "Your message could not be delivered.",
    ForwardOutcome.BRIDGE_DISABLED: "Support is unavailable right now. Please try again later.",
}


@dataclass
class ForwardResult:
    """Outcome of one forward call."""
    outcome: ForwardOutcome
    ticket_id: Optional[int] = None
    platform: str = ""
    detail: str = ""
    message_id: str = ""             # Retry-queue id when queued

    @property
    def delivered(self) -> bool:
        return self.outcome == ForwardOutcome.SENT

    @property
    def user_message(self) -> str:
        """Human-readable acknowledgment for the sender."""
        text = _USER_MESSAGES[self.outcome]
        if self.outcome == ForwardOutcome.VALIDATION_ERROR and self.detail:
            text = f"{text} {self.detail}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ticket_id": self.ticket_id,
            "platform": self.platform,
            "detail": self.detail,
            "message_id": self.message_id,
        }


EventSink = Callable[[InboundEvent], None]


# =============================================================================
# PLATFORM INTERFACES
# =============================================================================

class PlatformClient(ABC):
    """
    Session lifecycle shared by both platforms.

    ConnectionSupervisor drives these four calls; nothing else should.
    """

    name: str = "platform"

    def __init__(self):
        self._sink: Optional[EventSink] = None

    def set_event_sink(self, sink: Optional[EventSink]):
        """Where inbound events go. Set by BridgeManager."""
        self._sink = sink

    def emit(self, event: InboundEvent):
        if self._sink is not None:
            self._sink(event)

    @abstractmethod
    async def connect(self):
        """Open a session and start receiving events."""
        ...

    @abstractmethod
    async def disconnect(self):
        """Close the session. Safe to call when not connected."""
        ...

    @abstractmethod
    async def check_alive(self) -> bool:
        """Cheap liveness check used by the heartbeat."""
        ...

    @abstractmethod
    async def cleanup_session(self):
        """Release a session another process may still hold."""
        ...


class OriginPlatform(PlatformClient):
    """Customer-facing platform (Telegram)."""

    name = ORIGIN
    # Longest text send_text delivers as a single message.
    max_text_length = 4096
    text_chunk_length = 4000

    @abstractmethod
    async def send_text(self, chat_id: str, text: str):
        ...

    @abstractmethod
    async def send_photo(self, chat_id: str, photo: Optional[bytes] = None,
                         caption: str = "", native_handle: Optional[str] = None) -> Optional[str]:
        """Send an image by bytes or by native handle. Returns the native handle."""
        ...

    @abstractmethod
    async def fetch_file(self, file_id: str) -> bytes:
        ...

    @abstractmethod
    async def get_chat_info(self, chat_id: str) -> Dict[str, Any]:
        ...


class StaffPlatform(PlatformClient):
    """Staff-facing platform (Discord)."""

    name = STAFF

    @abstractmethod
    async def post_message(self, channel_id: str, content: str = "",
                           embeds: Optional[List[Dict[str, Any]]] = None,
                           role_ids: Optional[List[str]] = None):
        """Post as the bot itself. ``role_ids`` are the roles allowed to be pinged."""
        ...

    @abstractmethod
    async def create_channel(self, parent_id: str, name: str) -> str:
        """Create a text channel under a container. Returns the channel id."""
        ...

    @abstractmethod
    async def move_channel(self, channel_id: str, parent_id: str):
        ...

    @abstractmethod
    async def list_webhooks(self, channel_id: str, name: str) -> List[WebhookInfo]:
        ...

    @abstractmethod
    async def create_webhook(self, channel_id: str, name: str) -> WebhookInfo:
        ...

    @abstractmethod
    async def delete_webhook(self, webhook: WebhookInfo):
        ...

    @abstractmethod
    async def send_via_webhook(self, webhook: WebhookInfo, content: str, username: str,
                               avatar_url: str = "",
                               attachments: Optional[List[Attachment]] = None):
        ...

    @abstractmethod
    async def fetch_attachment(self, url: str) -> bytes:
        ...
