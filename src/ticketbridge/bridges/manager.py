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
Ticket Bridge -- Bridge Manager

Owns both platform sessions and every shared structure (limiter, caches,
dedup, webhook pool, retry queue) and implements the relay:

    origin event --> ingestion queue --> forward_to_staff  --> webhook
    staff event  --> ingestion queue --> forward_to_origin --> bot message

Every forward writes a message record first, then tries one delivery. What
cannot be delivered now goes to the retry queue, which is drained whenever a
platform (re)connects and on a short timer. Callers get a ForwardResult;
only a startup where neither platform comes up raises.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from collections import Counter
from typing import Any, Callable

from ticketbridge.bridges.base import (
    ORIGIN,
    STAFF,
    Attachment,
    ForwardOutcome,
    ForwardResult,
    InboundEvent,
    MediaPayload,
    OriginPlatform,
    OutboundMessage,
    StaffPlatform,
    split_text,
)
from ticketbridge.bridges.commands import StaffCommandHandler
from ticketbridge.bridges.dedup import MessageDeduplicator
from ticketbridge.bridges.image_cache import ImageCache
from ticketbridge.bridges.intake import INTAKE_COMMANDS, TicketIntake
from ticketbridge.bridges.limiter import TokenBucketLimiter
from ticketbridge.bridges.media import MediaProcessor, extract_image_url
from ticketbridge.bridges.retry_queue import DrainReport, RetryQueue
from ticketbridge.bridges.supervisor import BackoffPolicy, ConnectionState, ConnectionSupervisor
from ticketbridge.bridges.webhook_pool import WebhookPool
from ticketbridge.core.config import BridgeSettings
from ticketbridge.core.errors import (
    BridgeDisabledError,
    BridgeStartupError,
    ChannelCapacityError,
    ChannelMissingError,
    DeliveryDeferred,
    ValidationError,
    is_channel_capacity_message,
)
from ticketbridge.store.base import (
    Category,
    MessageRecord,
    Ticket,
    TicketStatus,
    TicketStore,
    can_transition,
)

logger = logging.getLogger("ticketbridge.bridges.manager")


class BridgeManager:
    """
    Relay engine between the origin (customer) and staff platforms.

    Args:
        origin: Customer-facing platform adapter.
        staff: Staff-facing platform adapter.
        store: Ticket persistence.
        settings: Tunables; defaults are production values.
        clock: Monotonic time source shared with the bounded structures.
        rng: Jitter source for reconnect backoff.
        log: BridgeLogger; the process-wide one is used when omitted.
    """

    def __init__(
        self,
        origin: OriginPlatform,
        staff: StaffPlatform,
        store: TicketStore,
        settings: BridgeSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
        log=None,
    ):
        self.settings = settings or BridgeSettings()
        self.store = store
        self._clock = clock
        self._rng = rng
        self._log = log
        if self._log is None:
            try:
                from ticketbridge.core.logging import get_logger

                self._log = get_logger()
            except OSError as exc:
                logger.warning("Live log unavailable: %s", exc)

        s = self.settings
        self.limiter = TokenBucketLimiter(
            s.rate_limits,
            clock=clock,
            default_timeout=s.rate_limit_wait_timeout,
            idle_timeout=s.rate_limit_idle_timeout,
        )
        self.image_cache = ImageCache(s.image_cache_ttl, s.image_cache_max_bytes, clock=clock)
        self.media = MediaProcessor(
            self.image_cache, s.min_image_bytes, s.max_image_bytes, timeout=s.send_timeout
        )
        self.dedup = MessageDeduplicator(
            s.max_duplicates_allowed, s.dedup_window_seconds, s.dedup_max_entries, clock=clock
        )
        self.retry_queue = RetryQueue(s.max_retry_queue_size, s.max_retry_attempts, log=self._log)
        self._send_backoff = BackoffPolicy(s.send_backoff_initial, s.send_backoff_max, 2.0, 0.0)

        self.origin = origin
        self.staff = staff
        self.webhooks = self._make_webhook_pool(staff)
        self.origin_supervisor = self._make_supervisor(origin, "Telegram")
        self.staff_supervisor = self._make_supervisor(staff, "Discord")
        origin.set_event_sink(self.submit)
        staff.set_event_sink(self.submit)

        self.commands = StaffCommandHandler(self)
        self.intake = TicketIntake(self, s.intake_timeout, clock=clock)

        self._events: asyncio.Queue[InboundEvent] = asyncio.Queue()
        self._retry_wakeup = asyncio.Event()
        self._restart_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []
        self._send_failures = {ORIGIN: 0, STAFF: 0}
        self._outcomes: Counter = Counter()
        self._active_tickets: dict[str, int] = {}
        self._role_cache: dict[int, str] = {}
        self._channel_locks: dict[int, asyncio.Lock] = {}
        self._started_at: float | None = None
        self._running = False
        self._disabled_reason = ""

    # =========================================================================
    # Construction helpers
    # =========================================================================

    def _make_supervisor(self, platform, label: str) -> ConnectionSupervisor:
        s = self.settings
        supervisor = ConnectionSupervisor(
            platform,
            label,
            BackoffPolicy(s.backoff_initial, s.backoff_max, s.backoff_factor, s.backoff_jitter),
            heartbeat_interval=s.heartbeat_interval,
            max_failed_heartbeats=s.max_failed_heartbeats,
            max_reconnect_attempts=s.max_reconnect_attempts,
            session_conflict_cooldown=s.session_conflict_cooldown,
            connect_timeout=s.connect_timeout,
            start_timeout=s.start_timeout,
            clock=self._clock,
            rng=self._rng,
            log=self._log,
        )
        supervisor.add_listener(self._on_state_change)
        return supervisor

    def _make_webhook_pool(self, staff: StaffPlatform) -> WebhookPool:
        s = self.settings
        return WebhookPool(
            staff,
            self.limiter,
            max_failures=s.webhook_max_failures,
            idle_timeout=s.webhook_idle_timeout,
            max_per_channel=s.max_webhooks_per_channel,
            relay_name=s.relay_webhook_name,
            clock=self._clock,
        )

    def _supervisor(self, platform: str) -> ConnectionSupervisor:
        return self.origin_supervisor if platform == ORIGIN else self.staff_supervisor

    def _on_state_change(self, state: ConnectionState, supervisor: ConnectionSupervisor) -> None:
        if state == ConnectionState.CONNECTED:
            if self._disabled_reason:
                # A start that outlived start_timeout finished in the background.
                logger.info("%s connected after a failed start, re-enabling the bridge",
                            supervisor.label)
                self._mark_running()
            self._retry_wakeup.set()

    @property
    def log(self):
        return self._log

    @property
    def enabled(self) -> bool:
        return not self._disabled_reason

    @property
    def running(self) -> bool:
        return self._running

    def _require_enabled(self) -> None:
        if self._disabled_reason:
            raise BridgeDisabledError(self._disabled_reason, context="bridge")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> bool:
        """Start both platforms. Succeeds if at least one comes up.

        Raises:
            BridgeStartupError: Neither platform could be started. The bridge
                stays disabled until a successful restart.
        """
        if self._running:
            return True

        results = await asyncio.gather(
            self.origin_supervisor.start(),
            self.staff_supervisor.start(),
            return_exceptions=True,
        )
        origin_ok = results[0] is True
        staff_ok = results[1] is True

        if not origin_ok and not staff_ok:
            details = {
                ORIGIN: str(results[0]) if isinstance(results[0], BaseException)
                else self.origin_supervisor.last_error,
                STAFF: str(results[1]) if isinstance(results[1], BaseException)
                else self.staff_supervisor.last_error,
            }
            self._disabled_reason = "Neither platform could be started"
            if self._log:
                self._log.error("Bridge", self._disabled_reason, **details)
            raise BridgeStartupError(self._disabled_reason, context="start", details=details)

        if not (origin_ok and staff_ok):
            logger.warning(
                "Bridge running degraded: origin=%s staff=%s", origin_ok, staff_ok
            )
        self._mark_running()
        if self._log:
            self._log.startup(origin=origin_ok, staff=staff_ok)
        return True

    def _mark_running(self) -> None:
        self._disabled_reason = ""
        if self._running:
            return
        self._running = True
        self._started_at = self._clock()
        s = self.settings
        self._tasks = [
            asyncio.create_task(self._ingest_loop(), name="bridge-ingest"),
            asyncio.create_task(self._retry_loop(), name="bridge-retry"),
            asyncio.create_task(
                self._periodic("image-sweep", s.image_cache_sweep_interval, self.image_cache.sweep),
                name="bridge-image-sweep",
            ),
            asyncio.create_task(
                self._periodic("webhook-sweep", s.webhook_sweep_interval, self.webhooks_sweep),
                name="bridge-webhook-sweep",
            ),
            asyncio.create_task(
                self._periodic("pending-retry", s.pending_retry_interval,
                               self.retry_pending_tickets),
                name="bridge-pending-retry",
            ),
            asyncio.create_task(
                self._periodic("health", s.health_check_interval, self._log_health),
                name="bridge-health",
            ),
        ]

    async def stop(self) -> None:
        """Stop background work and both sessions."""
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(
            self.origin_supervisor.stop(), self.staff_supervisor.stop(), return_exceptions=True
        )
        await self.limiter.close()
        if self._log:
            self._log.shutdown(queued=len(self.retry_queue))

    async def restart(self) -> dict[str, bool]:
        """Restart both platforms (for example after a credential change)."""
        async with self._restart_lock:
            origin_ok, staff_ok = await asyncio.gather(
                self._restart_platform(ORIGIN), self._restart_platform(STAFF)
            )
        return {ORIGIN: origin_ok, STAFF: staff_ok}

    async def restart_origin(self, platform: OriginPlatform | None = None) -> bool:
        async with self._restart_lock:
            return await self._restart_platform(ORIGIN, platform)

    async def restart_staff(self, platform: StaffPlatform | None = None) -> bool:
        async with self._restart_lock:
            return await self._restart_platform(STAFF, platform)

    async def _restart_platform(self, target: str, platform=None) -> bool:
        old = self._supervisor(target)
        logger.info("Restarting %s", old.label)
        await old.stop()
        # Give the platform time to release the old session.
        await asyncio.sleep(self.settings.restart_cooldown)

        if platform is None:
            platform = old.platform
        else:
            old.platform.set_event_sink(None)
            platform.set_event_sink(self.submit)
        supervisor = self._make_supervisor(platform, old.label)
        if target == ORIGIN:
            self.origin = platform
            self.origin_supervisor = supervisor
        else:
            if platform is not self.staff:
                self.webhooks = self._make_webhook_pool(platform)
            self.staff = platform
            self.staff_supervisor = supervisor

        ok = await supervisor.start()
        if ok:
            self._mark_running()
        else:
            logger.error("%s did not come back after restart: %s", old.label, supervisor.last_error)
        return ok

    def health_check(self) -> dict[str, Any]:
        """Connection status of both platforms and bridge uptime. Never raises."""
        try:
            uptime = self._clock() - self._started_at if self._started_at is not None else 0.0
            return {
                "origin_platform": self.origin_supervisor.is_connected,
                "staff_platform": self.staff_supervisor.is_connected,
                "uptime_seconds": round(uptime, 3),
            }
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            return {"origin_platform": False, "staff_platform": False, "uptime_seconds": 0.0}

    # =========================================================================
    # Background loops
    # =========================================================================

    def submit(self, event: InboundEvent) -> None:
        """Queue an inbound platform event. Called by the adapters."""
        self._events.put_nowait(event)

    async def _ingest_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Failed to handle %s event: %s", event.platform, exc)
            finally:
                self._events.task_done()

    async def _retry_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(
                    self._retry_wakeup.wait(), timeout=self.settings.retry_drain_interval
                )
            except asyncio.TimeoutError:
                pass
            self._retry_wakeup.clear()
            try:
                await self.drain_retry_queue()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Retry drain failed: %s", exc)

    async def _periodic(self, name: str, interval: float, action: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                result = action()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Periodic task %s failed: %s", name, exc)

    async def webhooks_sweep(self) -> int:
        return await self.webhooks.sweep()

    def _log_health(self) -> None:
        health = self.health_check()
        for target, key in ((ORIGIN, "origin_platform"), (STAFF, "staff_platform")):
            supervisor = self._supervisor(target)
            if not health[key] and supervisor.state == ConnectionState.DISCONNECTED:
                logger.error(
                    "%s is down and needs a restart: %s", supervisor.label, supervisor.last_error
                )
        if self._log:
            self._log.info("Bridge", "Health check", **health)

    async def drain_retry_queue(self, platform: str | None = None) -> dict[str, DrainReport]:
        """Deliver queued messages to every connected platform."""
        reports = {}
        for target in (platform,) if platform else (ORIGIN, STAFF):
            if not self._supervisor(target).is_connected:
                continue
            if not self.retry_queue.pending(target):
                continue
            reports[target] = await self.retry_queue.drain(target, self._deliver_queued)
        return reports

    async def _deliver_queued(self, message: OutboundMessage) -> None:
        ticket = await self.store.get_ticket(message.ticket_id)
        if ticket is None:
            raise ValidationError(f"Ticket {message.ticket_id} no longer exists")
        if ticket.is_terminal:
            raise ValidationError(f"Ticket {ticket.id} is {ticket.status.value}")
        if message.platform == STAFF and not ticket.staff_channel_id:
            raise DeliveryDeferred(f"Ticket {ticket.id} has no staff channel yet")
        try:
            await asyncio.wait_for(self._deliver(message, ticket), self.settings.send_timeout)
        except Exception as exc:
            self._send_failures[message.platform] += 1
            if self._log:
                self._log.relay(message.platform, ticket.id, "retry_failed", error=str(exc))
            raise
        self._send_failures[message.platform] = 0
        if self._log:
            self._log.relay(message.platform, ticket.id, "sent", retried=True,
                            message_id=message.message_id)

    # =========================================================================
    # Inbound events
    # =========================================================================

    async def handle_event(self, event: InboundEvent) -> ForwardResult | str | None:
        """Route one normalized platform event."""
        if event.platform == ORIGIN:
            return await self._handle_origin_event(event)
        if event.kind == "action" and event.action is not None:
            reply = await self.commands.handle(event.action)
            await self._reply_staff(event.action.channel_id, reply)
            return reply
        return await self._handle_staff_event(event)

    async def _handle_origin_event(self, event: InboundEvent) -> ForwardResult | str | None:
        if event.kind == "command":
            reply = await self._handle_origin_command(event)
            await self._reply_origin(event.chat_id, reply)
            return reply

        if self.intake.active(event.user_id):
            reply = await self.intake.handle_reply(event)
            await self._reply_origin(event.chat_id, reply)
            return reply

        ticket_id = event.ticket_id or await self.resolve_active_ticket(event.user_id)
        if ticket_id is None:
            await self._reply_origin(
                event.chat_id, "You have no open ticket. Use /start to open one."
            )
            return None

        media_items: list[MediaPayload | None] = list(event.media) or [None]
        result = None
        for index, media in enumerate(media_items):
            text = event.text if index == 0 else ""
            result = await self.forward_to_staff(
                text, ticket_id, event.display_name, media, avatar_url=event.avatar_url
            )
            if not result.delivered:
                await self._reply_origin(event.chat_id, result.user_message)
        return result

    async def _handle_staff_event(self, event: InboundEvent) -> ForwardResult | None:
        ticket = await self.store.get_ticket_by_channel(event.chat_id)
        if ticket is None:
            return None
        text = event.text
        if event.kind == "edit" and text:
            text = f"(edited) {text}"

        media_items: list[MediaPayload | None] = list(event.media) or [None]
        result = None
        for index, media in enumerate(media_items):
            result = await self.forward_to_origin(
                text if index == 0 else "", ticket.id, event.display_name, media
            )
            if not result.delivered:
                logger.warning(
                    "Staff message for ticket %s not delivered: %s %s",
                    ticket.id,
                    result.outcome.value,
                    result.detail,
                )
        return result

    async def _handle_origin_command(self, event: InboundEvent) -> str:
        """/start, /cancel, /tickets, /switch <id> and /ping from a customer."""
        parts = event.text.split()
        command = parts[0].lstrip("/").split("@")[0].lower() if parts else ""
        if command in INTAKE_COMMANDS:
            if command == "start":
                return await self.intake.start(event)
            return self.intake.cancel(event.user_id)

        user = await self.store.get_user_by_origin_id(event.user_id)
        if user is None:
            return "You have no tickets yet. Use /start to open one."

        if command == "tickets":
            tickets = [t for t in await self.store.get_tickets_by_user(user.id) if not t.is_terminal]
            if not tickets:
                return "You have no open tickets."
            active = await self.resolve_active_ticket(event.user_id)
            lines = [
                f"#{t.id} ({t.status.value}){' <- active' if t.id == active else ''}"
                for t in tickets
            ]
            return "Your open tickets:\n" + "\n".join(lines)

        if command == "switch":
            try:
                ticket_id = int(parts[1].lstrip("#"))
            except (IndexError, ValueError):
                return "Usage: /switch <ticket number>"
            try:
                await self.set_active_ticket(event.user_id, ticket_id)
            except ValidationError as exc:
                return exc.message
            return f"Now talking in ticket #{ticket_id}."

        if command == "ping":
            ticket_id = await self.resolve_active_ticket(event.user_id)
            if ticket_id is None:
                return "You have no open ticket."
            result = await self.forward_ping_to_staff(ticket_id, event.display_name or user.name)
            return "🔔 Staff pinged." if result.delivered else result.user_message

        return f"Unknown command: {command}"

    async def resolve_active_ticket(self, origin_user_id: str) -> int | None:
        """Ticket an origin user is currently talking in, if any."""
        cached = self._active_tickets.get(str(origin_user_id))
        if cached is not None:
            ticket = await self.store.get_ticket(cached)
            if ticket is not None and not ticket.is_terminal:
                return cached
            self._active_tickets.pop(str(origin_user_id), None)

        user = await self.store.get_user_by_origin_id(str(origin_user_id))
        if user is None:
            return None
        tickets = [t for t in await self.store.get_tickets_by_user(user.id) if not t.is_terminal]
        if not tickets:
            return None
        ticket = max(tickets, key=lambda t: t.id)
        self._active_tickets[str(origin_user_id)] = ticket.id
        return ticket.id

    async def set_active_ticket(self, origin_user_id: str, ticket_id: int) -> None:
        """Switch the ticket an origin user's messages go to and tell staff."""
        ticket = await self._require_ticket(ticket_id)
        if ticket.is_terminal:
            raise ValidationError(f"Ticket #{ticket_id} is {ticket.status.value}")
        user = await self.store.get_user(ticket.user_id)
        if user is None or user.origin_id != str(origin_user_id):
            raise ValidationError(f"Ticket #{ticket_id} does not belong to this user")
        self._active_tickets[str(origin_user_id)] = ticket_id
        if ticket.staff_channel_id:
            await self.send_system_message_to_staff(
                ticket.staff_channel_id, f"ℹ️ {user.name} switched to this ticket."
            )

    async def _reply_origin(self, chat_id: str, text: str) -> None:
        if not chat_id or not self.origin_supervisor.is_connected:
            return
        try:
            await self.origin.send_text(chat_id, text)
        except Exception as exc:
            logger.warning("Could not acknowledge origin chat %s: %s", chat_id, exc)

    async def _reply_staff(self, channel_id: str, text: str) -> None:
        if not text or not self.staff_supervisor.is_connected:
            return
        try:
            await self.limiter.acquire("global")
            await self.staff.post_message(channel_id, text)
        except Exception as exc:
            logger.warning("Could not reply in staff channel %s: %s", channel_id, exc)

    # =========================================================================
    # Forwarding
    # =========================================================================

    async def forward_to_staff(
        self,
        content: str,
        ticket_id: int,
        sender_name: str,
        media: MediaPayload | None = None,
        avatar_url: str = "",
    ) -> ForwardResult:
        """Relay a customer message into the ticket's staff channel."""
        return await self._forward(STAFF, content, ticket_id, sender_name, media, avatar_url)

    async def forward_to_origin(
        self,
        content: str,
        ticket_id: int,
        sender_name: str,
        media: MediaPayload | None = None,
    ) -> ForwardResult:
        """Relay a staff message to the ticket's customer."""
        return await self._forward(ORIGIN, content, ticket_id, sender_name, media)

    async def forward_ping_to_origin(self, ticket_id: int, staff_name: str) -> ForwardResult:
        return await self._forward(
            ORIGIN, f"🔔 You were pinged in ticket #{ticket_id}.", ticket_id, staff_name, None
        )

    async def forward_ping_to_staff(self, ticket_id: int, origin_username: str) -> ForwardResult:
        ticket = await self.store.get_ticket(ticket_id)
        mention = f"<@{ticket.claimed_by}> " if ticket is not None and ticket.claimed_by else ""
        return await self._forward(
            STAFF, f"🔔 {mention}You were pinged by {origin_username}.", ticket_id,
            origin_username, None,
        )

    async def _forward(
        self,
        target: str,
        content: str,
        ticket_id: int,
        sender_name: str,
        media: MediaPayload | None,
        avatar_url: str = "",
    ) -> ForwardResult:
        content = content or ""
        if not self.enabled:
            return self._result(ForwardOutcome.BRIDGE_DISABLED, ticket_id, target,
                                self._disabled_reason)
        if not content.strip() and media is None:
            return self._result(ForwardOutcome.VALIDATION_ERROR, ticket_id, target, "Empty message")

        try:
            ticket = await self.store.get_ticket(ticket_id)
            if ticket is None:
                return self._result(ForwardOutcome.VALIDATION_ERROR, ticket_id, target,
                                    f"Ticket #{ticket_id} not found")
            if ticket.is_terminal:
                return self._result(ForwardOutcome.TICKET_CLOSED, ticket_id, target,
                                    ticket.status.value)

            extra = media.ref if media is not None else ""
            if not self.dedup.should_accept(target, ticket.id, content, extra):
                return self._result(ForwardOutcome.DUPLICATE, ticket_id, target)

            message = OutboundMessage(
                platform=target,
                ticket_id=ticket.id,
                sender_name=sender_name,
                content=content,
                media=media,
                avatar_url=avatar_url,
            )

            if target == STAFF and not ticket.staff_channel_id:
                if ticket.status != TicketStatus.PENDING:
                    return self._result(ForwardOutcome.VALIDATION_ERROR, ticket_id, target,
                                        "Ticket has no staff channel")
                await self._record(message, ticket)
                await self.retry_queue.enqueue(message)
                return self._result(ForwardOutcome.TICKET_PENDING, ticket_id, target,
                                    message_id=message.message_id)

            if target == ORIGIN:
                user = await self.store.get_user(ticket.user_id)
                if user is None or not user.origin_id:
                    return self._result(ForwardOutcome.VALIDATION_ERROR, ticket_id, target,
                                        "Ticket owner has no origin chat")

            await self._record(message, ticket)

            if not self._supervisor(target).is_connected:
                message.last_error = "platform unavailable"
                await self.retry_queue.enqueue(message)
                return self._result(ForwardOutcome.QUEUED, ticket_id, target,
                                    "platform unavailable", message.message_id)

            return await self._attempt(message, ticket)
        except Exception as exc:
            logger.exception("Forward to %s for ticket %s failed", target, ticket_id)
            return self._result(ForwardOutcome.VALIDATION_ERROR, ticket_id, target,
                                f"Internal error: {exc}")

    async def _attempt(self, message: OutboundMessage, ticket: Ticket) -> ForwardResult:
        target = message.platform
        failures = self._send_failures[target]
        if failures:
            await asyncio.sleep(self._send_backoff.base_delay(failures - 1))

        try:
            await asyncio.wait_for(self._deliver(message, ticket), self.settings.send_timeout)
        except ValidationError as exc:
            return self._result(ForwardOutcome.VALIDATION_ERROR, ticket.id, target, exc.message)
        except ChannelMissingError as exc:
            return self._result(ForwardOutcome.VALIDATION_ERROR, ticket.id, target,
                                f"Staff channel missing: {exc.message}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._send_failures[target] += 1
            message.last_error = str(exc) or type(exc).__name__
            await self.retry_queue.enqueue(message)
            return self._result(ForwardOutcome.QUEUED, ticket.id, target, message.last_error,
                                message.message_id)

        self._send_failures[target] = 0
        return self._result(ForwardOutcome.SENT, ticket.id, target, message_id=message.message_id)

    async def _record(self, message: OutboundMessage, ticket: Ticket) -> MessageRecord:
        source = ORIGIN if message.platform == STAFF else STAFF
        return await self.store.create_message(
            MessageRecord(
                ticket_id=ticket.id,
                content=message.content or "Image sent",
                platform=source,
                author_name=message.sender_name,
                author_id=ticket.user_id if source == ORIGIN else None,
                attachments=[message.media.ref] if message.media and message.media.ref else [],
            )
        )

    def _result(
        self,
        outcome: ForwardOutcome,
        ticket_id: int | None,
        target: str,
        detail: str = "",
        message_id: str = "",
    ) -> ForwardResult:
        self._outcomes[outcome.value] += 1
        if self._log:
            self._log.relay(target, ticket_id, outcome.value, detail=detail)
        return ForwardResult(outcome, ticket_id, target, detail, message_id)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _deliver(self, message: OutboundMessage, ticket: Ticket) -> None:
        if message.platform == STAFF:
            await self._deliver_to_staff(message, ticket)
        else:
            await self._deliver_to_origin(message, ticket)

    async def _deliver_to_staff(self, message: OutboundMessage, ticket: Ticket) -> None:
        channel_id = ticket.staff_channel_id
        attachments = None
        if message.media is not None:
            data = await self.media.load(message.media, origin=self.origin, staff=self.staff)
            attachments = [Attachment(message.media.filename, data)]
        try:
            await self.webhooks.send(
                channel_id,
                message.content,
                message.sender_name,
                avatar_url=message.avatar_url,
                attachments=attachments,
            )
        except ChannelMissingError:
            self.webhooks.forget(channel_id)
            raise

    async def _deliver_to_origin(self, message: OutboundMessage, ticket: Ticket) -> None:
        user = await self.store.get_user(ticket.user_id)
        if user is None or not user.origin_id:
            raise ValidationError("Ticket owner has no origin chat")
        chat_id = user.origin_id

        media = message.media
        text = message.content
        if media is None and text:
            url, remaining = extract_image_url(text)
            if url:
                media = MediaPayload(source="url", ref=url)
                text = remaining

        if text:
            # A retry resumes after the chunks that already went out.
            parts = split_text(f"{message.sender_name}: {text}",
                               self.origin.max_text_length, self.origin.text_chunk_length)
            for part in parts[message.parts_sent:]:
                await self.origin.send_text(chat_id, part)
                message.parts_sent += 1
        if media is None:
            return

        caption = f"📷 Image from {message.sender_name}"
        handle = None
        if media.source == "origin_file":
            handle = media.ref
        elif media.source == "url":
            handle = self.media.native_handle_for(media.ref)
        if handle:
            try:
                await self.origin.send_photo(chat_id, caption=caption, native_handle=handle)
                return
            except Exception as exc:
                logger.warning("Cached photo handle rejected, uploading instead: %s", exc)

        data = await self.media.load(media, origin=self.origin, staff=self.staff)
        new_handle = await self.origin.send_photo(chat_id, photo=data, caption=caption)
        if media.source == "url":
            self.media.remember_native_handle(media.ref, new_handle)

    # =========================================================================
    # Ticket channels
    # =========================================================================

    async def _require_ticket(self, ticket_id: int) -> Ticket:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise ValidationError(f"Ticket #{ticket_id} not found")
        return ticket

    async def set_ticket_status(
        self, ticket: Ticket, status: TicketStatus, reopen: bool = False
    ) -> None:
        if not can_transition(ticket.status, status, reopen=reopen):
            raise ValidationError(
                f"Ticket #{ticket.id} cannot go from {ticket.status.value} to {status.value}"
            )
        await self.store.update_ticket_status(ticket.id, status)
        ticket.status = status

    async def create_ticket_channel(self, ticket: Ticket) -> str:
        """Create the staff channel for a ticket, post its summary, ping the role.

        A ticket that already has a channel keeps it; its handle is returned.

        Raises:
            ValidationError: Ticket finished, or category or owner missing.
            ChannelCapacityError: The category is full; the ticket is now pending.
        """
        self._require_enabled()
        lock = self._channel_locks.setdefault(ticket.id, asyncio.Lock())
        async with lock:
            stored = await self.store.get_ticket(ticket.id)
            if stored is not None:
                ticket.status = stored.status
                ticket.staff_channel_id = stored.staff_channel_id
            if ticket.is_terminal:
                raise ValidationError(f"Ticket #{ticket.id} is {ticket.status.value}")
            if ticket.staff_channel_id:
                return ticket.staff_channel_id
            return await self._create_channel(ticket)

    async def _create_channel(self, ticket: Ticket) -> str:
        if not ticket.category_id:
            raise ValidationError(f"Ticket #{ticket.id} has no category")
        category = await self.store.get_category(ticket.category_id)
        if category is None:
            raise ValidationError(f"Category {ticket.category_id} not found")
        user = await self.store.get_user(ticket.user_id)
        if user is None:
            raise ValidationError(f"User {ticket.user_id} not found")

        siblings = await self.store.get_tickets_by_category(category.id)
        number = sum(1 for t in siblings if t.id < ticket.id) + 1
        channel_name = f"{category.name.lower().replace(' ', '-')}-{number}"

        try:
            await self.limiter.acquire("channel_create", category.staff_parent_id or "global")
            channel_id = await self.staff.create_channel(category.staff_parent_id, channel_name)
        except ChannelCapacityError:
            await self._mark_pending(ticket, channel_name)
            raise
        except Exception as exc:
            if is_channel_capacity_message(str(exc)):
                await self._mark_pending(ticket, channel_name)
                raise ChannelCapacityError(
                    f"Category {category.name} is full", context="create_ticket_channel"
                ) from exc
            logger.error("Creating channel %s failed: %s", channel_name, exc)
            if ticket.status != TicketStatus.PENDING:
                await self.store.update_ticket_status(ticket.id, TicketStatus.OPEN)
                ticket.status = TicketStatus.OPEN
            raise

        await self.store.update_ticket_channel(ticket.id, channel_id)
        ticket.staff_channel_id = channel_id
        if ticket.status == TicketStatus.PENDING:
            await self.set_ticket_status(ticket, TicketStatus.OPEN)
        logger.info("Created channel %s (%s) for ticket %s", channel_name, channel_id, ticket.id)

        try:
            await self.limiter.acquire("global")
            await self.staff.post_message(channel_id, embeds=[self._summary_embed(ticket, category, user)])
            await self.ping_role_for_category(category, channel_id)
        except Exception as exc:
            logger.warning("Ticket %s summary/ping failed: %s", ticket.id, exc)

        # Messages queued while the ticket was pending can go now.
        self._retry_wakeup.set()
        return channel_id

    async def _mark_pending(self, ticket: Ticket, channel_name: str) -> None:
        logger.warning("No room for channel %s, ticket %s is pending", channel_name, ticket.id)
        await self.store.update_ticket_status(ticket.id, TicketStatus.PENDING)
        ticket.status = TicketStatus.PENDING

    async def retry_pending_tickets(self) -> int:
        """Try again to open channels for pending tickets. Returns how many opened.

        Tickets are tried oldest first; once a category reports it is full,
        its later tickets wait for the next pass.
        """
        if not self.enabled or not self.staff_supervisor.is_connected:
            return 0
        opened = 0
        full: set[int | None] = set()
        for ticket in await self.store.get_tickets_by_status(TicketStatus.PENDING):
            if ticket.staff_channel_id or ticket.category_id in full:
                continue
            try:
                await self.create_ticket_channel(ticket)
            except ChannelCapacityError:
                full.add(ticket.category_id)
            except Exception as exc:
                logger.warning("Pending ticket %s still has no channel: %s", ticket.id, exc)
            else:
                opened += 1
        if opened:
            logger.info("Opened channels for %d pending ticket(s)", opened)
        return opened

    @staticmethod
    def _summary_embed(ticket: Ticket, category: Category, user) -> dict[str, Any]:
        fields = [
            {
                "name": str(answer.get("question", ""))[:256] or "Question",
                "value": str(answer.get("answer", ""))[:1024] or "-",
                "inline": False,
            }
            for answer in ticket.answers[:25]
        ]
        return {
            "title": f"Ticket #{ticket.id}",
            "description": f"Service: {category.name}\nCustomer: {user.name}",
            "color": 0x5865F2,
            "fields": fields,
        }

    async def ping_role_for_category(self, category: Category, channel_id: str) -> bool:
        """Mention the category's staff role in a channel."""
        role_id = self._role_cache.get(category.id)
        if role_id is None:
            role_id = category.staff_role_id.replace("@", "").strip("<&> ")
            if not role_id:
                return False
            self._role_cache[category.id] = role_id
        await self.limiter.acquire("global")
        await self.staff.post_message(
            channel_id, f"<@&{role_id}> New {category.name} ticket!", role_ids=[role_id]
        )
        return True

    async def move_to_transcripts(self, ticket_id: int) -> TicketStatus:
        """Archive a ticket's channel and close the ticket."""
        self._require_enabled()
        ticket = await self._require_ticket(ticket_id)
        if not ticket.staff_channel_id:
            raise ValidationError(f"Ticket #{ticket_id} has no staff channel")
        category = await self.store.get_category(ticket.category_id) if ticket.category_id else None
        if category is None or not category.transcript_parent_id:
            raise ValidationError("No transcript category set for this service")

        channel_id = ticket.staff_channel_id
        try:
            await self.limiter.acquire("channel_edit", channel_id)
            await self.staff.move_channel(channel_id, category.transcript_parent_id)
        except ChannelMissingError:
            logger.warning("Channel %s for ticket %s is gone, closing", channel_id, ticket.id)
            await self._drop_channel(ticket)

        await self.set_ticket_status(ticket, TicketStatus.CLOSED)
        self.dedup.reset_ticket(ticket.id)
        self._channel_locks.pop(ticket.id, None)
        return ticket.status

    async def move_from_transcripts(self, ticket_id: int) -> TicketStatus:
        """Re-open an archived ticket by moving its channel back."""
        self._require_enabled()
        ticket = await self._require_ticket(ticket_id)
        if not can_transition(ticket.status, TicketStatus.OPEN, reopen=True):
            raise ValidationError(f"Ticket #{ticket_id} is {ticket.status.value} and cannot be re-opened")
        if not ticket.staff_channel_id:
            raise ValidationError(f"Ticket #{ticket_id} has no staff channel")
        category = await self.store.get_category(ticket.category_id) if ticket.category_id else None
        if category is None or not category.staff_parent_id:
            raise ValidationError("No active category set for this service")

        channel_id = ticket.staff_channel_id
        try:
            await self.limiter.acquire("channel_edit", channel_id)
            await self.staff.move_channel(channel_id, category.staff_parent_id)
        except ChannelMissingError:
            logger.warning("Channel %s for ticket %s is gone, staying closed", channel_id, ticket.id)
            await self._drop_channel(ticket)
            await self.set_ticket_status(ticket, TicketStatus.CLOSED)
            return ticket.status

        await self.set_ticket_status(ticket, TicketStatus.OPEN, reopen=True)
        return ticket.status

    async def _drop_channel(self, ticket: Ticket) -> None:
        if ticket.staff_channel_id:
            self.webhooks.forget(ticket.staff_channel_id)
        await self.store.update_ticket_channel(ticket.id, None)
        ticket.staff_channel_id = None

    # =========================================================================
    # System messages
    # =========================================================================

    async def send_system_message_to_staff(self, channel_id: str, text: str) -> bool:
        """Post a bridge notice into a staff channel under the system name."""
        try:
            await self.webhooks.send(channel_id, text, self.settings.system_display_name)
            return True
        except Exception as exc:
            logger.warning("System message to channel %s failed: %s", channel_id, exc)
            return False

    async def notify_origin_user(self, ticket: Ticket, text: str) -> bool:
        """Send a bridge notice to a ticket's customer. Best effort."""
        if not self.origin_supervisor.is_connected:
            logger.warning("Origin down, notice for ticket %s not sent", ticket.id)
            return False
        user = await self.store.get_user(ticket.user_id)
        if user is None or not user.origin_id:
            return False
        try:
            await self.origin.send_text(user.origin_id, text)
            return True
        except Exception as exc:
            logger.warning("Notice for ticket %s failed: %s", ticket.id, exc)
            return False

    # =========================================================================
    # Stats
    # =========================================================================

    def stats(self) -> dict[str, Any]:
        return {
            "health": self.health_check(),
            "enabled": self.enabled,
            "disabled_reason": self._disabled_reason,
            "outcomes": dict(self._outcomes),
            "send_failures": dict(self._send_failures),
            "platforms": {
                ORIGIN: self.origin_supervisor.status(),
                STAFF: self.staff_supervisor.status(),
            },
            "retry_queue": self.retry_queue.stats(),
            "image_cache": self.image_cache.stats(),
            "dedup": self.dedup.stats(),
            "webhooks": self.webhooks.stats(),
            "pending_events": self._events.qsize(),
        }
