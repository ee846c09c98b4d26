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
Ticket Bridge -- Discord Staff Adapter

Staff side of the bridge: a discord.py client in the support guild. Every
ticket has its own text channel under the category's container; customer
messages arrive through relay webhooks so they show the customer's name.

Requirements:
    pip install discord.py>=2.0 httpx

Staff commands are typed in the ticket channel with a prefix, e.g.
``!claim``, ``!paid 25``, ``!close``.
"""

import asyncio
import io
from typing import Optional, Dict, List, Any

import httpx

from ticketbridge.bridges.base import (
    Attachment,
    InboundEvent,
    MediaPayload,
    StaffAction,
    StaffPlatform,
    WebhookInfo,
    STAFF,
)
from ticketbridge.bridges.commands import COMMANDS
from ticketbridge.core.errors import (
    BridgeError,
    ChannelCapacityError,
    ChannelMissingError,
    PlatformUnavailableError,
    RateLimitedError,
    ValidationError,
    is_channel_capacity_message,
)

# Discord JSON error codes
MAX_GUILD_CHANNELS = 30013
UNKNOWN_CHANNEL = 10003


def translate_discord_error(exc: Exception) -> BridgeError:
    """Map a discord.py exception onto the bridge taxonomy."""
    import discord

    if isinstance(exc, discord.HTTPException):
        text = getattr(exc, "text", "") or str(exc)
        if exc.code == MAX_GUILD_CHANNELS or is_channel_capacity_message(text):
            return ChannelCapacityError(text, context="discord", code=exc.code)
        if isinstance(exc, discord.NotFound) or exc.code == UNKNOWN_CHANNEL:
            return ChannelMissingError(text, context="discord", code=exc.code)
        if exc.status == 429:
            return RateLimitedError(text, context="discord", code=429)
        if isinstance(exc, discord.Forbidden):
            return ValidationError(text, context="discord", code=exc.code)
        return PlatformUnavailableError(text, context="discord", code=exc.status)
    if isinstance(exc, discord.LoginFailure):
        return PlatformUnavailableError(f"Discord login failed: {exc}", context="discord", code="login")
    return PlatformUnavailableError(str(exc) or type(exc).__name__, context="discord")


class DiscordStaff(StaffPlatform):
    """Discord bot adapter using discord.py."""

    def __init__(self, token: str, guild_id: str = "", command_prefix: str = "!",
                 ready_timeout: float = 60.0, http_timeout: float = 30.0):
        super().__init__()
        self._token = token
        self._guild_id = str(guild_id or "")
        self._prefix = command_prefix
        self._ready_timeout = ready_timeout
        self._http_timeout = http_timeout
        self._client = None  # discord.Client
        self._task: Optional[asyncio.Task] = None
        self._http: Optional[httpx.AsyncClient] = None

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def connect(self):
        """Log in and wait until the gateway reports ready."""
        try:
            import discord
        except ImportError as exc:
            raise PlatformUnavailableError(
                "discord.py not installed. Run: pip install discord.py", context="discord"
            ) from exc

        if not self._token:
            raise PlatformUnavailableError("No Discord bot token configured", context="discord")

        intents = discord.Intents.default()
        intents.message_content = True
        intents.guilds = True

        client = discord.Client(intents=intents)
        ready = asyncio.Event()

        @client.event
        async def on_ready():
            ready.set()

        @client.event
        async def on_message(message):
            self._on_message(message)

        @client.event
        async def on_message_edit(before, after):
            if before.content != after.content:
                self._on_message(after, kind="edit")

        self._client = client
        self._task = asyncio.create_task(client.start(self._token))
        waiter = asyncio.create_task(ready.wait())
        done, _ = await asyncio.wait(
            {self._task, waiter}, timeout=self._ready_timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if waiter not in done:
            waiter.cancel()
            if self._task in done and self._task.exception() is not None:
                raise translate_discord_error(self._task.exception())
            raise PlatformUnavailableError("Discord did not become ready", context="discord")

        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._http_timeout, follow_redirects=True)

    async def disconnect(self):
        client, self._client = self._client, None
        task, self._task = self._task, None
        if client is not None and not client.is_closed():
            await client.close()
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def check_alive(self) -> bool:
        client = self._client
        if client is None or client.is_closed() or not client.is_ready():
            return False
        latency = client.latency
        return latency == latency and latency != float("inf")  # NaN/inf before first heartbeat

    async def cleanup_session(self):
        # Discord has no polling lock; a fresh login replaces the old gateway session.
        await self.disconnect()

    # =========================================================================
    # REST helpers
    # =========================================================================

    @property
    def client(self):
        if self._client is None or self._client.is_closed():
            raise PlatformUnavailableError("Discord client is not connected", context="discord")
        return self._client

    async def _call(self, coro):
        import discord

        try:
            return await coro
        except (discord.HTTPException, discord.ClientException) as exc:
            raise translate_discord_error(exc) from exc

    async def _channel(self, channel_id: str):
        client = self.client
        channel = client.get_channel(int(channel_id))
        if channel is None:
            channel = await self._call(client.fetch_channel(int(channel_id)))
        return channel

    def _webhook(self, info: WebhookInfo):
        import discord

        return discord.Webhook.from_url(info.url, client=self.client)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def post_message(self, channel_id: str, content: str = "",
                           embeds: Optional[List[Dict[str, Any]]] = None,
                           role_ids: Optional[List[str]] = None):
        import discord

        channel = await self._channel(channel_id)
        kwargs: Dict[str, Any] = {
            "allowed_mentions": discord.AllowedMentions(
                everyone=False,
                users=True,
                roles=[discord.Object(id=int(r)) for r in role_ids] if role_ids else False,
            ),
        }
        if content:
            kwargs["content"] = content[:2000]
        if embeds:
            kwargs["embeds"] = [discord.Embed.from_dict(e) for e in embeds]
        await self._call(channel.send(**kwargs))

    async def create_channel(self, parent_id: str, name: str) -> str:
        import discord

        if parent_id:
            parent = await self._channel(parent_id)
            if not isinstance(parent, discord.CategoryChannel):
                raise ValidationError(f"{parent_id} is not a category", context="discord")
            channel = await self._call(parent.create_text_channel(name, reason="Support ticket"))
        else:
            guild = self.client.get_guild(int(self._guild_id)) if self._guild_id else None
            if guild is None:
                raise ValidationError("No category or guild to create the channel in",
                                      context="discord")
            channel = await self._call(guild.create_text_channel(name, reason="Support ticket"))
        return str(channel.id)

    async def move_channel(self, channel_id: str, parent_id: str):
        channel = await self._channel(channel_id)
        parent = await self._channel(parent_id)
        await self._call(channel.edit(category=parent, sync_permissions=True))

    async def list_webhooks(self, channel_id: str, name: str) -> List[WebhookInfo]:
        channel = await self._channel(channel_id)
        hooks = await self._call(channel.webhooks())
        return [
            WebhookInfo(
                id=str(h.id),
                url=h.url,
                channel_id=str(channel_id),
                name=h.name or "",
                created_at=h.created_at.timestamp(),
            )
            for h in hooks
            if h.name == name and h.token
        ]

    async def create_webhook(self, channel_id: str, name: str) -> WebhookInfo:
        channel = await self._channel(channel_id)
        hook = await self._call(channel.create_webhook(name=name, reason="For message bridging"))
        return WebhookInfo(
            id=str(hook.id),
            url=hook.url,
            channel_id=str(channel_id),
            name=hook.name or name,
            created_at=hook.created_at.timestamp(),
        )

    async def delete_webhook(self, webhook: WebhookInfo):
        try:
            await self._call(self._webhook(webhook).delete(reason="Relay webhook retired"))
        except ChannelMissingError:
            pass  # already gone

    async def send_via_webhook(self, webhook: WebhookInfo, content: str, username: str,
                               avatar_url: str = "",
                               attachments: Optional[List[Attachment]] = None):
        import discord

        kwargs: Dict[str, Any] = {"username": (username or "Customer")[:80], "wait": True}
        if content:
            kwargs["content"] = content[:2000]
        if avatar_url:
            kwargs["avatar_url"] = avatar_url
        if attachments:
            kwargs["files"] = [discord.File(io.BytesIO(a.data), filename=a.filename)
                               for a in attachments]
        try:
            await self._call(self._webhook(webhook).send(**kwargs))
        except ChannelMissingError as exc:
            # The webhook vanished; the channel may still exist.
            raise PlatformUnavailableError(
                f"Webhook {webhook.id} not found", context="discord", code="webhook_missing"
            ) from exc

    async def fetch_attachment(self, url: str) -> bytes:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._http_timeout, follow_redirects=True)
        try:
            response = await self._http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PlatformUnavailableError(f"Download failed: {exc}", context="discord") from exc
        return response.content

    # =========================================================================
    # Inbound
    # =========================================================================

    def _on_message(self, message, kind: str = "message"):
        if message.author.bot or message.webhook_id:
            return
        if message.guild is None:
            return
        if self._guild_id and str(message.guild.id) != self._guild_id:
            return

        content = message.content or ""
        channel_id = str(message.channel.id)

        if kind == "message" and content.startswith(self._prefix):
            name, *args = content[len(self._prefix):].split() or [""]
            if name.lower() in COMMANDS:
                action = StaffAction(
                    name=name.lower(),
                    channel_id=channel_id,
                    staff_user_id=str(message.author.id),
                    staff_name=message.author.display_name,
                    args=args,
                )
                self.emit(InboundEvent(platform=STAFF, kind="action", user_id=action.staff_user_id,
                                       display_name=action.staff_name, chat_id=channel_id,
                                       action=action))
                return

        media = [
            MediaPayload(source="url", ref=a.url, filename=a.filename,
                         content_type=a.content_type or "")
            for a in message.attachments
            if (a.content_type or "").startswith("image/")
        ]
        if not content and not media:
            return
        self.emit(InboundEvent(
            platform=STAFF,
            kind=kind,
            user_id=str(message.author.id),
            display_name=message.author.display_name,
            text=content,
            chat_id=channel_id,
            media=media,
            avatar_url=str(message.author.display_avatar.url),
        ))
