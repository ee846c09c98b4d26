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
Ticket Bridge -- Telegram Origin Adapter

Customer side of the bridge: a python-telegram-bot Application using long
polling. Text and photos from customers become InboundEvents; outbound text
and photos come from BridgeManager.

Requirements:
    pip install python-telegram-bot>=20.0

Only one process may poll a bot token at a time. If another instance is
still polling, Telegram answers 409 Conflict; that is surfaced as
SessionConflictError, and cleanup_session() drops the stale webhook and any
pending updates.
"""

from typing import Optional, Dict, Any

from ticketbridge.bridges.base import InboundEvent, MediaPayload, OriginPlatform, ORIGIN, split_text
from ticketbridge.core.errors import (
    BridgeError,
    PlatformUnavailableError,
    RateLimitedError,
    SessionConflictError,
    ValidationError,
)

ORIGIN_COMMANDS = ("start", "cancel", "tickets", "switch", "ping")


def translate_telegram_error(exc: Exception) -> BridgeError:
    """Map a python-telegram-bot exception onto the bridge taxonomy."""
    from telegram import error as tg_error

    if isinstance(exc, tg_error.Conflict):
        return SessionConflictError(str(exc), context="telegram", code=409)
    if isinstance(exc, tg_error.RetryAfter):
        retry_after = exc.retry_after
        if hasattr(retry_after, "total_seconds"):
            retry_after = retry_after.total_seconds()
        return RateLimitedError(str(exc), retry_after=float(retry_after), context="telegram", code=429)
    if isinstance(exc, (tg_error.Forbidden, tg_error.BadRequest)):
        return ValidationError(str(exc), context="telegram")
    return PlatformUnavailableError(str(exc) or type(exc).__name__, context="telegram")


class TelegramOrigin(OriginPlatform):
    """Telegram bot adapter (python-telegram-bot, async)."""

    def __init__(self, token: str):
        super().__init__()
        self._token = token
        self._app = None  # telegram.ext.Application
        self._conflict_seen = False

    @property
    def bot(self):
        if self._app is None:
            raise PlatformUnavailableError("Telegram bot is not connected", context="telegram")
        return self._app.bot

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def connect(self):
        """Build the Application and start long polling."""
        try:
            from telegram import Update
            from telegram.error import TelegramError
            from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters
        except ImportError as exc:
            raise PlatformUnavailableError(
                "python-telegram-bot not installed. Run: pip install python-telegram-bot",
                context="telegram",
            ) from exc

        if not self._token:
            raise PlatformUnavailableError("No Telegram bot token configured", context="telegram")

        if self._conflict_seen:
            await self.cleanup_session()

        app = Application.builder().token(self._token).build()

        async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
            if not update.message or not update.message.text:
                return
            self.emit(self._event(update, text=update.message.text))

        async def on_photo(update: Update, context: ContextTypes.DEFAULT_TYPE):
            if not update.message or not update.message.photo:
                return
            photo = update.message.photo[-1]  # largest size
            media = MediaPayload(source="origin_file", ref=photo.file_id,
                                 filename=f"{photo.file_unique_id}.jpg")
            self.emit(self._event(update, text=update.message.caption or "", media=[media]))

        async def on_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
            if not update.message or not update.message.text:
                return
            self.emit(self._event(update, text=update.message.text, kind="command"))

        app.add_handler(CommandHandler(list(ORIGIN_COMMANDS), on_command))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))
        app.add_handler(MessageHandler(filters.PHOTO, on_photo))

        try:
            await app.initialize()
            await app.start()
            await app.updater.start_polling(
                drop_pending_updates=True, error_callback=self._on_polling_error
            )
        except TelegramError as exc:
            await self._shutdown(app)
            raise translate_telegram_error(exc) from exc

        self._app = app

    def _on_polling_error(self, exc):
        from telegram import error as tg_error

        if isinstance(exc, tg_error.Conflict):
            self._conflict_seen = True

    async def disconnect(self):
        app, self._app = self._app, None
        if app is not None:
            await self._shutdown(app)

    @staticmethod
    async def _shutdown(app):
        if app.updater is not None and app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()

    async def check_alive(self) -> bool:
        if self._app is None or self._conflict_seen:
            return False
        if self._app.updater is None or not self._app.updater.running:
            return False
        await self._app.bot.get_me()
        return True

    async def cleanup_session(self):
        """Drop any webhook and pending updates held for this token."""
        from telegram import Bot

        async with Bot(self._token) as bot:
            await bot.delete_webhook(drop_pending_updates=True)
        self._conflict_seen = False

    # =========================================================================
    # Outbound
    # =========================================================================

    async def _call(self, coro):
        from telegram.error import TelegramError

        try:
            return await coro
        except TelegramError as exc:
            raise translate_telegram_error(exc) from exc

    async def send_text(self, chat_id: str, text: str):
        for chunk in split_text(text, self.max_text_length, self.text_chunk_length):
            await self._call(self.bot.send_message(chat_id=int(chat_id), text=chunk))

    async def send_photo(self, chat_id: str, photo: Optional[bytes] = None,
                         caption: str = "", native_handle: Optional[str] = None) -> Optional[str]:
        source = native_handle or photo
        if source is None:
            raise ValidationError("send_photo needs bytes or a file id", context="telegram")
        message = await self._call(
            self.bot.send_photo(chat_id=int(chat_id), photo=source, caption=caption or None)
        )
        if message is not None and message.photo:
            return message.photo[-1].file_id
        return None

    async def fetch_file(self, file_id: str) -> bytes:
        telegram_file = await self._call(self.bot.get_file(file_id))
        data = await self._call(telegram_file.download_as_bytearray())
        return bytes(data)

    async def get_chat_info(self, chat_id: str) -> Dict[str, Any]:
        chat = await self._call(self.bot.get_chat(int(chat_id)))
        return {
            "id": str(chat.id),
            "type": chat.type,
            "username": chat.username or "",
            "first_name": chat.first_name or "",
            "last_name": chat.last_name or "",
        }

    # =========================================================================
    # Inbound
    # =========================================================================

    @staticmethod
    def _event(update, text: str = "", media=None, kind: str = "message") -> InboundEvent:
        user = update.effective_user
        return InboundEvent(
            platform=ORIGIN,
            kind=kind,
            user_id=str(user.id) if user else "",
            display_name=(user.full_name or user.username or "") if user else "",
            text=text,
            chat_id=str(update.effective_chat.id) if update.effective_chat else "",
            media=list(media or []),
        )
