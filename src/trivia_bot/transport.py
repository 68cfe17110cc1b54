from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from telegram import LinkPreviewOptions, Update
from telegram.error import TelegramError
from telegram.ext import Application, ContextTypes, filters
from telegram.ext import MessageHandler as TelegramMessageHandler

from trivia_bot.models import IncomingMessage

LOGGER = logging.getLogger("trivia_bot")

MessageHandler = Callable[[IncomingMessage], Awaitable[None]]


class TransportError(RuntimeError):
    pass


def sender_identity(user: Any) -> str:
    if user is None:
        return "Unknown User"
    return str(getattr(user, "username", None) or getattr(user, "first_name", None) or "Unknown User")


def message_from_update(update: Any) -> IncomingMessage | None:
    message = getattr(update, "effective_message", None)
    chat = getattr(update, "effective_chat", None)
    if message is None or chat is None:
        return None
    return IncomingMessage(
        chat_id=int(chat.id),
        sender=sender_identity(getattr(update, "effective_user", None)),
        text=str(message.text or ""),
    )


class BaseTransport:
    async def send(self, chat_id: int, text: str, parse_mode: str | None = None) -> None:
        raise NotImplementedError

    async def listen(self, handler: MessageHandler) -> None:
        """Start delivering chat messages to ``handler``; returns once polling runs."""
        raise NotImplementedError

    async def shutdown(self) -> None:
        return None


class TelegramTransport(BaseTransport):
    """Telegram Bot API through python-telegram-bot's Application and long polling."""

    def __init__(
        self,
        token: str,
        chat_id: int,
        base_url: str = "https://api.telegram.org",
        poll_timeout_seconds: int = 30,
        send_timeout_seconds: float = 15.0,
        application: Any = None,
    ) -> None:
        self.token = token
        self.chat_id = chat_id
        self.base_url = base_url
        self.poll_timeout_seconds = poll_timeout_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self._application = application
        self._started = False

    @property
    def application(self) -> Application:
        # Built on first use so a missing token fails preflight, not construction.
        if self._application is None:
            self._application = (
                Application.builder()
                .token(self.token)
                .base_url(f"{self.base_url.rstrip('/')}/bot")
                .build()
            )
        return self._application

    async def send(self, chat_id: int, text: str, parse_mode: str | None = None) -> None:
        try:
            await asyncio.wait_for(
                self.application.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode=parse_mode,
                    link_preview_options=LinkPreviewOptions(is_disabled=True),
                ),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError("sendMessage timed out") from exc
        except TelegramError as exc:
            raise TransportError(f"sendMessage failed: {exc}") from exc

    async def listen(self, handler: MessageHandler) -> None:
        async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
            message = message_from_update(update)
            if message is None:
                return
            try:
                await handler(message)
            except Exception:
                LOGGER.exception("message_handler_failed chat=%s sender=%s", message.chat_id, message.sender)

        async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
            LOGGER.error("telegram_update_failed error=%s", context.error)

        app = self.application
        app.add_handler(TelegramMessageHandler(filters.Chat(chat_id=self.chat_id) & filters.TEXT, on_message))
        app.add_error_handler(on_error)
        await app.initialize()
        await app.start()
        await app.updater.start_polling(
            timeout=self.poll_timeout_seconds,
            allowed_updates=[Update.MESSAGE],
        )
        self._started = True
        LOGGER.info("telegram_polling_started chat=%s", self.chat_id)

    async def shutdown(self) -> None:
        if not self._started:
            return
        self._started = False
        app = self.application
        if app.updater is not None and app.updater.running:
            await app.updater.stop()
        await app.stop()
        await app.shutdown()
