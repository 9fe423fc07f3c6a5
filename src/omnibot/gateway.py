"""Bot gateway: the outbound side of the chat transport.

Handlers talk to the ``Gateway`` protocol only. ``AiogramGateway`` implements
it over an aiogram ``Bot`` and routes every call through ``send_with_retry``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from aiogram import Bot, types
from aiogram.exceptions import (
    TelegramBadRequest,
    TelegramNetworkError,
    TelegramRetryAfter,
)
from aiogram.types import (
    BufferedInputFile,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    WebAppInfo,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Button:
    """Inline keyboard button with either callback data or a web app URL."""

    text: str
    callback_data: str | None = None
    web_app_url: str | None = None


Keyboard = Sequence[Sequence[Button]]


class Gateway(Protocol):
    """Outbound chat operations used by handlers."""

    async def send_message(
        self,
        chat_id: int,
        text: str,
        keyboard: Keyboard | None = None,
        reply_to: int | None = None,
    ) -> int | None: ...

    async def send_photo(
        self,
        chat_id: int,
        photo: str | bytes,
        caption: str | None = None,
        keyboard: Keyboard | None = None,
    ) -> int | None: ...

    async def send_document(
        self,
        chat_id: int,
        document: bytes,
        filename: str,
        caption: str | None = None,
    ) -> int | None: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Keyboard | None = None,
    ) -> None: ...

    async def edit_reply_markup(
        self,
        chat_id: int,
        message_id: int,
        keyboard: Keyboard | None = None,
    ) -> None: ...

    async def delete_message(self, chat_id: int, message_id: int) -> None: ...

    async def answer_callback(
        self,
        callback_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> None: ...

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> None: ...

    async def download_file(self, file_ref: str) -> bytes: ...


async def send_with_retry(
    send_func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
) -> T | None:
    """Execute a Telegram call with retry logic.

    Handles:
    - TelegramRetryAfter: Wait specified time and retry
    - TelegramNetworkError: Exponential backoff retry
    - TelegramBadRequest: Log and return None (don't retry)

    Args:
        send_func: Async function performing the call.
        max_retries: Maximum number of retry attempts.
        base_delay: Base delay for exponential backoff.

    Returns:
        Result of send_func or None if all retries failed.
    """
    last_error: Exception | None = None

    for attempt in range(max_retries + 1):
        try:
            return await send_func()
        except TelegramRetryAfter as e:
            wait_time = e.retry_after
            logger.warning(
                "Rate limited by Telegram, waiting",
                extra={"retry_after": wait_time, "attempt": attempt},
            )
            await asyncio.sleep(wait_time)
            last_error = e
        except TelegramNetworkError as e:
            if attempt < max_retries:
                delay = base_delay * (2**attempt)
                logger.warning(
                    "Network error, retrying",
                    extra={"error": str(e), "delay": delay, "attempt": attempt},
                )
                await asyncio.sleep(delay)
            last_error = e
        except TelegramBadRequest as e:
            error_str = str(e).lower()
            if "message is not modified" in error_str:
                logger.debug("Message not modified, ignoring")
                return None
            if "message to edit not found" in error_str or "message to delete not found" in error_str:
                logger.warning("Target message not found")
                return None
            if "query is too old" in error_str:
                logger.debug("Callback query expired, ignoring")
                return None
            logger.error("Telegram bad request", extra={"error": str(e)})
            return None

    if last_error:
        logger.error(
            "All retries failed",
            extra={"max_retries": max_retries, "error": str(last_error)},
        )
    return None


def build_markup(keyboard: Keyboard | None) -> InlineKeyboardMarkup | None:
    """Convert a button grid into an aiogram inline keyboard."""
    if keyboard is None:
        return None

    rows: list[list[InlineKeyboardButton]] = []
    for row in keyboard:
        buttons: list[InlineKeyboardButton] = []
        for button in row:
            if button.web_app_url:
                buttons.append(
                    InlineKeyboardButton(text=button.text, web_app=WebAppInfo(url=button.web_app_url))
                )
            else:
                buttons.append(
                    InlineKeyboardButton(text=button.text, callback_data=button.callback_data or "noop")
                )
        rows.append(buttons)
    return InlineKeyboardMarkup(inline_keyboard=rows)


def _message_id(result: Any) -> int | None:
    if isinstance(result, types.Message):
        return result.message_id
    return None


class AiogramGateway:
    """Gateway implementation backed by an aiogram Bot."""

    def __init__(self, bot: Bot, max_retries: int = 3, base_delay: float = 1.0) -> None:
        """Initialize the gateway.

        Args:
            bot: The aiogram bot used for API calls.
            max_retries: Retry attempts for transient Telegram errors.
            base_delay: Base delay for exponential backoff.
        """
        self.bot = bot
        self._max_retries = max_retries
        self._base_delay = base_delay

    async def _call(self, send_func: Callable[[], Awaitable[T]]) -> T | None:
        return await send_with_retry(
            send_func, max_retries=self._max_retries, base_delay=self._base_delay
        )

    async def send_message(
        self,
        chat_id: int,
        text: str,
        keyboard: Keyboard | None = None,
        reply_to: int | None = None,
    ) -> int | None:
        result = await self._call(
            lambda: self.bot.send_message(
                chat_id,
                text,
                reply_markup=build_markup(keyboard),
                reply_to_message_id=reply_to,
            )
        )
        return _message_id(result)

    async def send_photo(
        self,
        chat_id: int,
        photo: str | bytes,
        caption: str | None = None,
        keyboard: Keyboard | None = None,
    ) -> int | None:
        media: str | BufferedInputFile = (
            BufferedInputFile(photo, filename="image.png") if isinstance(photo, bytes) else photo
        )
        result = await self._call(
            lambda: self.bot.send_photo(
                chat_id, media, caption=caption, reply_markup=build_markup(keyboard)
            )
        )
        return _message_id(result)

    async def send_document(
        self,
        chat_id: int,
        document: bytes,
        filename: str,
        caption: str | None = None,
    ) -> int | None:
        result = await self._call(
            lambda: self.bot.send_document(
                chat_id, BufferedInputFile(document, filename=filename), caption=caption
            )
        )
        return _message_id(result)

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        keyboard: Keyboard | None = None,
    ) -> None:
        await self._call(
            lambda: self.bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                reply_markup=build_markup(keyboard),
            )
        )

    async def edit_reply_markup(
        self,
        chat_id: int,
        message_id: int,
        keyboard: Keyboard | None = None,
    ) -> None:
        await self._call(
            lambda: self.bot.edit_message_reply_markup(
                chat_id=chat_id, message_id=message_id, reply_markup=build_markup(keyboard)
            )
        )

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        await self._call(lambda: self.bot.delete_message(chat_id, message_id))

    async def answer_callback(
        self,
        callback_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> None:
        if not callback_id:
            return
        await self._call(
            lambda: self.bot.answer_callback_query(callback_id, text=text, show_alert=show_alert)
        )

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> None:
        await self._call(lambda: self.bot.send_chat_action(chat_id=chat_id, action=action))

    async def download_file(self, file_ref: str) -> bytes:
        buffer = await self.bot.download(file_ref)
        if buffer is None:
            return b""
        return buffer.read()
