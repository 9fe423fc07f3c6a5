"""Transport-neutral inbound events.

The aiogram layer converts updates into these objects; the dispatcher and the
handlers never see aiogram types, which keeps them testable without a bot.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar


class EventKind(str, Enum):
    """Kinds of inbound events routed by the dispatcher."""

    MESSAGE = "message"
    CALLBACK_QUERY = "callback_query"
    VOICE = "voice"
    DOCUMENT = "document"


@dataclass(frozen=True)
class MessageEvent:
    """A text message.

    Attributes:
        chat_id: Chat the message was sent in.
        user_id: Sender.
        text: Message text (empty for non-text messages).
        message_id: Telegram message ID, None for scheduled messages.
        is_bot: Whether the sender is a bot.
        is_forwarded: Whether the message was forwarded.
        is_scheduled: Whether the scheduler produced the event.
        timestamp: Unix timestamp of the message.
    """

    kind: ClassVar[EventKind] = EventKind.MESSAGE

    chat_id: int
    user_id: int
    text: str
    message_id: int | None = None
    is_bot: bool = False
    is_forwarded: bool = False
    is_scheduled: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CallbackEvent:
    """An inline keyboard button press."""

    kind: ClassVar[EventKind] = EventKind.CALLBACK_QUERY

    chat_id: int
    user_id: int
    data: str
    message_id: int | None = None
    callback_id: str = ""

    @property
    def text(self) -> str:
        return self.data


@dataclass(frozen=True)
class VoiceEvent:
    """A voice message."""

    kind: ClassVar[EventKind] = EventKind.VOICE

    chat_id: int
    user_id: int
    file_ref: str
    message_id: int | None = None
    duration: int = 0

    @property
    def text(self) -> str:
        return ""


@dataclass(frozen=True)
class DocumentEvent:
    """A document (file) message."""

    kind: ClassVar[EventKind] = EventKind.DOCUMENT

    chat_id: int
    user_id: int
    file_ref: str
    file_name: str | None = None
    message_id: int | None = None

    @property
    def text(self) -> str:
        return self.file_name or ""


Event = MessageEvent | CallbackEvent | VoiceEvent | DocumentEvent
