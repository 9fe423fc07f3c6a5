"""Daily content subscriptions persisted per chat.

A chat's record maps a content type (``fact``, ``joke``, ``meme``) to the
local times of day it should be delivered and the timezone those times are
expressed in. Listeners are told which chat changed so the scheduler can
re-arm only that chat's timers.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from omnibot.exceptions import MalformedInputError
from omnibot.storage import JsonDocument

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_FILENAME = "subscriptions.json"

DEFAULT_TIMEZONE = "UTC"

# Content type -> accepted spellings
CONTENT_ALIASES: dict[str, tuple[str, ...]] = {
    "fact": ("fact", "facts", "/fact", "/facts", "/ft"),
    "joke": ("joke", "jokes", "/joke", "/jokes", "/jk"),
    "meme": ("meme", "memes", "/meme", "/memes", "/mm"),
}

# Content type -> command fired by the scheduler
CONTENT_COMMANDS: dict[str, str] = {
    "fact": "/fact",
    "joke": "/joke",
    "meme": "/meme",
}

TIME_24H_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")
TIME_12H_PATTERN = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?m\.?$", re.IGNORECASE)

SubscriptionListener = Callable[[int], None]


def resolve_content_type(name: str) -> str | None:
    """Map a user-supplied content name or alias to its content type."""
    name = name.strip().lower()
    for content_type, aliases in CONTENT_ALIASES.items():
        if name in aliases:
            return content_type
    return None


def parse_time(text: str) -> str | None:
    """Parse a 24h (``08:00``) or 12h (``8pm``, ``8:30 pm``) time of day.

    Returns:
        The time as ``HH:mm``, or None if the text is not a valid time.
    """
    text = text.strip()

    match = TIME_24H_PATTERN.match(text)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours > 23 or minutes > 59:
            return None
        return f"{hours:02d}:{minutes:02d}"

    match = TIME_12H_PATTERN.match(text)
    if match:
        hours = int(match.group(1))
        minutes = int(match.group(2) or 0)
        if not 1 <= hours <= 12 or minutes > 59:
            return None
        is_pm = match.group(3).lower() == "p"
        hours = hours % 12 + (12 if is_pm else 0)
        return f"{hours:02d}:{minutes:02d}"

    return None


def split_time_tokens(tokens: Iterable[str]) -> list[str]:
    """Re-attach detached am/pm markers (``["8", "pm"]`` -> ``["8 pm"]``)."""
    merged: list[str] = []
    for token in tokens:
        if merged and token.lower().rstrip(".") in ("am", "pm", "a.m", "p.m"):
            merged[-1] = f"{merged[-1]} {token}"
        else:
            merged.append(token)
    return merged


def validate_timezone(name: str) -> str:
    """Check that a name is a known IANA timezone.

    Raises:
        MalformedInputError: If the zone is unknown.
    """
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise MalformedInputError(
            f"Unknown timezone '{name}'",
            usage="Use an IANA timezone such as Europe/Paris or America/New_York",
        ) from None
    return name


def format_time_12h(hhmm: str) -> str:
    """Render ``HH:mm`` as ``h:mm AM/PM``."""
    hours, minutes = (int(part) for part in hhmm.split(":"))
    suffix = "AM" if hours < 12 else "PM"
    return f"{hours % 12 or 12}:{minutes:02d} {suffix}"


@dataclass
class Subscription:
    """Delivery times for one content type.

    Attributes:
        times: Sorted, unique ``HH:mm`` local times.
        timezone: IANA timezone the times are expressed in.
    """

    times: list[str] = field(default_factory=list)
    timezone: str = DEFAULT_TIMEZONE

    def to_dict(self) -> dict[str, Any]:
        return {"times": list(self.times), "timezone": self.timezone}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscription:
        times = sorted({t for t in (parse_time(str(x)) for x in data.get("times", [])) if t})
        return cls(times=times, timezone=str(data.get("timezone") or DEFAULT_TIMEZONE))


class SubscriptionStore:
    """Subscription records keyed by chat ID, persisted as one JSON document."""

    def __init__(self, path: str | Path | None = None) -> None:
        """Initialize the store and load existing records.

        Args:
            path: Location of the JSON document; in-memory only when None.
        """
        self._doc = JsonDocument(path) if path is not None else None
        self._records: dict[int, dict[str, Subscription]] = {}
        self._listeners: list[SubscriptionListener] = []
        self.reload()

    def reload(self) -> None:
        """Re-read all records from disk."""
        self._records = {}
        if self._doc is None:
            return

        for chat_key, subs in self._doc.load().items():
            try:
                chat_id = int(chat_key)
            except ValueError:
                logger.warning("Skipping malformed subscription key", extra={"key": chat_key})
                continue
            if not isinstance(subs, dict):
                continue
            record = {
                content_type: Subscription.from_dict(data)
                for content_type, data in subs.items()
                if content_type in CONTENT_COMMANDS and isinstance(data, dict)
            }
            record = {k: v for k, v in record.items() if v.times}
            if record:
                self._records[chat_id] = record

        logger.info("Loaded subscriptions", extra={"chats": len(self._records)})

    def _commit(self, chat_id: int, record: dict[str, Subscription]) -> None:
        """Persist a chat's new record, then make it current.

        An empty record removes the chat. Memory is left untouched when
        saving fails.
        """
        records = dict(self._records)
        if record:
            records[chat_id] = record
        else:
            records.pop(chat_id, None)

        if self._doc is not None:
            self._doc.save(
                {
                    str(cid): {name: sub.to_dict() for name, sub in rec.items()}
                    for cid, rec in records.items()
                }
            )
        self._records = records
        self._notify(chat_id)

    def add_listener(self, listener: SubscriptionListener) -> None:
        """Register a callback invoked with the chat ID after every change."""
        self._listeners.append(listener)

    def _notify(self, chat_id: int) -> None:
        for listener in self._listeners:
            try:
                listener(chat_id)
            except Exception:
                logger.exception("Subscription listener failed", extra={"chat_id": chat_id})

    def get(self, chat_id: int) -> dict[str, Subscription]:
        """Get a copy of a chat's subscriptions (empty if none)."""
        record = self._records.get(chat_id, {})
        return {
            name: Subscription(times=list(sub.times), timezone=sub.timezone)
            for name, sub in record.items()
        }

    def all(self) -> dict[int, dict[str, Subscription]]:
        """Get a copy of every chat's subscriptions."""
        return {chat_id: self.get(chat_id) for chat_id in self._records}

    def add_times(
        self,
        chat_id: int,
        content_type: str,
        times: Iterable[str],
        timezone: str | None = None,
    ) -> tuple[list[str], list[str]]:
        """Add delivery times for a content type.

        Args:
            chat_id: Telegram chat ID.
            content_type: One of the keys of ``CONTENT_COMMANDS``.
            times: ``HH:mm`` times to add.
            timezone: Timezone for the record; keeps the existing one when None.

        Returns:
            Tuple of (newly added times, times that were already subscribed).
        """
        if content_type not in CONTENT_COMMANDS:
            raise MalformedInputError(f"Unknown content type '{content_type}'")

        record = self.get(chat_id)
        sub = record.setdefault(content_type, Subscription(timezone=timezone or DEFAULT_TIMEZONE))
        if timezone:
            sub.timezone = timezone

        added: list[str] = []
        existing: list[str] = []
        for t in times:
            if t in sub.times or t in added:
                existing.append(t)
            else:
                added.append(t)

        sub.times = sorted(set(sub.times) | set(added))
        if not sub.times:
            del record[content_type]

        if added or timezone:
            self._commit(chat_id, record)
        return added, existing

    def remove(self, chat_id: int, content_type: str | None = None) -> bool:
        """Remove one content type, or every subscription when None.

        Returns:
            True if anything was removed.
        """
        record = self.get(chat_id)
        if not record:
            return False

        if content_type is None:
            record = {}
        else:
            if content_type not in record:
                return False
            del record[content_type]

        self._commit(chat_id, record)
        return True
