"""Per-chat movie watchlists persisted as one JSON document.

Movies are added from recommendation cards and browsed with ``/watchlist``.
Entries keep their insertion order; a movie appears at most once per chat.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from omnibot.exceptions import MalformedInputError
from omnibot.storage import JsonDocument

logger = logging.getLogger(__name__)

WATCHLIST_FILENAME = "watchlist.json"

MAX_WATCHLIST_SIZE = 100


@dataclass(frozen=True)
class WatchlistEntry:
    """A saved movie.

    Attributes:
        movie_id: TMDB movie ID.
        title: Title shown on the watchlist button.
        added_at: Unix timestamp when the movie was saved.
    """

    movie_id: str
    title: str
    added_at: float

    def to_dict(self) -> dict[str, Any]:
        return {"movie_id": self.movie_id, "title": self.title, "added_at": self.added_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WatchlistEntry | None:
        movie_id = str(data.get("movie_id") or "")
        if not movie_id:
            return None
        return cls(
            movie_id=movie_id,
            title=str(data.get("title") or "Unknown"),
            added_at=float(data.get("added_at") or 0.0),
        )


class WatchlistStore:
    """Watchlists keyed by chat ID."""

    def __init__(self, path: str | Path | None = None, clock: Callable[[], float] = time.time) -> None:
        """Initialize the store and load existing watchlists.

        Args:
            path: Location of the JSON document; in-memory only when None.
            clock: Returns the current Unix time in seconds.
        """
        self._doc = JsonDocument(path) if path is not None else None
        self.clock = clock
        self._lists: dict[int, list[WatchlistEntry]] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read all watchlists from disk."""
        self._lists = {}
        if self._doc is None:
            return

        for chat_key, items in self._doc.load().items():
            try:
                chat_id = int(chat_key)
            except ValueError:
                logger.warning("Skipping malformed watchlist key", extra={"key": chat_key})
                continue
            if not isinstance(items, list):
                continue
            entries: list[WatchlistEntry] = []
            for item in items:
                entry = WatchlistEntry.from_dict(item) if isinstance(item, dict) else None
                if entry is not None and all(e.movie_id != entry.movie_id for e in entries):
                    entries.append(entry)
            if entries:
                self._lists[chat_id] = entries

        logger.info("Loaded watchlists", extra={"chats": len(self._lists)})

    def _commit(self, chat_id: int, entries: list[WatchlistEntry]) -> None:
        """Persist a chat's new list, then make it current."""
        lists = dict(self._lists)
        if entries:
            lists[chat_id] = entries
        else:
            lists.pop(chat_id, None)

        if self._doc is not None:
            self._doc.save(
                {str(cid): [entry.to_dict() for entry in items] for cid, items in lists.items()}
            )
        self._lists = lists

    def get(self, chat_id: int) -> list[WatchlistEntry]:
        """Get a chat's watchlist, oldest first."""
        return list(self._lists.get(chat_id, ()))

    def find(self, chat_id: int, movie_id: str) -> WatchlistEntry | None:
        return next((e for e in self._lists.get(chat_id, ()) if e.movie_id == movie_id), None)

    def add(self, chat_id: int, movie_id: str, title: str) -> bool:
        """Save a movie.

        Returns:
            False if the movie was already on the list.

        Raises:
            MalformedInputError: If the watchlist is full.
        """
        entries = self.get(chat_id)
        if any(e.movie_id == movie_id for e in entries):
            return False
        if len(entries) >= MAX_WATCHLIST_SIZE:
            raise MalformedInputError(f"Your watchlist is full ({MAX_WATCHLIST_SIZE} movies)")

        entries.append(WatchlistEntry(movie_id=movie_id, title=title, added_at=self.clock()))
        self._commit(chat_id, entries)
        return True

    def remove(self, chat_id: int, movie_id: str) -> bool:
        """Remove a movie.

        Returns:
            True if the movie was on the list.
        """
        entries = self.get(chat_id)
        kept = [e for e in entries if e.movie_id != movie_id]
        if len(kept) == len(entries):
            return False
        self._commit(chat_id, kept)
        return True

    def count(self) -> int:
        """Get the number of saved movies across all chats."""
        return sum(len(entries) for entries in self._lists.values())
