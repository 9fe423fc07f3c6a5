"""Ephemeral per-chat session storage for multi-step flows.

Sessions are keyed by chat id, or by ``"<chat_id>:<flow>"`` when a chat may run
several flows at once. Expiration is cooperative: flows stamp their sessions,
callers ask for ``get_fresh`` when a time limit matters, and a periodic sweep
removes whatever outlived its flow's threshold.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_FLOW = "default"

# Fallback lifetime for flows without a configured threshold (24 hours)
DEFAULT_SESSION_TIMEOUT = 24 * 60 * 60


def session_key(chat_id: int | str, flow: str | None = None) -> str:
    """Build a session key for a chat, optionally scoped to a flow.

    Args:
        chat_id: Telegram chat ID.
        flow: Flow name when the chat can run more than one flow.

    Returns:
        Key such as ``"42"`` or ``"42:imagine"``.
    """
    if flow:
        return f"{chat_id}:{flow}"
    return str(chat_id)


@dataclass
class Session:
    """A single flow's state.

    Attributes:
        flow: Name of the flow that owns the session.
        payload: Flow-specific data; replaced wholesale on every set.
        created_at: Unix timestamp when the session was created.
        touched_at: Unix timestamp of the last write or touch.
    """

    flow: str
    payload: Any
    created_at: float
    touched_at: float

    def age(self, now: float) -> float:
        """Seconds since the session was last touched."""
        return now - self.touched_at


@dataclass
class SessionStore:
    """In-memory session store with per-flow expiry thresholds.

    Attributes:
        timeouts: Flow name -> lifetime in seconds used by ``sweep``.
        clock: Returns the current Unix time in seconds.
    """

    timeouts: Mapping[str, int] = field(default_factory=dict)
    clock: Callable[[], float] = time.time
    _sessions: dict[str, Session] = field(default_factory=dict, repr=False)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, repr=False)
    _sweeper: asyncio.Task[None] | None = field(default=None, repr=False)
    sessions_expired: int = 0

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def timeout_for(self, flow: str) -> int:
        """Get the lifetime in seconds configured for a flow."""
        return self.timeouts.get(flow, self.timeouts.get(DEFAULT_FLOW, DEFAULT_SESSION_TIMEOUT))

    def set(self, key: str, payload: Any, flow: str = DEFAULT_FLOW) -> Session:
        """Store a payload, replacing any previous session under the key.

        Args:
            key: Session key.
            payload: Flow data; not merged with the previous payload.
            flow: Flow that owns the session.

        Returns:
            The new session.
        """
        now = self.clock()
        session = Session(flow=flow, payload=payload, created_at=now, touched_at=now)
        self._sessions[key] = session
        return session

    def get(self, key: str) -> Any | None:
        """Get the payload stored under a key, or None if absent."""
        session = self._sessions.get(key)
        return session.payload if session is not None else None

    def get_session(self, key: str) -> Session | None:
        """Get the full session (payload and timestamps), or None if absent."""
        return self._sessions.get(key)

    def get_fresh(self, key: str, max_age: float | None = None) -> Any | None:
        """Get a payload, treating a session older than ``max_age`` as absent.

        Stale sessions found here are deleted.

        Args:
            key: Session key.
            max_age: Maximum age in seconds; defaults to the flow's timeout.

        Returns:
            The payload, or None if absent or stale.
        """
        session = self._sessions.get(key)
        if session is None:
            return None

        limit = max_age if max_age is not None else self.timeout_for(session.flow)
        if session.age(self.clock()) > limit:
            self._sessions.pop(key, None)
            self.sessions_expired += 1
            logger.debug("Dropped stale session", extra={"key": key, "flow": session.flow})
            return None
        return session.payload

    def has(self, key: str) -> bool:
        """Check whether a session exists under a key (fresh or not)."""
        return key in self._sessions

    def delete(self, key: str) -> bool:
        """Remove a session.

        Returns:
            True if a session was removed.
        """
        lock = self._locks.get(key)
        # A held lock stays so waiting updates keep serializing on it
        if lock is not None and not lock.locked():
            del self._locks[key]
        return self._sessions.pop(key, None) is not None

    def touch(self, key: str) -> bool:
        """Refresh a session's last-touched timestamp.

        Returns:
            True if the session exists.
        """
        session = self._sessions.get(key)
        if session is None:
            return False
        session.touched_at = self.clock()
        return True

    async def update(
        self,
        key: str,
        fn: Callable[[Any | None], Any | None],
        flow: str = DEFAULT_FLOW,
    ) -> Any | None:
        """Read-modify-write a payload under the key's lock.

        ``fn`` receives the current payload (or None) and returns the new
        payload; returning None deletes the session.

        Returns:
            The payload that was stored, or None if the session was deleted.
        """
        async with self._lock_for(key):
            current = self._sessions.get(key)
            new_payload = fn(current.payload if current is not None else None)
            if new_payload is None:
                self._sessions.pop(key, None)
                return None

            now = self.clock()
            if current is not None:
                current.payload = new_payload
                current.touched_at = now
            else:
                self._sessions[key] = Session(
                    flow=flow, payload=new_payload, created_at=now, touched_at=now
                )
            return new_payload

    def sweep(self) -> int:
        """Remove every session older than its flow's threshold.

        Returns:
            Number of removed sessions.
        """
        now = self.clock()
        stale = [
            key
            for key, session in self._sessions.items()
            if session.age(now) > self.timeout_for(session.flow)
        ]

        removed = 0
        for key in stale:
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            self.delete(key)
            removed += 1

        self.sessions_expired += removed
        if removed:
            logger.info("Swept stale sessions", extra={"count": removed})
        return removed

    def count(self, flow: str | None = None) -> int:
        """Get the number of stored sessions, optionally for one flow."""
        if flow is None:
            return len(self._sessions)
        return sum(1 for s in self._sessions.values() if s.flow == flow)

    def stats(self) -> dict[str, int]:
        """Get session counts per flow plus the expired total."""
        per_flow: dict[str, int] = {}
        for session in self._sessions.values():
            per_flow[session.flow] = per_flow.get(session.flow, 0) + 1
        return {
            "active_sessions": len(self._sessions),
            "sessions_expired": self.sessions_expired,
            **{f"flow_{name}": n for name, n in sorted(per_flow.items())},
        }

    def clear(self) -> None:
        """Drop every session."""
        self._sessions.clear()
        self._locks.clear()

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    def start_sweeper(self, interval: float) -> None:
        """Start the periodic sweep as a background task."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop(self) -> None:
        """Cancel the periodic sweep."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None
