"""Sliding-window-log rate limiter.

Each (subject, action) key owns an ascending list of request timestamps.
A check prunes timestamps that fell out of the window and admits the request
only while fewer than ``max_requests`` remain. The read-prune-append sequence
of a key runs under that key's asyncio.Lock, so concurrent handlers can never
over-admit the same window even when that sequence suspends.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from omnibot.config import RateLimitConfig

logger = logging.getLogger(__name__)

# Subject used for process-wide windows
GLOBAL_SUBJECT = "__global__"

# Default retention horizon for the periodic sweep (1 hour)
DEFAULT_RETENTION_MS = 3_600_000

RateLimitKey = tuple[int | str, str]


class LimitScope(str, Enum):
    """Whose window a policy counts against."""

    USER = "user"
    GLOBAL = "global"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Rate-limit configuration attached to a command descriptor.

    Attributes:
        max_requests: Requests admitted per window.
        window_ms: Window length in milliseconds.
        scope: Count per user or process-wide.
        action: Window name; defaults to the descriptor name.
    """

    max_requests: int
    window_ms: int
    scope: LimitScope = LimitScope.USER
    action: str | None = None

    @classmethod
    def from_config(
        cls,
        config: RateLimitConfig,
        scope: LimitScope = LimitScope.USER,
        action: str | None = None,
    ) -> RateLimitPolicy:
        """Build a policy from a settings entry."""
        return cls(
            max_requests=config.requests,
            window_ms=config.window_ms,
            scope=scope,
            action=action,
        )


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class SlidingWindowRateLimiter:
    """Sliding-window-log limiter keyed by (subject, action).

    Attributes:
        clock: Returns the current time in milliseconds.
        windows: Live timestamps per key, oldest first.
    """

    clock: Callable[[], float] = _monotonic_ms
    windows: dict[RateLimitKey, list[float]] = field(default_factory=dict)
    _locks: dict[RateLimitKey, asyncio.Lock] = field(default_factory=dict, repr=False)

    def _lock_for(self, key: RateLimitKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _live(self, key: RateLimitKey, window_ms: int, now: float) -> list[float]:
        """Return the key's timestamps that are still inside the window."""
        return [ts for ts in self.windows.get(key, ()) if now - ts < window_ms]

    async def _admit(self, key: RateLimitKey, max_requests: int, window_ms: int) -> bool:
        """Prune the key's window and record ``now`` if there is room.

        Runs under the key's lock; implementations backed by shared storage
        may await between reading and writing the window.
        """
        now = self.clock()
        live = self._live(key, window_ms, now)

        if len(live) >= max_requests:
            # Rejections never mutate the window
            return False

        live.append(now)
        self.windows[key] = live
        return True

    async def check(
        self,
        subject_id: int | str,
        action: str,
        max_requests: int,
        window_ms: int,
    ) -> bool:
        """Check a request against the subject's window and record it if admitted.

        Args:
            subject_id: User id (or any per-subject identifier).
            action: Action name, e.g. the command name.
            max_requests: Requests admitted per window.
            window_ms: Window length in milliseconds.

        Returns:
            True if the request is admitted, False if the window is full.
        """
        key: RateLimitKey = (subject_id, action)
        async with self._lock_for(key):
            allowed = await self._admit(key, max_requests, window_ms)

        if not allowed:
            logger.debug(
                "Rate limit hit",
                extra={"subject_id": subject_id, "action": action},
            )
        return allowed

    async def check_global(self, action: str, max_requests: int, window_ms: int) -> bool:
        """Check a request against the process-wide window for an action.

        Args:
            action: Action name.
            max_requests: Requests admitted per window.
            window_ms: Window length in milliseconds.

        Returns:
            True if the request is admitted, False if the window is full.
        """
        return await self.check(GLOBAL_SUBJECT, action, max_requests, window_ms)

    async def check_policy(
        self,
        policy: RateLimitPolicy,
        subject_id: int | str,
        default_action: str,
    ) -> bool:
        """Check a request against a descriptor policy."""
        action = policy.action or default_action
        if policy.scope is LimitScope.GLOBAL:
            return await self.check_global(action, policy.max_requests, policy.window_ms)
        return await self.check(subject_id, action, policy.max_requests, policy.window_ms)

    def retry_after(
        self,
        subject_id: int | str,
        action: str,
        max_requests: int,
        window_ms: int,
    ) -> float:
        """Get seconds until the key admits another request.

        Returns:
            Seconds to wait, or 0.0 if a request would be admitted now.
        """
        now = self.clock()
        live = self._live((subject_id, action), window_ms, now)
        if len(live) < max_requests:
            return 0.0
        # The window reopens when the oldest blocking timestamp expires
        oldest = live[len(live) - max_requests]
        return max(0.0, (oldest + window_ms - now) / 1000.0)

    def cleanup(self, retention_ms: int = DEFAULT_RETENTION_MS) -> int:
        """Drop timestamps older than the retention horizon and remove empty keys.

        Idempotent; a key with any timestamp younger than the horizon survives.

        Args:
            retention_ms: Retention horizon in milliseconds.

        Returns:
            Number of keys removed.
        """
        now = self.clock()
        removed = 0
        for key in list(self.windows):
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue

            kept = [ts for ts in self.windows[key] if now - ts < retention_ms]
            if kept:
                self.windows[key] = kept
                continue

            del self.windows[key]
            self._locks.pop(key, None)
            removed += 1

        if removed:
            logger.debug("Removed idle rate-limit windows", extra={"removed": removed})
        return removed

    def reset(self, subject_id: int | str | None = None, action: str | None = None) -> None:
        """Forget windows matching the subject and/or action (all when both are None)."""
        for key in list(self.windows):
            if subject_id is not None and key[0] != subject_id:
                continue
            if action is not None and key[1] != action:
                continue
            del self.windows[key]
            self._locks.pop(key, None)

    def key_count(self) -> int:
        """Get the number of tracked windows."""
        return len(self.windows)

    async def run_cleanup_loop(
        self,
        interval: float,
        retention_ms: int = DEFAULT_RETENTION_MS,
    ) -> None:
        """Sweep idle windows every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.cleanup(retention_ms)
