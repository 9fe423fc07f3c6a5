"""Recurring delivery of subscribed content.

Each (chat, content type, local time) gets its own timer task. A timer
computes the next wall-clock occurrence of ``HH:mm`` in the subscription's
timezone, sleeps until then, hands a virtual command to the dispatcher, and
recomputes from the calendar again. It never adds a fixed 24 hours, so DST
transitions shift nothing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from omnibot.subscriptions import CONTENT_COMMANDS, SubscriptionStore

if TYPE_CHECKING:
    from omnibot.dispatcher import DispatchResult

logger = logging.getLogger(__name__)

# Upper bound for skipping a DST gap, in minutes
MAX_GAP_MINUTES = 24 * 60


class VirtualRunner(Protocol):
    """Anything able to execute a command for a chat without a live event."""

    async def run_virtual(self, chat_id: int, text: str) -> DispatchResult: ...


@dataclass(frozen=True)
class ScheduledJob:
    """An armed timer, as listed by /mysubs."""

    chat_id: int
    content_type: str
    time: str
    timezone: str
    next_run: datetime


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _exists(local: datetime, zone: ZoneInfo) -> bool:
    """Whether a local wall time survives a round trip through UTC."""
    round_trip = local.astimezone(UTC).astimezone(zone)
    return round_trip.replace(tzinfo=None, fold=0) == local.replace(tzinfo=None, fold=0)


def _localize(day: date, hours: int, minutes: int, zone: ZoneInfo) -> datetime:
    """Resolve a wall time on a day to a real instant.

    Ambiguous times resolve to their first occurrence. Times inside a
    spring-forward gap resolve to the first wall time after the gap.
    """
    local = datetime(day.year, day.month, day.day, hours, minutes, tzinfo=zone, fold=0)
    for _ in range(MAX_GAP_MINUTES):
        if _exists(local, zone):
            return local
        naive = local.replace(tzinfo=None) + timedelta(minutes=1)
        local = naive.replace(tzinfo=zone, fold=0)
    return local


def next_fire_time(hhmm: str, timezone: str, now: datetime) -> datetime:
    """Compute the next instant strictly after ``now`` at local ``HH:mm``.

    Args:
        hhmm: Local time of day.
        timezone: IANA timezone name.
        now: Aware reference instant.

    Returns:
        Aware datetime in UTC.

    Raises:
        ZoneInfoNotFoundError: If the timezone is unknown.
    """
    zone = ZoneInfo(timezone)
    hours, minutes = (int(part) for part in hhmm.split(":"))
    today = now.astimezone(zone).date()

    for offset in range(3):
        candidate = _localize(today + timedelta(days=offset), hours, minutes, zone)
        if candidate > now:
            return candidate.astimezone(UTC)

    # Unreachable for real zones; every day has the wall time or a gap end
    raise ValueError(f"No occurrence of {hhmm} in {timezone} after {now.isoformat()}")


class SubscriptionScheduler:
    """Arms and re-arms one timer per subscribed (chat, content type, time)."""

    def __init__(
        self,
        store: SubscriptionStore,
        runner: VirtualRunner,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: Subscription records; the scheduler listens for changes.
            runner: Executes virtual commands (the dispatcher).
            clock: Returns the current aware UTC time.
            sleep: Sleep coroutine used by timers.
        """
        self.store = store
        self.runner = runner
        self._clock = clock
        self._sleep = sleep
        self._timers: dict[int, dict[tuple[str, str], asyncio.Task[None]]] = {}
        self._next_runs: dict[tuple[int, str, str], ScheduledJob] = {}
        self._deliveries: set[asyncio.Task[Any]] = set()
        self._started = False
        self._listening = False
        self.fired = 0

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        """Schedule every stored subscription and follow future changes."""
        if self._started:
            return
        self._started = True
        if not self._listening:
            self.store.add_listener(self.reschedule_chat)
            self._listening = True
        for chat_id in self.store.all():
            self.reschedule_chat(chat_id)
        logger.info("Scheduler started", extra={"chats": len(self._timers)})

    def reschedule_chat(self, chat_id: int) -> None:
        """Cancel and recompute the timers of one chat."""
        if not self._started:
            return

        for task in self._timers.pop(chat_id, {}).values():
            task.cancel()
        for key in [k for k in self._next_runs if k[0] == chat_id]:
            del self._next_runs[key]

        timers: dict[tuple[str, str], asyncio.Task[None]] = {}
        for content_type, sub in self.store.get(chat_id).items():
            try:
                ZoneInfo(sub.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                logger.error(
                    "Skipping subscription with unknown timezone",
                    extra={"chat_id": chat_id, "timezone": sub.timezone},
                )
                continue
            for hhmm in sub.times:
                first = self._arm(chat_id, content_type, hhmm, sub.timezone, self._clock())
                timers[(content_type, hhmm)] = asyncio.create_task(
                    self._run_timer(chat_id, content_type, hhmm, sub.timezone, first),
                    name=f"subscription:{chat_id}:{content_type}:{hhmm}",
                )

        if timers:
            self._timers[chat_id] = timers
        logger.debug("Rescheduled chat", extra={"chat_id": chat_id, "timers": len(timers)})

    def _arm(
        self, chat_id: int, content_type: str, hhmm: str, timezone: str, after: datetime
    ) -> datetime:
        fire_at = next_fire_time(hhmm, timezone, after)
        self._next_runs[(chat_id, content_type, hhmm)] = ScheduledJob(
            chat_id=chat_id,
            content_type=content_type,
            time=hhmm,
            timezone=timezone,
            next_run=fire_at,
        )
        return fire_at

    async def _run_timer(
        self, chat_id: int, content_type: str, hhmm: str, timezone: str, fire_at: datetime
    ) -> None:
        while True:
            while (remaining := (fire_at - self._clock()).total_seconds()) > 0:
                await self._sleep(remaining)

            self._deliver(chat_id, content_type)
            fire_at = self._arm(chat_id, content_type, hhmm, timezone, max(self._clock(), fire_at))

    def _deliver(self, chat_id: int, content_type: str) -> None:
        # Deliveries outlive their timer so a reschedule does not cut them short
        self.fired += 1
        task = asyncio.create_task(self._run_delivery(chat_id, content_type))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _run_delivery(self, chat_id: int, content_type: str) -> None:
        command = CONTENT_COMMANDS[content_type]
        logger.info("Delivering scheduled content", extra={"chat_id": chat_id, "command": command})
        try:
            await self.runner.run_virtual(chat_id, command)
        except Exception:
            logger.exception("Scheduled delivery failed", extra={"chat_id": chat_id, "command": command})

    def scheduled_jobs(self, chat_id: int) -> list[ScheduledJob]:
        """List a chat's armed timers, soonest first."""
        jobs = [job for (cid, _, _), job in self._next_runs.items() if cid == chat_id]
        return sorted(jobs, key=lambda job: job.next_run)

    def timer_count(self) -> int:
        """Get the number of armed timers across all chats."""
        return sum(len(timers) for timers in self._timers.values())

    async def stop(self) -> None:
        """Cancel every timer and in-flight delivery."""
        tasks = [task for timers in self._timers.values() for task in timers.values()]
        tasks.extend(self._deliveries)
        self._timers.clear()
        self._next_runs.clear()
        self._started = False

        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Scheduler stopped")
