"""Concurrency control for long-running upstream jobs.

``JobQueue`` caps how many jobs run at once, globally and per subject (chat),
and always releases its slot in ``finally``. ``keep_alive`` keeps a chat
action or progress ticker running for the duration of a block.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TypeVar

from omnibot.exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobQueue:
    """Global and per-subject processing slots.

    Attributes:
        max_concurrent: Jobs processed at once across all subjects.
        max_per_subject: Jobs processed at once for a single subject.
        completed: Jobs that finished successfully.
        failed: Jobs that raised (timeouts included).
        timed_out: Jobs cancelled by their timeout.
    """

    def __init__(self, max_concurrent: int = 2, max_per_subject: int = 2) -> None:
        if max_concurrent < 1 or max_per_subject < 1:
            raise ValueError("Job limits must be positive")
        self.max_concurrent = max_concurrent
        self.max_per_subject = max_per_subject
        self._cond = asyncio.Condition()
        self._active = 0
        self._per_subject: dict[int | str, int] = {}
        self._waiting: list[object] = []
        self.completed = 0
        self.failed = 0
        self.timed_out = 0

    @property
    def active(self) -> int:
        """Jobs currently holding a slot."""
        return self._active

    @property
    def queued(self) -> int:
        """Jobs waiting for a slot."""
        return len(self._waiting)

    def active_for(self, subject: int | str) -> int:
        """Jobs currently holding a slot for a subject."""
        return self._per_subject.get(subject, 0)

    def has_capacity(self, subject: int | str) -> bool:
        """Whether a job for the subject would start without waiting."""
        return not self._waiting and self._fits(subject)

    def _fits(self, subject: int | str) -> bool:
        return self._active < self.max_concurrent and self.active_for(subject) < self.max_per_subject

    @contextlib.asynccontextmanager
    async def slot(self, subject: int | str) -> AsyncIterator[None]:
        """Hold a processing slot for the duration of the block.

        Args:
            subject: Who the job runs for, usually the chat ID.
        """
        ticket = object()
        self._waiting.append(ticket)
        try:
            async with self._cond:
                await self._cond.wait_for(lambda: self._fits(subject))
                self._active += 1
                self._per_subject[subject] = self.active_for(subject) + 1
        finally:
            self._waiting.remove(ticket)

        try:
            yield
        finally:
            self._active -= 1
            remaining = self.active_for(subject) - 1
            if remaining > 0:
                self._per_subject[subject] = remaining
            else:
                self._per_subject.pop(subject, None)
            await self._wake()

    async def _wake(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    async def run(
        self,
        subject: int | str,
        job: Callable[[], Awaitable[T]],
        timeout: float,
        provider: str = "job",
    ) -> T:
        """Run a job inside a slot with a timeout.

        Args:
            subject: Who the job runs for.
            job: Coroutine factory performing the work.
            timeout: Seconds the job may run once it holds a slot.
            provider: Upstream name used in the timeout error.

        Returns:
            The job's result.

        Raises:
            UpstreamUnavailableError: If the job timed out.
        """
        async with self.slot(subject):
            try:
                async with asyncio.timeout(timeout):
                    result = await job()
            except TimeoutError:
                self.timed_out += 1
                self.failed += 1
                logger.warning(
                    "Job timed out",
                    extra={"subject": subject, "provider": provider, "timeout": timeout},
                )
                raise UpstreamUnavailableError(provider, message=f"'{provider}' timed out") from None
            except Exception:
                self.failed += 1
                raise

        self.completed += 1
        return result

    def stats(self) -> dict[str, int]:
        """Get counters for the admin statistics command."""
        return {
            "jobs_active": self._active,
            "jobs_queued": self.queued,
            "jobs_completed": self.completed,
            "jobs_failed": self.failed,
            "jobs_timed_out": self.timed_out,
        }


async def _tick_loop(tick: Callable[[], Awaitable[object]], interval: float) -> None:
    try:
        while True:
            await asyncio.sleep(interval)
            await tick()
    except asyncio.CancelledError:
        pass
    except Exception as e:
        # Best-effort: a failing ticker must not fail the job
        logger.warning("Keep-alive error", extra={"error": str(e)})


@contextlib.asynccontextmanager
async def keep_alive(
    tick: Callable[[], Awaitable[object]],
    interval: float = 5.0,
) -> AsyncIterator[None]:
    """Call ``tick`` every ``interval`` seconds while the block runs.

    The ticker is cancelled on success, error and external cancellation.

    Args:
        tick: Coroutine factory, e.g. sending a "typing" chat action.
        interval: Seconds between ticks.
    """
    task = asyncio.create_task(_tick_loop(tick, interval))
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
