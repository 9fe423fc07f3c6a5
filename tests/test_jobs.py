"""Tests for the job queue and keep-alive ticker."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from omnibot.exceptions import UpstreamUnavailableError
from omnibot.jobs import JobQueue, keep_alive


class TestJobQueue:
    """Tests for JobQueue."""

    def test_invalid_limits(self) -> None:
        with pytest.raises(ValueError):
            JobQueue(max_concurrent=0)
        with pytest.raises(ValueError):
            JobQueue(max_per_subject=0)

    @pytest.mark.asyncio
    async def test_run_returns_result(self) -> None:
        queue = JobQueue()

        async def job() -> str:
            return "done"

        assert await queue.run(1, job, timeout=1.0) == "done"
        assert queue.completed == 1
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_global_limit(self) -> None:
        """No more than max_concurrent jobs hold a slot at once."""
        queue = JobQueue(max_concurrent=2, max_per_subject=5)
        release = asyncio.Event()
        peak = 0

        async def job() -> None:
            nonlocal peak
            peak = max(peak, queue.active)
            await release.wait()

        tasks = [asyncio.create_task(queue.run(subject, job, timeout=5.0)) for subject in range(5)]
        for _ in range(5):
            await asyncio.sleep(0)

        assert queue.active == 2
        assert queue.queued == 3
        assert queue.has_capacity(99) is False

        release.set()
        await asyncio.gather(*tasks)

        assert peak == 2
        assert queue.completed == 5
        assert queue.active == 0
        assert queue.queued == 0

    @pytest.mark.asyncio
    async def test_per_subject_limit(self) -> None:
        """One subject cannot take every global slot."""
        queue = JobQueue(max_concurrent=3, max_per_subject=1)
        release = asyncio.Event()

        async def job() -> None:
            await release.wait()

        first = asyncio.create_task(queue.run(7, job, timeout=5.0))
        second = asyncio.create_task(queue.run(7, job, timeout=5.0))
        for _ in range(5):
            await asyncio.sleep(0)

        assert queue.active_for(7) == 1
        assert queue.queued == 1

        other = asyncio.create_task(queue.run(8, job, timeout=5.0))
        for _ in range(5):
            await asyncio.sleep(0)
        assert queue.active == 2

        release.set()
        await asyncio.gather(first, second, other)
        assert queue.active_for(7) == 0

    @pytest.mark.asyncio
    async def test_timeout_maps_to_upstream_error(self) -> None:
        queue = JobQueue()

        async def job() -> None:
            await asyncio.sleep(10)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await queue.run(1, job, timeout=0.01, provider="huggingface")

        assert exc_info.value.provider == "huggingface"
        assert queue.timed_out == 1
        assert queue.failed == 1
        assert queue.active == 0

    @pytest.mark.asyncio
    async def test_failure_releases_slot(self) -> None:
        queue = JobQueue(max_concurrent=1, max_per_subject=1)

        async def job() -> None:
            raise RuntimeError("broken")

        with pytest.raises(RuntimeError):
            await queue.run(1, job, timeout=1.0)

        assert queue.failed == 1
        assert queue.has_capacity(1) is True

    def test_stats(self) -> None:
        assert JobQueue().stats() == {
            "jobs_active": 0,
            "jobs_queued": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
            "jobs_timed_out": 0,
        }


class TestKeepAlive:
    """Tests for keep_alive()."""

    @pytest.mark.asyncio
    async def test_ticks_while_running(self) -> None:
        tick = AsyncMock()
        async with keep_alive(tick, interval=0.01):
            await asyncio.sleep(0.05)
        assert tick.await_count >= 2

    @pytest.mark.asyncio
    async def test_stops_after_block(self) -> None:
        tick = AsyncMock()
        async with keep_alive(tick, interval=0.01):
            pass
        await asyncio.sleep(0.03)
        tick.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_on_error(self) -> None:
        tick = AsyncMock()
        with pytest.raises(ValueError):
            async with keep_alive(tick, interval=0.01):
                raise ValueError("job failed")
        await asyncio.sleep(0.03)
        tick.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_fail_block(self) -> None:
        tick = AsyncMock(side_effect=RuntimeError("edit failed"))
        async with keep_alive(tick, interval=0.01):
            await asyncio.sleep(0.03)
        assert tick.await_count == 1
