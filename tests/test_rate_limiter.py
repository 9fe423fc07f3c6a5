"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeClock

from omnibot.config import RateLimitConfig
from omnibot.rate_limiter import (
    GLOBAL_SUBJECT,
    LimitScope,
    RateLimitKey,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
)


@pytest.fixture
def limiter(clock: FakeClock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(clock=clock.ms)


class SuspendingLimiter(SlidingWindowRateLimiter):
    """Limiter whose admission step yields between reading and writing a window."""

    async def _admit(self, key: RateLimitKey, max_requests: int, window_ms: int) -> bool:
        now = self.clock()
        live = self._live(key, window_ms, now)
        await asyncio.sleep(0)
        if len(live) >= max_requests:
            return False
        live.append(now)
        self.windows[key] = live
        return True


class TestCheck:
    """Tests for check()."""

    @pytest.mark.asyncio
    async def test_first_call_always_admitted(self, limiter: SlidingWindowRateLimiter) -> None:
        """A new key admits its first request."""
        assert await limiter.check(42, "meme", 1, 60000) is True

    @pytest.mark.asyncio
    async def test_budget_then_reject(self, limiter: SlidingWindowRateLimiter) -> None:
        """Exactly max_requests are admitted inside one window."""
        results = [await limiter.check(42, "meme", 8, 60000) for _ in range(9)]
        assert results == [True] * 8 + [False]

    @pytest.mark.asyncio
    async def test_rejection_does_not_mutate(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        """Rejected requests leave the window untouched."""
        await limiter.check(42, "a", 1, 1000)
        before = list(limiter.windows[(42, "a")])
        clock.advance(0.5)
        assert await limiter.check(42, "a", 1, 1000) is False
        assert limiter.windows[(42, "a")] == before

    @pytest.mark.asyncio
    async def test_exact_readmission_at_window_boundary(self) -> None:
        """An entry expires once now - entry >= window_ms."""
        now = [0]
        limiter = SlidingWindowRateLimiter(clock=lambda: now[0])

        assert await limiter.check(42, "a", 2, 1000) is True
        assert await limiter.check(42, "a", 2, 1000) is True
        now[0] = 999
        assert await limiter.check(42, "a", 2, 1000) is False
        now[0] = 1000
        assert await limiter.check(42, "a", 2, 1000) is True

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """Only the oldest expired entry frees capacity."""
        await limiter.check(42, "a", 2, 1000)
        clock.advance(0.6)
        await limiter.check(42, "a", 2, 1000)
        clock.advance(0.5)
        # First entry expired at t=1.0, second still live
        assert await limiter.check(42, "a", 2, 1000) is True
        assert await limiter.check(42, "a", 2, 1000) is False

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter: SlidingWindowRateLimiter) -> None:
        """Different subjects and actions have separate windows."""
        assert await limiter.check(1, "a", 1, 1000) is True
        assert await limiter.check(2, "a", 1, 1000) is True
        assert await limiter.check(1, "b", 1, 1000) is True
        assert await limiter.check(1, "a", 1, 1000) is False

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_over_admit(self, limiter: SlidingWindowRateLimiter) -> None:
        """Concurrent checks for one key admit exactly the budget."""
        results = await asyncio.gather(*(limiter.check(42, "imagine", 3, 60000) for _ in range(50)))
        assert sum(results) == 3
        assert len(limiter.windows[(42, "imagine")]) == 3

    @pytest.mark.asyncio
    async def test_key_lock_serializes_suspending_admission(self, clock: FakeClock) -> None:
        """Should admit exactly the budget even when admission suspends mid-update."""
        limiter = SuspendingLimiter(clock=clock.ms)

        results = await asyncio.gather(*(limiter.check(42, "imagine", 3, 60000) for _ in range(50)))

        assert sum(results) == 3
        assert len(limiter.windows[(42, "imagine")]) == 3


class TestGlobalAndPolicy:
    """Tests for check_global() and check_policy()."""

    @pytest.mark.asyncio
    async def test_global_window_shared(self, limiter: SlidingWindowRateLimiter) -> None:
        """The global window is keyed by action only."""
        assert await limiter.check_global("message", 2, 60000) is True
        assert await limiter.check_global("message", 2, 60000) is True
        assert await limiter.check_global("message", 2, 60000) is False
        assert (GLOBAL_SUBJECT, "message") in limiter.windows

    @pytest.mark.asyncio
    async def test_user_policy(self, limiter: SlidingWindowRateLimiter) -> None:
        """User-scoped policies count per subject under the default action."""
        policy = RateLimitPolicy(max_requests=1, window_ms=1000)
        assert await limiter.check_policy(policy, 7, "time") is True
        assert await limiter.check_policy(policy, 7, "time") is False
        assert await limiter.check_policy(policy, 8, "time") is True

    @pytest.mark.asyncio
    async def test_global_policy_with_action_override(self, limiter: SlidingWindowRateLimiter) -> None:
        """Global policies ignore the subject and use their own action."""
        policy = RateLimitPolicy(max_requests=1, window_ms=1000, scope=LimitScope.GLOBAL, action="msg")
        assert await limiter.check_policy(policy, 7, "ignored") is True
        assert await limiter.check_policy(policy, 8, "ignored") is False
        assert (GLOBAL_SUBJECT, "msg") in limiter.windows

    def test_policy_from_config(self) -> None:
        """Policies are built from settings entries."""
        policy = RateLimitPolicy.from_config(RateLimitConfig(requests=3, window_ms=60000), action="imagine")
        assert policy.max_requests == 3
        assert policy.window_ms == 60000
        assert policy.scope is LimitScope.USER
        assert policy.action == "imagine"


class TestRetryAfter:
    """Tests for retry_after()."""

    @pytest.mark.asyncio
    async def test_zero_when_admissible(self, limiter: SlidingWindowRateLimiter) -> None:
        """No wait when the window has room."""
        assert limiter.retry_after(42, "a", 2, 1000) == 0.0
        await limiter.check(42, "a", 2, 1000)
        assert limiter.retry_after(42, "a", 2, 1000) == 0.0

    @pytest.mark.asyncio
    async def test_time_until_oldest_expires(
        self, limiter: SlidingWindowRateLimiter, clock: FakeClock
    ) -> None:
        """Wait until the oldest blocking entry leaves the window."""
        await limiter.check(42, "a", 2, 60000)
        clock.advance(10)
        await limiter.check(42, "a", 2, 60000)
        clock.advance(5)
        assert limiter.retry_after(42, "a", 2, 60000) == pytest.approx(45.0)


class TestCleanup:
    """Tests for cleanup(), reset() and key_count()."""

    @pytest.mark.asyncio
    async def test_removes_only_idle_keys(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """Keys whose every entry is older than retention are removed."""
        await limiter.check(1, "old", 5, 60000)
        clock.advance(3601)
        await limiter.check(2, "recent", 5, 60000)

        assert limiter.cleanup(retention_ms=3_600_000) == 1
        assert (1, "old") not in limiter.windows
        assert (2, "recent") in limiter.windows

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, limiter: SlidingWindowRateLimiter, clock: FakeClock) -> None:
        """A second sweep removes nothing."""
        await limiter.check(1, "a", 5, 60000)
        clock.advance(7200)
        assert limiter.cleanup() == 1
        assert limiter.cleanup() == 0
        assert limiter.key_count() == 0

    @pytest.mark.asyncio
    async def test_reset_by_subject(self, limiter: SlidingWindowRateLimiter) -> None:
        """reset() forgets a subject's windows."""
        await limiter.check(1, "a", 1, 1000)
        await limiter.check(1, "b", 1, 1000)
        await limiter.check(2, "a", 1, 1000)

        limiter.reset(subject_id=1)

        assert limiter.key_count() == 1
        assert await limiter.check(1, "a", 1, 1000) is True

    @pytest.mark.asyncio
    async def test_reset_all(self, limiter: SlidingWindowRateLimiter) -> None:
        """reset() without filters forgets everything."""
        await limiter.check(1, "a", 1, 1000)
        await limiter.check_global("a", 1, 1000)
        limiter.reset()
        assert limiter.key_count() == 0

    @pytest.mark.asyncio
    async def test_cleanup_loop_cancellable(self, limiter: SlidingWindowRateLimiter) -> None:
        """The periodic sweep runs until cancelled."""
        task = asyncio.create_task(limiter.run_cleanup_loop(0.01))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
