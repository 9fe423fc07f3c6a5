"""Pytest configuration and shared fixtures.

This module provides fake clocks, a mocked gateway and HTTP client, and a
fully wired ``Services`` container for dispatcher and handler tests.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from omnibot.access import AccessControl
from omnibot.config import Settings
from omnibot.dispatcher import Dispatcher, Services
from omnibot.handlers import build_registry
from omnibot.jobs import JobQueue
from omnibot.metrics import Metrics
from omnibot.rate_limiter import SlidingWindowRateLimiter
from omnibot.sessions import SessionStore
from omnibot.subscriptions import SubscriptionStore
from omnibot.watchlist import WatchlistStore

ADMIN_ID = 1
PRIVILEGED_ID = 2
STRANGER_ID = 5


# ==============================================================================
# Fake clock
# ==============================================================================


class FakeClock:
    """Manually advanced clock in seconds, with a millisecond view."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def ms(self) -> float:
        return self.now * 1000.0

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Fresh fake clock."""
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Any) -> Settings:
    """Settings with test credentials and a temporary state directory."""
    return Settings(  # type: ignore[call-arg]
        _env_file=None,
        telegram_bot_token="test-token",
        admin_user_id=ADMIN_ID,
        privileged_user_ids=[PRIVILEGED_ID],
        state_dir=str(tmp_path),
        huggingface_token="hf-test",
        tmdb_api_key="tmdb-test",
        omdb_api_key="omdb-test",
        upstream_retry_base_delay=0.0,
    )


@pytest.fixture
def gateway() -> AsyncMock:
    """Mock gateway; sends return message ID 100."""
    mock = AsyncMock()
    mock.send_message.return_value = 100
    mock.send_photo.return_value = 101
    mock.download_file.return_value = b"OggS-voice"
    return mock


@pytest.fixture
def http() -> MagicMock:
    """Mock ApiClient with awaitable request methods."""
    mock = MagicMock()
    mock.get_json = AsyncMock()
    mock.post_json = AsyncMock()
    mock.post_bytes = AsyncMock()
    mock.get_json_from_mirrors = AsyncMock()
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def services(settings: Settings, clock: FakeClock, http: MagicMock) -> Services:
    """In-memory services driven by the fake clock."""
    return Services(
        settings=settings,
        access=AccessControl(ADMIN_ID, [PRIVILEGED_ID]),
        sessions=SessionStore(timeouts=settings.session_timeouts, clock=clock),
        rate_limiter=SlidingWindowRateLimiter(clock=clock.ms),
        metrics=Metrics(),
        subscriptions=SubscriptionStore(),
        jobs=JobQueue(max_concurrent=2, max_per_subject=2),
        watchlist=WatchlistStore(clock=clock),
        http=http,
    )


@pytest.fixture
def dispatcher(settings: Settings, gateway: AsyncMock, services: Services) -> Dispatcher:
    """Dispatcher over the full feature registry."""
    return Dispatcher(build_registry(settings), gateway, services)


def sent_texts(gateway: AsyncMock) -> list[str]:
    """Texts passed to ``send_message`` so far."""
    return [c.args[1] for c in gateway.send_message.await_args_list]
