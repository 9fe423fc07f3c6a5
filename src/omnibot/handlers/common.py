"""Helpers shared by feature handlers."""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.exceptions import UpstreamUnavailableError
from omnibot.http import ApiClient
from omnibot.rate_limiter import RateLimitPolicy

# Spinner shown while a long job runs
SPINNER_FRAMES = ("◜", "◝", "◞", "◟")

# Seconds between spinner edits; Telegram throttles faster edits
SPINNER_INTERVAL = 2.0


def policy_for(settings: Settings, name: str) -> RateLimitPolicy:
    """Per-user policy for a command, falling back to the default budget."""
    return RateLimitPolicy.from_config(settings.rate_limit_for(name), action=name)


def spinner(ctx: HandlerContext, message_id: int, label: str) -> Callable[[], Awaitable[None]]:
    """Build a ticker that animates a status message."""
    frames = itertools.cycle(SPINNER_FRAMES)

    async def tick() -> None:
        await ctx.gateway.edit_message_text(ctx.chat_id, message_id, f"{label} {next(frames)}")

    return tick


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def client(ctx: HandlerContext) -> ApiClient:
    """The shared HTTP client, or an upstream failure if there is none."""
    if ctx.services.http is None:
        raise UpstreamUnavailableError("http", message="HTTP client is not available")
    return ctx.services.http
