"""Omnibot - Telegram bot with command routing, sessions and rate limiting."""

__version__ = "1.0.0"

from omnibot.config import Settings
from omnibot.dispatcher import DispatchResult, Dispatcher, HandlerContext, Services
from omnibot.metrics import Metrics
from omnibot.rate_limiter import RateLimitPolicy, SlidingWindowRateLimiter
from omnibot.registry import CommandDescriptor, CommandRegistry
from omnibot.sessions import SessionStore

__all__ = [
    "CommandDescriptor",
    "CommandRegistry",
    "DispatchResult",
    "Dispatcher",
    "HandlerContext",
    "Metrics",
    "RateLimitPolicy",
    "Services",
    "SessionStore",
    "Settings",
    "SlidingWindowRateLimiter",
    "__version__",
]
