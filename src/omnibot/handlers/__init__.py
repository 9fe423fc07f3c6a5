"""Feature handlers and registry assembly.

Registration order is the matching order: commands first, then callbacks,
then the kind-wide listeners (voice, plain text) that must come last.
"""

from __future__ import annotations

from omnibot.config import Settings
from omnibot.handlers import (
    admin,
    basic,
    content,
    extract,
    imagine,
    movie,
    subscribe,
    transcribe,
    translate,
    watchlist,
    whattowatch,
)
from omnibot.handlers.common import policy_for
from omnibot.registry import CommandRegistry


def build_registry(settings: Settings) -> CommandRegistry:
    """Register every feature handler in matching order.

    Args:
        settings: Application settings (rate-limit budgets).

    Returns:
        A populated, not yet frozen registry.
    """
    registry = CommandRegistry()
    basic.register(registry, settings)
    admin.register(registry, settings)
    content.register(registry, settings)
    imagine.register(registry, settings)
    whattowatch.register(registry, settings)
    movie.register(registry, settings)
    watchlist.register(registry, settings)
    extract.register(registry, settings)
    subscribe.register(registry, settings)
    transcribe.register(registry, settings)
    translate.register(registry, settings)
    return registry


__all__ = ["build_registry", "policy_for"]
