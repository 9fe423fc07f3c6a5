"""Administrator commands: panel, access mode and statistics."""

from __future__ import annotations

from omnibot.access import AccessMode
from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.metrics import format_stats_message
from omnibot.registry import CommandRegistry

MODE_LABELS = {
    AccessMode.PUBLIC: "🌐 Public",
    AccessMode.PRIVATE: "🔒 Private",
}


async def admin_panel(ctx: HandlerContext) -> None:
    mode = MODE_LABELS[ctx.services.access.mode]
    await ctx.reply(
        "🛠 Admin Commands\n\n"
        "Access Control\n"
        "/access public - Switch to public mode\n"
        "/access private - Switch to private mode\n"
        f"Current mode: {mode}\n\n"
        "System\n"
        "/stats - View bot statistics"
    )


async def access_command(ctx: HandlerContext) -> None:
    access = ctx.services.access
    requested = ctx.args.strip().lower()

    if not requested:
        await ctx.reply(
            f"Current access mode: {MODE_LABELS[access.mode]}\n\n"
            "Use /access [public|private] to change the mode."
        )
        return

    # InvalidAccessModeError surfaces with its usage hint
    mode = access.set_access_mode(requested)
    emoji = "🌐" if mode is AccessMode.PUBLIC else "🔒"
    await ctx.reply(f"{emoji} Bot access mode changed to {mode.value}.")


async def stats_command(ctx: HandlerContext) -> None:
    services = ctx.services
    extra: dict[str, object] = {
        "Rate-limit windows": services.rate_limiter.key_count(),
        "Subscribed chats": len(services.subscriptions.all()),
        "Watchlist movies": services.watchlist.count(),
        "Active jobs": services.jobs.active,
        "Queued jobs": services.jobs.queued,
    }
    if services.scheduler is not None:
        extra["Armed timers"] = services.scheduler.timer_count()

    await ctx.reply(
        format_stats_message(
            services.metrics,
            access_mode=services.access.mode.value,
            session_stats=services.sessions.stats(),
            extra=extra,
        )
    )


def register(registry: CommandRegistry, settings: Settings) -> None:
    registry.command("admin", admin_only=True, description="Admin panel")(admin_panel)
    registry.command("access", admin_only=True)(access_command)
    registry.command("stats", admin_only=True)(stats_command)
