"""Daily content subscriptions: /subscribe, /unsubscribe, /mysubs.

Changes go through ``SubscriptionStore``, whose listener re-arms the
affected chat's timers in the scheduler.
"""

from __future__ import annotations

import re
from zoneinfo import ZoneInfo

from aiogram.filters.callback_data import CallbackData

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import EventKind
from omnibot.exceptions import MalformedInputError
from omnibot.gateway import Button
from omnibot.handlers.common import policy_for
from omnibot.registry import CallbackPrefix, CommandRegistry
from omnibot.subscriptions import (
    format_time_12h,
    parse_time,
    resolve_content_type,
    split_time_tokens,
    validate_timezone,
)

ALL = "all"

ARG_SEPARATOR = re.compile(r"[\s,]+")

SUBSCRIBE_HELP = (
    "Please specify what you want to subscribe to and at what time(s).\n"
    "Example: /subscribe facts 08:00, 13:00\n"
    "Or: /sub memes 8pm\n"
    "Optionally end with a timezone: /sub jokes 9:00 Europe/Paris\n\n"
    "Available content types:\n"
    "• facts, fact, /facts, /ft\n"
    "• jokes, joke, /jokes, /jk\n"
    "• memes, meme, /memes, /mm"
)

SUBSCRIBE_EXAMPLES = (
    "To add a new subscription, use:\n"
    "/sub [type] [time] [timezone]\n\n"
    "Examples:\n"
    "• /sub meme 9:00\n"
    "• /sub fact 14:30\n"
    "• /sub joke 8pm America/New_York"
)

NO_SUBSCRIPTIONS = "You have no active subscriptions."


class UnsubscribeCallback(CallbackData, prefix="unsub"):
    """Cancel button; ``content`` is a content type or ``all``."""

    content: str


class SubscribeCallback(CallbackData, prefix="sub"):
    action: str


def _looks_like_timezone(token: str) -> bool:
    return "/" in token.strip("/") or token.upper() == "UTC"


def parse_subscribe_args(args: str) -> tuple[str, list[str], str | None]:
    """Split ``/subscribe`` arguments into content type, times and timezone.

    Args:
        args: Raw argument text, e.g. ``"facts 08:00, 8 pm Europe/Paris"``.

    Returns:
        Tuple of (content type, ``HH:mm`` times, timezone or None).

    Raises:
        MalformedInputError: If the type, times or timezone are invalid.
    """
    tokens = [t for t in ARG_SEPARATOR.split(args.strip()) if t]
    if len(tokens) < 2:
        raise MalformedInputError(
            "Please provide both content type and time(s)", usage="/subscribe facts 08:00"
        )

    content_type = resolve_content_type(tokens[0])
    if content_type is None:
        raise MalformedInputError("Invalid subscription type. Please use fact, joke, or meme.")

    timezone: str | None = None
    rest = tokens[1:]
    if rest and _looks_like_timezone(rest[-1]) and parse_time(rest[-1]) is None:
        timezone = validate_timezone("UTC" if rest[-1].upper() == "UTC" else rest[-1])
        rest = rest[:-1]

    times = [t for t in (parse_time(token) for token in split_time_tokens(rest)) if t]
    if not times:
        raise MalformedInputError(
            "Please provide valid times in 24h format (HH:mm) or 12h format (e.g., 8pm)",
            usage="/subscribe facts 08:00",
        )
    return content_type, times, timezone


def _join_times(times: list[str]) -> str:
    return ", ".join(format_time_12h(t) for t in times)


async def subscribe_command(ctx: HandlerContext) -> None:
    if not ctx.args.strip():
        await ctx.reply(SUBSCRIBE_HELP)
        return

    content_type, times, timezone = parse_subscribe_args(ctx.args)
    added, existing = ctx.services.subscriptions.add_times(ctx.chat_id, content_type, times, timezone)

    if not added:
        await ctx.reply(f"You already have {content_type} subscriptions at: {_join_times(existing)}")
        return

    plural = "s" if len(added) > 1 else ""
    tz = ctx.services.subscriptions.get(ctx.chat_id)[content_type].timezone
    await ctx.reply(
        f"✅ Added {content_type} subscription{plural} at: {_join_times(added)} ({tz})",
        keyboard=[[Button("Cancel Subscription", UnsubscribeCallback(content=content_type).pack())]],
    )


async def unsubscribe_command(ctx: HandlerContext) -> None:
    store = ctx.services.subscriptions
    if not store.get(ctx.chat_id):
        await ctx.reply(NO_SUBSCRIPTIONS)
        return

    requested = ctx.args.strip()
    if not requested:
        store.remove(ctx.chat_id)
        await ctx.reply("✅ Unsubscribed from all daily content.")
        return

    content_type = resolve_content_type(requested)
    if content_type is None or not store.remove(ctx.chat_id, content_type):
        await ctx.reply("You are not subscribed to this content type.")
        return
    await ctx.reply(f"✅ Unsubscribed from daily {content_type}s.")


async def mysubs_command(ctx: HandlerContext) -> None:
    subs = ctx.services.subscriptions.get(ctx.chat_id)
    if not subs:
        await ctx.reply(NO_SUBSCRIPTIONS)
        return

    scheduler = ctx.services.scheduler
    jobs = scheduler.scheduled_jobs(ctx.chat_id) if scheduler is not None else []

    lines = ["Your Active Subscriptions:", ""]
    for content_type, sub in subs.items():
        lines.append(f"{content_type.capitalize()}s")
        lines.append(f"├ Times: {_join_times(sub.times)}")
        lines.append(f"└ Timezone: {sub.timezone}")
        lines.append("")

    if jobs:
        job = jobs[0]
        local = job.next_run.astimezone(ZoneInfo(job.timezone))
        at = format_time_12h(local.strftime("%H:%M"))
        lines.append(f"Next delivery: {job.content_type} on {local:%a %b %d} at {at}")
        lines.append("")

    lines.append("Use /unsubscribe to cancel any subscription")
    await ctx.reply(
        "\n".join(lines),
        keyboard=[
            [
                Button("➕ Add New", SubscribeCallback(action="new").pack()),
                Button("❌ Remove All", UnsubscribeCallback(content=ALL).pack()),
            ]
        ],
    )


async def unsubscribe_callback(ctx: HandlerContext) -> None:
    data = UnsubscribeCallback.unpack(ctx.event.text)
    store = ctx.services.subscriptions

    if data.content == ALL:
        store.remove(ctx.chat_id)
        await ctx.edit(
            "✅ All subscriptions have been cancelled.",
            keyboard=[[Button("➕ Subscribe Again", SubscribeCallback(action="new").pack())]],
        )
        return

    content_type = resolve_content_type(data.content)
    if content_type is None or not store.remove(ctx.chat_id, content_type):
        await ctx.answer("You are not subscribed to this content type.", show_alert=True)
        return
    await ctx.edit(f"✅ Unsubscribed from daily {content_type}s.")


async def subscribe_callback(ctx: HandlerContext) -> None:
    data = SubscribeCallback.unpack(ctx.event.text)
    if data.action != "new":
        raise MalformedInputError("Unknown subscription action")
    await ctx.answer()
    await ctx.reply(SUBSCRIBE_EXAMPLES)


def register(registry: CommandRegistry, settings: Settings) -> None:
    policy = policy_for(settings, "subscribe")
    registry.command("subscribe", "sub", policy=policy, description="Subscribe to daily content")(
        subscribe_command
    )
    registry.command("unsubscribe", "unsub", policy=policy, description="Cancel daily content")(
        unsubscribe_command
    )
    registry.command("mysubs", "list", policy=policy, description="List your subscriptions")(mysubs_command)
    registry.add("unsubscribe_button", EventKind.CALLBACK_QUERY, CallbackPrefix("unsub"), unsubscribe_callback)
    registry.add("subscribe_button", EventKind.CALLBACK_QUERY, CallbackPrefix("sub"), subscribe_callback)
