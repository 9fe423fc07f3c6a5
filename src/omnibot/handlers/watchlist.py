"""Browsing saved movies.

``/watchlist`` lists the chat's saved movies five to a page. Every button
carries the movie ID and page it acts on, so browsing needs no session; the
list itself lives in the persistent watchlist store.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from aiogram.filters.callback_data import CallbackData

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import EventKind
from omnibot.gateway import Button
from omnibot.handlers.common import policy_for
from omnibot.registry import CallbackPrefix, CommandRegistry
from omnibot.watchlist import WatchlistEntry

logger = logging.getLogger(__name__)

ITEMS_PER_PAGE = 5

MAX_TITLE_LENGTH = 40

LIST_TEXT = "🎬 Your Watchlist\nHere are the movies in your watchlist:"
EMPTY_TEXT = (
    "📝 Your watchlist is empty. Use the \"Add to Watchlist\" button on a /whattowatch "
    "recommendation to save movies!"
)


class WatchlistCallback(CallbackData, prefix="wl"):
    """Watchlist button: ``info``, ``remove`` or ``page``."""

    action: str
    movie_id: str = ""
    page: int = 0


def clamp_page(page: int, total: int) -> int:
    last_page = max(0, (total - 1) // ITEMS_PER_PAGE)
    return min(max(page, 0), last_page)


def watchlist_keyboard(entries: list[WatchlistEntry], page: int = 0) -> list[list[Button]]:
    page = clamp_page(page, len(entries))
    start = page * ITEMS_PER_PAGE
    end = start + ITEMS_PER_PAGE

    rows: list[list[Button]] = []
    for entry in entries[start:end]:
        title = entry.title if len(entry.title) <= MAX_TITLE_LENGTH else entry.title[: MAX_TITLE_LENGTH - 1] + "…"
        rows.append(
            [
                Button(f"🎬 {title}", WatchlistCallback(action="info", movie_id=entry.movie_id, page=page).pack()),
                Button("❌ Remove", WatchlistCallback(action="remove", movie_id=entry.movie_id, page=page).pack()),
            ]
        )

    nav: list[Button] = []
    if page > 0:
        nav.append(Button("⬅️ Previous", WatchlistCallback(action="page", page=page - 1).pack()))
    if end < len(entries):
        nav.append(Button("➡️ Next", WatchlistCallback(action="page", page=page + 1).pack()))
    if nav:
        rows.append(nav)
    return rows


async def show_page(ctx: HandlerContext, entries: list[WatchlistEntry], page: int) -> None:
    """Redraw the list's buttons in place, or the empty notice when nothing is left."""
    if not entries:
        await ctx.edit(EMPTY_TEXT)
    elif ctx.message_id is None:
        await ctx.reply(LIST_TEXT, keyboard=watchlist_keyboard(entries, page))
    else:
        await ctx.gateway.edit_reply_markup(ctx.chat_id, ctx.message_id, watchlist_keyboard(entries, page))


async def watchlist_command(ctx: HandlerContext) -> None:
    entries = ctx.services.watchlist.get(ctx.chat_id)
    if not entries:
        await ctx.reply(EMPTY_TEXT)
        return
    await ctx.reply(LIST_TEXT, keyboard=watchlist_keyboard(entries))


async def watchlist_callback(ctx: HandlerContext) -> None:
    data = WatchlistCallback.unpack(ctx.event.text)
    store = ctx.services.watchlist

    if data.action == "page":
        await ctx.answer()
        await show_page(ctx, store.get(ctx.chat_id), data.page)
    elif data.action == "remove":
        if not store.remove(ctx.chat_id, data.movie_id):
            await ctx.answer("❌ Movie not found in watchlist", show_alert=True)
            return
        logger.info("Movie removed from watchlist", extra={"chat_id": ctx.chat_id, "movie_id": data.movie_id})
        await ctx.answer("✅ Movie removed from your watchlist!", show_alert=True)
        await show_page(ctx, store.get(ctx.chat_id), data.page)
    elif data.action == "info":
        entry = store.find(ctx.chat_id, data.movie_id)
        if entry is None:
            await ctx.answer("❌ Movie not found in watchlist", show_alert=True)
            return
        added = datetime.fromtimestamp(entry.added_at, UTC).strftime("%Y-%m-%d")
        await ctx.answer(f"🎬 {entry.title}\n📅 Added: {added}", show_alert=True)
    else:
        await ctx.answer("❌ Invalid action", show_alert=True)


def register(registry: CommandRegistry, settings: Settings) -> None:
    policy = policy_for(settings, "watchlist")
    registry.command(
        "watchlist",
        "wl",
        policy=policy,
        description="Browse your saved movies",
    )(watchlist_command)
    registry.add(
        "watchlist_button",
        EventKind.CALLBACK_QUERY,
        CallbackPrefix("wl"),
        watchlist_callback,
        policy=policy,
    )
