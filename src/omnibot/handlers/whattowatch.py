"""Movie recommendations from TMDB via a genre/rating picker.

``/whattowatch`` starts a ``whattowatch`` session holding the selected genre
and minimum rating. Every button press requires that session to still exist.
"""

from __future__ import annotations

import logging
import random
from typing import Any

from aiogram.filters.callback_data import CallbackData

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import EventKind
from omnibot.exceptions import MalformedInputError, UpstreamUnavailableError
from omnibot.gateway import Button
from omnibot.handlers.common import client, policy_for
from omnibot.registry import CallbackPrefix, CommandRegistry

logger = logging.getLogger(__name__)

FLOW = "whattowatch"

GENRE_LIST_URL = "https://api.themoviedb.org/3/genre/movie/list"
DISCOVER_URL = "https://api.themoviedb.org/3/discover/movie"
POSTER_URL = "https://image.tmdb.org/t/p/w500{path}"

RANDOM_GENRE = "random"

# Button key -> (label, TMDB genre name)
GENRES: dict[str, tuple[str, str | None]] = {
    "action": ("💥 Action", "Action"),
    "comedy": ("😂 Comedy", "Comedy"),
    "drama": ("🎭 Drama", "Drama"),
    "horror": ("👻 Horror", "Horror"),
    "scifi": ("🚀 Sci-Fi", "Science Fiction"),
    "romance": ("❤️ Romance", "Romance"),
    "thriller": ("😱 Thriller", "Thriller"),
    "fantasy": ("🔮 Fantasy", "Fantasy"),
    RANDOM_GENRE: ("🎲 Random", None),
}

RATINGS: dict[int, str] = {
    0: "Any Rating",
    7: "7+ Rating",
    8: "8+ Rating",
    9: "9+ Rating",
}

MIN_VOTE_COUNT = 1000

MENU_TEXT = "🎬 What would you like to watch?\nSelect your preferences to get a movie recommendation!"


class WatchCallback(CallbackData, prefix="wtw"):
    """Picker button; ``value`` carries the selected genre key or rating."""

    action: str
    value: str = ""


def _button(text: str, action: str, value: str = "") -> Button:
    return Button(text, WatchCallback(action=action, value=value).pack())


def menu_keyboard(selection: dict[str, Any]) -> list[list[Button]]:
    genre = selection.get("genre")
    rating = selection.get("rating")
    genre_text = f"🎭 Genre: {GENRES[genre][0].split(' ', 1)[1]}" if genre in GENRES else "🎭 Genre: Not Selected"
    rating_text = f"⭐ Rating: {RATINGS[rating]}" if rating in RATINGS else "⭐ Rating: Not Selected"
    return [
        [_button(genre_text, "genres"), _button(rating_text, "ratings")],
        [_button("🎬 Get Recommendation", "go")],
    ]


def genre_keyboard() -> list[list[Button]]:
    buttons = [_button(label, "genre", key) for key, (label, _) in GENRES.items()]
    rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
    rows.append([_button("↩️ Back", "back")])
    return rows


def rating_keyboard() -> list[list[Button]]:
    rows = [[_button(label, "rating", str(value))] for value, label in RATINGS.items()]
    rows.append([_button("↩️ Back", "back")])
    return rows


def format_movie(movie: dict[str, Any]) -> str:
    year = (movie.get("release_date") or "")[:4]
    parts = [f"⭐ {movie['vote_average']:.1f}/10" if movie.get("vote_average") else "Rating N/A"]
    if year:
        parts.append(f"📅 {year}")
    text = f"🎬 {movie.get('title', 'Unknown')}\n\n{' | '.join(parts)}\n\n{movie.get('overview') or ''}"
    return text.strip()[:1024]


async def discover_movie(ctx: HandlerContext, genre: str, min_rating: int) -> dict[str, Any]:
    """Pick a random well-rated movie of a genre.

    Raises:
        UpstreamUnavailableError: If TMDB fails or has nothing matching.
    """
    api_key = ctx.settings.tmdb_api_key
    if api_key is None:
        raise UpstreamUnavailableError("tmdb", message="TMDB API key is not configured")
    key = api_key.get_secret_value()

    if genre == RANDOM_GENRE:
        genre = random.choice([name for name in GENRES if name != RANDOM_GENRE])
    tmdb_genre = GENRES[genre][1]

    http = client(ctx)
    genres = await http.get_json(GENRE_LIST_URL, params={"api_key": key}, provider="tmdb")
    genre_id = next(
        (g.get("id") for g in (genres or {}).get("genres", []) if g.get("name") == tmdb_genre),
        None,
    )
    if genre_id is None:
        raise UpstreamUnavailableError("tmdb", status=404, message=f"TMDB genre not found: {tmdb_genre}")

    data = await http.get_json(
        DISCOVER_URL,
        params={
            "api_key": key,
            "with_genres": genre_id,
            "vote_average.gte": min_rating,
            "vote_count.gte": MIN_VOTE_COUNT,
            "sort_by": "vote_average.desc",
            "page": random.randint(1, 5),
        },
        provider="tmdb",
    )
    results = (data or {}).get("results") or []
    if not results:
        raise UpstreamUnavailableError("tmdb", status=404, message="No movies found matching criteria")
    return random.choice(results)


async def whattowatch_command(ctx: HandlerContext) -> None:
    selection: dict[str, Any] = {"genre": None, "rating": None}
    ctx.save_session(selection)
    await ctx.reply(MENU_TEXT, keyboard=menu_keyboard(selection))


async def recommend(ctx: HandlerContext, selection: dict[str, Any]) -> None:
    await ctx.answer("🎬 Finding a movie...")
    movie = await discover_movie(ctx, selection["genre"], selection["rating"])
    logger.info("Movie recommended", extra={"chat_id": ctx.chat_id, "title": movie.get("title")})

    keyboard = [[_button("🎲 Try Another", "another")]]
    if movie.get("id") is not None:
        movie_id = str(movie["id"])
        # The card's movie, so "Add to Watchlist" can save its title
        selection["last"] = {"id": movie_id, "title": movie.get("title") or "Unknown"}
        ctx.save_session(selection)
        keyboard.append([_button("📝 Add to Watchlist", "save", movie_id)])

    caption = format_movie(movie)
    if movie.get("poster_path"):
        await ctx.gateway.send_photo(
            ctx.chat_id, POSTER_URL.format(path=movie["poster_path"]), caption=caption, keyboard=keyboard
        )
        if ctx.message_id is not None:
            await ctx.gateway.delete_message(ctx.chat_id, ctx.message_id)
    else:
        await ctx.edit(caption, keyboard=keyboard)


async def save_to_watchlist(ctx: HandlerContext, selection: dict[str, Any], movie_id: str) -> None:
    last = selection.get("last") or {}
    if last.get("id") != movie_id:
        await ctx.answer("❌ Movie not found. Get a new recommendation first.", show_alert=True)
        return

    if ctx.services.watchlist.add(ctx.chat_id, movie_id, last["title"]):
        logger.info("Movie added to watchlist", extra={"chat_id": ctx.chat_id, "movie_id": movie_id})
        await ctx.answer("✅ Added to your watchlist! See it with /watchlist")
    else:
        await ctx.answer("📝 Already in your watchlist")


async def whattowatch_callback(ctx: HandlerContext) -> None:
    data = WatchCallback.unpack(ctx.event.text)
    selection = dict(ctx.session)

    if data.action == "genres":
        await ctx.edit("🎭 Select a Genre:\nChoose your preferred movie genre:", keyboard=genre_keyboard())
    elif data.action == "ratings":
        await ctx.edit(
            "⭐ Select Minimum Rating:\nChoose the minimum rating for recommendations:",
            keyboard=rating_keyboard(),
        )
    elif data.action == "genre":
        if data.value not in GENRES:
            raise MalformedInputError("Unknown genre")
        selection["genre"] = data.value
        ctx.save_session(selection)
        await ctx.edit(MENU_TEXT, keyboard=menu_keyboard(selection))
    elif data.action == "rating":
        if not data.value.isdigit() or int(data.value) not in RATINGS:
            raise MalformedInputError("Unknown rating")
        selection["rating"] = int(data.value)
        ctx.save_session(selection)
        await ctx.edit(MENU_TEXT, keyboard=menu_keyboard(selection))
    elif data.action == "back":
        await ctx.edit(MENU_TEXT, keyboard=menu_keyboard(selection))
    elif data.action in ("go", "another"):
        # Rating 0 ("Any") is a valid choice
        if selection.get("genre") is None or selection.get("rating") is None:
            await ctx.answer("⚠️ Please select both genre and rating first!", show_alert=True)
            return
        ctx.sessions.touch(ctx.session_key)
        await recommend(ctx, selection)
    elif data.action == "save":
        await save_to_watchlist(ctx, selection, data.value)
    else:
        await ctx.answer("❌ Invalid action", show_alert=True)


def register(registry: CommandRegistry, settings: Settings) -> None:
    policy = policy_for(settings, "whattowatch")
    registry.command(
        "whattowatch",
        "wtw",
        policy=policy,
        session_flow=FLOW,
        description="Get a movie recommendation",
    )(whattowatch_command)
    registry.add(
        "whattowatch_select",
        EventKind.CALLBACK_QUERY,
        CallbackPrefix("wtw"),
        whattowatch_callback,
        policy=policy,
        session_flow=FLOW,
        requires_session=True,
    )
