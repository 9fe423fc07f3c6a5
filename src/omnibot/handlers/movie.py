"""Movie information from OMDB, with cast details from TMDB.

``/movie <title or IMDb ID>`` sends a movie card whose buttons list the cast.
The card's cast is kept in a ``movie`` session so an actor button can be
resolved without another OMDB lookup.
"""

from __future__ import annotations

import logging
import re
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

FLOW = "movie"

OMDB_URL = "https://www.omdbapi.com/"
IMDB_TITLE_URL = "https://www.imdb.com/title/{imdb_id}"
PERSON_SEARCH_URL = "https://api.themoviedb.org/3/search/person"
PERSON_URL = "https://api.themoviedb.org/3/person/{person_id}"
PROFILE_URL = "https://image.tmdb.org/t/p/w500{path}"

IMDB_ID_PATTERN = re.compile(r"^tt\d+$")

USAGE = "/movie <title or IMDb ID>, e.g. /movie The Matrix or /mv tt0133093"

# Telegram caption limit
MAX_CAPTION = 1024

MAX_BIOGRAPHY = 700


class MovieCallback(CallbackData, prefix="mv"):
    """Cast button; ``actor`` indexes the card's cast list."""

    imdb_id: str
    actor: int


def high_res_poster(url: str | None) -> str | None:
    """Ask the poster CDN for a larger rendition, or None without a poster."""
    if not url or url == "N/A":
        return None
    return url.replace("_SX300", "_SX1500").replace("_SY300", "_SY2000")


def split_actors(movie: dict[str, Any]) -> list[str]:
    actors = movie.get("Actors") or ""
    if actors == "N/A":
        return []
    return [name.strip() for name in actors.split(",") if name.strip()]


def format_movie_info(movie: dict[str, Any], plot: str | None = None) -> str:
    def field(key: str) -> str:
        value = movie.get(key)
        return value if value and value != "N/A" else "N/A"

    if plot is None:
        plot = movie.get("Plot") if movie.get("Plot") not in (None, "", "N/A") else "No plot available"
    return (
        f"📀 Title: {field('Title')}\n"
        f"{IMDB_TITLE_URL.format(imdb_id=field('imdbID'))}\n\n"
        f"🌟 Rating: {field('imdbRating')}/10\n"
        f"📆 Release: {field('Released')}\n"
        f"🎭 Genre: {field('Genre')}\n"
        f"🔊 Language: {field('Language')}\n"
        f"🎥 Director: {field('Director')}\n"
        f"🔆 Stars: {field('Actors')}\n\n"
        f"🗒 Storyline: {plot}"
    )


def movie_caption(movie: dict[str, Any]) -> str:
    """Movie info that fits a photo caption, shortening the plot if needed."""
    text = format_movie_info(movie)
    if len(text) <= MAX_CAPTION:
        return text
    first_sentence = (movie.get("Plot") or "").split(".")[0] + "."
    return format_movie_info(movie, plot=first_sentence)[:MAX_CAPTION]


def cast_keyboard(imdb_id: str, actors: list[str]) -> list[list[Button]]:
    buttons = [
        Button(name, MovieCallback(imdb_id=imdb_id, actor=i).pack()) for i, name in enumerate(actors)
    ]
    return [buttons[i : i + 2] for i in range(0, len(buttons), 2)]


def trim_biography(biography: str) -> str:
    """Cut a biography to the last full sentence within the limit."""
    if len(biography) <= MAX_BIOGRAPHY:
        return biography
    cut = biography[:MAX_BIOGRAPHY]
    last_period = cut.rfind(".")
    return cut[: last_period + 1] if last_period > 0 else cut


def format_actor_info(person: dict[str, Any]) -> str:
    biography = trim_biography(person.get("biography") or "No biography available")
    return (
        f"🎭 {person.get('name') or 'Unknown'}\n\n"
        f"🎂 Birthday: {person.get('birthday') or 'Unknown'}\n"
        f"📍 Place of Birth: {person.get('place_of_birth') or 'Unknown'}\n\n"
        f"📝 Biography:\n{biography}"
    )


async def fetch_movie(ctx: HandlerContext, query: str) -> dict[str, Any]:
    """Look a movie up by title or IMDb ID.

    Raises:
        UpstreamUnavailableError: If OMDB fails or knows no such movie.
    """
    api_key = ctx.settings.omdb_api_key
    if api_key is None:
        raise UpstreamUnavailableError("omdb", message="OMDB API key is not configured")

    lookup = "i" if IMDB_ID_PATTERN.match(query) else "t"
    data = await client(ctx).get_json(
        OMDB_URL,
        params={"apikey": api_key.get_secret_value(), lookup: query, "plot": "short"},
        provider="omdb",
    )
    if not data or data.get("Response") == "False":
        error = (data or {}).get("Error") or "Movie not found"
        raise UpstreamUnavailableError("omdb", status=404, message=error)
    return data


async def fetch_actor(ctx: HandlerContext, name: str) -> dict[str, Any]:
    """Find a person on TMDB and load their details.

    Raises:
        UpstreamUnavailableError: If TMDB fails or knows no such person.
    """
    api_key = ctx.settings.tmdb_api_key
    if api_key is None:
        raise UpstreamUnavailableError("tmdb", message="TMDB API key is not configured")
    key = api_key.get_secret_value()

    http = client(ctx)
    found = await http.get_json(
        PERSON_SEARCH_URL,
        params={"api_key": key, "query": name, "language": "en-US"},
        provider="tmdb",
    )
    results = (found or {}).get("results") or []
    if not results:
        raise UpstreamUnavailableError("tmdb", status=404, message=f"Actor not found: {name}")
    person = await http.get_json(
        PERSON_URL.format(person_id=results[0]["id"]), params={"api_key": key}, provider="tmdb"
    )
    return person or {}


async def movie_command(ctx: HandlerContext) -> None:
    query = ctx.args.strip()
    if not query:
        raise MalformedInputError("Please give me a movie title or IMDb ID", usage=USAGE)

    status_id = await ctx.reply("🔍 Searching for movie...")
    try:
        movie = await fetch_movie(ctx, query)
    finally:
        if status_id is not None:
            await ctx.gateway.delete_message(ctx.chat_id, status_id)

    imdb_id = movie.get("imdbID") or ""
    actors = split_actors(movie)
    keyboard = cast_keyboard(imdb_id, actors) if imdb_id and actors else None
    ctx.save_session({"imdb_id": imdb_id, "actors": actors})
    logger.info("Movie found", extra={"chat_id": ctx.chat_id, "imdb_id": imdb_id})

    poster = high_res_poster(movie.get("Poster"))
    if poster:
        await ctx.gateway.send_photo(ctx.chat_id, poster, caption=movie_caption(movie), keyboard=keyboard)
    else:
        await ctx.reply(format_movie_info(movie), keyboard=keyboard)


async def actor_selected(ctx: HandlerContext) -> None:
    data = MovieCallback.unpack(ctx.event.text)
    actors = ctx.session.get("actors") or []
    if ctx.session.get("imdb_id") != data.imdb_id or not 0 <= data.actor < len(actors):
        await ctx.answer("⚠️ Search for this movie again to see its cast.", show_alert=True)
        return

    name = actors[data.actor]
    await ctx.answer(f"🔍 Looking up {name}...")
    person = await fetch_actor(ctx, name)

    text = format_actor_info(person)
    if person.get("profile_path"):
        await ctx.gateway.send_photo(
            ctx.chat_id, PROFILE_URL.format(path=person["profile_path"]), caption=text[:MAX_CAPTION]
        )
    else:
        await ctx.reply(text)


def register(registry: CommandRegistry, settings: Settings) -> None:
    policy = policy_for(settings, "movie")
    registry.command(
        "movie",
        "mv",
        policy=policy,
        session_flow=FLOW,
        description="Look up a movie by title or IMDb ID",
    )(movie_command)
    registry.add(
        "movie_actor",
        EventKind.CALLBACK_QUERY,
        CallbackPrefix("mv"),
        actor_selected,
        policy=policy,
        session_flow=FLOW,
        requires_session=True,
    )
