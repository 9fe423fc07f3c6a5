"""Random content commands: memes, facts and jokes.

These are also the targets of scheduled subscriptions, so they must work
for virtual events that carry no message or callback.
"""

from __future__ import annotations

import random
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

REDDIT_URL = "https://www.reddit.com/r/{subreddit}/{sort}.json"
FACT_URL = "https://uselessfacts.jsph.pl/api/v2/facts/random"
JOKE_URL = "https://official-joke-api.appspot.com/random_joke"

MEME_SUBREDDITS = ("memes", "dankmemes", "wholesomememes", "me_irl", "ProgrammerHumor")
SORT_METHODS = ("hot", "top", "new")
TIME_FILTERS = ("all", "year", "month", "week")
RANDOM_SUBREDDIT = "random"

SUBREDDIT_PATTERN = re.compile(r"^[A-Za-z0-9_]{2,21}$")
IMAGE_URL_PATTERN = re.compile(r"\.(jpg|jpeg|png|gif)$", re.IGNORECASE)

MAX_CAPTION = 1024


class MemeCallback(CallbackData, prefix="meme"):
    """Callback for the "another meme" button."""

    subreddit: str


def pick_meme(listing: dict[str, Any], rng: random.Random | None = None) -> dict[str, Any]:
    """Pick a random image post from a Reddit listing.

    Raises:
        UpstreamUnavailableError: If the listing has no usable image post.
    """
    children = (listing.get("data") or {}).get("children") or []
    posts = [
        child["data"]
        for child in children
        if isinstance(child, dict)
        and isinstance(child.get("data"), dict)
        and IMAGE_URL_PATTERN.search(child["data"].get("url") or "")
        and not child["data"].get("is_video")
        and not child["data"].get("stickied")
        and not child["data"].get("over_18")
    ]
    if not posts:
        raise UpstreamUnavailableError("reddit", status=404, message="No memes found")
    return (rng or random).choice(posts)


def meme_caption(post: dict[str, Any]) -> str:
    caption = (
        f"{post.get('title', '')}\n\n"
        f"👍 {post.get('ups', 0)} | r/{post.get('subreddit', '')}\n"
        f"https://reddit.com{post.get('permalink', '')}"
    )
    return caption[:MAX_CAPTION]


async def send_meme(ctx: HandlerContext, subreddit: str | None) -> None:
    target = subreddit or random.choice(MEME_SUBREDDITS)
    sort = random.choice(SORT_METHODS)
    params: dict[str, Any] = {"limit": 100}
    if sort == "top":
        params["t"] = random.choice(TIME_FILTERS)

    listing = await client(ctx).get_json(
        REDDIT_URL.format(subreddit=target, sort=sort), params=params, provider="reddit"
    )
    post = pick_meme(listing)

    button_text = f"🎲 Another meme from r/{subreddit}" if subreddit else "🎲 Another random meme"
    keyboard = [[Button(button_text, MemeCallback(subreddit=subreddit or RANDOM_SUBREDDIT).pack())]]
    await ctx.gateway.send_photo(ctx.chat_id, post["url"], caption=meme_caption(post), keyboard=keyboard)


def parse_subreddit(args: str) -> str | None:
    """Validate an optional subreddit argument (``r/`` prefix allowed)."""
    name = args.strip().removeprefix("r/").removeprefix("/r/")
    if not name or name.lower() == RANDOM_SUBREDDIT:
        return None
    if not SUBREDDIT_PATTERN.match(name):
        raise MalformedInputError(f"'{args.strip()}' is not a valid subreddit", usage="/meme [subreddit]")
    return name


async def meme_command(ctx: HandlerContext) -> None:
    await send_meme(ctx, parse_subreddit(ctx.args))


async def meme_again(ctx: HandlerContext) -> None:
    data = MemeCallback.unpack(ctx.event.text)
    await ctx.answer("🎲 Fetching another meme...")
    await send_meme(ctx, parse_subreddit(data.subreddit))


async def fact_command(ctx: HandlerContext) -> None:
    data = await client(ctx).get_json(FACT_URL, params={"language": "en"}, provider="uselessfacts")
    text = (data or {}).get("text")
    if not text:
        raise UpstreamUnavailableError("uselessfacts", message="Empty fact")
    await ctx.reply(f"🧠 Did you know?\n\n{text}")


async def joke_command(ctx: HandlerContext) -> None:
    data = await client(ctx).get_json(JOKE_URL, provider="official-joke-api")
    setup = (data or {}).get("setup")
    punchline = (data or {}).get("punchline")
    if not setup or not punchline:
        raise UpstreamUnavailableError("official-joke-api", message="Empty joke")
    await ctx.reply(f"😄 {setup}\n\n{punchline}")


def register(registry: CommandRegistry, settings: Settings) -> None:
    meme_policy = policy_for(settings, "meme")
    registry.command("meme", "mm", "memes", policy=meme_policy, description="Random meme")(meme_command)
    registry.command("fact", "ft", "facts", policy=policy_for(settings, "fact"), description="Random fact")(
        fact_command
    )
    registry.command("joke", "jk", "jokes", policy=policy_for(settings, "joke"), description="Random joke")(
        joke_command
    )
    registry.add("meme_again", EventKind.CALLBACK_QUERY, CallbackPrefix("meme"), meme_again, policy=meme_policy)
