"""Welcome, help and world-clock commands."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.exceptions import MalformedInputError
from omnibot.handlers.common import policy_for
from omnibot.registry import CommandRegistry
from omnibot.subscriptions import validate_timezone

HELP_TEXT = """🤖 Available commands

Fun
/meme [subreddit] - Random meme (/mm)
/fact - Random fact (/ft)
/joke - Random joke (/jk)
/imagine <prompt> - Generate an image

Utilities
/translate [language] [text] - Translate text, or toggle translation mode
/transcribe - Transcribe your next voice message
/time <city|timezone> - Current time somewhere
/whattowatch - Movie recommendation (/wtw)
/movie <title|IMDb ID> - Movie info and cast (/mv)
/watchlist - Your saved movies (/wl)
/extract - Unpack a ZIP file (/ext)

Daily content
/subscribe <fact|joke|meme> <times...> [timezone] - e.g. /sub memes 8pm Europe/Paris
/unsubscribe [type] - Cancel subscriptions
/mysubs - List subscriptions"""

# Common city names -> IANA timezone
CITY_ZONES: dict[str, str] = {
    "london": "Europe/London",
    "paris": "Europe/Paris",
    "berlin": "Europe/Berlin",
    "madrid": "Europe/Madrid",
    "rome": "Europe/Rome",
    "amsterdam": "Europe/Amsterdam",
    "moscow": "Europe/Moscow",
    "istanbul": "Europe/Istanbul",
    "dubai": "Asia/Dubai",
    "delhi": "Asia/Kolkata",
    "mumbai": "Asia/Kolkata",
    "singapore": "Asia/Singapore",
    "hong kong": "Asia/Hong_Kong",
    "shanghai": "Asia/Shanghai",
    "beijing": "Asia/Shanghai",
    "tokyo": "Asia/Tokyo",
    "seoul": "Asia/Seoul",
    "sydney": "Australia/Sydney",
    "auckland": "Pacific/Auckland",
    "new york": "America/New_York",
    "nyc": "America/New_York",
    "toronto": "America/Toronto",
    "chicago": "America/Chicago",
    "denver": "America/Denver",
    "los angeles": "America/Los_Angeles",
    "la": "America/Los_Angeles",
    "san francisco": "America/Los_Angeles",
    "mexico city": "America/Mexico_City",
    "sao paulo": "America/Sao_Paulo",
    "buenos aires": "America/Argentina/Buenos_Aires",
    "utc": "UTC",
    "gmt": "Etc/GMT",
}

TIME_USAGE = "/time <city|timezone>, e.g. /time tokyo or /time America/New_York"


def greeting(hour: int) -> str:
    """Pick a greeting for the hour of day."""
    if 5 <= hour < 12:
        return "Good Morning! 🌅"
    if 12 <= hour < 17:
        return "Good Afternoon! ☀️"
    if 17 <= hour < 22:
        return "Good Evening! 🌆"
    return "Good Night! 🌙"


def resolve_zone(query: str) -> str:
    """Map a city name or IANA timezone to a timezone name.

    Raises:
        MalformedInputError: If the query is neither.
    """
    query = query.strip()
    if not query:
        raise MalformedInputError("Please tell me which city or timezone", usage=TIME_USAGE)
    zone = CITY_ZONES.get(query.lower())
    if zone is not None:
        return zone
    try:
        return validate_timezone(query)
    except MalformedInputError:
        raise MalformedInputError(f"Unknown city or timezone '{query}'", usage=TIME_USAGE) from None


def format_time_message(zone: str, now: datetime | None = None) -> str:
    local = (now or datetime.now(ZoneInfo("UTC"))).astimezone(ZoneInfo(zone))
    place = zone.split("/")[-1].replace("_", " ")
    hour = local.hour % 12 or 12
    return (
        f"🕐 {place}: {hour}:{local:%M %p}\n"
        f"{local:%A, %B} {local.day} {local.year}"
    )


async def start(ctx: HandlerContext) -> None:
    name = ctx.settings.app_name
    await ctx.reply(f"{greeting(datetime.now().hour)}\n\nI'm {name}. Send /help to see what I can do.")


async def help_command(ctx: HandlerContext) -> None:
    text = HELP_TEXT
    if ctx.is_admin():
        text += "\n\nAdmin\n/admin - Admin panel"
    await ctx.reply(text)


async def time_command(ctx: HandlerContext) -> None:
    zone = resolve_zone(ctx.args)
    await ctx.reply(format_time_message(zone))


def register(registry: CommandRegistry, settings: Settings) -> None:
    registry.command("start", description="Start the bot")(start)
    registry.command("help", description="Show available commands")(help_command)
    registry.command(
        "time", "tm", policy=policy_for(settings, "time"), description="Current time in a city"
    )(time_command)
