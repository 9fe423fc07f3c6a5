"""Translation through Lingva mirrors.

``/translate <lang> <text>`` translates once. ``/translate`` alone toggles
translation mode: a ``translate`` session holding the target language, during
which plain text messages are translated.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

from aiogram.filters.callback_data import CallbackData

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import EventKind
from omnibot.exceptions import MalformedInputError, UpstreamUnavailableError
from omnibot.gateway import Button
from omnibot.handlers.common import client, policy_for
from omnibot.registry import CallbackPrefix, CommandRegistry, PlainText

FLOW = "translate"

CANCEL = "cancel"

SUPPORTED_LANGUAGES: dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ru": "Russian",
    "ja": "Japanese",
    "ko": "Korean",
    "zh": "Chinese",
    "ar": "Arabic",
    "hi": "Hindi",
}

USAGE = "/translate <language> <text>, e.g. /translate es Hello world"

MAX_TEXT_LENGTH = 1000


class TranslateCallback(CallbackData, prefix="translate"):
    """Language button; ``lang`` is a language code or ``cancel``."""

    lang: str


def normalize_language(value: str) -> str | None:
    """Map a language code or English name to a supported code."""
    value = value.strip().lower()
    if value in SUPPORTED_LANGUAGES:
        return value
    for code, name in SUPPORTED_LANGUAGES.items():
        if name.lower() == value:
            return code
    return None


def language_keyboard() -> list[list[Button]]:
    buttons = [
        Button(name, TranslateCallback(lang=code).pack()) for code, name in SUPPORTED_LANGUAGES.items()
    ]
    rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
    rows.append([Button("Cancel", TranslateCallback(lang=CANCEL).pack())])
    return rows


async def translate_text(ctx: HandlerContext, text: str, target: str, source: str = "auto") -> dict[str, Any]:
    """Translate text, falling back across mirrors.

    Returns:
        ``{"translation": ..., "source": ...}``.
    """
    if len(text) > MAX_TEXT_LENGTH:
        raise MalformedInputError(f"Text is too long (max {MAX_TEXT_LENGTH} characters)")

    data = await client(ctx).get_json_from_mirrors(
        ctx.settings.translate_mirrors,
        f"{source}/{target}/{quote(text, safe='')}",
        provider="translation mirrors",
    )
    translation = (data or {}).get("translation")
    if not translation:
        raise UpstreamUnavailableError("lingva", message="Empty translation")
    detected = ((data or {}).get("info") or {}).get("detectedSource") or source
    return {"translation": translation, "source": detected}


def format_translation(result: dict[str, Any], target: str) -> str:
    source = SUPPORTED_LANGUAGES.get(result["source"], result["source"])
    return f"🌐 {source} → {SUPPORTED_LANGUAGES[target]}\n\n{result['translation']}"


async def translate_command(ctx: HandlerContext) -> None:
    args = ctx.args.strip()

    if not args:
        if ctx.end_session():
            await ctx.reply("🌐 Translation mode off.")
            return
        await ctx.reply(
            "🌐 Choose a language to start translation mode,\n"
            f"or translate once with {USAGE}",
            keyboard=language_keyboard(),
        )
        return

    lang_arg, _, text = args.partition(" ")
    target = normalize_language(lang_arg)
    if target is None:
        raise MalformedInputError(f"Unsupported language '{lang_arg}'", usage=USAGE)
    if not text.strip():
        raise MalformedInputError("Please give me some text to translate", usage=USAGE)

    await ctx.gateway.send_chat_action(ctx.chat_id)
    result = await translate_text(ctx, text.strip(), target)
    await ctx.reply(format_translation(result, target))


async def translate_language_selected(ctx: HandlerContext) -> None:
    data = TranslateCallback.unpack(ctx.event.text)

    if data.lang == CANCEL:
        ctx.end_session()
        await ctx.answer()
        await ctx.edit("🌐 Translation mode off.")
        return

    target = normalize_language(data.lang)
    if target is None:
        raise MalformedInputError(f"Unsupported language '{data.lang}'")

    ctx.save_session({"target": target})
    await ctx.answer(f"Translating to {SUPPORTED_LANGUAGES[target]}")
    await ctx.edit(
        f"🌐 Translation mode on: send me text and I'll translate it to {SUPPORTED_LANGUAGES[target]}.\n"
        "Send /translate again to stop."
    )


async def translate_plain_text(ctx: HandlerContext) -> None:
    if ctx.session is None:
        # Not in translation mode
        return

    # Only text translated in translation mode counts against /translate
    await ctx.enforce(policy_for(ctx.settings, "translate"))
    target = ctx.session["target"]
    ctx.sessions.touch(ctx.session_key)
    await ctx.gateway.send_chat_action(ctx.chat_id)
    result = await translate_text(ctx, ctx.args, target)
    await ctx.reply(format_translation(result, target))


def register(registry: CommandRegistry, settings: Settings) -> None:
    registry.command(
        "translate",
        "trans",
        "trns",
        policy=policy_for(settings, "translate"),
        session_flow=FLOW,
        description="Translate text or toggle translation mode",
    )(translate_command)
    registry.add(
        "translate_language",
        EventKind.CALLBACK_QUERY,
        CallbackPrefix("translate"),
        translate_language_selected,
        session_flow=FLOW,
    )
    # Kind-wide plain text listener, must stay last among message handlers
    registry.add(
        "translate_text",
        EventKind.MESSAGE,
        PlainText(),
        translate_plain_text,
        session_flow=FLOW,
    )
