"""Voice transcription.

``/transcribe`` opens a short ``transcribe`` session; the next voice message in
that chat is downloaded and sent to the speech-to-text endpoint.
"""

from __future__ import annotations

import contextlib
import logging

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import EventKind, VoiceEvent
from omnibot.exceptions import UpstreamUnavailableError
from omnibot.handlers.common import SPINNER_INTERVAL, bearer, client, spinner
from omnibot.jobs import keep_alive
from omnibot.rate_limiter import RateLimitPolicy
from omnibot.registry import AnyEvent, CommandRegistry

logger = logging.getLogger(__name__)

FLOW = "transcribe"

WHISPER_URL = "https://api-inference.huggingface.co/models/openai/whisper-base"


async def transcribe_command(ctx: HandlerContext) -> None:
    if ctx.settings.huggingface_token is None:
        await ctx.reply("Transcription is not configured.")
        return

    ctx.save_session({"requested_by": ctx.user_id})
    seconds = ctx.sessions.timeout_for(FLOW)
    await ctx.reply(f"🎙 Send me a voice message within {seconds} seconds and I'll transcribe it.")


async def transcribe_voice(ctx: HandlerContext) -> None:
    if ctx.session is None:
        # Voice without a pending /transcribe
        return

    event = ctx.event
    if not isinstance(event, VoiceEvent):
        return
    token = ctx.settings.huggingface_token
    if token is None:
        ctx.end_session()
        return

    # One voice message per /transcribe
    ctx.end_session()

    audio = await ctx.gateway.download_file(event.file_ref)
    if not audio:
        raise UpstreamUnavailableError("telegram", message="Voice message could not be downloaded")

    label = "Transcribing"
    status_id = await ctx.reply(f"{label} ◡")
    http = client(ctx)

    async def recognize() -> dict:
        return await http.post_json(
            WHISPER_URL,
            data=audio,
            headers=bearer(token.get_secret_value()),
            provider="huggingface",
        )

    ticker = (
        keep_alive(spinner(ctx, status_id, label), interval=SPINNER_INTERVAL)
        if status_id is not None
        else contextlib.nullcontext()
    )
    try:
        async with ticker:
            result = await ctx.services.jobs.run(
                ctx.chat_id, recognize, ctx.settings.job_timeout, provider="huggingface"
            )
    finally:
        if status_id is not None:
            await ctx.gateway.delete_message(ctx.chat_id, status_id)

    text = ((result or {}).get("text") or "").strip()
    if not text:
        raise UpstreamUnavailableError("huggingface", status=404, message="No speech recognized")

    logger.info(
        "Voice transcribed",
        extra={"chat_id": ctx.chat_id, "duration": event.duration, "chars": len(text)},
    )
    await ctx.reply(f"Transcription:\n{text}")


def register(registry: CommandRegistry, settings: Settings) -> None:
    registry.command(
        "transcribe",
        "trcb",
        policy=RateLimitPolicy.from_config(settings.rate_limit_for("voice"), action=FLOW),
        session_flow=FLOW,
        description="Transcribe your next voice message",
    )(transcribe_command)
    registry.add("transcribe_voice", EventKind.VOICE, AnyEvent(), transcribe_voice, session_flow=FLOW)
