"""Image generation: prompt -> model keyboard -> generation job.

``/imagine <prompt>`` stores the prompt in the chat's ``imagine`` session and
offers a model keyboard. Pressing a model button requires that session to
still be fresh; generation runs through the job queue with a timeout.
"""

from __future__ import annotations

import contextlib
import logging
import random
import time

from aiogram.filters.callback_data import CallbackData

from omnibot.config import Settings
from omnibot.dispatcher import HandlerContext
from omnibot.events import EventKind
from omnibot.exceptions import MalformedInputError
from omnibot.gateway import Button
from omnibot.handlers.common import SPINNER_INTERVAL, bearer, client, policy_for, spinner
from omnibot.jobs import keep_alive
from omnibot.registry import CallbackPrefix, CommandRegistry

logger = logging.getLogger(__name__)

FLOW = "imagine"

INFERENCE_URL = "https://api-inference.huggingface.co/models/{model}"

# Display name -> HuggingFace model
MODELS: tuple[tuple[str, str], ...] = (
    ("FLUX Dev", "black-forest-labs/FLUX.1-dev"),
    ("FLUX Schnell", "black-forest-labs/FLUX.1-schnell"),
    ("FLUX Realism", "XLabs-AI/flux-RealismLora"),
    ("FLUX Logo", "Shakker-Labs/FLUX.1-dev-LoRA-Logo-Design"),
    ("FLUX Koda", "alvdansen/flux-koda"),
    ("Anime Style", "alvdansen/softserve_anime"),
)

MAX_PROMPT_LENGTH = 500


class ImagineCallback(CallbackData, prefix="imagine"):
    """Model selection button; ``model`` indexes ``MODELS``."""

    model: int


def model_keyboard() -> list[list[Button]]:
    """Two model buttons per row."""
    buttons = [
        Button(name, ImagineCallback(model=index).pack()) for index, (name, _) in enumerate(MODELS)
    ]
    return [buttons[i : i + 2] for i in range(0, len(buttons), 2)]


def randomize_prompt(prompt: str) -> str:
    """Tag the prompt so the inference API does not serve a cached image."""
    return f"{prompt} [t:{int(time.time() * 1000)}] [s:{random.randint(0, 2**31 - 1)}]"


async def imagine_command(ctx: HandlerContext) -> None:
    prompt = ctx.args.strip()
    if not prompt:
        raise MalformedInputError(
            "Please describe the image you want",
            usage="/imagine <prompt>, e.g. /imagine a cat astronaut",
        )
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise MalformedInputError(f"Prompt is too long (max {MAX_PROMPT_LENGTH} characters)")

    # A new prompt replaces any earlier one
    ctx.save_session({"prompt": prompt, "message_id": ctx.message_id})
    await ctx.gateway.send_message(
        ctx.chat_id, "🎨 Choose a model:", keyboard=model_keyboard(), reply_to=ctx.message_id
    )


async def imagine_model_selected(ctx: HandlerContext) -> None:
    data = ImagineCallback.unpack(ctx.event.text)
    if not 0 <= data.model < len(MODELS):
        raise MalformedInputError("Unknown model")
    name, model = MODELS[data.model]

    token = ctx.settings.huggingface_token
    if token is None:
        await ctx.answer("Image generation is not configured.", show_alert=True)
        return

    prompt = ctx.session["prompt"]
    jobs = ctx.services.jobs
    if not jobs.has_capacity(ctx.chat_id):
        await ctx.answer(f"⏳ Queued, {jobs.queued + 1} ahead of you")
    else:
        await ctx.answer(f"🎨 Generating with {name}...")
    ctx.sessions.touch(ctx.session_key)

    label = f"Generating with {name}"
    status_id = await ctx.reply(f"{label} ◡")
    http = client(ctx)

    async def generate() -> bytes:
        return await http.post_bytes(
            INFERENCE_URL.format(model=model),
            payload={"inputs": randomize_prompt(prompt)},
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
            image = await jobs.run(ctx.chat_id, generate, ctx.settings.job_timeout, provider="huggingface")
    finally:
        if status_id is not None:
            await ctx.gateway.delete_message(ctx.chat_id, status_id)

    logger.info("Image generated", extra={"chat_id": ctx.chat_id, "model": model, "size": len(image)})
    await ctx.gateway.send_photo(ctx.chat_id, image, caption=f"🎨 {prompt}\n\nModel: {name}"[:1024])


def register(registry: CommandRegistry, settings: Settings) -> None:
    registry.command(
        "imagine",
        "img",
        policy=policy_for(settings, "imagine"),
        session_flow=FLOW,
        description="Generate an image from a prompt",
    )(imagine_command)
    registry.add(
        "imagine_model",
        EventKind.CALLBACK_QUERY,
        CallbackPrefix("imagine"),
        imagine_model_selected,
        session_flow=FLOW,
        requires_session=True,
    )
