"""Telegram bot application using aiogram 3.x.

This module wires the transport to the core:
- aiogram updates are converted into transport-neutral events
- every event is dispatched as its own tracked task
- the scheduler, session sweeper and rate-limit cleanup run for the
  lifetime of the polling loop
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any

from aiogram import Bot, Dispatcher, types
from aiogram.types import BotCommand, CallbackQuery

from omnibot.access import STATE_FILENAME, AccessControl, AccessStateStore
from omnibot.config import Settings
from omnibot.dispatcher import Dispatcher as CommandDispatcher
from omnibot.dispatcher import Services
from omnibot.events import CallbackEvent, DocumentEvent, Event, EventKind, MessageEvent, VoiceEvent
from omnibot.gateway import AiogramGateway
from omnibot.handlers import build_registry
from omnibot.http import ApiClient
from omnibot.jobs import JobQueue
from omnibot.metrics import Metrics
from omnibot.rate_limiter import SlidingWindowRateLimiter
from omnibot.registry import Command, CommandRegistry
from omnibot.scheduler import SubscriptionScheduler
from omnibot.sessions import SessionStore
from omnibot.subscriptions import SUBSCRIPTIONS_FILENAME, SubscriptionStore
from omnibot.watchlist import WATCHLIST_FILENAME, WatchlistStore

logger = logging.getLogger(__name__)


def message_to_event(message: types.Message) -> Event | None:
    """Convert an aiogram message into a dispatcher event.

    Returns:
        The event, or None for messages without a sender.
    """
    if message.from_user is None:
        return None

    chat_id = message.chat.id
    user_id = message.from_user.id

    if message.voice is not None:
        return VoiceEvent(
            chat_id=chat_id,
            user_id=user_id,
            file_ref=message.voice.file_id,
            message_id=message.message_id,
            duration=message.voice.duration,
        )
    if message.document is not None:
        return DocumentEvent(
            chat_id=chat_id,
            user_id=user_id,
            file_ref=message.document.file_id,
            file_name=message.document.file_name,
            message_id=message.message_id,
        )
    return MessageEvent(
        chat_id=chat_id,
        user_id=user_id,
        text=message.text or message.caption or "",
        message_id=message.message_id,
        is_bot=message.from_user.is_bot,
        is_forwarded=message.forward_origin is not None,
        timestamp=message.date.timestamp(),
    )


def callback_to_event(callback: CallbackQuery) -> CallbackEvent:
    """Convert an aiogram callback query into a dispatcher event."""
    message = callback.message
    return CallbackEvent(
        chat_id=message.chat.id if message is not None else callback.from_user.id,
        user_id=callback.from_user.id,
        data=callback.data or "",
        message_id=message.message_id if message is not None else None,
        callback_id=callback.id,
    )


def menu_commands(registry: CommandRegistry) -> list[BotCommand]:
    """Bot menu entries for public commands that carry a description."""
    commands: list[BotCommand] = []
    for descriptor in registry.descriptors(EventKind.MESSAGE):
        if descriptor.admin_only or not descriptor.description:
            continue
        if not isinstance(descriptor.pattern, Command):
            continue
        commands.append(BotCommand(command=descriptor.pattern.names[0], description=descriptor.description))
    return commands


class OmnibotApp:
    """Omnibot Telegram application.

    Owns the aiogram bot and dispatcher, the shared services and the core
    command dispatcher, and provides a clean interface for starting and
    stopping the bot.
    """

    def __init__(
        self,
        settings: Settings,
        bot: Bot | None = None,
        http: ApiClient | None = None,
    ) -> None:
        """Initialize the application.

        Args:
            settings: Application settings.
            bot: Bot to use; built from the token when None.
            http: HTTP client for content providers; built from settings when None.
        """
        self.settings = settings
        self.bot = bot or Bot(token=settings.telegram_bot_token.get_secret_value())
        self.dp = Dispatcher()
        self.gateway = AiogramGateway(
            self.bot,
            max_retries=settings.telegram_max_retries,
            base_delay=settings.telegram_retry_base_delay,
        )

        state_dir = Path(settings.state_dir)
        self.access = AccessControl(
            settings.admin_user_id,
            settings.privileged_user_ids,
            store=AccessStateStore(state_dir / STATE_FILENAME),
        )
        self.subscriptions = SubscriptionStore(state_dir / SUBSCRIPTIONS_FILENAME)
        self.watchlist = WatchlistStore(state_dir / WATCHLIST_FILENAME)
        self.sessions = SessionStore(timeouts=settings.session_timeouts)
        self.rate_limiter = SlidingWindowRateLimiter()
        self.metrics = Metrics()
        self.jobs = JobQueue(
            max_concurrent=settings.job_max_concurrent,
            max_per_subject=settings.job_max_per_subject,
        )
        self.http = http or ApiClient(
            timeout=settings.http_timeout,
            retries=settings.upstream_retries,
            base_delay=settings.upstream_retry_base_delay,
        )

        self.services = Services(
            settings=settings,
            access=self.access,
            sessions=self.sessions,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            subscriptions=self.subscriptions,
            jobs=self.jobs,
            watchlist=self.watchlist,
            http=self.http,
        )
        self.registry = build_registry(settings)
        self.core = CommandDispatcher(self.registry, self.gateway, self.services)
        self.scheduler = SubscriptionScheduler(self.subscriptions, self.core)
        self.services.scheduler = self.scheduler

        self._cleanup_task: asyncio.Task[None] | None = None

        self._setup_handlers()
        self.dp.startup.register(self._on_startup)
        self.dp.shutdown.register(self._on_shutdown)

    def _setup_handlers(self) -> None:
        """Forward every message and callback query to the core dispatcher."""

        @self.dp.message()
        async def handle_message(message: types.Message) -> Any:
            event = message_to_event(message)
            if event is not None:
                self.core.spawn(event)

        @self.dp.callback_query()
        async def handle_callback(callback: CallbackQuery) -> Any:
            self.core.spawn(callback_to_event(callback))

    async def _on_startup(self) -> None:
        try:
            me = await self.bot.me()
            self.registry.bot_username = me.username
            logger.info("Bot identity resolved", extra={"username": me.username})
        except Exception as e:
            logger.warning("Failed to resolve bot username", extra={"error": str(e)})

        commands = menu_commands(self.registry)
        try:
            await self.bot.set_my_commands(commands)
            logger.info("Bot commands registered", extra={"count": len(commands)})
        except Exception as e:
            logger.warning("Failed to register bot commands", extra={"error": str(e)})

        self.scheduler.start()
        self.sessions.start_sweeper(self.settings.session_sweep_interval)
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(
                self.rate_limiter.run_cleanup_loop(
                    self.settings.rate_limit_cleanup_interval,
                    retention_ms=self.settings.rate_limit_retention * 1000,
                )
            )
        logger.info(
            "Startup complete",
            extra={
                "access_mode": self.access.mode.value,
                "subscribed_chats": len(self.subscriptions.all()),
                "timers": self.scheduler.timer_count(),
            },
        )

    async def _on_shutdown(self) -> None:
        await self.scheduler.stop()
        await self.sessions.stop()
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None
        logger.info("Background tasks stopped")

    async def start(self) -> None:
        """Start the bot polling."""
        logger.info(
            "Starting bot",
            extra={
                "app_name": self.settings.app_name,
                "app_version": self.settings.app_version,
            },
        )
        await self.dp.start_polling(self.bot, handle_signals=False)

    async def stop(self, drain_timeout: float | None = None) -> None:
        """Stop the bot gracefully.

        Args:
            drain_timeout: Seconds in-flight dispatches get to finish before
                they are cancelled. Defaults to half the shutdown timeout.
        """
        logger.info("Stopping bot")
        if drain_timeout is None:
            drain_timeout = self.settings.shutdown_timeout / 2
        cancelled = await self.core.drain(drain_timeout)
        if cancelled:
            logger.warning("Dispatches cancelled at shutdown", extra={"count": cancelled})
        await self._on_shutdown()
        await self.http.close()
        await self.bot.session.close()
