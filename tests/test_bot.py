"""Tests for the aiogram application wiring."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from omnibot.access import AccessMode
from omnibot.bot import OmnibotApp, callback_to_event, menu_commands, message_to_event
from omnibot.config import Settings
from omnibot.dispatcher import DispatchResult
from omnibot.events import CallbackEvent, DocumentEvent, EventKind, MessageEvent, VoiceEvent
from omnibot.handlers import build_registry
from omnibot.registry import PlainText

from conftest import ADMIN_ID


def make_message(
    text: str | None = "hello",
    caption: str | None = None,
    voice: MagicMock | None = None,
    document: MagicMock | None = None,
    forwarded: bool = False,
    is_bot: bool = False,
) -> MagicMock:
    message = MagicMock()
    message.chat.id = 42
    message.from_user.id = 7
    message.from_user.is_bot = is_bot
    message.message_id = 11
    message.text = text
    message.caption = caption
    message.voice = voice
    message.document = document
    message.forward_origin = MagicMock() if forwarded else None
    message.date = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    return message


class TestMessageToEvent:
    """Tests for message_to_event()."""

    def test_text_message(self) -> None:
        event = message_to_event(make_message("/meme cats"))

        assert isinstance(event, MessageEvent)
        assert event.chat_id == 42
        assert event.user_id == 7
        assert event.text == "/meme cats"
        assert event.message_id == 11
        assert event.is_forwarded is False
        assert event.timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=UTC).timestamp()

    def test_caption_used_without_text(self) -> None:
        event = message_to_event(make_message(text=None, caption="a photo"))

        assert isinstance(event, MessageEvent)
        assert event.text == "a photo"

    def test_empty_text(self) -> None:
        event = message_to_event(make_message(text=None))

        assert isinstance(event, MessageEvent)
        assert event.text == ""

    def test_flags(self) -> None:
        event = message_to_event(make_message(forwarded=True, is_bot=True))

        assert isinstance(event, MessageEvent)
        assert event.is_forwarded is True
        assert event.is_bot is True

    def test_voice_message(self) -> None:
        voice = MagicMock()
        voice.file_id = "voice-1"
        voice.duration = 4

        event = message_to_event(make_message(text=None, voice=voice))

        assert event == VoiceEvent(chat_id=42, user_id=7, file_ref="voice-1", message_id=11, duration=4)
        assert event.kind == EventKind.VOICE

    def test_document_message(self) -> None:
        document = MagicMock()
        document.file_id = "doc-1"
        document.file_name = "report.pdf"

        event = message_to_event(make_message(text=None, document=document))

        assert event == DocumentEvent(
            chat_id=42, user_id=7, file_ref="doc-1", file_name="report.pdf", message_id=11
        )

    def test_without_sender(self) -> None:
        message = make_message()
        message.from_user = None

        assert message_to_event(message) is None


class TestCallbackToEvent:
    """Tests for callback_to_event()."""

    def test_with_message(self) -> None:
        callback = MagicMock()
        callback.id = "cb-1"
        callback.data = "meme:random"
        callback.from_user.id = 7
        callback.message.chat.id = 42
        callback.message.message_id = 11

        assert callback_to_event(callback) == CallbackEvent(
            chat_id=42, user_id=7, data="meme:random", message_id=11, callback_id="cb-1"
        )

    def test_without_message(self) -> None:
        """Falls back to the user's private chat."""
        callback = MagicMock()
        callback.id = "cb-2"
        callback.data = None
        callback.from_user.id = 7
        callback.message = None

        event = callback_to_event(callback)

        assert event.chat_id == 7
        assert event.message_id is None
        assert event.data == ""


class TestMenuCommands:
    """Tests for menu_commands()."""

    def test_public_commands_only(self, settings: Settings) -> None:
        names = [c.command for c in menu_commands(build_registry(settings))]

        assert names[:3] == ["start", "help", "time"]
        assert "meme" in names
        assert "mm" not in names
        assert "admin" not in names
        assert "access" not in names
        assert "stats" not in names


class TestBuildRegistry:
    """Tests for registration order."""

    def test_listeners_registered_last(self, settings: Settings) -> None:
        registry = build_registry(settings)
        message_handlers = registry.descriptors(EventKind.MESSAGE)

        assert message_handlers[0].name == "start"
        assert message_handlers[-1].name == "translate_text"
        assert isinstance(message_handlers[-1].pattern, PlainText)
        assert registry.descriptors(EventKind.VOICE)
        assert registry.descriptors(EventKind.DOCUMENT)
        assert registry.descriptors(EventKind.CALLBACK_QUERY)


class TestOmnibotApp:
    """Tests for OmnibotApp construction and lifecycle."""

    @pytest.fixture
    def app(self, settings: Settings) -> OmnibotApp:
        bot = MagicMock()
        bot.me = AsyncMock(return_value=MagicMock(username="omni_bot"))
        bot.set_my_commands = AsyncMock()
        bot.session.close = AsyncMock()
        http = MagicMock()
        http.close = AsyncMock()
        return OmnibotApp(settings, bot=bot, http=http)

    def test_wiring(self, app: OmnibotApp, settings: Settings) -> None:
        assert app.access.mode == AccessMode.PRIVATE
        assert app.access.is_authorized(ADMIN_ID)
        assert app.services.scheduler is app.scheduler
        assert app.core.registry is app.registry
        assert len(app.registry) > 0

    @pytest.mark.asyncio
    async def test_startup_and_stop(self, app: OmnibotApp) -> None:
        app.subscriptions.add_times(42, "fact", ["08:00"])

        await app._on_startup()

        app.bot.set_my_commands.assert_awaited_once()
        assert app.scheduler.started is True
        assert app.scheduler.timer_count() == 1

        await app.stop(drain_timeout=0.1)

        assert app.scheduler.started is False
        app.http.close.assert_awaited_once()
        app.bot.session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_startup_tolerates_menu_failure(self, app: OmnibotApp) -> None:
        app.bot.set_my_commands.side_effect = RuntimeError("network")

        await app._on_startup()

        try:
            assert app.scheduler.started is True
        finally:
            await app.stop(drain_timeout=0.1)

    @pytest.mark.asyncio
    async def test_commands_for_other_bots_ignored(self, app: OmnibotApp) -> None:
        """Should learn its own username at startup and skip other bots' commands."""
        await app._on_startup()
        try:
            assert app.registry.bot_username == "omni_bot"
            event = MessageEvent(chat_id=ADMIN_ID, user_id=ADMIN_ID, text="/fact@OtherBot")
            assert await app.core.dispatch(event) is DispatchResult.UNMATCHED
        finally:
            await app.stop(drain_timeout=0.1)

    @pytest.mark.asyncio
    async def test_startup_tolerates_identity_failure(self, app: OmnibotApp) -> None:
        app.bot.me.side_effect = RuntimeError("network")

        await app._on_startup()

        try:
            assert app.registry.bot_username is None
            assert app.scheduler.started is True
        finally:
            await app.stop(drain_timeout=0.1)
