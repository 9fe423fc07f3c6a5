"""Tests for command patterns and the registry."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from omnibot.events import CallbackEvent, EventKind, MessageEvent, VoiceEvent
from omnibot.exceptions import RegistryFrozenError
from omnibot.registry import (
    AnyEvent,
    CallbackPrefix,
    Command,
    CommandDescriptor,
    CommandRegistry,
    PlainText,
    Regex,
)


def message(text: str) -> MessageEvent:
    return MessageEvent(chat_id=10, user_id=10, text=text)


class TestCommandPattern:
    """Tests for Command matching."""

    def test_bare_command(self) -> None:
        m = Command("movie").match("/movie")
        assert m is not None
        assert m.command == "movie"
        assert m.args == ""

    def test_command_with_args(self) -> None:
        m = Command("movie").match("/movie Inception")
        assert m is not None
        assert m.args == "Inception"

    def test_anchored_at_word_boundary(self) -> None:
        """A longer word sharing the prefix does not match."""
        assert Command("movie").match("/moviexyz") is None
        assert Command("movie").match("/movies") is None

    def test_anchored_at_start(self) -> None:
        assert Command("movie").match("please /movie") is None
        assert Command("movie").match("movie") is None

    def test_bot_suffix(self) -> None:
        m = Command("movie").match("/movie@omni_bot Dune")
        assert m is not None
        assert m.args == "Dune"
        assert m.mention == "omni_bot"

    def test_aliases(self) -> None:
        pattern = Command("translate", "trans", "trns")
        assert pattern.match("/trans es hi").command == "trans"
        assert pattern.match("/translate").command == "translate"
        assert pattern.match("/trns x").args == "x"

    def test_longest_alias_wins(self) -> None:
        """An alias that prefixes another never steals its match."""
        pattern = Command("meme", "memes")
        assert pattern.match("/memes").command == "memes"

    def test_multiline_args(self) -> None:
        m = Command("say").match("/say hello\nworld")
        assert m.args == "hello\nworld"

    @pytest.mark.parametrize("name", ["", "bad name", "x" * 33, "dash-name"])
    def test_invalid_names(self, name: str) -> None:
        with pytest.raises(ValueError):
            Command(name)

    def test_requires_a_name(self) -> None:
        with pytest.raises(ValueError):
            Command()


class TestOtherPatterns:
    """Tests for CallbackPrefix, Regex, PlainText and AnyEvent."""

    def test_callback_prefix(self) -> None:
        pattern = CallbackPrefix("imagine")
        assert pattern.match("imagine").args == ""
        assert pattern.match("imagine:2").args == "2"
        assert pattern.match("imagineX:2") is None
        assert pattern.match("wtw:go") is None

    @pytest.mark.parametrize("prefix", ["", "a:b"])
    def test_invalid_prefix(self, prefix: str) -> None:
        with pytest.raises(ValueError):
            CallbackPrefix(prefix)

    def test_regex_fullmatch(self) -> None:
        pattern = Regex(r"(\d+)\s*\+\s*(\d+)")
        m = pattern.match("2 + 3")
        assert m.groups == ("2", "3")
        assert pattern.match("2 + 3 please") is None

    def test_plain_text(self) -> None:
        pattern = PlainText()
        assert pattern.match("  hola  ").args == "hola"
        assert pattern.match("/start") is None
        assert pattern.match("") is None

    def test_any_event(self) -> None:
        assert AnyEvent().match("").args == ""


class TestRegistry:
    """Tests for CommandRegistry."""

    @pytest.fixture
    def registry(self) -> CommandRegistry:
        return CommandRegistry()

    def test_first_match_wins(self, registry: CommandRegistry) -> None:
        """Descriptors are tried in registration order."""
        first = AsyncMock()
        second = AsyncMock()
        registry.command("movie")(first)
        registry.add("catch_all", EventKind.MESSAGE, Regex(r"/.*"), second)

        descriptor, _ = registry.match(message("/movie x"))
        assert descriptor.handler is first

        descriptor, _ = registry.match(message("/other"))
        assert descriptor.handler is second

    def test_kind_filtering(self, registry: CommandRegistry) -> None:
        """Only descriptors of the event's kind are considered."""
        registry.callback("imagine")(AsyncMock())
        registry.on(EventKind.VOICE, "voice")(AsyncMock())

        assert registry.match(message("imagine:1")) is None
        assert registry.match(CallbackEvent(chat_id=1, user_id=1, data="imagine:1"))[0].name == "imagine"
        assert registry.match(VoiceEvent(chat_id=1, user_id=1, file_ref="f"))[0].name == "voice"

    def test_no_match(self, registry: CommandRegistry) -> None:
        registry.command("start")(AsyncMock())
        assert registry.match(message("/stop")) is None

    def test_frozen_registry_rejects_registration(self, registry: CommandRegistry) -> None:
        registry.freeze()
        assert registry.frozen is True
        with pytest.raises(RegistryFrozenError):
            registry.command("late")(AsyncMock())

    def test_requires_session_needs_flow(self, registry: CommandRegistry) -> None:
        with pytest.raises(ValueError):
            registry.register(
                CommandDescriptor(
                    name="x",
                    kind=EventKind.CALLBACK_QUERY,
                    pattern=CallbackPrefix("x"),
                    handler=AsyncMock(),
                    requires_session=True,
                )
            )

    def test_descriptors_by_kind(self, registry: CommandRegistry) -> None:
        registry.command("a")(AsyncMock())
        registry.callback("b")(AsyncMock())
        registry.command("c")(AsyncMock())

        assert [d.name for d in registry.descriptors(EventKind.MESSAGE)] == ["a", "c"]
        assert [d.name for d in registry.descriptors()] == ["a", "b", "c"]
        assert len(registry) == 3
        assert [d.name for d in registry] == ["a", "b", "c"]

    def test_command_for_another_bot_ignored(self, registry: CommandRegistry) -> None:
        """Should skip commands addressed to a different bot once the username is known."""
        registry.command("fact")(AsyncMock())
        registry.bot_username = "omni_bot"

        assert registry.match(message("/fact@OtherBot")) is None
        assert registry.match(message("/fact@Omni_Bot"))[0].name == "fact"
        assert registry.match(message("/fact"))[0].name == "fact"

    def test_any_mention_accepted_before_username_known(self, registry: CommandRegistry) -> None:
        registry.command("fact")(AsyncMock())
        assert registry.match(message("/fact@omni_bot"))[0].name == "fact"
