"""Command registry: ordered, append-only list of command descriptors.

Each descriptor pairs an anchored pattern with a handler and an optional
rate-limit policy. For a given event kind, descriptors are tried in
registration order and the first match wins.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from omnibot.events import Event, EventKind
from omnibot.exceptions import RegistryFrozenError

if TYPE_CHECKING:
    from omnibot.dispatcher import HandlerContext
    from omnibot.rate_limiter import RateLimitPolicy

Handler = Callable[["HandlerContext"], Awaitable[Any]]

# Valid Telegram command name
COMMAND_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,32}$")


@dataclass(frozen=True)
class PatternMatch:
    """Result of matching an event against a pattern.

    Attributes:
        command: The command or callback prefix that matched, if any.
        args: Text following the command or prefix, stripped.
        groups: Regex groups for ``Regex`` patterns.
        mention: Bot username a command was addressed to (``/name@bot``).
    """

    command: str | None = None
    args: str = ""
    groups: tuple[str | None, ...] = ()
    mention: str | None = None


class Pattern(Protocol):
    """Anything that can match event text."""

    def match(self, text: str) -> PatternMatch | None: ...


class Command:
    """Matches ``/name``, ``/name args`` and ``/name@bot args`` for any alias.

    The name must start the text and be followed by end of text, an ``@bot``
    suffix or whitespace, so ``/movie`` never matches ``/moviexyz``.
    """

    def __init__(self, *names: str) -> None:
        if not names:
            raise ValueError("Command needs at least one name")
        for name in names:
            if not COMMAND_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid command name: {name!r}")
        self.names = names
        alternatives = "|".join(re.escape(n) for n in sorted(names, key=len, reverse=True))
        self._regex = re.compile(
            rf"^/(?P<name>{alternatives})(?:@(?P<mention>\w+))?(?:\s+(?P<args>.*))?$",
            re.DOTALL,
        )

    def match(self, text: str) -> PatternMatch | None:
        m = self._regex.match(text)
        if m is None:
            return None
        return PatternMatch(
            command=m.group("name"),
            args=(m.group("args") or "").strip(),
            mention=m.group("mention"),
        )

    def __repr__(self) -> str:
        return f"Command({', '.join(self.names)})"


class CallbackPrefix:
    """Matches callback data equal to ``prefix`` or starting with ``prefix:``."""

    SEPARATOR = ":"

    def __init__(self, prefix: str) -> None:
        if not prefix or self.SEPARATOR in prefix:
            raise ValueError(f"Invalid callback prefix: {prefix!r}")
        self.prefix = prefix

    def match(self, text: str) -> PatternMatch | None:
        if text == self.prefix:
            return PatternMatch(command=self.prefix)
        if text.startswith(self.prefix + self.SEPARATOR):
            return PatternMatch(command=self.prefix, args=text[len(self.prefix) + 1 :])
        return None

    def __repr__(self) -> str:
        return f"CallbackPrefix({self.prefix})"


class Regex:
    """Matches when the whole text matches the expression."""

    def __init__(self, pattern: str | re.Pattern[str]) -> None:
        self._regex = re.compile(pattern) if isinstance(pattern, str) else pattern

    def match(self, text: str) -> PatternMatch | None:
        m = self._regex.fullmatch(text)
        if m is None:
            return None
        return PatternMatch(args=text.strip(), groups=m.groups())

    def __repr__(self) -> str:
        return f"Regex({self._regex.pattern!r})"


class PlainText:
    """Matches non-empty text that is not a command."""

    def match(self, text: str) -> PatternMatch | None:
        if not text or text.startswith("/"):
            return None
        return PatternMatch(args=text.strip())

    def __repr__(self) -> str:
        return "PlainText()"


class AnyEvent:
    """Matches every event of the descriptor's kind."""

    def match(self, text: str) -> PatternMatch | None:
        return PatternMatch(args=text.strip())

    def __repr__(self) -> str:
        return "AnyEvent()"


@dataclass(frozen=True)
class CommandDescriptor:
    """A registered (pattern, handler, policy) entry.

    Attributes:
        name: Command name used for metrics, rate-limit actions and help.
        kind: Event kind the descriptor listens to.
        pattern: Anchored matcher for the event text or callback data.
        handler: Coroutine invoked with a ``HandlerContext``.
        policy: Rate-limit policy checked before invocation, if any.
        admin_only: Reject everyone but the admin.
        session_flow: Flow whose session is loaded into the context.
        requires_session: Treat an absent or stale session as expired.
        description: Short text for the bot command menu.
    """

    name: str
    kind: EventKind
    pattern: Pattern
    handler: Handler
    policy: RateLimitPolicy | None = None
    admin_only: bool = False
    session_flow: str | None = None
    requires_session: bool = False
    description: str | None = None


@dataclass
class CommandRegistry:
    """Append-only, ordered collection of command descriptors.

    Attributes:
        bot_username: The bot's own username. Once known, commands
            addressed to another bot (``/name@other_bot``) match nothing.
    """

    bot_username: str | None = None
    _descriptors: list[CommandDescriptor] = field(default_factory=list)
    _frozen: bool = False

    def register(self, descriptor: CommandDescriptor) -> CommandDescriptor:
        """Append a descriptor.

        Raises:
            RegistryFrozenError: If the registry was frozen.
            ValueError: If a session is required without a flow name.
        """
        if self._frozen:
            raise RegistryFrozenError()
        if descriptor.requires_session and not descriptor.session_flow:
            raise ValueError(f"{descriptor.name}: requires_session needs a session_flow")
        self._descriptors.append(descriptor)
        return descriptor

    def add(
        self,
        name: str,
        kind: EventKind,
        pattern: Pattern,
        handler: Handler,
        **options: Any,
    ) -> CommandDescriptor:
        """Build and register a descriptor."""
        return self.register(
            CommandDescriptor(name=name, kind=kind, pattern=pattern, handler=handler, **options)
        )

    def command(self, name: str, *aliases: str, **options: Any) -> Callable[[Handler], Handler]:
        """Decorator registering a slash command with optional aliases."""

        def decorator(handler: Handler) -> Handler:
            self.add(name, EventKind.MESSAGE, Command(name, *aliases), handler, **options)
            return handler

        return decorator

    def callback(self, prefix: str, name: str | None = None, **options: Any) -> Callable[[Handler], Handler]:
        """Decorator registering an inline-button callback handler."""

        def decorator(handler: Handler) -> Handler:
            self.add(name or prefix, EventKind.CALLBACK_QUERY, CallbackPrefix(prefix), handler, **options)
            return handler

        return decorator

    def on(self, kind: EventKind, name: str, pattern: Pattern | None = None, **options: Any) -> Callable[[Handler], Handler]:
        """Decorator registering a handler for any event kind."""

        def decorator(handler: Handler) -> Handler:
            self.add(name, kind, pattern or AnyEvent(), handler, **options)
            return handler

        return decorator

    def freeze(self) -> None:
        """Forbid further registration."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def match(self, event: Event) -> tuple[CommandDescriptor, PatternMatch] | None:
        """Find the first descriptor matching an event.

        Returns:
            The descriptor and its match, or None when nothing matches.
        """
        text = event.text or ""
        for descriptor in self._descriptors:
            if descriptor.kind is not event.kind:
                continue
            result = descriptor.pattern.match(text)
            if result is None or not self.addressed_to_bot(result):
                continue
            return descriptor, result
        return None

    def addressed_to_bot(self, match: PatternMatch) -> bool:
        """Check that a match names no bot, or names this one."""
        if match.mention is None or self.bot_username is None:
            return True
        return match.mention.lower() == self.bot_username.lower()

    def descriptors(self, kind: EventKind | None = None) -> list[CommandDescriptor]:
        """Get registered descriptors in order, optionally for one kind."""
        if kind is None:
            return list(self._descriptors)
        return [d for d in self._descriptors if d.kind is kind]

    def __iter__(self) -> Iterator[CommandDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)
