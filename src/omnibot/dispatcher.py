"""Core dispatcher: routes inbound events to registered handlers.

The pipeline for every event is:

    ignore bots/forwards -> access control -> ambient rate limits
    -> registry match (first wins) -> admin gate -> descriptor policy
    -> session load -> handler

Every failure short-circuits with a user-visible notice. Errors raised by
handlers are caught here, logged, and answered; the process keeps running.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from omnibot.events import CallbackEvent, Event, EventKind, MessageEvent
from omnibot.exceptions import (
    AccessDeniedError,
    MalformedInputError,
    RateLimitedError,
    SessionExpiredError,
    UpstreamUnavailableError,
)
from omnibot.rate_limiter import (
    GLOBAL_SUBJECT,
    LimitScope,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
)
from omnibot.sessions import SessionStore, session_key
from omnibot.watchlist import WatchlistStore

if TYPE_CHECKING:
    from omnibot.access import AccessControl
    from omnibot.config import Settings
    from omnibot.gateway import Gateway, Keyboard
    from omnibot.http import ApiClient
    from omnibot.jobs import JobQueue
    from omnibot.metrics import Metrics
    from omnibot.registry import CommandDescriptor, CommandRegistry, PatternMatch
    from omnibot.scheduler import SubscriptionScheduler
    from omnibot.subscriptions import SubscriptionStore

logger = logging.getLogger(__name__)

# User-facing notices
NOTICE_DENIED = "⛔ Sorry, you are not authorized to use this bot."
NOTICE_ADMIN_ONLY = "⛔ This command is only available to the administrator."
NOTICE_RATE_LIMITED = "⚠️ You're doing that too often. Please wait {seconds} seconds."
NOTICE_GLOBAL_RATE_LIMITED = "⚠️ The bot is experiencing high traffic. Please try again in a moment."
NOTICE_SESSION_EXPIRED = "⌛ Session expired. Please start again with /{flow}."
NOTICE_UPSTREAM_BUSY = "⏳ The service is busy right now. Please try again later."
NOTICE_UPSTREAM_NOT_FOUND = "🔍 Nothing found."
NOTICE_UPSTREAM_FAILED = "😔 The service is unavailable right now. Please try again later."
NOTICE_FAILED = "❌ Something went wrong. Please try again later."


class DispatchResult(str, Enum):
    """Outcome of dispatching one event."""

    HANDLED = "handled"
    UNMATCHED = "unmatched"
    DENIED = "denied"
    RATE_LIMITED = "rate_limited"
    SESSION_EXPIRED = "session_expired"
    FAILED = "failed"
    IGNORED = "ignored"


@dataclass
class Services:
    """Shared collaborators injected into every handler context."""

    settings: Settings
    access: AccessControl
    sessions: SessionStore
    rate_limiter: SlidingWindowRateLimiter
    metrics: Metrics
    subscriptions: SubscriptionStore
    jobs: JobQueue
    watchlist: WatchlistStore = field(default_factory=WatchlistStore)
    http: ApiClient | None = None
    scheduler: SubscriptionScheduler | None = None


@dataclass
class HandlerContext:
    """Everything a handler receives for one invocation.

    Attributes:
        event: The inbound (or scheduled) event.
        match: Parsed pattern match; ``args`` holds the argument text.
        descriptor: The descriptor that matched.
        gateway: Outbound chat operations.
        services: Shared collaborators.
        session_key: Key of the descriptor's session flow, if any.
        session: Fresh session payload for that flow, or None.
    """

    event: Event
    match: PatternMatch
    descriptor: CommandDescriptor
    gateway: Gateway
    services: Services
    session_key: str | None = None
    session: Any | None = None
    answered: bool = field(default=False, init=False)

    @property
    def args(self) -> str:
        return self.match.args

    @property
    def chat_id(self) -> int:
        return self.event.chat_id

    @property
    def user_id(self) -> int:
        return self.event.user_id

    @property
    def message_id(self) -> int | None:
        return self.event.message_id

    @property
    def is_scheduled(self) -> bool:
        return isinstance(self.event, MessageEvent) and self.event.is_scheduled

    @property
    def sessions(self) -> SessionStore:
        return self.services.sessions

    @property
    def settings(self) -> Settings:
        return self.services.settings

    def is_admin(self) -> bool:
        return self.services.access.is_admin(self.user_id)

    async def reply(self, text: str, keyboard: Keyboard | None = None) -> int | None:
        """Send a message to the event's chat."""
        return await self.gateway.send_message(self.chat_id, text, keyboard=keyboard)

    async def edit(self, text: str, keyboard: Keyboard | None = None) -> None:
        """Edit the message a callback button belongs to, or reply if there is none."""
        if self.message_id is None:
            await self.reply(text, keyboard)
            return
        await self.gateway.edit_message_text(self.chat_id, self.message_id, text, keyboard=keyboard)

    async def answer(self, text: str | None = None, show_alert: bool = False) -> None:
        """Answer the callback query that triggered this handler."""
        if isinstance(self.event, CallbackEvent) and not self.answered:
            self.answered = True
            await self.gateway.answer_callback(self.event.callback_id, text=text, show_alert=show_alert)

    async def enforce(self, policy: RateLimitPolicy) -> None:
        """Count this invocation against a policy the descriptor does not carry.

        Raises:
            RateLimitedError: If the policy's window is full.
        """
        await enforce_policy(self.services.rate_limiter, policy, self.user_id, self.descriptor.name)

    def flow_key(self, flow: str) -> str:
        """Session key for a flow in this chat."""
        return session_key(self.chat_id, flow)

    def save_session(self, payload: Any, flow: str | None = None) -> None:
        """Replace the session payload for a flow (the descriptor's by default)."""
        name = flow or self.descriptor.session_flow
        if not name:
            raise ValueError(f"{self.descriptor.name}: no session flow to save")
        self.sessions.set(self.flow_key(name), payload, flow=name)
        if name == self.descriptor.session_flow:
            self.session_key = self.flow_key(name)
            self.session = payload

    def end_session(self, flow: str | None = None) -> bool:
        """Delete the session for a flow (the descriptor's by default)."""
        name = flow or self.descriptor.session_flow
        if not name:
            return False
        if name == self.descriptor.session_flow:
            self.session = None
        return self.sessions.delete(self.flow_key(name))


class Dispatcher:
    """Routes events through access control, rate limits and the registry."""

    def __init__(
        self,
        registry: CommandRegistry,
        gateway: Gateway,
        services: Services,
        ambient_limits: dict[EventKind, list[RateLimitPolicy]] | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Commands to route to; frozen on construction.
            gateway: Outbound chat operations.
            services: Shared collaborators passed to handlers.
            ambient_limits: Per-event-kind limits checked before matching.
                Defaults to the limits derived from settings.
        """
        registry.freeze()
        self.registry = registry
        self.gateway = gateway
        self.services = services
        self.ambient_limits = (
            ambient_limits if ambient_limits is not None else default_ambient_limits(services.settings)
        )
        self._tasks: set[asyncio.Task[DispatchResult]] = set()

    @property
    def pending(self) -> int:
        """Number of spawned dispatches still running."""
        return len(self._tasks)

    # =========================================================================
    # Public entry points
    # =========================================================================

    async def dispatch(self, event: Event) -> DispatchResult:
        """Route one event to its handler.

        Args:
            event: Inbound event from the gateway.

        Returns:
            What happened to the event.
        """
        if isinstance(event, MessageEvent) and (event.is_bot or event.is_forwarded):
            return DispatchResult.IGNORED

        metrics = self.services.metrics
        scheduled = isinstance(event, MessageEvent) and event.is_scheduled
        metrics.record_request(event.user_id, kind=_request_kind(event))

        if not scheduled and not self._is_allowed(event):
            logger.info(
                "Access denied",
                extra={"user_id": event.user_id, "chat_id": event.chat_id, "kind": event.kind.value},
            )
            metrics.record_denied()
            await self._notify(event, NOTICE_DENIED, alert=True)
            return DispatchResult.DENIED

        if not scheduled and not await self._check_ambient(event):
            metrics.record_rate_limited()
            return DispatchResult.RATE_LIMITED

        found = self.registry.match(event)
        if found is None:
            metrics.record_unmatched()
            if isinstance(event, CallbackEvent):
                await self.gateway.answer_callback(event.callback_id)
            return DispatchResult.UNMATCHED

        descriptor, match = found
        return await self._invoke(event, descriptor, match)

    async def run_virtual(self, chat_id: int, text: str) -> DispatchResult:
        """Run a command on behalf of the scheduler.

        Skips access control; rate limits count against the chat.

        Args:
            chat_id: Chat to deliver to.
            text: Command text, e.g. ``"/fact"``.

        Returns:
            What happened to the virtual event.
        """
        event = MessageEvent(chat_id=chat_id, user_id=chat_id, text=text, is_scheduled=True)
        return await self.dispatch(event)

    def spawn(self, event: Event) -> asyncio.Task[DispatchResult]:
        """Dispatch an event as an independent, tracked task."""
        task = asyncio.create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float) -> int:
        """Wait for spawned dispatches, cancelling whatever outlives the timeout.

        Returns:
            Number of tasks that had to be cancelled.
        """
        if not self._tasks:
            return 0

        tasks = list(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled unfinished dispatches", extra={"count": len(pending)})
        return len(pending)

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    def _is_allowed(self, event: Event) -> bool:
        access = self.services.access
        # Admin-issued commands and callbacks bypass authorization
        if access.is_admin(event.user_id):
            return True
        return access.is_authorized(event.user_id)

    async def _check_ambient(self, event: Event) -> bool:
        if isinstance(event, MessageEvent) and event.text.startswith("/"):
            return True

        limiter = self.services.rate_limiter
        for policy in self.ambient_limits.get(event.kind, ()):
            action = policy.action or event.kind.value
            if await limiter.check_policy(policy, event.user_id, action):
                continue

            if policy.scope is LimitScope.GLOBAL:
                notice = NOTICE_GLOBAL_RATE_LIMITED
            else:
                wait = limiter.retry_after(event.user_id, action, policy.max_requests, policy.window_ms)
                notice = NOTICE_RATE_LIMITED.format(seconds=max(1, round(wait)))
            logger.info(
                "Ambient rate limit hit",
                extra={"user_id": event.user_id, "action": action, "scope": policy.scope.value},
            )
            await self._notify(event, notice)
            return False
        return True

    async def _check_policy(self, event: Event, descriptor: CommandDescriptor) -> None:
        if descriptor.policy is None:
            return
        # Scheduled events count against the chat
        subject = event.chat_id if _is_scheduled(event) else event.user_id
        await enforce_policy(self.services.rate_limiter, descriptor.policy, subject, descriptor.name)

    def _load_session(self, event: Event, descriptor: CommandDescriptor) -> tuple[str | None, Any]:
        flow = descriptor.session_flow
        if not flow:
            return None, None

        sessions = self.services.sessions
        key = session_key(event.chat_id, flow)
        payload = sessions.get_fresh(key, sessions.timeout_for(flow))
        if payload is None and descriptor.requires_session:
            raise SessionExpiredError(flow, key=key)
        return key, payload

    async def _invoke(
        self,
        event: Event,
        descriptor: CommandDescriptor,
        match: PatternMatch,
    ) -> DispatchResult:
        metrics = self.services.metrics
        log_extra = {
            "command": descriptor.name,
            "user_id": event.user_id,
            "chat_id": event.chat_id,
            "scheduled": _is_scheduled(event),
        }
        ctx: HandlerContext | None = None
        start = time.monotonic()

        try:
            if descriptor.admin_only and not self.services.access.is_admin(event.user_id):
                raise AccessDeniedError(event.user_id, NOTICE_ADMIN_ONLY)

            await self._check_policy(event, descriptor)
            key, payload = self._load_session(event, descriptor)

            metrics.record_command(descriptor.name)
            ctx = HandlerContext(
                event=event,
                match=match,
                descriptor=descriptor,
                gateway=self.gateway,
                services=self.services,
                session_key=key,
                session=payload,
            )
            logger.debug("Dispatching", extra=log_extra)
            await descriptor.handler(ctx)

        except AccessDeniedError as e:
            logger.info("Admin command denied", extra=log_extra)
            metrics.record_denied()
            await self._notify(event, e.message, alert=True, ctx=ctx)
            return DispatchResult.DENIED

        except RateLimitedError as e:
            logger.info("Rate limit hit", extra={**log_extra, "retry_after": e.retry_after})
            metrics.record_rate_limited()
            seconds = max(1, round(e.retry_after))
            await self._notify(event, NOTICE_RATE_LIMITED.format(seconds=seconds), alert=True, ctx=ctx)
            return DispatchResult.RATE_LIMITED

        except SessionExpiredError as e:
            logger.info("Session expired", extra={**log_extra, "flow": e.flow})
            metrics.record_session_expired()
            await self._notify(event, NOTICE_SESSION_EXPIRED.format(flow=e.flow), alert=True, ctx=ctx)
            return DispatchResult.SESSION_EXPIRED

        except MalformedInputError as e:
            logger.info("Malformed input", extra={**log_extra, "error": e.message})
            metrics.record_error(event.user_id, type(e).__name__)
            notice = f"❌ {e.message}"
            if e.usage:
                notice += f"\n\nUsage: {e.usage}"
            await self._notify(event, notice, alert=True, ctx=ctx)
            return DispatchResult.FAILED

        except UpstreamUnavailableError as e:
            logger.warning(
                "Upstream unavailable",
                extra={**log_extra, "provider": e.provider, "status": e.status},
            )
            metrics.record_error(event.user_id, type(e).__name__)
            if e.is_rate_limited:
                notice = NOTICE_UPSTREAM_BUSY
            elif e.is_not_found:
                notice = NOTICE_UPSTREAM_NOT_FOUND
            else:
                notice = NOTICE_UPSTREAM_FAILED
            await self._notify(event, notice, ctx=ctx)
            return DispatchResult.FAILED

        except Exception as e:
            logger.exception("Handler failed", extra={**log_extra, "error": str(e)})
            metrics.record_error(event.user_id, "InternalFault")
            await self._notify(event, NOTICE_FAILED, ctx=ctx)
            return DispatchResult.FAILED

        finally:
            await metrics.record_latency_async(time.monotonic() - start)

        if isinstance(event, CallbackEvent) and not ctx.answered:
            await self.gateway.answer_callback(event.callback_id)
        return DispatchResult.HANDLED

    async def _notify(
        self,
        event: Event,
        text: str,
        alert: bool = False,
        ctx: HandlerContext | None = None,
    ) -> None:
        """Tell the user why their event was not handled.

        Callback queries are answered (as an alert when asked) unless the
        handler already answered them; scheduled events are only logged.
        """
        if _is_scheduled(event):
            logger.info("Scheduled run not delivered", extra={"chat_id": event.chat_id, "reason": text})
            return

        try:
            if isinstance(event, CallbackEvent) and not (ctx is not None and ctx.answered):
                await self.gateway.answer_callback(event.callback_id, text=text, show_alert=alert)
                return
            await self.gateway.send_message(event.chat_id, text)
        except Exception:
            logger.exception("Failed to deliver notice", extra={"chat_id": event.chat_id})


async def enforce_policy(
    limiter: SlidingWindowRateLimiter,
    policy: RateLimitPolicy,
    subject: int,
    default_action: str,
) -> None:
    """Record a request against a policy.

    Raises:
        RateLimitedError: If the window is full; carries the wait in seconds.
    """
    action = policy.action or default_action
    if await limiter.check_policy(policy, subject, action):
        return

    key_subject: int | str = GLOBAL_SUBJECT if policy.scope is LimitScope.GLOBAL else subject
    wait = limiter.retry_after(key_subject, action, policy.max_requests, policy.window_ms)
    raise RateLimitedError(action, retry_after=wait)


def default_ambient_limits(settings: Settings) -> dict[EventKind, list[RateLimitPolicy]]:
    """Per-event-kind limits: plain messages per user and globally, voice per user."""
    return {
        EventKind.MESSAGE: [
            RateLimitPolicy.from_config(settings.message_rate_limit, action="message"),
            RateLimitPolicy.from_config(
                settings.global_message_rate_limit, scope=LimitScope.GLOBAL, action="message"
            ),
        ],
        EventKind.VOICE: [
            RateLimitPolicy.from_config(settings.rate_limit_for("voice"), action="voice"),
        ],
    }


def _is_scheduled(event: Event) -> bool:
    return isinstance(event, MessageEvent) and event.is_scheduled


def _request_kind(event: Event) -> str:
    if _is_scheduled(event):
        return "scheduled"
    if isinstance(event, CallbackEvent):
        return "callback"
    if isinstance(event, MessageEvent) and event.text.startswith("/"):
        return "command"
    return "message"
