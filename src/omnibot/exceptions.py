"""Custom exceptions for Omnibot.

This module defines the error taxonomy used across the dispatch layer.
Every exception a handler may raise on purpose inherits from OmnibotError;
anything else reaching the dispatcher is treated as an internal fault.
"""

from __future__ import annotations


class OmnibotError(Exception):
    """Base exception for all Omnibot errors.

    Attributes:
        message: Human-readable error message.
    """

    def __init__(self, message: str = "An error occurred") -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
        """
        self.message = message
        super().__init__(self.message)


# =============================================================================
# Dispatch Errors
# =============================================================================


class AccessDeniedError(OmnibotError):
    """Raised when an unauthorized user attempts a gated command.

    Attributes:
        user_id: The user that was denied.
    """

    def __init__(self, user_id: int, message: str | None = None) -> None:
        """Initialize the exception.

        Args:
            user_id: The user that was denied.
            message: Optional custom message.
        """
        self.user_id = user_id
        super().__init__(message or f"Access denied for user {user_id}")


class RateLimitedError(OmnibotError):
    """Raised when a sliding window is full.

    Attributes:
        action: The rate-limited action name.
        retry_after: Seconds until the window admits again.
    """

    def __init__(
        self,
        action: str,
        retry_after: float = 0.0,
        message: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            action: The rate-limited action name.
            retry_after: Seconds until the window admits again.
            message: Optional custom message.
        """
        self.action = action
        self.retry_after = retry_after
        msg = message or f"Rate limit exceeded for '{action}'"
        if retry_after > 0:
            msg += f", retry after {retry_after:.0f}s"
        super().__init__(msg)


class SessionExpiredError(OmnibotError):
    """Raised when an event references a session that is absent or stale.

    Attributes:
        flow: The flow the session belonged to.
        key: The session key that was looked up.
    """

    def __init__(
        self,
        flow: str,
        key: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            flow: The flow the session belonged to.
            key: The session key that was looked up.
            message: Optional custom message.
        """
        self.flow = flow
        self.key = key
        super().__init__(message or f"Session for '{flow}' expired or missing")


class MalformedInputError(OmnibotError):
    """Raised when a user-supplied argument fails validation.

    Attributes:
        usage: Usage hint shown to the user.
    """

    def __init__(self, message: str, usage: str | None = None) -> None:
        """Initialize the exception.

        Args:
            message: What was wrong with the input.
            usage: Optional usage hint shown to the user.
        """
        self.usage = usage
        super().__init__(message)


class InvalidAccessModeError(MalformedInputError):
    """Raised when an access mode other than public/private is requested."""

    def __init__(self, mode: str) -> None:
        self.mode = mode
        super().__init__(
            f"Invalid access mode '{mode}'",
            usage="/access [public|private]",
        )


# =============================================================================
# Upstream Errors
# =============================================================================


class UpstreamUnavailableError(OmnibotError):
    """Raised when a third-party API fails, times out or returns non-2xx.

    Attributes:
        provider: Name or URL of the upstream service.
        status: HTTP status code, or None for timeouts and connection errors.
    """

    def __init__(
        self,
        provider: str,
        status: int | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            provider: Name or URL of the upstream service.
            status: HTTP status code if one was received.
            message: Optional custom message.
        """
        self.provider = provider
        self.status = status
        msg = message or f"Upstream '{provider}' unavailable"
        if status is not None:
            msg += f" (HTTP {status})"
        super().__init__(msg)

    @property
    def is_rate_limited(self) -> bool:
        """Whether the upstream answered 429."""
        return self.status == 429

    @property
    def is_not_found(self) -> bool:
        """Whether the upstream answered 404."""
        return self.status == 404


# =============================================================================
# Startup Errors
# =============================================================================


class ConfigurationError(OmnibotError):
    """Raised when configuration is invalid or missing.

    Attributes:
        config_key: The configuration key that is invalid.
    """

    def __init__(
        self,
        config_key: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            config_key: The configuration key that is invalid.
            message: Optional custom message.
        """
        self.config_key = config_key
        msg = message or "Configuration error"
        if config_key:
            msg = f"Invalid configuration for '{config_key}'"
        super().__init__(msg)


class RegistryFrozenError(OmnibotError):
    """Raised when registering a command after startup."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "Command registry is frozen")
