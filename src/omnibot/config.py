"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitConfig(BaseModel):
    """Sliding-window budget for one command or event kind."""

    requests: int = Field(gt=0)
    window_ms: int = Field(gt=0)


def _default_rate_limits() -> dict[str, RateLimitConfig]:
    return {
        "meme": RateLimitConfig(requests=8, window_ms=60000),
        "imagine": RateLimitConfig(requests=3, window_ms=60000),
        "translate": RateLimitConfig(requests=10, window_ms=60000),
        "movie": RateLimitConfig(requests=10, window_ms=60000),
        "voice": RateLimitConfig(requests=3, window_ms=60000),
        "whattowatch": RateLimitConfig(requests=10, window_ms=60000),
        "watchlist": RateLimitConfig(requests=10, window_ms=60000),
        "extract": RateLimitConfig(requests=5, window_ms=60000),
        "default": RateLimitConfig(requests=15, window_ms=60000),
    }


def _default_session_timeouts() -> dict[str, int]:
    return {
        "imagine": 30 * 60,
        "translate": 30 * 60,
        "transcribe": 60,
        "whattowatch": 24 * 60 * 60,
        "movie": 24 * 60 * 60,
        "extract": 10 * 60,
        "default": 24 * 60 * 60,
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Security: tokens are stored as SecretStr to prevent accidental logging.
    Use .get_secret_value() to access the actual value when needed.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    # Telegram
    telegram_bot_token: SecretStr = Field(
        ...,
        description="Telegram Bot API token from @BotFather",
    )

    def __repr__(self) -> str:
        """Safe representation that hides secrets."""
        return (
            f"Settings(telegram_bot_token=SecretStr('***'), "
            f"admin_user_id={self.admin_user_id}, "
            f"privileged_user_ids={self.privileged_user_ids}, "
            f"app_version='{self.app_version}')"
        )

    # Access control
    admin_user_id: int = Field(
        ...,
        description="Telegram user ID of the single bot administrator",
    )
    privileged_user_ids: list[int] = Field(
        default_factory=list,
        description="Additional user IDs admitted while the bot is in private mode",
    )

    # Persistence
    state_dir: str = Field(
        default="data",
        description="Directory holding access-mode and subscription documents",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    # Shutdown
    shutdown_timeout: int = Field(
        default=30,
        description="Timeout in seconds for graceful shutdown",
    )

    # Rate Limiting
    rate_limits: dict[str, RateLimitConfig] = Field(
        default_factory=_default_rate_limits,
        description="Per-command sliding-window budgets; 'default' applies to unlisted commands",
    )
    message_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(requests=10, window_ms=60000),
        description="Per-user budget for plain (non-command) messages",
    )
    global_message_rate_limit: RateLimitConfig = Field(
        default_factory=lambda: RateLimitConfig(requests=60, window_ms=60000),
        description="Process-wide budget for plain messages",
    )
    rate_limit_cleanup_interval: int = Field(
        default=3600,
        description="Seconds between sweeps of idle rate-limit windows",
    )
    rate_limit_retention: int = Field(
        default=3600,
        description="Seconds a rate-limit timestamp is retained by the sweep",
    )

    # Session Management
    session_timeouts: dict[str, int] = Field(
        default_factory=_default_session_timeouts,
        description="Per-flow session lifetime in seconds; 'default' applies to unlisted flows",
    )
    session_sweep_interval: int = Field(
        default=6 * 60 * 60,
        description="Seconds between sweeps of stale sessions",
    )

    # Upstream HTTP
    http_timeout: float = Field(
        default=15.0,
        description="Timeout in seconds for third-party API calls",
    )
    upstream_retries: int = Field(
        default=2,
        description="Retry attempts for retryable upstream failures",
    )
    upstream_retry_base_delay: float = Field(
        default=0.5,
        description="Base delay in seconds for exponential backoff",
    )
    translate_mirrors: list[str] = Field(
        default_factory=lambda: [
            "https://lingva.ml/api/v1",
            "https://lingva.fossdaily.xyz/api/v1",
            "https://translate.plausibility.cloud/api/v1",
            "https://lingva.pussthecat.org/api/v1",
        ],
        description="Lingva translation mirrors tried in order",
    )
    tmdb_api_key: SecretStr | None = Field(
        default=None,
        description="TMDB API key for movie recommendations and cast lookups",
    )
    omdb_api_key: SecretStr | None = Field(
        default=None,
        description="OMDB API key for movie information",
    )
    huggingface_token: SecretStr | None = Field(
        default=None,
        description="HuggingFace inference API token",
    )

    # Background jobs
    job_max_concurrent: int = Field(
        default=2,
        description="Maximum long-running jobs processed at once",
    )
    job_max_per_subject: int = Field(
        default=2,
        description="Maximum long-running jobs processed at once per chat",
    )
    job_timeout: float = Field(
        default=120.0,
        description="Timeout in seconds for a single long-running job",
    )

    # Telegram Retry Settings
    telegram_max_retries: int = Field(
        default=3,
        description="Maximum retry attempts for Telegram API calls",
    )
    telegram_retry_base_delay: float = Field(
        default=1.0,
        description="Base delay in seconds for exponential backoff",
    )

    # Application
    app_name: str = Field(
        default="Omnibot",
        description="Application name",
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version",
    )

    def rate_limit_for(self, command: str) -> RateLimitConfig:
        """Return the budget configured for a command, or the default one."""
        return self.rate_limits.get(command) or self.rate_limits.get(
            "default", RateLimitConfig(requests=15, window_ms=60000)
        )

    def session_timeout_for(self, flow: str) -> int:
        """Return the session lifetime configured for a flow, in seconds."""
        return self.session_timeouts.get(flow, self.session_timeouts.get("default", 86400))


def get_settings() -> Settings:
    """Get settings instance.

    Settings are loaded from environment variables and .env file.
    """
    return Settings()  # type: ignore[call-arg]
