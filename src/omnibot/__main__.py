"""Entry point for Omnibot.

Loads settings, checks that the process can persist state and resolve time
zones, configures structlog, then polls until a signal arrives or the bot
stops on its own.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from omnibot.bot import OmnibotApp
from omnibot.config import get_settings
from omnibot.exceptions import ConfigurationError

if TYPE_CHECKING:
    from omnibot.config import Settings


def configure_structlog(log_level: str) -> None:
    """Configure structlog for structured logging.

    Args:
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
            Unknown names fall back to INFO.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def prepare_runtime(settings: Settings) -> Path:
    """Check the preconditions the bot cannot run without.

    Creates the state directory when missing and makes sure the IANA time
    zone database is available for subscription scheduling.

    Returns:
        The resolved state directory.

    Raises:
        ConfigurationError: If the state directory is unusable or time zone
            data is missing.
    """
    state_dir = Path(settings.state_dir).expanduser()
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            message=f"Cannot create state directory '{state_dir}': {e}"
        ) from e
    if not state_dir.is_dir():
        raise ConfigurationError("state_dir")

    try:
        ZoneInfo("UTC")
    except ZoneInfoNotFoundError as e:
        raise ConfigurationError(message="Time zone data not found, install tzdata") from e

    return state_dir.resolve()


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set ``stop_event`` on SIGINT/SIGTERM where the loop supports it."""
    logger = structlog.get_logger(__name__)
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):

        def on_signal(received: signal.Signals = sig) -> None:
            logger.info("Received signal", signal=received.name)
            stop_event.set()

        # Not available on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, on_signal)


async def run_until_stopped(app: OmnibotApp, stop_event: asyncio.Event) -> None:
    """Poll until the bot exits or ``stop_event`` is set."""
    polling = asyncio.create_task(app.start())
    waiter = asyncio.create_task(stop_event.wait())

    done, pending = await asyncio.wait({polling, waiter}, return_when=asyncio.FIRST_COMPLETED)

    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    if polling in done:
        polling.result()


async def shutdown(app: OmnibotApp, timeout: int = 30) -> None:
    """Gracefully shutdown the bot with timeout.

    Args:
        app: The OmnibotApp instance to shut down.
        timeout: Maximum time to wait for shutdown in seconds (default: 30).
    """
    logger = structlog.get_logger(__name__)
    logger.info("Initiating graceful shutdown...", timeout=timeout)

    try:
        await asyncio.wait_for(app.stop(), timeout=timeout)
        logger.info("Bot stopped successfully")
    except TimeoutError:
        logger.warning("Shutdown timed out after seconds", seconds=timeout)
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


async def main() -> None:
    """Main entry point for Omnibot."""
    try:
        settings: Settings = get_settings()
    except Exception as e:
        print(f"Failed to load settings: {e}")
        print("Make sure .env file exists with TELEGRAM_BOT_TOKEN and ADMIN_USER_ID.")
        sys.exit(1)

    configure_structlog(settings.log_level)
    logger = structlog.get_logger(__name__)

    try:
        state_dir = prepare_runtime(settings)
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=e.message, key=e.config_key)
        sys.exit(1)

    logger.info(
        "Starting Omnibot",
        app_name=settings.app_name,
        version=settings.app_version,
        state_dir=str(state_dir),
        privileged_users=len(settings.privileged_user_ids),
    )

    app = OmnibotApp(settings)
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event)

    try:
        await run_until_stopped(app, stop_event)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        raise
    finally:
        await shutdown(app, timeout=settings.shutdown_timeout)
        logger.info("Shutdown complete")


def run() -> None:
    """Console script entry point."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    run()
