"""HTTP client for third-party content providers.

Every request carries an explicit timeout. Non-2xx responses, timeouts and
connection errors are mapped to ``UpstreamUnavailableError`` so handlers and
the dispatcher deal with a single failure type.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import urlparse

import aiohttp

from omnibot.exceptions import UpstreamUnavailableError

logger = logging.getLogger(__name__)

# Cap for a single backoff sleep
MAX_BACKOFF_DELAY = 8.0

USER_AGENT = "Omnibot/1.0 (Telegram bot)"


def _provider_for(url: str) -> str:
    return urlparse(url).netloc or url


def _is_retryable(error: UpstreamUnavailableError) -> bool:
    """Timeouts, connection errors, 429 and 5xx are worth retrying."""
    return error.status is None or error.status == 429 or error.status >= 500


class ApiClient:
    """Thin JSON/bytes client over a shared ``aiohttp.ClientSession``."""

    def __init__(
        self,
        timeout: float = 15.0,
        retries: int = 2,
        base_delay: float = 0.5,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            timeout: Total timeout in seconds for one request.
            retries: Extra attempts for retryable failures.
            base_delay: Base delay for exponential backoff between attempts.
            session: Session to use; one is created lazily when None.
        """
        self.timeout = timeout
        self.retries = retries
        self.base_delay = base_delay
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _backoff(self, attempt: int) -> float:
        return min(MAX_BACKOFF_DELAY, self.base_delay * (2**attempt))

    async def _request_once(
        self,
        method: str,
        url: str,
        provider: str,
        *,
        expect: str,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    raise UpstreamUnavailableError(provider, status=response.status)
                if expect == "bytes":
                    return await response.read()
                return await response.json(content_type=None)
        except TimeoutError:
            raise UpstreamUnavailableError(provider, message=f"Upstream '{provider}' timed out") from None
        except aiohttp.ClientError as e:
            raise UpstreamUnavailableError(provider, message=f"Upstream '{provider}' failed: {e}") from e
        except ValueError as e:
            # Body was not valid JSON
            raise UpstreamUnavailableError(provider, message=f"Upstream '{provider}' sent invalid JSON") from e

    async def _request(
        self,
        method: str,
        url: str,
        *,
        expect: str = "json",
        provider: str | None = None,
        retries: int | None = None,
        **kwargs: Any,
    ) -> Any:
        provider = provider or _provider_for(url)
        attempts = (self.retries if retries is None else retries) + 1

        for attempt in range(attempts):
            try:
                return await self._request_once(method, url, provider, expect=expect, **kwargs)
            except UpstreamUnavailableError as e:
                if attempt + 1 >= attempts or not _is_retryable(e):
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    "Upstream request failed, retrying",
                    extra={"provider": provider, "status": e.status, "delay": delay, "attempt": attempt},
                )
                await asyncio.sleep(delay)

        raise UpstreamUnavailableError(provider)  # pragma: no cover

    async def get_json(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        provider: str | None = None,
    ) -> Any:
        """GET a URL and decode the JSON body.

        Raises:
            UpstreamUnavailableError: On non-2xx, timeout or connection failure.
        """
        return await self._request("GET", url, params=params, headers=headers, provider=provider)

    async def post_json(
        self,
        url: str,
        payload: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        provider: str | None = None,
    ) -> Any:
        """POST a JSON payload (or raw bytes) and decode the JSON response."""
        return await self._request(
            "POST", url, json=payload, data=data, headers=headers, provider=provider
        )

    async def post_bytes(
        self,
        url: str,
        payload: Any = None,
        data: bytes | None = None,
        headers: Mapping[str, str] | None = None,
        provider: str | None = None,
    ) -> bytes:
        """POST JSON or raw bytes and return the raw response body (images, audio)."""
        return await self._request(
            "POST",
            url,
            expect="bytes",
            json=payload,
            data=data,
            headers=headers,
            provider=provider,
        )

    async def get_json_from_mirrors(
        self,
        base_urls: Sequence[str],
        path: str,
        params: Mapping[str, Any] | None = None,
        provider: str = "mirrors",
    ) -> Any:
        """Try equivalent mirrors in order until one answers.

        Sleeps with bounded exponential backoff between mirrors.

        Args:
            base_urls: Mirror base URLs, tried first to last.
            path: Path appended to each base URL.
            params: Query parameters.
            provider: Name reported if every mirror fails.

        Returns:
            The first successful JSON response.

        Raises:
            UpstreamUnavailableError: If every mirror failed.
        """
        if not base_urls:
            raise UpstreamUnavailableError(provider, message="No mirrors configured")

        last_error: UpstreamUnavailableError | None = None
        for index, base in enumerate(base_urls):
            url = f"{base.rstrip('/')}/{path.lstrip('/')}"
            try:
                return await self._request("GET", url, params=params, retries=0)
            except UpstreamUnavailableError as e:
                last_error = e
                logger.warning(
                    "Mirror failed",
                    extra={"mirror": base, "status": e.status, "error": e.message},
                )
                if index + 1 < len(base_urls):
                    await asyncio.sleep(self._backoff(index))

        raise UpstreamUnavailableError(
            provider,
            status=last_error.status if last_error else None,
            message=f"All {provider} failed",
        )
