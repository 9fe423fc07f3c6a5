"""Tests for the upstream HTTP client."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from omnibot.exceptions import UpstreamUnavailableError
from omnibot.http import ApiClient


def response(status: int = 200, json_data: Any = None, body: bytes = b"") -> MagicMock:
    """Async context manager yielding a fake aiohttp response."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data)
    resp.read = AsyncMock(return_value=body)
    cm = MagicMock()
    cm.__aenter__.return_value = resp
    cm.__aexit__.return_value = False
    return cm


@pytest.fixture
def session() -> MagicMock:
    mock = MagicMock()
    mock.closed = False
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def client(session: MagicMock) -> ApiClient:
    return ApiClient(timeout=5.0, retries=2, base_delay=0.0, session=session)


class TestRequests:
    """Tests for get_json, post_json and post_bytes."""

    @pytest.mark.asyncio
    async def test_get_json_success(self, client: ApiClient, session: MagicMock) -> None:
        session.request.return_value = response(json_data={"text": "fact"})

        result = await client.get_json("https://api.example.com/fact", params={"language": "en"})

        assert result == {"text": "fact"}
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://api.example.com/fact")
        assert kwargs["params"] == {"language": "en"}
        assert kwargs["timeout"].total == 5.0

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, client: ApiClient, session: MagicMock) -> None:
        session.request.return_value = response(status=404)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_json("https://api.example.com/x", provider="tmdb")

        assert exc_info.value.status == 404
        assert exc_info.value.provider == "tmdb"
        assert exc_info.value.is_not_found
        assert session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, client: ApiClient, session: MagicMock) -> None:
        session.request.side_effect = [response(status=503), response(json_data={"ok": True})]

        assert await client.get_json("https://api.example.com/x") == {"ok": True}
        assert session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, client: ApiClient, session: MagicMock) -> None:
        session.request.side_effect = [response(status=429) for _ in range(3)]

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_json("https://api.example.com/x")

        assert exc_info.value.is_rate_limited
        assert exc_info.value.provider == "api.example.com"
        assert session.request.call_count == 3

    @pytest.mark.asyncio
    async def test_timeout_mapped(self, client: ApiClient, session: MagicMock) -> None:
        session.request.side_effect = TimeoutError()

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_json("https://api.example.com/x", provider="reddit")

        assert exc_info.value.status is None
        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error_mapped(self, client: ApiClient, session: MagicMock) -> None:
        session.request.side_effect = aiohttp.ClientConnectionError("refused")

        with pytest.raises(UpstreamUnavailableError):
            await client.get_json("https://api.example.com/x")

    @pytest.mark.asyncio
    async def test_invalid_json_mapped(self, client: ApiClient, session: MagicMock) -> None:
        cm = response()
        cm.__aenter__.return_value.json = AsyncMock(side_effect=ValueError("bad json"))
        session.request.return_value = cm

        with pytest.raises(UpstreamUnavailableError):
            await client.get_json("https://api.example.com/x")

    @pytest.mark.asyncio
    async def test_post_bytes(self, client: ApiClient, session: MagicMock) -> None:
        session.request.return_value = response(body=b"\x89PNG")

        result = await client.post_bytes(
            "https://hf.example.com/models/x",
            payload={"inputs": "cat"},
            headers={"Authorization": "Bearer t"},
        )

        assert result == b"\x89PNG"
        args, kwargs = session.request.call_args
        assert args[0] == "POST"
        assert kwargs["json"] == {"inputs": "cat"}
        assert kwargs["headers"] == {"Authorization": "Bearer t"}

    @pytest.mark.asyncio
    async def test_post_json_with_raw_data(self, client: ApiClient, session: MagicMock) -> None:
        session.request.return_value = response(json_data={"text": "hello"})

        result = await client.post_json("https://hf.example.com/models/whisper", data=b"OggS")

        assert result == {"text": "hello"}
        assert session.request.call_args.kwargs["data"] == b"OggS"


class TestMirrors:
    """Tests for get_json_from_mirrors()."""

    MIRRORS = ["https://one.example/api/v1", "https://two.example/api/v1/"]

    @pytest.mark.asyncio
    async def test_falls_back_to_next_mirror(self, client: ApiClient, session: MagicMock) -> None:
        session.request.side_effect = [response(status=502), response(json_data={"translation": "hola"})]

        result = await client.get_json_from_mirrors(self.MIRRORS, "auto/es/hello")

        assert result == {"translation": "hola"}
        urls = [c.args[1] for c in session.request.call_args_list]
        assert urls == ["https://one.example/api/v1/auto/es/hello", "https://two.example/api/v1/auto/es/hello"]

    @pytest.mark.asyncio
    async def test_each_mirror_tried_once(self, client: ApiClient, session: MagicMock) -> None:
        session.request.side_effect = [response(status=500), response(status=500)]

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_json_from_mirrors(self.MIRRORS, "x", provider="translation mirrors")

        assert exc_info.value.provider == "translation mirrors"
        assert exc_info.value.status == 500
        assert session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_no_mirrors(self, client: ApiClient) -> None:
        with pytest.raises(UpstreamUnavailableError):
            await client.get_json_from_mirrors([], "x")


class TestLifecycle:
    """Tests for session ownership."""

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self, client: ApiClient, session: MagicMock) -> None:
        await client.close()
        session.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owned_session_closed(self) -> None:
        client = ApiClient()
        session = client._get_session()
        assert isinstance(session, aiohttp.ClientSession)

        await client.close()

        assert session.closed
