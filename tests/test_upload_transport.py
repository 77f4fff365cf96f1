"""
Tests for upload_transport.py.

Covers:
  - LocalTransport: forwards to the handler, never raises
  - HttpTransport: multipart POST, envelope parsing, network failures
    (aiohttp session is mocked, no network)
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from conftest import make_provider
from errors import ErrorKind
from image_normalizer import NormalizedImage
from image_search import BufferInput, Err, ImageSearchConfig, ImageSearchHandler, Ok
from upload_transport import HttpTransport, LocalTransport

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 60
IMAGE = NormalizedImage(JPEG, "image/jpeg", "car.jpg")
TOYOTA = {"make": "Toyota", "bodyType": "SUV", "color": "White", "confidence": 0.92}


def mock_session(*, payload=None, status=200, json_error=None, post_error=None):
    """ClientSession mock in the async-context-manager shape aiohttp uses."""
    mock_resp = AsyncMock()
    mock_resp.status = status
    if json_error:
        mock_resp.json = AsyncMock(side_effect=json_error)
    else:
        mock_resp.json = AsyncMock(return_value=payload)

    mock_post_ctx = MagicMock()
    mock_post_ctx.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_post_ctx.__aexit__ = AsyncMock(return_value=False)

    mock_session = MagicMock()
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=False)
    if post_error:
        mock_session.post = MagicMock(side_effect=post_error)
    else:
        mock_session.post = MagicMock(return_value=mock_post_ctx)
    return mock_session


# ── LocalTransport ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestLocalTransport:
    async def test_forwards_bytes_and_type(self):
        provider = make_provider()
        handler = ImageSearchHandler(ImageSearchConfig(credential="k"), provider=provider)
        result = await LocalTransport(handler).send(IMAGE)
        assert isinstance(result, Ok)
        assert provider.infer.call_args.args[:2] == (JPEG, "image/jpeg")

    async def test_handler_error_passed_through(self):
        handler = ImageSearchHandler(ImageSearchConfig(credential=None))
        result = await LocalTransport(handler).send(IMAGE)
        assert result.kind is ErrorKind.SERVICE_NOT_CONFIGURED

    async def test_handler_crash_becomes_transport_error(self):
        handler = MagicMock()
        handler.process = AsyncMock(side_effect=RuntimeError("boom"))
        result = await LocalTransport(handler).send(IMAGE)
        assert result.kind is ErrorKind.TRANSPORT

    async def test_single_attempt(self):
        handler = MagicMock()
        handler.process = AsyncMock(return_value=Err(ErrorKind.INFERENCE_CALL, "AI model call failed: x"))
        await LocalTransport(handler).send(IMAGE)
        handler.process.assert_awaited_once_with(BufferInput(JPEG, "image/jpeg"))


# ── HttpTransport ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestHttpTransport:
    async def test_success_envelope(self):
        session = mock_session(payload={"success": True, "data": TOYOTA})
        with patch("aiohttp.ClientSession", return_value=session):
            result = await HttpTransport("http://search/api/image-search").send(IMAGE)

        assert isinstance(result, Ok)
        assert result.data.make == "Toyota"
        args, kwargs = session.post.call_args
        assert args[0] == "http://search/api/image-search"
        assert isinstance(kwargs["data"], aiohttp.FormData)
        assert session.post.call_count == 1

    async def test_error_envelope(self):
        session = mock_session(
            payload={"success": False, "error": "AI service not configured",
                     "kind": "ServiceNotConfiguredError"},
            status=503,
        )
        with patch("aiohttp.ClientSession", return_value=session):
            result = await HttpTransport("http://search").send(IMAGE)
        assert result == Err(ErrorKind.SERVICE_NOT_CONFIGURED, "AI service not configured")

    async def test_non_json_body(self):
        session = mock_session(json_error=ValueError("Expecting value"), status=502)
        with patch("aiohttp.ClientSession", return_value=session):
            result = await HttpTransport("http://search").send(IMAGE)
        assert result.kind is ErrorKind.TRANSPORT
        assert "HTTP 502" in result.message

    async def test_connection_error(self):
        session = mock_session(post_error=aiohttp.ClientConnectionError("refused"))
        with patch("aiohttp.ClientSession", return_value=session):
            result = await HttpTransport("http://search").send(IMAGE)
        assert result == Err(ErrorKind.TRANSPORT, "Could not reach the image search service")

    async def test_timeout(self):
        session = mock_session(post_error=asyncio.TimeoutError())
        with patch("aiohttp.ClientSession", return_value=session):
            result = await HttpTransport("http://search").send(IMAGE)
        assert result.kind is ErrorKind.TRANSPORT
        assert "timed out" in result.message

    async def test_invalid_envelope(self):
        session = mock_session(payload={"hello": "world"})
        with patch("aiohttp.ClientSession", return_value=session):
            result = await HttpTransport("http://search").send(IMAGE)
        assert result == Err(ErrorKind.TRANSPORT, "Image search returned an invalid response")
