"""
upload_transport.py — hand a normalised image to the image search handler.

Both transports make exactly one attempt and never raise: whatever goes
wrong comes back as an Err, same as a handler-side failure. Resubmitting is
the caller's decision.

  LocalTransport  — handler lives in this process (tests, CLI, server-side use)
  HttpTransport   — POST to the web server's /api/image-search endpoint
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

import aiohttp

from errors import ErrorKind
from image_normalizer import NormalizedImage
from image_search import BufferInput, Err, ImageSearchHandler, SearchResult, result_from_dict

logger = logging.getLogger(__name__)

IMAGE_FIELD = "image"


class UploadTransport(ABC):

    @abstractmethod
    async def send(self, image: NormalizedImage) -> SearchResult:
        """Submit *image* once. Must not raise."""
        ...


class LocalTransport(UploadTransport):

    def __init__(self, handler: ImageSearchHandler):
        self._handler = handler

    async def send(self, image: NormalizedImage) -> SearchResult:
        try:
            return await self._handler.process(BufferInput(image.data, image.mime_type))
        except Exception as exc:
            logger.error("[transport] local handler raised: %s", exc, exc_info=True)
            return Err(ErrorKind.TRANSPORT, "Image search failed. Please try again.")


class HttpTransport(UploadTransport):

    def __init__(self, endpoint: str, timeout: float = 60.0):
        self.endpoint = endpoint
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def send(self, image: NormalizedImage) -> SearchResult:
        form = aiohttp.FormData()
        form.add_field(
            IMAGE_FIELD,
            image.data,
            filename=image.filename,
            content_type=image.mime_type,
        )
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(self.endpoint, data=form) as resp:
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError:
                        logger.warning("[transport] %s returned non-JSON (HTTP %d)",
                                       self.endpoint, resp.status)
                        return Err(ErrorKind.TRANSPORT, f"Image search failed (HTTP {resp.status})")
        except aiohttp.ClientError as exc:
            logger.warning("[transport] POST %s failed: %s", self.endpoint, exc)
            return Err(ErrorKind.TRANSPORT, "Could not reach the image search service")
        except asyncio.TimeoutError:
            logger.warning("[transport] POST %s timed out", self.endpoint)
            return Err(ErrorKind.TRANSPORT, "Image search timed out. Please try again.")

        try:
            return result_from_dict(payload)
        except ValueError as exc:
            logger.warning("[transport] bad envelope from %s: %s", self.endpoint, exc)
            return Err(ErrorKind.TRANSPORT, "Image search returned an invalid response")
