"""
search_client.py — state behind the home page search box.

Holds the picked image between "drop a photo" and "Search with this image",
and enforces the two rules the UI relies on:

  • one submission at a time — while a search is in flight, busy is True
    and further submissions are refused without calling the transport
  • stale answers are dropped — removing/replacing the image or leaving the
    page bumps a generation counter; a result that comes back for an older
    generation is ignored instead of navigating

Nothing here raises for expected failures; the UI gets a Notice (toast) or
a Navigation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from errors import ImageSearchError
from image_normalizer import ImageSource, NormalizedImage, NormalizerOptions, normalize_image_async
from image_search import Ok
from search_router import Navigation, route_search
from upload_transport import UploadTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    level: str          # success | info | error
    message: str


@dataclass(frozen=True)
class SearchOutcome:
    navigation: Optional[Navigation] = None
    notice: Optional[Notice] = None
    stale: bool = False


class ImageSearchClient:

    def __init__(
        self,
        transport: UploadTransport,
        options: Optional[NormalizerOptions] = None,
    ):
        self._transport  = transport
        self._options    = options
        self.image: Optional[NormalizedImage] = None
        self._generation = 0
        self._uploads    = 0          # selections still being prepared
        self._in_flight  = False

    @property
    def busy(self) -> bool:
        """True while an image is being prepared or a search is running."""
        return self._uploads > 0 or self._in_flight

    # ── Image selection ───────────────────────────────────────────────────────

    async def select_image(
        self,
        source: ImageSource,
        *,
        declared_type: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Optional[Notice]:
        """
        Normalise and keep *source* as the search image.
        Returns None if the selection was replaced or removed meanwhile,
        whether it succeeded or not.
        """
        self._generation += 1
        generation = self._generation
        self._uploads += 1
        failure: Optional[Notice] = None
        try:
            image = await normalize_image_async(
                source, declared_type=declared_type, filename=filename, options=self._options,
            )
        except ImageSearchError as exc:
            logger.warning("[search-client] image rejected: %s", exc)
            failure = Notice("error", exc.message)
        except Exception:
            logger.exception("[search-client] image preparation failed")
            failure = Notice("error", "Failed to process uploaded image")
        finally:
            self._uploads -= 1

        if generation != self._generation:
            return None
        if failure is not None:
            return failure

        self.image = image
        return Notice("success", "Image uploaded successfully")

    def remove_image(self) -> Notice:
        self.image = None
        self._generation += 1
        return Notice("info", "Image removed")

    def abandon(self) -> None:
        """The user left the page: anything still in flight is now stale."""
        self._generation += 1

    # ── Submissions ───────────────────────────────────────────────────────────

    async def search_by_image(self) -> SearchOutcome:
        if self.image is None:
            return SearchOutcome(notice=Notice("error", "Please upload an image first"))
        if self._in_flight:
            return SearchOutcome(notice=Notice("error", "A search is already in progress"))

        generation = self._generation
        self._in_flight = True
        try:
            result = await self._transport.send(self.image)
        finally:
            self._in_flight = False

        if generation != self._generation:
            logger.info("[search-client] ignoring result for a removed/replaced image")
            return SearchOutcome(stale=True)

        if isinstance(result, Ok):
            return SearchOutcome(navigation=route_search(attributes=result.data))
        return SearchOutcome(notice=Notice("error", f"Failed to analyze image: {result.message}"))

    def search_by_text(self, term: str) -> SearchOutcome:
        try:
            return SearchOutcome(navigation=route_search(text=term))
        except ValueError as exc:
            return SearchOutcome(notice=Notice("error", str(exc)))
