"""
search_router.py — turn a search into a listing-page URL.

Image search and text search are separate user actions, so a navigation
carries either the inferred attributes or the free-text term, never both.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from image_search import InferredAttributes

LISTING_PATH = "/cars"


@dataclass(frozen=True)
class Navigation:
    url: str


def attributes_query(attributes: InferredAttributes) -> str:
    """make / bodyType / color, in that order, skipping empty values."""
    params = [
        ("make", attributes.make),
        ("bodyType", attributes.body_type),
        ("color", attributes.color),
    ]
    return urlencode([(key, value) for key, value in params if value])


def text_query(term: str) -> str:
    if not term or not term.strip():
        raise ValueError("Please enter a search term")
    return urlencode({"search": term})


def route_search(
    *,
    attributes: Optional[InferredAttributes] = None,
    text: Optional[str] = None,
) -> Navigation:
    """Build the listing URL for exactly one of *attributes* or *text*."""
    if (attributes is None) == (text is None):
        raise ValueError("route_search() needs exactly one of attributes or text")

    query = attributes_query(attributes) if attributes is not None else text_query(text)
    return Navigation(f"{LISTING_PATH}?{query}" if query else LISTING_PATH)
