"""
image_types.py — mime types, magic-byte sniffing and data-URL parsing
shared by the normalizer (client side) and the handler (server side).
"""
from __future__ import annotations

import base64
import binascii
import re
from typing import Optional

# What the inference service accepts. "image/jpg" is not a registered type
# but browsers and phones send it, so it is accepted and mapped to jpeg.
ACCEPTED_MIME_TYPES: frozenset[str] = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/webp"}
)
# What the normalizer may hand to the transport
NORMALIZED_MIME_TYPES: frozenset[str] = frozenset({"image/jpeg", "image/png", "image/webp"})

OCTET_STREAM = "application/octet-stream"

_HEIF_BRANDS = (b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1")

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.DOTALL)


def sniff_mime_type(data: bytes) -> Optional[str]:
    """Identify the image format from its first bytes. None if unknown."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:4] == b"GIF8":
        return "image/gif"
    if data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS:
        return "image/heic"
    return None


def canonical_mime_type(mime_type: str) -> str:
    """Lower-case, strip parameters, and map the image/jpg alias to image/jpeg."""
    mime = mime_type.split(";", 1)[0].strip().lower()
    return "image/jpeg" if mime == "image/jpg" else mime


def is_heif(mime_type: Optional[str]) -> bool:
    mime = (mime_type or "").lower()
    return "heic" in mime or "heif" in mime


def parse_data_url(data_url: str) -> tuple[str, bytes]:
    """
    Split ``data:<mime>;base64,<payload>`` into (mime, raw bytes).
    Raises ValueError when the string is not a base64 data URL.
    """
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise ValueError("String provided is not a valid data URL")
    mime, payload = match.group(1), match.group(2)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Data URL payload is not valid base64: {exc}") from exc
    return mime.strip().lower(), raw


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode()}"


def format_size(n_bytes: int) -> str:
    """Human-readable size for user-facing limits: 6291456 → '6 MB'."""
    if n_bytes >= 1024 * 1024:
        return f"{n_bytes / (1024 * 1024):g} MB"
    if n_bytes >= 1024:
        return f"{n_bytes / 1024:g} KB"
    return f"{n_bytes} bytes"
