"""
image_normalizer.py — turn whatever the user picked into an upload-ready image.

Phones hand us HEIC, cameras hand us 20-megapixel JPEGs, browsers hand us
data URLs. The inference service only takes JPEG/PNG/WebP and the handler
caps the payload, so anything that is not already a small accepted image is
decoded and re-encoded:

  source ──► read ──► accepted type & small? ──yes──► pass through
                            │ no
                            ▼
             decode (Pillow, then libheif) ──► orient ──► RGB ──► shrink
                            │                                      │
                         failed                                 JPEG encode
                            ▼                                  (step quality
             original accepted? ─yes─► pass through             down if big)
                            │ no
                            ▼
                       DecodeError

Pillow work is blocking; async callers use normalize_image_async().
"""
from __future__ import annotations

import asyncio
import io
import logging
import os
from dataclasses import dataclass, field
from typing import BinaryIO, Optional, Union

import pillow_heif
from PIL import Image, ImageOps

import config
from errors import DecodeError, PayloadTooLargeError, SourceTooLargeError
from image_types import (
    ACCEPTED_MIME_TYPES,
    NORMALIZED_MIME_TYPES,
    canonical_mime_type,
    format_size,
    is_heif,
    parse_data_url,
    sniff_mime_type,
)

logger = logging.getLogger(__name__)

# Lets Image.open() read HEIC/HEIF directly
pillow_heif.register_heif_opener()

ImageSource = Union[bytes, bytearray, memoryview, str, BinaryIO]

_MIB = 1024 * 1024
_MIN_QUALITY  = 40
_QUALITY_STEP = 10

CONVERSION_FAILED = "Unsupported image format and conversion failed. Please pick a JPEG/PNG image."
READ_FAILED       = "Failed to read the image"


@dataclass(frozen=True)
class NormalizerOptions:
    max_width: int         = 1600       # longest side after resize, px
    quality: int           = 85         # initial JPEG quality
    passthrough_bytes: int = 5 * _MIB   # accepted images at or below this skip re-encoding
    max_source_bytes: int  = 15 * _MIB  # refuse to even look at bigger files
    max_output_bytes: int  = 6 * _MIB   # must match the handler's ceiling

    @classmethod
    def from_env(cls) -> "NormalizerOptions":
        return cls(
            max_width=config.NORMALIZER_MAX_WIDTH,
            quality=config.NORMALIZER_QUALITY,
            passthrough_bytes=config.NORMALIZER_PASSTHROUGH_BYTES,
            max_source_bytes=config.UPLOAD_MAX_BYTES,
            max_output_bytes=config.IMAGE_SEARCH_MAX_BYTES,
        )


@dataclass
class NormalizedImage:
    """An image ready to upload. Lives for one search submission."""
    data: bytes
    mime_type: str
    filename: str = "image.jpg"

    byte_size: int = field(init=False)

    def __post_init__(self) -> None:
        if self.mime_type not in NORMALIZED_MIME_TYPES:
            raise ValueError(f"NormalizedImage cannot carry {self.mime_type!r}")
        self.byte_size = len(self.data)


# ── Public API ────────────────────────────────────────────────────────────────

def normalize_image(
    source: ImageSource,
    *,
    declared_type: Optional[str] = None,
    filename: Optional[str] = None,
    options: Optional[NormalizerOptions] = None,
) -> NormalizedImage:
    """
    Normalise *source* (raw bytes, a binary file handle or a data URL).

    declared_type is what the browser/OS claims. It is only logged: bytes
    go out untouched only when their magic bytes identify an accepted type,
    so the reported mime type is always true.

    Raises:
        SourceTooLargeError  — source over max_source_bytes
        DecodeError          — unreadable and not passable as-is
        PayloadTooLargeError — even the lowest-quality JPEG is over the cap
    """
    options = options or NormalizerOptions.from_env()
    raw, url_type, source_name = _read_source(source)
    name = filename or source_name or "image"

    if len(raw) > options.max_source_bytes:
        raise SourceTooLargeError(
            f"Image size must be less than {format_size(options.max_source_bytes)}"
        )

    mime = sniff_mime_type(raw) or ""
    if not mime:
        logger.info(
            "[normalizer] unrecognised bytes (claimed %s), decoding",
            declared_type or url_type or "nothing",
        )

    if not _should_convert(mime, len(raw), options):
        logger.debug("[normalizer] pass-through %s (%d bytes)", mime, len(raw))
        return NormalizedImage(raw, canonical_mime_type(mime), name)

    try:
        return _convert(raw, name, options)
    except (DecodeError, PayloadTooLargeError) as exc:
        if _passable(mime, len(raw), options):
            logger.warning(
                "[normalizer] conversion failed (%s); uploading original %s", exc, mime,
            )
            return NormalizedImage(raw, canonical_mime_type(mime), name)
        raise


async def normalize_image_async(
    source: ImageSource,
    *,
    declared_type: Optional[str] = None,
    filename: Optional[str] = None,
    options: Optional[NormalizerOptions] = None,
) -> NormalizedImage:
    """normalize_image() on a worker thread."""
    return await asyncio.to_thread(
        normalize_image,
        source,
        declared_type=declared_type,
        filename=filename,
        options=options,
    )


# ── Reading ───────────────────────────────────────────────────────────────────

def _read_source(source: ImageSource) -> tuple[bytes, Optional[str], Optional[str]]:
    """Return (raw bytes, mime from a data URL if any, file name if any)."""
    if isinstance(source, str):
        try:
            mime, raw = parse_data_url(source)
        except ValueError as exc:
            logger.warning("[normalizer] bad data URL: %s", exc)
            raise DecodeError(READ_FAILED) from exc
        return raw, mime, None

    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source), None, None

    if hasattr(source, "read"):
        try:
            raw = source.read()
        except OSError as exc:
            logger.warning("[normalizer] could not read file handle: %s", exc)
            raise DecodeError(READ_FAILED) from exc
        name = getattr(source, "name", None)
        return bytes(raw), None, os.path.basename(name) if isinstance(name, str) else None

    raise DecodeError(READ_FAILED)


def _should_convert(mime: str, size: int, options: NormalizerOptions) -> bool:
    return (
        is_heif(mime)
        or mime not in ACCEPTED_MIME_TYPES
        or size > min(options.passthrough_bytes, options.max_output_bytes)
    )


def _passable(mime: str, size: int, options: NormalizerOptions) -> bool:
    """Can the original bytes be uploaded untouched?"""
    return mime in ACCEPTED_MIME_TYPES and size <= options.max_output_bytes


# ── Decoding ──────────────────────────────────────────────────────────────────

def _open_with_pillow(raw: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(raw))
    try:
        image.load()
    except Exception:
        image.close()
        raise
    return image


def _open_with_libheif(raw: bytes) -> Image.Image:
    heif_file = pillow_heif.open_heif(io.BytesIO(raw), convert_hdr_to_8bit=True)
    return heif_file.to_pillow()


def _decode(raw: bytes) -> Image.Image:
    try:
        return _open_with_pillow(raw)
    except Exception as exc:
        logger.info("[normalizer] Pillow could not decode (%s), trying libheif", exc)

    try:
        return _open_with_libheif(raw)
    except Exception as exc:
        logger.warning("[normalizer] libheif could not decode either: %s", exc)
        raise DecodeError(CONVERSION_FAILED) from exc


# ── Conversion ────────────────────────────────────────────────────────────────

def _convert(raw: bytes, name: str, options: NormalizerOptions) -> NormalizedImage:
    opened: list[Image.Image] = []
    try:
        image = _decode(raw)
        opened.append(image)

        # Phone photos are stored sideways with an orientation tag
        image = ImageOps.exif_transpose(image)
        opened.append(image)

        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
            opened.append(image)

        image.thumbnail((options.max_width, options.max_width), Image.Resampling.LANCZOS)
        data = _encode_jpeg(image, options)
    finally:
        for im in opened:
            im.close()

    stem = os.path.splitext(name)[0] or "image"
    logger.info("[normalizer] re-encoded %d → %d bytes JPEG", len(raw), len(data))
    return NormalizedImage(data, "image/jpeg", f"{stem}.jpg")


def _encode_jpeg(image: Image.Image, options: NormalizerOptions) -> bytes:
    quality = options.quality
    while True:
        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=quality, optimize=True)
        data = buf.getvalue()
        if len(data) <= options.max_output_bytes:
            return data
        if quality - _QUALITY_STEP < _MIN_QUALITY:
            raise PayloadTooLargeError(
                f"Image too large. Max {format_size(options.max_output_bytes)} allowed."
            )
        quality -= _QUALITY_STEP
