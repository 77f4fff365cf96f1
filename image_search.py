"""
image_search.py — server-side image search handler.

  input ──► decode ──► size cap ──► mime allow-list ──► credential ──► provider
                                                                          │
  Ok(InferredAttributes) ◄── validate ◄── json.loads ◄── strip fences ◄───┘

Every step raises the ImageSearchError subclass for its failure; process()
is the single boundary that turns them into an Err value, so callers only
ever branch on the result and never on exceptions.

Nothing here reads config.py at request time: ImageSearchConfig is built
once (usually with ImageSearchConfig.from_env()) and injected.
"""
from __future__ import annotations

import asyncio
import base64
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

import config
from errors import (
    ErrorKind,
    ImageSearchError,
    InferenceCallError,
    MalformedResponseError,
    PayloadTooLargeError,
    ServiceNotConfiguredError,
    UnsupportedInputError,
    UnsupportedMediaTypeError,
)
from image_types import (
    ACCEPTED_MIME_TYPES,
    OCTET_STREAM,
    canonical_mime_type,
    format_size,
    parse_data_url,
    sniff_mime_type,
)
from providers.base import VEHICLE_PROMPT, InferenceReply, VisionProvider, parse_json_response
from providers.manager import build_provider

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024

NOT_CONFIGURED = "AI service not configured"
READ_FAILED    = "Failed to read/convert uploaded file"


# ── Inputs ────────────────────────────────────────────────────────────────────
# The caller says which shape it has; the handler never guesses.

@dataclass(frozen=True)
class DataUrlInput:
    data_url: str                       # data:<mime>;base64,<payload>


@dataclass(frozen=True)
class BufferInput:
    data: bytes
    mime_type: Optional[str] = None     # sniffed from magic bytes when None


class AsyncReadable(Protocol):
    async def read(self) -> bytes: ...


@dataclass(frozen=True)
class StreamInput:
    stream: AsyncReadable
    mime_type: Optional[str] = None
    size: Optional[int] = None          # declared size, checked before reading


SearchInput = Union[DataUrlInput, BufferInput, StreamInput]


@dataclass
class EncodedImage:
    """Decoded upload, as handed to the provider."""
    data: bytes
    mime_type: str                      # as declared/detected, lower-case

    byte_size: int = field(init=False)

    def __post_init__(self) -> None:
        self.byte_size = len(self.data)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode()

    @property
    def wire_mime_type(self) -> str:
        """Mime type to send upstream (image/jpg → image/jpeg)."""
        return canonical_mime_type(self.mime_type)


# ── Output ────────────────────────────────────────────────────────────────────

_FIELDS = ("make", "bodyType", "color", "confidence")


@dataclass(frozen=True)
class InferredAttributes:
    make: str
    body_type: str
    color: str
    confidence: float

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InferredAttributes":
        """
        Build from the model's JSON object. All four keys must be present;
        the three labels must be strings (null counts as ""), confidence a
        number in [0, 1]. Values are otherwise taken verbatim.
        """
        missing = [k for k in _FIELDS if k not in payload]
        if missing:
            raise MalformedResponseError(f"AI response is missing field(s): {', '.join(missing)}")

        labels: dict[str, str] = {}
        for key in ("make", "bodyType", "color"):
            value = payload[key]
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise MalformedResponseError(f"AI response field '{key}' must be a string")
            labels[key] = value

        conf = payload["confidence"]
        if (
            isinstance(conf, bool)
            or not isinstance(conf, (int, float))
            or math.isnan(conf)
            or not 0.0 <= conf <= 1.0
        ):
            raise MalformedResponseError(
                "AI response field 'confidence' must be a number between 0 and 1"
            )

        return cls(
            make=labels["make"],
            body_type=labels["bodyType"],
            color=labels["color"],
            confidence=float(conf),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "make": self.make,
            "bodyType": self.body_type,
            "color": self.color,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class Ok:
    data: InferredAttributes
    success: bool = field(default=True, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"success": True, "data": self.data.to_dict()}


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    success: bool = field(default=False, init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "kind": self.kind.value}


SearchResult = Union[Ok, Err]


def result_from_dict(payload: Any) -> SearchResult:
    """
    Parse the wire envelope produced by Ok/Err.to_dict().
    Raises ValueError when *payload* is not a valid envelope.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("success"), bool):
        raise ValueError("Response is not a {success, data|error} envelope")

    if payload["success"]:
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("Success envelope without data")
        try:
            return Ok(InferredAttributes.from_payload(data))
        except MalformedResponseError as exc:
            raise ValueError(str(exc)) from exc

    try:
        kind = ErrorKind(payload.get("kind", ErrorKind.INTERNAL.value))
    except ValueError:
        kind = ErrorKind.INTERNAL
    return Err(kind, str(payload.get("error") or "Unknown error"))


# ── Configuration ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ImageSearchConfig:
    credential: Optional[str] = field(default=None, repr=False)
    max_bytes: int = 6 * _MIB
    allowed_mime_types: frozenset[str] = ACCEPTED_MIME_TYPES
    provider: str = "gemini"
    model: Optional[str] = None
    timeout_seconds: Optional[float] = 30.0     # None = wait forever

    @classmethod
    def from_env(cls) -> "ImageSearchConfig":
        provider = config.IMAGE_SEARCH_PROVIDER
        return cls(
            credential=config.api_key_for(provider),
            max_bytes=config.IMAGE_SEARCH_MAX_BYTES,
            allowed_mime_types=config.IMAGE_SEARCH_ALLOWED_TYPES,
            provider=provider,
            model=config.IMAGE_SEARCH_MODEL,
            timeout_seconds=config.IMAGE_SEARCH_TIMEOUT or None,
        )


# ── Handler ───────────────────────────────────────────────────────────────────

class ImageSearchHandler:
    """
    Infers make / body type / colour from a car photo.

    One handler serves any number of concurrent requests: it holds no
    per-request state, only the config and the (lazily built) provider.
    """

    def __init__(
        self,
        search_config: ImageSearchConfig,
        provider: Optional[VisionProvider] = None,
    ) -> None:
        self.config = search_config
        self._provider = provider

    @property
    def configured(self) -> bool:
        return bool(self.config.credential)

    async def process(
        self,
        search_input: Optional[SearchInput],
        *,
        timeout: Optional[float] = None,
    ) -> SearchResult:
        """
        Run one image search. Never raises.

        timeout overrides config.timeout_seconds for this call; expiry is
        reported exactly like any other failed model call.
        """
        try:
            attributes = await self._run(search_input, timeout)
        except ImageSearchError as exc:
            return Err(exc.kind, exc.message)
        except Exception:
            logger.exception("[image-search] unexpected error")
            return Err(ErrorKind.INTERNAL, "Unexpected server error")
        return Ok(attributes)

    async def _run(
        self,
        search_input: Optional[SearchInput],
        timeout: Optional[float],
    ) -> InferredAttributes:
        if search_input is None:
            raise UnsupportedInputError("No file provided")

        image = await self.decode_input(search_input)
        logger.info(
            "[image-search] incoming %s: type=%s size=%d",
            type(search_input).__name__, image.mime_type, image.byte_size,
        )
        if image.byte_size == 0:
            raise UnsupportedInputError("Empty file upload")

        self._check_size(image.byte_size)
        self._check_type(image.mime_type)
        provider = self._get_provider()

        reply = await self._call_provider(provider, image, timeout)
        if not reply.text.strip():
            logger.error("[image-search] %s returned no text", reply.provider_name)
            raise MalformedResponseError("Failed to extract text from AI response")

        payload = parse_json_response(reply.text, reply.provider_name)
        attributes = InferredAttributes.from_payload(payload)
        logger.info(
            "[image-search] %s OK — make=%r bodyType=%r color=%r confidence=%.2f latency=%dms",
            reply.provider_name, attributes.make, attributes.body_type,
            attributes.color, attributes.confidence, reply.latency_ms,
        )
        return attributes

    # ── Steps ─────────────────────────────────────────────────────────────────

    async def decode_input(self, search_input: SearchInput) -> EncodedImage:
        """Turn any supported input shape into raw bytes + mime type."""
        if isinstance(search_input, DataUrlInput):
            try:
                mime, raw = parse_data_url(search_input.data_url)
            except ValueError as exc:
                raise UnsupportedInputError(f"{READ_FAILED}: {exc}") from exc
            return EncodedImage(raw, mime)

        if isinstance(search_input, BufferInput):
            raw = bytes(search_input.data)
            return EncodedImage(raw, _resolve_mime(search_input.mime_type, raw))

        if isinstance(search_input, StreamInput):
            if search_input.size is not None:
                self._check_size(search_input.size)
            try:
                raw = await search_input.stream.read()
            except ImageSearchError:
                raise
            except Exception as exc:
                logger.warning("[image-search] stream read failed: %s", exc)
                raise UnsupportedInputError(f"{READ_FAILED}: {exc}") from exc
            if not isinstance(raw, (bytes, bytearray, memoryview)):
                raise UnsupportedInputError(f"{READ_FAILED}: stream did not return bytes")
            raw = bytes(raw)
            return EncodedImage(raw, _resolve_mime(search_input.mime_type, raw))

        raise UnsupportedInputError(f"{READ_FAILED}: Unsupported file input type")

    def _check_size(self, size: int) -> None:
        if size > self.config.max_bytes:
            raise payload_too_large(self.config.max_bytes)

    def _check_type(self, mime_type: str) -> None:
        if mime_type not in self.config.allowed_mime_types:
            raise UnsupportedMediaTypeError(
                f'Unsupported image type "{mime_type}". Please upload a JPEG/PNG/WebP image. '
                "If you're uploading from iPhone, make sure the client converts HEIC to JPEG "
                "before upload."
            )

    def _get_provider(self) -> VisionProvider:
        # Credential first: an injected provider must not be called either
        if not self.config.credential:
            logger.error(
                "[image-search] missing credential for provider %r (set %s_API_KEY)",
                self.config.provider, self.config.provider.upper(),
            )
            raise ServiceNotConfiguredError(NOT_CONFIGURED)

        if self._provider is None:
            try:
                self._provider = build_provider(
                    self.config.provider, self.config.credential, self.config.model,
                )
            except Exception as exc:
                logger.error(
                    "[image-search] could not initialise %r client: %s",
                    self.config.provider, exc, exc_info=True,
                )
                raise ServiceNotConfiguredError("Failed to initialize AI client") from exc
        return self._provider

    async def _call_provider(
        self,
        provider: VisionProvider,
        image: EncodedImage,
        timeout: Optional[float],
    ) -> InferenceReply:
        limit = timeout if timeout is not None else self.config.timeout_seconds
        try:
            return await asyncio.wait_for(
                provider.infer(image.data, image.wire_mime_type, VEHICLE_PROMPT),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            logger.error("[image-search] %s timed out after %ss", provider.full_name, limit)
            raise InferenceCallError(f"AI model call failed: timed out after {limit:g}s") from None
        except Exception as exc:
            logger.error("[image-search] %s call failed: %s", provider.full_name, exc)
            raise InferenceCallError(f"AI model call failed: {str(exc) or 'unknown'}") from exc


def payload_too_large(max_bytes: int) -> PayloadTooLargeError:
    return PayloadTooLargeError(f"Image too large. Max {format_size(max_bytes)} allowed.")


def _resolve_mime(declared: Optional[str], raw: bytes) -> str:
    if declared and declared.strip():
        return declared.split(";", 1)[0].strip().lower()
    return sniff_mime_type(raw) or OCTET_STREAM


async def process_image_search(
    search_input: Optional[SearchInput],
    search_config: Optional[ImageSearchConfig] = None,
) -> SearchResult:
    """One-shot helper: build a handler from the environment and run it."""
    handler = ImageSearchHandler(search_config or ImageSearchConfig.from_env())
    return await handler.process(search_input)
