"""
errors.py — error taxonomy for the image search pipeline.

Each stage raises the ImageSearchError subclass for what went wrong. The
handler (image_search.py) and the client (search_client.py) are the only
places that catch them; callers further out only ever see a result value.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UNSUPPORTED_INPUT      = "UnsupportedInputError"
    PAYLOAD_TOO_LARGE      = "PayloadTooLargeError"
    UNSUPPORTED_MEDIA_TYPE = "UnsupportedMediaTypeError"
    SERVICE_NOT_CONFIGURED = "ServiceNotConfiguredError"
    INFERENCE_CALL         = "InferenceCallError"
    MALFORMED_RESPONSE     = "MalformedResponseError"
    DECODE                 = "DecodeError"
    SOURCE_TOO_LARGE       = "SourceTooLargeError"
    TRANSPORT              = "TransportError"
    RATE_LIMITED           = "RateLimitedError"
    INTERNAL               = "InternalError"

    @property
    def is_operator_fault(self) -> bool:
        """True for deployment problems the end user can't fix."""
        return self in (ErrorKind.SERVICE_NOT_CONFIGURED, ErrorKind.INTERNAL)


class ImageSearchError(Exception):
    """Base class. ``str(exc)`` is the message shown to the user."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnsupportedInputError(ImageSearchError):
    kind = ErrorKind.UNSUPPORTED_INPUT


class PayloadTooLargeError(ImageSearchError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class UnsupportedMediaTypeError(ImageSearchError):
    kind = ErrorKind.UNSUPPORTED_MEDIA_TYPE


class ServiceNotConfiguredError(ImageSearchError):
    kind = ErrorKind.SERVICE_NOT_CONFIGURED


class InferenceCallError(ImageSearchError):
    kind = ErrorKind.INFERENCE_CALL


class MalformedResponseError(ImageSearchError):
    kind = ErrorKind.MALFORMED_RESPONSE


class DecodeError(ImageSearchError):
    """Raised by the normalizer when no decode path could read the image."""
    kind = ErrorKind.DECODE


class SourceTooLargeError(ImageSearchError):
    """The picked file is over the upload ceiling, before any processing."""
    kind = ErrorKind.SOURCE_TOO_LARGE
