"""
server.py — aiohttp web server in front of the image search handler.

Endpoints:
  POST /api/image-search  → {"success": true, "data": {...}}
                            {"success": false, "error": "...", "kind": "..."}
      Body, any of:
        multipart/form-data with an "image" file part
        application/json    {"image": "data:image/jpeg;base64,..."}
        image/*             raw bytes
  GET  /health            → plain-text health check (for uptime monitors / nginx)

Middleware:
  /admin/*  requires the injected is_authenticated(request) capability;
            anonymous visitors are redirected to /sign-in.

Rate limiting (per client IP, sliding window) only applies to the search
endpoint — it is the one that costs money upstream. X-Real-IP is used as the
client IP only with TRUST_PROXY_HEADERS, i.e. behind nginx.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from aiohttp import hdrs, web

import config
from errors import ErrorKind
from image_search import (
    BufferInput,
    DataUrlInput,
    Err,
    ImageSearchConfig,
    ImageSearchHandler,
    SearchInput,
    StreamInput,
    payload_too_large,
)

logger = logging.getLogger(__name__)

IMAGE_FIELD  = "image"
ADMIN_PREFIX = "/admin"
SIGN_IN_PATH = "/sign-in"

HANDLER_KEY = web.AppKey("image_search_handler", ImageSearchHandler)
TRUST_PROXY_KEY = web.AppKey("trust_proxy_headers", bool)

_CHUNK_SIZE = 64 * 1024

_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNSUPPORTED_INPUT:      400,
    ErrorKind.UNSUPPORTED_MEDIA_TYPE: 415,
    ErrorKind.PAYLOAD_TOO_LARGE:      413,
    ErrorKind.SERVICE_NOT_CONFIGURED: 503,
    ErrorKind.INFERENCE_CALL:         502,
    ErrorKind.MALFORMED_RESPONSE:     502,
    ErrorKind.RATE_LIMITED:           429,
}

IsAuthenticated = Callable[[web.Request], bool]


# ── Rate limiter ───────────────────────────────────────────────────────────────

class SlidingWindowLimiter:
    """
    At most max_requests per key within any window_secs-long window.
    Buckets of keys idle for a whole window are dropped, so memory tracks
    the clients seen in the last window only.
    """

    def __init__(self, max_requests: int, window_secs: float):
        self.max_requests = max_requests
        self.window_secs  = window_secs
        self._buckets: dict[str, deque] = {}
        self._last_sweep  = 0.0

    def is_limited(self, key: str) -> bool:
        now    = time.monotonic()
        self._sweep(now)
        bucket = self._buckets.setdefault(key, deque())
        while bucket and now - bucket[0] > self.window_secs:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return True
        bucket.append(now)
        return False

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_secs:
            return
        self._last_sweep = now
        idle = [
            key for key, bucket in self._buckets.items()
            if not bucket or now - bucket[-1] > self.window_secs
        ]
        for key in idle:
            del self._buckets[key]


LIMITER_KEY = web.AppKey("rate_limiter", SlidingWindowLimiter)


def client_key(request: web.Request, trust_proxy_headers: bool = False) -> str:
    """Peer address, or X-Real-IP when a trusted reverse proxy sets it."""
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Real-IP")
        if forwarded:
            return forwarded
    return request.remote or ""


class BoundedBody:
    """
    Reads a request body or multipart part chunk by chunk and gives up as
    soon as it grows past max_bytes, instead of buffering the whole upload.
    """

    def __init__(self, read_chunk: Callable[[], Awaitable[bytes]], max_bytes: int):
        self._read_chunk = read_chunk
        self._max_bytes  = max_bytes

    async def read(self) -> bytes:
        buf = bytearray()
        while True:
            chunk = await self._read_chunk()
            if not chunk:
                return bytes(buf)
            buf.extend(chunk)
            if len(buf) > self._max_bytes:
                raise payload_too_large(self._max_bytes)


# ── Request handlers ───────────────────────────────────────────────────────────

async def handle_image_search(request: web.Request) -> web.Response:
    limiter = request.app[LIMITER_KEY]
    if limiter.is_limited(client_key(request, request.app[TRUST_PROXY_KEY])):
        result = Err(
            ErrorKind.RATE_LIMITED,
            f"Too many searches. Please wait a minute and try again "
            f"(max {limiter.max_requests} per {limiter.window_secs:g}s).",
        )
        return web.json_response(result.to_dict(), status=_STATUS[result.kind])

    max_bytes = request.app[HANDLER_KEY].config.max_bytes
    try:
        search_input = await _read_search_input(request, max_bytes)
    except web.HTTPRequestEntityTooLarge:
        # Buffered JSON / other bodies over client_max_size
        result = Err(ErrorKind.PAYLOAD_TOO_LARGE, payload_too_large(max_bytes).message)
        return web.json_response(result.to_dict(), status=_STATUS[result.kind])
    except ValueError as exc:
        result = Err(ErrorKind.UNSUPPORTED_INPUT, f"Request body could not be read: {exc}")
        return web.json_response(result.to_dict(), status=400)

    result = await request.app[HANDLER_KEY].process(search_input)

    if result.success:
        return web.json_response(result.to_dict())

    if result.kind.is_operator_fault:
        logger.error("[image-search] %s: %s", result.kind.value, result.message)
    else:
        logger.info("[image-search] rejected (%s): %s", result.kind.value, result.message)
    return web.json_response(result.to_dict(), status=_STATUS.get(result.kind, 500))


async def _read_search_input(request: web.Request, max_bytes: int) -> Optional[SearchInput]:
    """
    Map the request body onto one of the handler's input shapes.
    Returns None when no image was sent. Raises ValueError on a broken body.
    """
    ctype = request.content_type

    if ctype.startswith("multipart/"):
        reader = await request.multipart()
        while True:
            part = await reader.next()
            if part is None:
                return None
            if part.name == IMAGE_FIELD:
                # Not read here: the handler reads the part itself
                return StreamInput(
                    BoundedBody(part.read_chunk, max_bytes),
                    mime_type=part.headers.get(hdrs.CONTENT_TYPE),
                )
            await part.release()

    if ctype == "application/json":
        body = await request.json()
        image = body.get(IMAGE_FIELD) if isinstance(body, dict) else None
        return DataUrlInput(image) if isinstance(image, str) and image else None

    if ctype.startswith("image/"):
        return StreamInput(
            BoundedBody(lambda: request.content.read(_CHUNK_SIZE), max_bytes),
            mime_type=ctype,
            size=request.content_length,
        )

    if request.can_read_body:
        body = await request.read()
        return BufferInput(body) if body else None
    return None


async def handle_health(request: web.Request) -> web.Response:
    """Health check — returns 200 OK. Use with uptime monitors."""
    handler = request.app[HANDLER_KEY]
    state = "configured" if handler.configured else "not configured"
    return web.Response(
        text=f"OK — provider {handler.config.provider} {state}",
        content_type="text/plain",
    )


# ── Middleware ────────────────────────────────────────────────────────────────

def admin_guard(is_authenticated: IsAuthenticated):
    @web.middleware
    async def middleware(request: web.Request, handler):
        if request.path.startswith(ADMIN_PREFIX) and not is_authenticated(request):
            raise web.HTTPFound(location=SIGN_IN_PATH)
        return await handler(request)
    return middleware


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(
    handler: Optional[ImageSearchHandler] = None,
    *,
    is_authenticated: Optional[IsAuthenticated] = None,
    rate_limit: Optional[tuple[int, float]] = None,
    trust_proxy_headers: Optional[bool] = None,
) -> web.Application:
    handler = handler or ImageSearchHandler(ImageSearchConfig.from_env())
    max_requests, window = rate_limit or (config.RATE_MAX_REQUESTS, config.RATE_WINDOW_SECS)

    middlewares = [admin_guard(is_authenticated)] if is_authenticated else []
    # Room for base64 inflation of a data URL at the size cap
    app = web.Application(
        middlewares=middlewares,
        client_max_size=max(handler.config.max_bytes * 2, 1024 * 1024),
    )
    app[HANDLER_KEY] = handler
    app[LIMITER_KEY] = SlidingWindowLimiter(max_requests, window)
    app[TRUST_PROXY_KEY] = (
        config.TRUST_PROXY_HEADERS if trust_proxy_headers is None else trust_proxy_headers
    )

    app.router.add_post("/api/image-search", handle_image_search)
    app.router.add_get("/health",            handle_health)
    return app


async def start_server(
    app: web.Application,
    host: str = config.SERVER_HOST,
    port: int = config.SERVER_PORT,
) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    handler = app[HANDLER_KEY]
    logger.info(
        "🔎 Image search listening on %s:%d  (provider: %s, %s)",
        host, port, handler.config.provider,
        "configured" if handler.configured else "NOT configured",
    )
    return runner
