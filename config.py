"""
Central configuration — reads from .env file.

Everything here is read once at import time. The image search handler does
not look at this module while serving a request: ImageSearchConfig.from_env()
copies the relevant values into an explicit config object that is injected
into the handler at construction.
"""
import os
from dotenv import load_dotenv

load_dotenv()

_MIB = 1024 * 1024


def _csv(raw: str) -> frozenset[str]:
    return frozenset(x.strip().lower() for x in raw.split(",") if x.strip())


# ── AI inference providers ────────────────────────────────────────────────────
# Only the key of the selected provider matters. If it is missing the image
# search endpoint stays up but answers "AI service not configured".
GEMINI_API_KEY: str | None    = os.getenv("GEMINI_API_KEY")
OPENAI_API_KEY: str | None    = os.getenv("OPENAI_API_KEY")
ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")

# gemini | openai | anthropic
IMAGE_SEARCH_PROVIDER: str     = os.getenv("IMAGE_SEARCH_PROVIDER", "gemini").strip().lower()
# Leave blank for the provider's default model
IMAGE_SEARCH_MODEL: str | None = os.getenv("IMAGE_SEARCH_MODEL", "").strip() or None

# ── Image search limits ───────────────────────────────────────────────────────
IMAGE_SEARCH_MAX_BYTES: int   = int(os.getenv("IMAGE_SEARCH_MAX_BYTES", str(6 * _MIB)))
IMAGE_SEARCH_TIMEOUT: float   = float(os.getenv("IMAGE_SEARCH_TIMEOUT", "30"))
IMAGE_SEARCH_ALLOWED_TYPES: frozenset[str] = _csv(
    os.getenv("IMAGE_SEARCH_ALLOWED_TYPES", "image/jpeg,image/jpg,image/png,image/webp")
)

# ── Client-side normalisation ─────────────────────────────────────────────────
# Images bigger than NORMALIZER_PASSTHROUGH_BYTES (or in a format the handler
# refuses, e.g. iPhone HEIC) are re-encoded to JPEG before upload.
NORMALIZER_MAX_WIDTH: int         = int(os.getenv("NORMALIZER_MAX_WIDTH", "1600"))
NORMALIZER_QUALITY: int           = int(os.getenv("NORMALIZER_QUALITY", "85"))
NORMALIZER_PASSTHROUGH_BYTES: int = int(os.getenv("NORMALIZER_PASSTHROUGH_BYTES", str(5 * _MIB)))
UPLOAD_MAX_BYTES: int             = int(os.getenv("UPLOAD_MAX_BYTES", str(15 * _MIB)))

# ── Web server ────────────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8080"))

# Per-client rate limit on the image search endpoint
RATE_MAX_REQUESTS: int = int(os.getenv("RATE_MAX_REQUESTS", "5"))
RATE_WINDOW_SECS: int  = int(os.getenv("RATE_WINDOW_SECS", "60"))
# Only behind a reverse proxy that overwrites X-Real-IP (nginx: proxy_set_header).
# Otherwise any client can pick its own rate-limit key.
TRUST_PROXY_HEADERS: bool = os.getenv("TRUST_PROXY_HEADERS", "false").strip().lower() in ("1", "true", "yes")

# Log file lives here
DATA_DIR: str = os.getenv("DATA_DIR", "data")


def api_key_for(provider: str) -> str | None:
    """Return the credential for *provider*, or None when it is not set."""
    return {
        "gemini":    GEMINI_API_KEY,
        "openai":    OPENAI_API_KEY,
        "anthropic": ANTHROPIC_API_KEY,
    }.get(provider)
