"""
Shared pytest fixtures.

Every test gets a clean environment: provider keys are cleared and DATA_DIR
points at a fresh tmp directory, so nothing leaks in from a developer's .env.
"""
from __future__ import annotations

import io
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from providers.base import InferenceReply, VisionProvider  # noqa: E402

TOYOTA_JSON = '{"make":"Toyota","bodyType":"SUV","color":"White","confidence":0.92}'


@pytest.fixture(autouse=True)
def clean_config(tmp_path, monkeypatch):
    """
    Reset the module-level config values that were read from the
    environment at import time.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))

    import config
    monkeypatch.setattr(config, "DATA_DIR", str(data))
    monkeypatch.setattr(config, "GEMINI_API_KEY", None)
    monkeypatch.setattr(config, "OPENAI_API_KEY", None)
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", None)
    monkeypatch.setattr(config, "IMAGE_SEARCH_PROVIDER", "gemini")
    monkeypatch.setattr(config, "IMAGE_SEARCH_MODEL", None)
    monkeypatch.setattr(config, "TRUST_PROXY_HEADERS", False)
    yield data


def make_provider(text: str = TOYOTA_JSON, **kwargs) -> VisionProvider:
    """A VisionProvider mock whose infer() answers *text*."""
    p = MagicMock(spec=VisionProvider)
    p.name = "google"
    p.model_id = "gemini-test"
    p.full_name = "google/gemini-test"
    p.infer = AsyncMock(
        return_value=InferenceReply(
            provider_name="google/gemini-test", text=text, latency_ms=42,
        ),
        **kwargs,
    )
    return p


def make_image(fmt: str = "JPEG", size: tuple[int, int] = (64, 48),
               mode: str = "RGB", color=(200, 30, 30), **save_kwargs) -> bytes:
    """Encode a solid-colour test image with Pillow."""
    from PIL import Image

    buf = io.BytesIO()
    with Image.new(mode, size, color) as im:
        im.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image("JPEG")


@pytest.fixture
def png_bytes() -> bytes:
    return make_image("PNG")
