"""
Provider Manager — builds the inference provider named in the config.

SDK modules are imported lazily so a deployment only needs the SDK of the
provider it actually uses to be importable at request time.

  gemini     → providers.gemini_provider.GeminiProvider     (default)
  openai     → providers.openai_provider.OpenAIProvider
  anthropic  → providers.anthropic_provider.AnthropicProvider
"""
from __future__ import annotations

import logging
from typing import Optional

from providers.base import VisionProvider

logger = logging.getLogger(__name__)

PROVIDER_NAMES: tuple[str, ...] = ("gemini", "openai", "anthropic")


def build_provider(name: str, api_key: str, model: Optional[str] = None) -> VisionProvider:
    """
    Instantiate provider *name* with *api_key*.
    model=None picks the provider's default model.
    Raises ValueError for an unknown provider name.
    """
    name = name.strip().lower()

    if name == "gemini":
        from providers.gemini_provider import DEFAULT_MODEL, GeminiProvider
        provider: VisionProvider = GeminiProvider(api_key, model or DEFAULT_MODEL)
    elif name == "openai":
        from providers.openai_provider import DEFAULT_MODEL, OpenAIProvider
        provider = OpenAIProvider(api_key, model or DEFAULT_MODEL)
    elif name == "anthropic":
        from providers.anthropic_provider import DEFAULT_MODEL, AnthropicProvider
        provider = AnthropicProvider(api_key, model or DEFAULT_MODEL)
    else:
        available = ", ".join(PROVIDER_NAMES)
        raise ValueError(f"Provider '{name}' not available. Available: {available}")

    logger.info("Loaded provider: %s", provider.full_name)
    return provider
