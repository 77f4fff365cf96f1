"""
Shared prompt, reply type and base class for all inference providers.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

from errors import MalformedResponseError

logger = logging.getLogger(__name__)

# ── Prompt (shared across all providers) ──────────────────────────────────────

VEHICLE_PROMPT = """Analyze this car image and extract the following information for a search query:
1. Make (manufacturer)
2. Body type (SUV, Sedan, Hatchback, etc.)
3. Color

Format your response as a clean JSON object with these fields:
{
  "make": "",
  "bodyType": "",
  "color": "",
  "confidence": 0.0
}

For confidence, provide a value between 0 and 1 representing how confident you are in your overall identification.
Only respond with the JSON object, nothing else.
"""

# ```json ... ``` fences, anywhere in the reply
_FENCE_RE = re.compile(r"```(?:json)?[ \t]*\n?", re.IGNORECASE)

_RAW_LOG_LIMIT = 500


# ── Shared reply type ─────────────────────────────────────────────────────────

@dataclass
class InferenceReply:
    """Raw text answer from a single provider call."""
    provider_name: str          # e.g. "google/gemini-2.5-flash"
    text: str
    latency_ms: int
    input_tokens: int = 0
    output_tokens: int = 0


def strip_code_fences(raw: str) -> str:
    """Remove markdown code fences (with or without a json tag) and trim."""
    return _FENCE_RE.sub("", raw).strip()


def parse_json_response(raw: str, provider_name: str) -> dict:
    """
    Parse the JSON object in a model reply, tolerating markdown fences.
    Raises MalformedResponseError (and logs the raw text) on failure.
    """
    text = strip_code_fences(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response (%s): %s", provider_name, exc, raw[:_RAW_LOG_LIMIT])
        raise MalformedResponseError("Failed to parse AI response as JSON") from exc
    if not isinstance(data, dict):
        logger.error("[%s] JSON is not an object: %s", provider_name, raw[:_RAW_LOG_LIMIT])
        raise MalformedResponseError("Failed to parse AI response as JSON object")
    return data


# ── Abstract base ─────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all inference providers must implement."""

    name: str           # e.g. "google"
    model_id: str       # e.g. "gemini-2.5-flash"

    @abstractmethod
    async def infer(self, image_bytes: bytes, mime_type: str, prompt: str) -> InferenceReply:
        """
        Send one image + prompt as a single multimodal request.
        SDK errors propagate; the handler turns them into InferenceCallError.
        """
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"
