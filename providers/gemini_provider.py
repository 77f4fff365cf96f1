"""
Google Gemini provider — uses the google-genai SDK. This is the default
backend for image search (gemini-2.5-flash: fast, cheap, good at cars).
"""
from __future__ import annotations

import time
import logging

from google import genai
from google.genai import types as genai_types

from providers.base import InferenceReply, VisionProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


class GeminiProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name     = "google"
        self.model_id = model
        self._client  = genai.Client(api_key=api_key)

    async def infer(self, image_bytes: bytes, mime_type: str, prompt: str) -> InferenceReply:
        gen_config = genai_types.GenerateContentConfig(
            temperature=0,
            max_output_tokens=1024,
        )

        t0 = time.monotonic()

        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=[
                genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                prompt,
            ],
            config=gen_config,
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        usage      = response.usage_metadata

        return InferenceReply(
            provider_name = self.full_name,
            text          = response.text or "",
            latency_ms    = latency_ms,
            input_tokens  = getattr(usage, "prompt_token_count", 0) or 0,
            output_tokens = getattr(usage, "candidates_token_count", 0) or 0,
        )
