"""
Anthropic provider — Claude 3 Haiku by default.

Claude only takes jpeg/png/gif/webp as base64 image sources, which is a
superset of what the handler lets through.
"""
from __future__ import annotations

import base64
import time
import logging

import anthropic

from providers.base import InferenceReply, VisionProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-haiku-20240307"


class AnthropicProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name = "anthropic"
        self.model_id = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    async def infer(self, image_bytes: bytes, mime_type: str, prompt: str) -> InferenceReply:
        b64 = base64.b64encode(image_bytes).decode()
        t0 = time.monotonic()

        message = await self._client.messages.create(
            model=self.model_id,
            max_tokens=300,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": mime_type,
                                "data": b64,
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        text = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )

        return InferenceReply(
            provider_name=self.full_name,
            text=text,
            latency_ms=latency_ms,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )
