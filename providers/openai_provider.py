"""
OpenAI provider — gpt-4o-mini by default, any chat model with vision input works.
The image travels inline as a base64 data URL.
"""
from __future__ import annotations

import base64
import time
import logging

from openai import AsyncOpenAI

from providers.base import InferenceReply, VisionProvider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIProvider(VisionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name = "openai"
        self.model_id = model
        self._client = AsyncOpenAI(api_key=api_key)

    async def infer(self, image_bytes: bytes, mime_type: str, prompt: str) -> InferenceReply:
        b64 = base64.b64encode(image_bytes).decode()
        t0 = time.monotonic()

        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=300,
            temperature=0,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{b64}"},
                        },
                        {"type": "text", "text": prompt},
                    ],
                },
            ],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        usage = response.usage

        return InferenceReply(
            provider_name=self.full_name,
            text=response.choices[0].message.content or "",
            latency_ms=latency_ms,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )
