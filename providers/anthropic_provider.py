"""
Anthropic provider — Claude vision models via the Messages API.

Pricing (per 1k tokens, see usage_ledger.PRICING):
  claude-3-5-sonnet-20241022: $0.003   input, $0.015   output
  claude-3-haiku-20240307:    $0.00025 input, $0.00125 output
"""
from __future__ import annotations

import base64
import logging

import anthropic

from analysis import Usage
from providers.base import ProviderReply, VisionProvider

logger = logging.getLogger(__name__)

_MAX_TOKENS = 500


class AnthropicProvider(VisionProvider):

    name = "anthropic"
    default_model = "claude-3-5-sonnet-20241022"
    models = ("claude-3-5-sonnet-20241022", "claude-3-haiku-20240307")
    transient_errors = (
        anthropic.APIConnectionError,
        anthropic.RateLimitError,
        anthropic.InternalServerError,
    )

    def __init__(self, api_key: str, model: str | None = None, **kwargs):
        super().__init__(api_key, model, **kwargs)
        self._client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def _request_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> ProviderReply:
        b64 = base64.b64encode(image_bytes).decode()
        message = await self._client.messages.create(
            model=self.model_id,
            max_tokens=_MAX_TOKENS,
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
        return self._reply(message)

    async def _request_text(self, prompt: str) -> ProviderReply:
        message = await self._client.messages.create(
            model=self.model_id,
            max_tokens=200,
            messages=[{"role": "user", "content": prompt}],
        )
        return self._reply(message)

    @staticmethod
    def _reply(message) -> ProviderReply:
        raw = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        return ProviderReply(
            text=raw,
            usage=Usage(
                prompt_tokens=message.usage.input_tokens,
                completion_tokens=message.usage.output_tokens,
            ),
        )
