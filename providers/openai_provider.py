"""
OpenAI provider — gpt-4o family via the Chat Completions API.

Pricing (per 1k tokens, see usage_ledger.PRICING):
  gpt-4o:         $0.005  input,  $0.015  output
  gpt-4o-mini:    $0.00015 input, $0.0006 output
  gpt-4:          $0.03   input,  $0.06   output
  gpt-3.5-turbo:  $0.0005 input,  $0.0015 output  (text only)
"""
from __future__ import annotations

import base64
import logging

import openai
from openai import AsyncOpenAI

from analysis import Usage
from providers.base import ProviderReply, VisionProvider

logger = logging.getLogger(__name__)

_MAX_TOKENS = 500


class OpenAIProvider(VisionProvider):

    name = "openai"
    default_model = "gpt-4o"
    models = ("gpt-4o", "gpt-4o-mini", "gpt-4", "gpt-3.5-turbo")
    transient_errors = (
        openai.APIConnectionError,     # includes APITimeoutError
        openai.RateLimitError,
        openai.InternalServerError,
    )
    base_url: str | None = None

    def __init__(self, api_key: str, model: str | None = None, **kwargs):
        super().__init__(api_key, model, **kwargs)
        # Retries are handled by VisionProvider._with_retries, not the SDK
        self._client = AsyncOpenAI(api_key=api_key, base_url=self.base_url, max_retries=0,
                                   **self._client_kwargs())

    def _client_kwargs(self) -> dict:
        return {}

    async def _request_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> ProviderReply:
        b64 = base64.b64encode(image_bytes).decode()
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=_MAX_TOKENS,
            temperature=0,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{b64}"},
                        },
                    ],
                },
            ],
        )
        return self._reply(response)

    async def _request_text(self, prompt: str) -> ProviderReply:
        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=200,
            messages=[{"role": "user", "content": prompt}],
        )
        return self._reply(response)

    @staticmethod
    def _reply(response) -> ProviderReply:
        raw = response.choices[0].message.content or ""
        usage = response.usage
        if usage is None:
            return ProviderReply(text=raw)
        return ProviderReply(
            text=raw,
            usage=Usage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            ),
        )
