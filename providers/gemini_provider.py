"""
Google Gemini provider — uses the google-genai SDK (v1 API).

Pricing (per 1k tokens, see usage_ledger.PRICING):
  gemini-1.5-pro:        $0.0035   input, $0.0105 output
  gemini-1.5-flash:      $0.000075 input, $0.0003 output
  gemini-2.0-flash:      $0.0001   input, $0.0004 output
"""
from __future__ import annotations

import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from analysis import Usage
from providers.base import ProviderReply, VisionProvider

logger = logging.getLogger(__name__)

_MAX_TOKENS = 500


class GeminiProvider(VisionProvider):

    name = "google"
    default_model = "gemini-2.0-flash"
    models = ("gemini-2.0-flash", "gemini-1.5-flash", "gemini-1.5-pro")
    transient_errors = (genai_errors.ServerError,)

    def __init__(self, api_key: str, model: str | None = None, **kwargs):
        super().__init__(api_key, model, **kwargs)
        # Force v1 (stable) API: v1beta doesn't expose gemini-1.5-* by bare name
        self._client = genai.Client(api_key=api_key, http_options={"api_version": "v1"})

    def _is_transient(self, exc: BaseException) -> bool:
        # Rate limiting arrives as a ClientError with code 429
        if isinstance(exc, genai_errors.ClientError) and getattr(exc, "code", None) == 429:
            return True
        return super()._is_transient(exc)

    async def _request_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> ProviderReply:
        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=[
                genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                prompt,
            ],
            config=genai_types.GenerateContentConfig(
                temperature=0,
                max_output_tokens=_MAX_TOKENS,
            ),
        )
        return self._reply(response)

    async def _request_text(self, prompt: str) -> ProviderReply:
        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=[prompt],
            config=genai_types.GenerateContentConfig(max_output_tokens=200),
        )
        return self._reply(response)

    @staticmethod
    def _reply(response) -> ProviderReply:
        raw = response.text or ""
        meta = response.usage_metadata
        prompt_tokens = getattr(meta, "prompt_token_count", None)
        output_tokens = getattr(meta, "candidates_token_count", None)
        if prompt_tokens is None or output_tokens is None:
            return ProviderReply(text=raw)
        return ProviderReply(
            text=raw,
            usage=Usage(prompt_tokens=prompt_tokens, completion_tokens=output_tokens),
        )
