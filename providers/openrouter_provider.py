"""
OpenRouter provider — access hundreds of AI models through one API.

OpenRouter (https://openrouter.ai) is an OpenAI-compatible gateway that provides
access to models from OpenAI, Anthropic, Google, Meta, Mistral, and many others.

Model IDs look like: "openai/gpt-4o", "anthropic/claude-3-haiku",
"meta-llama/llama-3.2-90b-vision-instruct", etc. Any id is accepted.

Many upstream models routed through OpenRouter return no usage block; in that
case token counts fall back to the ceil(chars / 4) estimate.
"""
from __future__ import annotations

from providers.openai_provider import OpenAIProvider


class OpenRouterProvider(OpenAIProvider):
    """Provider that uses any OpenRouter-hosted multimodal model."""

    name = "openrouter"
    default_model = "openai/gpt-4o-mini"
    models = ()
    base_url = "https://openrouter.ai/api/v1"

    def _client_kwargs(self) -> dict:
        return {
            "default_headers": {
                "HTTP-Referer": "https://garage-sale-organizer",
                "X-Title":      "Garage Sale Organizer",
            },
        }
