"""
Groq provider — Llama vision models via Groq's OpenAI-compatible API.

Groq offers extremely fast inference (LPU hardware).
Get a free API key at console.groq.com

Pricing: Groq charges per token but rates are very low.
  llama-4-scout-17b:  ~$0.11 / 1M input,  $0.34 / 1M output
  llama-3.2-11b:      ~$0.18 / 1M input,  $0.18 / 1M output
"""
from __future__ import annotations

from providers.openai_provider import OpenAIProvider


class GroqProvider(OpenAIProvider):

    name = "groq"
    default_model = "meta-llama/llama-4-scout-17b-16e-instruct"
    models = (
        "meta-llama/llama-4-scout-17b-16e-instruct",
        "meta-llama/llama-3.2-11b-vision-preview",
        "meta-llama/llama-3.2-90b-vision-preview",
    )
    base_url = "https://api.groq.com/openai/v1"
