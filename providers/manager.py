"""
Provider Manager — resolves the active provider configuration and hands out
provider instances.

Configuration is snapshotted, not shared: load_config() reads the current
provider/model setting and API key ONCE into a frozen ProviderConfig, and every
pipeline invocation works from that snapshot. A concurrent PUT /api/ai/provider
only affects snapshots taken after it, so switching providers can never tear a
call already in flight.

Providers are looked up by name in PROVIDER_REGISTRY; adding a backend means
adding a VisionProvider subclass and one registry line.
"""
from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass, field
from typing import Optional

import events
from errors import ValidationError
from providers.base import VisionProvider

logger = logging.getLogger(__name__)

# name → (module, class, key_store key name)
PROVIDER_REGISTRY: dict[str, tuple[str, str, str]] = {
    "openai":     ("providers.openai_provider",     "OpenAIProvider",     "openai_api_key"),
    "anthropic":  ("providers.anthropic_provider",  "AnthropicProvider",  "anthropic_api_key"),
    "google":     ("providers.gemini_provider",     "GeminiProvider",     "google_api_key"),
    "groq":       ("providers.groq_provider",       "GroqProvider",       "groq_api_key"),
    "openrouter": ("providers.openrouter_provider", "OpenRouterProvider", "openrouter_api_key"),
}


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable snapshot of the provider selection used for one invocation."""
    provider: str
    model: str
    api_key: str = field(repr=False)

    def to_dict(self) -> dict:
        return {"provider": self.provider, "model": self.model}


# Instances keyed by config snapshot; a changed key or model yields a new instance
_providers: dict[ProviderConfig, VisionProvider] = {}

_selection_lock = asyncio.Lock()


def provider_class(name: str) -> type[VisionProvider]:
    try:
        module_name, class_name, _ = PROVIDER_REGISTRY[name]
    except KeyError:
        raise ValidationError(
            f"Unknown provider '{name}'. Available: {', '.join(PROVIDER_REGISTRY)}"
        ) from None
    module = importlib.import_module(module_name)
    return getattr(module, class_name)


def key_name_for(provider: str) -> str:
    return PROVIDER_REGISTRY[provider][2]


async def load_config() -> Optional[ProviderConfig]:
    """
    Snapshot the active provider selection.
    Returns None when no usable provider is configured (unknown name or no key).
    """
    import key_store
    import settings_store

    # provider and model are written as a pair under the same lock
    async with _selection_lock:
        provider = await settings_store.get("ai_provider")
        model = await settings_store.get("ai_model")
    if provider not in PROVIDER_REGISTRY:
        logger.warning("Configured provider %r is not known — AI disabled", provider)
        return None

    api_key = await key_store.get(key_name_for(provider))
    if not api_key:
        logger.debug("No API key for provider %s — AI disabled", provider)
        return None

    return ProviderConfig(provider=provider, model=resolve_model(provider, model), api_key=api_key)


def resolve_model(provider: str, model: Optional[str]) -> str:
    """
    The model to call for *provider*. A blank model, or one the provider does
    not offer (e.g. AI_PROVIDER changed in .env but AI_MODEL left behind),
    falls back to the provider's default.
    """
    cls = provider_class(provider)
    model = (model or "").strip()
    if not model:
        return cls.default_model
    if cls.models and model not in cls.models:
        logger.warning("Model %r is not offered by %s, using %s", model, provider, cls.default_model)
        return cls.default_model
    return model


def get_provider(cfg: ProviderConfig) -> VisionProvider:
    """Return the (cached) provider instance for a config snapshot."""
    provider = _providers.get(cfg)
    if provider is None:
        cls = provider_class(cfg.provider)
        provider = cls(cfg.api_key, cfg.model)
        _providers[cfg] = provider
        logger.info("Loaded provider: %s", provider.full_name)
    return provider


def reset_cache() -> None:
    """Drop cached instances. In-flight calls keep the instance they already hold."""
    _providers.clear()


def validate_selection(provider: str, model: str) -> None:
    cls = provider_class(provider)
    if not model or not model.strip():
        raise ValidationError("Model is required")
    if cls.models and model not in cls.models:
        raise ValidationError(
            f"Invalid model '{model}' for {provider}. Available: {', '.join(cls.models)}"
        )


async def set_selection(provider: str, model: Optional[str] = None) -> dict:
    """Persist a new provider/model. Takes effect for subsequent calls only."""
    import settings_store

    model = model or provider_class(provider).default_model
    validate_selection(provider, model)

    async with _selection_lock:
        old = {
            "provider": await settings_store.get("ai_provider"),
            "model":    await settings_store.get("ai_model"),
        }
        await settings_store.set("ai_provider", provider)
        await settings_store.set("ai_model", model)
    events.record("PROVIDER_CHANGED", old=old, new={"provider": provider, "model": model})
    logger.info("AI provider changed: %s/%s → %s/%s", old["provider"], old["model"], provider, model)
    return {"provider": provider, "model": model}


async def catalogue() -> dict:
    """Providers, their models with pricing, and the current selection."""
    import key_store
    import settings_store
    from usage_ledger import PRICING

    providers = []
    for name in PROVIDER_REGISTRY:
        cls = provider_class(name)
        providers.append({
            "id":            name,
            "default_model": cls.default_model,
            "has_key":       bool(await key_store.get(key_name_for(name))),
            "models": [
                {
                    "id": m,
                    "pricing": {
                        "input":    PRICING[m][0] if m in PRICING else None,
                        "output":   PRICING[m][1] if m in PRICING else None,
                        "currency": "USD",
                        "per":      1000,
                    },
                }
                for m in cls.models
            ],
        })

    current = await settings_store.get("ai_provider")
    cfg = await load_config()
    return {
        "providers":      providers,
        "current":        {
            "provider": current,
            "model":    resolve_model(current, await settings_store.get("ai_model"))
                        if current in PROVIDER_REGISTRY else "",
        },
        "ai_initialized": cfg is not None,
    }
