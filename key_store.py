"""
key_store.py — provider API keys for the analysis pipeline.

One key per registered provider (providers.manager.PROVIDER_REGISTRY). A key
saved through PUT /api/settings lives in the api_keys table and shadows the
.env value; clearing it there exposes the .env value again. The env var is the
upper-cased key name, e.g. anthropic_api_key → ANTHROPIC_API_KEY.

Keys are read when a ProviderConfig snapshot is taken, so a new key is picked
up by the next upload or analysis and never by one already running.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from providers.manager import PROVIDER_REGISTRY

logger = logging.getLogger(__name__)

KEY_NAMES: tuple[str, ...] = tuple(entry[2] for entry in PROVIDER_REGISTRY.values())

_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


def env_var(key_name: str) -> str:
    return key_name.upper()


async def get(key_name: str) -> Optional[str]:
    """Saved key if there is one, else the .env value, else None."""
    try:
        saved = await _get_db().get_api_key(key_name)
        if saved:
            return saved
    except Exception as exc:
        logger.warning("key_store: could not read saved %s: %s", key_name, exc)
    return os.getenv(env_var(key_name)) or None


async def set(key_name: str, value: str) -> None:
    if key_name not in KEY_NAMES:
        raise KeyError(f"Unknown API key: {key_name}")
    await _get_db().set_api_key(key_name, value.strip())
    logger.info("Saved %s", key_name)


async def delete(key_name: str) -> None:
    await _get_db().delete_api_key(key_name)


async def get_all_keys() -> dict[str, Optional[str]]:
    return {name: await get(name) for name in KEY_NAMES}


async def masked_keys() -> dict[str, str]:
    """Every key, masked, for the settings endpoint."""
    return {name: mask(value) for name, value in (await get_all_keys()).items()}


def mask(value: Optional[str]) -> str:
    """First and last four characters only; anything 8 chars or shorter is fully hidden."""
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
