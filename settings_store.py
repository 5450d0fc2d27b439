"""
settings_store.py — runtime-editable settings.

Priority order (same pattern as key_store.py):
  1. Database (set via PUT /api/settings or PUT /api/ai/provider) — takes precedence
  2. Environment variable / .env file                            — fallback / bootstrap

All settings are stored as strings in the DB and cast to the right type on read.
"""
from __future__ import annotations

import logging
import os
from datetime import date
from typing import Any

logger = logging.getLogger(__name__)

_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


# ── Setting definitions ────────────────────────────────────────────────────────
# Each entry: key → env var, default, type, label, description, choices
# type: "str" | "int" | "float" | "bool" | "date" (ISO yyyy-mm-dd, blank allowed)

SETTINGS_META: dict[str, dict] = {
    "ai_provider": {
        "env": "AI_PROVIDER",
        "default": "openai",
        "type": "str",
        "label": "AI Provider",
        "desc": "Backend used for image analysis and text generation",
        "choices": ["openai", "anthropic", "google", "groq", "openrouter"],
    },
    "ai_model": {
        "env": "AI_MODEL",
        "default": "",
        "type": "str",
        "label": "AI Model",
        "desc": "Model id for the selected provider (blank = provider default)",
        "choices": [],
    },
    "garage_sale_title": {
        "env": "GARAGE_SALE_TITLE",
        "default": "My Garage Sale",
        "type": "str",
        "label": "Sale Title",
        "desc": "Shown at the top of the public site",
        "choices": [],
    },
    "garage_sale_date": {
        "env": "GARAGE_SALE_DATE",
        "default": "",
        "type": "date",
        "label": "Sale Date",
        "desc": "e.g. 2026-05-02",
        "choices": [],
    },
    "garage_sale_address": {
        "env": "GARAGE_SALE_ADDRESS",
        "default": "",
        "type": "str",
        "label": "Sale Address",
        "desc": "Where shoppers should go",
        "choices": [],
    },
    "contact_info": {
        "env": "CONTACT_INFO",
        "default": "",
        "type": "str",
        "label": "Contact Info",
        "desc": "Phone or email for questions",
        "choices": [],
    },
}


def _cast(raw: str, typ: str) -> Any:
    if typ == "bool":
        return raw.strip().lower() in ("true", "1", "yes")
    if typ == "int":
        return int(raw.strip())
    if typ == "float":
        return float(raw.strip())
    if typ == "date":
        # blank = not scheduled yet
        if raw.strip():
            date.fromisoformat(raw.strip())
    return raw.strip()


def _meta(key: str) -> dict:
    meta = SETTINGS_META.get(key)
    if meta is None:
        raise KeyError(f"Unknown setting: {key}")
    return meta


def _env_or_default(meta: dict) -> str:
    env_val = os.getenv(meta["env"], "").strip()
    return env_val if env_val else meta["default"]


async def get(key: str) -> Any:
    """Return the current value for a setting, DB first then env/default."""
    meta = _meta(key)
    try:
        raw = await _get_db().get_setting(key)
        if raw is not None:
            return _cast(raw, meta["type"])
    except Exception as exc:
        logger.warning("settings_store: DB lookup failed for %s: %s", key, exc)
    return _cast(_env_or_default(meta), meta["type"])


async def get_raw(key: str) -> str:
    """Return raw string value (for display in the admin UI)."""
    meta = _meta(key)
    raw = await _get_db().get_setting(key)
    if raw is not None:
        return raw
    return _env_or_default(meta)


def validate(key: str, value: str) -> None:
    """Raise KeyError for unknown settings, ValueError for bad values."""
    meta = _meta(key)
    try:
        _cast(str(value), meta["type"])
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for {key}: {value!r}") from None
    if meta["choices"] and str(value).strip() not in meta["choices"]:
        raise ValueError(f"{key} must be one of: {', '.join(meta['choices'])}")


async def set(key: str, value: str) -> None:
    """Persist a setting to DB and apply it live to the config module."""
    meta = _meta(key)
    value = str(value)
    validate(key, value)
    await _get_db().set_setting(key, value)
    _apply_to_config(key, value, meta["type"])


async def delete(key: str) -> None:
    """Remove a setting from DB (falls back to .env / default)."""
    meta = _meta(key)
    await _get_db().delete_setting(key)
    _apply_to_config(key, _env_or_default(meta), meta["type"])


async def get_all() -> dict[str, str]:
    """Return all settings as raw strings (source: DB or env/default)."""
    result = {}
    for key in SETTINGS_META:
        result[key] = await get_raw(key)
    return result


def _apply_to_config(key: str, raw: str, typ: str) -> None:
    """Immediately update the live config module so no restart is needed."""
    import config as cfg
    value = _cast(raw, typ)
    attr = key.upper()
    if hasattr(cfg, attr):
        setattr(cfg, attr, value)
        logger.info("settings_store: config.%s = %r (live)", attr, value)
