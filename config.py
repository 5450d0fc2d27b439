"""
Central configuration — reads from .env file.

Settings priority order:
  1. Database (set via PUT /api/settings or /api/ai/provider) — live, no restart needed
  2. Environment variable / .env file                         — fallback / bootstrap

Provider API keys follow the same priority via key_store.py.
settings_store.py writes directly to the module attributes below when a
setting is changed through the API, so code reading config.X always
gets the latest value without restarting.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ── Storage ───────────────────────────────────────────────────────────────────
# Database, logs and uploads all live under DATA_DIR so a single Docker volume
# mount (./data:/app/data) captures everything.
DATA_DIR: Path    = Path(os.getenv("DATA_DIR", "data"))
UPLOADS_DIR: Path = Path(os.getenv("UPLOADS_DIR", str(DATA_DIR / "uploads")))

# ── Uploads ───────────────────────────────────────────────────────────────────
MAX_UPLOAD_BYTES: int = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# MIME type → file extension used for the stored asset
ALLOWED_MIME_TYPES: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png":  ".png",
    "image/gif":  ".gif",
    "image/webp": ".webp",
}

# Longest side of a generated thumbnail, in pixels
THUMBNAIL_MAX_SIDE: int = int(os.getenv("THUMBNAIL_MAX_SIDE", "300"))

# ── AI providers ──────────────────────────────────────────────────────────────
# openai | anthropic | google | groq | openrouter
# NOTE: overridden at runtime by settings_store
AI_PROVIDER: str = os.getenv("AI_PROVIDER", "openai")
AI_MODEL: str    = os.getenv("AI_MODEL", "")       # blank = provider default

# Wall-clock bound for a single provider request, and how many times a
# transient failure (timeout, connection drop, rate limit, 5xx) is retried.
PROVIDER_TIMEOUT_SECS: float = float(os.getenv("PROVIDER_TIMEOUT_SECS", "120"))
PROVIDER_MAX_RETRIES: int    = int(os.getenv("PROVIDER_MAX_RETRIES", "2"))
PROVIDER_RETRY_BACKOFF_SECS: float = float(os.getenv("PROVIDER_RETRY_BACKOFF_SECS", "1.0"))

# ── Usage ledger ──────────────────────────────────────────────────────────────
# Rolling window aggregated by GET /api/ai/usage
USAGE_WINDOW_HOURS: int = int(os.getenv("USAGE_WINDOW_HOURS", "24"))

# ── Garage sale details (shown on the public site) ────────────────────────────
# NOTE: all overridden at runtime by settings_store
GARAGE_SALE_TITLE: str   = os.getenv("GARAGE_SALE_TITLE", "My Garage Sale")
GARAGE_SALE_DATE: str    = os.getenv("GARAGE_SALE_DATE", "")
GARAGE_SALE_ADDRESS: str = os.getenv("GARAGE_SALE_ADDRESS", "")
CONTACT_INFO: str        = os.getenv("CONTACT_INFO", "")

# ── Web server ────────────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "3001"))

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


async def apply_db_settings() -> None:
    """
    Load all DB-persisted settings and apply them to this module's attributes.
    Called once at startup so DB values override .env from the start.
    """
    import database as _db
    import settings_store

    for key, meta in settings_store.SETTINGS_META.items():
        db_raw = await _db.get_setting(key)
        # Only apply if there's a DB override (don't stomp .env unnecessarily)
        if db_raw is not None:
            settings_store._apply_to_config(key, db_raw, meta["type"])
