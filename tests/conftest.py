"""
Shared pytest fixtures.

Every test that touches the database, uploads or config gets a clean
temporary DATA_DIR via the `tmp_data_dir` fixture so tests are fully
isolated from each other and from the real garage_sale.db.
"""
from __future__ import annotations

import asyncio
import io
import sys
from pathlib import Path

import pytest

# ── Make the project root importable without installing the package ────────────
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from providers.base import ProviderReply, VisionProvider  # noqa: E402

_ENV_VARS = (
    "AI_PROVIDER", "AI_MODEL",
    "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_API_KEY",
    "GROQ_API_KEY", "OPENROUTER_API_KEY",
)


@pytest.fixture(autouse=True)
def tmp_data_dir(tmp_path, monkeypatch):
    """
    Redirect DATA_DIR to a fresh tmp directory for every test.
    This gives each test a clean SQLite file and uploads directory.
    """
    data = tmp_path / "data"
    data.mkdir()
    monkeypatch.setenv("DATA_DIR", str(data))
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    # Patch the module-level paths that were already computed at import time
    import config
    import database
    monkeypatch.setattr(database, "DB_PATH", str(data / "garage_sale.db"))
    monkeypatch.setattr(database, "_DATA_DIR", data)
    monkeypatch.setattr(config, "DATA_DIR", data)
    monkeypatch.setattr(config, "UPLOADS_DIR", data / "uploads")

    # settings_store writes live values onto config; restore them afterwards
    for attr in ("AI_PROVIDER", "AI_MODEL", "GARAGE_SALE_TITLE", "GARAGE_SALE_DATE",
                 "GARAGE_SALE_ADDRESS", "CONTACT_INFO"):
        monkeypatch.setattr(config, attr, getattr(config, attr))

    # Also reset the internal locks and caches so tests don't share state
    import batch_analyzer
    from providers import manager
    monkeypatch.setattr(database, "_lock", asyncio.Lock())
    monkeypatch.setattr(manager, "_selection_lock", asyncio.Lock())
    monkeypatch.setattr(manager, "_providers", {})
    monkeypatch.setattr(batch_analyzer, "_inflight", {})

    yield data


@pytest.fixture
def make_image():
    """Factory for real, decodable image bytes generated with Pillow."""
    from PIL import Image

    def _make(fmt: str = "PNG", size: tuple[int, int] = (640, 480), color="red") -> bytes:
        img = Image.new("RGB", size, color)
        buf = io.BytesIO()
        img.save(buf, format=fmt)
        return buf.getvalue()

    return _make


# ── Scripted provider ──────────────────────────────────────────────────────────

class ScriptedProvider(VisionProvider):
    """
    Provider whose replies are scripted: each entry is a reply string, a
    ProviderReply, or an exception to raise. The last entry repeats.
    """

    name = "openai"
    default_model = "gpt-4o"
    models = ("gpt-4o",)
    transient_errors = (ConnectionError,)

    def __init__(self, replies, delay: float = 0.0, **kwargs):
        kwargs.setdefault("timeout", 5)
        kwargs.setdefault("max_retries", 0)
        kwargs.setdefault("retry_backoff", 0)
        super().__init__("sk-test", **kwargs)
        self.replies = list(replies)
        self.delay = delay
        self.calls = 0
        self.prompts: list[str] = []

    async def _next(self, prompt: str) -> ProviderReply:
        self.calls += 1
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return ProviderReply(text=reply)
        return reply

    async def _request_image(self, image_bytes, mime_type, prompt):
        return await self._next(prompt)

    async def _request_text(self, prompt):
        return await self._next(prompt)


@pytest.fixture
def scripted_provider(monkeypatch):
    """
    Install a ScriptedProvider as the instance every pipeline call receives:
        provider = scripted_provider(GOOD_REPLY)
    """
    from providers import manager

    def _install(*replies, **kwargs) -> ScriptedProvider:
        provider = ScriptedProvider(replies, **kwargs)
        monkeypatch.setattr(manager, "get_provider", lambda cfg: provider)
        return provider

    return _install
