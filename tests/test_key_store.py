"""
Tests for key_store.py — provider API keys.

Covers:
  - one key per registered provider, env var is the upper-cased name
  - a saved key shadows .env; clearing it exposes .env again
  - unknown key names are refused, values are stripped
  - masked_keys() never leaks a full key
  - a newly saved key reaches the next provider snapshot
"""
from __future__ import annotations

import pytest
import pytest_asyncio

import database as db
import key_store
from providers import manager


@pytest_asyncio.fixture(autouse=True)
async def init_db(tmp_data_dir):
    await db.init_db()


class TestKeyNames:
    def test_one_per_provider(self):
        assert len(key_store.KEY_NAMES) == len(manager.PROVIDER_REGISTRY)
        assert "openrouter_api_key" in key_store.KEY_NAMES

    def test_env_var(self):
        assert key_store.env_var("google_api_key") == "GOOGLE_API_KEY"


@pytest.mark.asyncio
class TestLookup:
    async def test_nothing_configured(self):
        assert await key_store.get("groq_api_key") is None

    async def test_dotenv_value(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-dotenv")
        assert await key_store.get("groq_api_key") == "gsk-dotenv"

    async def test_saved_key_shadows_dotenv(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-dotenv")
        await key_store.set("anthropic_api_key", "sk-ant-saved")
        assert await key_store.get("anthropic_api_key") == "sk-ant-saved"

    async def test_clearing_saved_key_exposes_dotenv(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-dotenv")
        await key_store.set("anthropic_api_key", "sk-ant-saved")
        await key_store.delete("anthropic_api_key")
        assert await db.get_api_key("anthropic_api_key") is None
        assert await key_store.get("anthropic_api_key") == "sk-ant-dotenv"


@pytest.mark.asyncio
class TestSave:
    async def test_value_stripped(self):
        await key_store.set("openai_api_key", "  sk-pasted-with-space \n")
        assert await db.get_api_key("openai_api_key") == "sk-pasted-with-space"

    async def test_unknown_name_refused(self):
        with pytest.raises(KeyError):
            await key_store.set("ebay_api_key", "abc")

    async def test_next_snapshot_uses_new_key(self):
        assert await manager.load_config() is None
        await key_store.set("openai_api_key", "sk-fresh")
        cfg = await manager.load_config()
        assert cfg.api_key == "sk-fresh"


@pytest.mark.asyncio
class TestMaskedKeys:
    async def test_every_key_listed(self):
        masked = await key_store.masked_keys()
        assert set(masked) == set(key_store.KEY_NAMES)
        assert all(v == "" for v in masked.values())

    async def test_saved_key_masked(self):
        await key_store.set("google_api_key", "AIzaSyExampleKey1234")
        masked = (await key_store.masked_keys())["google_api_key"]
        assert masked.startswith("AIza")
        assert masked.endswith("1234")
        assert "Example" not in masked


class TestMask:
    @pytest.mark.parametrize("value,expected", [
        (None, ""), ("", ""), ("sk-ab", "****"), ("abcdefgh", "****"),
    ])
    def test_short_values_hidden(self, value, expected):
        assert key_store.mask(value) == expected

    def test_middle_starred(self):
        assert key_store.mask("sk-1234567890") == "sk-1*****7890"
