"""
Tests for server.py — HTTP endpoints via aiohttp's TestClient.

Covers:
  - item CRUD, search, categories
  - upload: multipart handling, skipAI, rejected types, error JSON shape
  - analyze: 400 without provider, reconciled result with one
  - image status polling, thumbnail serving, delete
  - provider selection, usage, model catalogue, settings with masked keys
  - settings updates validated as a whole before anything is saved
"""
from __future__ import annotations

import json

import pytest
import pytest_asyncio
from aiohttp import FormData
from aiohttp.test_utils import TestClient, TestServer

import database as db
import key_store
from asset_store import AssetStore
from pipeline import Pipeline
from server import build_web_app

GOOD_REPLY = json.dumps({
    "title": "Acoustic Guitar",
    "description": "Six strings, small scratch on the body",
    "category": "Music",
    "estimated_price": 45,
    "condition": "Good",
})


@pytest_asyncio.fixture
async def client(tmp_data_dir):
    await db.init_db()
    app = build_web_app(Pipeline(AssetStore(root=tmp_data_dir / "uploads")))
    async with TestClient(TestServer(app)) as c:
        yield c


def image_form(data: bytes, content_type: str = "image/png", field: str = "image") -> FormData:
    form = FormData()
    form.add_field(field, data, filename="photo", content_type=content_type)
    return form


async def new_item(client, **fields) -> dict:
    resp = await client.post("/api/items", json=fields)
    assert resp.status == 201
    return await resp.json()


# ── Items ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestItems:
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["status"] == "ok"
        assert body["ai_initialized"] is False

    async def test_create_with_defaults(self, client):
        item = await new_item(client)
        assert item["title"] == "New Item"
        assert item["category"] == "Miscellaneous"
        assert item["images"] == []

    async def test_create_rejects_bad_price(self, client):
        resp = await client.post("/api/items", json={"title": "Lamp", "price": "lots"})
        assert resp.status == 400
        assert (await resp.json())["error"] == "validation_error"

    async def test_create_rejects_non_json(self, client):
        resp = await client.post("/api/items", data="not json",
                                 headers={"Content-Type": "application/json"})
        assert resp.status == 400

    async def test_get_update_delete(self, client):
        item = await new_item(client, title="Lamp", price=10)
        resp = await client.put(f"/api/items/{item['id']}", json={"price": 12.5})
        assert (await resp.json())["price"] == 12.5

        resp = await client.get(f"/api/items/{item['id']}")
        assert (await resp.json())["title"] == "Lamp"

        resp = await client.delete(f"/api/items/{item['id']}")
        assert resp.status == 200
        resp = await client.get(f"/api/items/{item['id']}")
        assert resp.status == 404
        assert (await resp.json())["error"] == "item_not_found"

    async def test_list_filters(self, client):
        await new_item(client, title="Oak Table", price=40, category="Furniture")
        await new_item(client, title="Comic Books", price=5, category="Books")
        resp = await client.get("/api/items", params={"category": "Books"})
        titles = [i["title"] for i in (await resp.json())["items"]]
        assert titles == ["Comic Books"]

        resp = await client.get("/api/items", params={"minPrice": "abc"})
        assert resp.status == 400

    async def test_categories(self, client):
        await new_item(client, category="Books")
        await new_item(client, category="Garden")
        resp = await client.get("/api/categories")
        assert (await resp.json())["categories"] == ["Books", "Garden"]


# ── Uploads & analysis ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestUploads:
    async def test_upload_without_provider(self, client, make_image):
        item = await new_item(client)
        resp = await client.post(f"/api/items/{item['id']}/images", data=image_form(make_image()))
        assert resp.status == 201
        body = await resp.json()
        assert body["ai_analysis"] is None
        assert body["image"]["analysis_status"] == "uploaded"

        resp = await client.get(body["image"]["url"])
        assert resp.status == 200

    async def test_upload_rejects_pdf(self, client):
        item = await new_item(client)
        resp = await client.post(
            f"/api/items/{item['id']}/images",
            data=image_form(b"%PDF-1.4", content_type="application/pdf"),
        )
        assert resp.status == 400
        body = await resp.json()
        assert body["error"] == "validation_error"
        assert "Only image files" in body["message"]

    async def test_upload_missing_field(self, client, make_image):
        item = await new_item(client)
        resp = await client.post(
            f"/api/items/{item['id']}/images", data=image_form(make_image(), field="photo"),
        )
        assert resp.status == 400

    async def test_upload_unknown_item(self, client, make_image):
        resp = await client.post("/api/items/missing/images", data=image_form(make_image()))
        assert resp.status == 404

    async def test_upload_with_analysis(self, client, make_image, scripted_provider):
        await key_store.set("openai_api_key", "sk-test")
        scripted_provider(GOOD_REPLY)
        item = await new_item(client, price=30)
        resp = await client.post(f"/api/items/{item['id']}/images", data=image_form(make_image()))
        body = await resp.json()
        assert body["ai_analysis"]["success"] is True
        assert "price" not in body["updated_fields"]

        stored = await (await client.get(f"/api/items/{item['id']}")).json()
        assert stored["title"] == "Acoustic Guitar"
        assert stored["price"] == 30

    async def test_skip_ai_then_analyze(self, client, make_image, scripted_provider):
        await key_store.set("openai_api_key", "sk-test")
        provider = scripted_provider(GOOD_REPLY)
        item = await new_item(client)
        resp = await client.post(
            f"/api/items/{item['id']}/images?skipAI=true", data=image_form(make_image()),
        )
        assert (await resp.json())["ai_analysis"] is None
        assert provider.calls == 0

        resp = await client.post(f"/api/items/{item['id']}/analyze")
        assert resp.status == 200
        body = await resp.json()
        assert body["analysis"]["title"] == "Acoustic Guitar"
        assert set(body["updated_fields"]) == {"title", "description", "category", "price"}

    async def test_analyze_without_provider(self, client, make_image):
        item = await new_item(client)
        await client.post(f"/api/items/{item['id']}/images", data=image_form(make_image()))
        resp = await client.post(f"/api/items/{item['id']}/analyze")
        assert resp.status == 400
        assert (await resp.json())["error"] == "provider_not_configured"

    async def test_analyze_without_images(self, client):
        await key_store.set("openai_api_key", "sk-test")
        item = await new_item(client)
        resp = await client.post(f"/api/items/{item['id']}/analyze")
        assert resp.status == 400

    async def test_description_suggestion(self, client, scripted_provider):
        await key_store.set("openai_api_key", "sk-test")
        scripted_provider("Great guitar for beginners.")
        item = await new_item(client, title="Guitar")
        resp = await client.post(f"/api/items/{item['id']}/description", json={"additional_info": "with case"})
        body = await resp.json()
        assert body["success"] is True
        assert body["text"] == "Great guitar for beginners."


# ── Images ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestImages:
    async def test_status_thumbnail_delete(self, client, make_image):
        item = await new_item(client)
        resp = await client.post(f"/api/items/{item['id']}/images", data=image_form(make_image()))
        image = (await resp.json())["image"]

        resp = await client.get(f"/api/images/{image['id']}")
        assert (await resp.json())["analysis_status"] == "uploaded"

        resp = await client.get(image["thumbnail_url"])
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "image/png"

        resp = await client.delete(f"/api/images/{image['id']}")
        assert resp.status == 200
        resp = await client.get(f"/api/images/{image['id']}")
        assert resp.status == 404


# ── AI provider, usage, settings ───────────────────────────────────────────────

@pytest.mark.asyncio
class TestAiAndSettings:
    async def test_provider_roundtrip(self, client):
        resp = await client.get("/api/ai/provider")
        assert (await resp.json())["provider"] == "openai"

        resp = await client.put("/api/ai/provider", json={"provider": "anthropic"})
        assert resp.status == 200
        assert (await resp.json())["model"] == "claude-3-5-sonnet-20241022"

        resp = await client.get("/api/ai/provider")
        assert (await resp.json())["provider"] == "anthropic"

    async def test_provider_invalid(self, client):
        resp = await client.put("/api/ai/provider", json={"provider": "openai", "model": "nope"})
        assert resp.status == 400

    async def test_usage_empty(self, client):
        resp = await client.get("/api/ai/usage")
        body = await resp.json()
        assert body["total_requests"] == 0
        assert set(body["operations"]) >= {"image_analysis", "text_generation"}

    async def test_models(self, client):
        resp = await client.get("/api/ai/models")
        body = await resp.json()
        assert {p["id"] for p in body["providers"]} >= {"openai", "anthropic", "google"}

    async def test_settings_masks_keys(self, client):
        resp = await client.put("/api/settings", json={
            "settings": {"garage_sale_title": "Big Sale"},
            "api_keys": {"openai_api_key": "sk-1234567890abcdef"},
        })
        assert resp.status == 200
        body = await resp.json()
        assert body["settings"]["garage_sale_title"] == "Big Sale"
        assert body["api_keys"]["openai_api_key"].startswith("sk-1")
        assert "567890" not in body["api_keys"]["openai_api_key"]

    async def test_settings_unknown_key(self, client):
        resp = await client.put("/api/settings", json={"settings": {"admin_password": "x"}})
        assert resp.status == 400

    async def test_settings_rejected_as_a_whole(self, client):
        resp = await client.put("/api/settings", json={"settings": {
            "ai_provider": "anthropic",
            "garage_sale_title": "Big Sale",
            "garage_sale_date": "next saturday",
        }})
        assert resp.status == 400
        assert "garage_sale_date" in (await resp.json())["message"]

        body = await (await client.get("/api/settings")).json()
        assert body["settings"]["ai_provider"] == "openai"
        assert body["settings"]["garage_sale_title"] == "My Garage Sale"

    async def test_settings_iso_date_accepted(self, client):
        resp = await client.put("/api/settings", json={"settings": {"garage_sale_date": "2026-05-02"}})
        assert resp.status == 200
        assert (await resp.json())["settings"]["garage_sale_date"] == "2026-05-02"

    async def test_env_provider_reports_its_default_model(self, client, monkeypatch):
        monkeypatch.setenv("AI_PROVIDER", "google")
        body = await (await client.get("/api/ai/provider")).json()
        assert body == {"provider": "google", "model": "gemini-2.0-flash", "ai_initialized": False}
