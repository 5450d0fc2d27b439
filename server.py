"""
server.py — JSON API for the garage sale organizer.

Runs as an aiohttp web server in the single asyncio event loop started by
main.py. All request handling is async; provider calls, SQLite and Pillow work
never block the loop.

Endpoints:
  GET    /api/health
  GET    /api/items                    ?q=&category=&minPrice=&maxPrice=&sortBy=&sortOrder=
  POST   /api/items
  GET    /api/items/{id}
  PUT    /api/items/{id}
  DELETE /api/items/{id}               also removes image files
  GET    /api/categories
  POST   /api/items/{id}/images        multipart field "image"  [?skipAI=true]
  POST   /api/items/{id}/analyze       analyse the primary image now
  POST   /api/items/{id}/description   suggested description (item unchanged)
  GET    /api/images/{id}              includes analysis_status for polling
  DELETE /api/images/{id}
  GET    /api/images/{id}/thumbnail    falls back to the original
  GET    /api/ai/usage                 rolling-window usage totals
  GET    /api/ai/provider   PUT /api/ai/provider
  GET    /api/ai/models
  GET    /api/settings      PUT /api/settings
  GET    /uploads/images/*  /uploads/thumbnails/*   static files

Errors come back as {"error": <code>, "message": ...} with the status carried
by the GarageSaleError subclass.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from aiohttp import hdrs, web

import config
import database as db
import key_store
import settings_store
import usage_ledger
from errors import GarageSaleError, ImageNotFound, ItemNotFound, ValidationError
from pipeline import Pipeline
from providers import manager

logger = logging.getLogger(__name__)

PIPELINE = web.AppKey("pipeline", Pipeline)

_TRUTHY = ("1", "true", "yes")


# ── Middleware ─────────────────────────────────────────────────────────────────

@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except GarageSaleError as exc:
        if exc.status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc)
        return web.json_response(exc.to_dict(), status=exc.status)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response(
            {"error": "internal_error", "message": "Internal server error"}, status=500,
        )


# ── Helpers ────────────────────────────────────────────────────────────────────

def _pipeline(request: web.Request) -> Pipeline:
    return request.app[PIPELINE]


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _float_param(request: web.Request, name: str) -> Optional[float]:
    raw = request.query.get(name)
    if raw in (None, ""):
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number") from None


def _item_fields(body: dict) -> dict[str, Any]:
    """Pick and validate the editable item fields present in *body*."""
    fields: dict[str, Any] = {}
    for key in ("title", "description", "category"):
        if key in body:
            if not isinstance(body[key], str):
                raise ValidationError(f"{key} must be a string")
            fields[key] = body[key].strip()
    if "price" in body:
        raw = body["price"]
        if isinstance(raw, bool):
            raise ValidationError("price must be a number")
        try:
            price = float(raw)
        except (TypeError, ValueError):
            raise ValidationError("price must be a number") from None
        if price < 0:
            raise ValidationError("price cannot be negative")
        fields["price"] = price
    return fields


async def _item_payload(item: db.Item) -> dict:
    data = item.to_dict()
    data["images"] = [i.to_dict() for i in await db.get_item_images(item.id)]
    return data


async def _read_image_part(request: web.Request) -> tuple[bytes, Optional[str]]:
    """Return (bytes, content type) of the multipart field named "image"."""
    if not request.content_type.startswith("multipart/"):
        raise ValidationError("Expected a multipart/form-data upload")
    reader = await request.multipart()
    async for part in reader:
        if part.name != "image":
            continue
        buf = bytearray()
        while True:
            chunk = await part.read_chunk()
            if not chunk:
                break
            buf.extend(chunk)
            if len(buf) > config.MAX_UPLOAD_BYTES:
                raise ValidationError(
                    f"File too large. Maximum size is {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB."
                )
        return bytes(buf), part.headers.get(hdrs.CONTENT_TYPE)
    raise ValidationError("No image file provided")


# ── Items ──────────────────────────────────────────────────────────────────────

async def handle_health(request: web.Request) -> web.Response:
    cfg = await manager.load_config()
    return web.json_response({
        "status":         "ok",
        "ai_initialized": cfg is not None,
        "provider":       cfg.to_dict() if cfg else None,
    })


async def handle_list_items(request: web.Request) -> web.Response:
    items = await db.get_items(
        query=request.query.get("q") or request.query.get("search"),
        category=request.query.get("category"),
        min_price=_float_param(request, "minPrice"),
        max_price=_float_param(request, "maxPrice"),
        sort_by=request.query.get("sortBy"),
        sort_order=request.query.get("sortOrder"),
    )
    return web.json_response({"items": [await _item_payload(i) for i in items]})


async def handle_create_item(request: web.Request) -> web.Response:
    fields = _item_fields(await _json_body(request))
    item = await db.create_item(**fields)
    logger.info("Created item %s (%r)", item.id, item.title)
    return web.json_response(await _item_payload(item), status=201)


async def handle_get_item(request: web.Request) -> web.Response:
    item_id = request.match_info["item_id"]
    item = await db.get_item(item_id)
    if item is None:
        raise ItemNotFound(f"Item {item_id} not found")
    return web.json_response(await _item_payload(item))


async def handle_update_item(request: web.Request) -> web.Response:
    item_id = request.match_info["item_id"]
    fields = _item_fields(await _json_body(request))
    if not await db.update_item(item_id, fields):
        raise ItemNotFound(f"Item {item_id} not found")
    return web.json_response(await _item_payload(await db.get_item(item_id)))


async def handle_delete_item(request: web.Request) -> web.Response:
    await _pipeline(request).delete_item(request.match_info["item_id"])
    return web.json_response({"deleted": True})


async def handle_categories(request: web.Request) -> web.Response:
    return web.json_response({"categories": await db.get_categories()})


# ── Images & analysis ──────────────────────────────────────────────────────────

async def handle_upload(request: web.Request) -> web.Response:
    item_id = request.match_info["item_id"]
    skip_ai = request.query.get("skipAI", "").lower() in _TRUTHY
    data, mime_type = await _read_image_part(request)
    result = await _pipeline(request).upload(item_id, data, mime_type, skip_ai=skip_ai)
    return web.json_response(result.to_dict(), status=201)


async def handle_analyze(request: web.Request) -> web.Response:
    result = await _pipeline(request).analyze(request.match_info["item_id"])
    return web.json_response(result.to_dict())


async def handle_describe(request: web.Request) -> web.Response:
    body = await _json_body(request) if request.can_read_body else {}
    info = body.get("additional_info") or body.get("additionalInfo") or ""
    result = await _pipeline(request).describe(request.match_info["item_id"], str(info))
    return web.json_response(result.to_dict(), status=200 if result.ok else 502)


async def handle_get_image(request: web.Request) -> web.Response:
    image_id = request.match_info["image_id"]
    image = await db.get_image(image_id)
    if image is None:
        raise ImageNotFound(f"Image {image_id} not found")
    return web.json_response(image.to_dict())


async def handle_delete_image(request: web.Request) -> web.Response:
    await _pipeline(request).delete_image(request.match_info["image_id"])
    return web.json_response({"deleted": True})


async def handle_thumbnail(request: web.Request) -> web.StreamResponse:
    image_id = request.match_info["image_id"]
    image = await db.get_image(image_id)
    if image is None:
        raise ImageNotFound(f"Image {image_id} not found")
    store = _pipeline(request).store
    path = store.preview_path(store.ref_for(image.filename))
    if not path.exists():
        raise ImageNotFound(f"Image file for {image_id} is missing")
    return web.FileResponse(path, headers={hdrs.CONTENT_TYPE: image.mime_type})


# ── AI provider, usage, settings ───────────────────────────────────────────────

async def handle_usage(request: web.Request) -> web.Response:
    return web.json_response(await usage_ledger.session_usage())


async def handle_get_provider(request: web.Request) -> web.Response:
    cfg = await manager.load_config()
    provider = await settings_store.get("ai_provider")
    model = await settings_store.get("ai_model")
    if provider in manager.PROVIDER_REGISTRY:
        model = manager.resolve_model(provider, model)
    return web.json_response({
        "provider":       provider,
        "model":          model,
        "ai_initialized": cfg is not None,
    })


async def handle_set_provider(request: web.Request) -> web.Response:
    body = await _json_body(request)
    provider = body.get("provider")
    if not isinstance(provider, str) or not provider.strip():
        raise ValidationError("provider is required")
    model = body.get("model")
    if model is not None and not isinstance(model, str):
        raise ValidationError("model must be a string")
    selection = await manager.set_selection(provider.strip(), (model or "").strip() or None)
    return web.json_response(selection)


async def handle_models(request: web.Request) -> web.Response:
    return web.json_response(await manager.catalogue())


async def handle_get_settings(request: web.Request) -> web.Response:
    return web.json_response({
        "settings": await settings_store.get_all(),
        "api_keys": await key_store.masked_keys(),
    })


async def handle_put_settings(request: web.Request) -> web.Response:
    """
    Body: {"settings": {key: value}, "api_keys": {key_name: value}}.
    An empty api key value removes the DB override. Provider/model changes go
    through the provider manager so they are written as one pair. Every value
    is validated before anything is written.
    """
    body = await _json_body(request)
    settings = body.get("settings") or {}
    api_keys = body.get("api_keys") or {}
    if not isinstance(settings, dict) or not isinstance(api_keys, dict):
        raise ValidationError("settings and api_keys must be objects")

    unknown = [k for k in settings if k not in settings_store.SETTINGS_META]
    unknown += [k for k in api_keys if k not in key_store.KEY_NAMES]
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(unknown)}")

    selection = None
    if "ai_provider" in settings or "ai_model" in settings:
        provider = str(settings.get("ai_provider") or await settings_store.get("ai_provider"))
        model = str(settings.get("ai_model") or "").strip() or None
        manager.validate_selection(provider, model or manager.provider_class(provider).default_model)
        selection = (provider, model)

    plain = {k: v for k, v in settings.items() if k not in ("ai_provider", "ai_model")}
    for key, value in plain.items():
        try:
            settings_store.validate(key, value)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None

    if selection is not None:
        await manager.set_selection(*selection)
    for key, value in plain.items():
        await settings_store.set(key, value)

    for name, value in api_keys.items():
        if value:
            await key_store.set(name, str(value).strip())
        else:
            await key_store.delete(name)
    if api_keys:
        logger.info("API keys updated: %s", ", ".join(api_keys))

    return await handle_get_settings(request)


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(pipeline: Optional[Pipeline] = None) -> web.Application:
    pipeline = pipeline or Pipeline()
    # multipart uploads are size-checked while streaming; this bounds JSON bodies
    app = web.Application(
        middlewares=[error_middleware],
        client_max_size=config.MAX_UPLOAD_BYTES + 1024 * 1024,
    )
    app[PIPELINE] = pipeline

    r = app.router
    r.add_get("/api/health",                     handle_health)
    r.add_get("/api/items",                      handle_list_items)
    r.add_post("/api/items",                     handle_create_item)
    r.add_get("/api/items/{item_id}",            handle_get_item)
    r.add_put("/api/items/{item_id}",            handle_update_item)
    r.add_delete("/api/items/{item_id}",         handle_delete_item)
    r.add_get("/api/categories",                 handle_categories)
    r.add_post("/api/items/{item_id}/images",    handle_upload)
    r.add_post("/api/items/{item_id}/analyze",   handle_analyze)
    r.add_post("/api/items/{item_id}/description", handle_describe)
    r.add_get("/api/images/{image_id}",          handle_get_image)
    r.add_delete("/api/images/{image_id}",       handle_delete_image)
    r.add_get("/api/images/{image_id}/thumbnail", handle_thumbnail)
    r.add_get("/api/ai/usage",                   handle_usage)
    r.add_get("/api/ai/provider",                handle_get_provider)
    r.add_put("/api/ai/provider",                handle_set_provider)
    r.add_get("/api/ai/models",                  handle_models)
    r.add_get("/api/settings",                   handle_get_settings)
    r.add_put("/api/settings",                   handle_put_settings)
    r.add_static("/uploads", str(pipeline.store.root))
    return app


async def start_server() -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app = build_web_app()
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, config.SERVER_HOST, config.SERVER_PORT)
    await site.start()
    logger.info("🏷️  Garage sale API listening on %s:%d", config.SERVER_HOST, config.SERVER_PORT)
    return runner
