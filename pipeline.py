"""
pipeline.py — sequences intake, analysis and text generation for the web layer.

Every public method snapshots the provider configuration exactly once
(manager.load_config) and passes that snapshot down, so a provider switch
mid-request can never mix two configurations inside one invocation.

  upload()       validate → store → thumbnail → row → [analyse → reconcile]
  analyze()      primary image → analyse → reconcile   (single-flight per item)
  describe()     generate a suggested description; never mutates the item
  delete_item()  / delete_image()   rows plus files on disk
"""
from __future__ import annotations

import logging
from typing import Optional

import batch_analyzer
import database as db
import events
import usage_ledger
import uploads
from asset_store import AssetStore
from batch_analyzer import BatchResult
from errors import ImageNotFound, ItemNotFound, ProviderNotConfigured
from providers import manager
from providers.base import TextResult, build_description_prompt
from uploads import UploadResult

logger = logging.getLogger(__name__)


class Pipeline:

    def __init__(self, store: Optional[AssetStore] = None):
        self.store = store or AssetStore()

    async def _require_item(self, item_id: str) -> db.Item:
        item = await db.get_item(item_id)
        if item is None:
            raise ItemNotFound(f"Item {item_id} not found")
        return item

    async def _require_provider(self) -> manager.ProviderConfig:
        cfg = await manager.load_config()
        if cfg is None:
            raise ProviderNotConfigured(
                "AI service not configured. Set a provider API key in settings."
            )
        return cfg

    # ── Intake ───────────────────────────────────────────────────────────────

    async def upload(
        self,
        item_id: str,
        data: bytes,
        mime_type: Optional[str],
        skip_ai: bool = False,
    ) -> UploadResult:
        # No provider configured just means "store without analysis"
        cfg = None if skip_ai else await manager.load_config()
        return await uploads.receive_image(
            item_id, data, mime_type, self.store,
            provider_config=cfg, skip_ai=skip_ai,
        )

    # ── Analysis ─────────────────────────────────────────────────────────────

    async def analyze(self, item_id: str) -> BatchResult:
        await self._require_item(item_id)
        cfg = await self._require_provider()
        return await batch_analyzer.analyze_item(item_id, cfg, self.store)

    async def describe(self, item_id: str, additional_info: str = "") -> TextResult:
        """Suggest a description for an item. The caller decides whether to save it."""
        item = await self._require_item(item_id)
        cfg = await self._require_provider()

        prompt = build_description_prompt(item.title, item.category, additional_info)
        events.record(
            "AI_REQUEST", operation=usage_ledger.TEXT_GENERATION,
            provider=cfg.provider, model=cfg.model, item_id=item_id,
        )
        result = await manager.get_provider(cfg).generate_text(prompt)
        if result.usage.total_tokens > 0:
            await usage_ledger.record(
                usage_ledger.TEXT_GENERATION, result.usage,
                provider=cfg.provider, model=cfg.model, item_id=item_id,
            )
        events.record(
            "AI_RESPONSE", operation=usage_ledger.TEXT_GENERATION,
            success=result.ok, item_id=item_id,
            timing=result.timing.to_dict(), usage=result.usage.to_dict(),
        )
        return result

    # ── Deletion ─────────────────────────────────────────────────────────────

    async def delete_item(self, item_id: str) -> None:
        images = await db.get_item_images(item_id)
        if not await db.delete_item(item_id):
            raise ItemNotFound(f"Item {item_id} not found")
        for image in images:
            await self.store.delete(self.store.ref_for(image.filename))
        logger.info("Deleted item %s (%d image(s))", item_id, len(images))

    async def delete_image(self, image_id: str) -> None:
        image = await db.get_image(image_id)
        if image is None:
            raise ImageNotFound(f"Image {image_id} not found")
        await db.delete_image(image_id)
        await self.store.delete(self.store.ref_for(image.filename))
        logger.info("Deleted image %s of item %s", image_id, image.item_id)
