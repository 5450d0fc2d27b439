"""
batch_analyzer.py — analyse an item's stored photo on demand.

analyze_item() is the "upload now, analyse later" path: it picks the item's
primary (oldest) image, calls the provider once, records usage, stores the
outcome on the image and reconciles the suggestions into the item.

Concurrency:
  • single-flight per item — a second analyze_item() for an item that is
    already being analysed joins the in-flight call and gets the same result,
    so the provider is never called twice for one request burst
  • run_analysis() holds a per-item lock, so upload-triggered analyses and
    batch analyses of the same item never overlap

Re-invoking after a failure simply runs again; the only trace of the failed
attempt is its ledger entry (when the provider replied) and the stored outcome.
"""
from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import dataclass

import database as db
import events
import reconcile
import usage_ledger
from analysis import AnalysisFailure, AnalysisOutcome, Timing
from asset_store import AssetStore
from errors import ValidationError
from providers import manager
from providers.manager import ProviderConfig

logger = logging.getLogger(__name__)

_inflight: dict[str, asyncio.Task] = {}
_analysis_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


@dataclass
class BatchResult:
    image_id: str
    analysis: AnalysisOutcome
    updated_fields: list[str]

    def to_dict(self) -> dict:
        return {
            "image_id":       self.image_id,
            "analysis":       self.analysis.to_dict(),
            "updated_fields": list(self.updated_fields),
        }


def _analysis_lock(item_id: str) -> asyncio.Lock:
    lock = _analysis_locks.get(item_id)
    if lock is None:
        lock = asyncio.Lock()
        _analysis_locks[item_id] = lock
    return lock


async def run_analysis(
    item_id: str,
    image: db.ImageAsset,
    image_bytes: bytes,
    cfg: ProviderConfig,
) -> tuple[AnalysisOutcome, list[str]]:
    """
    Analyse one stored image and apply the result. Never raises for AI
    failures — they come back as an AnalysisFailure.
    """
    lock = _analysis_lock(item_id)
    async with lock:
        t0 = time.monotonic()
        await db.set_image_status(image.id, db.STATUS_REQUESTED)
        events.record(
            "AI_REQUEST",
            operation=usage_ledger.IMAGE_ANALYSIS,
            provider=cfg.provider,
            model=cfg.model,
            item_id=item_id,
            image_id=image.id,
            image_bytes=len(image_bytes),
        )

        try:
            provider = manager.get_provider(cfg)
            outcome = await provider.analyse_image(image_bytes, image.mime_type)
        except Exception as exc:
            logger.exception("[%s/%s] Unexpected analysis error", cfg.provider, cfg.model)
            outcome = AnalysisFailure(
                reason=str(exc),
                error_type=type(exc).__name__,
                provider=cfg.provider,
                model=cfg.model,
            )

        outcome.timing = Timing(
            total_ms=int((time.monotonic() - t0) * 1000),
            provider_call_ms=outcome.timing.provider_call_ms,
        )

        # Tokens were only consumed if the provider actually replied
        if outcome.usage.total_tokens > 0:
            await usage_ledger.record(
                usage_ledger.IMAGE_ANALYSIS, outcome.usage,
                provider=cfg.provider, model=cfg.model, item_id=item_id,
            )

        status = db.STATUS_COMPLETE if outcome.success else db.STATUS_FAILED
        await db.save_image_analysis(image.id, status, outcome.to_dict())
        events.record(
            "AI_RESPONSE",
            operation=usage_ledger.IMAGE_ANALYSIS,
            success=outcome.success,
            item_id=item_id,
            image_id=image.id,
            timing=outcome.timing.to_dict(),
            usage=outcome.usage.to_dict(),
        )

        updated = await reconcile.apply(item_id, outcome)
    return outcome, updated


async def _analyze(item_id: str, cfg: ProviderConfig, store: AssetStore) -> BatchResult:
    images = await db.get_item_images(item_id)
    if not images:
        raise ValidationError("Item has no images to analyze")
    primary = images[0]
    image_bytes = await store.read(store.ref_for(primary.filename))
    outcome, updated = await run_analysis(item_id, primary, image_bytes, cfg)
    return BatchResult(image_id=primary.id, analysis=outcome, updated_fields=updated)


async def analyze_item(item_id: str, cfg: ProviderConfig, store: AssetStore) -> BatchResult:
    """Analyse the item's primary image, joining any analysis already in flight for it."""
    task = _inflight.get(item_id)
    if task is None:
        task = asyncio.ensure_future(_analyze(item_id, cfg, store))
        _inflight[item_id] = task

        def _forget(done: asyncio.Task) -> None:
            if _inflight.get(item_id) is done:
                del _inflight[item_id]

        task.add_done_callback(_forget)
    else:
        logger.info("Item %s: analysis already in progress — joining it", item_id)

    # shield: a disconnecting caller must not cancel the call others are waiting on
    return await asyncio.shield(task)
