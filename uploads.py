"""
uploads.py — receive one photo for one item.

Steps:
  1. validate MIME type (jpeg/png/gif/webp) and size (≤ MAX_UPLOAD_BYTES)
     — rejected uploads never touch storage
  2. store original + thumbnail, create the image row
     — any failure here removes the files; no row is left behind
  3. unless skip_ai, or no provider is configured, analyse immediately and
     reconcile into the item — AI failures never fail the upload
"""
from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Optional

import config
import database as db
import events
from analysis import AnalysisOutcome
from asset_store import AssetStore
from batch_analyzer import run_analysis
from errors import GarageSaleError, ItemNotFound, StorageError, ValidationError
from providers.manager import ProviderConfig

logger = logging.getLogger(__name__)

_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


@dataclass
class UploadResult:
    image: db.ImageAsset
    ai_analysis: Optional[AnalysisOutcome] = None
    updated_fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "image":          self.image.to_dict(),
            "ai_analysis":    self.ai_analysis.to_dict() if self.ai_analysis else None,
            "updated_fields": list(self.updated_fields),
        }


def normalise_mime(mime_type: Optional[str]) -> str:
    mime = (mime_type or "").split(";")[0].strip().lower()
    return _MIME_ALIASES.get(mime, mime)


def validate_upload(data: bytes, mime_type: Optional[str]) -> tuple[str, str]:
    """Return (mime_type, file extension) or raise ValidationError."""
    if not data:
        raise ValidationError("No image file provided")
    mime = normalise_mime(mime_type)
    if mime not in config.ALLOWED_MIME_TYPES:
        raise ValidationError(
            "Only image files are allowed (jpeg, png, gif, webp)",
            details={"mime_type": mime_type},
        )
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"File too large. Maximum size is {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB.",
            details={"size_bytes": len(data)},
        )
    return mime, config.ALLOWED_MIME_TYPES[mime]


def _step(step: str, filename: str, t0: float, **fields) -> None:
    events.record(
        "UPLOAD_STEP", step=step, filename=filename,
        duration_ms=int((time.monotonic() - t0) * 1000), **fields,
    )


async def receive_image(
    item_id: str,
    data: bytes,
    mime_type: Optional[str],
    store: AssetStore,
    provider_config: Optional[ProviderConfig] = None,
    skip_ai: bool = False,
) -> UploadResult:
    """Validate, store and (optionally) analyse one photo."""
    started = time.monotonic()
    mime, ext = validate_upload(data, mime_type)

    item = await db.get_item(item_id)
    if item is None:
        raise ItemNotFound(f"Item {item_id} not found")

    events.record(
        "UPLOAD_START", item_id=item_id, mime_type=mime,
        file_size_bytes=len(data), file_size_mb=round(len(data) / 1024 / 1024, 2),
    )

    filename = "unknown"
    try:
        async with store.staged(data, ext) as ref:
            filename = ref.filename
            _step("store_and_thumbnail", filename, started)
            t0 = time.monotonic()
            try:
                image = await db.create_image(item_id, ref.filename, str(ref.path), mime)
            except sqlite3.IntegrityError as exc:
                # item deleted while the upload was in progress
                raise ItemNotFound(f"Item {item_id} not found") from exc
            except sqlite3.Error as exc:
                raise StorageError(f"Could not save image record: {exc}") from exc
            _step("database_save", filename, t0)
    except GarageSaleError as exc:
        events.record(
            "UPLOAD_ERROR", item_id=item_id, filename=filename, error_type=exc.code,
            error_message=exc.message, duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.error("Upload for item %s failed: %s", item_id, exc)
        raise

    outcome: Optional[AnalysisOutcome] = None
    updated: list[str] = []
    if skip_ai:
        _step("ai_analysis_skipped", filename, time.monotonic(), reason="skip_ai requested")
    elif provider_config is None:
        _step("ai_analysis_skipped", filename, time.monotonic(), reason="provider not configured")
    else:
        t0 = time.monotonic()
        outcome, updated = await run_analysis(item_id, image, data, provider_config)
        _step("ai_analysis", filename, t0, ai_success=outcome.success, updated_fields=updated)
        image = await db.get_image(image.id) or image

    events.record(
        "UPLOAD_COMPLETE", item_id=item_id, image_id=image.id, filename=filename,
        total_duration_ms=int((time.monotonic() - started) * 1000),
        ai_analysis_success=bool(outcome and outcome.success),
    )
    logger.info("Stored image %s for item %s (ai=%s)", image.id, item_id,
                "skipped" if outcome is None else ("ok" if outcome.success else "failed"))
    return UploadResult(image=image, ai_analysis=outcome, updated_fields=updated)
