"""
asset_store.py — on-disk storage for uploaded photos and their thumbnails.

Layout (two parallel namespaces keyed by the same generated filename):

  UPLOADS_DIR/images/<uuid>.<ext>       original bytes
  UPLOADS_DIR/thumbnails/<uuid>.<ext>   longest side ≤ THUMBNAIL_MAX_SIDE

Because both share the filename, a missing thumbnail can always fall back to
the original. Filenames are uuid4 + exclusive create, so concurrent uploads
never collide. Use staged() around an upload: if anything inside the block
raises, every file written for that asset is removed before the error
propagates.
"""
from __future__ import annotations

import asyncio
import io
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from PIL import Image, UnidentifiedImageError

import config
from errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

_DECODE_ERRORS = (
    UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError,
)


@dataclass(frozen=True)
class AssetRef:
    filename: str
    path: Path
    thumbnail_path: Path


def resize(data: bytes, max_w: int, max_h: int) -> bytes:
    """
    Shrink an image to fit inside max_w × max_h, keeping aspect ratio and the
    source format. Never enlarges. Raises UnidentifiedImageError for non-images.
    """
    with Image.open(io.BytesIO(data)) as img:
        fmt = img.format or "JPEG"
        img.thumbnail((max_w, max_h))
        if fmt == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = io.BytesIO()
        save_kwargs = {"quality": 80} if fmt in ("JPEG", "WEBP") else {}
        img.save(out, format=fmt, **save_kwargs)
    return out.getvalue()


class AssetStore:

    def __init__(
        self,
        root: Optional[Path] = None,
        resizer: Callable[[bytes, int, int], bytes] = resize,
        thumbnail_max_side: Optional[int] = None,
    ):
        self.root = Path(root) if root is not None else Path(config.UPLOADS_DIR)
        self.images_dir = self.root / "images"
        self.thumbnails_dir = self.root / "thumbnails"
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        self._resize = resizer
        self.thumbnail_max_side = thumbnail_max_side or config.THUMBNAIL_MAX_SIDE

    def ref_for(self, filename: str) -> AssetRef:
        name = Path(filename).name          # never escape the namespaces
        return AssetRef(
            filename=name,
            path=self.images_dir / name,
            thumbnail_path=self.thumbnails_dir / name,
        )

    async def store(self, data: bytes, ext: str) -> AssetRef:
        """Write *data* under a fresh collision-free name."""
        ref = self.ref_for(f"{uuid.uuid4().hex}{ext}")
        try:
            await asyncio.to_thread(_write_exclusive, ref.path, data)
        except OSError as exc:
            ref.path.unlink(missing_ok=True)
            raise StorageError(f"Could not store image: {exc}") from exc
        logger.debug("Stored %s (%d bytes)", ref.filename, len(data))
        return ref

    async def thumbnail(self, ref: AssetRef) -> AssetRef:
        """Derive the bounded-size preview for a stored original."""
        original = await self.read(ref)

        side = self.thumbnail_max_side
        try:
            thumb = await asyncio.to_thread(self._resize, original, side, side)
        except _DECODE_ERRORS as exc:
            # Pillow reports truncated/corrupt data as plain OSError
            raise ValidationError(f"File is not a readable image: {exc}") from exc

        try:
            await asyncio.to_thread(ref.thumbnail_path.write_bytes, thumb)
        except OSError as exc:
            ref.thumbnail_path.unlink(missing_ok=True)
            raise StorageError(f"Could not create thumbnail: {exc}") from exc
        return ref

    async def read(self, ref: AssetRef) -> bytes:
        try:
            return await asyncio.to_thread(ref.path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Could not read image {ref.filename}: {exc}") from exc

    async def delete(self, ref: AssetRef) -> None:
        """Remove original and thumbnail. Missing files are not an error."""
        for path in (ref.path, ref.thumbnail_path):
            try:
                await asyncio.to_thread(path.unlink, True)
            except OSError as exc:
                logger.warning("Failed to delete %s: %s", path, exc)

    def preview_path(self, ref: AssetRef) -> Path:
        """Thumbnail if it exists, else the original."""
        return ref.thumbnail_path if ref.thumbnail_path.exists() else ref.path

    @asynccontextmanager
    async def staged(self, data: bytes, ext: str) -> AsyncIterator[AssetRef]:
        """Store + thumbnail; delete both if the enclosed block (or the thumbnail) fails."""
        ref = await self.store(data, ext)
        try:
            await self.thumbnail(ref)
            yield ref
        except BaseException:
            await self.delete(ref)
            raise


def _write_exclusive(path: Path, data: bytes) -> None:
    with open(path, "xb") as fh:
        fh.write(data)
