"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  items         — garage sale listings (title, description, price, category)
  images        — photos attached to an item + their latest analysis outcome
  settings      — runtime-editable settings (override .env values)
  api_keys      — provider API keys set via the API (override .env values)
  usage_ledger  — append-only token/cost record, one row per provider call

The DB file is created automatically on first run.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

logger = logging.getLogger(__name__)

# Store the DB in a dedicated data/ directory so Docker volume mounts work
# correctly (mount ./data:/app/data) and the file survives container restarts.
_DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
_DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = str(_DATA_DIR / "garage_sale.db")
_lock = asyncio.Lock()          # serialise schema migrations

# Sentinel "unset" values for a fresh listing
DEFAULT_TITLE = "New Item"
DEFAULT_CATEGORY = "Miscellaneous"

# Image analysis phases
STATUS_UPLOADED = "uploaded"
STATUS_REQUESTED = "analysis_requested"
STATUS_COMPLETE = "analysis_complete"
STATUS_FAILED = "analysis_failed"


# ── Data models ───────────────────────────────────────────────────────────────

@dataclass
class Item:
    id: str
    title: str
    description: str
    price: float
    category: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "id":          self.id,
            "title":       self.title,
            "description": self.description,
            "price":       self.price,
            "category":    self.category,
            "created_at":  self.created_at,
            "updated_at":  self.updated_at,
        }


@dataclass
class ImageAsset:
    id: str
    item_id: str
    filename: str               # generated name, shared by original and thumbnail
    filepath: str
    mime_type: str
    analysis_status: str        # uploaded | analysis_requested | analysis_complete | analysis_failed
    ai_analysis: Optional[dict]
    created_at: str
    analyzed_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id":              self.id,
            "item_id":         self.item_id,
            "filename":        self.filename,
            "filepath":        self.filepath,
            "mime_type":       self.mime_type,
            "analysis_status": self.analysis_status,
            "ai_analysis":     self.ai_analysis,
            "created_at":      self.created_at,
            "analyzed_at":     self.analyzed_at,
            "url":             f"/uploads/images/{self.filename}",
            "thumbnail_url":   f"/api/images/{self.id}/thumbnail",
        }


@dataclass
class UsageRecord:
    id: int
    ts: str
    operation: str              # image_analysis | text_generation
    provider: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    estimated: bool             # token counts came from the chars/4 heuristic
    input_cost: float
    output_cost: float
    currency: str
    item_id: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    def to_dict(self) -> dict:
        return {
            "id":                self.id,
            "ts":                self.ts,
            "operation":         self.operation,
            "provider":          self.provider,
            "model":             self.model,
            "prompt_tokens":     self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens":      self.total_tokens,
            "estimated":         self.estimated,
            "input_cost":        self.input_cost,
            "output_cost":       self.output_cost,
            "total_cost":        self.total_cost,
            "currency":          self.currency,
            "item_id":           self.item_id,
        }


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    price       REAL NOT NULL DEFAULT 0,
    category    TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_items_category   ON items (category);
CREATE INDEX IF NOT EXISTS idx_items_created_at ON items (created_at);
CREATE INDEX IF NOT EXISTS idx_items_price      ON items (price);

-- Photos: exclusively owned by one item, removed with it
CREATE TABLE IF NOT EXISTS images (
    id              TEXT PRIMARY KEY,
    item_id         TEXT NOT NULL REFERENCES items (id) ON DELETE CASCADE,
    filename        TEXT NOT NULL,
    filepath        TEXT NOT NULL,
    mime_type       TEXT NOT NULL DEFAULT 'image/jpeg',
    analysis_status TEXT NOT NULL DEFAULT 'uploaded',
    ai_analysis     TEXT,
    created_at      TEXT NOT NULL,
    analyzed_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_images_item_id ON images (item_id);

-- Settings editable via the API (override .env values)
CREATE TABLE IF NOT EXISTS settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Provider API keys set via the API (override .env values)
CREATE TABLE IF NOT EXISTS api_keys (
    key_name   TEXT PRIMARY KEY,
    key_value  TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Append-only AI usage ledger; rows are never updated or deleted
CREATE TABLE IF NOT EXISTS usage_ledger (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    ts                TEXT    NOT NULL,
    operation         TEXT    NOT NULL,
    provider          TEXT    NOT NULL DEFAULT '',
    model             TEXT    NOT NULL DEFAULT '',
    prompt_tokens     INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    estimated         INTEGER NOT NULL DEFAULT 0,
    input_cost        REAL    NOT NULL DEFAULT 0,
    output_cost       REAL    NOT NULL DEFAULT 0,
    currency          TEXT    NOT NULL DEFAULT 'USD',
    item_id           TEXT
);
CREATE INDEX IF NOT EXISTS idx_usage_ledger_ts ON usage_ledger (ts);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def _connect() -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection with foreign keys enforced (SQLite defaults them off)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("PRAGMA foreign_keys = ON")
        yield db


async def init_db() -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    async with _lock:
        async with _connect() as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", DB_PATH)


# ── Items ─────────────────────────────────────────────────────────────────────

_ITEM_COLS = "id, title, description, price, category, created_at, updated_at"
_SORTABLE = {"title", "price", "category", "created_at", "updated_at"}
_EDITABLE = {"title", "description", "price", "category"}


def _row_to_item(r) -> Item:
    return Item(
        id=r[0], title=r[1], description=r[2], price=float(r[3]),
        category=r[4], created_at=r[5], updated_at=r[6],
    )


async def create_item(
    title: str = DEFAULT_TITLE,
    description: str = "",
    price: float = 0.0,
    category: str = DEFAULT_CATEGORY,
) -> Item:
    now = _now()
    item = Item(
        id=str(uuid.uuid4()), title=title, description=description,
        price=float(price), category=category, created_at=now, updated_at=now,
    )
    async with _connect() as db:
        await db.execute(
            f"INSERT INTO items ({_ITEM_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (item.id, item.title, item.description, item.price,
             item.category, item.created_at, item.updated_at),
        )
        await db.commit()
    return item


async def get_item(item_id: str) -> Optional[Item]:
    async with _connect() as db:
        async with db.execute(
            f"SELECT {_ITEM_COLS} FROM items WHERE id = ?", (item_id,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_item(row) if row else None


async def get_items(
    query: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: Optional[str] = None,
    sort_order: Optional[str] = None,
) -> list[Item]:
    """Search/filter listings. Unknown sort columns fall back to created_at."""
    sql = f"SELECT {_ITEM_COLS} FROM items WHERE 1=1"
    params: list[Any] = []
    if query:
        sql += " AND (title LIKE ? OR description LIKE ?)"
        params += [f"%{query}%", f"%{query}%"]
    if category:
        sql += " AND category = ?"
        params.append(category)
    if min_price is not None:
        sql += " AND price >= ?"
        params.append(min_price)
    if max_price is not None:
        sql += " AND price <= ?"
        params.append(max_price)

    column = sort_by if sort_by in _SORTABLE else "created_at"
    direction = "ASC" if (sort_order or "").lower() == "asc" else "DESC"
    sql += f" ORDER BY {column} {direction}"

    async with _connect() as db:
        async with db.execute(sql, params) as cur:
            rows = await cur.fetchall()
    return [_row_to_item(r) for r in rows]


async def update_item(item_id: str, updates: dict[str, Any]) -> bool:
    """Apply field updates. Returns False if the item does not exist."""
    fields = {k: v for k, v in updates.items() if k in _EDITABLE}
    if not fields:
        return await get_item(item_id) is not None
    assignments = ", ".join(f"{k} = ?" for k in fields)
    async with _connect() as db:
        cur = await db.execute(
            f"UPDATE items SET {assignments}, updated_at = ? WHERE id = ?",
            (*fields.values(), _now(), item_id),
        )
        await db.commit()
        return cur.rowcount > 0


# Per-field "still unset" conditions; kept in SQL so the check and the write
# are one statement and a user edit landing in between always wins.
_UNSET_GUARDS = {
    "title":       "TRIM(title) IN ('', ?)",
    "description": "TRIM(description) = ''",
    "category":    "TRIM(category) IN ('', ?)",
    "price":       "price = 0",
}
_GUARD_PARAMS = {
    "title":       (DEFAULT_TITLE,),
    "description": (),
    "category":    (DEFAULT_CATEGORY,),
    "price":       (),
}


async def fill_unset_fields(item_id: str, updates: dict[str, Any]) -> list[str]:
    """
    Write each field only if the stored value is still its unset sentinel.
    Returns the fields that were actually written.
    """
    written: list[str] = []
    now = _now()
    async with _connect() as db:
        for field, value in updates.items():
            if field not in _UNSET_GUARDS:
                continue
            cur = await db.execute(
                f"UPDATE items SET {field} = ?, updated_at = ? "
                f"WHERE id = ? AND {_UNSET_GUARDS[field]}",
                (value, now, item_id, *_GUARD_PARAMS[field]),
            )
            if cur.rowcount > 0:
                written.append(field)
        await db.commit()
    return written


async def delete_item(item_id: str) -> bool:
    """Remove an item and its image rows (files are the caller's concern)."""
    async with _connect() as db:
        await db.execute("DELETE FROM images WHERE item_id = ?", (item_id,))
        cur = await db.execute("DELETE FROM items WHERE id = ?", (item_id,))
        await db.commit()
        return cur.rowcount > 0


async def get_categories() -> list[str]:
    async with _connect() as db:
        async with db.execute(
            "SELECT DISTINCT category FROM items WHERE category != '' ORDER BY category"
        ) as cur:
            return [r[0] for r in await cur.fetchall()]


# ── Images ────────────────────────────────────────────────────────────────────

_IMAGE_COLS = (
    "id, item_id, filename, filepath, mime_type, analysis_status, "
    "ai_analysis, created_at, analyzed_at"
)


def _row_to_image(r) -> ImageAsset:
    return ImageAsset(
        id=r[0], item_id=r[1], filename=r[2], filepath=r[3], mime_type=r[4],
        analysis_status=r[5], ai_analysis=json.loads(r[6]) if r[6] else None,
        created_at=r[7], analyzed_at=r[8],
    )


async def create_image(item_id: str, filename: str, filepath: str, mime_type: str) -> ImageAsset:
    image = ImageAsset(
        id=str(uuid.uuid4()), item_id=item_id, filename=filename, filepath=filepath,
        mime_type=mime_type, analysis_status=STATUS_UPLOADED, ai_analysis=None,
        created_at=_now(),
    )
    async with _connect() as db:
        await db.execute(
            f"INSERT INTO images ({_IMAGE_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (image.id, image.item_id, image.filename, image.filepath, image.mime_type,
             image.analysis_status, None, image.created_at, None),
        )
        await db.commit()
    return image


async def get_image(image_id: str) -> Optional[ImageAsset]:
    async with _connect() as db:
        async with db.execute(
            f"SELECT {_IMAGE_COLS} FROM images WHERE id = ?", (image_id,)
        ) as cur:
            row = await cur.fetchone()
    return _row_to_image(row) if row else None


async def get_item_images(item_id: str) -> list[ImageAsset]:
    """Images for an item, oldest (primary) first."""
    async with _connect() as db:
        async with db.execute(
            f"SELECT {_IMAGE_COLS} FROM images WHERE item_id = ? ORDER BY created_at, rowid",
            (item_id,),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_image(r) for r in rows]


async def set_image_status(image_id: str, status: str) -> None:
    async with _connect() as db:
        await db.execute(
            "UPDATE images SET analysis_status = ? WHERE id = ?", (status, image_id)
        )
        await db.commit()


async def save_image_analysis(image_id: str, status: str, analysis: dict) -> None:
    """Store the latest analysis outcome on an image (replaces any previous one)."""
    async with _connect() as db:
        await db.execute(
            """UPDATE images SET analysis_status = ?, ai_analysis = ?, analyzed_at = ?
               WHERE id = ?""",
            (status, json.dumps(analysis), _now(), image_id),
        )
        await db.commit()


async def delete_image(image_id: str) -> bool:
    async with _connect() as db:
        cur = await db.execute("DELETE FROM images WHERE id = ?", (image_id,))
        await db.commit()
        return cur.rowcount > 0


# ── Settings (editable via API) ───────────────────────────────────────────────

async def get_setting(key: str) -> Optional[str]:
    """Return DB-stored value for setting key, or None if not set."""
    async with _connect() as db:
        async with db.execute(
            "SELECT value FROM settings WHERE key = ?", (key,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_setting(key: str, value: str) -> None:
    """Insert or replace a setting in the DB."""
    async with _connect() as db:
        await db.execute(
            """INSERT INTO settings (key, value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                 value=excluded.value,
                 updated_at=excluded.updated_at""",
            (key, value, _now()),
        )
        await db.commit()


async def delete_setting(key: str) -> None:
    """Remove a setting from DB (falls back to .env / default)."""
    async with _connect() as db:
        await db.execute("DELETE FROM settings WHERE key = ?", (key,))
        await db.commit()


# ── API keys ──────────────────────────────────────────────────────────────────

async def get_api_key(key_name: str) -> Optional[str]:
    async with _connect() as db:
        async with db.execute(
            "SELECT key_value FROM api_keys WHERE key_name = ?", (key_name,)
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None


async def set_api_key(key_name: str, key_value: str) -> None:
    async with _connect() as db:
        await db.execute(
            """INSERT INTO api_keys (key_name, key_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(key_name) DO UPDATE SET
                 key_value=excluded.key_value,
                 updated_at=excluded.updated_at""",
            (key_name, key_value, _now()),
        )
        await db.commit()


async def delete_api_key(key_name: str) -> None:
    async with _connect() as db:
        await db.execute("DELETE FROM api_keys WHERE key_name = ?", (key_name,))
        await db.commit()


# ── Usage ledger (append-only) ────────────────────────────────────────────────

_USAGE_COLS = (
    "id, ts, operation, provider, model, prompt_tokens, completion_tokens, "
    "estimated, input_cost, output_cost, currency, item_id"
)


def _row_to_usage(r) -> UsageRecord:
    return UsageRecord(
        id=r[0], ts=r[1], operation=r[2], provider=r[3], model=r[4],
        prompt_tokens=r[5], completion_tokens=r[6], estimated=bool(r[7]),
        input_cost=r[8], output_cost=r[9], currency=r[10], item_id=r[11],
    )


async def append_usage(
    operation: str,
    provider: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    estimated: bool,
    input_cost: float,
    output_cost: float,
    currency: str = "USD",
    item_id: Optional[str] = None,
    ts: Optional[str] = None,
) -> UsageRecord:
    ts = ts or _now()
    async with _connect() as db:
        cur = await db.execute(
            """INSERT INTO usage_ledger
                 (ts, operation, provider, model, prompt_tokens, completion_tokens,
                  estimated, input_cost, output_cost, currency, item_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (ts, operation, provider, model, prompt_tokens, completion_tokens,
             int(estimated), input_cost, output_cost, currency, item_id),
        )
        await db.commit()
        row_id = cur.lastrowid
    return UsageRecord(
        id=row_id, ts=ts, operation=operation, provider=provider, model=model,
        prompt_tokens=prompt_tokens, completion_tokens=completion_tokens,
        estimated=estimated, input_cost=input_cost, output_cost=output_cost,
        currency=currency, item_id=item_id,
    )


async def get_usage_since(since: datetime) -> list[UsageRecord]:
    """Ledger entries with ts >= since, oldest first."""
    async with _connect() as db:
        async with db.execute(
            f"SELECT {_USAGE_COLS} FROM usage_ledger WHERE ts >= ? ORDER BY ts, id",
            (since.isoformat(),),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_usage(r) for r in rows]
