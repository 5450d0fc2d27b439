"""
reconcile.py — merge AI suggestions into a listing without destroying user input.

A field is only written when it still holds its "unset" sentinel:

  title        ""  or "New Item"
  description  ""
  category     ""  or "Miscellaneous"
  price        0

Anything else was typed by the user and is left alone. apply() does the
read-compute-write under a per-item lock so concurrent analyses of the same
item can't interleave between the read and the write. User edits don't take
that lock, so the write itself re-checks each sentinel in SQL
(database.fill_unset_fields).
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any

import database as db
import events
from analysis import AnalysisOutcome, AnalysisSuccess

logger = logging.getLogger(__name__)

_UNSET: dict[str, tuple[Any, ...]] = {
    "title":       ("", db.DEFAULT_TITLE),
    "description": ("",),
    "category":    ("", db.DEFAULT_CATEGORY),
    "price":       (0, 0.0),
}

_item_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def is_unset(field: str, value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        value = value.strip()
    return value in _UNSET[field]


def _suggestions(outcome: AnalysisSuccess) -> dict[str, Any]:
    return {
        "title":       outcome.title,
        "description": outcome.description,
        "category":    outcome.category,
        "price":       outcome.estimated_price,
    }


def reconcile(item: db.Item, outcome: AnalysisOutcome) -> dict[str, Any]:
    """
    Return the field updates to apply to *item* (possibly empty).
    Only unset fields are filled, and only with suggestions that are
    themselves meaningful (a sentinel never overwrites a sentinel).
    """
    if not isinstance(outcome, AnalysisSuccess):
        return {}
    updates: dict[str, Any] = {}
    for field, suggested in _suggestions(outcome).items():
        if not is_unset(field, getattr(item, field)):
            continue
        if is_unset(field, suggested):
            continue
        updates[field] = suggested
    return updates


def _lock_for(item_id: str) -> asyncio.Lock:
    lock = _item_locks.get(item_id)
    if lock is None:
        lock = asyncio.Lock()
        _item_locks[item_id] = lock
    return lock


async def apply(item_id: str, outcome: AnalysisOutcome) -> list[str]:
    """Reconcile against the current stored item and persist. Returns changed field names."""
    if not isinstance(outcome, AnalysisSuccess):
        return []

    lock = _lock_for(item_id)
    async with lock:
        item = await db.get_item(item_id)
        if item is None:
            logger.warning("reconcile: item %s vanished before update", item_id)
            return []
        updates = reconcile(item, outcome)
        if updates:
            written = await db.fill_unset_fields(item_id, updates)
            if len(written) < len(updates):
                logger.info("Item %s: user edited %s during reconcile, kept theirs",
                            item_id, ", ".join(f for f in updates if f not in written))
            updates = {f: updates[f] for f in written}

    if updates:
        events.record(
            "ITEM_RECONCILED",
            item_id=item_id,
            updated_fields=list(updates),
            ai_suggestions={
                "title":    outcome.title,
                "price":    outcome.estimated_price,
                "category": outcome.category,
            },
        )
        logger.info("Item %s: filled %s from AI suggestions", item_id, ", ".join(updates))
    return list(updates)
