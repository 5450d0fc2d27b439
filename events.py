"""
events.py — structured event sink.

    import events
    events.record("UPLOAD_STEP", step="thumbnail_creation", duration_ms=12)

Each event is one JSON line on the "events" logger. main.py attaches a
daily-rotating file handler (DATA_DIR/events.log); without it the events go
wherever the root logger goes. This is an observability sink only — usage
totals are computed from the usage ledger, never from these lines.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

logger = logging.getLogger("events")


def record(event: str, **fields) -> None:
    """Emit one structured event. Never raises."""
    payload = {"event": event, "ts": datetime.now(timezone.utc).isoformat(), **fields}
    try:
        line = json.dumps(payload, default=str)
    except (TypeError, ValueError) as exc:
        logger.warning("events: could not serialise %s: %s", event, exc)
        return
    logger.info(line)
