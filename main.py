"""
main.py — Single entry point.

Runs the garage sale API in one asyncio event loop — no threads (apart from
Pillow work handed to asyncio.to_thread), no subprocesses.

Architecture:
  asyncio event loop
    └── aiohttp web server  (items, uploads, AI analysis, settings)
         ├── aiosqlite       (items, images, settings, keys, usage ledger)
         └── provider SDKs   (OpenAI, Anthropic, Gemini, Groq, OpenRouter)
"""
import asyncio
import logging
import logging.handlers
import signal
import sys

import config

# Log files live in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
config.DATA_DIR.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(config.DATA_DIR / "garage_sale.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

# Structured events: one JSON object per line, rotated daily
_events_handler = logging.handlers.TimedRotatingFileHandler(
    str(config.DATA_DIR / "events.log"), when="midnight", backupCount=14, encoding="utf-8",
)
_events_handler.setFormatter(logging.Formatter("%(message)s"))
_events_logger = logging.getLogger("events")
_events_logger.addHandler(_events_handler)
_events_logger.setLevel(logging.INFO)
_events_logger.propagate = False

logger = logging.getLogger(__name__)


async def run() -> None:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as _db
    try:
        await _db.init_db()
        logger.info("Database ready at %s", _db.DB_PATH)
        await config.apply_db_settings()
        logger.info("DB settings applied.")
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    from providers import manager
    cfg = await manager.load_config()
    if cfg is None:
        logger.warning("No AI provider configured — uploads will be stored without analysis.")
    else:
        logger.info("AI provider: %s/%s", cfg.provider, cfg.model)

    from server import start_server
    web_runner = await start_server()

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    logger.info("✅ Garage sale organizer is running. Press Ctrl+C to stop.")
    try:
        await stop_event.wait()
    except (KeyboardInterrupt, SystemExit):
        pass

    logger.info("Shutting down…")
    await web_runner.cleanup()
    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
