"""
main.py — Single entry point.

Runs the image search web server in one asyncio event loop until SIGINT or
SIGTERM, then shuts it down cleanly.

Architecture:
  asyncio event loop
    └── aiohttp web server
          POST /api/image-search → ImageSearchHandler → inference provider
          GET  /health
"""
import asyncio
import logging
import signal
import sys
from pathlib import Path

import config

# Log file lives in DATA_DIR so a single Docker volume mount
# (./data:/app/data) captures it.
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(_data_dir / "image_search.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run() -> None:
    from image_search import ImageSearchConfig, ImageSearchHandler
    from server import build_web_app, start_server

    search_config = ImageSearchConfig.from_env()
    handler = ImageSearchHandler(search_config)
    if not handler.configured:
        # Keep serving: the endpoint answers "AI service not configured"
        logger.error(
            "No API key for provider %r — set %s_API_KEY. Image search will be unavailable.",
            search_config.provider, search_config.provider.upper(),
        )

    try:
        web_runner = await start_server(build_web_app(handler))
    except OSError as exc:
        logger.critical("FATAL: could not start web server: %s", exc, exc_info=True)
        raise

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

    logger.info("✅ Image search is running. Press Ctrl+C to stop.")

    # Block until signal received
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
