"""Entry point for the Base memecoin trading bot."""

import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from api.control_server import ControlApiServer
from config import APP_LOG_FILE, AUDIT_FALLBACK_LOG_FILE, LOG_DIR, LOG_LEVEL, load_settings
from database import db
from trading.context import build_context
from trading.controller import TradingController


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Audit entries that could not reach the database are kept on disk.
    audit_handler = RotatingFileHandler(AUDIT_FALLBACK_LOG_FILE, maxBytes=5_000_000, backupCount=10, encoding="utf-8")
    audit_handler.setFormatter(formatter)
    audit_logger = logging.getLogger("audit_fallback")
    audit_logger.handlers.clear()
    audit_logger.addHandler(audit_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


async def run() -> None:
    settings = load_settings()
    ctx = build_context(settings, store=db)
    controller = TradingController(ctx)
    api = ControlApiServer(controller, settings.api)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt.
            pass

    await controller.start()
    await api.start()
    logger.info(
        "BOT_READY mode=%s api=%s:%s run_tag=%s",
        "paper" if settings.paper_mode else "live",
        settings.api.host,
        settings.api.port,
        config.RUN_TAG or "-",
    )
    try:
        await stop_event.wait()
    finally:
        await api.stop()
        if controller.running:
            await controller.stop()
        await ctx.close()
        logger.info("BOT_SHUTDOWN")


def main() -> None:
    configure_logging()
    db.init_db()
    asyncio.run(run())


if __name__ == "__main__":
    main()
