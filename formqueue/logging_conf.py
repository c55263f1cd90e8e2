"""Logging setup: console, rotating file and optional Better Stack shipping."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from logtail import LogtailHandler

from formqueue import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _betterstack_handler(formatter: logging.Formatter):
    """Build the Better Stack handler, or None when it is not configured."""
    if not settings.BETTERSTACK_SOURCE_TOKEN:
        return None

    handler_kwargs = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
    if settings.BETTERSTACK_INGEST_HOST:
        handler_kwargs["host"] = settings.BETTERSTACK_INGEST_HOST
    handler = LogtailHandler(**handler_kwargs)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> logging.Logger:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Queue activity is kept on disk so failed deliveries can be traced after a restart
    file_handler = RotatingFileHandler(settings.LOGS_DIR / "formqueue.log", maxBytes=10 * 1024 * 1024, backupCount=5)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    try:
        betterstack_handler = _betterstack_handler(formatter)
        if betterstack_handler is not None:
            root_logger.addHandler(betterstack_handler)
            host_info = settings.BETTERSTACK_INGEST_HOST or "default (in.logs.betterstack.com)"
            root_logger.info(f"BetterStack logging enabled (host: {host_info})")
    except Exception as e:
        root_logger.warning(f"Failed to initialize BetterStack logging: {e}")

    # requests/urllib3 log every connection attempt, which is noisy while offline
    for noisy in ("urllib3", "requests"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logging.getLogger("formqueue")


logger = setup_logging()
