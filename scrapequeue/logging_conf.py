"""Logging setup: stdout, rotating file and optional Better Stack shipping."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from logtail import LogtailHandler

from scrapequeue import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(source)s] %(message)s"


class WorkItemContextFilter(logging.Filter):
    """Gives every record a `source` attribute so the format works without extra=."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "source"):
            record.source = "-"
        return True


def _level(name: Optional[str]) -> int:
    return getattr(logging, (name or "INFO").upper(), logging.INFO)


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = "scrapequeue.log") -> logging.Logger:
    """Configure the root logger once and return the package logger."""
    root = logging.getLogger()
    root.setLevel(_level(level or settings.LOG_LEVEL))
    root.handlers = []

    formatter = logging.Formatter(LOG_FORMAT)
    context = WorkItemContextFilter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(root.level)
    stdout_handler.addFilter(context)
    stdout_handler.setFormatter(formatter)
    root.addHandler(stdout_handler)

    if log_file:
        rotating = RotatingFileHandler(settings.LOGS_DIR / log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        rotating.setLevel(logging.INFO)
        rotating.addFilter(context)
        rotating.setFormatter(formatter)
        root.addHandler(rotating)

    if settings.BETTERSTACK_SOURCE_TOKEN:
        options = {"source_token": settings.BETTERSTACK_SOURCE_TOKEN}
        if settings.BETTERSTACK_INGEST_HOST:
            options["host"] = settings.BETTERSTACK_INGEST_HOST
        try:
            shipping = LogtailHandler(**options)
        except Exception as e:
            root.warning(f"Better Stack handler unavailable, shipping disabled: {e}")
        else:
            shipping.setLevel(logging.DEBUG)
            shipping.addFilter(context)
            root.addHandler(shipping)
            root.info(f"Better Stack shipping enabled ({settings.BETTERSTACK_INGEST_HOST or 'default ingest host'})")

    # Chatty libraries
    for name in ("urllib3", "werkzeug", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)
    return logging.getLogger("scrapequeue")


logger = setup_logging()
