"""Centralized logging configuration.

Gateway and assistant code attach request context through `extra=`
(`request_id`, `provider`, `conversation_id`); the JSON formatter lifts those
keys into the structured record.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from app.core.config import settings

CONTEXT_FIELDS = ("request_id", "provider", "conversation_id")

# Third-party loggers that flood INFO with per-request lines
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

PLAIN_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _formatter() -> logging.Formatter:
    if settings.log_json:
        return JSONFormatter()
    return logging.Formatter(PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging() -> None:
    """Configure logging for the entire application."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.DEBUG if settings.app_debug else level)
    handler.setFormatter(_formatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # Routing decisions are logged at DEBUG
    logging.getLogger("app.gateway").setLevel(logging.DEBUG if settings.app_debug else level)
