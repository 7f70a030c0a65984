"""
Logging setup for cdcat.

Library modules log through ``logging.getLogger(__name__)`` and never configure
handlers themselves; applications (and ``scripts/run_cdcat.py``) call
``setup_logging()`` once. With ``LOG_FORMAT=json`` every record is one JSON
object carrying the examinee being simulated, when there is one.
"""
import json
import logging
import logging.config
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cdcat.core.config import settings

# Examinee currently being processed by this worker thread. Set by the batch
# runner so every log entry emitted during a session can be correlated.
examinee_context: ContextVar[Optional[int]] = ContextVar("examinee", default=None)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for machine-readable logs.

    Produces one JSON object per record with consistent fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        log_entry: Dict[str, Any] = {
            "timestamp": timestamp.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        examinee = examinee_context.get()
        if examinee is not None:
            log_entry["examinee"] = examinee

        # Structured fields passed through ``extra=``
        if hasattr(record, "step"):
            log_entry["step"] = record.step
        if hasattr(record, "item"):
            log_entry["item"] = record.item
        if hasattr(record, "item_select"):
            log_entry["item_select"] = record.item_select

        if record.levelno >= logging.ERROR:
            log_entry["source"] = f"{record.pathname}:{record.lineno}"

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
) -> None:
    """
    Configure logging for the ``cdcat`` package.

    Args:
        level: Log level name. Defaults to ``settings.LOG_LEVEL``.
        log_format: "text" or "json". Defaults to ``settings.LOG_FORMAT``.
    """
    log_level_name = level or settings.LOG_LEVEL
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    use_json = (log_format or settings.LOG_FORMAT) == "json"

    logging_config: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {
                "()": JSONFormatter,
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "json" if use_json else "default",
                "stream": sys.stderr,
            },
        },
        "root": {
            "level": logging.WARNING,
            "handlers": ["console"],
        },
        "loggers": {
            "cdcat": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
    }

    logging.config.dictConfig(logging_config)

