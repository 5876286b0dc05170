"""
Logging setup driven by the monitoring config.

``LOG_FORMAT=json`` renders one JSON object per record, including any values
passed through ``extra=``; ``text`` keeps a conventional single-line format.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask
from flask.logging import default_handler

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Render log records as JSON, merging structured ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def get_log_level(value: str | None) -> int:
    """Map a level name to its logging constant, defaulting to INFO."""
    level = getattr(logging, str(value or "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(app: Flask) -> None:
    """
    Configure console and rotating file handlers for the app and its packages.

    Safe to call repeatedly; ``dictConfig`` replaces the previous handlers.
    """
    level = get_log_level(app.config.get("LOG_LEVEL"))
    formatter = "json" if str(app.config.get("LOG_FORMAT", "json")).lower() == "json" else "text"

    handlers: dict[str, dict] = {}
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": formatter,
            "stream": "ext://sys.stdout",
        }
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = Path(app.config.get("LOG_DIR", "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": formatter,
            "filename": str(log_dir / "chatsync.log"),
            "maxBytes": int(app.config.get("LOG_FILE_MAX_BYTES", 10_485_760)),
            "backupCount": int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
        }
    if not handlers:
        handlers["null"] = {"class": "logging.NullHandler"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JSONFormatter},
                "text": {"format": TEXT_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": handlers,
            "root": {"level": level, "handlers": list(handlers)},
            "loggers": {
                app.logger.name: {"level": level},
                "chatsync": {"level": level},
            },
        }
    )
    app.logger.removeHandler(default_handler)
    app.logger.setLevel(level)
