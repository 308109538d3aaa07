"""Structured JSON logging for outrelay.

Every outrelay logger writes one JSON object per line. Levels are set once
on the parent ``outrelay`` logger (``configure_logging``) and inherited by
the component loggers, which only carry the JSON handler.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

ROOT_LOGGER = "outrelay"

# Attributes every LogRecord has; anything else arrived through extra={}
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
) | {"message", "asctime"}

# Emitted first and in this order when present
_OUTBOX_FIELDS = ("event_id", "kind", "tenant_id", "worker_id", "handler")


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line with a UTC ISO8601 timestamp."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (name, getattr(record, name)) for name in _OUTBOX_FIELDS if hasattr(record, name)
        )
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_LOGRECORD_KEYS and key not in entry
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(entry, default=str)
        except (TypeError, ValueError):
            return str(entry)


def _setup_json_handler(logger: logging.Logger) -> None:
    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.propagate = False


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Set the level shared by every outrelay logger and return the parent."""
    parent = logging.getLogger(ROOT_LOGGER)
    parent.setLevel(level.upper() if isinstance(level, str) else level)
    return parent


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a JSON-formatted logger that inherits its level from ``outrelay``."""
    logger = logging.getLogger(name)
    _setup_json_handler(logger)
    return logger


def configure_dispatcher_logger() -> logging.Logger:
    return get_logger(f"{ROOT_LOGGER}.dispatcher")


# Component loggers are NOTSET; without this they would inherit WARNING from root
if logging.getLogger(ROOT_LOGGER).level == logging.NOTSET:
    configure_logging(logging.INFO)
