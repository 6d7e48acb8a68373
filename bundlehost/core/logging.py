"""Structured JSON logging for bundlehost."""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Dynamically derive standard LogRecord attributes at module import time
# This ensures future Python additions (like taskName) are automatically handled
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

ROOT_LOGGER = "bundlehost"


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Standard bundlehost fields first so they keep a stable position
        for field in ("bundle_id", "instance_id", "event_name", "operation"):
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add any extra fields passed via extra={}
        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            # Fallback to safe string representation if serialization fails
            return str(log_data)


def _setup_handler(logger: logging.Logger, level: int, fmt: str) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        if fmt == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        logger.addHandler(handler)
    logger.setLevel(level)


def configure_logging(level: int | str = logging.INFO, fmt: str = "json") -> logging.Logger:
    """Configure the package root logger.

    Child loggers (``bundlehost.processor``, ``bundlehost.loader`` ...) propagate
    to it, so one call sets up the whole library.

    Args:
        level: Logging level, as an int or a level name.
        fmt: ``"json"`` for structured output, ``"console"`` for plain text.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger = logging.getLogger(ROOT_LOGGER)
    _setup_handler(logger, level, fmt)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger in the bundlehost namespace.

    Args:
        name: Logger suffix, e.g. ``"processor"`` gives ``bundlehost.processor``.
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
