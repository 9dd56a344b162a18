"""Structured JSON logging for OpsLedger."""

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

# Fields promoted to the top of every log line when present
_LEDGER_FIELDS = ("idempotency_key", "build_id", "sequence", "attempt", "position")


class JSONFormatter(logging.Formatter):
    """JSON formatter with UTC ISO8601 timestamps."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _LEDGER_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        # Add any extra fields passed via extra={}
        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except Exception:
            # Fallback to safe string representation if serialization fails
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int) -> None:
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def get_logger(name: str = "opsledger", level: int = logging.INFO) -> logging.Logger:
    """Get a logger with JSON formatting.

    Child loggers (``opsledger.writer`` and friends) propagate to the
    ``opsledger`` root, which owns the single JSON handler.

    Args:
        name: The logger name. Defaults to "opsledger".
        level: The logging level to set. Defaults to logging.INFO.
    """
    root = logging.getLogger("opsledger")
    _setup_json_handler(root, level)
    if name == "opsledger":
        return root
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
