"""
Logging configuration for the signed-URL API service.
"""

import json
import logging
import os
import sys
from datetime import UTC, datetime
from typing import Any, Dict

_env = os.environ.get("APP_ENV", "prod")
_level_override = os.environ.get("SIGNED_URL_LOG_LEVEL", "").upper()

if _level_override in ("DEBUG", "INFO", "WARNING", "ERROR"):
    LOG_LEVEL = getattr(logging, _level_override)
elif _env == "stg":
    LOG_LEVEL = logging.DEBUG
else:
    LOG_LEVEL = logging.INFO

# Optional context attached via `extra={...}` (request middleware and cache service).
_EXTRA_FIELDS = ("client", "path", "method", "status", "cache_key", "tier", "request_id")


class JSONLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "duration"):
            log_obj["duration_ms"] = round(record.duration * 1000, 2)  # type: ignore
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_obj[name] = getattr(record, name)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def setup_logging() -> None:
    """Configure JSON formatted logging."""
    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVEL)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(JSONLogFormatter())

    # Replace existing handlers with the JSON one
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    root_logger.addHandler(console_handler)

    # Route uvicorn loggers through the root JSON handler
    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        logger = logging.getLogger(logger_name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True

    logging.getLogger("signed_urls").setLevel(LOG_LEVEL)
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(max(LOG_LEVEL, logging.INFO))
