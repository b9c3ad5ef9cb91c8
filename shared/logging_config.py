"""
Structured JSON logging.

One JSON object per line on stderr. Identifiers passed through ``extra``
(contact, appointment, calendar, request path) become top-level keys so log
search can filter a single lead's timeline:

    logger.info("Hold released", extra={"contact_id": contact_id})
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from shared.config import get_settings

EXTRA_FIELDS = ("contact_id", "appointment_id", "calendar_id", "request_path")

# Chatty client libraries, capped at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "openai")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            {name: getattr(record, name) for name in EXTRA_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # default=str: extras may carry datetimes or ids of any type
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger at LOG_LEVEL (idempotent)."""
    level_name = get_settings().LOG_LEVEL.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(f"Logging configured | level={logging.getLevelName(level)} | format=json")
