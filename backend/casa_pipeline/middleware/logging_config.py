"""
Structured JSON logging configuration.

Every log line carries timestamp, level, logger, message and request_id,
plus the pipeline fields (volunteer_id, action, outcome) when a record has
them attached through `extra=`.
"""

import json
import logging
from datetime import datetime, timezone

from casa_pipeline.middleware.request_context import get_request_id

_EXTRA_FIELDS = ("duration_ms", "volunteer_id", "action", "outcome", "organization_id")


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": get_request_id(),
        }

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_json_logging(log_level: str = "INFO"):
    """Replace the root logger's formatter with JSON output."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
