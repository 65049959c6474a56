"""
Logging setup shared by the API and the orchestrator.

Provides:
- JSON structured output (one object per line) for log shipping
- Plain text output for local runs (LOG_FORMAT=text)
- Idempotent setup, safe to call from every entry point
"""

import json
import logging
import sys
from datetime import datetime
from typing import Optional

from track_orchestrator.core.config import settings

# Extra record attributes copied into the JSON payload when present
_EXTRA_FIELDS = ("job_id", "unit_id", "item_id", "event_type", "duration_ms", "error")

_configured = False


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for machine parsing."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field_name in _EXTRA_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Configure the root logger once.

    Args:
        level: Log level name (default: settings.LOG_LEVEL)
        fmt: "json" or "text" (default: settings.LOG_FORMAT)
    """
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    if (fmt or settings.LOG_FORMAT).lower() == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel((level or settings.LOG_LEVEL).upper())

    # Uvicorn access logs are noisy under polling clients
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    _configured = True
