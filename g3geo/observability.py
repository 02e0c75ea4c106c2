"""
g3geo Structured Logging

JSON formatter and one-shot logging setup. Modules log through
`logging.getLogger(__name__)`; this only decides where the records go.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from .config import LoggingConfig


# Extra record attributes surfaced in JSON output when present
EXTRA_FIELDS = ("report_id", "report_type", "topic", "business_id", "error_kind")


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False, default=str)


def setup_logging(config: Optional[LoggingConfig] = None) -> logging.Handler:
    """Configure the root logger. Returns the installed handler."""
    config = config or LoggingConfig()
    handler = logging.StreamHandler()
    if config.json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(config.format))
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    return handler
