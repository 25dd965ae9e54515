"""
Logging configuration

Two output formats, chosen with LOG_FORMAT:
- text: one human-readable line per record, with refresh context
  (table, audit entry) appended when a record carries it
- json: one JSON object per line; fields passed through ``extra=`` are
  emitted as top-level keys
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import Settings, settings as default_settings

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRIBUTES = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "apscheduler", "google.auth")


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Structured fields attached to a record via ``extra=``."""
    return {
        key: value for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
    }


class RefreshTextFormatter(logging.Formatter):
    """``time | level | logger | message [table=... audit=...]``"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        tags = []
        if context.get("table_name"):
            tags.append(f"table={context['table_name']}")
        if context.get("audit_log_id") is not None:
            tags.append(f"audit={context['audit_log_id']}")
        if context.get("request_id"):
            tags.append(f"request={context['request_id']}")
        return f"{line} [{' '.join(tags)}]" if tags else line


class RefreshJSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(record_context(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def build_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return RefreshJSONFormatter()
    return RefreshTextFormatter()


def setup_logging(settings: Optional[Settings] = None):
    """Configure the root logger; safe to call more than once."""
    settings = settings or default_settings
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(settings.LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(log_level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured at {settings.LOG_LEVEL} level ({settings.LOG_FORMAT} format)"
    )
