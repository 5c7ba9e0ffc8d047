"""Spendboard - Structured JSON Logging.

Sync context (workspace, sync run, account, endpoint) travels on each record
as `extra=` fields. `bind()` pins the run-level fields once so the orchestrator
does not repeat them on every call.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from spendboard.config import settings

CONTEXT_FIELDS = (
    "workspace_id",
    "sync_run_id",
    "account_id",
    "endpoint",
    "duration_ms",
    "status_code",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per line; context fields set to None are left out."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextAdapter(logging.LoggerAdapter):
    """Merges bound context under any per-call `extra=`; per-call keys win."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def bind(logger: logging.Logger, **context: Any) -> ContextAdapter:
    return ContextAdapter(logger, context)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with structured JSON handler."""
    logger = logging.getLogger(f"spendboard.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
