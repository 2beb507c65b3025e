"""
Structured logging configuration.

Provides:
    • JSON logs in production, one object per line
    • Coloured console logs in development, tagged with the alert /
      identity / subscription the line is about
    • Request-scoped context set by the request middleware

Usage:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Alert %s created", alert.id, extra={"alert_id": alert.id})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

# Extra record attributes promoted into the JSON payload
_EXTRA_KEYS = (
    "alert_id", "identity_id", "subscription_id", "sequence",
    "active_count", "duration_ms", "status_code",
)

# Short console tags for the ids above
_PRETTY_TAGS = (
    ("alert_id", "alert"),
    ("identity_id", "identity"),
    ("subscription_id", "sub"),
    ("sequence", "seq"),
)


def set_request_context(**kwargs: Any) -> None:
    """Replace the request context; call with no arguments to clear it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class JSONFormatter(logging.Formatter):
    """Machine-parseable JSON log output for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }

        ctx = get_request_context()
        if ctx:
            log_entry["context"] = ctx

        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(log_entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured human-readable format for local development."""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ts = self.formatTime(record, "%H:%M:%S")

        request_id = get_request_context().get("request_id")
        prefix = f" [{request_id[:8]}]" if request_id else ""
        tags = " ".join(
            f"{tag}={getattr(record, key)}"
            for key, tag in _PRETTY_TAGS
            if hasattr(record, key)
        )

        formatted = (
            f"{color}{ts} {record.levelname:8s}{self.RESET}"
            f"{prefix} {record.name}: {record.getMessage()}"
        )
        if tags:
            formatted += f"  ({tags})"
        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return formatted


def setup_logging(json_logs: Optional[bool] = None) -> None:
    """
    Install one stdout handler on the root logger.

    ``json_logs`` defaults to on in production and off elsewhere.
    """
    if json_logs is None:
        json_logs = settings.is_production

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_logs else PrettyFormatter())
    root.addHandler(handler)

    # Per-request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
