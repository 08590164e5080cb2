"""
Structured logging configuration.

Production writes one JSON object per line; development gets a coloured
single-line format. Both pick up the request-scoped context set by
RequestLoggingMiddleware (request id, endpoint, emergency id) and by the
auth dependency (caller id), so a dispatch log line can be traced back to
the request and the emergency that caused it.

Usage:
    from guardian.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Emergency created", extra={"emergency_id": eid, "user_id": uid})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from guardian.app.core.config import settings

_log_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("log_context", default=None)

# Record attributes passed via ``extra=`` that are worth keeping
STRUCTURED_FIELDS = (
    "emergency_id", "user_id", "channel", "event", "recipient_count",
    "duration_ms", "status_code", "endpoint",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "urllib3", "aiosqlite")


def set_request_context(**fields: Any) -> None:
    """Replace the context for the current request (middleware entry point)."""
    _log_context.set({k: v for k, v in fields.items() if v is not None})


def bind_context(**fields: Any) -> None:
    """Add fields to the current context, e.g. the caller once authenticated."""
    current = dict(_log_context.get() or {})
    current.update({k: v for k, v in fields.items() if v is not None})
    _log_context.set(current)


def clear_request_context() -> None:
    _log_context.set(None)


def get_request_context() -> Dict[str, Any]:
    return _log_context.get() or {}


def _structured_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in STRUCTURED_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        # Explicit extras win over the ambient request context
        entry.update(get_request_context())
        entry.update(_structured_extras(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exc_type"] = type(exc).__name__
            entry["exc"] = str(exc)

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Coloured console output with the emergency / caller tags inline."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        fields = {**get_request_context(), **_structured_extras(record)}

        tags = []
        if fields.get("request_id"):
            tags.append(str(fields["request_id"])[:8])
        if fields.get("emergency_id"):
            tags.append(f"em={str(fields['emergency_id'])[:8]}")
        if fields.get("user_id"):
            tags.append(f"user={fields['user_id']}")
        tag_str = f" {self.DIM}[{' '.join(tags)}]{self.RESET}" if tags else ""

        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{color}{record.levelname:<8}{self.RESET}"
            f"{tag_str} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n    {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
