"""
Structured logging configuration.

Provides:
    • JSON lines (LOG_FORMAT=json, or production under "auto")
    • Coloured console lines tagged with the channel / ackId they concern
    • Scoped context carried in a ContextVar; each asyncio task gets its
      own copy, so a poller can bind its channel without leaking it into
      the submitting task
    • Delivery fields (channel_id, handle_id, attempt, ...) lifted from `extra=`

Usage:
    from hec_ack.core.logging_config import bind_log_context, get_logger, setup_logging

    setup_logging(settings)
    logger = get_logger(__name__)

    bind_log_context(channel_id=channel.id)          # task entry point
    logger.info("ackId issued", extra={"handle_id": 7})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hec_ack.core.config import Settings, settings as default_settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("hec_ack_log_context", default={})

# LogRecord attributes copied into JSON output when present
EXTRA_FIELDS = (
    "channel_id", "handle_id", "submission_id", "attempt",
    "pending", "duration_ms", "status_code", "endpoint",
)

# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def set_log_context(**kwargs: Any) -> None:
    """Replace the current context; no arguments clears it."""
    _log_context.set(kwargs)


def bind_log_context(**kwargs: Any) -> None:
    """Add keys to the current context (copy-on-write, task-local)."""
    _log_context.set({**_log_context.get(), **kwargs})


def get_log_context() -> Dict[str, Any]:
    return _log_context.get()


def _delivery_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}


# ── JSON ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line, ready for HEC or any log shipper."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        ctx = get_log_context()
        if ctx:
            entry["context"] = ctx
        entry.update(_delivery_fields(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}
        return json.dumps(entry, default=str)


# ── Console ──

class PrettyFormatter(logging.Formatter):
    """
    Coloured single-line output for development:

        12:00:01 INFO     [req 3f2a9c1e ch 1b2c3d4e #7] hec_ack.delivery.poller: ...
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _tag(record: logging.LogRecord) -> str:
        ctx = get_log_context()
        fields = {**ctx, **_delivery_fields(record)}
        parts = []
        if fields.get("request_id"):
            parts.append(f"req {str(fields['request_id'])[:8]}")
        if fields.get("channel_id"):
            parts.append(f"ch {str(fields['channel_id'])[:8]}")
        if fields.get("handle_id") is not None:
            parts.append(f"#{fields['handle_id']}")
        return f" [{' '.join(parts)}]" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{self._tag(record)} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def _use_json(config: Settings) -> bool:
    if config.LOG_FORMAT == "auto":
        return config.is_production
    return config.LOG_FORMAT == "json"


def setup_logging(config: Optional[Settings] = None) -> None:
    """Install one stdout handler on the root logger."""
    config = config or default_settings
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if _use_json(config) else PrettyFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
