"""
Structured logging configuration.

Provides:
    • JSON lines for production, one object per record, with the scoped
      context merged in at top level
    • Coloured console lines for development, tagged with the run id or
      request id and the region being processed
    • log_context(): nestable scope for request_id / run_id / region

Usage:
    from backend.app.core.logging_config import log_context, setup_logging

    setup_logging()
    with log_context(run_id="RUN-1A2B"):
        logger.info("Region skipped", extra={"region": "Chitwan"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from backend.app.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Alert-engine attributes passed through `extra=` and emitted when present
_EXTRA_FIELDS = (
    "run_id", "region", "alert_type", "recipient_id", "channel",
    "outbreak_id", "notification_id", "duration_ms", "status_code", "endpoint",
)


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Layer fields over the current context for the duration of the block."""
    merged = {**_log_context.get(), **fields}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def get_log_context() -> Dict[str, Any]:
    return _log_context.get()


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = dict(get_log_context())
    for key in _EXTRA_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            fields[key] = value
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per line for the log shipper."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_record_fields(record))
        if record.exc_info and record.exc_info[1]:
            entry["exc_type"] = type(record.exc_info[1]).__name__
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class PrettyFormatter(logging.Formatter):
    """Coloured single-line output for local runs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        fields = _record_fields(record)

        tags = []
        scope = fields.get("run_id") or fields.get("request_id")
        if scope:
            tags.append(str(scope)[:12])
        if fields.get("region"):
            tags.append(str(fields["region"]))
        if fields.get("channel"):
            tags.append(str(fields["channel"]))
        tag_str = f" [{' | '.join(tags)}]" if tags else ""

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{tag_str} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging() -> None:
    """Install the stdout handler on the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.is_production else PrettyFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.DATABASE_ECHO else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
