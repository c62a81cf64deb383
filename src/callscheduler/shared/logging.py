"""
Structured logging.

Every record is one JSON object carrying the `extra=` fields passed at the
call site. Webhook handlers bind the provider CallSid with
`correlation_scope` so all records of one callback share a correlation id.
`LOG_FORMAT=text` switches to a single-line human format for local runs.
"""

import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from callscheduler.config import get_settings

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord has; anything else came from `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "python_multipart", "uvicorn.access")


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class StructuredFormatter(logging.Formatter):
    """JSON formatter that serializes `extra=...` fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        for key, value in _extra_fields(record).items():
            log_data[f"extra_{key}" if key in log_data else key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """`time level logger: message key=value ...` for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{self.formatTime(record)} {record.levelname:<7} {record.name}: {record.getMessage()}"
        fields = _extra_fields(record)
        correlation_id = correlation_id_var.get()
        if correlation_id:
            fields = {"correlation_id": correlation_id, **fields}
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _formatter(log_format: str) -> logging.Formatter:
    return TextFormatter() if log_format == "text" else StructuredFormatter()


@contextmanager
def correlation_scope(correlation_id: str | None) -> Iterator[None]:
    """Bind `correlation_id` to every record logged inside the block."""
    token = correlation_id_var.set(correlation_id or None)
    try:
        yield
    finally:
        correlation_id_var.reset(token)


def get_logger(name: str) -> logging.Logger:
    """Module logger. Records propagate to the root handler set by `setup_logging`."""
    return logging.getLogger(name)


def setup_logging() -> None:
    """Install the configured formatter on the root logger."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter(settings.log_format))

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level.upper())
    root_logger.handlers = [handler]

    # SQL echo is opt-in through SQLALCHEMY_LOG_LEVEL=INFO/DEBUG
    sqlalchemy_level = os.getenv("SQLALCHEMY_LOG_LEVEL", "").strip().upper() or "WARNING"
    logging.getLogger("sqlalchemy.engine").setLevel(sqlalchemy_level)
    logging.getLogger("sqlalchemy.pool").setLevel(sqlalchemy_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
