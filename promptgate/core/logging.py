"""Centralized logging configuration.

Gateway log calls pass ``extra=log_extra(request, ...)`` so every record of
a request carries the same correlation fields; both formatters render them.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from promptgate.core.config import settings

# Attributes copied from a record's ``extra`` into the log output
CONTEXT_FIELDS = ("request_id", "backend", "model", "attempt", "stop_reason", "exit_code", "status_code")


def log_extra(request: Any = None, **fields: Any) -> dict[str, Any]:
    """``extra=`` mapping for a GatewayRequest plus any additional fields."""
    extra: dict[str, Any] = {}
    if request is not None:
        extra["request_id"] = request.request_id
        extra["backend"] = request.backend.value
        if request.model:
            extra["model"] = request.model
    extra.update({key: value for key, value in fields.items() if value is not None})
    return extra


def _context_of(record: logging.LogRecord) -> dict[str, Any]:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, None) is not None}


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        log_data.update(_context_of(record))
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable formatter that appends the request context, if any."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context_of(record)
        if not context:
            return line
        return line + " | " + " ".join(f"{key}={value}" for key, value in context.items())


def setup_logging() -> None:
    """Configure logging for the entire application."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    # stdout is reserved for streamed completion text in run_gateway.py
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)

    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ContextFormatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING if not settings.app_debug else level)
