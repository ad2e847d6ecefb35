"""Logging configuration for b2session."""

import contextvars
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict

# Context variables stamped onto every record emitted inside an upload
bucket_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("bucket_id", default=None)
file_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar("file_id", default=None)

# Attributes every LogRecord carries; anything else came from extra={...}
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName",
    "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "getMessage", "taskName",
})

# Extra keys whose values must never reach a log sink
SENSITIVE_KEYS = frozenset({
    "authorization",
    "authorization_token",
    "application_key",
    "key",
    "customer_key",
})

REDACTED = "***"


def _exception_fields(exc_info) -> Dict[str, str]:
    exc_type, exc, tb = exc_info
    return {
        "exception": "".join(traceback.format_exception(exc_type, exc, tb)),
        "exception_type": exc_type.__name__ if exc_type else "Unknown",
        "exception_message": str(exc) if exc else "",
    }


class JsonLogFormatter(logging.Formatter):
    """JSON formatter for structured log ingestion.

    Each record becomes one line of JSON carrying the upload context
    variables, every ``extra`` field (secret-bearing ones redacted) and
    the formatted traceback if there is one.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "severity": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name, context in (("bucket_id", bucket_id_context), ("file_id", file_id_context)):
            value = context.get()
            if value:
                log_entry[name] = value

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = REDACTED if key in SENSITIVE_KEYS else value

        if record.exc_info:
            log_entry.update(_exception_fields(record.exc_info))

        return json.dumps(log_entry, default=str, ensure_ascii=False)


def setup_logging(level: str | None = None) -> None:
    """Configure structured logging for an application embedding the client.

    The library never calls this itself. For non-local environments a JSON
    formatter is installed, for local development a simple text format.

    Args:
        level: Log level name. Defaults to DEBUG locally and to
            ``settings.LOG_LEVEL`` elsewhere.
    """
    from b2session.core.config import settings

    if level is None:
        level = "DEBUG" if settings.ENV == "local" else settings.LOG_LEVEL

    handler = logging.StreamHandler(sys.stdout)

    if settings.ENV == "local":
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = JsonLogFormatter()

    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # httpx logs every request at INFO, which includes upload URLs
    for logger_name in ["httpx", "httpcore"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
