"""Structured logging for key resolution.

Loggers returned by get_logger() accept keyword fields:

    logger = get_logger(__name__)
    logger.debug("Resolved encryption key", address=addr, fingerprint=fpr)

Records logged inside resolution_context() carry the id of that run,
so the lines of one resolve() call can be grouped in aggregated output.
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Iterator

resolution_id_var: ContextVar[str | None] = ContextVar("resolution_id", default=None)

# Substrings of field names whose values never reach a log line
SENSITIVE_FIELDS = {"passphrase", "password", "pin", "secret", "token", "private_key"}


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Mask sensitive values in a field dictionary, recursing into dicts."""

    def mask(key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return mask_sensitive(value)
        if not any(s in key.lower() for s in SENSITIVE_FIELDS):
            return value
        if isinstance(value, str) and len(value) > 8:
            return f"{value[:4]}...{value[-4:]}"
        return "[REDACTED]"

    return {key: mask(key, value) for key, value in data.items()}


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return mask_sensitive(getattr(record, "extra_fields", None) or {})


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        resolution_id = resolution_id_var.get()
        if resolution_id:
            entry["resolution_id"] = resolution_id
        entry.update(_record_fields(record))
        if record.levelno >= logging.WARNING:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Single-line format for terminals."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3],
            f"{record.levelname:<7}",
            f"[{record.name}]",
        ]
        resolution_id = resolution_id_var.get()
        if resolution_id:
            parts.append(f"[res={resolution_id[:8]}]")
        parts.append(record.getMessage())

        fields = _record_fields(record)
        if fields:
            parts.append("| " + " ".join(f"{k}={v}" for k, v in fields.items()))

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """Logger whose level methods take arbitrary keyword fields."""

    def _log(
        self,
        level: int,
        msg: Any,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        if fields:
            extra = {**(extra or {}), "extra_fields": fields}
        super()._log(level, msg, args, exc_info=exc_info, extra=extra,
                     stack_info=stack_info, stacklevel=stacklevel)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    previous = logging.getLoggerClass()
    logging.setLoggerClass(StructuredLogger)
    try:
        return logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous)


def setup_logging(json_output: bool | None = None, level: str | None = None) -> None:
    """Attach a stdout handler to the "mailkeys" logger.

    Both arguments default to the configured settings (log_json,
    log_level). Calling it again replaces the previous handler.
    """
    from mailkeys.config import get_settings

    settings = get_settings()
    json_output = settings.log_json if json_output is None else json_output
    level = level or settings.log_level

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_output else HumanFormatter())

    package_logger = logging.getLogger("mailkeys")
    package_logger.setLevel(level.upper())
    package_logger.handlers = [handler]


@contextmanager
def resolution_context(resolution_id: str | None = None) -> Iterator[str]:
    """Tag records logged inside the block with a resolution id."""
    token = resolution_id_var.set(resolution_id or uuid.uuid4().hex)
    try:
        yield resolution_id_var.get()
    finally:
        resolution_id_var.reset(token)


def log_operation(operation: str) -> Callable:
    """Log duration of the wrapped call; failures at ERROR, then re-raised."""

    def decorator(func: Callable) -> Callable:
        logger = get_logger(func.__module__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.monotonic()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{operation} failed",
                    operation=operation,
                    error=str(e),
                    duration_ms=round((time.monotonic() - start) * 1000, 2),
                )
                raise
            logger.debug(
                f"{operation} completed",
                operation=operation,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            return result

        return wrapper

    return decorator
