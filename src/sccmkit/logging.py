"""
sccmkit Structured Logging Configuration.

Provides consistent logging across all sccmkit components with:
- Structured JSON output for unattended runs
- Human-readable output for operator consoles
- Message ID correlation
- Sensitive data filtering

Usage:
    from sccmkit.logging import get_logger, configure_logging

    # At startup
    configure_logging(level="INFO", json_format=False)

    # In modules
    logger = get_logger(__name__)
    logger.info("Sending registration", extra={"request_id": "{5D2A...}"})

Decrypted secrets are never passed to loggers; they are written to the
operator's output sink only.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Sensitive field patterns to filter from logs
SENSITIVE_PATTERNS = frozenset(
    {
        "password",
        "secret",
        "token",
        "plaintext",
        "private_key",
        "privatekey",
        "masterkey",
        "master_key",
        "session_key",
        "bootkey",
        "auth",
        "credential",
        "certificate_blob",
    }
)

_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _is_sensitive_key(key: str) -> bool:
    """Check if a key name suggests sensitive data."""
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SENSITIVE_PATTERNS)


def _filter_sensitive(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively filter sensitive values from a dictionary."""
    if not isinstance(data, dict):
        return data

    filtered = {}
    for key, value in data.items():
        if _is_sensitive_key(key):
            filtered[key] = "[REDACTED]"
        elif isinstance(value, dict):
            filtered[key] = _filter_sensitive(value)
        elif isinstance(value, list):
            filtered[key] = [_filter_sensitive(item) if isinstance(item, dict) else item for item in value]
        else:
            filtered[key] = value
    return filtered


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_data["location"] = {
                "file": os.path.basename(record.pathname),
                "line": record.lineno,
                "function": record.funcName,
            }

        # Add extra fields (filtered for sensitive data)
        extra_fields = dict(LogContext.get_current())
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if isinstance(value, dict):
                extra_fields[key] = _filter_sensitive(value)
            elif not _is_sensitive_key(key):
                extra_fields[key] = value
            else:
                extra_fields[key] = "[REDACTED]"

        if extra_fields:
            log_data["extra"] = extra_fields

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter for operator consoles."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.use_color else ""
        reset = self.RESET if color else ""

        timestamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        level = f"{color}{record.levelname:8}{reset}"
        name = record.name.split(".")[-1][:15].ljust(15)
        message = record.getMessage()

        request_id = getattr(record, "request_id", None) or LogContext.get_current().get("request_id")
        if request_id:
            message = f"[{str(request_id).strip('{}')[:8]}] {message}"

        formatted = f"{timestamp} {level} {name} {message}"

        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)

        return formatted


def configure_logging(
    level: str = "INFO",
    json_format: Optional[bool] = None,
    stream: Any = None,
) -> None:
    """
    Configure logging for sccmkit components.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON output. Default: SCCM_LOG_FORMAT == "json"
        stream: Output stream. Default: sys.stderr
    """
    if json_format is None:
        json_format = os.environ.get("SCCM_LOG_FORMAT", "text").lower() == "json"

    root_logger = logging.getLogger("sccmkit")
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    target = stream or sys.stderr
    handler = logging.StreamHandler(target)

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(DevelopmentFormatter(use_color=getattr(target, "isatty", lambda: False)()))

    root_logger.addHandler(handler)

    # Don't propagate to root logger
    root_logger.propagate = False


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for an sccmkit module.

    Usage:
        logger = get_logger(__name__)
        logger.info("Message", extra={"request_id": "123"})
    """
    if not name.startswith("sccmkit"):
        name = f"sccmkit.{name}"
    return logging.getLogger(name)


class LogContext:
    """
    Context manager for adding correlation IDs to logs.

    Usage:
        with LogContext(request_id=message.message_id):
            logger.info("Sending")  # Includes request_id
    """

    _current: Optional["LogContext"] = None

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._previous: Optional["LogContext"] = None

    def __enter__(self) -> "LogContext":
        self._previous = LogContext._current
        LogContext._current = self
        return self

    def __exit__(self, *args: Any) -> None:
        LogContext._current = self._previous

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Get the current logging context."""
        if cls._current:
            return cls._current.context.copy()
        return {}


# Initialize with default config when module is imported
# (can be reconfigured later with configure_logging())
if not logging.getLogger("sccmkit").handlers:
    configure_logging(level=os.environ.get("SCCM_LOG_LEVEL", "INFO"))


__all__ = [
    "configure_logging",
    "get_logger",
    "LogContext",
    "StructuredFormatter",
    "DevelopmentFormatter",
]
