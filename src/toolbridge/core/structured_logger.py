"""
Structured Logging with Trace IDs
=================================

Provides JSON-structured logging with request tracing capabilities.
A tool call can be followed from the manager through the sandbox and the
session down to the transport by its trace id.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from toolbridge.config.settings import LoggingConfig

# Context variable to store trace_id for current call
_trace_id_var: ContextVar[str | None] = ContextVar('trace_id', default=None)

_SECRET_PATTERNS = re.compile(
    r"(xoxb-[A-Za-z0-9-]+|sk-[A-Za-z0-9]+|ghp_[A-Za-z0-9]+|"
    r"Bearer\s+[A-Za-z0-9._~+/=-]+|api[_-]?key[\"']?\s*[:=]\s*[\"']?[A-Za-z0-9._-]{8,})",
    re.IGNORECASE,
)


def _redact_secrets(text: str) -> str:
    return _SECRET_PATTERNS.sub("[REDACTED]", text)


class StructuredLogger:
    """
    Structured logger that outputs JSON logs with trace IDs

    Example output:
    {
        "timestamp": "2026-10-18T10:30:45.123Z",
        "level": "INFO",
        "trace_id": "abc123",
        "component": "ServerManager",
        "message": "Server started",
        "server": "filesystem",
        "tools": 11
    }
    """

    def __init__(self, component: str, logger: logging.Logger | None = None) -> None:
        """
        Initialize structured logger

        Args:
            component: Component name (e.g., 'ServerManager', 'Sandbox')
            logger: Optional existing logger (creates new if not provided)
        """
        self.component = component
        self.logger = logger or logging.getLogger(f"toolbridge.{component}")

    def _log(self, level: str, message: str, *args, **kwargs) -> None:
        """
        Internal logging method

        Args:
            level: Log level ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
            message: Log message, %-formatted with args
            **kwargs: Additional structured fields
        """
        log_method = getattr(self.logger, level.lower())
        if not self.logger.isEnabledFor(getattr(logging, level)):
            return

        exc_info = kwargs.pop('exc_info', None)
        if args:
            try:
                message = message % args
            except (TypeError, ValueError):
                message = f"{message} {args!r}"

        log_entry = {
            'timestamp': datetime.now(tz=UTC).isoformat(),
            'level': level,
            'component': self.component,
            'message': _redact_secrets(message),
        }

        trace_id = _trace_id_var.get()
        if trace_id:
            log_entry['trace_id'] = trace_id

        # Add additional fields, redacting string values
        for k, v in kwargs.items():
            log_entry[k] = _redact_secrets(v) if isinstance(v, str) else v

        json_log = _redact_secrets(json.dumps(log_entry, default=str))
        log_method(json_log, exc_info=exc_info)

    def debug(self, message: str, *args, **kwargs) -> None:
        """Log debug message"""
        self._log('DEBUG', message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs) -> None:
        """Log info message"""
        self._log('INFO', message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs) -> None:
        """Log warning message"""
        self._log('WARNING', message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs) -> None:
        """Log error message"""
        self._log('ERROR', message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs) -> None:
        """Log critical message"""
        self._log('CRITICAL', message, *args, **kwargs)


class TraceContext:
    """
    Context manager for setting trace_id for a call

    Usage:
        with TraceContext() as trace_id:
            # All logs within this context will include this trace_id
            logger.info("Dispatching tool call")
    """

    def __init__(self, trace_id: str | None = None) -> None:
        self.trace_id = trace_id or self._generate_trace_id()
        self.token = None

    def __enter__(self) -> str:
        self.token = _trace_id_var.set(self.trace_id)
        return self.trace_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        _trace_id_var.reset(self.token)

    @staticmethod
    def _generate_trace_id() -> str:
        """Generate a unique trace ID"""
        return str(uuid.uuid4())[:8]  # Short UUID


def current_trace_id() -> str | None:
    return _trace_id_var.get()


class _RedactingFormatter(logging.Formatter):
    """Plain-text formatter that applies the same secret redaction."""

    def format(self, record: logging.LogRecord) -> str:
        return _redact_secrets(super().format(record))


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def get_logger(component: str) -> StructuredLogger:
    """
    Get a structured logger for a component

    Args:
        component: Component name

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(component)


def configure_logging(config: LoggingConfig) -> logging.Handler:
    """
    Install a stderr handler on the ``toolbridge`` logger.

    JSON format passes structured lines through untouched; text format adds
    the usual timestamp/level/name prefix.
    """
    root = logging.getLogger("toolbridge")
    root.setLevel(config.level)

    for existing in list(root.handlers):
        if getattr(existing, "_toolbridge_handler", False):
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    if config.format == "json":
        handler.setFormatter(_RedactingFormatter("%(message)s"))
    else:
        handler.setFormatter(
            _RedactingFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    handler._toolbridge_handler = True
    root.addHandler(handler)
    return handler
