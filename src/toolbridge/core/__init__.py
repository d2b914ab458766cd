"""Core toolbridge module — errors and structured logging."""

from toolbridge.core.exceptions import (
    ApplicationError,
    CallTimeoutError,
    ConfigurationError,
    ErrorCode,
    ExecutorUnavailableError,
    PermissionDeniedError,
    ProtocolError,
    ResourceLimitError,
    ServerConnectionError,
    ServerNotFoundError,
    SessionUnavailableError,
    ToolBridgeError,
    ToolNotFoundError,
    TransportClosedError,
    ValidationError,
)
from toolbridge.core.structured_logger import StructuredLogger, TraceContext, configure_logging, get_logger

__all__ = [
    'ApplicationError',
    'CallTimeoutError',
    'ConfigurationError',
    'ErrorCode',
    'ExecutorUnavailableError',
    'PermissionDeniedError',
    'ProtocolError',
    'ResourceLimitError',
    'ServerConnectionError',
    'ServerNotFoundError',
    'SessionUnavailableError',
    'StructuredLogger',
    'ToolBridgeError',
    'ToolNotFoundError',
    'TraceContext',
    'TransportClosedError',
    'ValidationError',
    'configure_logging',
    'get_logger',
]
