"""
Custom Exceptions for toolbridge
================================

Every failure in the core resolves to one of these typed errors so the
orchestration layer can react by type rather than parsing strings.

Error Codes:
- 1xxx: Client errors (arguments, schema, unknown names)
- 2xxx: Security errors (sandbox / policy)
- 3xxx: Resource errors (server unavailable, isolation ceilings)
- 4xxx: Execution errors (server-reported failures, timeouts, protocol)
- 5xxx: System errors (connection, configuration, internal)
"""

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Structured error codes for user-friendly messages"""

    # 1xxx: Client Errors
    VALIDATION_ERROR = 1001
    INVALID_PARAMETERS = 1002
    TOOL_NOT_FOUND = 1003
    SERVER_NOT_FOUND = 1004

    # 2xxx: Security Errors
    PERMISSION_DENIED = 2001
    POLICY_VIOLATION = 2002

    # 3xxx: Resource Errors
    SERVER_UNAVAILABLE = 3001
    RESOURCE_LIMIT_EXCEEDED = 3002

    # 4xxx: Execution Errors
    APPLICATION_ERROR = 4001
    PROTOCOL_ERROR = 4002
    TIMEOUT = 4003

    # 5xxx: System Errors
    INTERNAL_ERROR = 5001
    CONNECTION_ERROR = 5002
    TRANSPORT_CLOSED = 5003
    CONFIGURATION_ERROR = 5004


class ToolBridgeError(Exception):
    """Base exception for all toolbridge errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for structured logging"""
        return {
            'error_type': self.__class__.__name__,
            'error_code': int(self.error_code),
            'message': self.message,
            'details': self.details
        }

    def user_message(self) -> str:
        """Get user-friendly error message based on error code"""
        code_messages = {
            ErrorCode.VALIDATION_ERROR: "Invalid tool arguments",
            ErrorCode.INVALID_PARAMETERS: "Invalid parameters",
            ErrorCode.TOOL_NOT_FOUND: "Tool not found",
            ErrorCode.SERVER_NOT_FOUND: "Tool server not found",
            ErrorCode.PERMISSION_DENIED: "Permission denied by sandbox policy",
            ErrorCode.POLICY_VIOLATION: "Security policy violation",
            ErrorCode.SERVER_UNAVAILABLE: "Tool server is not ready",
            ErrorCode.RESOURCE_LIMIT_EXCEEDED: "Sandboxed execution exceeded its limits",
            ErrorCode.APPLICATION_ERROR: "Tool server reported an error",
            ErrorCode.PROTOCOL_ERROR: "Malformed protocol message",
            ErrorCode.TIMEOUT: "Request timed out",
            ErrorCode.INTERNAL_ERROR: "Internal error",
            ErrorCode.CONNECTION_ERROR: "Could not connect to tool server",
            ErrorCode.TRANSPORT_CLOSED: "Connection to tool server was lost",
            ErrorCode.CONFIGURATION_ERROR: "Configuration error",
        }
        return f"Error {self.error_code}: {code_messages.get(self.error_code, self.message)}"


class ServerConnectionError(ToolBridgeError):
    """Raised when transport setup or the handshake fails"""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.CONNECTION_ERROR,
    ):
        super().__init__(message, error_code, details)


class TransportClosedError(ServerConnectionError):
    """Raised when the transport is closed, or closes while a call is in flight"""

    def __init__(self, message: str = "Transport is closed", details: dict[str, Any] | None = None):
        super().__init__(message, details, ErrorCode.TRANSPORT_CLOSED)


class ProtocolError(ToolBridgeError):
    """Raised for malformed envelopes or unknown methods; only one request fails"""

    def __init__(
        self,
        message: str,
        request_id: int | str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, ErrorCode.PROTOCOL_ERROR, details)
        self.request_id = request_id


class ApplicationError(ToolBridgeError):
    """Raised when a server answers a call with an error object"""

    def __init__(self, message: str, rpc_code: int, data: Any = None, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.APPLICATION_ERROR, details)
        self.rpc_code = rpc_code
        self.data = data


class CallTimeoutError(ToolBridgeError):
    """Raised when no correlated reply arrives before the deadline"""

    def __init__(self, message: str, timeout: float, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.TIMEOUT, details)
        self.timeout = timeout


class ValidationError(ToolBridgeError):
    """Raised when tool arguments fail validation"""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(message, error_code, details)


class PermissionDeniedError(ValidationError):
    """Raised when the security sandbox rejects a call"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details, ErrorCode.PERMISSION_DENIED)


class ResourceLimitError(ToolBridgeError):
    """Raised when an isolated execution is killed for exceeding a ceiling"""

    def __init__(self, message: str, limit: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.RESOURCE_LIMIT_EXCEEDED, details)
        self.limit = limit


class ExecutorUnavailableError(ToolBridgeError):
    """Raised when the isolated executor (container runtime) cannot be used"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.SERVER_UNAVAILABLE, details)


class ToolNotFoundError(ToolBridgeError):
    """Raised when a tool name is not known"""

    def __init__(self, tool_name: str, details: dict[str, Any] | None = None):
        super().__init__(f"Tool not found: {tool_name}", ErrorCode.TOOL_NOT_FOUND, details)
        self.tool_name = tool_name


class ServerNotFoundError(ToolBridgeError):
    """Raised when a server id is not managed"""

    def __init__(self, server_id: str, details: dict[str, Any] | None = None):
        super().__init__(f"Server not found: {server_id}", ErrorCode.SERVER_NOT_FOUND, details)
        self.server_id = server_id


class SessionUnavailableError(ToolBridgeError):
    """Raised when a session is asked to serve a call outside the READY state"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.SERVER_UNAVAILABLE, details)


class ConfigurationError(ToolBridgeError):
    """Raised when a server configuration is incomplete or inconsistent"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details)
