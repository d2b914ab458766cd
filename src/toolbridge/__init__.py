"""
toolbridge - client core for tool-extension protocol servers.

Connects to independently running tool servers over stdio, HTTP or an
event stream, discovers their tools, and brokers sandboxed calls to them.
"""

from toolbridge.config.settings import BridgeSettings, ServerConfig, TransportKind, load_settings
from toolbridge.core.exceptions import ErrorCode, ToolBridgeError
from toolbridge.lifecycle import Runtime
from toolbridge.protocols.mcp.server_manager import ServerManager, ServerStatus
from toolbridge.protocols.mcp.types import ToolDefinition, ToolResult
from toolbridge.security.security_policy import PermissionPolicy

__all__ = [
    "BridgeSettings",
    "ErrorCode",
    "PermissionPolicy",
    "Runtime",
    "ServerConfig",
    "ServerManager",
    "ServerStatus",
    "ToolBridgeError",
    "ToolDefinition",
    "ToolResult",
    "TransportKind",
    "load_settings",
]
