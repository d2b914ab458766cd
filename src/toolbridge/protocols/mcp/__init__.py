"""
Tool-Extension Protocol Client
==============================

- Transports: stdio, request/response HTTP, event stream
- ServerSession: handshake, discovery and calls for one server
- ToolRegistry: tool name -> owning server
- ServerManager: supervises sessions and brokers calls
"""

from .messages import Message, MessageKind, PendingRequestTable, RPCError
from .server_manager import ServerManager, ServerStatus
from .session import ServerSession
from .tool_registry import RegisteredTool, ToolRegistry
from .types import (
    PromptDefinition,
    ResourceDefinition,
    ServerCapabilities,
    SessionState,
    ToolDefinition,
    ToolResult,
)

__all__ = [
    'Message',
    'MessageKind',
    'PendingRequestTable',
    'PromptDefinition',
    'RPCError',
    'RegisteredTool',
    'ResourceDefinition',
    'ServerCapabilities',
    'ServerManager',
    'ServerSession',
    'ServerStatus',
    'SessionState',
    'ToolDefinition',
    'ToolRegistry',
    'ToolResult',
]
