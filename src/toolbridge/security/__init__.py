"""
toolbridge Security Module
==========================

This module provides:
- PermissionPolicy: per-server allow/deny rules for tools, paths, hosts and commands
- SecuritySandbox: deny-by-default gate run before every tool call
- DockerCommandSandbox: isolated execution for command tools
"""

from .sandbox import DockerCommandSandbox, SandboxDecision, SecuritySandbox
from .security_policy import (
    AccessLevel,
    ExecutionPolicy,
    FileSystemPolicy,
    NetworkPolicy,
    PermissionPolicy,
    ResourcePolicy,
    ToolCategory,
)

__all__ = [
    "AccessLevel",
    "DockerCommandSandbox",
    "ExecutionPolicy",
    "FileSystemPolicy",
    "NetworkPolicy",
    "PermissionPolicy",
    "ResourcePolicy",
    "SandboxDecision",
    "SecuritySandbox",
    "ToolCategory",
]
