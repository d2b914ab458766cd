"""
Sandbox Security Module
=======================

Gates tool calls against per-server policies and runs command tools in
isolated environments.

Components:
- SecuritySandbox - Policy checks before any transport I/O
- DockerCommandSandbox - Execute commands in isolated Docker containers
"""

from .docker_sandbox import DockerCommandSandbox, ExecutionResult, IsolationLimits
from .tool_sandbox import IsolatedExecutor, SandboxDecision, SecuritySandbox, classify_tool

__all__ = [
    'DockerCommandSandbox',
    'ExecutionResult',
    'IsolatedExecutor',
    'IsolationLimits',
    'SandboxDecision',
    'SecuritySandbox',
    'classify_tool',
]
