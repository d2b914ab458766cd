"""
Security Sandbox
================

Gate that every tool call passes before any byte reaches a tool server.

The sandbox is deny-by-default: a server without a PermissionPolicy, or with
a disabled one, cannot be called at all. For servers with a policy the call
is classified (filesystem, network, execution, general) and the arguments
are checked against the matching part of the policy. Path and URL arguments
are checked wherever they appear in the arguments. Execution-category
calls are not forwarded to the server; they run in an isolated container.
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlsplit

from toolbridge.core.exceptions import PermissionDeniedError
from toolbridge.core.structured_logger import get_logger
from toolbridge.protocols.mcp.types import ToolResult
from toolbridge.security.sandbox.docker_sandbox import (
    DockerCommandSandbox,
    ExecutionResult,
    IsolationLimits,
)
from toolbridge.security.security_policy import AccessLevel, PermissionPolicy, ToolCategory

logger = get_logger("SecuritySandbox")

# Argument keys that name the thing a tool acts on
PATH_KEYS = frozenset({
    "path", "paths", "file", "files", "filename", "file_path", "filepath",
    "directory", "dir", "source", "destination", "src", "dst", "target",
})
URL_KEYS = frozenset({"url", "urls", "uri", "endpoint", "host", "hostname", "domain"})
COMMAND_KEYS = frozenset({"command", "cmd", "program", "script"})
PAYLOAD_KEYS = frozenset({"content", "contents", "data", "text", "body"})

EXECUTION_WORDS = frozenset({"exec", "execute", "run", "shell", "bash", "command", "spawn", "eval", "process"})
FILESYSTEM_WORDS = frozenset({
    "file", "files", "dir", "directory", "directories", "path", "fs", "folder",
    "read", "write", "mkdir", "edit", "delete", "remove", "move", "copy", "rename",
})
NETWORK_WORDS = frozenset({"http", "https", "fetch", "url", "web", "download", "request", "curl", "browse", "api"})
WRITE_WORDS = frozenset({
    "write", "create", "edit", "delete", "remove", "move", "rename", "mkdir",
    "append", "save", "put", "copy", "upload", "update", "patch", "download",
})

NETWORK_SCHEMES = {"http": 80, "https": 443, "ws": 80, "wss": 443}

# Hostnames as urlsplit reports them (lowercased, IPv6 without brackets)
HOSTNAME_RE = re.compile(r"[a-z0-9._-]+|[0-9a-f:.]+")
# Backslashes and whitespace make clients disagree about where the host ends
AMBIGUOUS_NETLOC_RE = re.compile(r"[\\\s]")


def _name_words(tool_name: str) -> set[str]:
    """Split ``writeFile`` / ``write_file`` / ``write-file`` into lowercase words"""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", tool_name)
    return {word for word in re.split(r"[^A-Za-z0-9]+", spaced.lower()) if word}


def _is_path_key(key: str) -> bool:
    key = key.lower()
    return key in PATH_KEYS or key.endswith(("_path", "_file", "_dir"))


def _is_url_key(key: str) -> bool:
    return key.lower() in URL_KEYS


def _keyed_strings(value: Any, wanted: Callable[[str], bool], key: str | None = None) -> list[tuple[str, str]]:
    """Every string in the argument tree held under a wanted key, at any depth"""
    if isinstance(value, str):
        return [(key, value)] if key is not None else []
    if isinstance(value, list):
        return [pair for item in value for pair in _keyed_strings(item, wanted, key)]
    if isinstance(value, dict):
        return [
            pair
            for child_key, child in value.items()
            for pair in _keyed_strings(child, wanted, child_key.lower() if wanted(child_key) else None)
        ]
    return []


def classify_tool(
    tool_name: str,
    arguments: dict[str, Any],
    override: ToolCategory | None = None,
) -> ToolCategory:
    """
    Decide the primary category of a call.

    Argument keys are a stronger signal than the tool's name, so they are
    looked at first. Path and URL arguments are checked whatever the
    primary category turns out to be.
    """
    if override is not None:
        return override

    keys = {key.lower() for key in arguments}
    if keys & COMMAND_KEYS:
        return ToolCategory.EXECUTION
    if any(_is_path_key(key) for key in keys):
        return ToolCategory.FILESYSTEM
    if keys & URL_KEYS:
        return ToolCategory.NETWORK

    words = _name_words(tool_name)
    if words & EXECUTION_WORDS:
        return ToolCategory.EXECUTION
    if words & FILESYSTEM_WORDS:
        return ToolCategory.FILESYSTEM
    if words & NETWORK_WORDS:
        return ToolCategory.NETWORK
    return ToolCategory.GENERAL


def _payload_size(value: Any) -> int:
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    return len(json.dumps(value, separators=(",", ":")).encode("utf-8"))


@dataclass(frozen=True)
class SandboxDecision:
    """An allowed call, with everything needed to dispatch it"""

    server_id: str
    tool_name: str
    category: ToolCategory
    arguments: dict[str, Any] = field(default_factory=dict)
    command: list[str] | None = None
    isolation: IsolationLimits | None = None

    @property
    def isolated(self) -> bool:
        return self.category is ToolCategory.EXECUTION and self.command is not None


class IsolatedExecutor(Protocol):
    async def run(self, command: list[str], limits: IsolationLimits) -> ExecutionResult: ...


class SecuritySandbox:
    """Per-server policy gate plus isolated execution for command tools"""

    def __init__(
        self,
        policies: dict[str, PermissionPolicy] | None = None,
        executor: IsolatedExecutor | None = None,
    ) -> None:
        self._policies: dict[str, PermissionPolicy] = {}
        self._executor = executor
        for server_id, policy in (policies or {}).items():
            self.set_policy(server_id, policy)

    def set_policy(self, server_id: str, policy: PermissionPolicy) -> None:
        policy.validate()
        self._policies[server_id] = policy

    def remove_policy(self, server_id: str) -> None:
        self._policies.pop(server_id, None)

    def get_policy(self, server_id: str) -> PermissionPolicy | None:
        return self._policies.get(server_id)

    def _deny(self, server_id: str, tool_name: str, reason: str, **fields: Any) -> PermissionDeniedError:
        logger.warning(
            "Tool call denied",
            server=server_id,
            tool=tool_name,
            reason=reason,
            **fields,
        )
        return PermissionDeniedError(
            f"Call to '{tool_name}' on '{server_id}' denied: {reason}",
            details={"server": server_id, "tool": tool_name, "reason": reason, **fields},
        )

    def validate_tool_call(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        working_dir: str | None = None,
    ) -> SandboxDecision:
        """
        Check one call against the server's policy.

        Args:
            server_id: Server the call would go to
            tool_name: Tool being called
            arguments: Call arguments
            working_dir: The server's working directory, for relative paths

        Returns:
            SandboxDecision describing how the call may proceed

        Raises:
            PermissionDeniedError: no policy, disabled policy, or any violation
        """
        arguments = arguments or {}
        policy = self._policies.get(server_id)
        if policy is None:
            raise self._deny(server_id, tool_name, "no permission policy for this server")
        if not policy.enabled:
            raise self._deny(server_id, tool_name, "permission policy is disabled")

        reason = policy.check_tool_name(tool_name)
        if reason:
            raise self._deny(server_id, tool_name, reason)

        category = classify_tool(tool_name, arguments, policy.tool_categories.get(tool_name))

        paths = [path for _, path in _keyed_strings(arguments, _is_path_key)]
        if paths or category is ToolCategory.FILESYSTEM:
            self._check_filesystem(policy, server_id, tool_name, arguments, paths, working_dir)
        targets = _keyed_strings(arguments, _is_url_key)
        if targets or category is ToolCategory.NETWORK:
            self._check_network(policy, server_id, tool_name, arguments, targets)

        if category is ToolCategory.EXECUTION:
            command = self._check_execution(policy, server_id, tool_name, arguments)
            return SandboxDecision(
                server_id=server_id,
                tool_name=tool_name,
                category=category,
                arguments=arguments,
                command=command,
                isolation=self._isolation_for(policy),
            )

        logger.debug("Tool call allowed", server=server_id, tool=tool_name, category=category.value)
        return SandboxDecision(server_id=server_id, tool_name=tool_name, category=category, arguments=arguments)

    def _check_filesystem(
        self,
        policy: PermissionPolicy,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        paths: list[str],
        working_dir: str | None,
    ) -> None:
        if not paths:
            raise self._deny(server_id, tool_name, "filesystem tool called without a path argument")

        write = bool(_name_words(tool_name) & WRITE_WORDS)
        for path in paths:
            reason = policy.filesystem.check(path, write=write, base_dir=working_dir)
            if reason:
                raise self._deny(server_id, tool_name, reason, path=path)

        if write:
            for key, value in arguments.items():
                if key.lower() not in PAYLOAD_KEYS:
                    continue
                size = _payload_size(value)
                if size > policy.filesystem.max_write_bytes:
                    raise self._deny(
                        server_id, tool_name,
                        f"payload of {size} bytes exceeds the {policy.filesystem.max_write_bytes} byte limit",
                    )

    def _check_network(
        self,
        policy: PermissionPolicy,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        targets: list[tuple[str, str]],
    ) -> None:
        if not targets:
            if policy.network.access_level == AccessLevel.NONE:
                raise self._deny(server_id, tool_name, "network access is disabled")
            return

        explicit_port = arguments.get("port")
        for key, target in targets:
            has_scheme = "://" in target
            try:
                # A bare "host[:port]" is parsed as a network location
                parts = urlsplit(target if has_scheme else "//" + target)
                host = parts.hostname or ""
                port = parts.port
            except ValueError:
                raise self._deny(server_id, tool_name, "malformed network address", url=target) from None

            scheme = parts.scheme.lower()
            if has_scheme and scheme not in NETWORK_SCHEMES:
                raise self._deny(server_id, tool_name, f"scheme '{scheme}' is not allowed", url=target)
            if port is None:
                port = NETWORK_SCHEMES.get(scheme, 443)
            if isinstance(explicit_port, int) and key in ("host", "hostname", "domain"):
                port = explicit_port

            if not host:
                raise self._deny(server_id, tool_name, "no host in network argument", url=target)
            if AMBIGUOUS_NETLOC_RE.search(parts.netloc) or not HOSTNAME_RE.fullmatch(host):
                raise self._deny(server_id, tool_name, "malformed host in network argument", url=target)

            reason = policy.network.check(host, port)
            if reason:
                raise self._deny(server_id, tool_name, reason, url=target)

    def _check_execution(
        self, policy: PermissionPolicy, server_id: str, tool_name: str, arguments: dict[str, Any]
    ) -> list[str]:
        raw = next((arguments[k] for k in arguments if k.lower() in COMMAND_KEYS), None)
        if isinstance(raw, str):
            try:
                command = shlex.split(raw)
            except ValueError as e:
                raise self._deny(server_id, tool_name, f"unparseable command: {e}") from e
        elif isinstance(raw, list) and all(isinstance(part, str) for part in raw):
            command = list(raw)
        else:
            raise self._deny(server_id, tool_name, "execution tool called without a command")

        extra = arguments.get("args")
        if isinstance(extra, list) and all(isinstance(part, str) for part in extra):
            command.extend(extra)

        if not command:
            raise self._deny(server_id, tool_name, "empty command")
        reason = policy.execution.check(command[0])
        if reason:
            raise self._deny(server_id, tool_name, reason)
        return command

    def _isolation_for(self, policy: PermissionPolicy) -> IsolationLimits:
        resources = policy.resources
        return IsolationLimits(
            timeout_seconds=float(resources.max_execution_time_sec),
            memory_mb=resources.max_memory_mb,
            max_processes=resources.max_processes,
            tmpfs_size_mb=resources.tmpfs_size_mb,
            max_output_bytes=resources.max_output_bytes,
            read_only_root=not policy.execution.writable_root,
            network_disabled=not policy.execution.allow_network,
            image=policy.execution.image,
        )

    async def execute_isolated(self, decision: SandboxDecision) -> ToolResult:
        """
        Run an execution-category call in the isolated executor.

        Raises:
            ResourceLimitError: the run exceeded its time or memory ceiling
        """
        if not decision.isolated or decision.isolation is None:
            raise ValueError(f"Call to '{decision.tool_name}' is not an isolated execution")
        if self._executor is None:
            self._executor = DockerCommandSandbox()

        logger.info(
            "Running tool command in sandbox",
            server=decision.server_id,
            tool=decision.tool_name,
            program=decision.command[0],
        )
        result = await self._executor.run(decision.command, decision.isolation)
        return ToolResult(
            content=[{"type": "text", "text": result.stdout}],
            is_error=not result.success,
            structured_content={
                "exit_code": result.exit_code,
                "stdout": result.stdout,
                "stderr": result.stderr,
                "duration": round(result.duration, 3),
            },
            raw={"container_id": result.container_id, "exit_code": result.exit_code},
        )
