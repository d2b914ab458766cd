"""
Tool Server Permission Policy - Granular Access Control
=======================================================

A tool server's calls are checked against its PermissionPolicy before
anything is sent to it. A server without a policy gets nothing.

Examples:
- Allow reads anywhere under /srv/data, writes only under /tmp/work
- Allow network tools to reach api.example.com on 443
- Allow execution tools to run ``python3`` and ``ls`` in a container
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class AccessLevel(Enum):
    """Access levels for a policy area"""
    NONE = "none"           # No access
    READ_ONLY = "read"      # Read-only access
    READ_WRITE = "write"    # Read and write access
    PRIVILEGED = "privileged"  # Unrestricted (use with caution!)


class ToolCategory(Enum):
    """What a tool touches, which decides the checks it goes through"""
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    EXECUTION = "execution"
    GENERAL = "general"


# Never reachable through any policy
GLOBAL_DENIED_PATHS = [
    "/etc/shadow",
    "/etc/sudoers",
    "/etc/ssh",
    "/boot",
    "/proc",
    "/sys",
    "/dev",
    "~/.ssh",
    "~/.aws",
    "~/.gnupg",
    "~/.kube",
    "~/.docker",
    "~/.netrc",
]


def resolve_path(path: str | Path) -> Path:
    """Absolute real path with ``~`` expanded and ``..``/symlinks resolved"""
    return Path(path).expanduser().resolve(strict=False)


def path_within(path: Path, roots: List[str]) -> bool:
    """Containment by path components, so /tmp/work never matches /tmp/workspace"""
    return any(path == root or path.is_relative_to(root) for root in map(resolve_path, roots))


def domain_matches(host: str, pattern: str) -> bool:
    """Exact host or a subdomain on a dot boundary (``evil-example.com`` never matches ``example.com``)"""
    host = host.lower().rstrip(".")
    pattern = pattern.lower().rstrip(".").lstrip("*.")
    return host == pattern or host.endswith("." + pattern)


@dataclass
class FileSystemPolicy:
    """Filesystem access policy"""
    access_level: AccessLevel = AccessLevel.NONE
    read_paths: List[str] = field(default_factory=list)
    write_paths: List[str] = field(default_factory=list)
    denied_paths: List[str] = field(default_factory=list)
    max_write_bytes: int = 10 * 1024 * 1024

    def check(self, path: str, write: bool = False, base_dir: Optional[str] = None) -> Optional[str]:
        """
        Check access to a path.

        Args:
            path: File path as given by the caller
            write: Whether write access is requested
            base_dir: Directory the tool server resolves relative paths against

        Returns:
            None if allowed, otherwise the reason for denial
        """
        if self.access_level == AccessLevel.NONE:
            return "filesystem access is disabled"
        if write and self.access_level == AccessLevel.READ_ONLY:
            return "filesystem access is read-only"

        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            # The server resolves relative paths against its own working directory
            if base_dir is None:
                return f"relative path '{path}' needs a configured working directory"
            candidate = Path(base_dir).expanduser() / candidate
        resolved = resolve_path(candidate)

        # Denied paths take precedence, even for privileged policies
        if path_within(resolved, GLOBAL_DENIED_PATHS):
            return f"{resolved} is a protected location"
        if path_within(resolved, self.denied_paths):
            return f"{resolved} is denied by policy"

        if self.access_level == AccessLevel.PRIVILEGED:
            return None

        # Write roots also allow reading
        allowed = self.write_paths if write else self.read_paths + self.write_paths
        if not path_within(resolved, allowed):
            kind = "write" if write else "read"
            return f"{resolved} is outside the allowed {kind} paths"
        return None

    def can_access(self, path: str, write: bool = False, base_dir: Optional[str] = None) -> bool:
        return self.check(path, write, base_dir) is None


@dataclass
class NetworkPolicy:
    """Network access policy"""
    access_level: AccessLevel = AccessLevel.NONE
    allowed_domains: List[str] = field(default_factory=list)
    denied_domains: List[str] = field(default_factory=list)
    allowed_ports: List[int] = field(default_factory=lambda: [80, 443])

    def check(self, host: str, port: int = 443) -> Optional[str]:
        if self.access_level == AccessLevel.NONE:
            return "network access is disabled"

        if self.allowed_ports and port not in self.allowed_ports:
            return f"port {port} is not allowed"

        for denied in self.denied_domains:
            if domain_matches(host, denied):
                return f"{host} is denied by policy"

        if not self.allowed_domains or self.access_level == AccessLevel.PRIVILEGED:
            return None

        if any(domain_matches(host, allowed) for allowed in self.allowed_domains):
            return None
        return f"{host} is not an allowed domain"

    def can_access(self, host: str, port: int = 443) -> bool:
        return self.check(host, port) is None


@dataclass
class ResourcePolicy:
    """Ceilings for isolated execution"""
    max_execution_time_sec: int = 30
    max_memory_mb: int = 512
    max_processes: int = 64
    tmpfs_size_mb: int = 64
    max_output_bytes: int = 1024 * 1024


@dataclass
class ExecutionPolicy:
    """Which programs execution-category tools may run, and how tightly"""
    allowed_commands: List[str] = field(default_factory=list)
    image: str = "python:3.12-slim"
    allow_network: bool = False
    writable_root: bool = False

    def check(self, program: str) -> Optional[str]:
        name = Path(program).name
        if not name:
            return "no command given"
        if name not in self.allowed_commands:
            return f"command '{name}' is not allowed"
        return None


@dataclass
class PermissionPolicy:
    """
    Complete permission policy for one tool server

    Example:
        policy = PermissionPolicy(
            server_name="files",
            allowed_tools=["read_*", "write_file"],
            filesystem=FileSystemPolicy(
                access_level=AccessLevel.READ_WRITE,
                read_paths=["/srv/data"],
                write_paths=["/tmp/work"],
            ),
        )

        assert policy.filesystem.can_access("/tmp/work/out.txt", write=True)
        assert not policy.filesystem.can_access("/etc/passwd")
    """
    server_name: str
    enabled: bool = True

    # Tool name patterns (fnmatch); deny wins over allow
    allowed_tools: List[str] = field(default_factory=lambda: ["*"])
    denied_tools: List[str] = field(default_factory=list)
    tool_categories: Dict[str, ToolCategory] = field(default_factory=dict)

    # Policies
    filesystem: FileSystemPolicy = field(default_factory=FileSystemPolicy)
    network: NetworkPolicy = field(default_factory=NetworkPolicy)
    execution: ExecutionPolicy = field(default_factory=ExecutionPolicy)
    resources: ResourcePolicy = field(default_factory=ResourcePolicy)

    def check_tool_name(self, tool_name: str) -> Optional[str]:
        for pattern in self.denied_tools:
            if fnmatch.fnmatchcase(tool_name, pattern):
                return f"tool '{tool_name}' is denied by pattern '{pattern}'"
        if not any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in self.allowed_tools):
            return f"tool '{tool_name}' is not in the allowed tools"
        return None

    def validate(self) -> None:
        """Log policies that grant more than a sandboxed default"""
        if self.filesystem.access_level == AccessLevel.PRIVILEGED:
            logger.warning("Tool server '%s' has PRIVILEGED filesystem access", self.server_name)
        if self.execution.allowed_commands:
            logger.warning(
                "Tool server '%s' can execute commands: %s",
                self.server_name, ", ".join(self.execution.allowed_commands),
            )
        if self.execution.allow_network or self.execution.writable_root:
            logger.warning("Tool server '%s' has relaxed execution isolation", self.server_name)


# Predefined policies

def sandboxed_policy(server_name: str) -> PermissionPolicy:
    """Read/write under /tmp only, no network, no execution"""
    return PermissionPolicy(
        server_name=server_name,
        filesystem=FileSystemPolicy(
            access_level=AccessLevel.READ_WRITE,
            read_paths=["/tmp"],
            write_paths=["/tmp"],
            max_write_bytes=10 * 1024 * 1024,
        ),
    )


def trusted_policy(server_name: str) -> PermissionPolicy:
    """Home and /tmp on disk, web ports on the network"""
    return PermissionPolicy(
        server_name=server_name,
        filesystem=FileSystemPolicy(
            access_level=AccessLevel.READ_WRITE,
            read_paths=["~", "/tmp"],
            write_paths=["~", "/tmp"],
            max_write_bytes=100 * 1024 * 1024,
        ),
        network=NetworkPolicy(
            access_level=AccessLevel.READ_WRITE,
            allowed_ports=[80, 443, 8080],
        ),
    )
