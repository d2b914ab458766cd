"""
Dockerized Command Sandbox - Isolated Tool Execution
====================================================

Runs the command of an execution-category tool call in an ephemeral Docker
container instead of sending it to the tool server.

Isolation applied to every run:
- Wall-clock timeout; the container is killed when it expires
- Memory ceiling (swap capped at the same value) and process-count ceiling
- Read-only root filesystem with a size-limited tmpfs on /tmp
- No network unless the policy relaxes it
- All capabilities dropped, no-new-privileges, unprivileged user

The docker SDK is synchronous, so each run happens in a worker thread.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from toolbridge.core.exceptions import ExecutorUnavailableError, ResourceLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IsolationLimits:
    """Ceilings for one isolated run"""

    timeout_seconds: float = 30.0
    memory_mb: int = 512
    max_processes: int = 64
    tmpfs_size_mb: int = 64
    max_output_bytes: int = 1024 * 1024
    read_only_root: bool = True
    network_disabled: bool = True
    image: str = "python:3.12-slim"
    user: str = "65534:65534"  # nobody


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a finished container run"""

    exit_code: int
    stdout: str
    stderr: str
    duration: float
    container_id: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def _truncate(data: bytes, limit: int) -> str:
    text = data[:limit].decode("utf-8", errors="replace")
    if len(data) > limit:
        text += f"\n[truncated {len(data) - limit} bytes]"
    return text


class DockerCommandSandbox:
    """
    Docker-based executor for sandboxed commands.

    Creates one container per run and removes it afterwards.
    """

    def __init__(self, client: Any = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ExecutorUnavailableError(f"Docker not available: {e}") from e
            logger.info("Docker client initialized")
        return self._client

    def _prepare_container(self, command: list[str], limits: IsolationLimits, run_id: str) -> dict[str, Any]:
        """Build the container config for one run"""
        memory = f"{limits.memory_mb}m"
        return {
            "image": limits.image,
            "command": command,
            "name": f"toolbridge_{run_id}",
            "detach": True,
            "mem_limit": memory,
            "memswap_limit": memory,
            "pids_limit": limits.max_processes,
            "security_opt": ["no-new-privileges"],
            "cap_drop": ["ALL"],
            "user": limits.user,
            "read_only": limits.read_only_root,
            "tmpfs": {"/tmp": f"size={limits.tmpfs_size_mb}m"},
            "working_dir": "/tmp",
            "network_mode": "none" if limits.network_disabled else "bridge",
        }

    def _run_sync(self, command: list[str], limits: IsolationLimits) -> ExecutionResult:
        run_id = uuid.uuid4().hex[:8]
        start_time = time.monotonic()
        client = self.client
        try:
            container = client.containers.run(**self._prepare_container(command, limits, run_id))
        except DockerException as e:
            raise ExecutorUnavailableError(
                f"Could not start sandbox container: {e}",
                details={"image": limits.image},
            ) from e

        try:
            try:
                result = container.wait(timeout=limits.timeout_seconds)
            except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError) as e:
                logger.warning("Sandbox run %s exceeded %ss; killing it", run_id, limits.timeout_seconds)
                self._kill(container)
                raise ResourceLimitError(
                    f"Command exceeded the {limits.timeout_seconds}s time limit",
                    limit="timeout",
                    details={"command": command[0], "timeout": limits.timeout_seconds},
                ) from e

            container.reload()
            if container.attrs.get("State", {}).get("OOMKilled"):
                raise ResourceLimitError(
                    f"Command exceeded the {limits.memory_mb} MB memory limit",
                    limit="memory",
                    details={"command": command[0], "memory_mb": limits.memory_mb},
                )

            return ExecutionResult(
                exit_code=int(result.get("StatusCode", -1)),
                stdout=_truncate(container.logs(stdout=True, stderr=False), limits.max_output_bytes),
                stderr=_truncate(container.logs(stdout=False, stderr=True), limits.max_output_bytes),
                duration=time.monotonic() - start_time,
                container_id=run_id,
            )
        finally:
            try:
                container.remove(force=True)
            except APIError as e:
                logger.debug("Removing sandbox container %s failed: %s", run_id, e)

    def _kill(self, container: Any) -> None:
        try:
            container.kill()
        except (NotFound, APIError) as e:
            logger.debug("Kill failed (container already gone?): %s", e)

    async def run(self, command: list[str], limits: IsolationLimits) -> ExecutionResult:
        """
        Execute a command in an isolated container.

        Raises:
            ResourceLimitError: the run was killed for exceeding its time or memory ceiling
            ExecutorUnavailableError: Docker is not reachable or the container could not start
        """
        return await asyncio.to_thread(self._run_sync, command, limits)

    def cleanup(self) -> None:
        """Cleanup resources"""
        if self._client is not None:
            self._client.close()
            self._client = None
