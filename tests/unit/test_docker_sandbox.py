"""Tests for toolbridge.security.sandbox.docker_sandbox"""

from unittest.mock import MagicMock, patch

import pytest
import requests
from docker.errors import APIError, DockerException

from toolbridge.core.exceptions import ExecutorUnavailableError, ResourceLimitError
from toolbridge.security.sandbox.docker_sandbox import (
    DockerCommandSandbox,
    IsolationLimits,
    _truncate,
)


def _container(status=0, out=b"out", err=b"", oom=False):
    container = MagicMock()
    container.wait.return_value = {"StatusCode": status}
    container.attrs = {"State": {"OOMKilled": oom}}
    container.logs.side_effect = lambda stdout=True, stderr=False: out if stdout else err
    return container


def _client(container):
    client = MagicMock()
    client.containers.run.return_value = container
    return client


# ── Container configuration ──────────────────────────────────────────────


class TestPrepareContainer:
    def test_isolation_flags(self):
        sandbox = DockerCommandSandbox(client=MagicMock())
        limits = IsolationLimits(memory_mb=128, max_processes=16, tmpfs_size_mb=8)
        config = sandbox._prepare_container(["ls", "-la"], limits, "abc")

        assert config["command"] == ["ls", "-la"]
        assert config["name"] == "toolbridge_abc"
        assert config["mem_limit"] == "128m"
        assert config["memswap_limit"] == "128m"
        assert config["pids_limit"] == 16
        assert config["cap_drop"] == ["ALL"]
        assert config["security_opt"] == ["no-new-privileges"]
        assert config["read_only"] is True
        assert config["tmpfs"] == {"/tmp": "size=8m"}
        assert config["network_mode"] == "none"
        assert config["user"] == "65534:65534"

    def test_network_can_be_enabled(self):
        sandbox = DockerCommandSandbox(client=MagicMock())
        config = sandbox._prepare_container(["ls"], IsolationLimits(network_disabled=False), "x")
        assert config["network_mode"] == "bridge"


# ── Runs ─────────────────────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_successful_run(self):
        container = _container(status=0, out=b"hello\n", err=b"warn")
        client = _client(container)
        sandbox = DockerCommandSandbox(client=client)

        result = await sandbox.run(["echo", "hello"], IsolationLimits(timeout_seconds=5))

        assert result.success
        assert result.stdout == "hello\n"
        assert result.stderr == "warn"
        assert result.duration >= 0
        container.wait.assert_called_once_with(timeout=5)
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        container = _container(status=2)
        sandbox = DockerCommandSandbox(client=_client(container))
        result = await sandbox.run(["false"], IsolationLimits())
        assert result.exit_code == 2
        assert not result.success

    @pytest.mark.asyncio
    async def test_timeout_kills_container(self):
        container = _container()
        container.wait.side_effect = requests.exceptions.ReadTimeout("slow")
        sandbox = DockerCommandSandbox(client=_client(container))

        with pytest.raises(ResourceLimitError) as exc_info:
            await sandbox.run(["sleep", "100"], IsolationLimits(timeout_seconds=0.1))

        assert exc_info.value.limit == "timeout"
        container.kill.assert_called_once()
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_out_of_memory(self):
        container = _container(status=137, oom=True)
        sandbox = DockerCommandSandbox(client=_client(container))

        with pytest.raises(ResourceLimitError) as exc_info:
            await sandbox.run(["python3", "-c", "x" * 10], IsolationLimits(memory_mb=64))

        assert exc_info.value.limit == "memory"
        container.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_remove_failure_is_not_fatal(self):
        container = _container()
        container.remove.side_effect = APIError("gone")
        sandbox = DockerCommandSandbox(client=_client(container))
        result = await sandbox.run(["ls"], IsolationLimits())
        assert result.success

    @pytest.mark.asyncio
    async def test_start_failure(self):
        client = MagicMock()
        client.containers.run.side_effect = DockerException("no such image")
        sandbox = DockerCommandSandbox(client=client)
        with pytest.raises(ExecutorUnavailableError, match="Could not start"):
            await sandbox.run(["ls"], IsolationLimits())


class TestClient:
    def test_docker_unavailable(self):
        with patch("toolbridge.security.sandbox.docker_sandbox.docker.from_env",
                   side_effect=DockerException("no daemon")):
            sandbox = DockerCommandSandbox()
            with pytest.raises(ExecutorUnavailableError, match="Docker not available"):
                _ = sandbox.client

    def test_cleanup_closes_client(self):
        client = MagicMock()
        sandbox = DockerCommandSandbox(client=client)
        sandbox.cleanup()
        client.close.assert_called_once()
        sandbox.cleanup()
        client.close.assert_called_once()


def test_truncate():
    assert _truncate(b"abcdef", 10) == "abcdef"
    assert _truncate(b"abcdef", 3) == "abc\n[truncated 3 bytes]"
