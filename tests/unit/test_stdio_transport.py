"""
Tests for the stdio transport against a real child process.
"""

import asyncio

import pytest

from toolbridge.config.settings import ServerConfig
from toolbridge.core.exceptions import ServerConnectionError, TransportClosedError
from toolbridge.protocols.mcp.messages import Message, MessageKind
from toolbridge.protocols.mcp.transports import StdioTransport, create_transport
from toolbridge.protocols.mcp.transports.stdio import build_child_env


def _initialize(request_id=1):
    return Message.request(request_id, "initialize", {
        "protocolVersion": "2025-06-18",
        "capabilities": {},
        "clientInfo": {"name": "tests", "version": "0"},
    })


class TestBuildChildEnv:
    """The child never inherits arbitrary host variables."""

    def test_secrets_not_inherited(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
        env = build_child_env(ServerConfig(name="s", command="x"))
        assert "GITHUB_TOKEN" not in env
        assert "LANG" in env

    def test_passthrough_and_explicit_env(self, monkeypatch):
        monkeypatch.setenv("TOOL_HOME", "/opt/tool")
        config = ServerConfig(
            name="s", command="x", env_passthrough=["TOOL_HOME", "NOT_SET_ANYWHERE"], env={"MODE": "test"}
        )
        env = build_child_env(config)
        assert env["TOOL_HOME"] == "/opt/tool"
        assert env["MODE"] == "test"
        assert "NOT_SET_ANYWHERE" not in env


class TestStdioTransport:
    @pytest.mark.asyncio
    async def test_request_reply_round_trip(self, echo_server_config):
        async with StdioTransport(echo_server_config(), connect_timeout=5) as transport:
            assert transport.pid is not None
            await transport.send(_initialize())
            reply = await asyncio.wait_for(transport.receive(), 5)
            assert reply.kind is MessageKind.RESPONSE
            assert reply.id == 1
            assert reply.result["serverInfo"]["name"] == "echo-fixture"
            assert transport.messages_sent == 1
            assert transport.bytes_sent > 0
            assert await transport.ping() is True
        assert transport.is_closed
        assert transport.returncode is not None

    @pytest.mark.asyncio
    async def test_unknown_method_gets_error_reply(self, echo_server_config):
        async with StdioTransport(echo_server_config(), connect_timeout=5) as transport:
            await transport.send(Message.request(5, "resources/list"))
            reply = await asyncio.wait_for(transport.receive(), 5)
            assert reply.error.code == -32601

    @pytest.mark.asyncio
    async def test_stderr_is_drained_not_parsed(self, echo_server_config):
        async with StdioTransport(echo_server_config("echo", "--noisy"), connect_timeout=5) as transport:
            await transport.send(_initialize())
            reply = await asyncio.wait_for(transport.receive(), 5)
            assert reply.id == 1
            for _ in range(50):
                if transport.stderr_tail:
                    break
                await asyncio.sleep(0.02)
            assert transport.stderr_tail == ["got initialize"]

    @pytest.mark.asyncio
    async def test_process_exit_closes_stream(self, echo_server_config):
        transport = StdioTransport(echo_server_config("echo", "--exit-on-call"), connect_timeout=5)
        await transport.connect()
        try:
            await transport.send(Message.request(2, "tools/call", {"name": "echo", "arguments": {}}))
            with pytest.raises(TransportClosedError) as exc_info:
                await asyncio.wait_for(transport.receive(), 5)
            assert exc_info.value.details["returncode"] == 3
            assert "crashing on purpose" in exc_info.value.details["stderr"]
            assert await transport.ping() is False
            with pytest.raises(TransportClosedError):
                await transport.send(Message.request(3, "ping"))
        finally:
            await transport.disconnect()

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        config = ServerConfig(name="missing", command="/nonexistent/tool-server")
        transport = StdioTransport(config, connect_timeout=5)
        with pytest.raises(ServerConnectionError, match="Failed to spawn"):
            await transport.connect()

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, echo_server_config):
        transport = StdioTransport(echo_server_config("echo", "--silent"), connect_timeout=5, grace_period=0.5)
        await transport.connect()
        await transport.disconnect()
        await transport.disconnect()
        assert transport.returncode is not None
        with pytest.raises(TransportClosedError):
            await transport.connect()
        with pytest.raises(TransportClosedError):
            await transport.receive()


class TestCreateTransport:
    def test_stdio_uses_settings(self, settings, echo_server_config):
        transport = create_transport(echo_server_config(connect_timeout=1.5), settings)
        assert isinstance(transport, StdioTransport)
        assert transport.connect_timeout == 1.5
        assert transport.grace_period == settings.shutdown_grace_period
