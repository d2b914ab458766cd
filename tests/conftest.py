"""
Pytest configuration for toolbridge tests — shared fixtures and an in-memory
tool server transport that records every outbound envelope.
"""

from __future__ import annotations

import asyncio
import shutil
import sys
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from toolbridge.config.settings import BridgeSettings, HealthConfig, ServerConfig, TransportKind
from toolbridge.protocols.mcp.messages import Message, MessageKind
from toolbridge.protocols.mcp.session import ServerSession
from toolbridge.protocols.mcp.transports.base import QueueingTransport

FIXTURES_DIR = Path(__file__).parent / "fixtures"
ECHO_SERVER = FIXTURES_DIR / "echo_server.py"

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo text back",
    "inputSchema": {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
        "additionalProperties": False,
    },
}


# =============================================================================
# IN-MEMORY TRANSPORT
# =============================================================================


class ScriptedTransport(QueueingTransport):
    """
    Transport backed by an in-process fake server.

    Every envelope passed to ``send`` is recorded in ``sent``. Requests are
    answered by ``handlers[method]`` (a result value, a full Message, or None
    for "no reply"); methods listed in ``hold`` are recorded in ``held`` and
    left unanswered until the test calls ``reply``.
    """

    kind = "memory"

    def __init__(
        self,
        config: ServerConfig,
        tools: list[dict[str, Any]] | None = None,
        capabilities: dict[str, Any] | None = None,
        protocol_version: str = "2025-06-18",
    ) -> None:
        super().__init__(config, connect_timeout=1.0)
        self.tools = list(tools) if tools is not None else [ECHO_TOOL]
        self.capabilities = capabilities if capabilities is not None else {"tools": {"listChanged": True}}
        self.protocol_version = protocol_version
        self.sent: list[Message] = []
        self.held: list[Message] = []
        self.hold: set[str] = set()
        self.ping_ok = True
        self.disconnect_calls = 0
        self.handlers: dict[str, Callable[[Message], Any]] = {
            "initialize": self._initialize,
            "tools/list": lambda msg: {"tools": self.tools},
            "tools/call": self._call,
            "resources/list": lambda msg: {"resources": []},
            "prompts/list": lambda msg: {"prompts": []},
            "ping": lambda msg: {},
        }

    def _initialize(self, message: Message) -> dict[str, Any]:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "serverInfo": {"name": "scripted", "version": "1.0"},
        }

    def _call(self, message: Message) -> dict[str, Any]:
        params = message.params or {}
        text = params.get("arguments", {}).get("text", "")
        return {"content": [{"type": "text", "text": f"{params.get('name')}:{text}"}]}

    async def _connect(self) -> None:
        pass

    async def _send(self, message: Message, payload: bytes) -> None:
        self.sent.append(message)
        if message.kind is not MessageKind.REQUEST:
            return
        if message.method in self.hold:
            self.held.append(message)
            return
        handler = self.handlers.get(message.method)
        if handler is None:
            outcome: Any = Message.error_response(message.id, -32601, f"Method not found: {message.method}")
        else:
            outcome = handler(message)
        if outcome is None:
            return
        if not isinstance(outcome, Message):
            outcome = Message.response(message.id, outcome)
        asyncio.get_running_loop().call_soon(self._deliver, outcome)

    def reply(self, request: Message, result: Any) -> None:
        """Answer a held request now."""
        self._deliver(Message.response(request.id, result))

    def push(self, message: Message) -> None:
        """Deliver a server-initiated message."""
        self._deliver(message)

    def close_remote(self, reason: str = "server went away") -> None:
        self._deliver_closed(reason)

    def requests(self, method: str) -> list[Message]:
        return [m for m in self.sent if m.method == method and m.kind is MessageKind.REQUEST]

    async def ping(self) -> bool:
        return self.is_connected and self.ping_ok

    async def _disconnect(self) -> None:
        self.disconnect_calls += 1
        self._deliver_closed("disconnected")


# =============================================================================
# SHARED FIXTURES
# =============================================================================


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmp_dir = tempfile.mkdtemp()
    yield Path(tmp_dir).resolve()
    shutil.rmtree(tmp_dir, ignore_errors=True)


@pytest.fixture
def settings() -> BridgeSettings:
    """Short timeouts so failure paths finish quickly."""
    return BridgeSettings(
        connect_timeout=2.0,
        call_timeout=2.0,
        shutdown_grace_period=0.5,
        health=HealthConfig(interval_seconds=0.05, ping_timeout_seconds=0.5, failure_threshold=2),
    )


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(name="scripted", transport=TransportKind.STDIO, command="scripted-server")


@pytest.fixture
def make_transport(server_config) -> Callable[..., ScriptedTransport]:
    """Build scripted transports with custom tools or capabilities."""

    def _make(config: ServerConfig | None = None, **kwargs: Any) -> ScriptedTransport:
        return ScriptedTransport(config or server_config, **kwargs)

    return _make


@pytest.fixture
def transport(make_transport) -> ScriptedTransport:
    return make_transport()


@pytest.fixture
async def session(server_config, transport, settings):
    """A connected session over the scripted transport."""
    session = ServerSession(server_config, transport, settings)
    await session.connect()
    yield session
    await session.disconnect()


@pytest.fixture
def echo_server_config() -> Callable[..., ServerConfig]:
    """Config for the real stdio fixture server, with optional mode flags."""

    def _make(name: str = "echo", *modes: str, **overrides: Any) -> ServerConfig:
        return ServerConfig(
            name=name,
            transport=TransportKind.STDIO,
            command=sys.executable,
            args=[str(ECHO_SERVER), *modes],
            **overrides,
        )

    return _make


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests with no external dependencies")
    config.addinivalue_line("markers", "slow: Tests that take more than 5 seconds")
    config.addinivalue_line("markers", "requires_docker: Tests requiring a Docker daemon")
