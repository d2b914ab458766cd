"""
Server Manager
==============

Supervises the set of tool server sessions and exposes the upward surface:
``list_tools()`` and ``call_tool(name, arguments, timeout)``.

Every call is resolved through the ToolRegistry, gated by the
SecuritySandbox, and then dispatched to the owning session (or, for
execution-category tools, to the sandbox's isolated executor).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from toolbridge.config.settings import BridgeSettings, ServerConfig
from toolbridge.core.exceptions import (
    ConfigurationError,
    ServerNotFoundError,
    ToolBridgeError,
    ToolNotFoundError,
    TransportClosedError,
)
from toolbridge.core.structured_logger import TraceContext, get_logger
from toolbridge.observability.health import SessionHealthMonitor
from toolbridge.protocols.mcp.session import ServerSession
from toolbridge.protocols.mcp.tool_registry import ToolRegistry
from toolbridge.protocols.mcp.transports import Transport, create_transport
from toolbridge.protocols.mcp.types import SessionState, ToolDefinition, ToolResult
from toolbridge.security.sandbox import SecuritySandbox

logger = get_logger("ServerManager")

TransportFactory = Callable[[ServerConfig, BridgeSettings], Transport]


@dataclass(frozen=True)
class ServerStatus:
    """Read-only snapshot of one server"""

    server_id: str
    transport: str
    state: SessionState
    tool_count: int
    consecutive_failures: int = 0
    consecutive_timeouts: int = 0
    pending_requests: int = 0
    last_error: str | None = None
    connected_at: float | None = None
    last_ping: float | None = None
    protocol_version: str | None = None
    server_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "transport": self.transport,
            "state": self.state.value,
            "tool_count": self.tool_count,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_timeouts": self.consecutive_timeouts,
            "pending_requests": self.pending_requests,
            "last_error": self.last_error,
            "connected_at": self.connected_at,
            "last_ping": self.last_ping,
            "protocol_version": self.protocol_version,
            "server_info": self.server_info,
        }


@dataclass
class _ManagedServer:
    config: ServerConfig
    session: ServerSession
    monitor: SessionHealthMonitor


class ServerManager:
    """Starts, stops and brokers calls against tool servers."""

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        sandbox: SecuritySandbox | None = None,
        registry: ToolRegistry | None = None,
        transport_factory: TransportFactory = create_transport,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.sandbox = sandbox or SecuritySandbox()
        self.registry = registry or ToolRegistry()
        self._transport_factory = transport_factory
        self._servers: dict[str, _ManagedServer] = {}
        self._configs: dict[str, ServerConfig] = {}
        self._lost: dict[str, ServerStatus] = {}
        self._starting: set[str] = set()

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    async def start_server(self, config: ServerConfig) -> str:
        """
        Connect to a server and register its tools.

        Returns:
            The server id (the configured name)

        Raises:
            ConfigurationError: config is incomplete, or the name is already running
            ServerConnectionError: transport setup or handshake failed; nothing is registered
        """
        missing = config.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Server '{config.name}' is missing required settings: {', '.join(missing)}",
                details={"server": config.name, "missing": missing},
            )

        server_id = config.name
        if server_id in self._servers or server_id in self._starting:
            raise ConfigurationError(
                f"Server '{server_id}' is already running",
                details={"server": server_id},
            )

        self._starting.add(server_id)
        try:
            transport = self._transport_factory(config, self.settings)
            session = ServerSession(
                config,
                transport,
                self.settings,
                on_closed=self._on_session_closed,
                on_tools_changed=self._on_tools_changed,
            )
            with TraceContext():
                logger.info("Starting server", server=server_id, transport=config.transport.value)
                try:
                    await session.connect()
                except ToolBridgeError as e:
                    logger.error("Server failed to start", server=server_id, error=e.to_dict())
                    self._lost[server_id] = self._snapshot(server_id, config, session)
                    raise
        finally:
            self._starting.discard(server_id)

        monitor = SessionHealthMonitor(session, self.settings.health)
        self._servers[server_id] = _ManagedServer(config, session, monitor)
        self._configs[server_id] = config
        self._lost.pop(server_id, None)
        self.registry.register_server_tools(server_id, session.list_tools())
        await monitor.start()

        logger.info(
            "Server started",
            server=server_id,
            tools=len(session.tools),
            protocol_version=session.protocol_version,
        )
        return server_id

    async def stop_server(self, server_id: str) -> None:
        """
        Stop a server's monitor, remove its tools and close its transport.

        A server that was lost or failed to start is forgotten instead.

        Raises:
            ServerNotFoundError: the id is neither running nor lost
        """
        managed = self._servers.pop(server_id, None)
        lost = self._lost.pop(server_id, None)
        self._configs.pop(server_id, None)
        if managed is None:
            if lost is None:
                raise ServerNotFoundError(server_id)
            logger.info("Lost server removed", server=server_id)
            return

        await managed.monitor.stop()
        removed = self.registry.unregister_server(server_id)
        await managed.session.disconnect()
        logger.info("Server stopped", server=server_id, tools_removed=len(removed))

    async def restart_server(self, server_id: str) -> str:
        """Stop (if running) and start again with the stored configuration."""
        config = self._configs.get(server_id)
        if config is None:
            raise ServerNotFoundError(server_id)
        if server_id in self._servers:
            await self.stop_server(server_id)
        logger.info("Restarting server", server=server_id)
        return await self.start_server(config)

    async def shutdown(self) -> None:
        """Stop every server concurrently."""
        server_ids = list(self._servers)
        self._configs.clear()
        self._lost.clear()
        if not server_ids:
            return
        logger.info("Stopping all servers", count=len(server_ids))
        results = await asyncio.gather(
            *(self.stop_server(server_id) for server_id in server_ids),
            return_exceptions=True,
        )
        for server_id, result in zip(server_ids, results):
            if isinstance(result, Exception):
                logger.error("Error stopping server %s: %s", server_id, result)

    async def _on_session_closed(self, session: ServerSession, exc: TransportClosedError) -> None:
        managed = self._servers.get(session.name)
        if managed is None or managed.session is not session:
            return
        del self._servers[session.name]
        await managed.monitor.stop()
        removed = self.registry.unregister_server(session.name)
        self._lost[session.name] = self._snapshot(session.name, managed.config, session, managed.monitor)
        logger.warning(
            "Server disconnected",
            server=session.name,
            error=exc.message,
            tools_removed=len(removed),
        )

    def _on_tools_changed(self, session: ServerSession) -> None:
        managed = self._servers.get(session.name)
        if managed is None or managed.session is not session:
            return
        self.registry.register_server_tools(session.name, session.list_tools())

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _snapshot(
        self,
        server_id: str,
        config: ServerConfig,
        session: ServerSession,
        monitor: SessionHealthMonitor | None = None,
    ) -> ServerStatus:
        return ServerStatus(
            server_id=server_id,
            transport=config.transport.value,
            state=session.state,
            tool_count=len(self.registry.tools_for_server(server_id)),
            consecutive_failures=monitor.consecutive_failures if monitor else 0,
            consecutive_timeouts=session.consecutive_timeouts,
            pending_requests=session.pending_count,
            last_error=session.last_error,
            connected_at=session.connected_at,
            last_ping=monitor.last_check_time if monitor else None,
            protocol_version=session.protocol_version,
            server_info=dict(session.server_info),
        )

    def get_server_status(self, server_id: str) -> ServerStatus:
        managed = self._servers.get(server_id)
        if managed is not None:
            return self._snapshot(server_id, managed.config, managed.session, managed.monitor)
        if server_id in self._lost:
            return self._lost[server_id]
        raise ServerNotFoundError(server_id)

    def list_servers(self) -> list[ServerStatus]:
        running = [self.get_server_status(server_id) for server_id in self._servers]
        return running + list(self._lost.values())

    def get_session(self, server_id: str) -> ServerSession:
        managed = self._servers.get(server_id)
        if managed is None:
            raise ServerNotFoundError(server_id)
        return managed.session

    def list_tools(self) -> list[ToolDefinition]:
        return self.registry.list_tools()

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """
        Call a tool by name on whichever server owns it.

        Args:
            name: Tool name as listed by list_tools()
            arguments: JSON object for the tool's input schema
            timeout: Per-call timeout in seconds (defaults to the server's call_timeout)

        Returns:
            ToolResult

        Raises:
            ToolNotFoundError: no server owns the name
            PermissionDeniedError: the sandbox rejected the call (nothing was sent)
            ValidationError: arguments do not match the schema (nothing was sent)
            SessionUnavailableError, CallTimeoutError, ApplicationError,
            ProtocolError, TransportClosedError, ResourceLimitError
        """
        with TraceContext():
            entry = self.registry.resolve(name)
            managed = self._servers.get(entry.server_id)
            if managed is None:
                raise ToolNotFoundError(name, details={"server": entry.server_id})
            session = managed.session

            started = time.monotonic()
            try:
                decision = self.sandbox.validate_tool_call(
                    entry.server_id, name, arguments, working_dir=managed.config.cwd
                )
                if decision.isolated:
                    session.validate_arguments(name, decision.arguments)
                    result = await self.sandbox.execute_isolated(decision)
                else:
                    result = await session.call_tool(name, decision.arguments, timeout)
            except ToolBridgeError as e:
                logger.warning(
                    "Tool call failed",
                    server=entry.server_id,
                    tool=name,
                    duration_ms=round((time.monotonic() - started) * 1000, 1),
                    error=e.to_dict(),
                )
                raise

            logger.info(
                "Tool call completed",
                server=entry.server_id,
                tool=name,
                isolated=decision.isolated,
                is_error=result.is_error,
                duration_ms=round((time.monotonic() - started) * 1000, 1),
            )
            return result

    async def __aenter__(self) -> ServerManager:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
