"""
Server Session
==============

One session owns one transport to one tool server. It runs the handshake,
discovers what the server declared, and serves calls while READY.

State machine:
    DISCONNECTED -> CONNECTING -> INITIALIZING -> READY <-> DEGRADED
Any stage can fall back to DISCONNECTED. Once disconnected a session is
closed for good; the manager builds a new one to reconnect.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from jsonschema.validators import validator_for

from toolbridge.config.settings import BridgeSettings, ServerConfig
from toolbridge.core.exceptions import (
    ApplicationError,
    CallTimeoutError,
    ProtocolError,
    ServerConnectionError,
    SessionUnavailableError,
    ToolBridgeError,
    ToolNotFoundError,
    TransportClosedError,
    ValidationError,
)
from toolbridge.protocols.mcp.messages import (
    METHOD_NOT_FOUND,
    PROTOCOL_ERROR_CODES,
    JSONObject,
    JSONValue,
    Message,
    MessageKind,
    PendingRequestTable,
    ensure_json_value,
)
from toolbridge.protocols.mcp.transports.base import Transport
from toolbridge.protocols.mcp.types import (
    PromptDefinition,
    ResourceDefinition,
    ServerCapabilities,
    SessionState,
    ToolDefinition,
    ToolResult,
)

logger = logging.getLogger(__name__)

MAX_DISCOVERY_PAGES = 100

# Server log levels mapped onto stdlib levels
_SERVER_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}

ClosedCallback = Callable[["ServerSession", TransportClosedError], Awaitable[None] | None]
ToolsChangedCallback = Callable[["ServerSession"], Awaitable[None] | None]


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class ServerSession:
    """Connection, handshake and call surface for a single tool server."""

    def __init__(
        self,
        config: ServerConfig,
        transport: Transport,
        settings: BridgeSettings | None = None,
        on_closed: ClosedCallback | None = None,
        on_tools_changed: ToolsChangedCallback | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.name = config.name
        self.config = config
        self.transport = transport
        self.settings = settings or BridgeSettings()
        self.state = SessionState.DISCONNECTED

        self.capabilities = ServerCapabilities()
        self.server_info: JSONObject = {}
        self.protocol_version: str | None = None
        self.instructions: str | None = None
        self.tools: dict[str, ToolDefinition] = {}
        self.resources: dict[str, ResourceDefinition] = {}
        self.prompts: dict[str, PromptDefinition] = {}

        self.connected_at: float | None = None
        self.last_error: str | None = None
        self.consecutive_timeouts = 0

        self._on_closed = on_closed
        self._on_tools_changed = on_tools_changed
        self._pending = PendingRequestTable()
        self._validators: dict[str, Any] = {}
        self._reader_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.debug("Session %s: %s -> %s", self.name, self.state, state)
        self.state = state

    def mark_degraded(self, reason: str) -> None:
        if self.state is SessionState.READY:
            logger.warning("Session %s degraded: %s", self.name, reason)
            self.last_error = reason
            self._set_state(SessionState.DEGRADED)

    def mark_ready(self) -> None:
        if self.state is SessionState.DEGRADED:
            logger.info("Session %s recovered", self.name)
            self.consecutive_timeouts = 0
            self._set_state(SessionState.READY)

    def _require_ready(self) -> None:
        if self.state is not SessionState.READY:
            raise SessionUnavailableError(
                f"Server '{self.name}' is {self.state}, not ready",
                details={"server": self.name, "state": str(self.state)},
            )

    # ------------------------------------------------------------------
    # Connect / handshake / discovery
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the transport, run the handshake and discover declared capabilities.

        The whole sequence shares one deadline (``connect_timeout``).

        Raises:
            ServerConnectionError: setup, handshake or discovery failed or timed out
            SessionUnavailableError: the session was already used
        """
        if self._closed or self.state is not SessionState.DISCONNECTED:
            raise SessionUnavailableError(f"Session for '{self.name}' cannot be connected again")

        timeout = self.settings.connect_timeout_for(self.config)
        self._set_state(SessionState.CONNECTING)
        try:
            async with asyncio.timeout(timeout):
                await self.transport.connect()
                self._reader_task = asyncio.create_task(
                    self._read_loop(), name=f"session-reader-{self.name}"
                )
                await self._handshake()
                self._set_state(SessionState.READY)
                await self._discover()
        except TimeoutError as e:
            await self._abort_connect(f"no handshake within {timeout}s")
            raise ServerConnectionError(
                f"Server '{self.name}' did not complete the handshake within {timeout}s",
                details={"server": self.name, "timeout": timeout},
            ) from e
        except ServerConnectionError as e:
            await self._abort_connect(e.message)
            raise
        except ToolBridgeError as e:
            await self._abort_connect(e.message)
            raise ServerConnectionError(
                f"Handshake with '{self.name}' failed: {e.message}",
                details={"server": self.name, **e.details},
            ) from e
        except BaseException:
            await self._abort_connect("connect interrupted")
            raise

        self.connected_at = time.time()
        logger.info(
            "Connected to %s (protocol %s, capabilities=%s, %d tools)",
            self.name, self.protocol_version, self.capabilities.declared(), len(self.tools),
        )

    async def _handshake(self) -> None:
        self._set_state(SessionState.INITIALIZING)
        result = await self._request("initialize", {
            "protocolVersion": self.settings.protocol_version,
            "capabilities": {},
            "clientInfo": {
                "name": self.settings.client_name,
                "version": self.settings.client_version,
            },
        })
        if not isinstance(result, dict) or not isinstance(result.get("protocolVersion"), str):
            raise ProtocolError(f"Server '{self.name}' sent a malformed initialize result")

        self.protocol_version = result["protocolVersion"]
        self.capabilities = ServerCapabilities.from_dict(result.get("capabilities"))
        info = result.get("serverInfo")
        self.server_info = info if isinstance(info, dict) else {}
        instructions = result.get("instructions")
        self.instructions = instructions if isinstance(instructions, str) else None

        if self.protocol_version != self.settings.protocol_version:
            logger.info(
                "Server %s negotiated protocol %s (offered %s)",
                self.name, self.protocol_version, self.settings.protocol_version,
            )
        self.transport.on_initialized(self.protocol_version)
        await self._notify("notifications/initialized")

    async def _discover(self, timeout: float | None = None) -> None:
        if self.capabilities.tools:
            await self._discover_tools(timeout)
        if self.capabilities.resources:
            entries = await self._list_all("resources/list", "resources", timeout)
            self.resources = self._parse_entries(entries, ResourceDefinition.from_dict, "uri")
        if self.capabilities.prompts:
            entries = await self._list_all("prompts/list", "prompts", timeout)
            self.prompts = self._parse_entries(entries, PromptDefinition.from_dict, "name")

    async def _discover_tools(self, timeout: float | None = None) -> None:
        entries = await self._list_all("tools/list", "tools", timeout)
        tools = self._parse_entries(entries, ToolDefinition.from_dict, "name")
        self.tools = tools
        self._validators = {
            name: validator_for(tool.input_schema)(tool.input_schema)
            for name, tool in tools.items()
        }

    def _parse_entries(self, entries: list[Any], parse: Callable[[Any], Any], key: str) -> dict[str, Any]:
        parsed: dict[str, Any] = {}
        for raw in entries:
            try:
                item = parse(raw)
            except ValueError as e:
                logger.warning("Dropping malformed entry from %s: %s", self.name, e)
                continue
            item_key = getattr(item, key)
            if item_key in parsed:
                logger.warning("Server %s listed %r twice; keeping the last one", self.name, item_key)
            parsed[item_key] = item
        return parsed

    async def _list_all(self, method: str, key: str, timeout: float | None) -> list[Any]:
        """Follow ``nextCursor`` pagination. A category the server fails to list is left empty."""
        entries: list[Any] = []
        cursor: str | None = None
        for _ in range(MAX_DISCOVERY_PAGES):
            params = {"cursor": cursor} if cursor else None
            try:
                page = await self._request(method, params, timeout)
            except (ApplicationError, ProtocolError) as e:
                logger.warning("%s on %s failed: %s", method, self.name, e.message)
                return entries
            if not isinstance(page, dict) or not isinstance(page.get(key), list):
                logger.warning("%s on %s returned a malformed page", method, self.name)
                return entries
            entries.extend(page[key])
            cursor = page.get("nextCursor")
            if not isinstance(cursor, str) or not cursor:
                return entries
        logger.warning("%s on %s exceeded %d pages; stopping", method, self.name, MAX_DISCOVERY_PAGES)
        return entries

    async def refresh_tools(self) -> None:
        """Re-run tool discovery and notify the owner."""
        if self.state not in (SessionState.READY, SessionState.DEGRADED):
            return
        await self._discover_tools(self.settings.call_timeout_for(self.config))
        logger.info("Tool list of %s refreshed: %d tools", self.name, len(self.tools))
        if self._on_tools_changed is not None:
            await _invoke(self._on_tools_changed, self)

    async def _abort_connect(self, reason: str) -> None:
        self.last_error = reason
        await self._teardown(TransportClosedError(f"Connection to '{self.name}' aborted: {reason}"))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        params: JSONObject | None = None,
        timeout: float | None = None,
    ) -> JSONValue:
        """Send one request and wait for its correlated reply."""
        pending = self._pending.create(method, timeout)
        sent = False

        async def exchange() -> Message:
            nonlocal sent
            await self.transport.send(Message.request(pending.id, method, params))
            sent = True
            return await pending.future

        try:
            if timeout is None:
                reply = await exchange()
            else:
                reply = await asyncio.wait_for(exchange(), timeout)
        except TimeoutError as e:
            if sent:
                self._send_cancelled(pending.id, "timeout")
            raise CallTimeoutError(
                f"No reply to {method} from '{self.name}' within {timeout}s",
                timeout=timeout,
                details={"server": self.name, "method": method, "request_id": pending.id},
            ) from e
        except asyncio.CancelledError:
            if sent:
                self._send_cancelled(pending.id, "cancelled by caller")
            raise
        finally:
            self._pending.discard(pending.id)

        if reply.error is not None:
            error = reply.error
            if error.code in PROTOCOL_ERROR_CODES:
                raise ProtocolError(
                    f"{method} rejected by '{self.name}': {error.message}",
                    request_id=pending.id,
                    details={"code": error.code},
                )
            raise ApplicationError(
                error.message,
                rpc_code=error.code,
                data=error.data,
                details={"server": self.name, "method": method},
            )
        return reply.result

    async def _call(self, method: str, params: JSONObject, timeout: float | None) -> JSONValue:
        """A request made on behalf of a caller; counts toward timeout escalation."""
        timeout = timeout if timeout is not None else self.settings.call_timeout_for(self.config)
        try:
            result = await self._request(method, params, timeout)
        except CallTimeoutError:
            self.consecutive_timeouts += 1
            if self.consecutive_timeouts >= self.settings.timeout_escalation_threshold:
                self.mark_degraded(f"{self.consecutive_timeouts} consecutive call timeouts")
            raise
        self.consecutive_timeouts = 0
        return result

    async def _notify(self, method: str, params: JSONObject | None = None) -> None:
        await self.transport.send(Message.notification(method, params))

    def _send_cancelled(self, request_id: int, reason: str) -> None:
        if not self.transport.is_connected:
            return
        task = asyncio.create_task(self._notify_cancelled(request_id, reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_cancelled(self, request_id: int, reason: str) -> None:
        try:
            await self._notify("notifications/cancelled", {"requestId": request_id, "reason": reason})
        except ToolBridgeError as e:
            logger.debug("Could not send cancellation for %s to %s: %s", request_id, self.name, e.message)

    # ------------------------------------------------------------------
    # Public call surface
    # ------------------------------------------------------------------

    def list_tools(self) -> list[ToolDefinition]:
        return list(self.tools.values())

    def validate_arguments(self, tool_name: str, arguments: Any) -> JSONObject:
        """
        Check arguments against the tool's input schema without any I/O.

        Raises:
            ToolNotFoundError: the server does not expose the tool
            ValidationError: arguments are not JSON or do not satisfy the schema
        """
        if tool_name not in self.tools:
            raise ToolNotFoundError(tool_name, details={"server": self.name})
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError(
                f"Arguments for '{tool_name}' must be an object",
                details={"tool": tool_name},
            )
        try:
            ensure_json_value(arguments)
        except TypeError as e:
            raise ValidationError(str(e), details={"tool": tool_name}) from e

        validator = self._validators[tool_name]
        errors = sorted(validator.iter_errors(arguments), key=lambda err: list(err.path))
        if errors:
            messages = [
                f"{'/'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors
            ]
            raise ValidationError(
                f"Invalid arguments for '{tool_name}': {messages[0]}",
                details={"tool": tool_name, "errors": messages},
            )
        return arguments

    async def call_tool(
        self,
        name: str,
        arguments: JSONObject | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """
        Invoke a tool on the server.

        Args:
            name: Tool name as discovered from this server
            arguments: JSON object matching the tool's input schema
            timeout: Seconds to wait for the reply (defaults to call_timeout)

        Returns:
            ToolResult with the server's content blocks

        Raises:
            SessionUnavailableError: session is not READY
            ToolNotFoundError / ValidationError: rejected before any I/O
            CallTimeoutError, ApplicationError, ProtocolError, TransportClosedError
        """
        self._require_ready()
        arguments = self.validate_arguments(name, arguments)
        result = await self._call("tools/call", {"name": name, "arguments": arguments}, timeout)
        try:
            return ToolResult.from_result(result)
        except ValueError as e:
            raise ProtocolError(f"Malformed tools/call result from '{self.name}': {e}") from e

    async def read_resource(self, uri: str, timeout: float | None = None) -> list[JSONValue]:
        self._require_ready()
        if not self.capabilities.resources:
            raise ProtocolError(f"Server '{self.name}' did not declare resources")
        result = await self._call("resources/read", {"uri": uri}, timeout)
        if not isinstance(result, dict) or not isinstance(result.get("contents"), list):
            raise ProtocolError(f"Malformed resources/read result from '{self.name}'")
        return result["contents"]

    async def get_prompt(
        self,
        name: str,
        arguments: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> JSONObject:
        self._require_ready()
        if not self.capabilities.prompts:
            raise ProtocolError(f"Server '{self.name}' did not declare prompts")
        params: JSONObject = {"name": name}
        if arguments:
            params["arguments"] = arguments
        result = await self._call("prompts/get", params, timeout)
        if not isinstance(result, dict) or not isinstance(result.get("messages"), list):
            raise ProtocolError(f"Malformed prompts/get result from '{self.name}'")
        return result

    async def ping(self, timeout: float | None = None) -> bool:
        """
        Liveness round trip. Any reply counts as alive, an error reply included.
        Never raises for transport trouble; returns False instead.
        """
        if self._closed or self.state not in (SessionState.READY, SessionState.DEGRADED):
            return False
        if not await self.transport.ping():
            return False
        try:
            await self._request("ping", None, timeout)
        except (ApplicationError, ProtocolError):
            return True
        except (CallTimeoutError, ServerConnectionError) as e:
            logger.debug("Ping to %s failed: %s", self.name, e.message)
            return False
        return True

    # ------------------------------------------------------------------
    # Reader
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = await self.transport.receive()
                except ProtocolError as e:
                    if not self._pending.reject(e.request_id, e):
                        logger.warning("Undecodable message from %s: %s", self.name, e.message)
                    continue
                await self._dispatch(message)
        except TransportClosedError as e:
            await self._on_transport_lost(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Reader for %s failed", self.name)
            await self._on_transport_lost(TransportClosedError(f"Reader failed: {e}"))

    async def _dispatch(self, message: Message) -> None:
        if message.kind is MessageKind.RESPONSE:
            if message.id is None:
                logger.warning(
                    "Server %s reported an uncorrelated error: %s",
                    self.name, message.error.message if message.error else message.result,
                )
                return
            self._pending.resolve(message)
        elif message.kind is MessageKind.REQUEST:
            await self._answer_server_request(message)
        else:
            self._handle_notification(message)

    async def _answer_server_request(self, message: Message) -> None:
        if message.method == "ping":
            reply = Message.response(message.id, {})
        else:
            reply = Message.error_response(
                message.id, METHOD_NOT_FOUND, f"Method not supported by client: {message.method}"
            )
        try:
            await self.transport.send(reply)
        except ToolBridgeError as e:
            logger.debug("Could not answer %s from %s: %s", message.method, self.name, e.message)

    def _handle_notification(self, message: Message) -> None:
        params = message.params or {}
        if message.method == "notifications/tools/list_changed":
            if self.state in (SessionState.READY, SessionState.DEGRADED):
                task = asyncio.create_task(self._refresh_after_change())
                self._background.add(task)
                task.add_done_callback(self._background.discard)
        elif message.method == "notifications/message":
            level = _SERVER_LOG_LEVELS.get(str(params.get("level", "info")), logging.INFO)
            logger.log(level, "[%s] %s", self.name, params.get("data"))
        else:
            logger.debug("Notification %s from %s", message.method, self.name)

    async def _refresh_after_change(self) -> None:
        try:
            await self.refresh_tools()
        except ToolBridgeError as e:
            logger.warning("Refreshing tools of %s failed: %s", self.name, e.message)

    async def _on_transport_lost(self, exc: TransportClosedError) -> None:
        if self._closed:
            return
        was_ready = self.state in (SessionState.READY, SessionState.DEGRADED)
        self.last_error = exc.message
        await self._teardown(exc)
        if was_ready:
            logger.warning("Lost connection to %s: %s", self.name, exc.message)
            if self._on_closed is not None:
                await _invoke(self._on_closed, self, exc)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self, exc: TransportClosedError) -> None:
        self._closed = True
        failed = self._pending.reject_all(exc)
        if failed:
            logger.info("Failed %d in-flight request(s) to %s", failed, self.name)
        self._set_state(SessionState.DISCONNECTED)

        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        for task in list(self._background):
            if task is not asyncio.current_task():
                task.cancel()
        await self.transport.disconnect()

    async def disconnect(self) -> None:
        """Close the session and its transport. Safe to call more than once."""
        if self._closed:
            return
        logger.info("Disconnecting from %s", self.name)
        await self._teardown(TransportClosedError(f"Session for '{self.name}' was closed"))

    async def __aenter__(self) -> ServerSession:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()
