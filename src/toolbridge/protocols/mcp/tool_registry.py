"""
Tool Registry
=============
Global tool name -> owning server map, built from session discovery.

Collisions are resolved last-registered-wins and logged as conflicts.
A server's entries are removed together when it goes away.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from toolbridge.core.exceptions import ToolNotFoundError
from toolbridge.protocols.mcp.types import ToolDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredTool:
    """One registry entry"""

    server_id: str
    definition: ToolDefinition
    registered_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def name(self) -> str:
        return self.definition.name


class ToolRegistry:
    """Registry of tools exposed by connected servers"""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._lock = threading.Lock()

    def register_tool(self, server_id: str, definition: ToolDefinition) -> RegisteredTool | None:
        """
        Register a tool for a server.

        Returns:
            The entry that was displaced, if another server owned the name
        """
        entry = RegisteredTool(server_id=server_id, definition=definition)
        with self._lock:
            previous = self._tools.get(definition.name)
            self._tools[definition.name] = entry

        if previous is not None and previous.server_id != server_id:
            logger.warning(
                "Tool name conflict: '%s' from server '%s' replaces the one from '%s'",
                definition.name, server_id, previous.server_id,
            )
            return previous
        return None

    def register_server_tools(self, server_id: str, definitions: list[ToolDefinition]) -> int:
        """Replace everything a server owns with a fresh tool list"""
        self.unregister_server(server_id)
        for definition in definitions:
            self.register_tool(server_id, definition)
        logger.info("Registered %d tools from server '%s'", len(definitions), server_id)
        return len(definitions)

    def unregister_tool(self, name: str) -> bool:
        with self._lock:
            return self._tools.pop(name, None) is not None

    def unregister_server(self, server_id: str) -> list[str]:
        """
        Remove every entry the server currently owns.

        A name that a later server took over stays with that server.
        """
        with self._lock:
            owned = [name for name, entry in self._tools.items() if entry.server_id == server_id]
            for name in owned:
                del self._tools[name]
        if owned:
            logger.info("Unregistered %d tools from server '%s'", len(owned), server_id)
        return owned

    def resolve_tool(self, name: str) -> str:
        """Return the id of the server that owns ``name``"""
        return self.resolve(name).server_id

    def resolve(self, name: str) -> RegisteredTool:
        with self._lock:
            entry = self._tools.get(name)
        if entry is None:
            raise ToolNotFoundError(name)
        return entry

    def get(self, name: str) -> RegisteredTool | None:
        with self._lock:
            return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        with self._lock:
            return [entry.definition for entry in self._tools.values()]

    def tools_for_server(self, server_id: str) -> list[ToolDefinition]:
        with self._lock:
            return [e.definition for e in self._tools.values() if e.server_id == server_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._tools)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._tools
