"""Typed views of the values a tool server exposes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from toolbridge.protocols.mcp.messages import JSONObject, JSONValue


class SessionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"


def _declared(raw: dict[str, Any], key: str) -> bool:
    value = raw.get(key)
    return isinstance(value, dict) or value is True


@dataclass(frozen=True)
class ServerCapabilities:
    """Capability categories a server declared at handshake."""
    tools: bool = False
    resources: bool = False
    prompts: bool = False
    logging: bool = False
    tools_list_changed: bool = False
    raw: JSONObject = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> ServerCapabilities:
        if not isinstance(raw, dict):
            return cls()
        tools = raw.get("tools")
        return cls(
            tools=_declared(raw, "tools"),
            resources=_declared(raw, "resources"),
            prompts=_declared(raw, "prompts"),
            logging=_declared(raw, "logging"),
            tools_list_changed=isinstance(tools, dict) and tools.get("listChanged") is True,
            raw=raw,
        )

    def declared(self) -> list[str]:
        return [name for name in ("tools", "resources", "prompts", "logging") if getattr(self, name)]


@dataclass(frozen=True)
class ToolDefinition:
    """A named, schema-described callable operation exposed by a server."""
    name: str
    description: str = ""
    input_schema: JSONObject = field(default_factory=lambda: {"type": "object"})

    @classmethod
    def from_dict(cls, raw: Any) -> ToolDefinition:
        """
        Build a definition from one ``tools/list`` entry.

        Raises:
            ValueError: if the entry is malformed or its schema is not a valid JSON Schema
        """
        if not isinstance(raw, dict):
            raise ValueError(f"tool entry must be an object, got {type(raw).__name__}")
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("tool entry has no name")
        description = raw.get("description") or ""
        if not isinstance(description, str):
            raise ValueError(f"tool '{name}' has a non-string description")
        schema = raw.get("inputSchema")
        if schema is None:
            raise ValueError(f"tool '{name}' has no inputSchema")
        if not isinstance(schema, dict):
            raise ValueError(f"tool '{name}' inputSchema must be an object")
        try:
            validator_for(schema).check_schema(schema)
        except SchemaError as e:
            raise ValueError(f"tool '{name}' inputSchema is invalid: {e.message}") from e
        return cls(name=name, description=description, input_schema=schema)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


@dataclass(frozen=True)
class ResourceDefinition:
    uri: str
    name: str
    description: str = ""
    mime_type: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> ResourceDefinition:
        if not isinstance(raw, dict) or not isinstance(raw.get("uri"), str):
            raise ValueError("resource entry has no uri")
        return cls(
            uri=raw["uri"],
            name=str(raw.get("name") or raw["uri"]),
            description=str(raw.get("description") or ""),
            mime_type=raw.get("mimeType") if isinstance(raw.get("mimeType"), str) else None,
        )


@dataclass(frozen=True)
class PromptDefinition:
    name: str
    description: str = ""
    arguments: list[JSONObject] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> PromptDefinition:
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
            raise ValueError("prompt entry has no name")
        arguments = raw.get("arguments") or []
        if not isinstance(arguments, list):
            raise ValueError(f"prompt '{raw['name']}' arguments must be a list")
        return cls(name=raw["name"], description=str(raw.get("description") or ""), arguments=arguments)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one ``tools/call``."""
    content: list[JSONValue] = field(default_factory=list)
    is_error: bool = False
    structured_content: JSONValue = None
    raw: JSONObject = field(default_factory=dict)

    @classmethod
    def from_result(cls, result: Any) -> ToolResult:
        """
        Raises:
            ValueError: if the result is not an object or content is not a list
        """
        if not isinstance(result, dict):
            raise ValueError(f"tools/call result must be an object, got {type(result).__name__}")
        content = result.get("content", [])
        if not isinstance(content, list):
            raise ValueError("tools/call result 'content' must be a list")
        return cls(
            content=content,
            is_error=result.get("isError") is True,
            structured_content=result.get("structuredContent"),
            raw=result,
        )

    @property
    def text(self) -> str:
        """Concatenated text blocks."""
        return "\n".join(
            block["text"] for block in self.content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
