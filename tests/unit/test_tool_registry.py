"""
Tests for ToolRegistry — tool name to owning server mapping.
"""

import logging

import pytest

from toolbridge.core.exceptions import ToolNotFoundError
from toolbridge.protocols.mcp.tool_registry import ToolRegistry
from toolbridge.protocols.mcp.types import ToolDefinition


def _tool(name):
    return ToolDefinition(name=name, description=f"{name} tool", input_schema={"type": "object"})


@pytest.fixture
def registry():
    return ToolRegistry()


class TestRegistration:
    def test_every_tool_resolves_to_its_server(self, registry):
        tools = [_tool(f"tool_{i}") for i in range(5)]
        assert registry.register_server_tools("files", tools) == 5

        assert len(registry) == 5
        for tool in tools:
            assert registry.resolve_tool(tool.name) == "files"
            assert registry.resolve(tool.name).definition is tool
        assert {t.name for t in registry.list_tools()} == {t.name for t in tools}

    def test_unknown_tool(self, registry):
        with pytest.raises(ToolNotFoundError) as exc_info:
            registry.resolve("ghost")
        assert exc_info.value.tool_name == "ghost"
        assert registry.get("ghost") is None
        assert "ghost" not in registry

    def test_reregistering_replaces_server_tools(self, registry):
        registry.register_server_tools("files", [_tool("read"), _tool("write")])
        registry.register_server_tools("files", [_tool("read")])
        assert "write" not in registry
        assert [t.name for t in registry.tools_for_server("files")] == ["read"]


class TestConflicts:
    def test_last_registration_wins(self, registry, caplog):
        registry.register_tool("a", _tool("search"))
        with caplog.at_level(logging.WARNING):
            displaced = registry.register_tool("b", _tool("search"))

        assert displaced.server_id == "a"
        assert registry.resolve_tool("search") == "b"
        assert len(registry) == 1
        assert "Tool name conflict" in caplog.text
        assert "'search'" in caplog.text

    def test_same_server_reregistration_is_not_a_conflict(self, registry, caplog):
        registry.register_tool("a", _tool("search"))
        with caplog.at_level(logging.WARNING):
            assert registry.register_tool("a", _tool("search")) is None
        assert "conflict" not in caplog.text

    def test_unregistering_loser_keeps_winner(self, registry):
        registry.register_server_tools("a", [_tool("search"), _tool("only_a")])
        registry.register_server_tools("b", [_tool("search")])

        removed = registry.unregister_server("a")

        assert removed == ["only_a"]
        assert registry.resolve_tool("search") == "b"


class TestUnregistration:
    def test_unregister_server_removes_all(self, registry):
        registry.register_server_tools("a", [_tool("x"), _tool("y")])
        registry.register_server_tools("b", [_tool("z")])
        assert sorted(registry.unregister_server("a")) == ["x", "y"]
        assert len(registry) == 1
        assert registry.unregister_server("a") == []

    def test_unregister_tool(self, registry):
        registry.register_tool("a", _tool("x"))
        assert registry.unregister_tool("x") is True
        assert registry.unregister_tool("x") is False
