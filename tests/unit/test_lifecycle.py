"""
Unit tests for lifecycle management — Runtime, RuntimeContext, and shutdown.

Tests bootstrap of several servers, shutdown sequencing and signal handling.
"""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import MagicMock, patch

import pytest

from toolbridge.config.settings import ServerConfig
from toolbridge.lifecycle import (
    Runtime,
    RuntimeContext,
    ShutdownPriority,
)
from toolbridge.security.security_policy import PermissionPolicy


@pytest.fixture(autouse=True)
def _quiet_logging():
    with patch("toolbridge.lifecycle.configure_logging") as configure:
        yield configure


# ---------------------------------------------------------------------------
# RuntimeContext and priorities
# ---------------------------------------------------------------------------


class TestRuntimeContext:
    def test_runtime_context_defaults(self):
        """RuntimeContext initializes with empty collections."""
        ctx = RuntimeContext(settings=MagicMock(), manager=MagicMock(), sandbox=MagicMock())
        assert ctx.shutdown_callbacks == []
        assert ctx.started_servers == []
        assert ctx.failed_servers == {}


class TestShutdownPriority:
    def test_priority_ordering(self):
        """CRITICAL > HIGH > NORMAL > LOW > LOWEST."""
        assert ShutdownPriority.CRITICAL.value > ShutdownPriority.HIGH.value
        assert ShutdownPriority.HIGH.value > ShutdownPriority.NORMAL.value
        assert ShutdownPriority.NORMAL.value > ShutdownPriority.LOW.value
        assert ShutdownPriority.LOW.value > ShutdownPriority.LOWEST.value


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_failed_servers_do_not_stop_others(self, settings, echo_server_config, _quiet_logging):
        servers = [
            echo_server_config("echo"),
            echo_server_config("mute", "--silent", connect_timeout=0.3),
            ServerConfig(name="incomplete"),
        ]
        runtime = Runtime(
            servers=servers,
            policies={"echo": PermissionPolicy(server_name="echo")},
            settings=settings,
            install_signal_handlers=False,
        )
        ctx = await runtime.bootstrap()
        try:
            assert ctx.started_servers == ["echo"]
            assert set(ctx.failed_servers) == {"mute", "incomplete"}
            assert "requires 'command'" in ctx.failed_servers["incomplete"]
            assert {t.name for t in ctx.manager.list_tools()} == {"echo", "slow_echo"}
            result = await ctx.manager.call_tool("echo", {"text": "ready"})
            assert result.text == "ready"
            _quiet_logging.assert_called_once_with(settings.logging)
        finally:
            await runtime.shutdown()
        assert ctx.manager.list_servers() == []

    @pytest.mark.asyncio
    async def test_bootstrap_twice_returns_same_context(self, settings):
        runtime = Runtime(settings=settings, install_signal_handlers=False)
        first = await runtime.bootstrap()
        assert await runtime.bootstrap() is first
        await runtime.shutdown()

    @pytest.mark.asyncio
    async def test_signal_handlers_installed(self, settings):
        runtime = Runtime(settings=settings)
        with patch("toolbridge.lifecycle.signal.signal") as mock_signal:
            await runtime.bootstrap()
        installed = {c.args[0] for c in mock_signal.call_args_list}
        assert installed == {signal.SIGINT, signal.SIGTERM}

        handler = mock_signal.call_args_list[0].args[1]
        handler(signal.SIGTERM, None)
        await asyncio.wait_for(runtime.wait_for_shutdown(), 1)
        await runtime.shutdown()


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_without_bootstrap_is_noop(self, settings):
        runtime = Runtime(settings=settings, install_signal_handlers=False)
        await runtime.shutdown()
        assert runtime.context is None

    @pytest.mark.asyncio
    async def test_callbacks_run_in_priority_order(self, settings):
        runtime = Runtime(settings=settings, install_signal_handlers=False)
        await runtime.bootstrap()
        order = []

        async def flush_audit():
            order.append("audit")

        def close_files():
            order.append("files")

        def broken():
            raise RuntimeError("boom")

        runtime.register_shutdown_callback(close_files, ShutdownPriority.LOW)
        runtime.register_shutdown_callback(broken, ShutdownPriority.HIGH)
        runtime.register_shutdown_callback(flush_audit, ShutdownPriority.CRITICAL)

        await runtime.shutdown()
        assert order == ["audit", "files"]

    @pytest.mark.asyncio
    async def test_slow_callback_times_out(self, settings):
        runtime = Runtime(settings=settings, install_signal_handlers=False)
        await runtime.bootstrap()
        done = []

        async def hang():
            await asyncio.sleep(10)

        runtime.register_shutdown_callback(hang, ShutdownPriority.HIGH, timeout=0.05)
        runtime.register_shutdown_callback(lambda: done.append(True), ShutdownPriority.LOW, name="after")
        await runtime.shutdown()
        assert done == [True]

    @pytest.mark.asyncio
    async def test_register_before_bootstrap_is_ignored(self, settings):
        runtime = Runtime(settings=settings, install_signal_handlers=False)
        runtime.register_shutdown_callback(lambda: None)
        assert runtime.context is None

    @pytest.mark.asyncio
    async def test_run_until_shutdown_requested(self, settings):
        runtime = Runtime(settings=settings, install_signal_handlers=False)
        task = asyncio.create_task(runtime.run())
        while runtime.context is None:
            await asyncio.sleep(0.01)
        runtime.request_shutdown()
        await asyncio.wait_for(task, 2)
        assert runtime.context.manager.list_servers() == []
