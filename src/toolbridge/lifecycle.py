"""Lifecycle Management — bootstrap, signal handling, and graceful shutdown for toolbridge."""

from __future__ import annotations

import asyncio
import inspect
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from toolbridge.config.settings import BridgeSettings, ServerConfig, load_settings
from toolbridge.core.exceptions import ToolBridgeError
from toolbridge.core.structured_logger import configure_logging, get_logger
from toolbridge.protocols.mcp.server_manager import ServerManager
from toolbridge.security.sandbox import SecuritySandbox
from toolbridge.security.security_policy import PermissionPolicy

logger = get_logger("Lifecycle")


class ShutdownPriority(Enum):
    """Shutdown priority levels (higher = shuts down first)."""

    CRITICAL = 100
    HIGH = 75
    NORMAL = 50
    LOW = 25
    LOWEST = 0


@dataclass
class ShutdownCallback:
    """Shutdown callback with priority."""

    callback: Callable
    priority: ShutdownPriority
    name: str
    timeout: float | None = None


@dataclass
class RuntimeContext:
    """Holds the initialized toolbridge components."""

    settings: BridgeSettings
    manager: ServerManager
    sandbox: SecuritySandbox
    shutdown_callbacks: list[ShutdownCallback] = field(default_factory=list)
    started_servers: list[str] = field(default_factory=list)
    failed_servers: dict[str, str] = field(default_factory=dict)


class Runtime:
    """Runtime orchestrator — bootstrap, signal handling, graceful shutdown."""

    def __init__(
        self,
        servers: list[ServerConfig] | None = None,
        policies: dict[str, PermissionPolicy] | None = None,
        settings: BridgeSettings | None = None,
        shutdown_timeout: float = 30.0,
        install_signal_handlers: bool = True,
    ):
        self.servers = list(servers or [])
        self.policies = dict(policies or {})
        self.settings = settings
        self.shutdown_timeout = shutdown_timeout
        self.install_signal_handlers = install_signal_handlers
        self.context: RuntimeContext | None = None
        self._shutdown_event = asyncio.Event()
        self._initialized = False
        self._shutdown_in_progress = False

    async def bootstrap(self) -> RuntimeContext:
        """Start every configured server and return the RuntimeContext.

        A server that fails to start is logged and skipped; it never stops the others.
        """
        if self._initialized:
            logger.warning("Runtime already initialized")
            return self.context

        settings = self.settings or load_settings()
        configure_logging(settings.logging)
        logger.info("Bootstrapping toolbridge runtime", servers=len(self.servers))

        sandbox = SecuritySandbox(self.policies)
        manager = ServerManager(settings, sandbox=sandbox)
        self.context = RuntimeContext(settings=settings, manager=manager, sandbox=sandbox)

        results = await asyncio.gather(
            *(manager.start_server(config) for config in self.servers),
            return_exceptions=True,
        )
        for config, result in zip(self.servers, results):
            if isinstance(result, ToolBridgeError):
                self.context.failed_servers[config.name] = result.message
                logger.error("Server %s failed to start: %s", config.name, result.message)
            elif isinstance(result, BaseException):
                raise result
            else:
                self.context.started_servers.append(result)

        if self.install_signal_handlers:
            self._setup_signal_handlers()

        self._initialized = True
        logger.info(
            "Runtime bootstrap completed",
            started=len(self.context.started_servers),
            failed=len(self.context.failed_servers),
            tools=len(manager.list_tools()),
        )
        return self.context

    def _setup_signal_handlers(self):
        """Setup OS signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, _frame):
            signal_name = signal.Signals(signum).name
            logger.info("Received %s, initiating graceful shutdown", signal_name)
            loop.call_soon_threadsafe(self._shutdown_event.set)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        logger.debug("Signal handlers registered")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def wait_for_shutdown(self):
        """Wait for shutdown signal."""
        await self._shutdown_event.wait()

    async def shutdown(self):
        """Graceful shutdown: run callbacks, then stop every server."""
        if not self._initialized:
            logger.warning("Runtime not initialized, nothing to shutdown")
            return
        if self._shutdown_in_progress:
            logger.warning("Shutdown already in progress")
            return

        self._shutdown_in_progress = True
        shutdown_start = asyncio.get_running_loop().time()
        logger.info("Starting graceful shutdown", timeout_seconds=self.shutdown_timeout)

        try:
            await self._run_shutdown_callbacks()
            await self._stop_manager()

            shutdown_duration = asyncio.get_running_loop().time() - shutdown_start
            self._initialized = False
            logger.info(
                "Shutdown completed",
                duration_seconds=shutdown_duration,
                within_timeout=shutdown_duration < self.shutdown_timeout,
            )
        finally:
            self._shutdown_in_progress = False

    async def _stop_manager(self):
        try:
            await asyncio.wait_for(self.context.manager.shutdown(), timeout=self.shutdown_timeout)
        except TimeoutError:
            logger.error("Timed out stopping servers after %ss", self.shutdown_timeout)

    async def _run_shutdown_callbacks(self):
        """Run registered shutdown callbacks in priority order."""
        sorted_callbacks = sorted(
            self.context.shutdown_callbacks, key=lambda cb: cb.priority.value, reverse=True
        )
        for cb in sorted_callbacks:
            cb_timeout = cb.timeout or 10.0
            try:
                if inspect.iscoroutinefunction(cb.callback):
                    await asyncio.wait_for(cb.callback(), timeout=cb_timeout)
                else:
                    await asyncio.wait_for(asyncio.to_thread(cb.callback), timeout=cb_timeout)
            except TimeoutError:
                logger.error("Shutdown callback timed out: %s", cb.name)
            except Exception as e:
                logger.error("Error in shutdown callback %s: %s", cb.name, e, exc_info=True)

    def register_shutdown_callback(
        self,
        callback: Callable,
        priority: ShutdownPriority = ShutdownPriority.NORMAL,
        name: str | None = None,
        timeout: float | None = None,
    ):
        """Register a callback to be executed during shutdown."""
        if not self.context:
            logger.warning("Cannot register shutdown callback: Runtime not initialized")
            return

        callback_name = name or getattr(callback, "__name__", "unknown")
        self.context.shutdown_callbacks.append(
            ShutdownCallback(
                callback=callback, priority=priority, name=callback_name, timeout=timeout
            )
        )
        logger.debug("Registered shutdown callback: %s", callback_name, priority=priority.value)

    async def run(self):
        """Bootstrap, wait for a shutdown signal, then shut down."""
        await self.bootstrap()
        try:
            await self.wait_for_shutdown()
        finally:
            await self.shutdown()
