"""
Stdio Transport
===============

Runs a tool server as a child process and exchanges messages over its
stdin/stdout.

Framing: newline-delimited JSON. Each envelope is written as one compact
UTF-8 JSON document followed by ``\\n``; JSON escapes newlines inside strings,
so a raw newline always ends a message. Blank lines are ignored. stderr is
never parsed; it is drained into a bounded tail kept for diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque

from toolbridge.config.settings import ServerConfig
from toolbridge.core.exceptions import ServerConnectionError, TransportClosedError
from toolbridge.protocols.mcp.messages import Message, decode_message
from toolbridge.protocols.mcp.transports.base import Transport

logger = logging.getLogger(__name__)

# Largest single line accepted from the child (asyncio StreamReader limit)
MAX_LINE_BYTES = 16 * 1024 * 1024
STDERR_TAIL_LINES = 50

# System essentials the child gets; everything else must be configured
_BASE_ENV_VARS = ("PATH", "HOME", "LANG", "USER", "SHELL", "TMPDIR", "SYSTEMROOT")


def build_child_env(config: ServerConfig) -> dict[str, str]:
    """
    Sanitized environment for the child process.

    Only system essentials, the variables named in ``env_passthrough`` and the
    explicit ``env`` mapping are passed, so tokens in the host environment do
    not leak into tool servers.
    """
    safe_env = {name: os.environ[name] for name in _BASE_ENV_VARS if name in os.environ}
    safe_env.setdefault("LANG", "en_US.UTF-8")
    for var_name in config.env_passthrough:
        if var_name in os.environ:
            safe_env[var_name] = os.environ[var_name]
            logger.debug("Passing %s through to %s", var_name, config.name)
        else:
            logger.warning("Passthrough variable %s is not set for server %s", var_name, config.name)
    safe_env.update(config.env)
    return safe_env


class StdioTransport(Transport):
    """Child process whose stdin/stdout carry newline-delimited JSON."""

    kind = "stdio"

    def __init__(
        self,
        config: ServerConfig,
        connect_timeout: float = 30.0,
        grace_period: float = 5.0,
    ) -> None:
        super().__init__(config, connect_timeout)
        self.grace_period = grace_period
        self.process: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    async def _connect(self) -> None:
        command = self.config.command
        if not command:
            raise ServerConnectionError(f"stdio server '{self.config.name}' has no command")

        logger.info("Spawning stdio server %s: %s %s", self.config.name, command,
                    " ".join(self.config.args))
        try:
            self.process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    command,
                    *self.config.args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=build_child_env(self.config),
                    cwd=self.config.cwd,
                    limit=MAX_LINE_BYTES,
                ),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            raise ServerConnectionError(
                f"Timed out spawning '{command}' for server '{self.config.name}'",
                details={"timeout": self.connect_timeout},
            ) from e
        except OSError as e:
            raise ServerConnectionError(
                f"Failed to spawn '{command}' for server '{self.config.name}': {e}",
                details={"command": command},
            ) from e

        self._stderr_task = asyncio.create_task(
            self._drain_stderr(), name=f"stdio-stderr-{self.config.name}"
        )

    async def _drain_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        stream = self.process.stderr
        while True:
            try:
                line = await stream.readline()
            except (ValueError, ConnectionError) as e:
                logger.debug("stderr of %s unreadable: %s", self.config.name, e)
                return
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            self._stderr_tail.append(text)
            logger.debug("[%s stderr] %s", self.config.name, text)

    async def _send(self, message: Message, payload: bytes) -> None:
        process = self.process
        if process is None or process.stdin is None or process.returncode is not None:
            self._mark_lost(self._exit_description())
            raise TransportClosedError(self._closed_message())
        async with self._write_lock:
            try:
                process.stdin.write(payload + b"\n")
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._mark_lost(f"stdin closed ({e})")
                raise TransportClosedError(self._closed_message()) from e

    async def receive(self) -> Message:
        process = self.process
        if self._closed or process is None or process.stdout is None:
            raise TransportClosedError(self._closed_message())
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as e:
                # Line longer than MAX_LINE_BYTES; the stream is unusable now
                self._mark_lost(f"oversized message ({e})")
                raise TransportClosedError(self._closed_message()) from e
            except ConnectionError as e:
                self._mark_lost(str(e))
                raise TransportClosedError(self._closed_message()) from e
            if not line:
                await self._reap()
                self._mark_lost(self._exit_description())
                raise TransportClosedError(
                    self._closed_message(),
                    details={"returncode": self.returncode, "stderr": self.stderr_tail[-10:]},
                )
            if line.strip():
                return decode_message(line)

    async def _reap(self) -> None:
        if self.process is None or self.process.returncode is not None:
            return
        try:
            await asyncio.wait_for(self.process.wait(), timeout=0.5)
        except TimeoutError:
            pass

    def _exit_description(self) -> str:
        code = self.returncode
        if code is None:
            return "process stdout closed"
        return f"process exited with code {code}"

    async def ping(self) -> bool:
        process = self.process
        return (
            self.is_connected
            and process is not None
            and process.returncode is None
            and process.stdin is not None
            and not process.stdin.is_closing()
        )

    async def _disconnect(self) -> None:
        process = self.process
        if process is not None:
            try:
                await self._terminate(process)
            except asyncio.CancelledError:
                # Never leave the child behind, even when the caller gives up
                if process.returncode is None:
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                raise
        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Close stdin, then escalate terminate -> kill, each after the grace period."""
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            except TimeoutError:
                pass

        if process.returncode is None:
            logger.info("Terminating stdio server %s (pid %s)", self.config.name, process.pid)
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.grace_period)
            except ProcessLookupError:
                pass
            except TimeoutError:
                logger.warning("Killing unresponsive stdio server %s (pid %s)",
                               self.config.name, process.pid)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        logger.debug("stdio server %s exited with %s", self.config.name, process.returncode)
