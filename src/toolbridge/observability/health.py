"""Health monitor — periodic liveness pings driving a session between READY and DEGRADED."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from toolbridge.config.settings import HealthConfig
from toolbridge.core.structured_logger import get_logger
from toolbridge.protocols.mcp.types import SessionState

if TYPE_CHECKING:
    from toolbridge.protocols.mcp.session import ServerSession

logger = get_logger("HealthMonitor")


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    status: HealthStatus
    message: str
    timestamp: str
    latency_ms: float | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'status': self.status.value,
            'message': self.message,
            'timestamp': self.timestamp,
            'latency_ms': self.latency_ms,
            'details': self.details or {},
        }


class SessionHealthMonitor:
    """
    Pings one session every ``interval_seconds``.

    ``failure_threshold`` consecutive failed pings move a READY session to
    DEGRADED; the next successful ping brings it back. The monitor never
    reconnects; a session that closes ends the loop.
    """

    def __init__(self, session: ServerSession, config: HealthConfig | None = None) -> None:
        self.session = session
        self.config = config or HealthConfig()
        self.consecutive_failures = 0
        self.last_check_time: float | None = None
        self.last_result: HealthCheckResult | None = None
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Health monitor already running", server=self.session.name)
            return
        self._running = True
        self._task = asyncio.create_task(
            self._monitoring_loop(), name=f"health-{self.session.name}"
        )
        logger.debug(
            "Health monitor started",
            server=self.session.name,
            interval=self.config.interval_seconds,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        task, self._task = self._task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("Health monitor stopped", server=self.session.name)

    async def _monitoring_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.config.interval_seconds)
                if self.session.is_closed:
                    break
                try:
                    await self.check_once()
                except Exception as e:
                    logger.error(
                        "Error checking server %s: %s", self.session.name, e, exc_info=True
                    )
        except asyncio.CancelledError:
            raise
        finally:
            self._running = False

    async def check_once(self) -> HealthCheckResult:
        """Run one ping and apply its outcome to the session state."""
        started = time.monotonic()
        alive = await self.session.ping(timeout=self.config.ping_timeout_seconds)
        latency_ms = (time.monotonic() - started) * 1000
        self.last_check_time = time.time()
        now = datetime.now(tz=UTC).isoformat()

        if alive:
            if self.session.state is SessionState.DEGRADED:
                self.session.mark_ready()
            self.consecutive_failures = 0
            result = HealthCheckResult(HealthStatus.HEALTHY, "ping answered", now, latency_ms)
        else:
            self.consecutive_failures += 1
            logger.warning(
                "Ping to %s failed",
                self.session.name,
                consecutive_failures=self.consecutive_failures,
                threshold=self.config.failure_threshold,
            )
            if self.consecutive_failures >= self.config.failure_threshold:
                self.session.mark_degraded(f"{self.consecutive_failures} consecutive failed pings")
                result = HealthCheckResult(
                    HealthStatus.UNHEALTHY, "server not answering pings", now, latency_ms,
                    details={"consecutive_failures": self.consecutive_failures},
                )
            else:
                result = HealthCheckResult(
                    HealthStatus.DEGRADED, "ping failed", now, latency_ms,
                    details={"consecutive_failures": self.consecutive_failures},
                )

        self.last_result = result
        return result
