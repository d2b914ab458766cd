"""Observability package — per-session health monitoring."""

from toolbridge.observability.health import HealthCheckResult, HealthStatus, SessionHealthMonitor

__all__ = ['HealthCheckResult', 'HealthStatus', 'SessionHealthMonitor']
