"""
Transports
==========

Three interchangeable implementations of one contract:
- StdioTransport: child process, newline-delimited JSON on stdin/stdout
- HTTPTransport: one POST per message, reply synthesized from the response
- SSETransport: long-lived event stream plus POST endpoint
"""

from toolbridge.config.settings import BridgeSettings, ServerConfig, TransportKind
from toolbridge.core.exceptions import ConfigurationError

from .base import Transport
from .http import HTTPTransport
from .sse import SSETransport
from .stdio import StdioTransport


def create_transport(config: ServerConfig, settings: BridgeSettings | None = None) -> Transport:
    """Build the transport variant named by ``config.transport``."""
    settings = settings or BridgeSettings()
    connect_timeout = settings.connect_timeout_for(config)

    if config.transport == TransportKind.STDIO:
        return StdioTransport(config, connect_timeout, grace_period=settings.shutdown_grace_period)
    if config.transport == TransportKind.HTTP:
        return HTTPTransport(config, connect_timeout)
    if config.transport == TransportKind.SSE:
        return SSETransport(config, connect_timeout)
    raise ConfigurationError(f"Unsupported transport kind: {config.transport!r}")


__all__ = [
    'Transport',
    'StdioTransport',
    'HTTPTransport',
    'SSETransport',
    'create_transport',
]
