"""Configuration package."""

from toolbridge.config.settings import (
    BridgeSettings,
    HealthConfig,
    LoggingConfig,
    ServerConfig,
    TransportKind,
    load_settings,
)

__all__ = [
    'BridgeSettings',
    'HealthConfig',
    'LoggingConfig',
    'ServerConfig',
    'TransportKind',
    'load_settings',
]
