"""
Pydantic Settings Configuration
=================================

Type-safe configuration for the toolbridge core.

Server configurations arrive already validated from an external collaborator;
this module only defines their shape and the runtime tunables (timeouts,
health-check cadence, logging). Nothing here reads configuration files.
"""

from enum import StrEnum
from importlib import metadata
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PROTOCOL_VERSION = "2025-06-18"


def _project_version() -> str:
    """Resolve the project version from package metadata."""
    try:
        return metadata.version("toolbridge")
    except metadata.PackageNotFoundError:
        return "0.0.0-dev"


class TransportKind(StrEnum):
    """Closed set of transport variants a server can be reached over."""
    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"


class ServerConfig(BaseModel):
    """Connection parameters for one external tool server"""
    name: str = Field(..., min_length=1, description="Unique server name, also used as the server id")
    transport: TransportKind = Field(TransportKind.STDIO, description="Transport kind (stdio, http, sse)")
    description: str = Field("", description="Human readable description")

    # stdio
    command: Optional[str] = Field(None, description="Executable to spawn for stdio servers")
    args: List[str] = Field(default_factory=list, description="Arguments for the command")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for the child process")
    env_passthrough: List[str] = Field(
        default_factory=list,
        description="Host environment variables copied into the child (nothing else leaks)",
    )
    cwd: Optional[str] = Field(None, description="Working directory for the child process")

    # http / sse
    url: Optional[str] = Field(None, description="Endpoint URL for http or sse servers")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")
    api_key: Optional[str] = Field(None, description="Bearer token sent as Authorization header")

    # per-server overrides
    connect_timeout: Optional[float] = Field(None, gt=0, description="Override for the connect timeout")
    call_timeout: Optional[float] = Field(None, gt=0, description="Override for the per-call timeout")

    model_config = ConfigDict(extra='forbid')

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Server names double as registry keys and log fields"""
        stripped = v.strip()
        if not stripped:
            raise ValueError("Server name must not be blank")
        if any(ch.isspace() for ch in stripped):
            raise ValueError("Server name must not contain whitespace")
        return stripped

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("Server URL must start with http:// or https://")
        return v

    def missing_fields(self) -> List[str]:
        """
        Report connection parameters the transport kind requires but lacks.

        Returns:
            List of human readable problems (empty if complete)
        """
        errors = []
        if self.transport == TransportKind.STDIO:
            if not self.command:
                errors.append(f"stdio server '{self.name}' requires 'command'")
        elif not self.url:
            errors.append(f"{self.transport.value} server '{self.name}' requires 'url'")
        return errors


class HealthConfig(BaseModel):
    """Per-session health monitoring"""
    interval_seconds: float = Field(30.0, gt=0, description="Seconds between pings")
    ping_timeout_seconds: float = Field(5.0, gt=0, description="Timeout for one ping round trip")
    failure_threshold: int = Field(3, ge=1, description="Consecutive failed pings before DEGRADED")

    model_config = ConfigDict(extra='allow')


class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = Field("INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field("json", description="Log format (json, text)")

    @field_validator('level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @field_validator('format')
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v

    model_config = ConfigDict(extra='allow')


class BridgeSettings(BaseSettings):
    """
    Runtime tunables for the toolbridge core.

    Loaded from environment variables with the TOOLBRIDGE_ prefix, using
    double-underscore nesting:
      TOOLBRIDGE_CONNECT_TIMEOUT=10
      TOOLBRIDGE_HEALTH__INTERVAL_SECONDS=15
      TOOLBRIDGE_LOGGING__LEVEL=DEBUG
    """

    connect_timeout: float = Field(30.0, gt=0, description="Seconds allowed for transport setup plus handshake")
    call_timeout: float = Field(60.0, gt=0, description="Default seconds to wait for a correlated reply")
    timeout_escalation_threshold: int = Field(
        3, ge=1, description="Consecutive call timeouts that move a session to DEGRADED"
    )
    shutdown_grace_period: float = Field(
        5.0, ge=0, description="Seconds a child process gets to exit before it is killed"
    )

    protocol_version: str = Field(DEFAULT_PROTOCOL_VERSION, description="Protocol version offered at handshake")
    client_name: str = Field("toolbridge", description="clientInfo.name sent at handshake")
    client_version: str = Field(default_factory=_project_version, description="clientInfo.version")

    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix='TOOLBRIDGE_',
        env_nested_delimiter='__',
        extra='ignore',
        validate_assignment=True,
    )

    def connect_timeout_for(self, config: ServerConfig) -> float:
        return config.connect_timeout or self.connect_timeout

    def call_timeout_for(self, config: ServerConfig) -> float:
        return config.call_timeout or self.call_timeout


def load_settings(**overrides) -> BridgeSettings:
    """
    Load and validate runtime settings from the environment.

    Args:
        **overrides: Explicit values that win over the environment

    Returns:
        Validated BridgeSettings instance
    """
    return BridgeSettings(**overrides)
