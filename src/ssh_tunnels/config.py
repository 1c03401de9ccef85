"""Tunnel endpoint configuration and named connection settings."""

import hashlib
import json
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from .exceptions import ConfigurationError
from .utils import (
    normalize_option_value,
    shell_quote,
    validate_non_empty_string,
    validate_port,
)

DEFAULT_SSH_OPTIONS: dict[str, Any] = {
    "StrictHostKeyChecking": False,
    "ServerAliveInterval": 60,
    "ServerAliveCountMax": 3,
    "ExitOnForwardFailure": True,
    "TCPKeepAlive": True,
    "ConnectTimeout": 10,
}


class TunnelType(str, Enum):
    """Tunnel direction."""

    FORWARD = "forward"
    REVERSE = "reverse"

    @classmethod
    def from_string(cls, value: str) -> "TunnelType":
        """Parse a tunnel direction, accepting ssh flag spellings.

        Raises:
            ConfigurationError: If the value names no known direction
        """
        normalized = value.strip().lower()
        if normalized in ("forward", "f", "-l"):
            return cls.FORWARD
        if normalized in ("reverse", "r", "-r"):
            return cls.REVERSE
        raise ConfigurationError(
            f"Invalid tunnel type: {value}. Use 'forward' or 'reverse'"
        )


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for item in error.errors():
        message = str(item.get("msg", ""))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        location = ".".join(str(part) for part in item.get("loc", ()))
        if location and location not in message:
            message = f"{location}: {message}"
        messages.append(message)
    return "; ".join(messages)


class EndpointConfig(BaseModel):
    """Immutable description of one SSH tunnel endpoint."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    tunnel_type: TunnelType = TunnelType.FORWARD
    user: str
    host: str
    port: int = 22
    identity_file: str | None = None
    remote_host: str = "localhost"
    remote_port: int = 5432
    local_host: str = "127.0.0.1"
    local_port: int = 15432
    ssh_options: dict[str, Any] = Field(default_factory=dict)

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(_format_validation_error(e)) from e

    @field_validator("tunnel_type", mode="before")
    @classmethod
    def parse_tunnel_type(cls, v: Any) -> Any:
        if isinstance(v, str) and not isinstance(v, TunnelType):
            try:
                return TunnelType.from_string(v)
            except ConfigurationError as e:
                raise ValueError(str(e)) from e
        return v

    @field_validator("user")
    @classmethod
    def validate_user(cls, v: str) -> str:
        return validate_non_empty_string(v, "SSH user")

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        return validate_non_empty_string(v, "SSH host")

    @field_validator("port")
    @classmethod
    def validate_ssh_port(cls, v: int) -> int:
        validate_port(v, "SSH port")
        return v

    @field_validator("local_port")
    @classmethod
    def validate_local_port(cls, v: int) -> int:
        validate_port(v, "Local port")
        return v

    @field_validator("remote_port")
    @classmethod
    def validate_remote_port(cls, v: int) -> int:
        validate_port(v, "Remote port")
        return v

    @field_validator("identity_file")
    @classmethod
    def validate_identity_file(cls, v: str | None) -> str | None:
        if not v:
            return None
        if not Path(v).expanduser().exists():
            raise ValueError(f"SSH key not found: {v}")
        return v

    @property
    def identifier(self) -> str:
        """Stable identifier shared by configurations of the same logical tunnel."""
        raw = (
            f"{self.tunnel_type.value}_{self.user}_{self.port}_{self.host}_"
            f"{self.local_port}_{self.remote_host}_{self.remote_port}"
        )
        return hashlib.md5(raw.encode("utf-8")).hexdigest()

    def merged_ssh_options(self) -> dict[str, Any]:
        """Default client options overridden by the configured ones."""
        return {**DEFAULT_SSH_OPTIONS, **self.ssh_options}

    def forwarding_argument(self) -> str:
        """The -L/-R argument for this tunnel direction."""
        if self.tunnel_type == TunnelType.REVERSE:
            return (
                f"-R {self.local_host}:{self.remote_port}:"
                f"{self.remote_host}:{self.local_port}"
            )
        return (
            f"-L {self.local_host}:{self.local_port}:"
            f"{self.remote_host}:{self.remote_port}"
        )

    def build_command(self, accelerator_path: str | None = None) -> str:
        """Build the shell command line that runs the tunnel.

        Args:
            accelerator_path: Path to autossh; plain ssh is used when None

        Returns:
            Command line suitable for a shell
        """
        if accelerator_path:
            # -M 0 disables the autossh monitor port, ServerAlive* does the job.
            # Never -f: the process is supervised by the session.
            parts = [accelerator_path, "-M 0", "-N"]
        else:
            parts = ["ssh", "-N"]

        for key, value in self.merged_ssh_options().items():
            parts.append(f"-o {key}={normalize_option_value(value)}")

        if self.identity_file:
            parts.append(f"-i {shell_quote(self.identity_file)}")

        parts.append(self.forwarding_argument())
        parts.append(
            f"-p {self.port} {shell_quote(self.user)}@{shell_quote(self.host)}"
        )
        return " ".join(parts)

    def snapshot(self) -> dict[str, Any]:
        """Endpoint fields persisted alongside a registry entry."""
        return {
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
            "user": self.user,
            "host": self.host,
        }

    def __str__(self) -> str:
        if self.tunnel_type == TunnelType.REVERSE:
            return (
                f"[reverse] {self.user}@{self.host}:{self.port} <- "
                f"localhost:{self.local_port} <- remote:{self.remote_port}"
            )
        return (
            f"[forward] {self.user}@{self.host}:{self.port} -> "
            f"localhost:{self.local_port} -> {self.remote_host}:{self.remote_port}"
        )


class ConnectionSettings(BaseModel):
    """Raw settings for one named connection, before validation."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: str = "forward"
    user: str | None = None
    host: str | None = None
    port: int = 22
    identity_file: str | None = None
    remote_host: str = "localhost"
    remote_port: int = 5432
    local_host: str = "127.0.0.1"
    local_port: int = 15432
    ssh_options: dict[str, Any] = Field(default_factory=dict)

    def to_endpoint(self, name: str) -> EndpointConfig:
        """Validate required fields and build the endpoint configuration.

        Raises:
            ConfigurationError: If a required field is missing or invalid
        """
        for field_name in ("user", "host"):
            if not getattr(self, field_name):
                raise ConfigurationError(
                    f"Tunnel connection '{name}' is missing required field '{field_name}'"
                )

        return EndpointConfig(
            tunnel_type=self.type,
            user=self.user,
            host=self.host,
            port=self.port,
            identity_file=self.identity_file,
            remote_host=self.remote_host,
            remote_port=self.remote_port,
            local_host=self.local_host,
            local_port=self.local_port,
            ssh_options=self.ssh_options,
        )


class RetrySettings(BaseModel):
    """Retry behaviour for operations run through a tunnel."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1, description="Attempts per operation")
    delay: float = Field(default=2.0, ge=0, description="Seconds between attempts")
    exponential: bool = Field(default=False, description="Double the delay each retry")


class ValidationSettings(BaseModel):
    """Timeouts and attempts used by health checks."""

    model_config = ConfigDict(extra="forbid")

    port_timeout: float = Field(default=1.0, gt=0)
    endpoint_max_attempts: int = Field(default=5, ge=1)
    endpoint_retry_delay: float = Field(default=2.0, ge=0)


class ReuseSettings(BaseModel):
    """How existing tunnels are discovered."""

    model_config = ConfigDict(extra="forbid")

    use_pid_file: bool = True
    use_port_scan: bool = True
    pid_directory: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "ssh-tunnels"
    )


class SignalSettings(BaseModel):
    """Signals that request a graceful shutdown."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    handlers: list[str] = Field(default_factory=lambda: ["SIGINT", "SIGTERM"])


class TunnelSettings(BaseModel):
    """All named tunnel connections plus shared behaviour settings."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    default: str | None = None
    debug: bool = False
    autossh_enabled: bool = True
    connections: dict[str, ConnectionSettings] = Field(default_factory=dict)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    reuse: ReuseSettings = Field(default_factory=ReuseSettings)
    signals: SignalSettings = Field(default_factory=SignalSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TunnelSettings":
        """Build settings from a plain mapping.

        Raises:
            ConfigurationError: If the mapping does not describe valid settings
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(_format_validation_error(e)) from e

    @classmethod
    def from_json_file(cls, path: str | Path) -> "TunnelSettings":
        """Load settings from a JSON document."""
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read tunnel settings {path}: {e}") from e
        return cls.from_dict(data)

    def names(self) -> list[str]:
        """Names of all configured connections."""
        return list(self.connections)

    def get(self, name: str | None = None) -> EndpointConfig:
        """Resolve a named connection into an endpoint configuration.

        Args:
            name: Connection name, the default connection when None

        Raises:
            ConfigurationError: If the name is unknown or the entry is invalid
        """
        resolved = name or self.default
        if not resolved:
            raise ConfigurationError(
                "Tunnel connection name not specified and default connection "
                "not configured",
                available=self.names(),
            )

        connection = self.connections.get(resolved)
        if connection is None:
            raise ConfigurationError(
                f"Tunnel connection '{resolved}' not found", available=self.names()
            )
        return connection.to_endpoint(resolved)
