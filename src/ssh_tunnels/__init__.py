"""SSH tunnels - lifecycle management for ssh/autossh port forwarding."""

from .config import (
    DEFAULT_SSH_OPTIONS,
    ConnectionSettings,
    EndpointConfig,
    RetrySettings,
    ReuseSettings,
    SignalSettings,
    TunnelSettings,
    TunnelType,
    ValidationSettings,
)
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    TunnelConnectionError,
    TunnelError,
    TunnelRegistryError,
    TunnelStartError,
    TunnelTimeoutError,
)
from .logging import get_logger, setup_logging
from .orchestrator import DiagnosticReport, TunnelOrchestrator
from .probe import PortProbe
from .process import AcceleratorLocator, ProcessInfo, ProcessInspector
from .registry import RegistryEntry, TunnelRegistry, format_uptime
from .retry import RetryExecutor, is_connection_error
from .session import SessionState, TunnelSession
from .signals import ShutdownSignal
from .validator import ConnectionValidator, ValidationResult

__version__ = "0.1.0"


__all__ = [
    # Orchestration
    "TunnelOrchestrator",
    "DiagnosticReport",
    "TunnelSession",
    "SessionState",
    # Configuration
    "EndpointConfig",
    "TunnelType",
    "TunnelSettings",
    "ConnectionSettings",
    "RetrySettings",
    "ValidationSettings",
    "ReuseSettings",
    "SignalSettings",
    "DEFAULT_SSH_OPTIONS",
    # Collaborators
    "PortProbe",
    "ProcessInspector",
    "ProcessInfo",
    "AcceleratorLocator",
    "RetryExecutor",
    "is_connection_error",
    "ConnectionValidator",
    "ValidationResult",
    "TunnelRegistry",
    "RegistryEntry",
    "format_uptime",
    "ShutdownSignal",
    # Exceptions
    "TunnelError",
    "ConfigurationError",
    "TunnelConnectionError",
    "TunnelStartError",
    "TunnelTimeoutError",
    "AuthenticationError",
    "TunnelRegistryError",
    # Logging
    "get_logger",
    "setup_logging",
]
