"""Custom exceptions for SSH tunnel management."""


class TunnelError(Exception):
    """Base exception for all tunnel errors."""
    pass


class ConfigurationError(TunnelError):
    """Raised when a tunnel configuration is missing or invalid."""

    def __init__(self, message: str, available: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.available = list(available or [])

    def __str__(self) -> str:
        if not self.available:
            return self.message
        return (
            f"{self.message}. Available tunnel connections: "
            f"{', '.join(self.available)}"
        )


class TunnelConnectionError(TunnelError):
    """Raised when the SSH tunnel cannot be established or restored."""

    def __init__(
        self, message: str, port: int | None = None, stderr: str | None = None
    ):
        super().__init__(message)
        self.port = port
        self.stderr = stderr


class TunnelStartError(TunnelConnectionError):
    """Raised when the SSH process exits before the local port is bound."""
    pass


class TunnelTimeoutError(TunnelConnectionError):
    """Raised when the local port is not bound within the start timeout."""
    pass


class AuthenticationError(TunnelConnectionError):
    """Raised when the SSH server rejects the offered keys."""
    pass


class TunnelRegistryError(TunnelError):
    """Raised when the registry directory cannot be used."""
    pass
