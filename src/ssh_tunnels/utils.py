"""Utility functions for tunnel management."""

import shlex
from typing import Any

# Port range constants
MIN_PORT = 1
MAX_PORT = 65535


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if isinstance(port, bool) or not isinstance(port, int) or not (
        MIN_PORT <= port <= MAX_PORT
    ):
        raise ValueError(
            f"{port_name} must be between {MIN_PORT} and {MAX_PORT}, got {port!r}"
        )


def validate_non_empty_string(value: str | None, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Args:
        value: String value to validate
        field_name: Name of the field for error messages

    Returns:
        Stripped string value

    Raises:
        ValueError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value.strip()


def normalize_option_value(value: Any) -> str:
    """Render an SSH client option value, booleans as yes/no."""
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def shell_quote(value: str) -> str:
    """Quote a value for inclusion in a shell command line."""
    return shlex.quote(value)
