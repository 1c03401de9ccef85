"""TCP port probing."""

import socket

from .logging import get_logger

logger = get_logger(__name__)


class PortProbe:
    """Checks whether a host:port currently accepts TCP connections."""

    def __init__(self, default_timeout: float = 1.0):
        self.default_timeout = default_timeout

    def is_bound(self, host: str, port: int, timeout: float | None = None) -> bool:
        """Return True if a TCP connection to host:port is accepted.

        Every connection failure (refused, timeout, unreachable, bad host)
        collapses to False.
        """
        timeout = self.default_timeout if timeout is None else timeout
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except (OSError, ValueError, OverflowError) as e:
            logger.debug("Port probe failed", host=host, port=port, error=str(e))
            return False
