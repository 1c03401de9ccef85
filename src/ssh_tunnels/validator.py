"""Tunnel health validation: process, port and application reachability."""

import time
from collections.abc import Callable, Mapping

from pydantic import BaseModel, Field

from .logging import get_logger
from .probe import PortProbe
from .process import ProcessInspector

logger = get_logger(__name__)

EndpointCheck = Callable[[], object]


class ValidationResult(BaseModel):
    """Outcome of a tunnel validation with itemized reasons."""

    valid: bool
    errors: list[str] = Field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid


class ConnectionValidator:
    """Checks that a tunnel process is alive, is ssh, and actually forwards.

    Application endpoints are named checks: callables that perform a minimal
    round trip through the tunnel (e.g. ``SELECT 1``). A check passes when it
    returns a truthy value without raising.
    """

    def __init__(
        self,
        inspector: ProcessInspector | None = None,
        probe: PortProbe | None = None,
        endpoints: Mapping[str, EndpointCheck] | None = None,
        port_timeout: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inspector = inspector or ProcessInspector()
        self.probe = probe or PortProbe()
        self._endpoints: dict[str, EndpointCheck] = dict(endpoints or {})
        self.port_timeout = port_timeout
        self._sleep = sleep

    def register_endpoint(self, name: str, check: EndpointCheck) -> "ConnectionValidator":
        self._endpoints[name] = check
        return self

    def is_port_accessible(self, port: int, host: str = "127.0.0.1") -> bool:
        return self.probe.is_bound(host, port, self.port_timeout)

    def is_endpoint_accessible(self, name: str) -> bool:
        """Run the named application check, False on any failure."""
        check = self._endpoints.get(name)
        if check is None:
            logger.warning("Unknown application endpoint", endpoint=name)
            return False
        try:
            return bool(check())
        except Exception as e:
            logger.debug("Endpoint check failed", endpoint=name, error=str(e))
            return False

    def endpoint_error(self, name: str) -> str:
        """Describe why the named endpoint is unreachable."""
        check = self._endpoints.get(name)
        if check is None:
            return f"Endpoint '{name}' is not registered"
        try:
            check()
        except Exception as e:
            return str(e)
        return "No error"

    def validate(
        self,
        pid: int,
        local_port: int,
        endpoint: str | None = None,
        local_host: str = "127.0.0.1",
    ) -> ValidationResult:
        """Full tunnel validation.

        Liveness and ssh identity short-circuit; port and endpoint checks
        accumulate.
        """
        if not self.inspector.is_alive(pid):
            return ValidationResult(
                valid=False, errors=[f"Tunnel process (PID: {pid}) is not running"]
            )

        if not self.inspector.is_ssh_client(pid):
            info = self.inspector.describe(pid)
            process_name = info.name if info else "unknown"
            return ValidationResult(
                valid=False,
                errors=[f"Process (PID: {pid}) is not SSH tunnel (it's {process_name})"],
            )

        errors: list[str] = []
        if not self.is_port_accessible(local_port, local_host):
            errors.append(f"Port {local_port} is not accessible")

        if endpoint is not None and not self.is_endpoint_accessible(endpoint):
            errors.append(f"Endpoint '{endpoint}' not accessible through tunnel")

        return ValidationResult(valid=not errors, errors=errors)

    def wait_for(self, endpoint: str, max_attempts: int = 5, delay: float = 2.0) -> bool:
        """Retry the application check until it passes or attempts run out."""
        for attempt in range(1, max_attempts + 1):
            if self.is_endpoint_accessible(endpoint):
                return True
            if attempt < max_attempts:
                logger.debug(
                    "Endpoint not ready yet",
                    endpoint=endpoint,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )
                self._sleep(delay)
        return False
