"""High-level tunnel orchestration: resolve, reuse or spawn, and release.

Example:
    >>> settings = TunnelSettings.from_dict({"connections": {...}})
    >>> orchestrator = TunnelOrchestrator.resolve("remote_db", settings)
    >>> orchestrator.execute(lambda session: run_queries(session.config.local_port))
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict

from .config import EndpointConfig, TunnelSettings
from .logging import get_logger, setup_logging
from .probe import PortProbe
from .process import AcceleratorLocator, ProcessInfo, ProcessInspector
from .registry import TunnelRegistry
from .retry import RetryExecutor
from .session import TunnelSession
from .validator import ConnectionValidator, ValidationResult

logger = get_logger(__name__)

T = TypeVar("T")


class DiagnosticReport(BaseModel):
    """Result of looking for and checking a tunnel."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str | None
    identifier: str
    found_by: str | None = None
    pid: int | None = None
    process: ProcessInfo | None = None
    validation: ValidationResult | None = None

    @property
    def healthy(self) -> bool:
        return self.validation is not None and self.validation.valid


class TunnelOrchestrator:
    """Decides whether to reuse an existing tunnel or spawn a new one."""

    def __init__(
        self,
        config: EndpointConfig,
        name: str | None = None,
        registry: TunnelRegistry | None = None,
        inspector: ProcessInspector | None = None,
        probe: PortProbe | None = None,
        accelerator: AcceleratorLocator | None = None,
        validator: ConnectionValidator | None = None,
        settings: TunnelSettings | None = None,
        session_factory: Callable[..., TunnelSession] = TunnelSession,
        **session_options: Any,
    ):
        self.config = config
        self.name = name
        self.settings = settings or TunnelSettings()
        self.inspector = inspector or ProcessInspector()
        self.probe = probe or PortProbe(self.settings.validation.port_timeout)
        self.accelerator = accelerator or AcceleratorLocator(
            enabled=self.settings.autossh_enabled
        )
        self.registry = registry or TunnelRegistry(
            self.settings.reuse.pid_directory, inspector=self.inspector
        )
        self.validator = validator or ConnectionValidator(
            inspector=self.inspector,
            probe=self.probe,
            port_timeout=self.settings.validation.port_timeout,
        )
        self._session_factory = session_factory
        self._session_options = session_options
        self.connection: TunnelSession | None = None

    @classmethod
    def resolve(
        cls, name: str | None, settings: TunnelSettings, **kwargs: Any
    ) -> "TunnelOrchestrator":
        """Build an orchestrator for a named connection.

        Raises:
            ConfigurationError: If the name is unknown or the connection is invalid
        """
        resolved = name or settings.default
        config = settings.get(resolved)
        return cls(config, name=resolved, settings=settings, **kwargs)

    @classmethod
    def from_settings(
        cls, settings: TunnelSettings, name: str | None = None, **kwargs: Any
    ) -> "TunnelOrchestrator":
        """Like resolve(), also switching to debug logging when settings ask for it."""
        if settings.debug:
            setup_logging(level="DEBUG")
        return cls.resolve(name, settings, **kwargs)

    @property
    def identifier(self) -> str:
        return self.config.identifier

    def _new_session(self) -> TunnelSession:
        return self._session_factory(
            self.config,
            inspector=self.inspector,
            probe=self.probe,
            accelerator=self.accelerator,
            **self._session_options,
        )

    def _is_reusable(self, pid: int) -> bool:
        return (
            self.inspector.is_alive(pid)
            and self.inspector.is_ssh_client(pid)
            and self.probe.is_bound(self.config.local_host, self.config.local_port)
        )

    def find_existing_by_pid_file(self) -> int | None:
        """Pid recorded under this configuration's identifier, if still a live tunnel."""
        if not self.settings.reuse.use_pid_file:
            return None
        pid = self.registry.read_pid(self.identifier)
        if pid is None:
            return None
        if not self._is_reusable(pid):
            logger.debug("Recorded tunnel is not reusable", pid=pid)
            return None
        return pid

    def find_existing_by_port(self) -> int | None:
        """Pid of an ssh process currently listening on the configured local port."""
        if not self.settings.reuse.use_port_scan:
            return None
        pid = self.inspector.find_listener_pid(self.config.local_port)
        if pid is None:
            return None
        if not self.inspector.is_ssh_client(pid):
            logger.warning(
                "Local port is held by a non-ssh process",
                port=self.config.local_port,
                pid=pid,
            )
            return None
        return pid

    def _attach(self, pid: int) -> TunnelSession:
        self.connection = self._new_session().attach(pid)
        return self.connection

    def _cleanup_records(self) -> None:
        self.registry.remove_pid(self.identifier)
        if self.name:
            self.registry.remove(self.name)

    def _record(self, session: TunnelSession) -> None:
        if session.pid is None:
            return
        self.registry.write_pid(self.identifier, session.pid)
        if self.name:
            self.registry.save(self.name, session)

    def _spawn(self) -> TunnelSession:
        session = self._new_session()
        session.start()
        self.connection = session

        if session.owned:
            session.on_stop(self._cleanup_records)
            self._record(session)
        return session

    def _active_connection(self) -> TunnelSession | None:
        """The current owned session if it still verifies.

        A dead owned session is stopped first, so its process is terminated
        and its records removed before anything replaces it. Attached sessions
        are always rediscovered.
        """
        connection = self.connection
        if connection is None:
            return None
        if connection.owned and connection.is_running:
            return connection

        if connection.owned:
            logger.info("Releasing SSH tunnel that no longer verifies", pid=connection.pid)
            connection.stop()
        self.connection = None
        return None

    def start(self) -> TunnelSession:
        """Return a running tunnel, reusing one recorded under the identifier.

        Raises:
            TunnelConnectionError: If a new tunnel could not be started
        """
        active = self._active_connection()
        if active is not None:
            logger.debug("SSH tunnel already active, reusing connection")
            return active

        pid = self.find_existing_by_pid_file()
        if pid is not None:
            logger.info("Reusing tunnel from pid file", pid=pid)
            return self._attach(pid)

        return self._spawn()

    def reuse_or_create(self) -> TunnelSession:
        """Like start(), but also look for an ssh process on the local port."""
        active = self._active_connection()
        if active is not None:
            return active

        pid = self.find_existing_by_pid_file()
        if pid is not None:
            logger.info("Reusing tunnel from pid file", pid=pid)
            return self._attach(pid)

        pid = self.find_existing_by_port()
        if pid is not None:
            logger.info("Reusing tunnel found by port scan", pid=pid)
            if self.settings.reuse.use_pid_file:
                self.registry.write_pid(self.identifier, pid)
            return self._attach(pid)

        logger.info("No existing tunnel found, creating a new one")
        return self._spawn()

    def execute(self, callback: Callable[[TunnelSession], T]) -> T:
        """Run a callback with a started tunnel, always stopping it afterwards."""
        session = self.start()
        try:
            return callback(session)
        finally:
            session.stop()

    @contextmanager
    def session(self) -> Iterator[TunnelSession]:
        """Context-manager form of execute()."""
        session = self.start()
        try:
            yield session
        finally:
            session.stop()

    def ensure_connected(self, max_attempts: int = 3) -> bool:
        """Reconnect the active tunnel if needed; False without one."""
        if self.connection is None:
            return False

        previous_pid = self.connection.pid
        connected = self.connection.ensure_connected(max_attempts)
        if connected and self.connection.owned and self.connection.pid != previous_pid:
            self._record(self.connection)
        return connected

    def execute_with_retry(self, operation: Callable[[], T]) -> T:
        """Run an operation through the active tunnel with configured retries.

        Connection failures trigger ensure_connected() before the next attempt.

        Raises:
            TunnelConnectionError: If no tunnel could be started
        """
        session = self.start()
        retry = RetryExecutor.from_settings(self.settings.retry)
        return session.execute_with_retry(operation, retry=retry)

    def wait_for_endpoint(self, endpoint: str) -> bool:
        """Wait until the application endpoint answers through the tunnel."""
        validation = self.settings.validation
        return self.validator.wait_for(
            endpoint,
            max_attempts=validation.endpoint_max_attempts,
            delay=validation.endpoint_retry_delay,
        )

    def validate(self, endpoint: str | None = None) -> ValidationResult:
        if self.connection is None:
            return ValidationResult(valid=False, errors=["Tunnel not initialized"])
        return self.connection.validate(self.validator, endpoint)

    def diagnose(self, endpoint: str | None = None) -> DiagnosticReport:
        """Locate the tunnel without starting one and check its health."""
        report = DiagnosticReport(name=self.name, identifier=self.identifier)

        pid = self.registry.read_pid(self.identifier)
        if pid is not None:
            report.found_by = "pid_file"
        else:
            pid = self.inspector.find_listener_pid(self.config.local_port)
            if pid is not None:
                report.found_by = "port_scan"

        if pid is None:
            return report

        report.pid = pid
        report.process = self.inspector.describe(pid)
        report.validation = self.validator.validate(
            pid, self.config.local_port, endpoint, local_host=self.config.local_host
        )
        return report
