"""Lifecycle of one SSH tunnel process."""

import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable
from enum import Enum
from types import TracebackType
from typing import IO, Any, Literal, TypeVar

from .config import EndpointConfig
from .exceptions import (
    AuthenticationError,
    TunnelStartError,
    TunnelTimeoutError,
)
from .logging import get_logger
from .probe import PortProbe
from .process import AcceleratorLocator, ProcessInspector
from .retry import RetryExecutor
from .validator import ConnectionValidator, ValidationResult

logger = get_logger(__name__)

T = TypeVar("T")

AUTH_FAILURE_SIGNATURE = "too many authentication failures"


class SessionState(str, Enum):
    """Tunnel session state."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class TunnelSession:
    """An SSH tunnel this process either owns or merely observes.

    An owned session spawned its ssh process and terminates it on ``stop()``.
    An attached session found the local port already served by someone else;
    it never signals that process and never tries to restart it.

    Use as a context manager, or call ``close()`` from a ``finally`` block:
    the tunnel is stopped on exit unless keep-alive is enabled.
    """

    def __init__(
        self,
        config: EndpointConfig,
        inspector: ProcessInspector | None = None,
        probe: PortProbe | None = None,
        accelerator: AcceleratorLocator | None = None,
        start_attempts: int = 30,
        poll_interval: float = 1.0,
        settle_delay: float = 2.0,
        reconnect_pause: float = 2.0,
        port_free_attempts: int = 10,
        stop_timeout: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        popen: Callable[..., Any] = subprocess.Popen,
    ):
        self.config = config
        self.inspector = inspector or ProcessInspector()
        self.probe = probe or PortProbe()
        self.accelerator = accelerator or AcceleratorLocator()
        self.start_attempts = start_attempts
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay
        self.reconnect_pause = reconnect_pause
        self.port_free_attempts = port_free_attempts
        self.stop_timeout = stop_timeout
        self._sleep = sleep
        self._popen = popen

        self.state = SessionState.IDLE
        self._process: Any | None = None
        self._stderr: IO[str] | None = None
        self._attached_pid: int | None = None
        self._attached = False
        self._keep_alive = False
        self._stop_callbacks: list[Callable[[], object]] = []

    @property
    def pid(self) -> int | None:
        """Process id of the tunnel, owned or attached."""
        if self._attached:
            return self._attached_pid
        if self._process is not None:
            return int(self._process.pid)
        return None

    @property
    def attached(self) -> bool:
        return self._attached

    @property
    def owned(self) -> bool:
        return self._process is not None and not self._attached

    @property
    def keep_alive_enabled(self) -> bool:
        return self._keep_alive

    @property
    def is_running(self) -> bool:
        return self.state == SessionState.RUNNING and self.verify()

    def keep_alive(self, enabled: bool = True) -> "TunnelSession":
        """Leave the ssh process running when this session is closed."""
        self._keep_alive = enabled
        return self

    def on_stop(self, callback: Callable[[], object]) -> "TunnelSession":
        """Register a callback run after the owned process has been stopped.

        Callbacks accumulate and run in registration order on every stop of an
        owned tunnel. A failing callback is logged and does not block the rest.
        """
        self._stop_callbacks.append(callback)
        return self

    def _port_bound(self) -> bool:
        return self.probe.is_bound(self.config.local_host, self.config.local_port)

    def start(self) -> "TunnelSession":
        """Start the tunnel, or attach to one already serving the local port.

        Raises:
            AuthenticationError: If the server rejected the offered keys
            TunnelStartError: If ssh could not be spawned or exited early
            TunnelTimeoutError: If the local port was not bound in time
        """
        if self.state == SessionState.RUNNING:
            logger.warning("SSH tunnel already running", config=str(self.config))
            return self

        if self._port_bound():
            pid = self.inspector.find_listener_pid(self.config.local_port)
            logger.info(
                "Local port already bound, attaching to existing tunnel",
                port=self.config.local_port,
                pid=pid,
            )
            return self.attach(pid)

        self.state = SessionState.STARTING
        try:
            self._spawn()
            self._wait_for_port()
        except Exception:
            self.state = SessionState.IDLE
            raise

        self.state = SessionState.RUNNING
        logger.info(
            "SSH tunnel started successfully",
            pid=self.pid,
            local_port=self.config.local_port,
        )
        return self

    def attach(self, pid: int | None) -> "TunnelSession":
        """Observe a tunnel process this session did not spawn."""
        self._attached = True
        self._attached_pid = pid
        self._process = None
        self.state = SessionState.RUNNING
        logger.info(
            "Using existing SSH tunnel", pid=pid, local_port=self.config.local_port
        )
        return self

    def _spawn(self) -> None:
        command = self.config.build_command(self.accelerator.path)
        logger.info(
            "Starting SSH tunnel",
            config=str(self.config),
            using_autossh=self.accelerator.available,
        )
        logger.debug("SSH tunnel command", command=command)

        # stderr goes to a file, not a pipe: a keep-alive tunnel outlives us
        # and must not die of SIGPIPE once nobody reads its output
        self._close_stderr()
        self._stderr = tempfile.TemporaryFile(mode="w+", prefix="ssh-tunnel-")
        try:
            self._process = self._popen(
                shlex.split(command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=self._stderr,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            self._close_stderr()
            self._process = None
            raise TunnelStartError(
                f"Failed to start SSH tunnel: {e}", port=self.config.local_port
            ) from e

    def _read_stderr(self) -> str:
        if self._stderr is None:
            return ""
        try:
            self._stderr.seek(0)
            return self._stderr.read().strip()
        except (OSError, ValueError):
            return ""

    def _close_stderr(self) -> None:
        if self._stderr is not None:
            self._stderr.close()
            self._stderr = None

    def _wait_for_port(self) -> None:
        for attempt in range(1, self.start_attempts + 1):
            if self._process.poll() is not None:
                self._raise_early_exit()

            if self._port_bound():
                logger.debug("Local port bound", port=self.config.local_port, attempt=attempt)
                return

            self._sleep(self.poll_interval)

        logger.error(
            "SSH tunnel did not bind local port in time",
            port=self.config.local_port,
            attempts=self.start_attempts,
        )
        self._terminate_process()
        raise TunnelTimeoutError(
            f"SSH tunnel started but port {self.config.local_port} is not accessible "
            f"after {self.start_attempts} attempts",
            port=self.config.local_port,
        )

    def _raise_early_exit(self) -> None:
        error = self._read_stderr()
        self._process = None
        self._close_stderr()

        if AUTH_FAILURE_SIGNATURE in error.lower():
            raise AuthenticationError(
                "SSH tunnel: Too many authentication failures.\n"
                "The SSH agent offers many keys and the server rejects the connection.\n\n"
                "Solutions:\n"
                "1. Add to ~/.ssh/config:\n"
                f"   Host {self.config.host}\n"
                "     IdentityFile ~/.ssh/your_key\n"
                "     IdentitiesOnly yes\n\n"
                "2. Or set identity_file for this connection\n\n"
                f"Original error:\n{error}",
                port=self.config.local_port,
                stderr=error,
            )

        raise TunnelStartError(
            f"Failed to start SSH tunnel: {error or 'Process terminated'}",
            port=self.config.local_port,
            stderr=error,
        )

    def _terminate_process(self) -> None:
        process = self._process
        if process is None:
            return

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "SSH tunnel did not terminate gracefully, force killing",
                    pid=process.pid,
                )
                process.kill()
                process.wait(timeout=self.stop_timeout)

        self._process = None
        self._close_stderr()

    def stop(self) -> None:
        """Stop an owned tunnel. Never raises; attached tunnels are left alone."""
        if self._attached:
            logger.debug(
                "Not stopping SSH tunnel created by another process",
                pid=self._attached_pid,
            )
            return

        if self.state != SessionState.RUNNING or self._process is None:
            return

        logger.info("Stopping SSH tunnel", pid=self.pid)
        try:
            self._terminate_process()
        except Exception as e:
            logger.error("Error stopping SSH tunnel", error=str(e))
            return

        self.state = SessionState.STOPPED
        logger.info("SSH tunnel stopped successfully")
        self._run_stop_callbacks()

    def _run_stop_callbacks(self) -> None:
        for callback in self._stop_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(
                    "Stop callback failed",
                    callback=getattr(callback, "__qualname__", repr(callback)),
                    error=str(e),
                )

    def verify(self) -> bool:
        """Check that the tunnel is running and its local port accepts connections."""
        if self.state != SessionState.RUNNING:
            return False

        if self._attached:
            return self._port_bound()

        if self._process is None or self._process.poll() is not None:
            return False

        return self._port_bound()

    def _wait_for_port_release(self) -> None:
        for _ in range(self.port_free_attempts):
            if not self._port_bound():
                return
            self._sleep(1.0)

    def ensure_connected(self, max_attempts: int = 3) -> bool:
        """Restore a dropped owned tunnel.

        Returns:
            True if the tunnel is (again) verified
        """
        if self.verify():
            return True

        logger.warning(
            "SSH tunnel connection lost, attempting to reconnect",
            config=str(self.config),
        )

        if self._attached:
            logger.error(
                "External SSH tunnel is down, cannot reconnect", pid=self._attached_pid
            )
            return False

        for attempt in range(1, max_attempts + 1):
            logger.info("Reconnection attempt", attempt=attempt, max_attempts=max_attempts)
            try:
                self._terminate_process()
                self._wait_for_port_release()
                self._spawn()
                self._sleep(self.settle_delay)
                self.state = SessionState.RUNNING

                if self.verify():
                    logger.info(
                        "SSH tunnel reconnected successfully",
                        pid=self.pid,
                        attempt=attempt,
                    )
                    return True
            except Exception as e:
                logger.error("Reconnection attempt failed", attempt=attempt, error=str(e))

            if attempt < max_attempts:
                self._sleep(self.reconnect_pause)

        logger.error("Failed to reconnect SSH tunnel after all attempts")
        return False

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        max_attempts: int = 3,
        retry: RetryExecutor | None = None,
    ) -> T:
        """Run an operation, reconnecting and retrying on connection failures."""
        executor = retry or RetryExecutor(max_attempts=max_attempts, sleep=self._sleep)

        def reconnect() -> None:
            if not self.ensure_connected():
                logger.error("Tunnel still down before retry", pid=self.pid)

        return executor.execute_with_reconnect(operation, reconnect)

    def validate(
        self, validator: ConnectionValidator, endpoint: str | None = None
    ) -> ValidationResult:
        """Validate process, port and (optionally) an application endpoint."""
        if self.pid is None:
            return ValidationResult(valid=False, errors=["Tunnel is not running"])
        return validator.validate(
            self.pid,
            self.config.local_port,
            endpoint=endpoint,
            local_host=self.config.local_host,
        )

    def info(self) -> dict[str, Any]:
        """Status details for display."""
        return {
            "pid": self.pid,
            "state": self.state.value,
            "owned": self.owned,
            "attached": self._attached,
            "verified": self.verify(),
            "keep_alive": self._keep_alive,
            "config": str(self.config),
        }

    def close(self) -> None:
        """Release the session: stop the tunnel unless keep-alive is set."""
        if self._keep_alive:
            logger.info("Tunnel will stay alive", pid=self.pid)
            return
        self.stop()

    def __enter__(self) -> "TunnelSession":
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.close()
        return False
