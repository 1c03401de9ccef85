"""Filesystem registry of running tunnels shared between invocations."""

import re
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import EndpointConfig
from .exceptions import TunnelRegistryError
from .logging import get_logger
from .process import ProcessInspector

logger = get_logger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


class RegisteredTunnel(Protocol):
    """What the registry needs to know about a running tunnel."""

    @property
    def pid(self) -> int | None: ...

    @property
    def config(self) -> EndpointConfig: ...


class EndpointSnapshot(BaseModel):
    """Endpoint fields recorded with a registry entry."""

    model_config = ConfigDict(frozen=True)

    local_port: int
    remote_host: str
    remote_port: int
    user: str
    host: str


class RegistryEntry(BaseModel):
    """Persisted record of one running tunnel."""

    model_config = ConfigDict(frozen=True)

    pid: int
    connection_name: str
    config: EndpointSnapshot
    started_at: int


def format_uptime(seconds: int | float) -> str:
    """Format a duration as e.g. ``1d2h3m4s``, leaving out zero units."""
    seconds = max(int(seconds), 0)
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)


class TunnelRegistry:
    """Directory-backed registry: one JSON record per connection name.

    Records are only trusted while their pid is alive; every read deletes
    records whose process has died. The same directory also holds
    ``<identifier>.pid`` files keyed by endpoint identifier.
    """

    def __init__(
        self,
        directory: str | Path,
        inspector: ProcessInspector | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.inspector = inspector or ProcessInspector()
        self._clock = clock

    def _ensure_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TunnelRegistryError(
                f"Cannot create registry directory {self.directory}: {e}"
            ) from e

    def _entry_path(self, name: str) -> Path:
        if not _NAME_PATTERN.match(name):
            raise TunnelRegistryError(f"Invalid tunnel connection name: {name!r}")
        return self.directory / f"{name}.json"

    def _pid_path(self, identifier: str) -> Path:
        if not _NAME_PATTERN.match(identifier):
            raise TunnelRegistryError(f"Invalid tunnel identifier: {identifier!r}")
        return self.directory / f"{identifier}.pid"

    def save(self, name: str, tunnel: RegisteredTunnel) -> RegistryEntry:
        """Record a running tunnel under a connection name.

        Raises:
            TunnelRegistryError: If the tunnel has no pid or the record cannot be written
        """
        if tunnel.pid is None:
            raise TunnelRegistryError(f"Tunnel '{name}' has no process to register")

        entry = RegistryEntry(
            pid=tunnel.pid,
            connection_name=name,
            config=EndpointSnapshot(**tunnel.config.snapshot()),
            started_at=int(self._clock()),
        )
        path = self._entry_path(name)
        self._ensure_directory()
        try:
            path.write_text(entry.model_dump_json(indent=2))
        except OSError as e:
            raise TunnelRegistryError(f"Cannot write {path}: {e}") from e

        logger.debug("Saved tunnel entry", name=name, pid=entry.pid)
        return entry

    def get(self, name: str) -> RegistryEntry | None:
        """Read a record, deleting it if its process is gone."""
        path = self._entry_path(name)
        if not path.exists():
            return None

        try:
            entry = RegistryEntry.model_validate_json(path.read_text())
        except (OSError, ValidationError) as e:
            logger.warning("Discarding unreadable tunnel entry", name=name, error=str(e))
            self.remove(name)
            return None

        if not self.inspector.is_alive(entry.pid):
            logger.info("Removing stale tunnel entry", name=name, pid=entry.pid)
            self.remove(name)
            return None

        return entry

    def remove(self, name: str) -> None:
        self._entry_path(name).unlink(missing_ok=True)

    def list_all(self) -> dict[str, RegistryEntry]:
        """All live records by connection name."""
        if not self.directory.is_dir():
            return {}

        entries: dict[str, RegistryEntry] = {}
        for path in sorted(self.directory.glob("*.json")):
            entry = self.get(path.stem)
            if entry is not None:
                entries[path.stem] = entry
        return entries

    def stop(self, name: str) -> bool:
        """Terminate the tunnel recorded under a name and drop its record.

        Returns:
            False if no live tunnel was recorded under the name
        """
        entry = self.get(name)
        if entry is None:
            return False

        logger.info("Stopping registered tunnel", name=name, pid=entry.pid)
        if not self.inspector.terminate(entry.pid, signal.SIGTERM, grace=1.0):
            logger.warning("Tunnel ignored SIGTERM, killing", name=name, pid=entry.pid)
            self.inspector.terminate(entry.pid, signal.SIGKILL)

        self.remove(name)
        return True

    def uptime_seconds(self, entry: RegistryEntry, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        return max(int(now) - entry.started_at, 0)

    @staticmethod
    def format_uptime(seconds: int | float) -> str:
        return format_uptime(seconds)

    def write_pid(self, identifier: str, pid: int) -> None:
        """Persist a pid under an endpoint identifier."""
        path = self._pid_path(identifier)
        self._ensure_directory()
        try:
            path.write_text(str(pid))
        except OSError as e:
            raise TunnelRegistryError(f"Cannot write {path}: {e}") from e

    def read_pid(self, identifier: str) -> int | None:
        """Read the pid stored under an identifier, dropping dead or garbled files."""
        path = self._pid_path(identifier)
        if not path.exists():
            return None

        try:
            pid = int(path.read_text().strip())
        except (OSError, ValueError):
            self.remove_pid(identifier)
            return None

        if not self.inspector.is_alive(pid):
            logger.debug("Removing stale pid file", identifier=identifier, pid=pid)
            self.remove_pid(identifier)
            return None
        return pid

    def remove_pid(self, identifier: str) -> None:
        self._pid_path(identifier).unlink(missing_ok=True)
