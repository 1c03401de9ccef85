"""OS process inspection for tunnel discovery and teardown."""

import os
import re
import shutil
import signal
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass

import psutil

from .logging import get_logger

logger = get_logger(__name__)

_SS_PID = re.compile(r"pid=(\d+)")
_TRAILING_PID = re.compile(r"(\d+)(?:/\S*)?$")


@dataclass(frozen=True)
class ProcessInfo:
    """Snapshot of a process table entry."""

    pid: int
    name: str
    command_line: str


class ProcessInspector:
    """Queries the OS process table and socket tables.

    External utilities (lsof, ss, netstat) are optional: when one is missing
    the corresponding lookup yields nothing instead of failing.
    """

    def __init__(
        self,
        command_timeout: float = 5.0,
        which: Callable[[str], str | None] = shutil.which,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.command_timeout = command_timeout
        self._which = which
        self._sleep = sleep

    def is_alive(self, pid: int | None) -> bool:
        """Check if a process with this pid exists and has not exited."""
        if pid is None or pid <= 0:
            return False
        try:
            if not psutil.pid_exists(pid):
                return False
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, OverflowError, ValueError):
            # Out-of-range pids cannot name a process
            return False
        except psutil.AccessDenied:
            # Exists, owned by someone else
            return True

    def describe(self, pid: int) -> ProcessInfo | None:
        """Get name and full command line of a process, None if unavailable."""
        if not self.is_alive(pid):
            return None
        try:
            proc = psutil.Process(pid)
            name = proc.name()
            try:
                command_line = " ".join(proc.cmdline())
            except psutil.AccessDenied:
                command_line = ""
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

        if not name and not command_line:
            return None
        return ProcessInfo(pid=pid, name=name, command_line=command_line)

    def is_ssh_client(self, pid: int) -> bool:
        """Check if the process name or command line mentions ssh."""
        info = self.describe(pid)
        if info is None:
            return False
        return "ssh" in info.name.lower() or "ssh" in info.command_line.lower()

    def command_exists(self, command: str) -> bool:
        """Check if an executable is available on PATH."""
        return self._which(command) is not None

    def find_listener_pid(self, port: int) -> int | None:
        """Find the pid of the process listening on a local TCP port.

        lsof is tried first; ss and netstat are consulted only when lsof is
        missing or finds nothing.
        """
        for strategy in (self._find_with_lsof, self._find_with_ss, self._find_with_netstat):
            pid = strategy(port)
            if pid:
                logger.debug(
                    "Found listener", port=port, pid=pid, strategy=strategy.__name__
                )
                return pid
        return None

    def terminate(
        self, pid: int, sig: int = signal.SIGTERM, grace: float = 0.1
    ) -> bool:
        """Send a signal and report whether the process is gone afterwards.

        Returns:
            True if the process is not running (including never was)
        """
        if not self.is_alive(pid):
            return True

        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return True
        except PermissionError as e:
            logger.error("Not permitted to signal process", pid=pid, error=str(e))
            return False

        self._sleep(grace)
        return not self.is_alive(pid)

    def _run(self, args: list[str]) -> str:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Inspection command failed", command=args[0], error=str(e))
            return ""
        return result.stdout or ""

    def _find_with_lsof(self, port: int) -> int | None:
        if not self.command_exists("lsof"):
            return None
        output = self._run(["lsof", "-nP", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"])
        for line in output.splitlines():
            line = line.strip()
            if line.isdigit() and int(line) > 0:
                return int(line)
        return None

    def _find_with_ss(self, port: int) -> int | None:
        if not self.command_exists("ss"):
            return None
        output = self._run(["ss", "-tlnp"])
        for line in output.splitlines():
            columns = line.split()
            if len(columns) < 4 or not columns[3].endswith(f":{port}"):
                continue
            match = _SS_PID.search(line)
            if match:
                return int(match.group(1))
        return None

    def _find_with_netstat(self, port: int) -> int | None:
        if not self.command_exists("netstat"):
            return None

        # Linux: "tcp 0 0 127.0.0.1:15432 0.0.0.0:* LISTEN 1234/ssh"
        for line in self._run(["netstat", "-tlnp"]).splitlines():
            columns = line.split()
            if len(columns) < 7 or not columns[3].endswith(f":{port}"):
                continue
            match = _TRAILING_PID.search(columns[-1])
            if match and int(match.group(1)) > 0:
                return int(match.group(1))

        # macOS: local address is "127.0.0.1.15432", pid in the ninth column
        for line in self._run(["netstat", "-anv", "-p", "tcp"]).splitlines():
            columns = line.split()
            if "LISTEN" not in columns or len(columns) < 9:
                continue
            if not columns[3].endswith(f".{port}"):
                continue
            candidate = columns[8].split(":")[-1]
            if candidate.isdigit() and int(candidate) > 0:
                return int(candidate)
        return None


class AcceleratorLocator:
    """Locates the auto-reconnecting ssh wrapper (autossh) once per instance."""

    _UNSET = object()

    def __init__(
        self,
        enabled: bool = True,
        binary: str = "autossh",
        which: Callable[[str], str | None] = shutil.which,
    ):
        self.enabled = enabled
        self.binary = binary
        self._which = which
        self._path: object | str | None = self._UNSET

    @property
    def path(self) -> str | None:
        """Absolute path of the wrapper, None when unavailable or disabled."""
        if not self.enabled:
            return None
        if self._path is self._UNSET:
            self._path = self._which(self.binary)
            if self._path:
                logger.debug("autossh found", path=self._path)
            else:
                logger.debug("autossh not found, will use regular ssh")
        return self._path  # type: ignore[return-value]

    @property
    def available(self) -> bool:
        return self.path is not None
