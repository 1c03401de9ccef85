"""Unit tests for ProcessInspector and AcceleratorLocator."""

import os
import signal
import subprocess
import sys
from unittest.mock import Mock, patch

import psutil
import pytest

from ssh_tunnels.process import AcceleratorLocator, ProcessInfo, ProcessInspector


def _which_only(*available):
    return lambda name: f"/usr/bin/{name}" if name in available else None


class TestLiveness:
    """Process liveness via psutil"""

    def test_current_process_is_alive(self):
        assert ProcessInspector().is_alive(os.getpid()) is True

    @pytest.mark.parametrize("pid", [None, 0, -5])
    def test_invalid_pids_are_dead(self, pid):
        assert ProcessInspector().is_alive(pid) is False

    @pytest.mark.parametrize("pid", [2**63, 10**20])
    def test_out_of_range_pids_are_dead(self, pid):
        """Pids too large for the platform are reported dead, not raised"""
        inspector = ProcessInspector()

        assert inspector.is_alive(pid) is False
        assert inspector.describe(pid) is None
        assert inspector.terminate(pid) is True

    def test_exited_process_is_dead(self):
        """A reaped child no longer counts as alive"""
        child = subprocess.Popen([sys.executable, "-c", "pass"])
        child.wait()

        assert ProcessInspector().is_alive(child.pid) is False

    @patch("ssh_tunnels.process.psutil")
    def test_zombie_is_dead(self, mock_psutil):
        mock_psutil.pid_exists.return_value = True
        mock_psutil.STATUS_ZOMBIE = psutil.STATUS_ZOMBIE
        mock_psutil.NoSuchProcess = psutil.NoSuchProcess
        mock_psutil.AccessDenied = psutil.AccessDenied
        mock_psutil.Process.return_value.status.return_value = psutil.STATUS_ZOMBIE

        assert ProcessInspector().is_alive(1234) is False

    @patch("ssh_tunnels.process.psutil")
    def test_access_denied_counts_as_alive(self, mock_psutil):
        mock_psutil.pid_exists.return_value = True
        mock_psutil.NoSuchProcess = psutil.NoSuchProcess
        mock_psutil.AccessDenied = psutil.AccessDenied
        mock_psutil.Process.return_value.status.side_effect = psutil.AccessDenied(1)

        assert ProcessInspector().is_alive(1) is True


class TestDescribe:
    def test_describe_current_process(self):
        info = ProcessInspector().describe(os.getpid())

        assert isinstance(info, ProcessInfo)
        assert info.pid == os.getpid()
        assert info.name

    def test_describe_dead_process(self):
        assert ProcessInspector().describe(0) is None

    @pytest.mark.parametrize(
        "name,command_line,expected",
        [
            ("ssh", "ssh -N -L 1:h:2 u@h", True),
            ("autossh", "autossh -M 0 -N", True),
            ("python3", "python3 -m http.server", False),
            ("sh", "/bin/sh -c ssh -N u@h", True),
        ],
    )
    def test_is_ssh_client(self, name, command_line, expected):
        inspector = ProcessInspector()
        with patch.object(
            inspector,
            "describe",
            return_value=ProcessInfo(pid=7, name=name, command_line=command_line),
        ):
            assert inspector.is_ssh_client(7) is expected

    def test_is_ssh_client_dead_process(self):
        inspector = ProcessInspector()
        with patch.object(inspector, "describe", return_value=None):
            assert inspector.is_ssh_client(7) is False


class TestCommandExists:
    def test_uses_which(self):
        inspector = ProcessInspector(which=_which_only("lsof"))

        assert inspector.command_exists("lsof") is True
        assert inspector.command_exists("ss") is False


class TestFindListener:
    """Listener lookup through lsof, ss and netstat"""

    def test_lsof_preferred(self):
        inspector = ProcessInspector(which=_which_only("lsof", "ss", "netstat"))
        with patch.object(inspector, "_run", return_value="4242\n") as mock_run:
            assert inspector.find_listener_pid(15432) == 4242

        mock_run.assert_called_once_with(
            ["lsof", "-nP", "-t", "-iTCP:15432", "-sTCP:LISTEN"]
        )

    def test_falls_back_to_ss(self):
        ss_output = (
            "State  Recv-Q Send-Q Local Address:Port  Peer Address:Port Process\n"
            'LISTEN 0      128    127.0.0.1:15432     0.0.0.0:*     users:(("ssh",pid=5151,fd=4))\n'
        )
        inspector = ProcessInspector(which=_which_only("ss"))
        with patch.object(inspector, "_run", return_value=ss_output):
            assert inspector.find_listener_pid(15432) == 5151

    def test_ss_ignores_other_ports(self):
        ss_output = (
            'LISTEN 0 128 127.0.0.1:154320 0.0.0.0:* users:(("x",pid=1,fd=4))\n'
        )
        inspector = ProcessInspector(which=_which_only("ss"))
        with patch.object(inspector, "_run", return_value=ss_output):
            assert inspector.find_listener_pid(15432) is None

    def test_empty_lsof_falls_through_to_netstat(self):
        netstat_output = (
            "tcp        0      0 127.0.0.1:15432         0.0.0.0:*               LISTEN      6161/ssh\n"
        )
        inspector = ProcessInspector(which=_which_only("lsof", "netstat"))
        outputs = {"lsof": "", "netstat": netstat_output}
        with patch.object(
            inspector, "_run", side_effect=lambda args: outputs[args[0]]
        ):
            assert inspector.find_listener_pid(15432) == 6161

    def test_netstat_macos_format(self):
        macos_output = (
            "tcp4       0      0  127.0.0.1.15432        *.*                    LISTEN      "
            "131072 131072   7171      0\n"
        )

        def run(args):
            return "" if args[1] == "-tlnp" else macos_output

        inspector = ProcessInspector(which=_which_only("netstat"))
        with patch.object(inspector, "_run", side_effect=run):
            assert inspector.find_listener_pid(15432) == 7171

    def test_no_tools_available(self):
        inspector = ProcessInspector(which=_which_only())
        with patch.object(inspector, "_run") as mock_run:
            assert inspector.find_listener_pid(15432) is None

        mock_run.assert_not_called()

    @patch("ssh_tunnels.process.subprocess.run")
    def test_run_failure_yields_empty_output(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="lsof", timeout=5)

        assert ProcessInspector()._run(["lsof"]) == ""


class TestTerminate:
    def test_dead_process_counts_as_stopped(self):
        inspector = ProcessInspector()
        with patch.object(inspector, "is_alive", return_value=False):
            assert inspector.terminate(999999) is True

    @patch("ssh_tunnels.process.os.kill")
    def test_signals_and_rechecks(self, mock_kill):
        sleep = Mock()
        inspector = ProcessInspector(sleep=sleep)
        with patch.object(inspector, "is_alive", side_effect=[True, False]):
            assert inspector.terminate(4242, grace=0.5) is True

        mock_kill.assert_called_once_with(4242, signal.SIGTERM)
        sleep.assert_called_once_with(0.5)

    @patch("ssh_tunnels.process.os.kill", side_effect=PermissionError("denied"))
    def test_permission_denied(self, mock_kill):
        inspector = ProcessInspector(sleep=Mock())
        with patch.object(inspector, "is_alive", return_value=True):
            assert inspector.terminate(1) is False

    @patch("ssh_tunnels.process.os.kill", side_effect=ProcessLookupError())
    def test_vanished_before_signal(self, mock_kill):
        inspector = ProcessInspector(sleep=Mock())
        with patch.object(inspector, "is_alive", return_value=True):
            assert inspector.terminate(4242) is True

    def test_terminates_real_child(self):
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            inspector = ProcessInspector()
            inspector.terminate(child.pid, grace=0.0)
            assert child.wait(timeout=5) != 0
        finally:
            if child.poll() is None:
                child.kill()
                child.wait()


class TestAcceleratorLocator:
    def test_found(self):
        locator = AcceleratorLocator(which=_which_only("autossh"))

        assert locator.path == "/usr/bin/autossh"
        assert locator.available is True

    def test_not_found(self):
        locator = AcceleratorLocator(which=_which_only())

        assert locator.path is None
        assert locator.available is False

    def test_disabled(self):
        which = Mock(return_value="/usr/bin/autossh")
        locator = AcceleratorLocator(enabled=False, which=which)

        assert locator.path is None
        which.assert_not_called()

    def test_lookup_is_memoized(self):
        which = Mock(return_value=None)
        locator = AcceleratorLocator(which=which)

        locator.path
        locator.path
        locator.available

        which.assert_called_once_with("autossh")
