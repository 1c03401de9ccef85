"""Shared pytest fixtures for SSH tunnel tests."""

import socket
from unittest.mock import Mock

import pytest

from ssh_tunnels.config import EndpointConfig
from ssh_tunnels.probe import PortProbe
from ssh_tunnels.process import AcceleratorLocator, ProcessInfo, ProcessInspector


@pytest.fixture
def endpoint_config():
    """Forward tunnel configuration used by most tests.

    Returns:
        EndpointConfig: u@h:22, 127.0.0.1:15432 -> localhost:5432
    """
    return EndpointConfig(
        tunnel_type="forward",
        user="u",
        host="h",
        port=22,
        local_port=15432,
        remote_host="localhost",
        remote_port=5432,
    )


@pytest.fixture
def listening_socket():
    """Open a real TCP listener on a free loopback port.

    Yields:
        tuple: (host, port) the listener is bound to
    """
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    try:
        yield server.getsockname()
    finally:
        server.close()


@pytest.fixture
def free_port():
    """A loopback port that nothing listens on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def mock_inspector():
    """ProcessInspector double reporting a live ssh process by default."""
    inspector = Mock(spec=ProcessInspector)
    inspector.is_alive.return_value = True
    inspector.is_ssh_client.return_value = True
    inspector.describe.return_value = ProcessInfo(
        pid=4242, name="ssh", command_line="ssh -N -L 127.0.0.1:15432:localhost:5432 u@h"
    )
    inspector.find_listener_pid.return_value = None
    inspector.terminate.return_value = True
    return inspector


@pytest.fixture
def mock_probe():
    """PortProbe double reporting the port as free by default."""
    probe = Mock(spec=PortProbe)
    probe.is_bound.return_value = False
    return probe


@pytest.fixture
def plain_ssh():
    """AcceleratorLocator that never finds autossh."""
    return AcceleratorLocator(which=lambda name: None)


@pytest.fixture
def mock_process():
    """Popen double for a running ssh process.

    Returns:
        Mock: Process with pid 4242 that is still running
    """
    process = Mock()
    process.pid = 4242
    process.poll.return_value = None
    process.terminate.return_value = None
    process.kill.return_value = None
    process.wait.return_value = 0
    return process


@pytest.fixture
def mock_popen(mock_process):
    """Popen factory returning mock_process."""
    return Mock(return_value=mock_process)


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    return Mock(return_value=None)
