"""Tests for tunnel health validation."""

from unittest.mock import Mock, call

import pytest

from ssh_tunnels.process import ProcessInfo
from ssh_tunnels.validator import ConnectionValidator, ValidationResult


@pytest.fixture
def validator(mock_inspector, mock_probe, no_sleep):
    mock_probe.is_bound.return_value = True
    return ConnectionValidator(
        inspector=mock_inspector, probe=mock_probe, port_timeout=0.5, sleep=no_sleep
    )


class TestValidationResult:
    def test_truthiness_follows_validity(self):
        assert bool(ValidationResult(valid=True)) is True
        assert bool(ValidationResult(valid=False, errors=["x"])) is False


class TestValidate:
    def test_healthy_tunnel(self, validator, mock_probe):
        result = validator.validate(4242, 15432)

        assert result.valid is True
        assert result.errors == []
        mock_probe.is_bound.assert_called_once_with("127.0.0.1", 15432, 0.5)

    def test_dead_process_short_circuits(self, validator, mock_inspector, mock_probe):
        """A dead process yields exactly one error and no further checks"""
        mock_inspector.is_alive.return_value = False

        result = validator.validate(4242, 15432, endpoint="db")

        assert result.valid is False
        assert result.errors == ["Tunnel process (PID: 4242) is not running"]
        mock_inspector.is_ssh_client.assert_not_called()
        mock_probe.is_bound.assert_not_called()

    def test_foreign_process_short_circuits(self, validator, mock_inspector, mock_probe):
        mock_inspector.is_ssh_client.return_value = False
        mock_inspector.describe.return_value = ProcessInfo(
            pid=4242, name="nginx", command_line="nginx: master process"
        )

        result = validator.validate(4242, 15432)

        assert result.errors == ["Process (PID: 4242) is not SSH tunnel (it's nginx)"]
        mock_probe.is_bound.assert_not_called()

    def test_foreign_process_that_vanished(self, validator, mock_inspector):
        mock_inspector.is_ssh_client.return_value = False
        mock_inspector.describe.return_value = None

        result = validator.validate(4242, 15432)

        assert result.errors == ["Process (PID: 4242) is not SSH tunnel (it's unknown)"]

    def test_port_and_endpoint_errors_accumulate(self, validator, mock_probe):
        mock_probe.is_bound.return_value = False
        validator.register_endpoint("db", Mock(side_effect=OSError("refused")))

        result = validator.validate(4242, 15432, endpoint="db")

        assert result.valid is False
        assert result.errors == [
            "Port 15432 is not accessible",
            "Endpoint 'db' not accessible through tunnel",
        ]

    def test_endpoint_check_passes(self, validator):
        validator.register_endpoint("db", lambda: 1)

        assert validator.validate(4242, 15432, endpoint="db").valid is True

    def test_real_listener(self, mock_inspector, listening_socket):
        """Port check against a real socket"""
        host, port = listening_socket
        validator = ConnectionValidator(inspector=mock_inspector)

        assert validator.validate(4242, port, local_host=host).valid is True


class TestEndpoints:
    def test_unknown_endpoint_is_inaccessible(self, validator):
        assert validator.is_endpoint_accessible("missing") is False
        assert validator.endpoint_error("missing") == "Endpoint 'missing' is not registered"

    def test_falsy_result_is_inaccessible(self, validator):
        validator.register_endpoint("db", lambda: 0)

        assert validator.is_endpoint_accessible("db") is False

    def test_endpoint_error_reports_exception(self, validator):
        validator.register_endpoint("db", Mock(side_effect=RuntimeError("auth failed")))

        assert validator.endpoint_error("db") == "auth failed"

    def test_endpoint_error_when_healthy(self, validator):
        validator.register_endpoint("db", lambda: True)

        assert validator.endpoint_error("db") == "No error"

    def test_endpoints_from_constructor(self, mock_inspector, mock_probe):
        validator = ConnectionValidator(
            inspector=mock_inspector, probe=mock_probe, endpoints={"db": lambda: True}
        )

        assert validator.is_endpoint_accessible("db") is True


class TestWaitFor:
    def test_succeeds_after_retries(self, validator, no_sleep):
        check = Mock(side_effect=[False, OSError("not yet"), True])
        validator.register_endpoint("db", check)

        assert validator.wait_for("db", max_attempts=5, delay=1.5) is True
        assert check.call_count == 3
        assert no_sleep.call_args_list == [call(1.5), call(1.5)]

    def test_gives_up_without_trailing_pause(self, validator, no_sleep):
        check = Mock(return_value=False)
        validator.register_endpoint("db", check)

        assert validator.wait_for("db", max_attempts=3, delay=2.0) is False
        assert check.call_count == 3
        assert no_sleep.call_count == 2
