"""Tests for running diagnostic tools as child processes."""
from __future__ import annotations

import shutil
import subprocess
import sys
from unittest.mock import Mock, patch

import pytest

from health_tap.errors import InvocationError
from health_tap.invoker import InvocationResult, ProcessInvoker
from health_tap.models import ErrorKind


def _process(stdout=b"", stderr=b"", returncode=0):
    proc = Mock()
    proc.communicate.return_value = (stdout, stderr)
    proc.returncode = returncode
    proc.poll.return_value = returncode
    return proc


class TestInvocationResult:
    def test_output_combines_streams(self):
        result = InvocationResult("smartctl -a /dev/sda", 2, "", "Permission denied")
        assert result.output == "Permission denied"

        result = InvocationResult("smartctl -a /dev/sda", 0, "out", "err")
        assert result.output == "out\nerr"


class TestProcessInvoker:
    """Tests for ProcessInvoker.run with a mocked Popen."""

    def test_successful_run(self):
        invoker = ProcessInvoker(default_timeout=3.0)
        proc = _process(stdout=b"SMART overall-health self-assessment test result: PASSED\n")

        with patch("health_tap.invoker.subprocess.Popen", return_value=proc) as popen:
            result = invoker.run("smartctl", ["-a", "/dev/sda"])

        popen.assert_called_once()
        assert popen.call_args.args[0] == ["smartctl", "-a", "/dev/sda"]
        assert popen.call_args.kwargs["stdin"] is subprocess.DEVNULL
        proc.communicate.assert_called_once_with(timeout=3.0)
        assert result.exit_code == 0
        assert result.command == "smartctl -a /dev/sda"
        assert "PASSED" in result.stdout
        assert invoker.running == 0

    def test_nonzero_exit_is_returned(self):
        """Test that smartctl's exit bits are handed back instead of raised."""
        invoker = ProcessInvoker()
        proc = _process(stdout=b"data", returncode=4)

        with patch("health_tap.invoker.subprocess.Popen", return_value=proc):
            result = invoker.run("smartctl", ["-a", "/dev/sda"], timeout=1.0)

        assert result.exit_code == 4
        assert result.stdout == "data"

    def test_undecodable_output_is_replaced(self):
        invoker = ProcessInvoker()
        proc = _process(stdout=b"\xff34 C")

        with patch("health_tap.invoker.subprocess.Popen", return_value=proc):
            result = invoker.run("sensors")

        assert result.stdout == "�34 C"

    def test_timeout_kills_process(self):
        """Test that a hung tool is killed and reaped."""
        invoker = ProcessInvoker()
        proc = _process()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired(cmd="smartctl", timeout=0.5),
            (b"", b""),
        ]

        with patch("health_tap.invoker.subprocess.Popen", return_value=proc):
            with pytest.raises(InvocationError) as excinfo:
                invoker.run("smartctl", ["-a", "/dev/sdc"], timeout=0.5)

        assert excinfo.value.kind is ErrorKind.TIMEOUT
        assert excinfo.value.command == "smartctl -a /dev/sdc"
        proc.kill.assert_called_once()
        assert proc.communicate.call_count == 2
        assert invoker.running == 0

    def test_tool_not_found(self):
        invoker = ProcessInvoker()

        with patch("health_tap.invoker.subprocess.Popen", side_effect=FileNotFoundError()):
            with pytest.raises(InvocationError) as excinfo:
                invoker.run("smartctl", ["-a", "/dev/sda"])

        assert excinfo.value.kind is ErrorKind.NOT_FOUND
        assert "smartctl not found" in excinfo.value.message

    def test_permission_denied_executing(self):
        invoker = ProcessInvoker()

        with patch("health_tap.invoker.subprocess.Popen", side_effect=PermissionError()):
            with pytest.raises(InvocationError) as excinfo:
                invoker.run("smartctl")

        assert excinfo.value.kind is ErrorKind.PERMISSION_DENIED

    def test_spawn_failure(self):
        invoker = ProcessInvoker()

        with patch("health_tap.invoker.subprocess.Popen", side_effect=OSError("exec format error")):
            with pytest.raises(InvocationError) as excinfo:
                invoker.run("smartctl")

        assert excinfo.value.kind is ErrorKind.PROCESS_FAILURE
        assert "exec format error" in excinfo.value.message

    def test_cancelled_invoker_refuses_new_runs(self):
        invoker = ProcessInvoker()
        invoker.cancel()

        with patch("health_tap.invoker.subprocess.Popen") as popen:
            with pytest.raises(InvocationError) as excinfo:
                invoker.run("smartctl")

        assert excinfo.value.kind is ErrorKind.CANCELLED
        popen.assert_not_called()

        invoker.reset()
        with patch("health_tap.invoker.subprocess.Popen", return_value=_process()):
            assert invoker.run("smartctl").exit_code == 0

    def test_cancel_kills_in_flight_process(self):
        """Test that cancel() kills a running child and the run reports it."""
        invoker = ProcessInvoker()
        proc = _process()
        proc.poll.return_value = None

        def communicate(timeout=None):
            assert invoker.running == 1
            invoker.cancel()
            return b"", b""

        proc.communicate.side_effect = communicate

        with patch("health_tap.invoker.subprocess.Popen", return_value=proc):
            with pytest.raises(InvocationError) as excinfo:
                invoker.run("smartctl", ["-a", "/dev/sda"])

        assert excinfo.value.kind is ErrorKind.CANCELLED
        proc.kill.assert_called_once()
        assert invoker.cancelled


@pytest.mark.linux
@pytest.mark.integration
@pytest.mark.skipif(sys.platform != "linux" or shutil.which("sh") is None, reason="needs sh")
class TestProcessInvokerIntegration:
    """Runs real child processes."""

    def test_exit_status_and_output(self):
        result = ProcessInvoker().run("sh", ["-c", "echo hello; echo oops >&2; exit 3"], timeout=5)

        assert result.exit_code == 3
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"

    def test_real_timeout(self):
        invoker = ProcessInvoker()

        with pytest.raises(InvocationError) as excinfo:
            invoker.run("sh", ["-c", "exec sleep 5"], timeout=0.2)

        assert excinfo.value.kind is ErrorKind.TIMEOUT
        assert invoker.running == 0

    def test_missing_binary(self):
        with pytest.raises(InvocationError) as excinfo:
            ProcessInvoker().run("/nonexistent/health-tap-tool")

        assert excinfo.value.kind is ErrorKind.NOT_FOUND
