"""Tests for the command-line entry point and snapshot schema."""
from __future__ import annotations

import json
import os
from pathlib import Path
import shutil
import signal
import subprocess
import sys
import time
from unittest.mock import patch

import pytest

from health_tap.builder import SnapshotBuilder
from health_tap.invoker import InvocationResult
from health_tap.main import main, summarize
from health_tap.models import (
    DeviceError,
    DeviceHealthRecord,
    DeviceIdentity,
    ErrorKind,
    HealthSnapshot,
    InterfaceKind,
    SensorReading,
    Verdict,
    utcnow,
)
from health_tap.schema import validate_snapshot


def _snapshot(verdict=Verdict.PASSED):
    now = utcnow()
    return HealthSnapshot(
        sequence=1,
        captured_at=now,
        devices=(
            DeviceHealthRecord(
                identity=DeviceIdentity(path="/dev/sda", interface=InterfaceKind.ATA, model="WDC"),
                verdict=verdict,
                temperature_c=41.0,
                last_successful_read=now,
            ),
            DeviceHealthRecord(
                identity=DeviceIdentity(path="/dev/sdb", interface=InterfaceKind.ATA),
                last_error=DeviceError(kind=ErrorKind.PERMISSION_DENIED, message="denied"),
            ),
        ),
        sensors=(SensorReading(source="CPU", temperature_c=43.7),),
    )


@pytest.fixture
def quiet_logging():
    with patch("health_tap.main.configure_logging"):
        yield


class TestSchema:
    """Tests for snapshot JSON schema validation."""

    def test_initial_snapshot_valid(self):
        assert validate_snapshot(HealthSnapshot.initial().to_dict()) == []

    def test_built_snapshot_valid(self, app_config, fake_invoker, read_fixture, tmp_path):
        dev = tmp_path / "dev"
        dev.mkdir()
        for name in ("sda", "sdb", "nvme0n1"):
            (dev / name).touch()
        outputs = {
            "sda": (0, read_fixture("smartctl_ata_hdd_failing.txt")),
            "sdb": (2, read_fixture("smartctl_permission_denied.txt")),
            "nvme0n1": (0, read_fixture("smartctl_nvme.txt")),
        }

        def run(command, args=(), timeout=None):
            if command == "sensors":
                return InvocationResult(command, 0, read_fixture("sensors.txt"), "")
            exit_code, stdout = outputs[args[-1].rsplit("/", 1)[-1]]
            return InvocationResult(command, exit_code, stdout, "")

        fake_invoker.run.side_effect = run
        builder = SnapshotBuilder(app_config, invoker=fake_invoker)

        with patch("health_tap.builder.psutil.disk_partitions", return_value=[]):
            snapshot = builder.build()

        assert validate_snapshot(snapshot.to_dict()) == []

    def test_invalid_payload(self):
        payload = _snapshot().to_dict()
        payload["devices"][0]["verdict"] = "Fine"
        del payload["sequence"]

        errors = validate_snapshot(payload)

        assert len(errors) == 2


class TestSummarize:
    def test_summary_line(self):
        summary = summarize(_snapshot())

        assert summary == "sda=Passed/41C, sdb=error(permission_denied), CPU=43.7C"

    def test_empty(self):
        assert summarize(HealthSnapshot.initial()) == "no devices"


class TestMain:
    """Tests for main() with the builder mocked out."""

    def test_once_prints_snapshot(self, capsys, quiet_logging):
        with patch("health_tap.main.SnapshotBuilder") as builder_cls:
            builder_cls.return_value.build.return_value = _snapshot()
            exit_code = main(["--once"])

        assert exit_code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["sequence"] == 1
        assert payload["devices"][0]["identity"]["model"] == "WDC"

    def test_once_failing_disk_exit_code(self, capsys, quiet_logging):
        with patch("health_tap.main.SnapshotBuilder") as builder_cls:
            builder_cls.return_value.build.return_value = _snapshot(Verdict.FAILED)
            exit_code = main(["--once"])

        assert exit_code == 1

    def test_once_dump_json(self, tmp_path, capsys, quiet_logging):
        target = tmp_path / "snapshot.json"
        with patch("health_tap.main.SnapshotBuilder") as builder_cls:
            builder_cls.return_value.build.return_value = _snapshot()
            main(["--once", "--dump-json", str(target)])

        dumped = json.loads(target.read_text(encoding="utf-8"))
        assert dumped["sensors"] == [{"source": "CPU", "temperature_c": 43.7}]

    def test_invalid_interval_exits(self, quiet_logging):
        with pytest.raises(SystemExit) as excinfo:
            main(["--once", "--interval", "0"])

        assert excinfo.value.code == 2

    def test_sigterm_stops_scheduler(self, quiet_logging):
        handlers = {}

        def register(signum, handler):
            handlers[signum] = handler
            if signum == signal.SIGTERM:
                handler(signum, None)

        with patch("health_tap.main.SnapshotBuilder"), patch(
            "health_tap.main.RefreshScheduler"
        ) as scheduler_cls, patch("health_tap.main.signal.signal", side_effect=register):
            exit_code = main([])

        assert exit_code == 0
        scheduler_cls.return_value.start.assert_called_once()
        scheduler_cls.return_value.stop.assert_called_once()
        assert signal.SIGINT in handlers


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def _process_gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


@pytest.mark.linux
@pytest.mark.integration
@pytest.mark.skipif(sys.platform != "linux" or shutil.which("sh") is None, reason="needs sh")
class TestMainIntegration:
    """Runs health-tap as a real process."""

    def test_sigterm_kills_running_smartctl(self, tmp_path):
        pid_file = tmp_path / "smartctl.pid"
        smartctl = tmp_path / "smartctl"
        smartctl.write_text(f"#!/bin/sh\necho $$ > {pid_file}.tmp\nmv {pid_file}.tmp {pid_file}\nexec sleep 30\n")
        smartctl.chmod(0o755)
        dev = tmp_path / "dev"
        dev.mkdir()
        (dev / "sda").touch()

        proc = subprocess.Popen(
            [
                sys.executable,
                "-m",
                "health_tap.main",
                "--smartctl-path",
                str(smartctl),
                "--sensors-path",
                str(tmp_path / "missing-sensors"),
                "--dev-root",
                str(dev),
                "--timeout",
                "20",
            ],
            cwd=Path(__file__).resolve().parents[1],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        try:
            assert _wait_for(pid_file.exists), "smartctl was never started"
            child_pid = int(pid_file.read_text().strip())

            proc.send_signal(signal.SIGTERM)
            exit_code = proc.wait(timeout=15)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        assert exit_code == 0
        assert _wait_for(lambda: _process_gone(child_pid), timeout=5)
