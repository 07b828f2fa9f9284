"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest

from health_tap.config import AppConfig, DeviceConfig, RefreshConfig, ToolConfig

FIXTURES = Path(__file__).parent / "fixtures"

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "linux: mark test as needing a Linux host"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )

@pytest.fixture
def app_config(tmp_path):
    """Config pointing the device scan at a temporary directory."""
    return AppConfig(
        tools=ToolConfig(smartctl_path="smartctl", sensors_path="sensors"),
        refresh=RefreshConfig(interval_s=5.0, timeout_s=2.0, max_workers=2),
        devices=DeviceConfig(
            dev_root=str(tmp_path / "dev"),
            sys_block_root=str(tmp_path / "sys" / "block"),
        ),
    )

@pytest.fixture
def fake_invoker():
    """A ProcessInvoker stand-in whose ``run`` is a Mock."""
    invoker = Mock()
    invoker.cancelled = False
    return invoker


@pytest.fixture
def read_fixture():
    """Load captured tool output from tests/fixtures."""
    def _read(name: str) -> str:
        return (FIXTURES / name).read_text(encoding="utf-8")
    return _read
