from __future__ import annotations

import argparse
from dataclasses import dataclass, field, replace

DEFAULT_INTERVAL_S = 5.0
DEFAULT_TIMEOUT_S = 10.0
DEFAULT_MAX_WORKERS = 4


@dataclass(frozen=True)
class ToolConfig:
    smartctl_path: str = "smartctl"
    sensors_path: str = "sensors"
    nvidia_smi_path: str = "nvidia-smi"
    smart_json: bool = False
    enable_gpu: bool = False


@dataclass(frozen=True)
class RefreshConfig:
    interval_s: float = DEFAULT_INTERVAL_S
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS
    # Consecutive enumeration misses before a device record is dropped.
    drop_after_misses: int = 1


@dataclass(frozen=True)
class DeviceConfig:
    dev_root: str = "/dev"
    sys_block_root: str = "/sys/block"


@dataclass(frozen=True)
class AppConfig:
    tools: ToolConfig = field(default_factory=ToolConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    devices: DeviceConfig = field(default_factory=DeviceConfig)


def default_config() -> AppConfig:
    return AppConfig()


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def config_from_args(args: argparse.Namespace) -> AppConfig:
    """Apply command-line overrides on top of the fixed defaults.

    There is no configuration file; anything not given on the command line
    keeps its default.
    """
    config = default_config()

    tools = config.tools
    smartctl_path = _get_optional(getattr(args, "smartctl_path", None))
    if smartctl_path:
        tools = replace(tools, smartctl_path=smartctl_path)
    sensors_path = _get_optional(getattr(args, "sensors_path", None))
    if sensors_path:
        tools = replace(tools, sensors_path=sensors_path)
    if getattr(args, "smart_json", False):
        tools = replace(tools, smart_json=True)
    if getattr(args, "gpu", False):
        tools = replace(tools, enable_gpu=True)

    refresh = config.refresh
    interval = getattr(args, "interval", None)
    if interval is not None:
        if interval < 1:
            raise ValueError(f"Refresh interval must be at least 1 second: {interval}")
        refresh = replace(refresh, interval_s=float(interval))
    timeout = getattr(args, "timeout", None)
    if timeout is not None:
        if timeout <= 0:
            raise ValueError(f"Command timeout must be positive: {timeout}")
        refresh = replace(refresh, timeout_s=float(timeout))
    workers = getattr(args, "workers", None)
    if workers is not None:
        if workers < 1:
            raise ValueError(f"Worker count must be at least 1: {workers}")
        refresh = replace(refresh, max_workers=workers)
    misses = getattr(args, "drop_after_misses", None)
    if misses is not None:
        if misses < 1:
            raise ValueError(f"drop_after_misses must be at least 1: {misses}")
        refresh = replace(refresh, drop_after_misses=misses)

    devices = config.devices
    dev_root = _get_optional(getattr(args, "dev_root", None))
    if dev_root:
        devices = replace(devices, dev_root=dev_root)

    return AppConfig(tools=tools, refresh=refresh, devices=devices)
