from __future__ import annotations

import logging
import os
from pathlib import Path
import re

from health_tap.errors import EnumerationError
from health_tap.models import InterfaceKind

# Whole-disk nodes only: sda but not sda1, nvme0n1 but not nvme0n1p1.
_WHOLE_DISK_PATTERNS: tuple[tuple[re.Pattern[str], InterfaceKind], ...] = (
    (re.compile(r"^nvme\d+n\d+$"), InterfaceKind.NVME),
    (re.compile(r"^sd[a-z]+$"), InterfaceKind.ATA),
    (re.compile(r"^hd[a-z]+$"), InterfaceKind.ATA),
)


def interface_hint(path: str) -> InterfaceKind:
    name = os.path.basename(path)
    for pattern, kind in _WHOLE_DISK_PATTERNS:
        if pattern.match(name):
            return kind
    return InterfaceKind.UNKNOWN


def is_whole_disk(name: str) -> bool:
    return any(pattern.match(name) for pattern, _ in _WHOLE_DISK_PATTERNS)


class DeviceEnumerator:
    def __init__(self, dev_root: str = "/dev", sys_block_root: str = "/sys/block") -> None:
        self.dev_root = Path(dev_root)
        self.sys_block_root = Path(sys_block_root)
        self.logger = logging.getLogger(self.__class__.__name__)

    def enumerate(self) -> list[str]:
        """List candidate whole-disk device paths.

        An unreadable device directory means no drives, not an error.
        """
        try:
            names = self._list_names()
        except EnumerationError as exc:
            self.logger.warning("%s", exc.message)
            return []

        devices = sorted({str(self.dev_root / name) for name in names if is_whole_disk(name)})
        if not devices:
            self.logger.debug("No candidate disks under %s.", self.dev_root)
        else:
            self.logger.debug("Found %d candidate disks: %s", len(devices), devices)
        return devices

    def _list_names(self) -> list[str]:
        try:
            return os.listdir(self.dev_root)
        except OSError as exc:
            raise EnumerationError(f"Failed to list {self.dev_root}: {exc}") from exc

    def media_type(self, path: str) -> str | None:
        """SSD or HDD from the kernel's rotational flag, None if unreadable."""
        name = os.path.basename(path)
        flag = self.sys_block_root / name / "queue" / "rotational"
        try:
            value = flag.read_text().strip()
        except OSError:
            return None
        if value == "0":
            return "SSD"
        if value == "1":
            return "HDD"
        return None
