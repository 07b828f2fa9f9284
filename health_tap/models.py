from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

RawValue = Union[int, float, str]


class InterfaceKind(str, Enum):
    ATA = "ATA"
    NVME = "NVMe"
    UNKNOWN = "Unknown"


class Verdict(str, Enum):
    PASSED = "Passed"
    FAILED = "Failed"
    WARNING = "Warning"
    UNKNOWN = "Unknown"


class AttributeStatus(str, Enum):
    GOOD = "Good"
    WARNING = "Warning"
    CRITICAL = "Critical"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    PROCESS_FAILURE = "process_failure"
    CANCELLED = "cancelled"
    MALFORMED = "malformed"
    EMPTY_OUTPUT = "empty_output"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def clamp_percent(value: int | None) -> int | None:
    if value is None:
        return None
    return max(0, min(100, value))


def attribute_status(normalized: int | None, threshold: int | None) -> AttributeStatus:
    """Classify an attribute against its vendor threshold.

    At or below the threshold is critical, within 10 points of it is a
    warning. A zero threshold means the vendor never fails on it.
    """
    if normalized is None or not threshold:
        return AttributeStatus.GOOD
    if normalized <= threshold:
        return AttributeStatus.CRITICAL
    if normalized <= threshold + 10:
        return AttributeStatus.WARNING
    return AttributeStatus.GOOD


@dataclass(frozen=True)
class DeviceError:
    kind: ErrorKind
    message: str
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def is_permission_problem(self) -> bool:
        return self.kind is ErrorKind.PERMISSION_DENIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "occurred_at": _iso(self.occurred_at),
        }


@dataclass(frozen=True)
class DeviceIdentity:
    path: str
    interface: InterfaceKind = InterfaceKind.UNKNOWN
    model: str | None = None
    serial: str | None = None
    firmware: str | None = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "interface": self.interface.value,
            "model": self.model,
            "serial": self.serial,
            "firmware": self.firmware,
        }


@dataclass(frozen=True)
class AttributeValue:
    name: str
    raw: RawValue
    normalized: int | None = None
    threshold: int | None = None
    worst: int | None = None
    attr_id: int | None = None
    when_failed: str | None = None
    status: AttributeStatus = AttributeStatus.GOOD

    def __post_init__(self) -> None:
        # Frozen dataclass; normalize through object.__setattr__.
        object.__setattr__(self, "normalized", clamp_percent(self.normalized))
        object.__setattr__(self, "worst", clamp_percent(self.worst))

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"name": self.name, "raw": self.raw}
        if self.attr_id is not None:
            entry["id"] = self.attr_id
        for key in ("normalized", "worst", "threshold", "when_failed"):
            value = getattr(self, key)
            if value is not None:
                entry[key] = value
        entry["status"] = self.status.value
        return entry


@dataclass(frozen=True)
class PartitionInfo:
    mount_point: str
    fs_type: str
    total_b: int
    used_b: int
    free_b: int
    used_pct: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "mount_point": self.mount_point,
            "fs_type": self.fs_type,
            "total_b": self.total_b,
            "used_b": self.used_b,
            "free_b": self.free_b,
            "used_pct": self.used_pct,
        }


@dataclass(frozen=True)
class DeviceHealthRecord:
    identity: DeviceIdentity
    attributes: tuple[AttributeValue, ...] = ()
    verdict: Verdict = Verdict.UNKNOWN
    temperature_c: float | None = None
    power_on_hours: int | None = None
    last_successful_read: datetime | None = None
    last_error: DeviceError | None = None
    health_pct: int | None = None
    power_cycles: int | None = None
    unsafe_shutdowns: int | None = None
    data_read_b: int | None = None
    data_written_b: int | None = None
    capacity_b: int | None = None
    rotation_rpm: int | None = None
    media_type: str | None = None
    smartctl_flags: tuple[str, ...] = ()
    skipped_lines: int = 0
    partitions: tuple[PartitionInfo, ...] = ()

    @property
    def path(self) -> str:
        return self.identity.path

    @property
    def never_read(self) -> bool:
        return self.last_successful_read is None

    @property
    def is_stale(self) -> bool:
        return self.last_error is not None and not self.never_read

    def attribute(self, name: str) -> AttributeValue | None:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None

    def with_error(self, error: DeviceError) -> DeviceHealthRecord:
        """Keep the last good values, flag the current cycle's failure."""
        return replace(self, last_error=error)

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "identity": self.identity.to_dict(),
            "verdict": self.verdict.value,
            "attributes": [attr.to_dict() for attr in self.attributes],
            "last_successful_read": _iso(self.last_successful_read),
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "skipped_lines": self.skipped_lines,
        }
        # Only include optional fields if they have values
        for key in (
            "temperature_c",
            "power_on_hours",
            "health_pct",
            "power_cycles",
            "unsafe_shutdowns",
            "data_read_b",
            "data_written_b",
            "capacity_b",
            "rotation_rpm",
            "media_type",
        ):
            value = getattr(self, key)
            if value is not None:
                entry[key] = value
        if self.smartctl_flags:
            entry["smartctl_flags"] = list(self.smartctl_flags)
        if self.partitions:
            entry["partitions"] = [part.to_dict() for part in self.partitions]
        return entry


@dataclass(frozen=True)
class SensorReading:
    source: str
    temperature_c: float
    chip: str | None = None
    high_c: float | None = None
    critical_c: float | None = None

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "source": self.source,
            "temperature_c": self.temperature_c,
        }
        if self.chip is not None:
            entry["chip"] = self.chip
        if self.high_c is not None:
            entry["high_c"] = self.high_c
        if self.critical_c is not None:
            entry["critical_c"] = self.critical_c
        return entry


@dataclass(frozen=True)
class HealthSnapshot:
    sequence: int
    captured_at: datetime | None
    devices: tuple[DeviceHealthRecord, ...] = ()
    sensors: tuple[SensorReading, ...] = ()
    sensor_error: DeviceError | None = None

    @classmethod
    def initial(cls) -> HealthSnapshot:
        return cls(sequence=0, captured_at=None)

    @property
    def is_initial(self) -> bool:
        return self.sequence == 0

    def device(self, path: str) -> DeviceHealthRecord | None:
        for record in self.devices:
            if record.path == path:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "sequence": self.sequence,
            "captured_at": _iso(self.captured_at),
            "devices": [record.to_dict() for record in self.devices],
            "sensors": [reading.to_dict() for reading in self.sensors],
        }
        if self.sensor_error is not None:
            payload["sensor_error"] = self.sensor_error.to_dict()
        return payload
