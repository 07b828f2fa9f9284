"""Health Tap storage and thermal health monitor."""

from health_tap.builder import SnapshotBuilder
from health_tap.config import AppConfig, default_config
from health_tap.enumerator import DeviceEnumerator
from health_tap.errors import EnumerationError, HealthTapError, InvocationError, ParseError
from health_tap.invoker import ProcessInvoker
from health_tap.models import (
    AttributeValue,
    DeviceHealthRecord,
    DeviceIdentity,
    HealthSnapshot,
    InterfaceKind,
    SensorReading,
    Verdict,
)
from health_tap.parser import parse_sensor_output, parse_smart_output
from health_tap.scheduler import RefreshScheduler
from health_tap.store import ModelStore

__all__ = [
    "AppConfig",
    "AttributeValue",
    "DeviceEnumerator",
    "DeviceHealthRecord",
    "DeviceIdentity",
    "EnumerationError",
    "HealthSnapshot",
    "HealthTapError",
    "InterfaceKind",
    "InvocationError",
    "ModelStore",
    "ParseError",
    "ProcessInvoker",
    "RefreshScheduler",
    "SensorReading",
    "SnapshotBuilder",
    "Verdict",
    "default_config",
    "parse_sensor_output",
    "parse_smart_output",
]
