from __future__ import annotations

from health_tap.models import DeviceError, ErrorKind


class HealthTapError(Exception):
    """Base class for acquisition errors that map onto a device error kind."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_device_error(self) -> DeviceError:
        return DeviceError(kind=self.kind, message=self.message)


class InvocationError(HealthTapError):
    def __init__(self, kind: ErrorKind, command: str, message: str) -> None:
        super().__init__(kind, message)
        self.command = command


class ParseError(HealthTapError):
    pass


class EnumerationError(HealthTapError):
    """The device directory could not be listed. Treated as no devices."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.NOT_FOUND, message)
