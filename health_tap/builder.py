from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import logging
import os
import re
import time

import psutil

from health_tap.config import AppConfig, default_config
from health_tap.enumerator import DeviceEnumerator, interface_hint
from health_tap.errors import InvocationError, ParseError
from health_tap.invoker import ProcessInvoker
from health_tap.models import (
    DeviceError,
    DeviceHealthRecord,
    DeviceIdentity,
    ErrorKind,
    HealthSnapshot,
    InterfaceKind,
    PartitionInfo,
    SensorReading,
    Verdict,
    utcnow,
)
from health_tap.parser import (
    PartialDeviceRecord,
    decode_smartctl_exit,
    detect_permission_problem,
    parse_gpu_output,
    parse_sensor_output,
    parse_smart_output,
    summarize_cpu_temperature,
)


class ProbeState(str, Enum):
    DISCOVERED = "discovered"
    PROBING = "probing"
    PARSED = "parsed"
    UNREADABLE = "unreadable"
    PERMISSION_DENIED = "permission_denied"


@dataclass(frozen=True)
class ProbeOutcome:
    path: str
    state: ProbeState
    partial: PartialDeviceRecord | None = None
    error: DeviceError | None = None
    flags: tuple[str, ...] = ()


class SnapshotBuilder:
    """Runs one acquisition cycle and assembles a :class:`HealthSnapshot`.

    Every device is probed independently; a device that cannot be read keeps
    its previous record with ``last_error`` set. The builder remembers the
    order in which devices were first seen so snapshots keep a stable order.
    It is driven from a single thread (the scheduler's).
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        invoker: ProcessInvoker | None = None,
        enumerator: DeviceEnumerator | None = None,
    ) -> None:
        self.config = config or default_config()
        self.invoker = invoker or ProcessInvoker(self.config.refresh.timeout_s)
        self.enumerator = enumerator or DeviceEnumerator(
            self.config.devices.dev_root, self.config.devices.sys_block_root
        )
        self.logger = logging.getLogger(self.__class__.__name__)
        self._order: list[str] = []
        self._misses: dict[str, int] = {}

    @property
    def known_devices(self) -> list[str]:
        return list(self._order)

    def cancel(self) -> None:
        self.invoker.cancel()

    def reset(self) -> None:
        self.invoker.reset()

    def build(self, previous: HealthSnapshot | None = None) -> HealthSnapshot | None:
        """Run one cycle on top of ``previous``.

        Returns None when the cycle was cancelled part-way, so that a partial
        snapshot is never published.
        """
        previous = previous or HealthSnapshot.initial()
        started = time.monotonic()
        self.logger.debug("Starting refresh cycle %s.", previous.sequence + 1)

        paths = self.enumerator.enumerate()
        self._track(paths)
        outcomes = self._probe_all(paths)
        sensors, sensor_error = self.collect_sensors()

        if self.invoker.cancelled:
            self.logger.info("Refresh cycle cancelled; discarding partial results.")
            return None

        now = utcnow()
        mounted = self._mounted_partitions()
        records: list[DeviceHealthRecord] = []
        for path in self._order:
            previous_record = previous.device(path)
            outcome = outcomes.get(path)
            if outcome is not None:
                records.append(self._merge(outcome, previous_record, now, mounted))
            elif previous_record is not None:
                # Missing from enumeration but still within the grace period.
                records.append(
                    previous_record.with_error(
                        DeviceError(
                            kind=ErrorKind.NOT_FOUND,
                            message=f"{path} missing from device listing",
                            occurred_at=now,
                        )
                    )
                )

        snapshot = HealthSnapshot(
            sequence=previous.sequence + 1,
            captured_at=now,
            devices=tuple(records),
            sensors=tuple(sensors),
            sensor_error=sensor_error,
        )
        self.logger.debug(
            "Refresh cycle %s finished in %.2fs: %d devices, %d sensors.",
            snapshot.sequence,
            time.monotonic() - started,
            len(snapshot.devices),
            len(snapshot.sensors),
        )
        return snapshot

    def _track(self, paths: list[str]) -> None:
        present = set(paths)
        for path in paths:
            self._misses.pop(path, None)
            if path not in self._order:
                self._order.append(path)
                self.logger.info("Discovered device %s.", path)
        for path in list(self._order):
            if path in present:
                continue
            misses = self._misses.get(path, 0) + 1
            if misses >= self.config.refresh.drop_after_misses:
                self.logger.info("Device %s disappeared; dropping its record.", path)
                self._order.remove(path)
                self._misses.pop(path, None)
            else:
                self._misses[path] = misses

    def _probe_all(self, paths: list[str]) -> dict[str, ProbeOutcome]:
        outcomes: dict[str, ProbeOutcome] = {}
        if not paths:
            return outcomes
        workers = max(1, min(self.config.refresh.max_workers, len(paths)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
            futures = {pool.submit(self.probe, path): path for path in paths}
            for future in as_completed(futures):
                path = futures[future]
                try:
                    outcomes[path] = future.result()
                except Exception as exc:
                    self.logger.exception("Unexpected failure probing %s.", path)
                    outcomes[path] = ProbeOutcome(
                        path=path,
                        state=ProbeState.UNREADABLE,
                        error=DeviceError(kind=ErrorKind.PROCESS_FAILURE, message=str(exc)),
                    )
        return outcomes

    def probe(self, path: str) -> ProbeOutcome:
        """Run smartctl against one device and parse what it says."""
        hint = interface_hint(path)
        self.logger.debug("%s: %s (%s)", path, ProbeState.DISCOVERED.value, hint.value)
        tools = self.config.tools
        args = ["-a", "-j", path] if tools.smart_json else ["-a", path]

        self.logger.debug("%s: %s", path, ProbeState.PROBING.value)
        try:
            result = self.invoker.run(tools.smartctl_path, args, self.config.refresh.timeout_s)
        except InvocationError as exc:
            state = (
                ProbeState.PERMISSION_DENIED
                if exc.kind is ErrorKind.PERMISSION_DENIED
                else ProbeState.UNREADABLE
            )
            return self._failed(path, state, exc.to_device_error())

        flags = decode_smartctl_exit(result.exit_code)
        open_failed = "device_open_failed" in flags or not result.stdout.strip()
        if open_failed and detect_permission_problem(result.output):
            return self._failed(
                path,
                ProbeState.PERMISSION_DENIED,
                DeviceError(
                    kind=ErrorKind.PERMISSION_DENIED,
                    message=f"Permission denied opening {path}; elevated privileges required",
                ),
                flags,
            )

        try:
            partial = parse_smart_output(result.stdout, hint)
        except ParseError as exc:
            error = exc.to_device_error()
            if "device_open_failed" in flags:
                error = DeviceError(
                    kind=ErrorKind.PROCESS_FAILURE,
                    message=f"smartctl could not open {path} (exit status {result.exit_code})",
                )
            return self._failed(path, ProbeState.UNREADABLE, error, flags)

        self.logger.debug(
            "%s: %s (%d attributes, %d skipped lines)",
            path,
            ProbeState.PARSED.value,
            len(partial.attributes),
            partial.skipped_lines,
        )
        return ProbeOutcome(path=path, state=ProbeState.PARSED, partial=partial, flags=flags)

    def _failed(
        self,
        path: str,
        state: ProbeState,
        error: DeviceError,
        flags: tuple[str, ...] = (),
    ) -> ProbeOutcome:
        if error.kind is ErrorKind.CANCELLED:
            self.logger.debug("%s: probe cancelled", path)
        else:
            self.logger.warning("%s: %s (%s)", path, state.value, error.message)
        return ProbeOutcome(path=path, state=state, error=error, flags=flags)

    def _merge(
        self,
        outcome: ProbeOutcome,
        previous: DeviceHealthRecord | None,
        now: datetime,
        mounted: list[psutil._common.sdiskpart],
    ) -> DeviceHealthRecord:
        path = outcome.path
        partial = outcome.partial
        if outcome.state is not ProbeState.PARSED or partial is None:
            error = outcome.error or DeviceError(
                kind=ErrorKind.PROCESS_FAILURE, message=f"{path} could not be read"
            )
            if previous is not None:
                return previous.with_error(error)
            return DeviceHealthRecord(
                identity=DeviceIdentity(path=path, interface=interface_hint(path)),
                verdict=Verdict.UNKNOWN,
                last_error=error,
                media_type=self.enumerator.media_type(path),
                smartctl_flags=outcome.flags,
            )

        interface = partial.interface
        if interface is InterfaceKind.UNKNOWN:
            interface = interface_hint(path)
        verdict = partial.verdict
        if verdict is Verdict.UNKNOWN and "disk_failing" in outcome.flags:
            verdict = Verdict.FAILED
        return DeviceHealthRecord(
            identity=DeviceIdentity(
                path=path,
                interface=interface,
                model=partial.model,
                serial=partial.serial,
                firmware=partial.firmware,
            ),
            attributes=tuple(partial.attributes),
            verdict=verdict,
            temperature_c=partial.temperature_c,
            power_on_hours=partial.power_on_hours,
            last_successful_read=now,
            last_error=None,
            health_pct=partial.health_pct,
            power_cycles=partial.power_cycles,
            unsafe_shutdowns=partial.unsafe_shutdowns,
            data_read_b=partial.data_read_b,
            data_written_b=partial.data_written_b,
            capacity_b=partial.capacity_b,
            rotation_rpm=partial.rotation_rpm,
            media_type=partial.media_type or self.enumerator.media_type(path),
            smartctl_flags=outcome.flags,
            skipped_lines=partial.skipped_lines,
            partitions=self._partitions_for(path, mounted),
        )

    def _mounted_partitions(self) -> list[psutil._common.sdiskpart]:
        try:
            return psutil.disk_partitions(all=False)
        except OSError as exc:
            self.logger.debug("Failed to list mounted partitions: %s", exc)
            return []

    def _partitions_for(
        self, path: str, mounted: list[psutil._common.sdiskpart]
    ) -> tuple[PartitionInfo, ...]:
        name = os.path.basename(path)
        # nvme0n1 partitions carry a "p" separator; sda partitions do not.
        suffix = r"p\d+" if name[-1:].isdigit() else r"\d+"
        own = re.compile(rf"^{re.escape(name)}(?:{suffix})?$")
        partitions: list[PartitionInfo] = []
        for part in mounted:
            if not own.match(os.path.basename(part.device)):
                continue
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError:
                continue
            partitions.append(
                PartitionInfo(
                    mount_point=part.mountpoint,
                    fs_type=part.fstype,
                    total_b=int(usage.total),
                    used_b=int(usage.used),
                    free_b=int(usage.free),
                    used_pct=float(usage.percent),
                )
            )
        return tuple(partitions)

    def collect_sensors(self) -> tuple[list[SensorReading], DeviceError | None]:
        """Read lm-sensors (and nvidia-smi when enabled).

        Sensor data is optional: any failure leaves the list empty and is
        reported through the returned error instead of raising.
        """
        tools = self.config.tools
        timeout = self.config.refresh.timeout_s
        readings: list[SensorReading] = []
        error: DeviceError | None = None
        try:
            result = self.invoker.run(tools.sensors_path, (), timeout)
            parsed = parse_sensor_output(result.stdout)
        except InvocationError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                self.logger.debug("sensors not available: %s", exc.message)
            elif exc.kind is not ErrorKind.CANCELLED:
                self.logger.warning("sensors failed: %s", exc.message)
            error = exc.to_device_error()
        except ParseError as exc:
            self.logger.debug("No sensor readings parsed: %s", exc.message)
            error = exc.to_device_error()
        else:
            if parsed.skipped_lines:
                self.logger.debug("Skipped %d non-temperature sensor lines.", parsed.skipped_lines)
            cpu = summarize_cpu_temperature(parsed.readings)
            if cpu is not None:
                readings.append(cpu)
            readings.extend(parsed.readings)

        if tools.enable_gpu:
            readings.extend(self._collect_gpu())
        return readings, error

    def _collect_gpu(self) -> list[SensorReading]:
        try:
            result = self.invoker.run(
                self.config.tools.nvidia_smi_path,
                ("--query-gpu=temperature.gpu", "--format=csv,noheader,nounits"),
                self.config.refresh.timeout_s,
            )
        except InvocationError as exc:
            self.logger.debug("nvidia-smi unavailable: %s", exc.message)
            return []
        if result.exit_code != 0:
            self.logger.debug("nvidia-smi exited with %s.", result.exit_code)
            return []
        return parse_gpu_output(result.stdout)
