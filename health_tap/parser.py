"""Text parsers for smartctl, lm-sensors and nvidia-smi output.

Everything in this module is pure: it takes the captured output of a single
tool invocation and returns structured data. smartctl output has no stable
schema across vendors, firmware revisions and interfaces, so the SMART parser
is built from small tagged line matchers applied in priority order. A line no
matcher recognizes is counted and skipped; it never discards the rest of the
document.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import json
import re
from typing import Any, Callable, Iterable

from health_tap.errors import ParseError
from health_tap.models import (
    AttributeValue,
    ErrorKind,
    InterfaceKind,
    RawValue,
    SensorReading,
    Verdict,
    attribute_status,
)

# NVMe reports data units of 1000 512-byte blocks.
NVME_DATA_UNIT_B = 512_000
LBA_SIZE_B = 512

# smartctl exit status is a bitmask, see smartctl(8) "EXIT STATUS".
SMARTCTL_EXIT_BITS: tuple[tuple[int, str], ...] = (
    (0x01, "command_line_error"),
    (0x02, "device_open_failed"),
    (0x04, "smart_command_failed"),
    (0x08, "disk_failing"),
    (0x10, "prefail_below_threshold"),
    (0x20, "attribute_below_threshold_in_past"),
    (0x40, "error_log_has_errors"),
    (0x80, "self_test_log_has_errors"),
)

ATA_CANONICAL_NAMES: dict[str, str] = {
    "Raw_Read_Error_Rate": "raw_read_error_rate",
    "Throughput_Performance": "throughput_performance",
    "Spin_Up_Time": "spin_up_time",
    "Start_Stop_Count": "start_stop_count",
    "Reallocated_Sector_Ct": "reallocated_sector_count",
    "Seek_Error_Rate": "seek_error_rate",
    "Power_On_Hours": "power_on_hours",
    "Power_On_Hours_and_Msec": "power_on_hours",
    "Spin_Retry_Count": "spin_retry_count",
    "Power_Cycle_Count": "power_cycle_count",
    "Wear_Leveling_Count": "wear_leveling_count",
    "Media_Wearout_Indicator": "media_wearout_indicator",
    "Percent_Lifetime_Remain": "percent_lifetime_remaining",
    "SSD_Life_Left": "ssd_life_left",
    "Used_Rsvd_Blk_Cnt_Tot": "used_reserved_block_count",
    "Program_Fail_Cnt_Total": "program_fail_count",
    "Erase_Fail_Count_Total": "erase_fail_count",
    "Runtime_Bad_Block": "runtime_bad_block",
    "End-to-End_Error": "end_to_end_error",
    "Reported_Uncorrect": "reported_uncorrectable",
    "Command_Timeout": "command_timeout",
    "Airflow_Temperature_Cel": "airflow_temperature",
    "Power-Off_Retract_Count": "power_off_retract_count",
    "Load_Cycle_Count": "load_cycle_count",
    "Temperature_Celsius": "temperature",
    "Hardware_ECC_Recovered": "hardware_ecc_recovered",
    "Reallocated_Event_Count": "reallocation_event_count",
    "Current_Pending_Sector": "current_pending_sector",
    "Offline_Uncorrectable": "offline_uncorrectable",
    "UDMA_CRC_Error_Count": "udma_crc_error_count",
    "Unsafe_Shutdown_Count": "unsafe_shutdown_count",
    "Total_LBAs_Written": "total_lbas_written",
    "Total_LBAs_Read": "total_lbas_read",
}

NVME_CANONICAL_NAMES: dict[str, str] = {
    "Critical Warning": "critical_warning",
    "Temperature": "temperature",
    "Available Spare": "available_spare",
    "Available Spare Threshold": "available_spare_threshold",
    "Percentage Used": "percentage_used",
    "Data Units Read": "data_units_read",
    "Data Units Written": "data_units_written",
    "Host Read Commands": "host_read_commands",
    "Host Write Commands": "host_write_commands",
    "Controller Busy Time": "controller_busy_time",
    "Power Cycles": "power_cycles",
    "Power On Hours": "power_on_hours",
    "Unsafe Shutdowns": "unsafe_shutdowns",
    "Media and Data Integrity Errors": "media_errors",
    "Error Information Log Entries": "error_log_entries",
    "Warning  Comp. Temperature Time": "warning_temperature_time",
    "Warning Comp. Temperature Time": "warning_temperature_time",
    "Critical Comp. Temperature Time": "critical_temperature_time",
}

# Normalized values of these ATA attributes count down from 100 as the
# flash wears out.
WEAR_ATTRIBUTES = (
    "wear_leveling_count",
    "media_wearout_indicator",
    "percent_lifetime_remaining",
    "ssd_life_left",
)

_NVME_MARKERS = ("NVMe Version:", "SMART/Health Information (NVMe Log")
_ATA_MARKERS = ("ATA Version is:", "SATA Version is:", "SMART Attributes Data Structure")
_PERMISSION_MARKERS = ("permission denied", "operation not permitted")
_FAILING_WHEN = {"FAILING_NOW", "In_the_past"}

_LEADING_NUMBER = re.compile(r"^\s*([+-]?\d[\d,]*(?:\.\d+)?)")
_HEX_NUMBER = re.compile(r"^0x[0-9a-fA-F]+$")


def parse_number(text: str) -> int | float | None:
    """Strictly parse a decimal, comma-grouped, hexadecimal or float value."""
    value = text.strip()
    if not value:
        return None
    if _HEX_NUMBER.match(value):
        return int(value, 16)
    compact = value.replace(",", "")
    try:
        return int(compact)
    except ValueError:
        pass
    try:
        return float(compact)
    except ValueError:
        return None


def parse_raw_value(text: str) -> RawValue:
    """Parse a raw attribute value, keeping it as text if it is not numeric."""
    value = text.strip()
    number = parse_number(value)
    return value if number is None else number


def leading_int(text: str) -> int | None:
    """Leading integer of an annotated value such as ``34 (Min/Max 20/45)``."""
    match = _LEADING_NUMBER.match(text)
    if not match:
        return None
    number = parse_number(match.group(1))
    if number is None:
        return None
    return int(number)


def decode_smartctl_exit(exit_code: int) -> tuple[str, ...]:
    return tuple(name for bit, name in SMARTCTL_EXIT_BITS if exit_code & bit)


def detect_permission_problem(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _PERMISSION_MARKERS)


def detect_interface(text: str, hint: InterfaceKind) -> InterfaceKind:
    """Refine the enumerator's interface guess from markers in the output."""
    if any(marker in text for marker in _NVME_MARKERS):
        return InterfaceKind.NVME
    if any(marker in text for marker in _ATA_MARKERS):
        return InterfaceKind.ATA
    if hint is InterfaceKind.UNKNOWN and "Model Number:" in text:
        return InterfaceKind.NVME
    return hint


@dataclass
class PartialDeviceRecord:
    """Everything one smartctl invocation told us about a device."""

    interface: InterfaceKind = InterfaceKind.UNKNOWN
    model: str | None = None
    serial: str | None = None
    firmware: str | None = None
    verdict: Verdict = Verdict.UNKNOWN
    verdict_text: str | None = None
    temperature_c: float | None = None
    power_on_hours: int | None = None
    attributes: list[AttributeValue] = field(default_factory=list)
    health_pct: int | None = None
    power_cycles: int | None = None
    unsafe_shutdowns: int | None = None
    data_read_b: int | None = None
    data_written_b: int | None = None
    capacity_b: int | None = None
    rotation_rpm: int | None = None
    media_type: str | None = None
    critical_warning: int | None = None
    info: dict[str, str] = field(default_factory=dict)
    skipped_lines: int = 0

    def attribute(self, name: str) -> AttributeValue | None:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None


@dataclass
class _ParseState:
    record: PartialDeviceRecord
    section: str | None = None
    # Temperature candidates keyed by source priority; lower wins.
    temperatures: dict[int, float] = field(default_factory=dict)


@dataclass(frozen=True)
class LineMatcher:
    """A tagged line shape and what to do with a line of that shape.

    ``section`` restricts the matcher to lines inside a named block of the
    output. ``apply`` may return False to decline a line it matched, letting
    lower-priority matchers try.
    """

    tag: str
    pattern: re.Pattern[str]
    apply: Callable[[re.Match[str], _ParseState], bool | None]
    section: str | None = None

    def feed(self, line: str, state: _ParseState) -> bool:
        if self.section is not None and state.section != self.section:
            return False
        match = self.pattern.match(line)
        if not match:
            return False
        return self.apply(match, state) is not False


def _ignore(match: re.Match[str], state: _ParseState) -> None:
    return None


def _enter_section(match: re.Match[str], state: _ParseState) -> None:
    title = match.group(1).upper()
    if "INFORMATION" in title:
        state.section = "info"
    else:
        state.section = "data"


def _enter_nvme_log(match: re.Match[str], state: _ParseState) -> None:
    state.section = "nvme_log"
    state.record.interface = InterfaceKind.NVME


def _enter_ata_table(match: re.Match[str], state: _ParseState) -> None:
    state.section = "ata_table"
    state.record.interface = InterfaceKind.ATA


def _set_verdict(match: re.Match[str], state: _ParseState) -> None:
    keyword = match.group(1).strip().rstrip("!").upper()
    state.record.verdict_text = match.group(1).strip()
    if keyword in {"PASSED", "OK"}:
        state.record.verdict = Verdict.PASSED
    elif keyword.startswith("FAIL"):
        state.record.verdict = Verdict.FAILED
    else:
        state.record.verdict = Verdict.UNKNOWN


def _set_identity(match: re.Match[str], state: _ParseState) -> None:
    key = match.group(1)
    value = match.group(2).strip()
    if not value:
        return
    record = state.record
    if key in {"Device Model", "Model Number", "Product"}:
        record.model = value
    elif key == "Serial Number":
        record.serial = value
    elif key in {"Firmware Version", "Revision"}:
        record.firmware = value


def _set_capacity(match: re.Match[str], state: _ParseState) -> None:
    number = parse_number(match.group(1))
    if isinstance(number, int) and state.record.capacity_b is None:
        state.record.capacity_b = number


def _set_rotation(match: re.Match[str], state: _ParseState) -> None:
    value = match.group(1).strip()
    if "solid state" in value.lower():
        state.record.media_type = "SSD"
        return
    rpm = leading_int(value)
    if rpm:
        state.record.rotation_rpm = rpm
        state.record.media_type = "HDD"


def _set_current_temperature(match: re.Match[str], state: _ParseState) -> None:
    # SCT status / SCSI report the live temperature directly.
    state.temperatures.setdefault(1, float(match.group(1)))


def _add_ata_attribute(match: re.Match[str], state: _ParseState) -> None:
    attr_id = int(match.group("id"))
    vendor_name = match.group("name")
    name = ATA_CANONICAL_NAMES.get(vendor_name, vendor_name)
    normalized = int(match.group("value"))
    worst = int(match.group("worst"))
    thresh_text = match.group("thresh")
    threshold = int(thresh_text) if thresh_text.isdigit() else None
    when_failed = match.groupdict().get("when_failed")
    if when_failed in (None, "-"):
        when_failed = None
    raw_text = match.group("raw").strip()
    attr = AttributeValue(
        name=name,
        raw=parse_raw_value(raw_text),
        normalized=normalized,
        threshold=threshold,
        worst=worst,
        attr_id=attr_id,
        when_failed=when_failed,
        status=attribute_status(normalized, threshold),
    )
    record = state.record
    record.attributes.append(attr)

    if name == "temperature":
        temp = leading_int(raw_text)
        if temp is not None:
            state.temperatures.setdefault(2, float(temp))
    elif name == "airflow_temperature":
        temp = leading_int(raw_text)
        if temp is not None:
            state.temperatures.setdefault(3, float(temp))
    elif name == "power_on_hours" and record.power_on_hours is None:
        record.power_on_hours = leading_int(raw_text)
    elif name == "power_cycle_count" and record.power_cycles is None:
        record.power_cycles = leading_int(raw_text)
    elif name == "unsafe_shutdown_count" and record.unsafe_shutdowns is None:
        record.unsafe_shutdowns = leading_int(raw_text)
    elif name == "total_lbas_written":
        lbas = leading_int(raw_text)
        if lbas is not None:
            record.data_written_b = lbas * LBA_SIZE_B
    elif name == "total_lbas_read":
        lbas = leading_int(raw_text)
        if lbas is not None:
            record.data_read_b = lbas * LBA_SIZE_B
    elif name in WEAR_ATTRIBUTES and record.health_pct is None:
        record.health_pct = attr.normalized


def _add_nvme_entry(match: re.Match[str], state: _ParseState) -> bool:
    key = match.group(1).strip()
    value = match.group(2).strip()
    in_log = state.section == "nvme_log"
    if key not in NVME_CANONICAL_NAMES and not in_log:
        return False
    # "Temperature:" in an ATA document's info block is not an NVMe field.
    if not in_log and state.record.interface is InterfaceKind.ATA:
        return False
    name = NVME_CANONICAL_NAMES.get(key, key)
    first = value.split()[0] if value else ""
    number = parse_number(first.rstrip("%"))
    raw: RawValue = value if number is None else number
    record = state.record
    record.attributes.append(AttributeValue(name=name, raw=raw))
    record.interface = InterfaceKind.NVME

    if name == "temperature":
        temp = leading_int(value)
        if temp is not None:
            state.temperatures.setdefault(0, float(temp))
    elif name == "critical_warning" and isinstance(number, int):
        record.critical_warning = number
    elif name == "power_on_hours":
        record.power_on_hours = leading_int(value)
    elif name == "power_cycles":
        record.power_cycles = leading_int(value)
    elif name == "unsafe_shutdowns":
        record.unsafe_shutdowns = leading_int(value)
    elif name == "percentage_used":
        used = leading_int(value)
        if used is not None:
            record.health_pct = max(0, 100 - used)
    elif name == "data_units_read":
        units = leading_int(value)
        if units is not None:
            record.data_read_b = units * NVME_DATA_UNIT_B
    elif name == "data_units_written":
        units = leading_int(value)
        if units is not None:
            record.data_written_b = units * NVME_DATA_UNIT_B
    return True


def _add_info(match: re.Match[str], state: _ParseState) -> bool:
    # Inside a table every line has a known shape; anything else is damage.
    if state.section in {"ata_table", "nvme_log"}:
        return False
    state.record.info[match.group(1).strip()] = match.group(2).strip()
    return True


_BANNER = LineMatcher(
    "banner",
    re.compile(r"^(?:smartctl \d|Copyright \(C\))"),
    _ignore,
)
_SECTION = LineMatcher("section", re.compile(r"^\s*=+\s*START OF (.+?)\s*=+\s*$"), _enter_section)
_NVME_LOG = LineMatcher(
    "nvme_log_header",
    re.compile(r"^\s*SMART/Health Information \(NVMe Log"),
    _enter_nvme_log,
)
_ATA_TABLE = LineMatcher(
    "ata_table_header",
    re.compile(r"^\s*(?:Vendor Specific SMART Attributes|SMART Attributes Data Structure)"),
    _enter_ata_table,
)
_ATA_COLUMNS = LineMatcher("ata_columns", re.compile(r"^\s*ID#\s+ATTRIBUTE_NAME"), _ignore)
_ATA_BRIEF_LEGEND = LineMatcher("ata_brief_legend", re.compile(r"^\s*\|+[\s_|]*[A-Za-z]"), _ignore)
_VERDICT = LineMatcher(
    "verdict",
    re.compile(
        r"^\s*SMART (?:overall-health self-assessment test result|Health Status):\s*(\S+)"
    ),
    _set_verdict,
)
_IDENTITY = LineMatcher(
    "identity",
    re.compile(
        r"^\s*(Device Model|Model Number|Product|Serial Number|Firmware Version|Revision):\s*(.*)$"
    ),
    _set_identity,
)
_CAPACITY = LineMatcher(
    "capacity",
    re.compile(
        r"^\s*(?:User Capacity|Total NVM Capacity|Namespace 1 Size/Capacity):\s*([\d,]+)"
    ),
    _set_capacity,
)
_ROTATION = LineMatcher("rotation", re.compile(r"^\s*Rotation Rate:\s*(.+)$"), _set_rotation)
_CURRENT_TEMPERATURE = LineMatcher(
    "current_temperature",
    re.compile(r"^\s*Current (?:Drive )?Temperature:\s*(\d+)\s*(?:C|Celsius)\b"),
    _set_current_temperature,
)
# ID# ATTRIBUTE_NAME FLAG VALUE WORST THRESH TYPE UPDATED WHEN_FAILED RAW_VALUE
_ATA_ROW = LineMatcher(
    "ata_attribute",
    re.compile(
        r"^\s*(?P<id>\d{1,3})\s+(?P<name>\S+)\s+0x[0-9a-fA-F]+\s+(?P<value>\d+)\s+"
        r"(?P<worst>\d+)\s+(?P<thresh>\d+|-+)\s+\S+\s+\S+\s+(?P<when_failed>\S+)\s+"
        r"(?P<raw>\S.*?)\s*$"
    ),
    _add_ata_attribute,
)
# smartctl -f brief: ID# ATTRIBUTE_NAME FLAGS VALUE WORST THRESH FAIL RAW_VALUE
_ATA_BRIEF_ROW = LineMatcher(
    "ata_attribute_brief",
    re.compile(
        r"^\s*(?P<id>\d{1,3})\s+(?P<name>\S+)\s+[POSRCK-]{6}\s+(?P<value>\d+)\s+"
        r"(?P<worst>\d+)\s+(?P<thresh>\d+|-+)\s+(?P<when_failed>\S+)\s+(?P<raw>\S.*?)\s*$"
    ),
    _add_ata_attribute,
)
_NVME_ENTRY = LineMatcher(
    "nvme_entry",
    re.compile(r"^\s*([A-Za-z][A-Za-z0-9 ./()-]*?):\s+(\S.*?)\s*$"),
    _add_nvme_entry,
)
_KEY_VALUE = LineMatcher(
    "key_value",
    re.compile(r"^\s*([A-Za-z][\w .,/()#'+-]{0,60}):\s+(\S.*?)\s*$"),
    _add_info,
)

_COMMON_MATCHERS = (
    _BANNER,
    _SECTION,
    _VERDICT,
    _IDENTITY,
    _CAPACITY,
    _ROTATION,
    _NVME_LOG,
    _ATA_TABLE,
    _ATA_COLUMNS,
    _CURRENT_TEMPERATURE,
)
_ATA_MATCHERS = (_ATA_ROW, _ATA_BRIEF_ROW, _ATA_BRIEF_LEGEND)
_NVME_MATCHERS = (_NVME_ENTRY,)

MATCHERS_BY_INTERFACE: dict[InterfaceKind, tuple[LineMatcher, ...]] = {
    InterfaceKind.ATA: _COMMON_MATCHERS + _ATA_MATCHERS + _NVME_MATCHERS + (_KEY_VALUE,),
    InterfaceKind.NVME: _COMMON_MATCHERS + _NVME_MATCHERS + _ATA_MATCHERS + (_KEY_VALUE,),
    InterfaceKind.UNKNOWN: _COMMON_MATCHERS + _ATA_MATCHERS + _NVME_MATCHERS + (_KEY_VALUE,),
}


def _finish(state: _ParseState) -> PartialDeviceRecord:
    record = state.record
    if state.temperatures:
        record.temperature_c = state.temperatures[min(state.temperatures)]
    if record.interface is InterfaceKind.NVME and record.media_type is None:
        record.media_type = "SSD"
    if record.verdict is Verdict.PASSED:
        if record.critical_warning:
            record.verdict = Verdict.WARNING
        elif any(attr.when_failed in _FAILING_WHEN for attr in record.attributes):
            record.verdict = Verdict.WARNING
    return record


def parse_smart_output(
    text: str, interface_kind: InterfaceKind = InterfaceKind.UNKNOWN
) -> PartialDeviceRecord:
    """Parse ``smartctl -a`` output for one device.

    Args:
        text: Captured standard output of smartctl. JSON output (``-j``) is
            detected and parsed as such.
        interface_kind: Interface guessed from the device name; markers in
            the output take precedence.

    Returns:
        A best-effort partial record, with ``skipped_lines`` counting lines
        no matcher recognized.

    Raises:
        ParseError: ``EMPTY_OUTPUT`` for blank input, ``MALFORMED`` when
            neither a verdict nor a single attribute could be extracted.
    """
    if not text or not text.strip():
        raise ParseError(ErrorKind.EMPTY_OUTPUT, "smartctl produced no output")

    if text.lstrip().startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(data, dict):
                return parse_smart_json(data)

    interface = detect_interface(text, interface_kind)
    state = _ParseState(record=PartialDeviceRecord(interface=interface))
    matchers = MATCHERS_BY_INTERFACE[interface]

    for line in text.splitlines():
        if not line.strip():
            # Blank lines close list-shaped blocks.
            if state.section in {"nvme_log", "ata_table"}:
                state.section = "data"
            continue
        if not any(matcher.feed(line, state) for matcher in matchers):
            state.record.skipped_lines += 1

    record = _finish(state)
    if record.verdict_text is None and not record.attributes:
        raise ParseError(
            ErrorKind.MALFORMED,
            f"No SMART verdict or attributes found ({record.skipped_lines} unrecognized lines)",
        )
    return record


def _json_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def parse_smart_json(data: dict[str, Any]) -> PartialDeviceRecord:
    """Parse the JSON document produced by ``smartctl -a -j``."""
    protocol = (data.get("device") or {}).get("protocol", "")
    if protocol == "NVMe" or "nvme_smart_health_information_log" in data:
        interface = InterfaceKind.NVME
    elif protocol == "ATA" or "ata_smart_attributes" in data:
        interface = InterfaceKind.ATA
    else:
        interface = InterfaceKind.UNKNOWN

    record = PartialDeviceRecord(
        interface=interface,
        model=data.get("model_name") or data.get("scsi_model_name"),
        serial=data.get("serial_number"),
        firmware=data.get("firmware_version"),
    )
    status = data.get("smart_status")
    if isinstance(status, dict) and "passed" in status:
        record.verdict = Verdict.PASSED if status["passed"] else Verdict.FAILED
        record.verdict_text = "PASSED" if status["passed"] else "FAILED"

    capacity = data.get("user_capacity") or {}
    record.capacity_b = _json_int(capacity.get("bytes")) or _json_int(
        data.get("nvme_total_capacity")
    )
    rotation = data.get("rotation_rate")
    if rotation == 0:
        record.media_type = "SSD"
    elif _json_int(rotation):
        record.rotation_rpm = rotation
        record.media_type = "HDD"

    temperature = (data.get("temperature") or {}).get("current")
    if isinstance(temperature, (int, float)) and not isinstance(temperature, bool):
        record.temperature_c = float(temperature)
    record.power_on_hours = _json_int((data.get("power_on_time") or {}).get("hours"))
    record.power_cycles = _json_int(data.get("power_cycle_count"))

    for attr in (data.get("ata_smart_attributes") or {}).get("table", []):
        vendor_name = attr.get("name", "")
        name = ATA_CANONICAL_NAMES.get(vendor_name, vendor_name)
        raw = attr.get("raw") or {}
        raw_value: RawValue = raw.get("value", raw.get("string", ""))
        normalized = _json_int(attr.get("value"))
        threshold = _json_int(attr.get("thresh"))
        when_failed = attr.get("when_failed") or None
        value = AttributeValue(
            name=name,
            raw=raw_value,
            normalized=normalized,
            threshold=threshold,
            worst=_json_int(attr.get("worst")),
            attr_id=_json_int(attr.get("id")),
            when_failed=when_failed,
            status=attribute_status(normalized, threshold),
        )
        record.attributes.append(value)
        if name in WEAR_ATTRIBUTES and record.health_pct is None:
            record.health_pct = value.normalized
        elif name == "total_lbas_written" and isinstance(raw_value, int):
            record.data_written_b = raw_value * LBA_SIZE_B
        elif name == "total_lbas_read" and isinstance(raw_value, int):
            record.data_read_b = raw_value * LBA_SIZE_B
        elif name == "unsafe_shutdown_count" and isinstance(raw_value, int):
            record.unsafe_shutdowns = raw_value

    nvme = data.get("nvme_smart_health_information_log")
    if isinstance(nvme, dict):
        for key, value in nvme.items():
            if isinstance(value, (dict, list)):
                continue
            record.attributes.append(AttributeValue(name=key, raw=value))
        record.critical_warning = _json_int(nvme.get("critical_warning"))
        record.unsafe_shutdowns = _json_int(nvme.get("unsafe_shutdowns"))
        if record.power_on_hours is None:
            record.power_on_hours = _json_int(nvme.get("power_on_hours"))
        if record.power_cycles is None:
            record.power_cycles = _json_int(nvme.get("power_cycles"))
        if record.temperature_c is None and _json_int(nvme.get("temperature")) is not None:
            record.temperature_c = float(nvme["temperature"])
        used = _json_int(nvme.get("percentage_used"))
        if used is not None:
            record.health_pct = max(0, 100 - used)
        units_read = _json_int(nvme.get("data_units_read"))
        if units_read is not None:
            record.data_read_b = units_read * NVME_DATA_UNIT_B
        units_written = _json_int(nvme.get("data_units_written"))
        if units_written is not None:
            record.data_written_b = units_written * NVME_DATA_UNIT_B
        if record.media_type is None:
            record.media_type = "SSD"

    state = _ParseState(record=record)
    record = _finish(state)
    if record.verdict_text is None and not record.attributes:
        raise ParseError(ErrorKind.MALFORMED, "smartctl JSON carries no SMART data")
    return record


# -- lm-sensors -----------------------------------------------------------

# The degree sign may arrive mangled by the locale or by lossy decoding.
_DEGREES = r"\s*(?:°|Â°|�+)?\s?C\b"
_SENSOR_TEMP = re.compile(
    r"^(?P<label>[^:()]+?):\s+(?P<value>[+-]?\d+(?:\.\d+)?)" + _DEGREES + r"(?P<rest>.*)$"
)
_SENSOR_LIMIT = re.compile(r"\b(high|crit)\s*=\s*([+-]?\d+(?:\.\d+)?)")
_SENSOR_CHIP = re.compile(r"^[A-Za-z0-9_]+(?:-[A-Za-z0-9_]+)+$")
_SENSOR_CONTINUATION = re.compile(r"^\s+\(.*\)\s*$")
_CPU_LABEL_KEYS = ("tctl", "tdie", "package", "core")


@dataclass
class SensorParseResult:
    readings: list[SensorReading]
    skipped_lines: int = 0


def _sensor_limits(text: str) -> dict[str, float]:
    return {name: float(value) for name, value in _SENSOR_LIMIT.findall(text)}


def parse_sensor_output(text: str) -> SensorParseResult:
    """Parse plain ``sensors`` output into temperature readings.

    Chips are reported one after another, each starting with a header line
    (``coretemp-isa-0000``) and an ``Adapter:`` line. Voltage, fan and power
    lines are skipped.
    """
    if not text or not text.strip():
        raise ParseError(ErrorKind.EMPTY_OUTPUT, "sensors produced no output")

    readings: list[SensorReading] = []
    skipped = 0
    chip: str | None = None
    # Limits may wrap onto a continuation line; hold the last reading open.
    pending: dict[str, Any] | None = None

    def flush() -> None:
        nonlocal pending
        if pending is not None:
            readings.append(SensorReading(**pending))
            pending = None

    for line in text.splitlines():
        if not line.strip():
            flush()
            continue
        if _SENSOR_CONTINUATION.match(line):
            if pending is not None:
                limits = _sensor_limits(line)
                for key, limit in (("high_c", "high"), ("critical_c", "crit")):
                    if pending[key] is None and limit in limits:
                        pending[key] = limits[limit]
            continue
        if line.startswith("Adapter:"):
            continue
        if ":" not in line and _SENSOR_CHIP.match(line.strip()):
            flush()
            chip = line.strip()
            continue
        match = _SENSOR_TEMP.match(line)
        if not match:
            skipped += 1
            continue
        flush()
        label = match.group("label").strip()
        limits = _sensor_limits(match.group("rest"))
        pending = {
            "source": f"{chip} {label}" if chip else label,
            "temperature_c": float(match.group("value")),
            "chip": chip,
            "high_c": limits.get("high"),
            "critical_c": limits.get("crit"),
        }
    flush()

    if not readings:
        raise ParseError(
            ErrorKind.MALFORMED,
            f"No temperature readings found ({skipped} unrecognized lines)",
        )
    return SensorParseResult(readings=readings, skipped_lines=skipped)


def summarize_cpu_temperature(readings: Iterable[SensorReading]) -> SensorReading | None:
    """Average CPU package/core temperatures into a single ``CPU`` reading."""
    temps = [
        reading.temperature_c
        for reading in readings
        if any(key in reading.source.lower() for key in _CPU_LABEL_KEYS)
    ]
    if not temps:
        return None
    return SensorReading(source="CPU", temperature_c=round(sum(temps) / len(temps), 1))


def parse_gpu_output(text: str) -> list[SensorReading]:
    """Parse ``nvidia-smi --query-gpu=temperature.gpu --format=csv,noheader,nounits``."""
    values: list[float] = []
    for line in text.splitlines():
        number = parse_number(line)
        if number is not None:
            values.append(float(number))
    if len(values) == 1:
        return [SensorReading(source="GPU", temperature_c=values[0])]
    return [
        SensorReading(source=f"GPU {index}", temperature_c=value)
        for index, value in enumerate(values)
    ]
