from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading

from health_tap.builder import SnapshotBuilder
from health_tap.config import config_from_args
from health_tap.logging_utils import configure_logging, resolve_log_level
from health_tap.models import HealthSnapshot, Verdict
from health_tap.scheduler import RefreshScheduler
from health_tap.schema import validate_snapshot
from health_tap.store import ModelStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Storage and thermal health monitor")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable debug logging (-v) or trace logging (-vv)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single refresh cycle, print the snapshot as JSON, then exit",
    )
    parser.add_argument(
        "--dump-json",
        help="Write each published snapshot to a file (overwrites on each cycle)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between refresh cycles (default 5)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds before a diagnostic tool is killed (default 10)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Maximum number of devices probed concurrently (default 4)",
    )
    parser.add_argument(
        "--drop-after-misses",
        type=int,
        help="Consecutive listing misses before a device is dropped (default 1)",
    )
    parser.add_argument("--dev-root", help="Directory scanned for disks (default /dev)")
    parser.add_argument("--smartctl-path", help="Path to smartctl")
    parser.add_argument("--sensors-path", help="Path to sensors")
    parser.add_argument(
        "--smart-json",
        action="store_true",
        help="Ask smartctl for JSON output instead of text",
    )
    parser.add_argument(
        "--gpu",
        action="store_true",
        help="Also read GPU temperature from nvidia-smi",
    )
    return parser


def summarize(snapshot: HealthSnapshot) -> str:
    parts: list[str] = []
    for record in snapshot.devices:
        label = record.identity.name
        if record.last_error is not None and record.never_read:
            parts.append(f"{label}=error({record.last_error.kind.value})")
            continue
        text = f"{label}={record.verdict.value}"
        if record.temperature_c is not None:
            text += f"/{record.temperature_c:g}C"
        if record.is_stale:
            text += "(stale)"
        parts.append(text)
    for reading in snapshot.sensors:
        if reading.chip is None:
            parts.append(f"{reading.source}={reading.temperature_c:g}C")
    return ", ".join(parts) if parts else "no devices"


def write_snapshot(snapshot: HealthSnapshot, path: str, pretty: bool) -> None:
    payload = snapshot.to_dict()
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, indent=2) if pretty else json.dumps(payload))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = resolve_log_level(args.verbose, args.log_level)
    configure_logging(level)
    logger = logging.getLogger("health_tap")
    try:
        config = config_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    pretty_print = level <= logging.DEBUG

    builder = SnapshotBuilder(config)
    store = ModelStore()
    scheduler = RefreshScheduler(builder, store, config.refresh.interval_s)

    if args.once:
        scheduler.run_once()
        snapshot = store.current()
        payload = snapshot.to_dict()
        schema_errors = validate_snapshot(payload)
        if schema_errors:
            logger.warning("Schema validation failed with %s errors.", len(schema_errors))
            logger.debug("Schema errors: %s", schema_errors)
        if args.dump_json:
            write_snapshot(snapshot, args.dump_json, pretty_print)
        print(json.dumps(payload, indent=2))
        failing = any(record.verdict is Verdict.FAILED for record in snapshot.devices)
        return 1 if failing else 0

    def on_publish(snapshot: HealthSnapshot) -> None:
        logger.info("Snapshot %s: %s", snapshot.sequence, summarize(snapshot))
        for record in snapshot.devices:
            if record.last_error is not None and record.last_error.is_permission_problem:
                logger.warning(
                    "%s: %s. Run health-tap as root to read SMART data.",
                    record.path,
                    record.last_error.message,
                )
        if args.dump_json:
            schema_errors = validate_snapshot(snapshot.to_dict())
            if schema_errors:
                logger.warning("Schema validation failed with %s errors.", len(schema_errors))
                logger.debug("Schema errors: %s", schema_errors)
            write_snapshot(snapshot, args.dump_json, pretty_print)

    stop_requested = threading.Event()

    def request_stop(signum: int, frame: object) -> None:
        logger.info("Received %s, stopping.", signal.Signals(signum).name)
        stop_requested.set()

    # SIGTERM and SIGINT go through scheduler.stop() so running tools are killed.
    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)
    if hasattr(signal, "SIGUSR1"):
        # kill -USR1 <pid> forces an immediate refresh.
        signal.signal(signal.SIGUSR1, lambda signum, frame: scheduler.trigger())

    store.subscribe(on_publish)
    try:
        scheduler.start()
    except RuntimeError:
        logger.critical("Could not start the refresh thread.", exc_info=True)
        return 2

    logger.info("health-tap started. Refreshing every %s seconds.", config.refresh.interval_s)
    try:
        stop_requested.wait()
    except KeyboardInterrupt:
        logger.info("health-tap stopping.")
    finally:
        scheduler.stop(timeout=config.refresh.timeout_s + 1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
