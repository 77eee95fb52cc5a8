#!/usr/bin/env python3
"""rssiwatch CLI entrypoint: gateway calibration, fingerprint collection, bus monitor."""

from __future__ import annotations

import argparse
import sys
import threading
from typing import Any, Callable, List, Optional

from rssiwatch.ingest.bus import BusClient, TransportError
from rssiwatch.ingest.decoder import decode_message
from rssiwatch.session.driver import SessionDriver
from rssiwatch.table.merge import MergeEngine
from rssiwatch.table.schema import CALIBRATION_LAYOUT, FINGERPRINT_LAYOUT, TableLayout
from rssiwatch.util.config import CollectorConfig
from rssiwatch.util.duration import window_duration
from rssiwatch.util.event_log import EventLog
from rssiwatch.util.exit_codes import ExitCode
from rssiwatch.util.logging import configure_logging, get_logger, log_exception
from rssiwatch.window.controller import WindowController

COMMAND_LAYOUTS = {
    "calibrate": CALIBRATION_LAYOUT,
    "fingerprint": FINGERPRINT_LAYOUT,
}

_BANNERS = {
    "calibrate": (
        "=== Gateway Calibration Tool ===",
        "  2. Record RSSI at specified distances",
    ),
    "fingerprint": (
        "=== Fingerprint Collection Tool ===",
        "  2. Record RSSI from all gateways at specified locations",
    ),
}


def run(args: argparse.Namespace, *, prompt: Callable[[str], str] = input) -> int:
    """Top-level CLI dispatcher; returns the process exit code."""

    configure_logging(level=args.log_level, json_file=args.log_json)
    logger = get_logger(__name__)
    config = CollectorConfig.from_env().with_overrides(
        broker_url=args.broker,
        topic=args.topic,
        window_s=args.window,
        output_path=args.output,
    )
    try:
        if args.command == "monitor":
            return _run_monitor(config)
        return _run_collector(COMMAND_LAYOUTS[args.command], args.command, config, prompt)
    except TransportError as exc:
        log_exception(logger, str(exc), error_type="bus_connect")
        print(f"\nError: {exc}", file=sys.stderr)
        return ExitCode.BUS_UNAVAILABLE


def _run_collector(layout: TableLayout, command: str, config: CollectorConfig, prompt: Callable[[str], str]) -> int:
    title, step = _BANNERS[command]
    window_text = f"{config.window_s:g}s"
    print(f"{title}\n")
    print("This tool will:")
    print("  1. Connect to MQTT broker")
    print(step)
    print(f"  3. Average readings over {window_text}")
    print("  4. Save to Excel file\n")

    output = config.output_path
    if not output:
        try:
            answer = prompt("Output file path (press Enter for default): ").strip()
        except (KeyboardInterrupt, EOFError):
            return ExitCode.INTERRUPTED
        output = answer or layout.default_filename

    controller = WindowController(config.window_s)
    engine = MergeEngine(layout, output, write_attempts=config.write_attempts)
    bus = BusClient(config.broker_url, topic=config.topic, connect_timeout_s=config.connect_timeout_s)
    bus.start(controller.ingest)
    print(f"✓ Connected to MQTT broker: {config.broker_url}")
    try:
        driver = SessionDriver(
            layout,
            controller,
            engine,
            prompt=prompt,
            progress_interval_s=config.progress_interval_s,
            event_log=EventLog.beside_store(output, layout.name),
        )
        return driver.run()
    finally:
        controller.abort()
        bus.stop()


def _run_monitor(config: CollectorConfig) -> int:
    logger = get_logger(__name__)

    def on_payload(payload: bytes) -> None:
        message = decode_message(payload)
        if message is None:
            logger.debug("Ignoring non-telemetry payload (%d bytes)", len(payload))
            return
        for det in message.detections:
            if det.entry_id and det.rssi is not None:
                print(f"DEVICE MAC: {message.source_id} | MAC: {det.entry_id} | RSSI: {det.rssi:g}", flush=True)

    bus = BusClient(config.broker_url, topic=config.topic, connect_timeout_s=config.connect_timeout_s)
    bus.start(on_payload)
    print(f"✓ Connected to MQTT broker: {config.broker_url} (Ctrl+C to stop)")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        bus.stop()
    return ExitCode.SUCCESS


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--broker", type=str, help="MQTT broker URL (default $RSSIWATCH_BROKER_URL, $MQTT_BROKER_URL or mqtt://localhost:1883)")
    p.add_argument("--topic", type=str, help="Topic filter to subscribe to (default '#')")
    p.add_argument("--log-level", dest="log_level", type=str, help="Console log level (default INFO, or $RSSIWATCH_LOG_LEVEL)")
    p.add_argument("--log-json", dest="log_json", type=str, help="Also write JSON-lines logs to this file")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    if argv is None:
        argv = sys.argv[1:]

    p = argparse.ArgumentParser(
        description="Record gateway RSSI windows from MQTT and merge them into Excel workbooks",
        argument_default=argparse.SUPPRESS,
    )
    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    for name, layout in COMMAND_LAYOUTS.items():
        help_text = (
            "Single-gateway RSSI vs. distance calibration"
            if name == "calibrate"
            else "Multi-gateway RSSI fingerprints at surveyed locations"
        )
        cmd = sub.add_parser(name, help=help_text, argument_default=argparse.SUPPRESS)
        _add_common(cmd)
        cmd.add_argument(
            "--window",
            type=window_duration,
            help="Recording window per measurement, e.g. '60', '90s', '2m' (default 60s or $RSSIWATCH_WINDOW)",
        )
        cmd.add_argument(
            "--output",
            type=str,
            help=f"Workbook path (default $RSSIWATCH_OUTPUT, else prompt; Enter picks {layout.default_filename})",
        )

    mon = sub.add_parser("monitor", help="Print every RSSI detection seen on the bus", argument_default=argparse.SUPPRESS)
    _add_common(mon)

    args = p.parse_args(argv)
    for attr, value in (
        ("broker", None),
        ("topic", None),
        ("window", None),
        ("output", None),
        ("log_level", None),
        ("log_json", None),
    ):
        _set_default(args, attr, value)
    if args.output is not None and not str(args.output).strip():
        p.error("--output must not be empty")
    return args


def _set_default(args: argparse.Namespace, attr: str, value: Any) -> None:
    if not hasattr(args, attr):
        setattr(args, attr, value)


def main(argv: Optional[List[str]] = None) -> int:
    code = run(parse_args(argv))
    get_logger(__name__).debug("exit %d: %s", code, ExitCode.message(code))
    return code


if __name__ == "__main__":
    sys.exit(main())
