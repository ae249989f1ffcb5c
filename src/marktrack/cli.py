#!/usr/bin/env python3
"""
Marktrack CLI - multi-camera marker tracking.

Usage:
    marktrack devices                                   - List working camera devices
    marktrack calibrate VIDEO... -o calibration.toml    - Calibrate from chessboard videos
    marktrack track VIDEO... --calibration FILE --seed CAM:X:Y[:R]
                                                        - Track a marker, write CSV positions
"""

from __future__ import annotations

import argparse
import csv
import sys
from pathlib import Path
from queue import Queue

import marktrack.logger

from .application import Application
from .config import load_calibration, load_parameters, save_calibration
from .errors import MarktrackError, SourceError
from .parameters import ParameterKey, Parameters
from .pipeline import (
    CalibrationDataReady,
    CalibrationProgress,
    ConfigurationFailed,
    ControllerMode,
    ControllerState,
    ErrorOccurred,
    MarkRejected,
    PositsetReady,
    StateChanged,
)
from .sources import enumerate_devices
from .types import Mark

logger = marktrack.logger.get(__name__)

CSV_HEADER = ["sequence", "target", "x", "y", "z", "views", "residual"]


def parse_seed(text: str, parameters: Parameters) -> tuple[int, Mark]:
    """
    Parse CAM:X:Y[:R] (circle marks) or CAM:X:Y:W:H (rectangle marks).
    """
    try:
        values = [float(part) for part in text.split(":")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid seed {text!r}") from None

    if len(values) == 3:
        camera, x, y = values
        return int(camera), Mark.circle(x, y, parameters[ParameterKey.TEMPLATE_RADIUS])
    if len(values) == 4:
        camera, x, y, radius = values
        return int(camera), Mark.circle(x, y, radius)
    if len(values) == 5:
        camera, x, y, width, height = values
        return int(camera), Mark.rectangle(x, y, width, height)
    raise argparse.ArgumentTypeError(f"Invalid seed {text!r}, expected CAM:X:Y[:R] or CAM:X:Y:W:H")


def _run_until_idle(events: Queue, handle) -> int:
    """
    Dispatch pipeline events to `handle` until the pipeline returns to idle.
    """
    status = 0
    while True:
        event = events.get()
        if isinstance(event, StateChanged) and event.state is ControllerState.IDLE:
            return status
        if isinstance(event, ConfigurationFailed):
            logger.error(f"{event.error}")
            if isinstance(event.error, SourceError):
                return 1
            status = 1
        elif isinstance(event, ErrorOccurred):
            logger.error(event.message)
            status = 1
        else:
            handle(event)


# ============================================================================
# Commands
# ============================================================================


def cmd_devices(args, parameters: Parameters) -> int:
    sources = enumerate_devices()
    for source in sources:
        width, height = source.size
        print(f"{source.device}\t{width}x{height}")
        source.release()
    if not sources:
        print("No working camera device found")
    return 0


def cmd_calibrate(args, parameters: Parameters) -> int:
    app = Application(parameters)
    events = Queue()
    app.subscribe(events)

    result = {}

    def handle(event):
        if isinstance(event, CalibrationProgress):
            logger.info(f"Pattern observations per camera: {event.observations}")
        elif isinstance(event, CalibrationDataReady):
            result["calibration"] = event.calibration
            app.controller.stop()

    try:
        app.initialize(app.open_files(args.videos), mode=ControllerMode.CALIBRATION)
        _run_until_idle(events, handle)
    finally:
        app.shutdown()

    calibration = result.get("calibration")
    if calibration is None:
        logger.error("Videos ended before enough pattern views were collected")
        return 1

    save_calibration(calibration, args.output)
    print(f"Calibration of {calibration.arity} camera(s) saved to {args.output} "
          f"(error {calibration.error:.4f}px)")
    return 0


def cmd_track(args, parameters: Parameters) -> int:
    calibration = load_calibration(args.calibration)
    if calibration is None:
        logger.error(f"Calibration file {args.calibration} not found")
        return 1

    seeds = [parse_seed(seed, parameters) for seed in args.seed]

    app = Application(parameters)
    events = Queue()
    app.subscribe(events)

    output = open(args.output, "w", newline="") if args.output else sys.stdout
    writer = csv.writer(output)
    writer.writerow(CSV_HEADER)

    def handle(event):
        if isinstance(event, PositsetReady):
            for target, posit in enumerate(event.positset.posits):
                if not posit.valid:
                    continue
                x, y, z = posit.position
                writer.writerow([
                    event.sequence, target,
                    f"{x:.6f}", f"{y:.6f}", f"{z:.6f}",
                    posit.views, f"{posit.residual:.6f}",
                ])
        elif isinstance(event, MarkRejected):
            logger.warning(f"Seed {event.mark.center} rejected by camera {event.camera}")

    try:
        controller = app.initialize(app.open_files(args.videos))
        app.set_calibration_data(calibration)
        for camera, mark in seeds:
            controller.set_mark(0, camera, mark)
        status = _run_until_idle(events, handle)
    finally:
        app.shutdown()
        if output is not sys.stdout:
            output.close()

    return status


# ============================================================================
# Entry Point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="marktrack", description="Multi-camera marker tracking")
    parser.add_argument("-c", "--config", type=Path, default=None,
                        help="TOML file with a [parameters] table")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("devices", help="List working camera devices")

    calibrate_parser = subparsers.add_parser("calibrate", help="Calibrate from chessboard videos")
    calibrate_parser.add_argument("videos", nargs="+", type=Path, help="One video per camera")
    calibrate_parser.add_argument("-o", "--output", type=Path, default=Path("calibration.toml"),
                                  help="Output calibration file (default: calibration.toml)")

    track_parser = subparsers.add_parser("track", help="Track a marker and triangulate it")
    track_parser.add_argument("videos", nargs="+", type=Path, help="One video per camera")
    track_parser.add_argument("--calibration", type=Path, required=True,
                              help="Calibration file written by 'calibrate'")
    track_parser.add_argument("--seed", action="append", default=[], metavar="CAM:X:Y[:R]",
                              help="Initial marker position in one camera (repeatable)")
    track_parser.add_argument("-o", "--output", type=Path, default=None,
                              help="CSV output file (default: stdout)")

    return parser


COMMANDS = {
    "devices": cmd_devices,
    "calibrate": cmd_calibrate,
    "track": cmd_track,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.verbose:
        marktrack.logger.set_level("DEBUG")

    try:
        parameters = load_parameters(args.config) if args.config else Parameters()
        return COMMANDS[args.command](args, parameters)
    except (MarktrackError, argparse.ArgumentTypeError) as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
