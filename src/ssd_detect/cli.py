"""Main CLI entry point for SSD Detect."""

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        description=(
            "Do detection using an SSD model on the images, videos or RTSP "
            "streams listed in list_file"
        ),
        prog="ssd-detect",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    parser.add_argument(
        "model_file",
        nargs="?",
        help="Network definition (.prototxt); may come from --config instead",
    )
    parser.add_argument(
        "weights_file",
        nargs="?",
        help="Trained weights (.caffemodel); may come from --config instead",
    )
    parser.add_argument(
        "list_file",
        nargs="?",
        help="File with one image, video or rtsp:// entry per line",
    )

    mean_group = parser.add_mutually_exclusive_group()
    mean_group.add_argument(
        "--mean-file",
        type=str,
        default=None,
        help="Mean image (.npy, channels x height x width) subtracted from the input",
    )
    mean_group.add_argument(
        "--mean-value",
        type=str,
        default=None,
        help="One value, or one per channel, separated by ',' (default: 104,117,123)",
    )

    parser.add_argument(
        "--file-type",
        type=str,
        choices=["image", "video"],
        default=None,
        help="Kind of the entries in list_file (default: image)",
    )
    parser.add_argument(
        "--out-file",
        type=str,
        default=None,
        help="Store the detection results in this file instead of stdout",
    )
    parser.add_argument(
        "--confidence-threshold",
        type=float,
        default=None,
        help="Only store detections with score at or above this value (default: 0.01)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="key=value algorithm config (threshold, type, model, data, listfile)",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="YAML settings file",
    )
    parser.add_argument(
        "--credentials",
        type=str,
        default=None,
        help="File with RTSP username, password and camera host",
    )
    parser.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Stop each RTSP stream after this many frames",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level",
    )
    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Nested settings values for every flag given on the command line."""
    mapping: dict[str, tuple[str, ...]] = {
        "model_file": ("network", "model_file"),
        "weights_file": ("network", "weights_file"),
        "list_file": ("list_file",),
        "mean_file": ("preprocess", "mean_file"),
        "mean_value": ("preprocess", "mean_values"),
        "file_type": ("detection", "file_type"),
        "confidence_threshold": ("detection", "confidence_threshold"),
        "out_file": ("output", "out_file"),
        "credentials": ("stream", "credentials_file"),
        "max_frames": ("stream", "max_frames"),
        "log_level": ("log_level",),
    }

    overrides: dict[str, Any] = {}
    for attr, keys in mapping.items():
        value = getattr(args, attr)
        if value is None:
            continue
        target = overrides
        for key in keys[:-1]:
            target = target.setdefault(key, {})
        target[keys[-1]] = value
    return overrides


def _install_stop_handlers(stop_event: threading.Event) -> dict[int, Any]:
    """Set the stop event on SIGINT/SIGTERM. Returns the previous handlers."""

    def handle(signum: int, _frame: Any) -> None:
        logger.warning("Stop requested", signal=signal.Signals(signum).name)
        stop_event.set()

    previous: dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handle)
    return previous


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    from ssd_detect.config import load_settings
    from ssd_detect.detection.detector import Detector
    from ssd_detect.detection.pipeline import DetectionPipeline, OutputSink, read_list_file
    from ssd_detect.exceptions import SSDDetectError
    from ssd_detect.logging_config import configure_logging

    if args.log_level:
        configure_logging(args.log_level)

    try:
        settings = load_settings(
            config_path=Path(args.settings) if args.settings else None,
            algorithm_config=Path(args.config) if args.config else None,
            overrides=_cli_overrides(args),
        )
    except SSDDetectError as e:
        logger.error("Invalid configuration", error=e.message)
        return 1

    configure_logging(settings.log_level)

    network = settings.network
    if network.model_file is None or network.weights_file is None or settings.list_file is None:
        parser.print_usage(sys.stderr)
        logger.error("model_file, weights_file and list_file are required")
        return 1

    stop_event = threading.Event()
    in_main_thread = threading.current_thread() is threading.main_thread()
    previous_handlers = _install_stop_handlers(stop_event) if in_main_thread else {}

    try:
        descriptors = read_list_file(settings.list_file)
        detector = Detector.from_settings(settings)
        with OutputSink(settings.output.out_file) as sink:
            pipeline = DetectionPipeline(detector, settings, sink, stop_event=stop_event)
            pipeline.run(descriptors)
    except SSDDetectError as e:
        logger.error("Detection aborted", error=e.message, error_type=type(e).__name__)
        return 1
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)

    return 0


if __name__ == "__main__":
    sys.exit(main())
