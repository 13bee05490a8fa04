"""Detection pipeline over a list of inputs.

Orchestrates, for each list-file entry: frame source → preprocessing →
forward pass → decoding → output lines. Frames are processed strictly one
at a time.
"""

import sys
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TextIO

import structlog

from ssd_detect.config import Settings
from ssd_detect.detection.detector import Detector
from ssd_detect.detection.sources import (
    Frame,
    FrameSource,
    InputKind,
    mask_url,
    open_source,
    resolve_input_kind,
)
from ssd_detect.exceptions import ConfigurationError, SSDDetectError
from ssd_detect.schemas import DetectionRecord

logger = structlog.get_logger(__name__)

SourceFactory = Callable[[str, InputKind, Settings, threading.Event], FrameSource]


def read_list_file(path: Path) -> list[str]:
    """Read one input descriptor per line, skipping blank lines.

    Raises:
        ConfigurationError: If the list file cannot be read.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read list file: {path}") from e
    return [line.strip() for line in text.splitlines() if line.strip()]


def format_detection(label: str, record: DetectionRecord, width: int, height: int) -> str:
    """Format one output line, scaling the box to the original frame size.

    `<label> <class> <score> <x_min> <y_min> <x_max> <y_max>`
    """
    x_min, y_min, x_max, y_max = record.bbox.to_pixel_coords(width, height)
    return f"{label} {record.label} {record.score:g} {x_min} {y_min} {x_max} {y_max}"


class OutputSink:
    """Writes detection lines to a file, or to stdout when no path is set."""

    def __init__(self, path: Path | None = None, stream: TextIO | None = None):
        self.path = path
        self._stream = stream
        self._owned = False
        self.lines_written = 0

    def open(self) -> "OutputSink":
        """Open the output file.

        Raises:
            ConfigurationError: If the output file cannot be created.
        """
        if self._stream is None:
            if self.path is None:
                self._stream = sys.stdout
            else:
                try:
                    self._stream = open(self.path, "w", encoding="utf-8", buffering=1)
                except OSError as e:
                    raise ConfigurationError(f"Cannot open output file: {self.path}") from e
                self._owned = True
        return self

    def write(self, line: str) -> None:
        if self._stream is None:
            self.open()
        self._stream.write(line + "\n")
        self.lines_written += 1

    def close(self) -> None:
        if self._stream is None:
            return
        self._stream.flush()
        if self._owned:
            self._stream.close()
            self._stream = None
            self._owned = False

    def __enter__(self) -> "OutputSink":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class PipelineState(Enum):
    """Pipeline operational state."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Runtime statistics for the pipeline."""

    inputs_processed: int = 0
    inputs_by_kind: dict[str, int] = field(default_factory=dict)
    frames_processed: int = 0
    detections_written: int = 0
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def runtime(self) -> float:
        """Total runtime in seconds."""
        if self.start_time == 0:
            return 0.0
        end = self.end_time or time.time()
        return end - self.start_time

    @property
    def effective_fps(self) -> float:
        """Effective frames per second."""
        if self.runtime == 0:
            return 0.0
        return self.frames_processed / self.runtime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "inputs_processed": self.inputs_processed,
            "inputs_by_kind": dict(self.inputs_by_kind),
            "frames_processed": self.frames_processed,
            "detections_written": self.detections_written,
            "runtime": round(self.runtime, 1),
            "effective_fps": round(self.effective_fps, 2),
        }


class DetectionPipeline:
    """Runs every input of a list through the detector.

    Example:
        ```python
        stop = threading.Event()
        with OutputSink(settings.output.out_file) as sink:
            pipeline = DetectionPipeline(detector, settings, sink, stop_event=stop)
            stats = pipeline.run(read_list_file(settings.list_file))
        ```
    """

    def __init__(
        self,
        detector: Detector,
        settings: Settings,
        sink: OutputSink,
        stop_event: threading.Event | None = None,
        source_factory: SourceFactory = open_source,
    ):
        """Initialize detection pipeline.

        Args:
            detector: Detector for every frame
            settings: Application settings
            sink: Destination for detection lines
            stop_event: Cancellation signal checked between frames
            source_factory: Opens the frame source for one input
        """
        self.detector = detector
        self.settings = settings
        self.sink = sink
        self.stop_event = stop_event or threading.Event()
        self.source_factory = source_factory

        self._state = PipelineState.IDLE
        self._stats = PipelineStats()

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Get pipeline statistics."""
        return self._stats

    def plan(self, descriptors: Iterable[str]) -> list[tuple[str, InputKind]]:
        """Resolve the source kind of every input before any is opened."""
        file_type = self.settings.detection.file_type
        return [(d, resolve_input_kind(d, file_type)) for d in descriptors]

    def run(self, descriptors: Iterable[str]) -> PipelineStats:
        """Process all inputs in order.

        Stops early, without error, when the stop event is set.

        Raises:
            SSDDetectError: On the first input that fails; output written so
                far is kept.
        """
        planned = self.plan(descriptors)

        self._state = PipelineState.RUNNING
        self._stats = PipelineStats(start_time=time.time())
        logger.info(
            "Starting pipeline",
            inputs=len(planned),
            confidence_threshold=self.detector.confidence_threshold,
        )

        try:
            for descriptor, kind in planned:
                if self.stop_event.is_set():
                    break
                self._process_input(descriptor, kind)
        except SSDDetectError as e:
            self._state = PipelineState.ERROR
            self._stats.end_time = time.time()
            logger.error("Pipeline aborted", error=e.message, details=e.details)
            raise

        self._stats.end_time = time.time()
        if self.stop_event.is_set():
            self._state = PipelineState.CANCELLED
        else:
            self._state = PipelineState.COMPLETED
        logger.info(
            "Pipeline finished",
            state=self._state.value,
            stats=self._stats.to_dict(),
        )
        return self._stats

    def _process_input(self, descriptor: str, kind: InputKind) -> None:
        log = logger.bind(input=mask_url(descriptor), kind=kind.value)
        log.info("Processing input")

        source = self.source_factory(descriptor, kind, self.settings, self.stop_event)
        try:
            for frame in source:
                self._process_frame(frame)
                if self.stop_event.is_set():
                    log.info("Stop requested")
                    break
        finally:
            source.close()

        self._stats.inputs_processed += 1
        kind_name = source.kind.value
        self._stats.inputs_by_kind[kind_name] = self._stats.inputs_by_kind.get(kind_name, 0) + 1

    def _process_frame(self, frame: Frame) -> None:
        records = self.detector.detect(frame.image)
        logger.debug(
            "Frame detections",
            label=frame.label,
            detections=[record.to_dict() for record in records],
        )
        for record in records:
            self.sink.write(format_detection(frame.label, record, frame.width, frame.height))
        self._stats.frames_processed += 1
        self._stats.detections_written += len(records)
