"""Detection network loading and invocation.

The network is an OpenCV DNN model (Caffe prototxt + caffemodel, or any pair
cv2.dnn.readNet accepts). The invoker owns the input tensor and runs one
forward pass at a time.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import cv2
import numpy as np
import structlog

from ssd_detect.config import NetworkSettings
from ssd_detect.detection.preprocess import InputTensor, NetworkInputSpec
from ssd_detect.exceptions import ConfigurationError, InferenceError, ModelLoadError
from ssd_detect.schemas import DETECTION_ROW_SIZE

logger = structlog.get_logger(__name__)

_INPUT_DIM_RE = re.compile(r"^\s*input_dim\s*:\s*(\d+)", re.MULTILINE)
_SHAPE_BLOCK_RE = re.compile(r"\b(?:input_shape|shape)\s*\{([^{}]*)\}")
_DIM_RE = re.compile(r"\bdim\s*:\s*(\d+)")
_INPUT_DECL_RE = re.compile(r"^\s*input\s*:", re.MULTILINE)
_INPUT_LAYER_RE = re.compile(r"\btype\s*:\s*\"Input\"")

_TEXT_DEFINITION_SUFFIXES = {".prototxt", ".pbtxt", ".txt"}


class DetectionNetwork(Protocol):
    """What the pipeline needs from a loaded network."""

    input_spec: NetworkInputSpec

    def forward(self, blob: np.ndarray) -> np.ndarray:
        """Run one forward pass on an NCHW blob and return the raw output."""
        ...


def parse_input_shape(definition: str) -> tuple[int, int, int, int] | None:
    """Read the NCHW input shape from a prototxt network definition.

    Handles `input_dim` lists, `input_shape { dim ... }` and Input layers
    with `input_param { shape { dim ... } }`.
    """
    dims = [int(d) for d in _INPUT_DIM_RE.findall(definition)]
    if len(dims) >= 4:
        return dims[0], dims[1], dims[2], dims[3]

    for block in _SHAPE_BLOCK_RE.finditer(definition):
        dims = [int(d) for d in _DIM_RE.findall(block.group(1))]
        if len(dims) == 4:
            return dims[0], dims[1], dims[2], dims[3]
    return None


def count_inputs(definition: str) -> int:
    """Number of network inputs declared in a prototxt."""
    return len(_INPUT_DECL_RE.findall(definition)) + len(_INPUT_LAYER_RE.findall(definition))


def resolve_input_spec(settings: NetworkSettings) -> NetworkInputSpec:
    """Determine the network input geometry.

    Values set in settings win over those read from the definition file.
    The declared batch size is ignored; the input is always a batch of one.

    Raises:
        ConfigurationError: If the geometry cannot be determined or the
            definition declares more than one input.
        ModelLoadError: If the definition file cannot be read.
    """
    channels = settings.input_channels
    height = settings.input_height
    width = settings.input_width

    model_file = settings.model_file
    if model_file is not None and model_file.suffix.lower() in _TEXT_DEFINITION_SUFFIXES:
        try:
            definition = model_file.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ModelLoadError(f"Cannot read network definition: {model_file}") from e
        if count_inputs(definition) > 1:
            raise ConfigurationError("Network should have exactly one input.")
        shape = parse_input_shape(definition)
        if shape is not None:
            batch, parsed_channels, parsed_height, parsed_width = shape
            if batch != 1:
                logger.debug("Definition batch size ignored", batch=batch)
            channels = channels or parsed_channels
            height = height or parsed_height
            width = width or parsed_width

    if channels is None or height is None or width is None:
        raise ConfigurationError(
            "Cannot determine network input shape; set network.input_channels, "
            "network.input_width and network.input_height",
        )
    return NetworkInputSpec(channels=channels, width=width, height=height)


class DnnNetwork:
    """Network backed by cv2.dnn."""

    def __init__(self, net: cv2.dnn.Net, input_spec: NetworkInputSpec):
        self._net = net
        self.input_spec = input_spec

    @classmethod
    def load(cls, settings: NetworkSettings) -> DnnNetwork:
        """Load topology and weights.

        Raises:
            ModelLoadError: If a file is missing or cannot be parsed.
            ConfigurationError: If the network does not have exactly one
                output or its input geometry is unusable.
        """
        model_file = settings.model_file
        weights_file = settings.weights_file
        if model_file is None or weights_file is None:
            raise ConfigurationError("Both network.model_file and network.weights_file are required")

        for path in (model_file, weights_file):
            if not Path(path).is_file():
                raise ModelLoadError(f"Network file not found: {path}")

        input_spec = resolve_input_spec(settings)

        logger.info(
            "Loading detection network",
            model=str(model_file),
            weights=str(weights_file),
        )
        try:
            net = cv2.dnn.readNet(str(weights_file), str(model_file))
        except cv2.error as e:
            raise ModelLoadError(f"Cannot load network {model_file}: {e}") from e

        if net.empty():
            raise ModelLoadError(f"Network is empty: {model_file}")

        outputs = net.getUnconnectedOutLayersNames()
        if len(outputs) != 1:
            raise ConfigurationError(
                "Network should have exactly one output.",
                details={"outputs": list(outputs)},
            )

        logger.info(
            "Detection network loaded",
            channels=input_spec.channels,
            input_size=f"{input_spec.width}x{input_spec.height}",
        )
        return cls(net, input_spec)

    def forward(self, blob: np.ndarray) -> np.ndarray:
        self._net.setInput(blob)
        try:
            return self._net.forward()
        except cv2.error as e:
            raise InferenceError(f"Forward pass failed: {e}") from e


@dataclass(frozen=True)
class NetworkOutput:
    """Read-only flat view of one forward pass's detections."""

    buffer: np.ndarray
    num_detections: int

    @classmethod
    def from_array(cls, raw: np.ndarray) -> NetworkOutput:
        """Wrap a raw output blob shaped (..., num_detections, 7).

        Raises:
            InferenceError: If the output is not rows of 7 floats.
        """
        if raw.ndim < 2 or raw.shape[-1] != DETECTION_ROW_SIZE:
            raise InferenceError(
                "Unexpected detection output shape",
                details={"shape": list(raw.shape)},
            )
        num_detections = raw.shape[-2]
        flat = np.ascontiguousarray(raw, dtype=np.float32).reshape(-1)
        if flat.size != num_detections * DETECTION_ROW_SIZE:
            raise InferenceError(
                "Detection output holds more than one batch",
                details={"shape": list(raw.shape)},
            )
        flat.setflags(write=False)
        return cls(buffer=flat, num_detections=num_detections)


class InferenceInvoker:
    """Runs the network on its own input tensor.

    The tensor is written in place by the preprocessor, so an invoker must
    never be shared by concurrent workers; a second forward pass while one
    is in flight raises RuntimeError.
    """

    def __init__(self, network: DetectionNetwork):
        self.network = network
        self.spec = network.input_spec
        self.tensor = InputTensor(self.spec)
        self._lock = threading.Lock()
        self.forward_count = 0

    def invoke(self) -> NetworkOutput:
        """Run a forward pass on the current tensor contents."""
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("A forward pass is already in flight on this network")
        try:
            if self.tensor.buffer.shape != self.spec.shape:
                raise InferenceError("Input tensor does not match the network input")
            raw = self.network.forward(self.tensor.buffer)
            self.forward_count += 1
            return NetworkOutput.from_array(np.asarray(raw))
        finally:
            self._lock.release()
