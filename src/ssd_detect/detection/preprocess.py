"""Frame preprocessing into the network input tensor.

Converts an arbitrary 8-bit frame into the planar float layout the network
expects and writes it straight into the channel planes of the input tensor,
which are views over one contiguous buffer.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import cv2
import numpy as np
import structlog

from ssd_detect.exceptions import (
    AliasingViolation,
    ConfigurationError,
    UnsupportedFrameError,
)

logger = structlog.get_logger(__name__)

# (source channels, network channels) -> cvtColor code
_COLOR_CONVERSIONS: dict[tuple[int, int], int] = {
    (3, 1): cv2.COLOR_BGR2GRAY,
    (4, 1): cv2.COLOR_BGRA2GRAY,
    (4, 3): cv2.COLOR_BGRA2BGR,
    (1, 3): cv2.COLOR_GRAY2BGR,
}


def channel_count(image: np.ndarray) -> int:
    """Number of interleaved channels in an OpenCV image."""
    return 1 if image.ndim == 2 else image.shape[2]


@dataclass(frozen=True)
class NetworkInputSpec:
    """Input geometry of a loaded network."""

    channels: int
    width: int
    height: int

    def __post_init__(self) -> None:
        if self.channels not in (1, 3):
            raise ConfigurationError(
                f"Input layer should have 1 or 3 channels, got {self.channels}"
            )
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(
                f"Invalid input size {self.width}x{self.height}"
            )

    @property
    def size(self) -> tuple[int, int]:
        """(width, height), the order cv2.resize takes."""
        return (self.width, self.height)

    @property
    def shape(self) -> tuple[int, int, int, int]:
        """NCHW shape of a batch-of-one input tensor."""
        return (1, self.channels, self.height, self.width)


class MeanProfile:
    """Mean image subtracted from every preprocessed frame.

    Stored interleaved (height x width x channels) at the network input size.
    """

    def __init__(self, image: np.ndarray):
        if image.ndim != 3:
            raise ValueError("Mean image must be height x width x channels")
        self.image = image.astype(np.float32, copy=False)
        self.image.setflags(write=False)

    @property
    def channels(self) -> int:
        return self.image.shape[2]

    @classmethod
    def from_values(cls, values: str, spec: NetworkInputSpec) -> MeanProfile:
        """Broadcast per-channel scalars to an image of the input size.

        Args:
            values: One value for all channels, or one per channel, separated by ','.
            spec: Network input geometry.

        Raises:
            ConfigurationError: If values are not numbers or the count is wrong.
        """
        try:
            parsed = [float(item) for item in values.split(",")]
        except ValueError as e:
            raise ConfigurationError(f"Mean values must be numbers: {values!r}") from e

        if len(parsed) == 1:
            parsed = parsed * spec.channels
        elif len(parsed) != spec.channels:
            raise ConfigurationError(
                f"Specify either 1 mean value or as many as channels: {spec.channels}",
                details={"values": len(parsed)},
            )

        image = np.empty((spec.height, spec.width, spec.channels), dtype=np.float32)
        image[...] = np.asarray(parsed, dtype=np.float32)
        return cls(image)

    @classmethod
    def from_file(cls, path: Path, spec: NetworkInputSpec) -> MeanProfile:
        """Load a planar mean image and reduce it to its per-channel mean.

        The file holds a channels x height x width float array (NumPy .npy,
        a leading batch axis of 1 is accepted). The global mean of each
        channel is broadcast to an image of the input size.

        Raises:
            ConfigurationError: If the file cannot be read or its channel
                count does not match the network input.
        """
        try:
            blob = np.load(path, allow_pickle=False)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read mean file: {path}") from e

        if blob.ndim == 4 and blob.shape[0] == 1:
            blob = blob[0]
        if blob.ndim != 3:
            raise ConfigurationError(
                f"Mean file must hold a channels x height x width array: {path}",
                details={"shape": list(blob.shape)},
            )
        if blob.shape[0] != spec.channels:
            raise ConfigurationError(
                "Number of channels of mean file doesn't match input layer.",
                details={"mean_channels": blob.shape[0], "input_channels": spec.channels},
            )

        channel_mean = blob.reshape(spec.channels, -1).astype(np.float64).mean(axis=1)
        logger.debug("Loaded mean file", path=str(path), channel_mean=channel_mean.tolist())

        image = np.empty((spec.height, spec.width, spec.channels), dtype=np.float32)
        image[...] = channel_mean.astype(np.float32)
        return cls(image)


class InputTensor:
    """Contiguous NCHW float buffer with one view per channel plane.

    Each plane is a view into the same buffer, so writing a plane writes the
    network input directly.
    """

    def __init__(self, spec: NetworkInputSpec):
        self.spec = spec
        self.buffer = np.zeros(spec.shape, dtype=np.float32)
        self.planes: list[np.ndarray] = [
            self.buffer[0, c] for c in range(spec.channels)
        ]

    @property
    def base_address(self) -> int:
        return self.buffer.__array_interface__["data"][0]

    def check_aliasing(self) -> None:
        """Verify the planes still wrap the buffer, first plane at its base.

        Raises:
            AliasingViolation: If any plane is not backed by the buffer.
        """
        plane_bytes = self.spec.width * self.spec.height * self.buffer.itemsize
        for c, plane in enumerate(self.planes):
            expected = self.base_address + c * plane_bytes
            actual = plane.__array_interface__["data"][0]
            if actual != expected or plane.base is not self.buffer:
                raise AliasingViolation(
                    "Input channels are not wrapping the input layer of the network.",
                    details={"channel": c, "expected": expected, "actual": actual},
                )


class Preprocessor:
    """Converts frames into the network input tensor in place.

    Example:
        ```python
        spec = NetworkInputSpec(channels=3, width=300, height=300)
        preprocessor = Preprocessor(spec, MeanProfile.from_values("104,117,123", spec))
        tensor = InputTensor(spec)
        preprocessor.process(frame, tensor)
        ```
    """

    def __init__(self, spec: NetworkInputSpec, mean: MeanProfile):
        if mean.channels != spec.channels:
            raise ConfigurationError(
                "Number of channels of mean profile doesn't match input layer.",
                details={"mean_channels": mean.channels, "input_channels": spec.channels},
            )
        if mean.image.shape[:2] != (spec.height, spec.width):
            raise ConfigurationError("Mean profile size doesn't match input layer.")
        self.spec = spec
        self.mean = mean

    def convert_channels(self, image: np.ndarray) -> np.ndarray:
        """Map the frame to the network's channel count."""
        source = channel_count(image)
        target = self.spec.channels
        if source == target:
            return image
        code = _COLOR_CONVERSIONS.get((source, target))
        if code is None:
            raise UnsupportedFrameError(
                f"Cannot convert {source}-channel frame to {target} channels"
            )
        return cv2.cvtColor(image, code)

    def resize(self, image: np.ndarray) -> np.ndarray:
        """Resize to the network input size, skipping frames already that size."""
        if image.shape[:2] == (self.spec.height, self.spec.width):
            return image
        return cv2.resize(image, self.spec.size, interpolation=cv2.INTER_LINEAR)

    def normalize(self, image: np.ndarray) -> np.ndarray:
        """Promote to float (raw 0-255 scale) and subtract the mean."""
        sample = image.astype(np.float32)
        if sample.ndim == 2:
            sample = sample[:, :, np.newaxis]
        return sample - self.mean.image

    def process(self, image: np.ndarray, tensor: InputTensor) -> None:
        """Write one frame into the input tensor.

        Args:
            image: Frame with 1, 3 or 4 interleaved channels.
            tensor: Input tensor for this network; its planes are overwritten.

        Raises:
            UnsupportedFrameError: If the frame's channels cannot be converted.
            AliasingViolation: If the tensor planes do not wrap its buffer.
        """
        if tensor.spec != self.spec:
            raise ValueError("Input tensor was allocated for a different network input")
        if image.ndim not in (2, 3) or image.size == 0:
            raise UnsupportedFrameError(f"Not an image: shape {image.shape}")

        sample = self.convert_channels(image)
        sample = self.resize(sample)
        normalized = self.normalize(sample)

        for c, plane in enumerate(tensor.planes):
            np.copyto(plane, normalized[:, :, c])

        tensor.check_aliasing()
