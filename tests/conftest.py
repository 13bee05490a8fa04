"""Shared fixtures: a scripted network and a fake cv2.VideoCapture."""

import time
from collections.abc import Callable, Sequence

import cv2
import numpy as np
import pytest

from ssd_detect.detection.preprocess import NetworkInputSpec


class FakeNetwork:
    """Network stand-in returning fixed detection rows."""

    def __init__(self, spec: NetworkInputSpec, rows: Sequence[Sequence[float]] = ()):
        self.input_spec = spec
        self.rows = [list(r) for r in rows]
        self.calls = 0
        self.last_blob: np.ndarray | None = None
        self.on_forward: Callable[["FakeNetwork"], None] | None = None

    def forward(self, blob: np.ndarray) -> np.ndarray:
        self.calls += 1
        self.last_blob = blob
        if self.on_forward is not None:
            self.on_forward(self)
        return np.asarray(self.rows, dtype=np.float32).reshape(1, 1, -1, 7)


class FakeCapture:
    """cv2.VideoCapture stand-in producing numbered solid frames."""

    def __init__(
        self,
        num_frames: int | None,
        opened: bool = True,
        shape: tuple[int, ...] = (48, 64, 3),
        read_delay: float = 0.0,
    ):
        self.num_frames = num_frames
        self.read_delay = read_delay
        self.opened = opened
        self.shape = shape
        self.reads = 0
        self.released = False

    def isOpened(self) -> bool:  # noqa: N802
        return self.opened

    def read(self) -> tuple[bool, np.ndarray | None]:
        if self.reads and self.read_delay:
            # First read of each capture is immediate
            time.sleep(self.read_delay)
        if self.num_frames is None:
            time.sleep(0.001)
        elif self.reads >= self.num_frames:
            return False, None
        self.reads += 1
        return True, np.full(self.shape, self.reads % 256, dtype=np.uint8)

    def set(self, prop: int, value: float) -> bool:
        return True

    def get(self, prop: int) -> float:
        if prop == cv2.CAP_PROP_FRAME_WIDTH:
            return float(self.shape[1])
        if prop == cv2.CAP_PROP_FRAME_HEIGHT:
            return float(self.shape[0])
        return 0.0

    def release(self) -> None:
        self.released = True


@pytest.fixture
def spec() -> NetworkInputSpec:
    """Small 3-channel network input."""
    return NetworkInputSpec(channels=3, width=16, height=12)


@pytest.fixture
def make_network() -> Callable[..., FakeNetwork]:
    """Factory for fake networks."""

    def _make(
        rows: Sequence[Sequence[float]] = (),
        channels: int = 3,
        width: int = 300,
        height: int = 300,
    ) -> FakeNetwork:
        return FakeNetwork(NetworkInputSpec(channels=channels, width=width, height=height), rows)

    return _make


@pytest.fixture
def fake_capture(monkeypatch: pytest.MonkeyPatch) -> Callable[..., list[FakeCapture]]:
    """Replace cv2.VideoCapture; returns the list of captures created."""

    def _install(
        num_frames: int | None = 10,
        opened: bool = True,
        shape: tuple[int, ...] = (48, 64, 3),
        read_delay: float = 0.0,
    ) -> list[FakeCapture]:
        created: list[FakeCapture] = []

        def factory(*args, **kwargs) -> FakeCapture:
            cap = FakeCapture(num_frames, opened=opened, shape=shape, read_delay=read_delay)
            created.append(cap)
            return cap

        monkeypatch.setattr(cv2, "VideoCapture", factory)
        return created

    return _install
