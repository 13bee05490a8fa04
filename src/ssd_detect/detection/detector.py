"""Single-frame SSD detection: preprocess, forward pass, decode."""

import numpy as np
import structlog

from ssd_detect.config import Settings
from ssd_detect.detection.decoder import DetectionDecoder
from ssd_detect.detection.network import DetectionNetwork, DnnNetwork, InferenceInvoker
from ssd_detect.detection.preprocess import MeanProfile, NetworkInputSpec, Preprocessor
from ssd_detect.schemas import DetectionRecord

logger = structlog.get_logger(__name__)


def build_mean_profile(settings: Settings, spec: NetworkInputSpec) -> MeanProfile:
    """Mean profile from the mean file or the (possibly default) mean values."""
    preprocess = settings.preprocess
    if preprocess.mean_file is not None:
        return MeanProfile.from_file(preprocess.mean_file, spec)
    return MeanProfile.from_values(preprocess.effective_mean_values, spec)


class Detector:
    """Runs one frame through an SSD network.

    Example:
        ```python
        detector = Detector.from_settings(settings)
        for record in detector.detect(frame):
            print(record.label, record.score, record.bbox)
        ```
    """

    def __init__(
        self,
        network: DetectionNetwork,
        mean: MeanProfile,
        confidence_threshold: float = 0.01,
    ):
        """Initialize detector.

        Args:
            network: Loaded network; its input spec fixes all preprocessing.
            mean: Mean profile matching the network input.
            confidence_threshold: Minimum score for reported detections.
        """
        self.spec = network.input_spec
        self.preprocessor = Preprocessor(self.spec, mean)
        self.invoker = InferenceInvoker(network)
        self.decoder = DetectionDecoder(confidence_threshold)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Detector":
        """Load the network and mean profile described by settings.

        Raises:
            ModelLoadError: If the network files cannot be loaded.
            ConfigurationError: If the mean profile does not fit the network.
        """
        network = DnnNetwork.load(settings.network)
        mean = build_mean_profile(settings, network.input_spec)
        return cls(
            network,
            mean,
            confidence_threshold=settings.detection.confidence_threshold,
        )

    @property
    def confidence_threshold(self) -> float:
        return self.decoder.confidence_threshold

    def detect(self, image: np.ndarray) -> list[DetectionRecord]:
        """Detect objects in one frame.

        Args:
            image: BGR, BGRA or grayscale frame at its native resolution.

        Returns:
            Records scoring at or above the threshold, boxes normalized.
        """
        self.preprocessor.process(image, self.invoker.tensor)
        output = self.invoker.invoke()
        return self.decoder.decode(output.buffer)
