"""Detection pipeline for images, video files and RTSP streams.

This module turns frames from heterogeneous sources into the input tensor of
an SSD network, runs the forward pass and decodes its flat output into
confidence-filtered detections.
"""

from ssd_detect.detection.decoder import DetectionDecoder
from ssd_detect.detection.detector import Detector
from ssd_detect.detection.network import (
    DetectionNetwork,
    DnnNetwork,
    InferenceInvoker,
    NetworkOutput,
)
from ssd_detect.detection.pipeline import (
    DetectionPipeline,
    OutputSink,
    PipelineState,
    PipelineStats,
)
from ssd_detect.detection.preprocess import (
    InputTensor,
    MeanProfile,
    NetworkInputSpec,
    Preprocessor,
)
from ssd_detect.detection.sources import (
    Frame,
    FrameSource,
    ImageSource,
    InputKind,
    StreamSource,
    VideoSource,
)

__all__ = [
    "DetectionDecoder",
    "DetectionNetwork",
    "DetectionPipeline",
    "Detector",
    "DnnNetwork",
    "Frame",
    "FrameSource",
    "ImageSource",
    "InferenceInvoker",
    "InputKind",
    "InputTensor",
    "MeanProfile",
    "NetworkInputSpec",
    "NetworkOutput",
    "OutputSink",
    "PipelineState",
    "PipelineStats",
    "Preprocessor",
    "StreamSource",
    "VideoSource",
]
