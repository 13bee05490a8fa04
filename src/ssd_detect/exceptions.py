"""Exception hierarchy for SSD Detect.

Every error that aborts a run derives from SSDDetectError, which the CLI
turns into a diagnostic and a non-zero exit code.
"""

from typing import Any


class SSDDetectError(Exception):
    """Base exception for all SSD Detect errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Setup


class ConfigurationError(SSDDetectError):
    """Raised when settings are invalid or inconsistent."""


class ModelLoadError(SSDDetectError):
    """Raised when the network definition or weights cannot be loaded."""


# Frame acquisition


class DecodeError(SSDDetectError):
    """Raised when an image file cannot be decoded."""


class OpenError(SSDDetectError):
    """Raised when a video file or network stream cannot be opened."""


class StreamError(SSDDetectError):
    """Raised when a network stream is lost and cannot be recovered."""


# Preprocessing


class UnsupportedFrameError(SSDDetectError):
    """Raised when a frame has a channel layout the network cannot take."""


class AliasingViolation(SSDDetectError):
    """Raised when channel planes no longer alias the network input buffer."""


# Inference


class InferenceError(SSDDetectError):
    """Raised when a forward pass fails or returns an unexpected layout."""
