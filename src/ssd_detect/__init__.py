"""SSD Detect - batch and streaming object detection with an SSD network."""

__version__ = "0.1.0"

# Configure logging early to ensure all modules use correct settings
from ssd_detect.logging_config import configure_logging  # noqa: F401
