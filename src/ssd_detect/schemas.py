"""Shared data models and schemas."""

from dataclasses import dataclass
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

# Floats per detection row: [image_id, label, score, xmin, ymin, xmax, ymax]
DETECTION_ROW_SIZE = 7

# image_id value marking an empty detection slot
SENTINEL_IMAGE_ID = -1


class BoundingBox(BaseModel):
    """Box coordinates normalized to the network's frame.

    SSD outputs are not clamped, so values slightly outside 0-1 are kept.
    """

    model_config = ConfigDict(frozen=True)

    x_min: float = Field(description="Left edge (normalized)")
    y_min: float = Field(description="Top edge (normalized)")
    x_max: float = Field(description="Right edge (normalized)")
    y_max: float = Field(description="Bottom edge (normalized)")

    def to_pixel_coords(self, width: int, height: int) -> tuple[int, int, int, int]:
        """Convert to pixel coordinates of a frame of the given size.

        Products are computed in single precision and truncated toward zero,
        matching how the network's float output is scaled.

        Returns:
            Tuple of (x_min, y_min, x_max, y_max) in pixels.
        """
        w = np.float32(width)
        h = np.float32(height)
        return (
            int(np.float32(self.x_min) * w),
            int(np.float32(self.y_min) * h),
            int(np.float32(self.x_max) * w),
            int(np.float32(self.y_max) * h),
        )


@dataclass(frozen=True)
class DetectionRecord:
    """One decoded detection, still resolution independent."""

    image_id: int
    label: int
    score: float
    bbox: BoundingBox

    @classmethod
    def from_row(cls, row: Any) -> "DetectionRecord":
        """Build a record from a 7-float output row."""
        return cls(
            image_id=int(row[0]),
            label=int(row[1]),
            score=float(row[2]),
            bbox=BoundingBox(
                x_min=float(row[3]),
                y_min=float(row[4]),
                x_max=float(row[5]),
                y_max=float(row[6]),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "image_id": self.image_id,
            "label": self.label,
            "score": self.score,
            "bbox": {
                "x_min": self.bbox.x_min,
                "y_min": self.bbox.y_min,
                "x_max": self.bbox.x_max,
                "y_max": self.bbox.y_max,
            },
        }
