"""Decoding of the flat detection output buffer."""

import numpy as np
import structlog

from ssd_detect.schemas import DETECTION_ROW_SIZE, SENTINEL_IMAGE_ID, DetectionRecord

logger = structlog.get_logger(__name__)


class DetectionDecoder:
    """Turns a flat output buffer into confidence-filtered records.

    Boxes stay normalized; scaling to pixels happens when records are
    formatted against the original frame size. The decoder keeps no state
    between calls.
    """

    def __init__(self, confidence_threshold: float = 0.01):
        self.confidence_threshold = confidence_threshold

    def decode(
        self,
        buffer: np.ndarray,
        confidence_threshold: float | None = None,
    ) -> list[DetectionRecord]:
        """Decode rows of [image_id, label, score, xmin, ymin, xmax, ymax].

        Args:
            buffer: Flat float buffer, 7 values per detection.
            confidence_threshold: Override for the decoder's threshold.

        Returns:
            Records with score >= threshold, sentinel rows skipped, in
            buffer order.
        """
        # Scores are single precision; compare in the same precision
        threshold = np.float32(
            self.confidence_threshold if confidence_threshold is None else confidence_threshold
        )
        flat = np.asarray(buffer).reshape(-1)
        if flat.size % DETECTION_ROW_SIZE:
            raise ValueError(
                f"Detection buffer length {flat.size} is not a multiple of {DETECTION_ROW_SIZE}"
            )

        records: list[DetectionRecord] = []
        skipped = 0
        for row in flat.reshape(-1, DETECTION_ROW_SIZE):
            if row[0] == SENTINEL_IMAGE_ID:
                skipped += 1
                continue
            if row[2] < threshold:
                continue
            records.append(DetectionRecord.from_row(row))

        logger.debug(
            "Decoded detections",
            rows=flat.size // DETECTION_ROW_SIZE,
            sentinels=skipped,
            kept=len(records),
        )
        return records
