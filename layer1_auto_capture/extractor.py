"""
Layer 1 — Capture Extractor
Crops the guide region from the full-resolution frame and encodes it as JPEG.
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict

from error_handlers import EmptyFrameError, RegionOutOfBoundsError, ImageEncodeError
from .geometry import PixelRegion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureArtifact:
    """Encoded still image of the captured region."""
    pixels: bytes
    region: PixelRegion
    timestamp: str
    mime_type: str = "image/jpeg"

    def to_dict(self) -> Dict:
        """Metadata for API responses (pixels excluded)."""
        return {
            'region': self.region.to_dict(),
            'timestamp': self.timestamp,
            'mime_type': self.mime_type,
            'size_bytes': len(self.pixels)
        }


class CaptureExtractor:
    """
    Copies a region of the native frame (not the analysis buffer) and
    encodes it as a lossy still.
    """

    def __init__(self, jpeg_quality: float = 0.92):
        """
        Initialize extractor.

        Args:
            jpeg_quality: Encoder quality on a 0-1 scale
        """
        self.jpeg_quality = jpeg_quality

    def extract(self, frame: np.ndarray, region: PixelRegion) -> CaptureArtifact:
        """
        Extract and encode the region.

        Args:
            frame: Full-resolution frame snapshot
            region: Pixel rectangle to keep

        Returns:
            CaptureArtifact: Encoded capture

        Raises:
            EmptyFrameError: Frame has no pixels
            RegionOutOfBoundsError: Region does not fit the frame
            ImageEncodeError: JPEG encoding failed
        """
        if frame is None or frame.size == 0:
            raise EmptyFrameError()

        height, width = frame.shape[:2]
        if not region.fits_within(width, height):
            raise RegionOutOfBoundsError(region.to_dict(), (width, height))

        rows, cols = region.slices()
        crop = np.ascontiguousarray(frame[rows, cols])

        quality = int(round(self.jpeg_quality * 100))
        try:
            ok, buffer = cv2.imencode('.jpg', crop, [cv2.IMWRITE_JPEG_QUALITY, quality])
        except cv2.error as e:
            raise ImageEncodeError(e)
        if not ok:
            raise ImageEncodeError("encoder returned no data")

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        artifact = CaptureArtifact(pixels=buffer.tobytes(), region=region, timestamp=timestamp)
        logger.info(f"Capture extracted: {region.w}x{region.h} px, {len(artifact.pixels)} bytes")
        return artifact
