"""
Layer 1 — Frame Sampler
Downsamples the guide region to a fixed analysis width and converts it to luma.

A fixed analysis resolution keeps every per-pixel metric pass at constant
cost regardless of the camera resolution.
"""
import cv2
import numpy as np
import logging
from typing import Optional

from .geometry import PixelRegion

logger = logging.getLogger(__name__)

# BT.601 luma coefficients
LUMA_R = 0.299
LUMA_G = 0.587
LUMA_B = 0.114


def analysis_height(region: PixelRegion, target_width: int) -> int:
    """Height of the analysis buffer for a region at target_width."""
    return max(1, int(np.floor(region.h * target_width / region.w + 0.5)))


def to_luma(image: np.ndarray) -> np.ndarray:
    """
    Convert a BGR(A) image to 8-bit luma with BT.601 weights.

    Values are truncated, not rounded. Single-channel input is returned as uint8.
    """
    if image.ndim == 2:
        return image.astype(np.uint8, copy=True)

    b = image[..., 0].astype(np.float64)
    g = image[..., 1].astype(np.float64)
    r = image[..., 2].astype(np.float64)
    luma = LUMA_R * r + LUMA_G * g + LUMA_B * b
    return luma.astype(np.uint8)


class FrameSampler:
    """
    Copies a frame region into a reusable analysis buffer and returns its luma.

    The resized color buffer is reused across ticks while its shape is stable;
    the returned luma array is new on every call so the caller can keep it as
    the previous frame for motion.
    """

    def __init__(self, target_width: int = 320):
        self.target_width = target_width
        self._work: Optional[np.ndarray] = None

    def sample(self, frame: np.ndarray, region: PixelRegion) -> np.ndarray:
        """
        Resample region of frame to target_width x H and convert to luma.

        Args:
            frame: Full-resolution BGR (or grayscale) frame
            region: Pixel rectangle inside the frame

        Returns:
            numpy.ndarray: uint8 luma buffer of shape (H, target_width)
        """
        rows, cols = region.slices()
        roi = frame[rows, cols]
        if roi.ndim == 3 and roi.shape[2] == 4:
            roi = roi[..., :3]

        height = analysis_height(region, self.target_width)
        shape = (height, self.target_width) + roi.shape[2:]

        if self._work is None or self._work.shape != shape or self._work.dtype != roi.dtype:
            self._work = np.empty(shape, dtype=roi.dtype)
            logger.debug(f"Analysis buffer allocated: {self.target_width}x{height}")

        self._work = cv2.resize(
            np.ascontiguousarray(roi),
            (self.target_width, height),
            dst=self._work,
            interpolation=cv2.INTER_AREA
        )
        return to_luma(self._work)

    def reset(self):
        """Drop the work buffer (stream restart)."""
        self._work = None
