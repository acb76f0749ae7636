"""
Layer 1 — Quality Assessment
Per-frame quality metrics for the auto-capture gate.
Evaluates focus, lighting, border edges, motion, and region proportions.
"""
import cv2
import numpy as np
import logging
from typing import Dict, Optional
from dataclasses import dataclass

from .config import GateConfig
from .geometry import PixelRegion

logger = logging.getLogger(__name__)

# Luma level a pixel must exceed to count as lit (0-255)
BRIGHTNESS_FLOOR = 60

# Motion reported when there is no comparable previous frame
MOTION_SENTINEL = 255.0

# Dynamic edge threshold: mean + k * std of gradient magnitude
EDGE_STD_FACTOR = 1.2

# Fixed edge threshold: fraction of the strongest gradient
EDGE_MAX_FRACTION = 0.25


@dataclass(frozen=True)
class EdgeRatios:
    """Fraction of strong-edge pixels in each border band."""
    top: float
    bottom: float
    left: float
    right: float

    def minimum(self) -> float:
        return min(self.top, self.bottom, self.left, self.right)

    def to_dict(self) -> Dict:
        return {
            'top': round(self.top, 4),
            'bottom': round(self.bottom, 4),
            'left': round(self.left, 4),
            'right': round(self.right, 4)
        }


@dataclass(frozen=True)
class MetricSet:
    """Container for one frame's quality metrics."""
    sharpness: float      # Laplacian variance (higher = sharper)
    fill_ratio: float     # Fraction of pixels above the brightness floor
    edge: EdgeRatios      # Border band edge ratios
    motion: float         # Mean abs luma difference vs previous frame
    aspect_ok: bool       # Region proportions match the document
    elapsed_ok: bool      # Startup settle time has passed

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'sharpness': round(self.sharpness, 2),
            'fill_ratio': round(self.fill_ratio, 4),
            'edge': self.edge.to_dict(),
            'motion': round(self.motion, 2),
            'aspect_ok': self.aspect_ok,
            'elapsed_ok': self.elapsed_ok
        }


@dataclass(frozen=True)
class QualityChecks:
    """Pass/fail result of every gate check for one frame."""
    focus: bool
    fill: bool
    motion: bool
    edges: bool
    aspect: bool
    elapsed: bool

    @property
    def all_pass(self) -> bool:
        return (
            self.focus and self.fill and self.motion
            and self.edges and self.aspect and self.elapsed
        )

    def to_dict(self) -> Dict:
        return {
            'focus': self.focus,
            'fill': self.fill,
            'motion': self.motion,
            'edges': self.edges,
            'aspect': self.aspect,
            'elapsed': self.elapsed,
            'all_pass': self.all_pass
        }


def compute_sharpness(luma: np.ndarray) -> float:
    """
    Calculate sharpness as the population variance of the Laplacian response.
    Only interior pixels are used; buffers 2 pixels or less on a side give 0.
    """
    h, w = luma.shape[:2]
    if w <= 2 or h <= 2:
        return 0.0

    # ksize=1 is the 4-neighbour kernel [[0,1,0],[1,-4,1],[0,1,0]]
    laplacian = cv2.Laplacian(luma, cv2.CV_64F, ksize=1)
    return float(laplacian[1:-1, 1:-1].var())


def compute_fill_ratio(luma: np.ndarray, floor: int = BRIGHTNESS_FLOOR) -> float:
    """Fraction of pixels strictly brighter than floor."""
    if luma.size == 0:
        return 0.0
    return float(np.count_nonzero(luma > floor)) / luma.size


def compute_gradient_magnitude(luma: np.ndarray) -> np.ndarray:
    """
    Sobel magnitude |Gx| + |Gy| over interior pixels.
    The 1-pixel border is left at zero.
    """
    h, w = luma.shape[:2]
    magnitude = np.zeros((h, w), dtype=np.float64)
    if w <= 2 or h <= 2:
        return magnitude

    gx = cv2.Sobel(luma, cv2.CV_64F, 1, 0, ksize=3)
    gy = cv2.Sobel(luma, cv2.CV_64F, 0, 1, ksize=3)
    magnitude[1:-1, 1:-1] = np.abs(gx[1:-1, 1:-1]) + np.abs(gy[1:-1, 1:-1])
    return magnitude


def edge_threshold(magnitude: np.ndarray, mode: str = "dynamic") -> float:
    """
    Threshold above which a gradient counts as an edge.

    "dynamic": mean + 1.2 * std of the interior magnitudes (robust to lighting).
    "max_fraction": 25% of the strongest magnitude (at least 1).
    """
    interior = magnitude[1:-1, 1:-1]
    if mode == "max_fraction":
        peak = float(interior.max()) if interior.size else 0.0
        return EDGE_MAX_FRACTION * max(peak, 1.0)

    if interior.size == 0:
        return 0.0
    return float(interior.mean() + EDGE_STD_FACTOR * interior.std())


def compute_edge_ratios(
    luma: np.ndarray,
    band_fraction: float,
    mode: str = "dynamic"
) -> EdgeRatios:
    """
    Ratio of edge pixels in the top, bottom, left and right border bands.

    Band thickness is round(band_fraction * min(W, H)), at least 1 pixel.
    """
    h, w = luma.shape[:2]
    magnitude = compute_gradient_magnitude(luma)
    # Threshold statistics come from interior pixels only; the 1px border has no gradient
    threshold = edge_threshold(magnitude, mode)
    strong = magnitude > threshold

    band = max(1, int(np.floor(band_fraction * min(w, h) + 0.5)))
    band_h = min(band, h)
    band_w = min(band, w)

    top = np.count_nonzero(strong[:band_h, :]) / (w * band_h)
    bottom = np.count_nonzero(strong[h - band_h:, :]) / (w * band_h)
    left = np.count_nonzero(strong[:, :band_w]) / (h * band_w)
    right = np.count_nonzero(strong[:, w - band_w:]) / (h * band_w)

    return EdgeRatios(top=float(top), bottom=float(bottom), left=float(left), right=float(right))


def compute_motion(luma: np.ndarray, previous: Optional[np.ndarray]) -> float:
    """
    Mean absolute difference against the previous analysis frame.
    Returns MOTION_SENTINEL when there is no previous frame of the same size.
    """
    if previous is None or previous.shape != luma.shape or luma.size == 0:
        return MOTION_SENTINEL

    diff = np.abs(luma.astype(np.int16) - previous.astype(np.int16))
    return float(diff.mean())


def aspect_ok(region: PixelRegion, target: float, tolerance: float) -> bool:
    """Check region width/height is within tolerance of target."""
    return abs(region.aspect_ratio - target) <= tolerance


class QualityAssessor:
    """
    Computes the gate metrics for one analysis buffer and checks them
    against the configured thresholds.
    """

    def __init__(self, config: Optional[GateConfig] = None):
        """
        Initialize quality assessor.

        Args:
            config: Gate thresholds (defaults if not provided)
        """
        self.config = config or GateConfig()
        logger.debug("QualityAssessor initialized")

    def assess(
        self,
        luma: np.ndarray,
        previous: Optional[np.ndarray] = None,
        region: Optional[PixelRegion] = None,
        elapsed_seconds: Optional[float] = None
    ) -> MetricSet:
        """
        Assess one analysis frame.

        Args:
            luma: Current uint8 luma buffer
            previous: Previous frame's luma buffer (read only), None on the first frame
            region: Source pixel region the buffer was sampled from
            elapsed_seconds: Time since the session started

        Returns:
            MetricSet: Fresh metrics for this frame
        """
        cfg = self.config

        region_aspect_ok = (
            aspect_ok(region, cfg.aspect_target, cfg.aspect_tolerance)
            if region is not None else False
        )
        elapsed_ok = (
            elapsed_seconds >= cfg.min_elapsed_seconds
            if elapsed_seconds is not None else False
        )

        return MetricSet(
            sharpness=compute_sharpness(luma),
            fill_ratio=compute_fill_ratio(luma),
            edge=compute_edge_ratios(luma, cfg.edge_band_fraction, cfg.edge_threshold_mode),
            motion=compute_motion(luma, previous),
            aspect_ok=region_aspect_ok,
            elapsed_ok=elapsed_ok
        )

    def check(self, metrics: MetricSet) -> QualityChecks:
        """
        Check metrics against the configured thresholds.

        Args:
            metrics: Metrics to evaluate

        Returns:
            QualityChecks: One boolean per check
        """
        cfg = self.config
        return QualityChecks(
            focus=metrics.sharpness >= cfg.sharpness_min,
            fill=metrics.fill_ratio >= cfg.fill_min,
            motion=metrics.motion <= cfg.motion_max,
            edges=metrics.edge.minimum() >= cfg.edge_ratio_min,
            aspect=metrics.aspect_ok,
            elapsed=metrics.elapsed_ok
        )
