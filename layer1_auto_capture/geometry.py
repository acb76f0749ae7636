"""
Layer 1 — Geometry Mapper
Maps the on-screen guide box to a pixel rectangle in the native video frame.

The preview is assumed to be drawn with uniform "contain" fitting: scaled by
min(containerW / videoW, containerH / videoH) and centered, leaving
letterbox bars on one axis. The mapping inverts that transform.
"""
import math
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuideRegion:
    """Guide rectangle in display coordinates, plus the display container size."""
    x: float
    y: float
    w: float
    h: float
    container_width: float
    container_height: float

    def is_measurable(self) -> bool:
        """True once the guide and its container have been laid out."""
        fields = (self.x, self.y, self.w, self.h, self.container_width, self.container_height)
        return (
            all(math.isfinite(value) for value in fields)
            and self.w > 0 and self.h > 0
            and self.container_width > 0 and self.container_height > 0
        )


@dataclass(frozen=True)
class PixelRegion:
    """Integer rectangle in source frame pixels."""
    x: int
    y: int
    w: int
    h: int

    @property
    def aspect_ratio(self) -> float:
        """Width to height ratio."""
        return self.w / self.h

    def slices(self) -> Tuple[slice, slice]:
        """Row and column slices for numpy indexing."""
        return slice(self.y, self.y + self.h), slice(self.x, self.x + self.w)

    def fits_within(self, width: int, height: int) -> bool:
        """Check the rectangle lies inside a width x height frame."""
        return (
            self.x >= 0 and self.y >= 0 and self.w >= 1 and self.h >= 1
            and self.x + self.w <= width and self.y + self.h <= height
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {'x': self.x, 'y': self.y, 'w': self.w, 'h': self.h}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value, low, high):
    return max(low, min(high, value))


def map_guide_to_frame(
    guide: Optional[GuideRegion],
    source_width: int,
    source_height: int
) -> Optional[PixelRegion]:
    """
    Convert a guide rectangle in view coordinates to source frame pixels.

    Args:
        guide: Guide box and container size, or None if not laid out yet
        source_width: Native video frame width (0 while warming up)
        source_height: Native video frame height (0 while warming up)

    Returns:
        PixelRegion fully inside the frame, or None if anything is not yet measurable
    """
    if guide is None or not guide.is_measurable():
        return None
    if not source_width or not source_height or source_width <= 0 or source_height <= 0:
        return None

    scale = min(guide.container_width / source_width, guide.container_height / source_height)
    offset_x = (guide.container_width - source_width * scale) / 2
    offset_y = (guide.container_height - source_height * scale) / 2

    x = _clamp((guide.x - offset_x) / scale, 0.0, float(source_width))
    y = _clamp((guide.y - offset_y) / scale, 0.0, float(source_height))

    # Origin keeps at least one pixel column/row so the 1px floor stays in bounds
    px = _clamp(_round_half_up(x), 0, source_width - 1)
    py = _clamp(_round_half_up(y), 0, source_height - 1)
    pw = _clamp(_round_half_up(guide.w / scale), 1, source_width - px)
    ph = _clamp(_round_half_up(guide.h / scale), 1, source_height - py)

    return PixelRegion(x=px, y=py, w=pw, h=ph)
