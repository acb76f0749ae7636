"""
Layer 1 — Guide Region Providers
Supply the guide box position each tick.

The session only needs an object with get_guide_region() returning a
GuideRegion, or None while the viewfinder is not laid out.
"""
import logging
import threading
from typing import Optional

from .geometry import GuideRegion

logger = logging.getLogger(__name__)

# Portrait passport page, width:height ~ 88:125
GUIDE_ASPECT_RATIO = 0.70


class StaticGuideProvider:
    """
    Guide region reported by the client that renders the viewfinder.

    The renderer calls update() whenever its layout changes; ticks read the
    latest value. Access is locked because updates arrive on request threads.
    """

    def __init__(self, guide: Optional[GuideRegion] = None):
        self._guide = guide
        self._lock = threading.Lock()

    def update(self, guide: Optional[GuideRegion]):
        """Replace the current guide region (None = not laid out)."""
        with self._lock:
            self._guide = guide
        logger.debug(f"Guide region updated: {guide}")

    def clear(self):
        self.update(None)

    def get_guide_region(self) -> Optional[GuideRegion]:
        with self._lock:
            return self._guide


class CenteredGuideProvider:
    """
    Guide box centered in the container, sized the way the kiosk viewfinder
    draws it: height = min(85% of container height, 95% of container width),
    width = aspect_ratio * height.
    """

    def __init__(
        self,
        container_width: float,
        container_height: float,
        aspect_ratio: float = GUIDE_ASPECT_RATIO,
        height_fraction: float = 0.85,
        width_fraction: float = 0.95
    ):
        self.container_width = container_width
        self.container_height = container_height
        self.aspect_ratio = aspect_ratio
        self.height_fraction = height_fraction
        self.width_fraction = width_fraction

    def get_guide_region(self) -> Optional[GuideRegion]:
        cw, ch = self.container_width, self.container_height
        if cw <= 0 or ch <= 0:
            return None

        h = min(self.height_fraction * ch, self.width_fraction * cw)
        w = h * self.aspect_ratio
        if w > cw:
            # Very narrow container: fit width instead
            w = cw
            h = w / self.aspect_ratio

        return GuideRegion(
            x=(cw - w) / 2,
            y=(ch - h) / 2,
            w=w,
            h=h,
            container_width=cw,
            container_height=ch
        )
