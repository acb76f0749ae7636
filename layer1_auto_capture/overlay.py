"""
Layer 1 — Preview Overlay
Draws the guide region, gate status and stability progress on a preview frame.
"""
import cv2
import numpy as np
from typing import Optional

from .diagnostics import DiagnosticsReport, REASON_SEPARATOR
from .geometry import PixelRegion

COLOR_PASS = (0, 200, 0)
COLOR_FAIL = (0, 0, 230)
COLOR_IDLE = (50, 50, 50)
COLOR_TEXT = (255, 255, 255)

IDLE_TEXT = "Place the passport page inside the frame"


def draw_overlay(
    frame: np.ndarray,
    region: Optional[PixelRegion],
    report: Optional[DiagnosticsReport]
) -> np.ndarray:
    """
    Draw guide and status on a copy of frame.

    Args:
        frame: BGR frame (left untouched)
        region: Mapped guide region, None if not measurable
        report: Diagnostics for this tick, None if the tick was skipped

    Returns:
        numpy.ndarray: Annotated copy
    """
    overlay_frame = frame.copy()
    if overlay_frame.ndim == 2:
        overlay_frame = cv2.cvtColor(overlay_frame, cv2.COLOR_GRAY2BGR)

    h, w = overlay_frame.shape[:2]
    thickness = max(2, int(round(min(w, h) / 200)))

    if report is None:
        status_text = IDLE_TEXT
        color = COLOR_IDLE
    else:
        # Hershey fonts are ASCII only
        status_text = report.status_text.replace(REASON_SEPARATOR, " | ")
        color = COLOR_PASS if report.passed else COLOR_FAIL

    if region is not None:
        cv2.rectangle(
            overlay_frame,
            (region.x, region.y),
            (region.x + region.w - 1, region.y + region.h - 1),
            color,
            thickness
        )

    # Status text with background
    scale = max(0.5, min(w, h) / 1000)
    text_size = cv2.getTextSize(status_text, cv2.FONT_HERSHEY_SIMPLEX, scale, 2)[0]
    cv2.rectangle(overlay_frame, (10, 10), (text_size[0] + 30, text_size[1] + 30), color, -1)
    cv2.putText(overlay_frame, status_text, (20, text_size[1] + 20),
                cv2.FONT_HERSHEY_SIMPLEX, scale, COLOR_TEXT, 2)

    # Progress bar while the pass count builds up
    if report is not None and 0 < report.pass_count < report.frames_required:
        bar_w, bar_h = min(200, w - 20), 8
        bar_x = (w - bar_w) // 2
        bar_y = h - 40
        filled = int(bar_w * report.progress)
        cv2.rectangle(overlay_frame, (bar_x, bar_y), (bar_x + bar_w, bar_y + bar_h), (100, 100, 100), -1)
        cv2.rectangle(overlay_frame, (bar_x, bar_y), (bar_x + filled, bar_y + bar_h), color, -1)

    return overlay_frame
