"""
Layer 1 — Camera Handler
Video source for the capture session, backed by OpenCV's V4L2 capture.

A video source needs three calls:
    initialize()  - acquire the device (raises CameraError on failure)
    get_frame()   - current BGR frame, None while the stream is warming up
    release()     - give the device back
"""
import cv2
import logging
import os
import threading
from typing import Dict, Optional, Tuple
import numpy as np

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
)

logger = logging.getLogger(__name__)

# Settings pushed to the driver, in the order V4L2 expects them
_CAPTURE_PROPERTIES = (
    ('codec', cv2.CAP_PROP_FOURCC),
    ('width', cv2.CAP_PROP_FRAME_WIDTH),
    ('height', cv2.CAP_PROP_FRAME_HEIGHT),
    ('fps', cv2.CAP_PROP_FPS),
    ('buffer_size', cv2.CAP_PROP_BUFFERSIZE),
)


class CameraHandler:
    """
    USB document camera. Keeps a one-frame driver buffer so each tick
    analyses the newest frame rather than a queued one.
    """

    DEFAULT_CONFIG = {
        'width': 1920,          # Preferred capture resolution
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,
        'warmup_reads': 3,      # Empty reads tolerated before the source counts as lost
    }

    def __init__(self, camera_index: int = 2, config: Optional[Dict] = None):
        """
        Args:
            camera_index: /dev/videoN index
            config: Overrides for DEFAULT_CONFIG
        """
        self.camera_index = camera_index
        self.config = dict(self.DEFAULT_CONFIG)
        self.config.update(config or {})

        self.capture: Optional[cv2.VideoCapture] = None
        self._lock = threading.Lock()
        self._empty_reads = 0

        # Reported by the driver, then by each delivered frame
        self.frame_width = 0
        self.frame_height = 0

    @property
    def device_path(self) -> str:
        return f"/dev/video{self.camera_index}"

    def _check_device_exists(self) -> bool:
        if os.path.exists(self.device_path):
            return True
        logger.error(f"{self.device_path} does not exist")
        return False

    def initialize(self) -> bool:
        """
        Open the device and apply the capture settings.

        Raises:
            CameraNotFoundError: No device node at camera_index
            CameraInitError: The device could not be opened
        """
        with self._lock:
            if self.capture is not None:
                return True

            if not self._check_device_exists():
                raise CameraNotFoundError(self.camera_index)

            try:
                capture = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)
            except cv2.error as e:
                raise CameraInitError(self.camera_index, reason=str(e))

            if not capture.isOpened():
                raise CameraInitError(self.camera_index, reason="device refused to open")

            self._apply_settings(capture)
            self.frame_width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            self.frame_height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
            self._empty_reads = 0
            self.capture = capture

        logger.info(f"Opened {self.device_path} at {self.frame_width}x{self.frame_height}")
        return True

    def _apply_settings(self, capture):
        for key, prop in _CAPTURE_PROPERTIES:
            value = self.config[key]
            if key == 'codec':
                value = cv2.VideoWriter_fourcc(*value)
            if not capture.set(prop, value):
                logger.debug(f"Driver ignored {key}={self.config[key]}")

    def get_frame(self) -> Optional[np.ndarray]:
        """
        Read the newest frame.

        Returns:
            BGR frame, or None for an empty read during warm-up

        Raises:
            CameraNotInitializedError: initialize() has not succeeded
            FrameCaptureError: More than warmup_reads empty reads in a row
        """
        with self._lock:
            if self.capture is None:
                raise CameraNotInitializedError()

            ok, frame = self.capture.read()
            if ok and frame is not None:
                self._empty_reads = 0
                self.frame_height, self.frame_width = frame.shape[:2]
                return frame

            self._empty_reads += 1
            if self._empty_reads > self.config['warmup_reads']:
                raise FrameCaptureError(reason=f"{self._empty_reads} empty reads in a row")
            return None

    def get_resolution(self) -> Tuple[int, int]:
        """(width, height); (0, 0) until the device reports a size."""
        return self.frame_width, self.frame_height

    def is_opened(self) -> bool:
        return self.capture is not None and self.capture.isOpened()

    def release(self):
        with self._lock:
            capture, self.capture = self.capture, None
        if capture is not None:
            capture.release()
            logger.info(f"Released {self.device_path}")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
