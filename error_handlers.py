"""
Auto-Capture Errors
Error types raised by the capture gate and JSON error payloads for the service.

Guide and frame conditions (nothing laid out yet, thresholds not met) are not
errors and never appear here. Extraction errors are recoverable; video source
errors end the session.
"""
import logging

logger = logging.getLogger(__name__)


class AutoCaptureError(Exception):
    """Base exception for auto-capture errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self):
        """JSON payload for API responses"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Video source errors (fatal to the session)
class CameraError(AutoCaptureError):
    """Video source errors"""
    pass


class CameraNotFoundError(CameraError):
    """No video device at the configured index"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"No video device at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check the camera cable and CAMERA_INDEX"
            }
        )


class CameraInitError(CameraError):
    """Video device exists but could not be opened"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Could not open video device /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check device permissions; another process may hold the camera"
            }
        )


class CameraNotInitializedError(CameraError):
    """Frames requested before the source was opened"""
    def __init__(self):
        super().__init__(
            message="No capture session is running",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "POST /start_camera first"
            }
        )


class FrameCaptureError(CameraError):
    """Video source stopped delivering frames"""
    def __init__(self, reason=None):
        super().__init__(
            message="Video source stopped delivering frames",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "reason": reason,
                "suggestion": "Reconnect the camera and start a new session"
            }
        )


# Capture extraction errors (recoverable, the session keeps running)
class ExtractionError(AutoCaptureError):
    """Capture extraction errors"""
    pass


class EmptyFrameError(ExtractionError):
    """Snapshot frame has no pixels"""
    def __init__(self):
        super().__init__(
            message="Cannot extract capture from an empty frame",
            error_code="EMPTY_FRAME",
            details={
                "suggestion": "Wait for the video source to deliver frames"
            }
        )


class RegionOutOfBoundsError(ExtractionError):
    """Capture region does not fit inside the snapshot frame"""
    def __init__(self, region, frame_size):
        super().__init__(
            message=f"Capture region {region} exceeds frame {frame_size[0]}x{frame_size[1]}",
            error_code="REGION_OUT_OF_BOUNDS",
            details={
                "region": region,
                "frame_width": frame_size[0],
                "frame_height": frame_size[1]
            }
        )


class ImageEncodeError(ExtractionError):
    """JPEG encoding of the capture failed"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to encode captured image",
            error_code="IMAGE_ENCODE_FAILED",
            details={
                "reason": str(reason) if reason is not None else None,
                "suggestion": "The session will retry on the next stable frames"
            }
        )


# Configuration errors
class ConfigError(AutoCaptureError):
    """Invalid auto-capture configuration"""
    def __init__(self, field, value, reason):
        super().__init__(
            message=f"Invalid value for {field}: {value!r} ({reason})",
            error_code="INVALID_CONFIG",
            details={
                "field": field,
                "value": repr(value),
                "reason": reason
            }
        )


# Session lifecycle errors
class SessionError(AutoCaptureError):
    """Capture session errors"""
    pass


class SessionNotActiveError(SessionError):
    """Ticking a session that is not open"""
    def __init__(self):
        super().__init__(
            message="Capture session is not active",
            error_code="SESSION_NOT_ACTIVE",
            details={
                "suggestion": "Open the session (or call /start_camera) before ticking"
            }
        )


def handle_error(error, log_message=None):
    """
    Turn an exception into a JSON error payload and log it.

    Args:
        error: Exception raised while serving a request
        log_message: Extra context to log first

    Returns:
        dict: Payload for jsonify()
    """
    if log_message:
        logger.error(log_message)

    if not isinstance(error, AutoCaptureError):
        logger.exception(f"Unhandled {type(error).__name__}: {error}")
        return {
            "success": False,
            "error": "Internal error in the auto-capture service",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }

    logger.error(f"[{error.error_code}] {error.message}")
    if error.details:
        logger.debug(f"  details: {error.details}")
    return error.to_dict()
