"""
Passport Auto-Capture Service
Thin coordinator around one auto-capture session.

Provides REST API for:
- Starting / stopping the camera session
- Live MJPEG preview with guide and status overlay
- Gate diagnostics for the current frame
- Reporting the viewfinder's guide box layout
- Fetching the latest automatic capture
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import cv2
import numpy as np
import time
import logging
import math
import os
import threading
from typing import Optional

from layer1_auto_capture import (
    CameraHandler,
    CaptureSession,
    CenteredGuideProvider,
    FrameSampler,
    GateConfig,
    GuideRegion,
    PixelRegion,
    QualityAssessor,
    StaticGuideProvider,
    TickResult,
    draw_overlay,
    failure_reasons,
    load_gate_config,
)
from layer1_auto_capture.diagnostics import REASON_MOTION, REASON_STABILIZING

# Import error handling
from error_handlers import (
    AutoCaptureError,
    CameraError,
    CameraNotInitializedError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for the viewfinder page served from the kiosk
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 2))
CAMERA_WIDTH = int(os.environ.get('CAMERA_WIDTH', 1920))
CAMERA_HEIGHT = int(os.environ.get('CAMERA_HEIGHT', 1080))
GATE_CONFIG = load_gate_config()

GUIDE_FIELDS = ('x', 'y', 'w', 'h', 'container_width', 'container_height')


class AutoCaptureCoordinator:
    """
    Owns the capture session for the service.
    Ticks are serialised with a lock; request threads never run two at once.
    """

    def __init__(self, camera_index, camera_width, camera_height, gate_config):
        logger.info("Initializing AutoCaptureCoordinator")

        self.camera_index = camera_index
        self.camera_width = camera_width
        self.camera_height = camera_height
        self.gate_config = gate_config

        # Until a client reports its layout, assume the preview fills a
        # container the size of the camera frame with the guide centered
        self.default_guide = CenteredGuideProvider(camera_width, camera_height)
        self.guide_provider = StaticGuideProvider(self.default_guide.get_guide_region())

        self.session: Optional[CaptureSession] = None
        self.latest_capture = None
        self.last_result: Optional[TickResult] = None
        self._lock = threading.RLock()

        logger.info("AutoCaptureCoordinator initialized successfully")

    @property
    def is_running(self):
        return self.session is not None and self.session.is_active

    def start(self, source=None, config: Optional[GateConfig] = None):
        """
        Open a capture session.

        Args:
            source: Video source (camera at camera_index by default)
            config: Gate configuration override

        Raises:
            CameraError: If the camera cannot be acquired
        """
        with self._lock:
            if self.is_running:
                logger.debug("Session already running")
                return True

            if source is None:
                source = CameraHandler(
                    camera_index=self.camera_index,
                    config={'width': self.camera_width, 'height': self.camera_height}
                )

            session = CaptureSession(
                source,
                self.guide_provider,
                config or self.gate_config,
                on_capture=self._store_capture
            )
            session.open()
            self.session = session
            self.last_result = None
            return True

    def stop(self):
        """Close the capture session and release the camera."""
        with self._lock:
            if self.session is not None:
                self.session.close()
            self.session = None

    def tick(self) -> TickResult:
        """
        Run one tick of the session.

        Raises:
            CameraNotInitializedError: If no session is running
        """
        with self._lock:
            if not self.is_running:
                raise CameraNotInitializedError()
            result = self.session.tick()
            self.last_result = result
            if result.fatal:
                logger.error(f"Session ended: {result.error.message}")
            return result

    def update_guide(self, guide: Optional[GuideRegion]):
        """Set the client-measured guide box, or restore the centered default."""
        if guide is None:
            guide = self.default_guide.get_guide_region()
        self.guide_provider.update(guide)

    def _store_capture(self, artifact):
        logger.info(f"Capture received: {artifact.to_dict()}")
        self.latest_capture = artifact

    def status(self):
        with self._lock:
            result = self.last_result
            return {
                "running": self.is_running,
                "phase": self.session.phase.value if self.is_running else None,
                "last_tick": result.to_dict() if result is not None else None,
                "captures": self.session.capture_count if self.session else 0
            }


def parse_guide(data) -> GuideRegion:
    """
    Build a GuideRegion from a JSON payload.

    Raises:
        ValueError: If a field is missing, not numeric or not finite
    """
    try:
        values = {name: float(data[name]) for name in GUIDE_FIELDS}
    except KeyError as e:
        raise ValueError(f"Missing field: {e.args[0]}")
    except (TypeError, ValueError):
        raise ValueError("Guide fields must be numbers")
    # Flask's JSON parser accepts Infinity and NaN
    for name, value in values.items():
        if not math.isfinite(value):
            raise ValueError(f"Guide field {name} must be finite")
    return GuideRegion(**values)


# Initialize coordinator
logger.info("Starting application initialization")

coordinator = AutoCaptureCoordinator(
    camera_index=CAMERA_INDEX,
    camera_width=CAMERA_WIDTH,
    camera_height=CAMERA_HEIGHT,
    gate_config=GATE_CONFIG
)


# ============================================================================
# Flask Routes - Session control
# ============================================================================

@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Open the capture session on the configured camera"""
    logger.info("Start camera request received")

    try:
        success = coordinator.start()
        logger.info(f"Camera start result: {success}")
        return jsonify({"success": success})
    except CameraError as e:
        return jsonify(handle_error(e))
    except Exception as e:
        return jsonify(handle_error(e, "Unexpected failure opening the session")), 500


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop camera"""
    logger.info("Stop camera request received")
    coordinator.stop()
    return jsonify({"success": True})


@app.route('/guide', methods=['POST'])
def update_guide():
    """Receive the guide box layout measured by the viewfinder"""
    if not request.get_data():
        coordinator.update_guide(None)
        return jsonify({"success": True, "guide": "centered"})

    data = request.get_json(silent=True)
    if data is None:
        return jsonify({
            "success": False,
            "error": "Request body must be JSON",
            "error_code": "INVALID_JSON"
        }), 400

    if not data:
        coordinator.update_guide(None)
        return jsonify({"success": True, "guide": "centered"})

    try:
        guide = parse_guide(data)
    except ValueError as e:
        return jsonify({
            "success": False,
            "error": str(e),
            "error_code": "INVALID_GUIDE"
        }), 400

    coordinator.update_guide(guide)
    return jsonify({"success": True, "guide": data})


# ============================================================================
# Flask Routes - Live gating
# ============================================================================

@app.route('/video_feed')
def video_feed():
    """MJPEG stream; every streamed frame is one gate tick"""
    logger.info("Video feed requested")

    if not coordinator.is_running:
        return jsonify(handle_error(CameraNotInitializedError())), 409

    def generate():
        logger.info("Starting video stream generator with overlay")
        frame_count = 0
        while coordinator.is_running:
            try:
                result = coordinator.tick()
            except AutoCaptureError as e:
                logger.info(f"Video feed stopping: {e.message}")
                break

            if result.frame is None:
                time.sleep(0.05)
                continue

            frame = draw_overlay(result.frame, result.region, result.report)
            ok, buffer = cv2.imencode('.jpg', frame)
            if not ok:
                continue

            frame_count += 1
            if frame_count % 30 == 0 and result.report is not None:
                logger.debug(f"  Gate status: {result.report.status_text}")

            yield (b'--frame\r\n'
                   b'Content-Type: image/jpeg\r\n\r\n' + buffer.tobytes() + b'\r\n')

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


@app.route('/tick', methods=['POST'])
def tick():
    """Run one gate tick (for clients that drive the frame cadence)"""
    try:
        result = coordinator.tick()
    except AutoCaptureError as e:
        return jsonify(handle_error(e)), 409

    response = {"success": not result.fatal, "tick": result.to_dict()}
    return jsonify(response)


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Diagnostics from the most recent tick"""
    status = coordinator.status()
    return jsonify({
        "success": status["running"],
        "detection": status
    })


@app.route('/capture/latest', methods=['GET'])
def latest_capture():
    """Latest automatic capture as JPEG"""
    artifact = coordinator.latest_capture
    if artifact is None:
        return jsonify({
            "success": False,
            "error": "No capture available yet",
            "error_code": "NO_CAPTURE"
        }), 404
    return Response(artifact.pixels, mimetype=artifact.mime_type)


@app.route('/capture/latest/info', methods=['GET'])
def latest_capture_info():
    """Metadata of the latest automatic capture"""
    artifact = coordinator.latest_capture
    if artifact is None:
        return jsonify({
            "success": False,
            "error": "No capture available yet",
            "error_code": "NO_CAPTURE"
        }), 404
    return jsonify({"success": True, "capture": artifact.to_dict()})


# ============================================================================
# API Endpoints for Microservice Communication
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "auto-capture-service",
        "version": "1.0.0"
    })


@app.route("/api/evaluate", methods=["POST"])
def api_evaluate():
    """
    Score a single uploaded image with the gate's per-image checks.

    The whole image is treated as the guide region. Motion and the startup
    delay need a live stream, so they are left out of the verdict.

    Request:
        - multipart/form-data with 'image' field

    Response:
        {
            "success": true,
            "passed": false,
            "reasons": ["Out of focus"],
            "metrics": { ... },
            "region": {"x": 0, "y": 0, "w": 640, "h": 914}
        }
    """
    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    data = np.frombuffer(request.files['image'].read(), dtype=np.uint8)
    frame = cv2.imdecode(data, cv2.IMREAD_COLOR) if data.size else None
    if frame is None:
        return jsonify({
            "success": False,
            "error": "Could not read image file",
            "error_code": "INVALID_IMAGE"
        }), 400

    config = coordinator.gate_config
    h, w = frame.shape[:2]
    region = PixelRegion(x=0, y=0, w=w, h=h)

    assessor = QualityAssessor(config)
    luma = FrameSampler(config.analysis_width).sample(frame, region)
    metrics = assessor.assess(luma, None, region)
    checks = assessor.check(metrics)

    passed = checks.focus and checks.fill and checks.edges and checks.aspect
    reasons = [
        reason for reason in failure_reasons(checks)
        if reason not in (REASON_STABILIZING, REASON_MOTION)
    ]

    logger.info(f"Evaluated uploaded image {w}x{h}: passed={passed}")
    return jsonify({
        "success": True,
        "passed": passed,
        "reasons": reasons,
        "metrics": metrics.to_dict(),
        "region": region.to_dict()
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    return jsonify({
        "success": True,
        "camera_index": coordinator.camera_index,
        "session_running": coordinator.is_running,
        "gate_config": coordinator.gate_config.to_dict(),
        "endpoints": {
            "health": "/health",
            "evaluate": "/api/evaluate",
            "start_camera": "/start_camera",
            "stop_camera": "/stop_camera",
            "guide": "/guide",
            "tick": "/tick",
            "video_feed": "/video_feed",
            "detection_status": "/detection_status",
            "latest_capture": "/capture/latest"
        }
    })


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("PASSPORT AUTO-CAPTURE SERVICE")
    print("=" * 60)
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{CAMERA_INDEX}")
    print(f"  Resolution: {CAMERA_WIDTH}x{CAMERA_HEIGHT}")
    print("\n📡 API Endpoints:")
    print("  POST /start_camera     - Open capture session")
    print("  POST /stop_camera      - Close capture session")
    print("  POST /guide            - Report guide box layout")
    print("  GET  /video_feed       - MJPEG preview (drives the gate)")
    print("  GET  /detection_status - Last gate diagnostics")
    print("  GET  /capture/latest   - Latest capture (JPEG)")
    print("  POST /api/evaluate     - Score an uploaded image")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, debug=True, threaded=True)
