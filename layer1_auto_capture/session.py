"""
Layer 1 — Auto-Capture Session
Runs the per-frame pipeline for one video session:

    guide region -> pixel region -> luma buffer -> metrics -> gate -> capture

One tick is one pass of that pipeline. The session owns the gate state and
the previous luma buffer; both are dropped when the session closes.

Extraction runs inline by default. When an executor is supplied it is
submitted there instead, and later ticks keep producing live diagnostics
while the gate stays in CAPTURING until the result is collected.
"""
import time
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import numpy as np

from error_handlers import (
    AutoCaptureError,
    CameraError,
    ExtractionError,
    SessionNotActiveError,
)
from .config import GateConfig
from .diagnostics import DiagnosticsReport, build_report
from .extractor import CaptureArtifact, CaptureExtractor
from .gate import CaptureGate, GatePhase
from .geometry import PixelRegion, map_guide_to_frame
from .quality import QualityAssessor
from .sampler import FrameSampler

logger = logging.getLogger(__name__)


class TickStatus(Enum):
    SKIPPED = "skipped"                  # Guide or frame not measurable yet
    EVALUATED = "evaluated"              # Metrics computed, no capture event
    CAPTURE_PENDING = "capture_pending"  # Extraction submitted to the executor
    CAPTURED = "captured"                # Artifact delivered
    CAPTURE_FAILED = "capture_failed"    # Extraction failed, session continues
    SOURCE_LOST = "source_lost"          # Video source failed, session closed


@dataclass
class TickResult:
    """Outcome of one tick."""
    status: TickStatus
    region: Optional[PixelRegion] = None
    report: Optional[DiagnosticsReport] = None
    artifact: Optional[CaptureArtifact] = None
    error: Optional[AutoCaptureError] = None
    frame: Optional[np.ndarray] = None
    # An extraction is still in flight after this tick
    pending: bool = False

    @property
    def fatal(self) -> bool:
        return self.status is TickStatus.SOURCE_LOST

    def to_dict(self) -> Dict:
        """Convert to dictionary for API responses."""
        result = {
            'status': self.status.value,
            'region': self.region.to_dict() if self.region else None,
            'report': self.report.to_dict() if self.report else None,
            'capture': self.artifact.to_dict() if self.artifact else None,
            'pending': self.pending,
        }
        if self.error is not None:
            result['error'] = self.error.to_dict()
        return result


class CaptureSession:
    """
    One auto-capture session over a video source.

    Usage:
        with CaptureSession(camera, guide_provider, config, on_capture=handler) as session:
            while session.is_active:
                result = session.tick()
    """

    def __init__(
        self,
        source,
        guide_provider,
        config: Optional[GateConfig] = None,
        extractor: Optional[CaptureExtractor] = None,
        on_capture: Optional[Callable[[CaptureArtifact], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        executor=None,
        assessor: Optional[QualityAssessor] = None
    ):
        """
        Initialize capture session.

        Args:
            source: Video source (initialize / get_frame / release)
            guide_provider: Object with get_guide_region()
            config: Gate configuration (uses defaults if not provided)
            extractor: Capture extractor (JPEG at config quality by default)
            on_capture: Receives each CaptureArtifact
            clock: Monotonic time source in seconds
            executor: Optional concurrent.futures executor for extraction
            assessor: Quality assessor (built from config by default)
        """
        self.config = config or GateConfig()
        self.source = source
        self.guide_provider = guide_provider
        self.extractor = extractor or CaptureExtractor(self.config.jpeg_quality)
        self.assessor = assessor or QualityAssessor(self.config)
        self.on_capture = on_capture
        self.clock = clock
        self.executor = executor

        self.sampler = FrameSampler(self.config.analysis_width)
        self.gate: Optional[CaptureGate] = None
        self.capture_count = 0

        self._previous_luma: Optional[np.ndarray] = None
        self._pending: Optional[Future] = None
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def phase(self) -> Optional[GatePhase]:
        return self.gate.phase if self.gate else None

    @property
    def has_pending_capture(self) -> bool:
        return self._pending is not None

    def open(self) -> "CaptureSession":
        """
        Acquire the video source and start a fresh gate.

        Raises:
            CameraError: If the video source cannot be acquired
        """
        if self._active:
            return self

        self.source.initialize()

        self.gate = CaptureGate(self.config, self.clock())
        self._previous_luma = None
        self.sampler.reset()
        self._active = True

        logger.info("Capture session opened")
        logger.debug(f"Gate config: {self.config}")
        return self

    def close(self):
        """Release the source and discard all session state."""
        if not self._active:
            return

        if self._pending is not None:
            # A cancelled extraction never emits an artifact
            self._pending.cancel()
            self._pending = None
            logger.info("Pending capture cancelled")

        self._active = False
        self.gate = None
        self._previous_luma = None
        self.sampler.reset()
        self.source.release()
        logger.info(f"Capture session closed after {self.capture_count} capture(s)")

    def tick(self) -> TickResult:
        """
        Run the pipeline once on the source's current frame.

        Returns:
            TickResult: Never raises for unmeasurable input or failed checks;
            extraction and source failures are returned in result.error

        Raises:
            SessionNotActiveError: If the session is not open
        """
        if not self._active:
            raise SessionNotActiveError()

        completed = self._poll_pending()
        if completed is not None and not self._active:
            # Single-capture mode closed the session
            return completed

        try:
            frame = self.source.get_frame()
        except CameraError as e:
            logger.error(f"Video source lost: {e.message}")
            self.close()
            return self._merge(TickResult(TickStatus.SOURCE_LOST, error=e), completed)

        if frame is None or frame.size == 0:
            return self._merge(TickResult(TickStatus.SKIPPED), completed)

        height, width = frame.shape[:2]
        region = map_guide_to_frame(self.guide_provider.get_guide_region(), width, height)
        if region is None:
            return self._merge(TickResult(TickStatus.SKIPPED, frame=frame), completed)

        luma = self.sampler.sample(frame, region)
        elapsed = self.clock() - self.gate.state.session_start_time
        metrics = self.assessor.assess(luma, self._previous_luma, region, elapsed)
        self._previous_luma = luma

        checks = self.assessor.check(metrics)
        decision = self.gate.step(checks)
        report = build_report(metrics, checks, decision, self.config)

        logger.debug(
            f"Tick: passed={decision.passed} count={decision.pass_count}/"
            f"{self.config.consecutive_frames_required} phase={decision.phase.value} "
            f"sharpness={metrics.sharpness:.1f} fill={metrics.fill_ratio:.3f} "
            f"motion={metrics.motion:.2f} edge_min={metrics.edge.minimum():.3f}"
        )

        result = TickResult(TickStatus.EVALUATED, region=region, report=report, frame=frame)

        if decision.triggered:
            if self.executor is not None:
                # The source owns the frame buffer; hand the worker a copy
                self._pending = self.executor.submit(self.extractor.extract, frame.copy(), region)
                result.status = TickStatus.CAPTURE_PENDING
            else:
                completed = self._run_extraction(frame, region)

        return self._merge(result, completed)

    def _run_extraction(self, frame: np.ndarray, region: PixelRegion) -> TickResult:
        try:
            artifact = self.extractor.extract(frame, region)
        except ExtractionError as e:
            return self._extraction_failed(e, region)
        except Exception:
            self.gate.finish_capture(False)
            raise
        return self._deliver(artifact)

    def _poll_pending(self) -> Optional[TickResult]:
        future = self._pending
        if future is None or not future.done():
            return None

        self._pending = None
        try:
            artifact = future.result()
        except ExtractionError as e:
            return self._extraction_failed(e, None)
        except Exception:
            self.gate.finish_capture(False)
            raise
        return self._deliver(artifact)

    def _extraction_failed(self, error: ExtractionError, region: Optional[PixelRegion]) -> TickResult:
        self.gate.finish_capture(False)
        logger.warning(f"Capture extraction failed: {error.error_code}: {error.message}")
        return TickResult(TickStatus.CAPTURE_FAILED, region=region, error=error)

    def _deliver(self, artifact: CaptureArtifact) -> TickResult:
        self.gate.finish_capture(True)
        self.capture_count += 1
        logger.info(f"Capture #{self.capture_count} delivered ({artifact.timestamp})")

        if self.on_capture is not None:
            self.on_capture(artifact)

        if not self.config.repeat_capture:
            logger.info("Single-capture mode: ending session")
            self.close()

        return TickResult(TickStatus.CAPTURED, region=artifact.region, artifact=artifact)

    def _merge(self, result: TickResult, completed: Optional[TickResult]) -> TickResult:
        """
        Fold a capture outcome collected this tick into the tick's result.

        The collected outcome wins the status, so a tick that also submits a
        new extraction reports it through result.pending.
        """
        result.pending = self._pending is not None
        if completed is None:
            return result
        if result.status is not TickStatus.SOURCE_LOST:
            result.status = completed.status
            result.error = completed.error
        result.artifact = completed.artifact
        if result.region is None:
            result.region = completed.region
        return result

    def __enter__(self):
        """Context manager entry."""
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False
