"""
Layer 1 — Auto-Capture
Real-time frame-quality gate for passport page capture.
Maps the on-screen guide to the camera frame, scores focus, lighting,
border edges and motion on a downsampled luma buffer, and captures the
guide region once enough consecutive frames pass.
"""
from .config import GateConfig, load_gate_config
from .geometry import GuideRegion, PixelRegion, map_guide_to_frame
from .guide import StaticGuideProvider, CenteredGuideProvider
from .sampler import FrameSampler, to_luma
from .quality import QualityAssessor, MetricSet, EdgeRatios, QualityChecks
from .gate import CaptureGate, GateDecision, GatePhase, GateState
from .extractor import CaptureExtractor, CaptureArtifact
from .diagnostics import DiagnosticsReport, build_report, failure_reasons
from .session import CaptureSession, TickResult, TickStatus
from .camera import CameraHandler
from .overlay import draw_overlay

__all__ = [
    'GateConfig',
    'load_gate_config',
    'GuideRegion',
    'PixelRegion',
    'map_guide_to_frame',
    'StaticGuideProvider',
    'CenteredGuideProvider',
    'FrameSampler',
    'to_luma',
    'QualityAssessor',
    'MetricSet',
    'EdgeRatios',
    'QualityChecks',
    'CaptureGate',
    'GateDecision',
    'GatePhase',
    'GateState',
    'CaptureExtractor',
    'CaptureArtifact',
    'DiagnosticsReport',
    'build_report',
    'failure_reasons',
    'CaptureSession',
    'TickResult',
    'TickStatus',
    'CameraHandler',
    'draw_overlay'
]
