"""
Layer 1 — Diagnostics
Human-readable reasons why the current frame did not pass the gate.
Read-only with respect to the capture decision.
"""
from dataclasses import dataclass
from typing import Dict, List

from .config import GateConfig
from .gate import GateDecision
from .quality import MetricSet, QualityChecks

REASON_STABILIZING = "Stabilizing camera..."
REASON_OUT_OF_FOCUS = "Out of focus"
REASON_TOO_DARK = "Too dark"
REASON_MOTION = "Motion detected"
REASON_EDGES = "Edges not detected"
REASON_ASPECT = "Aspect mismatch"

STATUS_READY = "Ready - hold still"
REASON_SEPARATOR = " · "


def failure_reasons(checks: QualityChecks) -> List[str]:
    """Failed checks as messages, in display order."""
    reasons = []
    if not checks.elapsed:
        reasons.append(REASON_STABILIZING)
    if not checks.focus:
        reasons.append(REASON_OUT_OF_FOCUS)
    if not checks.fill:
        reasons.append(REASON_TOO_DARK)
    if not checks.motion:
        reasons.append(REASON_MOTION)
    if not checks.edges:
        reasons.append(REASON_EDGES)
    if not checks.aspect:
        reasons.append(REASON_ASPECT)
    return reasons


@dataclass(frozen=True)
class DiagnosticsReport:
    """Snapshot of one tick for display or debugging."""
    passed: bool
    reasons: List[str]
    metrics: MetricSet
    checks: QualityChecks
    pass_count: int
    frames_required: int
    phase: str
    triggered: bool = False

    @property
    def status_text(self) -> str:
        if self.passed:
            return STATUS_READY
        return REASON_SEPARATOR.join(self.reasons)

    @property
    def progress(self) -> float:
        return min(1.0, self.pass_count / self.frames_required)

    def to_dict(self) -> Dict:
        return {
            'passed': self.passed,
            'reasons': list(self.reasons),
            'status_text': self.status_text,
            'metrics': self.metrics.to_dict(),
            'checks': self.checks.to_dict(),
            'pass_count': self.pass_count,
            'frames_required': self.frames_required,
            'progress': round(self.progress, 3),
            'phase': self.phase,
            'triggered': self.triggered
        }


def build_report(
    metrics: MetricSet,
    checks: QualityChecks,
    decision: GateDecision,
    config: GateConfig
) -> DiagnosticsReport:
    return DiagnosticsReport(
        passed=checks.all_pass,
        reasons=failure_reasons(checks),
        metrics=metrics,
        checks=checks,
        pass_count=decision.pass_count,
        frames_required=config.consecutive_frames_required,
        phase=decision.phase.value,
        triggered=decision.triggered
    )
