"""
Layer 1 — Capture Gate
Consecutive-frame debounce and capture trigger.

Phases:
    WARMING     - startup settle time not yet reached
    EVALUATING  - normal per-frame gating
    CAPTURING   - extraction in flight, new triggers suppressed

A failing frame resets the pass counter immediately. The trigger fires when
the counter reaches consecutive_frames_required; finish_capture() then resets
it and returns to EVALUATING whether or not the extraction succeeded.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from .config import GateConfig
from .quality import QualityChecks

logger = logging.getLogger(__name__)


class GatePhase(Enum):
    WARMING = "warming"
    EVALUATING = "evaluating"
    CAPTURING = "capturing"


@dataclass
class GateState:
    """Mutable per-session gate state."""
    session_start_time: float
    consecutive_pass_count: int = 0
    phase: GatePhase = GatePhase.WARMING

    @property
    def is_capturing(self) -> bool:
        return self.phase is GatePhase.CAPTURING


@dataclass(frozen=True)
class GateDecision:
    """Outcome of one gate step."""
    passed: bool
    triggered: bool
    pass_count: int
    phase: GatePhase

    def to_dict(self) -> Dict:
        return {
            'passed': self.passed,
            'triggered': self.triggered,
            'pass_count': self.pass_count,
            'phase': self.phase.value
        }


class CaptureGate:
    """Decision state machine for one capture session."""

    def __init__(self, config: GateConfig, start_time: float):
        self.config = config
        self.state = GateState(session_start_time=start_time)

    @property
    def phase(self) -> GatePhase:
        return self.state.phase

    @property
    def pass_count(self) -> int:
        return self.state.consecutive_pass_count

    @property
    def is_capturing(self) -> bool:
        return self.state.is_capturing

    def step(self, checks: QualityChecks) -> GateDecision:
        """
        Advance the gate by one analyzed frame.

        Args:
            checks: Check results for the frame

        Returns:
            GateDecision: triggered is True exactly on the frame that starts a capture
        """
        state = self.state
        passed = checks.all_pass

        if state.is_capturing:
            # No second extraction while one is outstanding
            state.consecutive_pass_count = 0
            return GateDecision(passed, False, 0, state.phase)

        state.phase = GatePhase.EVALUATING if checks.elapsed else GatePhase.WARMING

        if not passed:
            state.consecutive_pass_count = 0
            return GateDecision(False, False, 0, state.phase)

        state.consecutive_pass_count += 1
        count = state.consecutive_pass_count

        if count >= self.config.consecutive_frames_required:
            state.phase = GatePhase.CAPTURING
            logger.info(f"Capture triggered after {count} consecutive passing frames")
            return GateDecision(True, True, count, state.phase)

        return GateDecision(True, False, count, state.phase)

    def finish_capture(self, succeeded: bool):
        """Leave CAPTURING after the extraction completes, fails or is cancelled."""
        if not self.state.is_capturing:
            logger.debug("finish_capture called outside CAPTURING, ignoring")
            return
        self.state.consecutive_pass_count = 0
        self.state.phase = GatePhase.EVALUATING
        logger.debug(f"Capture finished (succeeded={succeeded}), back to evaluating")

    def reset(self, start_time: float):
        """Start over for a new stream."""
        self.state = GateState(session_start_time=start_time)
