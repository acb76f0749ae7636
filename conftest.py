"""
Pytest configuration and fixtures for the auto-capture tests.
"""
import pytest
import os
import sys
from concurrent.futures import Future

import numpy as np

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from error_handlers import FrameCaptureError  # noqa: E402
from layer1_auto_capture import GateConfig, GuideRegion, StaticGuideProvider  # noqa: E402

# Analysis-width document frame: 320x457 is a 0.70 portrait page
DOC_WIDTH = 320
DOC_HEIGHT = 457


def make_document_frame(width=DOC_WIDTH, height=DOC_HEIGHT, background=200):
    """
    Synthetic passport page: bright page with two dark rules inset along
    every border, so all four border bands carry strong straight edges.
    """
    frame = np.full((height, width, 3), background, dtype=np.uint8)
    for start, thickness in ((8, 8), (20, 4)):
        frame[start:start + thickness, :] = 0
        frame[height - start - thickness:height - start, :] = 0
        frame[:, start:start + thickness] = 0
        frame[:, width - start - thickness:width - start] = 0
    return frame


class FakeVideoSource:
    """Video source returning scripted frames (last frame repeats)."""

    def __init__(self, frames, fail_on_initialize=None, fail_at=None):
        self.frames = list(frames)
        self.fail_on_initialize = fail_on_initialize
        self.fail_at = fail_at
        self.reads = 0
        self.initialized = False
        self.released = False

    def initialize(self):
        if self.fail_on_initialize is not None:
            raise self.fail_on_initialize
        self.initialized = True
        self.released = False
        return True

    def get_frame(self):
        self.reads += 1
        if self.fail_at is not None and self.reads >= self.fail_at:
            raise FrameCaptureError(reason="device unplugged")
        index = min(self.reads - 1, len(self.frames) - 1)
        return self.frames[index]

    def release(self):
        self.released = True
        self.initialized = False


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class ManualExecutor:
    """Executor that only runs submitted work when told to."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_all(self):
        pending, self.pending = self.pending, []
        for future, fn, args, kwargs in pending:
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


@pytest.fixture
def document_frame():
    """Frame that passes every per-image check."""
    return make_document_frame()


@pytest.fixture
def blank_frame():
    """Evenly lit frame with no detail."""
    return np.full((DOC_HEIGHT, DOC_WIDTH, 3), 200, dtype=np.uint8)


@pytest.fixture
def dark_frame():
    """All-black frame."""
    return np.zeros((DOC_HEIGHT, DOC_WIDTH, 3), dtype=np.uint8)


@pytest.fixture
def document_guide():
    """Guide covering the whole document frame at 1:1 display scale."""
    return GuideRegion(0, 0, DOC_WIDTH, DOC_HEIGHT, DOC_WIDTH, DOC_HEIGHT)


@pytest.fixture
def guide_provider(document_guide):
    return StaticGuideProvider(document_guide)


@pytest.fixture
def fast_config():
    """Short debounce, no settle time."""
    return GateConfig(
        consecutive_frames_required=3,
        sharpness_min=30,
        fill_min=0.1,
        motion_max=10,
        edge_ratio_min=0.1,
        min_elapsed_seconds=0
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def executor():
    return ManualExecutor()


@pytest.fixture
def make_source():
    """Factory for scripted video sources."""
    return FakeVideoSource


@pytest.fixture
def app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def coordinator():
    """Service coordinator, reset after each test."""
    from app import coordinator as service_coordinator
    yield service_coordinator
    service_coordinator.stop()
    service_coordinator.latest_capture = None
    service_coordinator.last_result = None
    service_coordinator.update_guide(None)
