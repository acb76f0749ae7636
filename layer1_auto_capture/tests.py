"""
Tests for the Layer 1 auto-capture gate.
"""
import dataclasses

import cv2
import numpy as np
import pytest

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    ConfigError,
    EmptyFrameError,
    FrameCaptureError,
    ImageEncodeError,
    RegionOutOfBoundsError,
    SessionNotActiveError,
)
from layer1_auto_capture import (
    CameraHandler,
    CaptureExtractor,
    CaptureGate,
    CaptureSession,
    CenteredGuideProvider,
    FrameSampler,
    GateConfig,
    GatePhase,
    GuideRegion,
    PixelRegion,
    QualityAssessor,
    QualityChecks,
    StaticGuideProvider,
    TickStatus,
    build_report,
    draw_overlay,
    failure_reasons,
    load_gate_config,
    map_guide_to_frame,
    to_luma,
)
from layer1_auto_capture import overlay
from layer1_auto_capture.diagnostics import (
    REASON_ASPECT,
    REASON_EDGES,
    REASON_MOTION,
    REASON_OUT_OF_FOCUS,
    REASON_STABILIZING,
    REASON_TOO_DARK,
    STATUS_READY,
)
from layer1_auto_capture.quality import (
    MOTION_SENTINEL,
    aspect_ok,
    compute_edge_ratios,
    compute_fill_ratio,
    compute_gradient_magnitude,
    compute_motion,
    compute_sharpness,
    edge_threshold,
)
from layer1_auto_capture.sampler import analysis_height


PASS = QualityChecks(focus=True, fill=True, motion=True, edges=True, aspect=True, elapsed=True)
FAIL = dataclasses.replace(PASS, focus=False)
WARMING = dataclasses.replace(PASS, elapsed=False)


class FailingExtractor:
    """Extractor whose encoder always fails."""

    def __init__(self):
        self.calls = 0

    def extract(self, frame, region):
        self.calls += 1
        raise ImageEncodeError("encoder unavailable")


class ScriptedAssessor(QualityAssessor):
    """Real metrics, but focus is forced to fail on chosen tick indices."""

    def __init__(self, config, fail_ticks):
        super().__init__(config)
        self.fail_ticks = set(fail_ticks)
        self.calls = 0

    def check(self, metrics):
        checks = super().check(metrics)
        index = self.calls
        self.calls += 1
        if index in self.fail_ticks:
            return dataclasses.replace(checks, focus=False)
        return checks


def doc_luma(frame):
    return to_luma(frame)


# ============================================================================
# Configuration
# ============================================================================

class TestGateConfig:
    """Test gate configuration defaults and validation."""

    def test_defaults(self):
        """Test defaults match the tuned kiosk values."""
        cfg = GateConfig()
        assert cfg.consecutive_frames_required == 8
        assert cfg.sharpness_min == 35.0
        assert cfg.fill_min == 0.12
        assert cfg.motion_max == 8.0
        assert cfg.edge_band_fraction == 0.10
        assert cfg.edge_ratio_min == 0.12
        assert cfg.min_elapsed_seconds == 1.2
        assert cfg.aspect_target == 0.70
        assert cfg.repeat_capture is True
        assert cfg.analysis_width == 320

    @pytest.mark.parametrize("field,value", [
        ("consecutive_frames_required", 0),
        ("consecutive_frames_required", 2.5),
        ("fill_min", 0.0),
        ("fill_min", 1.0),
        ("motion_max", -1),
        ("edge_band_fraction", 1.0),
        ("edge_ratio_min", 1.5),
        ("edge_threshold_mode", "median"),
        ("min_elapsed_seconds", -0.1),
        ("aspect_target", 0),
        ("aspect_tolerance", -0.01),
        ("analysis_width", 0),
        ("jpeg_quality", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        """Test out-of-range values raise ConfigError."""
        with pytest.raises(ConfigError) as exc:
            GateConfig(**{field: value})
        assert exc.value.error_code == "INVALID_CONFIG"
        assert exc.value.details["field"] == field

    def test_from_dict_rejects_unknown_keys(self):
        """Test unknown option names are reported."""
        with pytest.raises(ConfigError):
            GateConfig.from_dict({"sharpness": 10})

    def test_from_dict_keeps_defaults(self):
        """Test missing keys fall back to defaults."""
        cfg = GateConfig.from_dict({"sharpness_min": 30})
        assert cfg.sharpness_min == 30
        assert cfg.motion_max == 8.0

    def test_load_from_environment(self):
        """Test AUTOCAPTURE_* variables override defaults."""
        cfg = load_gate_config({
            "AUTOCAPTURE_SHARPNESS_MIN": "30",
            "AUTOCAPTURE_CONSECUTIVE_FRAMES_REQUIRED": "3",
            "AUTOCAPTURE_REPEAT_CAPTURE": "no",
            "AUTOCAPTURE_EDGE_THRESHOLD_MODE": "max_fraction",
            "UNRELATED": "1",
        })
        assert cfg.sharpness_min == 30.0
        assert cfg.consecutive_frames_required == 3
        assert cfg.repeat_capture is False
        assert cfg.edge_threshold_mode == "max_fraction"

    def test_load_rejects_unparseable_values(self):
        """Test bad environment values raise ConfigError."""
        with pytest.raises(ConfigError):
            load_gate_config({"AUTOCAPTURE_MOTION_MAX": "lots"})
        with pytest.raises(ConfigError):
            load_gate_config({"AUTOCAPTURE_REPEAT_CAPTURE": "maybe"})


# ============================================================================
# Geometry Mapper
# ============================================================================

class TestGeometryMapper:
    """Test guide-to-frame coordinate mapping."""

    def test_full_preview_maps_to_full_frame(self):
        """Test a guide matching the drawn video covers the whole frame."""
        guide = GuideRegion(0, 0, 1280, 720, 1280, 720)
        assert map_guide_to_frame(guide, 1920, 1080) == PixelRegion(0, 0, 1920, 1080)

    def test_letterboxed_preview_round_trip(self):
        """Test bars above and below the video are removed."""
        scale = 1000 / 1920
        drawn_h = 1080 * scale
        offset_y = (1000 - drawn_h) / 2
        guide = GuideRegion(0, offset_y, 1000, drawn_h, 1000, 1000)
        assert map_guide_to_frame(guide, 1920, 1080) == PixelRegion(0, 0, 1920, 1080)

    def test_pillarboxed_preview_round_trip(self):
        """Test bars left and right of the video are removed."""
        scale = min(1000 / 640, 500 / 480)
        drawn_w = 640 * scale
        offset_x = (1000 - drawn_w) / 2
        guide = GuideRegion(offset_x, 0, drawn_w, 500, 1000, 500)
        assert map_guide_to_frame(guide, 640, 480) == PixelRegion(0, 0, 640, 480)

    def test_scaled_subregion(self):
        """Test a guide inside the preview scales to source pixels."""
        guide = GuideRegion(100, 50, 200, 300, 960, 540)
        assert map_guide_to_frame(guide, 1920, 1080) == PixelRegion(200, 100, 400, 600)

    def test_clamped_to_frame(self):
        """Test guides spilling past the frame are clipped."""
        guide = GuideRegion(1800, 1000, 500, 500, 1920, 1080)
        assert map_guide_to_frame(guide, 1920, 1080) == PixelRegion(1800, 1000, 120, 80)

    def test_negative_origin_clamped(self):
        """Test guides starting in the letterbox bar start at 0."""
        region = map_guide_to_frame(GuideRegion(-100, -20, 300, 300, 1920, 1080), 1920, 1080)
        assert region.x == 0
        assert region.y == 0

    def test_guide_past_right_edge_keeps_one_pixel(self):
        """Test the 1 pixel floor never leaves the frame."""
        region = map_guide_to_frame(GuideRegion(5000, 5000, 10, 10, 1920, 1080), 1920, 1080)
        assert region == PixelRegion(1919, 1079, 1, 1)

    def test_not_measurable_returns_none(self):
        """Test missing layout or source size skips the tick."""
        guide = GuideRegion(0, 0, 100, 100, 640, 480)
        assert map_guide_to_frame(None, 640, 480) is None
        assert map_guide_to_frame(GuideRegion(0, 0, 100, 100, 0, 480), 640, 480) is None
        assert map_guide_to_frame(GuideRegion(0, 0, 0, 100, 640, 480), 640, 480) is None
        assert map_guide_to_frame(guide, 0, 480) is None
        assert map_guide_to_frame(guide, 640, 0) is None

    @pytest.mark.parametrize('field', ['x', 'y', 'w', 'h', 'container_width', 'container_height'])
    @pytest.mark.parametrize('value', [float('inf'), float('-inf'), float('nan')])
    def test_non_finite_guide_returns_none(self, field, value):
        """Test infinite or NaN layout values are treated as not laid out."""
        guide = dataclasses.replace(GuideRegion(0, 0, 100, 100, 640, 480), **{field: value})
        assert not guide.is_measurable()
        assert map_guide_to_frame(guide, 640, 480) is None

    def test_regions_always_inside_frame(self):
        """Test containment for guides all over the container."""
        for gx in (-300, -1, 0, 0.4, 17.5, 300, 639.6, 1000):
            for gw in (0.2, 1, 50.5, 640, 5000):
                guide = GuideRegion(gx, gx / 2, gw, gw * 1.4, 800, 600)
                region = map_guide_to_frame(guide, 640, 480)
                assert region.fits_within(640, 480), (guide, region)


class TestGuideProviders:
    """Test guide region providers."""

    def test_centered_guide_matches_viewfinder_layout(self):
        """Test the default guide is 85% high, 0.70 aspect, centered."""
        guide = CenteredGuideProvider(1920, 1080).get_guide_region()
        assert guide.h == pytest.approx(918.0)
        assert guide.w == pytest.approx(918.0 * 0.70)
        assert guide.x == pytest.approx((1920 - guide.w) / 2)
        assert guide.y == pytest.approx((1080 - 918.0) / 2)

    def test_centered_guide_portrait_container(self):
        """Test narrow containers are limited by 95% of width."""
        guide = CenteredGuideProvider(400, 2000).get_guide_region()
        assert guide.h == pytest.approx(380.0)
        assert guide.w <= 400

    def test_centered_guide_not_laid_out(self):
        """Test a zero-sized container is not measurable."""
        assert CenteredGuideProvider(0, 0).get_guide_region() is None

    def test_static_provider_update_and_clear(self, document_guide):
        """Test the static provider returns the latest update."""
        provider = StaticGuideProvider()
        assert provider.get_guide_region() is None
        provider.update(document_guide)
        assert provider.get_guide_region() == document_guide
        provider.clear()
        assert provider.get_guide_region() is None


# ============================================================================
# Frame Sampler
# ============================================================================

class TestFrameSampler:
    """Test region downsampling and luma conversion."""

    def test_analysis_height(self):
        """Test H = round(W * h / w) with a floor of 1."""
        assert analysis_height(PixelRegion(0, 0, 448, 640), 320) == 457
        assert analysis_height(PixelRegion(0, 0, 1000, 1), 320) == 1

    def test_sample_shape_and_dtype(self):
        """Test the buffer has fixed width and proportional height."""
        frame = np.random.default_rng(0).integers(0, 256, (720, 1280, 3), dtype=np.uint8)
        luma = FrameSampler(320).sample(frame, PixelRegion(100, 40, 448, 640))
        assert luma.shape == (457, 320)
        assert luma.dtype == np.uint8

    def test_luma_coefficients_truncate(self):
        """Test BT.601 weights with truncation on BGR input."""
        pixels = np.array([[[0, 0, 255], [0, 255, 0], [255, 0, 0], [10, 20, 30]]], dtype=np.uint8)
        luma = to_luma(pixels)
        # 76.245, 149.685, 29.07, 21.85
        assert luma.tolist() == [[76, 149, 29, 21]]

    def test_grayscale_frame_passthrough(self):
        """Test single-channel frames are used as luma directly."""
        frame = np.arange(320 * 10, dtype=np.uint32).reshape(10, 320) % 256
        frame = frame.astype(np.uint8)
        luma = FrameSampler(320).sample(frame, PixelRegion(0, 0, 320, 10))
        assert np.array_equal(luma, frame)

    def test_bgra_frame(self, document_frame):
        """Test alpha channels are dropped."""
        bgra = cv2.cvtColor(document_frame, cv2.COLOR_BGR2BGRA)
        sampler = FrameSampler(320)
        region = PixelRegion(0, 0, 320, 457)
        assert np.array_equal(sampler.sample(bgra, region), sampler.sample(document_frame, region))

    def test_each_sample_is_a_new_buffer(self, document_frame):
        """Test returned luma is not overwritten by the next sample."""
        sampler = FrameSampler(320)
        region = PixelRegion(0, 0, 320, 457)
        first = sampler.sample(document_frame, region)
        snapshot = first.copy()
        second = sampler.sample(np.zeros_like(document_frame), region)
        assert first is not second
        assert np.array_equal(first, snapshot)


# ============================================================================
# Quality Metrics
# ============================================================================

class TestSharpness:
    """Test Laplacian variance focus measure."""

    def test_constant_buffer_is_zero(self):
        """Test a flat image has no sharpness."""
        assert compute_sharpness(np.full((50, 60), 123, dtype=np.uint8)) == 0.0

    def test_tiny_buffer_is_zero(self):
        """Test buffers without interior pixels are defined as 0."""
        assert compute_sharpness(np.array([[0, 255, 0], [255, 0, 255]], dtype=np.uint8)) == 0.0
        assert compute_sharpness(np.zeros((10, 2), dtype=np.uint8)) == 0.0

    def test_single_spike_variance(self):
        """Test population variance of the interior response."""
        luma = np.zeros((3, 3), dtype=np.uint8)
        luma[1, 1] = 10
        # One interior pixel: response -40, variance 0
        assert compute_sharpness(luma) == 0.0
        luma = np.zeros((3, 4), dtype=np.uint8)
        luma[1, 1] = 10
        # Interior responses -40 and 10: mean -15, variance 625
        assert compute_sharpness(luma) == pytest.approx(625.0)

    def test_document_is_sharper_than_blur(self, document_frame):
        """Test blurring lowers the focus measure."""
        luma = doc_luma(document_frame)
        blurred = cv2.GaussianBlur(luma, (15, 15), 5)
        assert compute_sharpness(luma) > 35
        assert compute_sharpness(luma) > compute_sharpness(blurred)


class TestFillRatio:
    """Test brightness fill ratio."""

    def test_black_is_zero(self):
        """Test all-black buffers have no fill."""
        assert compute_fill_ratio(np.zeros((20, 20), dtype=np.uint8)) == 0.0

    def test_white_is_one(self):
        """Test all-white buffers are fully filled."""
        assert compute_fill_ratio(np.full((20, 20), 255, dtype=np.uint8)) == 1.0

    def test_floor_is_strict(self):
        """Test pixels exactly at the floor do not count."""
        assert compute_fill_ratio(np.full((4, 4), 60, dtype=np.uint8)) == 0.0
        assert compute_fill_ratio(np.full((4, 4), 61, dtype=np.uint8)) == 1.0

    def test_partial(self):
        """Test fill is the bright fraction."""
        luma = np.zeros((10, 10), dtype=np.uint8)
        luma[:3, :] = 200
        assert compute_fill_ratio(luma) == pytest.approx(0.3)


class TestEdgeRatios:
    """Test Sobel border band edge ratios."""

    def test_gradient_border_is_zero(self, document_frame):
        """Test the 1-pixel border carries no gradient."""
        magnitude = compute_gradient_magnitude(doc_luma(document_frame))
        assert not magnitude[0, :].any()
        assert not magnitude[-1, :].any()
        assert not magnitude[:, 0].any()
        assert not magnitude[:, -1].any()

    def test_step_magnitude(self):
        """Test |Gx| + |Gy| at a vertical step edge."""
        luma = np.zeros((5, 6), dtype=np.uint8)
        luma[:, 3:] = 100
        magnitude = compute_gradient_magnitude(luma)
        assert magnitude[2, 2] == pytest.approx(400.0)
        assert magnitude[2, 3] == pytest.approx(400.0)
        assert magnitude[2, 1] == 0.0

    def test_dynamic_threshold(self):
        """Test mean + 1.2 std over interior magnitudes."""
        magnitude = np.zeros((4, 4))
        magnitude[1:3, 1:3] = [[0, 10], [20, 30]]
        interior = np.array([0, 10, 20, 30], dtype=float)
        expected = interior.mean() + 1.2 * interior.std()
        assert edge_threshold(magnitude, "dynamic") == pytest.approx(expected)

    def test_max_fraction_threshold(self):
        """Test 25% of the peak, with a peak floor of 1."""
        magnitude = np.zeros((4, 4))
        magnitude[1, 1] = 400
        assert edge_threshold(magnitude, "max_fraction") == pytest.approx(100.0)
        assert edge_threshold(np.zeros((4, 4)), "max_fraction") == pytest.approx(0.25)

    def test_uniform_has_no_edges(self):
        """Test a flat buffer has zero ratios on every side."""
        ratios = compute_edge_ratios(np.full((100, 70), 180, dtype=np.uint8), 0.10)
        assert (ratios.top, ratios.bottom, ratios.left, ratios.right) == (0, 0, 0, 0)

    @pytest.mark.parametrize("mode", ["dynamic", "max_fraction"])
    def test_document_edges_on_all_sides(self, document_frame, mode):
        """Test a framed page has strong edges in all four bands."""
        ratios = compute_edge_ratios(doc_luma(document_frame), 0.10, mode)
        assert ratios.minimum() >= 0.12

    def test_edge_on_one_side_only(self):
        """Test a single rule only lights up its own band."""
        luma = np.full((100, 100), 200, dtype=np.uint8)
        luma[4:8, :] = 0
        ratios = compute_edge_ratios(luma, 0.10)
        assert ratios.top > 0.3
        assert ratios.bottom == 0.0
        assert ratios.left < ratios.top
        assert ratios.right < ratios.top


class TestMotion:
    """Test inter-frame motion."""

    def test_identical_frames(self, document_frame):
        """Test no motion against an identical frame."""
        luma = doc_luma(document_frame)
        assert compute_motion(luma, luma.copy()) == 0.0

    def test_first_frame_is_sentinel(self, document_frame):
        """Test the first analyzed frame reports maximal motion."""
        assert compute_motion(doc_luma(document_frame), None) == MOTION_SENTINEL == 255.0

    def test_size_change_is_sentinel(self):
        """Test buffers of different size are not compared."""
        assert compute_motion(np.zeros((10, 10), np.uint8), np.zeros((11, 10), np.uint8)) == 255.0

    def test_mean_absolute_difference(self):
        """Test motion is the mean abs difference without uint8 wraparound."""
        current = np.zeros((2, 2), dtype=np.uint8)
        previous = np.array([[10, 30], [0, 0]], dtype=np.uint8)
        assert compute_motion(current, previous) == pytest.approx(10.0)


class TestQualityAssessor:
    """Test the assessor and its checks."""

    def test_aspect_check(self):
        """Test regions within the tolerance pass."""
        assert aspect_ok(PixelRegion(0, 0, 70, 100), 0.70, 0.0)
        assert aspect_ok(PixelRegion(0, 0, 77, 100), 0.70, 0.08)
        assert not aspect_ok(PixelRegion(0, 0, 100, 100), 0.70, 0.08)

    def test_document_passes_all_image_checks(self, document_frame):
        """Test the synthetic page passes every threshold."""
        assessor = QualityAssessor(GateConfig())
        luma = doc_luma(document_frame)
        metrics = assessor.assess(luma, luma.copy(), PixelRegion(0, 0, 320, 457), 2.0)
        checks = assessor.check(metrics)
        assert checks.all_pass, metrics.to_dict()

    def test_missing_context_fails(self, document_frame):
        """Test unknown region or time fail their checks."""
        assessor = QualityAssessor()
        metrics = assessor.assess(doc_luma(document_frame))
        assert metrics.aspect_ok is False
        assert metrics.elapsed_ok is False
        assert metrics.motion == 255.0

    def test_thresholds_are_inclusive(self, document_frame):
        """Test values exactly at a threshold pass."""
        assessor = QualityAssessor()
        metrics = assessor.assess(doc_luma(document_frame), None, PixelRegion(0, 0, 320, 457), 1.2)
        exact = dataclasses.replace(metrics, sharpness=35.0, fill_ratio=0.12, motion=8.0)
        checks = assessor.check(exact)
        assert checks.focus and checks.fill and checks.motion and checks.elapsed

    def test_metrics_to_dict(self, document_frame):
        """Test metric serialisation."""
        metrics = QualityAssessor().assess(doc_luma(document_frame))
        data = metrics.to_dict()
        assert set(data) == {'sharpness', 'fill_ratio', 'edge', 'motion', 'aspect_ok', 'elapsed_ok'}
        assert set(data['edge']) == {'top', 'bottom', 'left', 'right'}


# ============================================================================
# Decision State Machine
# ============================================================================

class TestCaptureGate:
    """Test the consecutive-frame gate."""

    def make_gate(self, frames=3):
        return CaptureGate(GateConfig(consecutive_frames_required=frames), start_time=0.0)

    def test_starts_warming(self):
        """Test the initial phase."""
        assert self.make_gate().phase is GatePhase.WARMING

    def test_warming_until_elapsed(self):
        """Test phase follows the elapsed check."""
        gate = self.make_gate()
        assert gate.step(WARMING).phase is GatePhase.WARMING
        assert gate.step(PASS).phase is GatePhase.EVALUATING

    def test_failure_resets_count(self):
        """Test any failing frame zeroes the counter."""
        gate = self.make_gate(frames=10)
        for _ in range(5):
            gate.step(PASS)
        assert gate.pass_count == 5
        decision = gate.step(FAIL)
        assert decision.pass_count == 0
        assert gate.pass_count == 0

    def test_trigger_at_required_count(self):
        """Test the trigger fires exactly when the count reaches the requirement."""
        gate = self.make_gate()
        assert not gate.step(PASS).triggered
        assert not gate.step(PASS).triggered
        decision = gate.step(PASS)
        assert decision.triggered
        assert decision.pass_count == 3
        assert gate.phase is GatePhase.CAPTURING

    def test_no_trigger_while_capturing(self):
        """Test passing frames during an extraction never re-trigger."""
        gate = self.make_gate(frames=1)
        assert gate.step(PASS).triggered
        for _ in range(5):
            decision = gate.step(PASS)
            assert not decision.triggered
            assert decision.phase is GatePhase.CAPTURING
            assert gate.pass_count == 0

    def test_finish_capture_returns_to_evaluating(self):
        """Test completion resets the counter and phase."""
        gate = self.make_gate()
        for _ in range(3):
            gate.step(PASS)
        gate.finish_capture(succeeded=False)
        assert gate.phase is GatePhase.EVALUATING
        assert gate.pass_count == 0
        assert not gate.step(PASS).triggered

    def test_pass_pass_fail_then_three_passes(self):
        """Test a failure in the middle delays the trigger to the sixth frame."""
        gate = self.make_gate()
        triggers = []
        for checks in (PASS, PASS, FAIL, PASS, PASS, PASS):
            triggers.append(gate.step(checks).triggered)
        assert triggers == [False, False, False, False, False, True]

    def test_count_never_exceeds_requirement(self):
        """Test one trigger per full run of passing frames."""
        gate = self.make_gate()
        triggers = 0
        for _ in range(30):
            decision = gate.step(PASS)
            assert decision.pass_count <= 3
            if decision.triggered:
                triggers += 1
                gate.finish_capture(succeeded=True)
        assert triggers == 10


# ============================================================================
# Capture Extractor
# ============================================================================

class TestCaptureExtractor:
    """Test full-resolution capture extraction."""

    def test_extracts_region_as_jpeg(self):
        """Test the artifact decodes to the region size."""
        frame = np.random.default_rng(1).integers(0, 256, (1080, 1920, 3), dtype=np.uint8)
        region = PixelRegion(100, 50, 640, 914)
        artifact = CaptureExtractor(0.9).extract(frame, region)
        assert artifact.pixels[:2] == b'\xff\xd8'
        decoded = cv2.imdecode(np.frombuffer(artifact.pixels, np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (914, 640, 3)
        assert artifact.region == region
        assert artifact.mime_type == "image/jpeg"

    def test_empty_frame(self):
        """Test zero-sized frames are an extraction error."""
        with pytest.raises(EmptyFrameError):
            CaptureExtractor().extract(np.zeros((0, 0, 3), np.uint8), PixelRegion(0, 0, 1, 1))
        with pytest.raises(EmptyFrameError):
            CaptureExtractor().extract(None, PixelRegion(0, 0, 1, 1))

    def test_region_outside_frame(self):
        """Test regions that do not fit are rejected."""
        with pytest.raises(RegionOutOfBoundsError) as exc:
            CaptureExtractor().extract(np.zeros((100, 100, 3), np.uint8), PixelRegion(50, 50, 60, 10))
        assert exc.value.error_code == "REGION_OUT_OF_BOUNDS"

    def test_artifact_metadata(self, document_frame):
        """Test artifact metadata excludes pixel data."""
        artifact = CaptureExtractor().extract(document_frame, PixelRegion(0, 0, 320, 457))
        data = artifact.to_dict()
        assert data['size_bytes'] == len(artifact.pixels)
        assert data['region'] == {'x': 0, 'y': 0, 'w': 320, 'h': 457}
        assert 'pixels' not in data


# ============================================================================
# Diagnostics
# ============================================================================

class TestDiagnostics:
    """Test failure reasons and reports."""

    def test_no_reasons_when_passing(self):
        """Test a passing frame has no reasons."""
        assert failure_reasons(PASS) == []

    def test_reason_order(self):
        """Test reasons follow the fixed display order."""
        checks = QualityChecks(focus=False, fill=False, motion=False, edges=False,
                               aspect=False, elapsed=False)
        assert failure_reasons(checks) == [
            REASON_STABILIZING,
            REASON_OUT_OF_FOCUS,
            REASON_TOO_DARK,
            REASON_MOTION,
            REASON_EDGES,
            REASON_ASPECT,
        ]

    def test_report_status_text(self, document_frame):
        """Test status text and progress."""
        config = GateConfig(consecutive_frames_required=4)
        metrics = QualityAssessor(config).assess(doc_luma(document_frame))
        gate = CaptureGate(config, 0.0)
        decision = gate.step(PASS)
        report = build_report(metrics, PASS, decision, config)
        assert report.status_text == STATUS_READY
        assert report.progress == pytest.approx(0.25)

        failing = dataclasses.replace(PASS, fill=False, motion=False)
        report = build_report(metrics, failing, gate.step(failing), config)
        assert report.status_text == "Too dark · Motion detected"
        assert report.to_dict()['pass_count'] == 0


# ============================================================================
# Capture Session
# ============================================================================

class TestCaptureSession:
    """End-to-end tests of the per-tick pipeline."""

    def make_session(self, source, provider, config, clock, **kwargs):
        captured = []
        session = CaptureSession(
            source, provider, config,
            on_capture=captured.append,
            clock=clock,
            **kwargs
        )
        return session, captured

    def test_open_acquires_and_close_releases(self, make_source, document_frame,
                                              guide_provider, fast_config, clock):
        """Test source lifecycle follows the session."""
        source = make_source([document_frame])
        with CaptureSession(source, guide_provider, fast_config, clock=clock) as session:
            assert source.initialized
            assert session.phase is GatePhase.WARMING
        assert source.released
        assert not session.is_active
        assert session.gate is None

    def test_open_failure_propagates(self, make_source, guide_provider, fast_config):
        """Test an unavailable camera is raised from open()."""
        source = make_source([], fail_on_initialize=CameraInitError(2, reason="permission denied"))
        session = CaptureSession(source, guide_provider, fast_config)
        with pytest.raises(CameraInitError):
            session.open()
        assert not session.is_active

    def test_tick_requires_open_session(self, make_source, guide_provider, fast_config):
        """Test ticking a closed session is an error."""
        session = CaptureSession(make_source([]), guide_provider, fast_config)
        with pytest.raises(SessionNotActiveError):
            session.tick()

    def test_first_tick_reports_motion_sentinel(self, make_source, document_frame,
                                                guide_provider, fast_config, clock):
        """Test the first analyzed frame never passes the stability check."""
        session, _ = self.make_session(make_source([document_frame]), guide_provider,
                                       fast_config, clock)
        session.open()
        result = session.tick()
        assert result.status is TickStatus.EVALUATED
        assert result.report.metrics.motion == 255.0
        assert REASON_MOTION in result.report.reasons
        second = session.tick()
        assert second.report.metrics.motion == 0.0
        assert second.report.passed

    def test_scenario_three_passing_ticks_capture_once(self, make_source, document_frame,
                                                       guide_provider, fast_config, clock):
        """Test three consecutive passing ticks emit exactly one capture."""
        session, captured = self.make_session(make_source([document_frame]), guide_provider,
                                              fast_config, clock)
        session.open()
        session.tick()  # first frame: no previous frame for motion

        statuses = [session.tick().status for _ in range(3)]

        assert statuses == [TickStatus.EVALUATED, TickStatus.EVALUATED, TickStatus.CAPTURED]
        assert len(captured) == 1
        assert session.gate.pass_count == 0
        assert session.phase is GatePhase.EVALUATING
        decoded = cv2.imdecode(np.frombuffer(captured[0].pixels, np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == document_frame.shape

    def test_scenario_failure_resets_debounce(self, make_source, document_frame,
                                              guide_provider, fast_config, clock):
        """Test pass, pass, fail, pass, pass, pass captures only on the sixth tick."""
        # Tick 0 primes motion; ticks 1-6 are the scenario, tick 3 fails focus
        assessor = ScriptedAssessor(fast_config, fail_ticks={3})
        session, captured = self.make_session(make_source([document_frame]), guide_provider,
                                              fast_config, clock, assessor=assessor)
        session.open()
        session.tick()

        results = [session.tick() for _ in range(6)]

        assert [r.status for r in results[:5]] == [TickStatus.EVALUATED] * 5
        assert results[2].report.pass_count == 0
        assert REASON_OUT_OF_FOCUS in results[2].report.reasons
        assert results[5].status is TickStatus.CAPTURED
        assert len(captured) == 1

    def test_scenario_startup_delay(self, make_source, document_frame,
                                    guide_provider, fast_config, clock):
        """Test nothing is captured before min_elapsed_seconds."""
        config = dataclasses.replace(fast_config, min_elapsed_seconds=5)
        session, captured = self.make_session(make_source([document_frame]), guide_provider,
                                              config, clock)
        session.open()

        capture_times = []
        for _ in range(10):
            result = session.tick()
            if clock.now < 5.0:
                assert session.phase is GatePhase.WARMING
                assert REASON_STABILIZING in result.report.reasons
            if result.status is TickStatus.CAPTURED:
                capture_times.append(clock.now)
            clock.advance(1.0)

        assert capture_times[0] >= 5.0
        assert capture_times[0] == 7.0
        assert len(captured) == len(capture_times)

    def test_extraction_failure_recovers(self, make_source, document_frame,
                                         guide_provider, fast_config, clock):
        """Test a failed encode emits nothing and the session keeps running."""
        extractor = FailingExtractor()
        session, captured = self.make_session(make_source([document_frame]), guide_provider,
                                              fast_config, clock, extractor=extractor)
        session.open()

        results = [session.tick() for _ in range(4)]
        failed = results[-1]

        assert failed.status is TickStatus.CAPTURE_FAILED
        assert failed.artifact is None
        assert isinstance(failed.error, ImageEncodeError)
        assert not failed.fatal
        assert session.is_active
        assert session.phase is GatePhase.EVALUATING
        assert session.gate.pass_count == 0
        assert captured == []

        results += [session.tick() for _ in range(2)]
        assert sum(1 for r in results if r.error is not None) == 1
        assert extractor.calls == 1

    def test_unmeasurable_guide_is_a_no_op(self, make_source, document_frame,
                                           document_guide, fast_config, clock):
        """Test a skipped tick neither advances nor resets the counter."""
        provider = StaticGuideProvider(document_guide)
        session, captured = self.make_session(make_source([document_frame]), provider,
                                              fast_config, clock)
        session.open()
        session.tick()
        session.tick()
        session.tick()
        assert session.gate.pass_count == 2

        provider.clear()
        skipped = session.tick()
        assert skipped.status is TickStatus.SKIPPED
        assert skipped.report is None
        assert session.gate.pass_count == 2

        provider.update(document_guide)
        assert session.tick().status is TickStatus.CAPTURED
        assert len(captured) == 1

    def test_infinite_guide_is_skipped(self, make_source, document_frame,
                                       document_guide, fast_config, clock):
        """Test an infinite guide size skips the tick instead of raising."""
        provider = StaticGuideProvider(dataclasses.replace(document_guide, w=float('inf')))
        session, _ = self.make_session(make_source([document_frame]), provider,
                                       fast_config, clock)
        session.open()

        result = session.tick()

        assert result.status is TickStatus.SKIPPED
        assert result.region is None
        assert session.is_active

    def test_source_warming_up_is_skipped(self, make_source, document_frame,
                                          guide_provider, fast_config, clock):
        """Test frames that are not ready yet skip the tick."""
        empty = np.zeros((0, 0, 3), dtype=np.uint8)
        source = make_source([None, empty, document_frame])
        session, _ = self.make_session(source, guide_provider, fast_config, clock)
        session.open()
        assert session.tick().status is TickStatus.SKIPPED
        assert session.tick().status is TickStatus.SKIPPED
        assert session.tick().status is TickStatus.EVALUATED

    def test_source_lost_ends_session(self, make_source, document_frame,
                                      guide_provider, fast_config, clock):
        """Test a dropped source is fatal and releases the session."""
        source = make_source([document_frame], fail_at=3)
        session, _ = self.make_session(source, guide_provider, fast_config, clock)
        session.open()
        session.tick()
        session.tick()

        result = session.tick()

        assert result.status is TickStatus.SOURCE_LOST
        assert result.fatal
        assert isinstance(result.error, FrameCaptureError)
        assert not session.is_active
        assert source.released
        with pytest.raises(SessionNotActiveError):
            session.tick()

    def test_single_capture_mode_ends_session(self, make_source, document_frame,
                                              guide_provider, fast_config, clock):
        """Test repeat_capture=False tears down after the first capture."""
        config = dataclasses.replace(fast_config, repeat_capture=False)
        source = make_source([document_frame])
        session, captured = self.make_session(source, guide_provider, config, clock)
        session.open()

        results = [session.tick() for _ in range(4)]

        assert results[-1].status is TickStatus.CAPTURED
        assert len(captured) == 1
        assert not session.is_active
        assert source.released

    def test_repeat_capture_keeps_streaming(self, make_source, document_frame,
                                            guide_provider, fast_config, clock):
        """Test repeated captures need a fresh debounce run each time."""
        session, captured = self.make_session(make_source([document_frame]), guide_provider,
                                              fast_config, clock)
        session.open()
        statuses = [session.tick().status for _ in range(7)]
        assert statuses.count(TickStatus.CAPTURED) == 2
        assert statuses[3] is TickStatus.CAPTURED
        assert statuses[6] is TickStatus.CAPTURED
        assert len(captured) == 2


class TestAsyncExtraction:
    """Test extraction on an executor."""

    def open_triggered(self, make_source, document_frame, guide_provider, config, clock, executor):
        captured = []
        session = CaptureSession(make_source([document_frame]), guide_provider, config,
                                 on_capture=captured.append, clock=clock, executor=executor)
        session.open()
        results = [session.tick() for _ in range(4)]
        return session, captured, results

    def test_trigger_submits_once(self, make_source, document_frame, guide_provider,
                                  fast_config, clock, executor):
        """Test the CAPTURING phase suppresses further submissions."""
        session, captured, results = self.open_triggered(
            make_source, document_frame, guide_provider, fast_config, clock, executor)

        assert results[-1].status is TickStatus.CAPTURE_PENDING
        assert session.has_pending_capture
        assert session.phase is GatePhase.CAPTURING

        for _ in range(5):
            result = session.tick()
            assert result.status is TickStatus.EVALUATED
            assert result.report is not None
        assert len(executor.pending) == 1
        assert captured == []

    def test_completion_delivered_on_next_tick(self, make_source, document_frame,
                                               guide_provider, fast_config, clock, executor):
        """Test the artifact is collected and the gate resumes."""
        session, captured, _ = self.open_triggered(
            make_source, document_frame, guide_provider, fast_config, clock, executor)

        executor.run_all()
        result = session.tick()

        assert result.status is TickStatus.CAPTURED
        assert result.artifact is captured[0]
        assert not session.has_pending_capture
        assert session.phase is GatePhase.EVALUATING
        assert session.gate.pass_count == 1

    def test_collect_and_retrigger_in_one_tick(self, make_source, document_frame,
                                               guide_provider, fast_config, clock, executor):
        """Test a tick that delivers a capture still reports the new submission."""
        config = dataclasses.replace(fast_config, consecutive_frames_required=1)
        captured = []
        session = CaptureSession(make_source([document_frame]), guide_provider, config,
                                 on_capture=captured.append, clock=clock, executor=executor)
        session.open()
        session.tick()  # first frame: no previous frame for motion

        triggered = session.tick()
        assert triggered.status is TickStatus.CAPTURE_PENDING
        assert triggered.pending is True

        executor.run_all()
        result = session.tick()

        assert result.status is TickStatus.CAPTURED
        assert result.artifact is captured[0]
        assert result.pending is True
        assert result.to_dict()['pending'] is True
        assert session.has_pending_capture
        assert session.phase is GatePhase.CAPTURING
        assert len(executor.pending) == 1

    def test_failed_extraction_reported_once(self, make_source, document_frame,
                                             guide_provider, fast_config, clock, executor):
        """Test async failures return the gate to EVALUATING."""
        captured = []
        session = CaptureSession(make_source([document_frame]), guide_provider, fast_config,
                                 extractor=FailingExtractor(), on_capture=captured.append,
                                 clock=clock, executor=executor)
        session.open()
        for _ in range(4):
            session.tick()
        executor.run_all()

        result = session.tick()
        assert result.status is TickStatus.CAPTURE_FAILED
        assert isinstance(result.error, ImageEncodeError)
        assert session.phase is GatePhase.EVALUATING
        assert session.tick().error is None
        assert captured == []

    def test_close_cancels_pending_capture(self, make_source, document_frame,
                                           guide_provider, fast_config, clock, executor):
        """Test a cancelled extraction never emits an artifact."""
        session, captured, _ = self.open_triggered(
            make_source, document_frame, guide_provider, fast_config, clock, executor)
        future = executor.pending[0][0]

        session.close()
        executor.run_all()

        assert future.cancelled()
        assert captured == []
        assert not session.has_pending_capture


# ============================================================================
# Camera and overlay
# ============================================================================

class FakeCapture:
    """Stand-in for cv2.VideoCapture."""

    reads = []

    def __init__(self, index, backend=None):
        self.index = index
        self.opened = True

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        return True

    def get(self, prop):
        return 640 if prop == cv2.CAP_PROP_FRAME_WIDTH else 480

    def read(self):
        if FakeCapture.reads:
            return FakeCapture.reads.pop(0)
        return False, None

    def release(self):
        self.opened = False


class TestCameraHandler:
    """Test the OpenCV video source."""

    def test_missing_device(self, monkeypatch):
        """Test a missing /dev/video node raises CameraNotFoundError."""
        monkeypatch.setattr(CameraHandler, "_check_device_exists", lambda self: False)
        with pytest.raises(CameraNotFoundError) as exc:
            CameraHandler(camera_index=7).initialize()
        assert exc.value.details["camera_index"] == 7

    def test_frame_before_initialize(self):
        """Test reading before initialize is an error."""
        with pytest.raises(CameraNotInitializedError):
            CameraHandler(camera_index=7).get_frame()

    def test_reads_frames_and_tolerates_warmup(self, monkeypatch):
        """Test empty reads return None until the warm-up budget is spent."""
        monkeypatch.setattr(CameraHandler, "_check_device_exists", lambda self: True)
        monkeypatch.setattr(cv2, "VideoCapture", FakeCapture)
        frame = np.zeros((480, 640, 3), dtype=np.uint8)
        FakeCapture.reads = [(False, None), (True, frame)]

        camera = CameraHandler(camera_index=0, config={'warmup_reads': 2})
        camera.initialize()
        assert camera.get_resolution() == (640, 480)
        assert camera.get_frame() is None
        assert camera.get_frame() is frame

        with pytest.raises(FrameCaptureError):
            for _ in range(3):
                camera.get_frame()

        camera.release()
        assert not camera.is_opened()

    def test_unopened_device(self, monkeypatch):
        """Test a device that will not open raises CameraInitError."""

        class ClosedCapture(FakeCapture):
            def isOpened(self):
                return False

        monkeypatch.setattr(CameraHandler, "_check_device_exists", lambda self: True)
        monkeypatch.setattr(cv2, "VideoCapture", ClosedCapture)
        with pytest.raises(CameraInitError):
            CameraHandler(camera_index=0).initialize()


class TestOverlay:
    """Test preview overlay drawing."""

    def test_draws_on_copy(self, document_frame):
        """Test the source frame is not modified."""
        original = document_frame.copy()
        result = draw_overlay(document_frame, PixelRegion(20, 100, 200, 300), None)
        assert result.shape == document_frame.shape
        assert np.array_equal(document_frame, original)

    def test_guide_colour_follows_verdict(self, document_frame, make_source,
                                          guide_provider, fast_config, clock):
        """Test the guide turns green on passing frames and red otherwise."""
        session = CaptureSession(make_source([document_frame]), guide_provider,
                                 fast_config, clock=clock)
        session.open()
        failing = session.tick()
        passing = session.tick()
        region = PixelRegion(20, 100, 200, 300)

        red = draw_overlay(document_frame, region, failing.report)
        green = draw_overlay(document_frame, region, passing.report)

        assert tuple(red[100, 120]) == overlay.COLOR_FAIL
        assert tuple(green[100, 120]) == overlay.COLOR_PASS

    def test_grayscale_frames(self):
        """Test single-channel previews are converted for drawing."""
        result = draw_overlay(np.zeros((200, 300), np.uint8), PixelRegion(10, 80, 50, 50), None)
        assert result.shape == (200, 300, 3)
