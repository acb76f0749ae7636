"""
Tests for the Auto-Capture Flask service.
"""
import dataclasses
import io
import json

import cv2
import pytest

from layer1_auto_capture import CameraHandler, GuideRegion

# Synthetic page size used by the conftest document frame
DOC_WIDTH = 320
DOC_HEIGHT = 457

DOCUMENT_GUIDE = {
    'x': 0,
    'y': 0,
    'w': DOC_WIDTH,
    'h': DOC_HEIGHT,
    'container_width': DOC_WIDTH,
    'container_height': DOC_HEIGHT
}


def png_upload(frame, name='page.png'):
    ok, buffer = cv2.imencode('.png', frame)
    assert ok
    return {'image': (io.BytesIO(buffer.tobytes()), name)}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'auto-capture-service'

    def test_api_returns_cors_headers(self, client):
        """Test API returns CORS headers for the viewfinder origin."""
        response = client.get('/health', headers={'Origin': 'http://kiosk.local'})
        # Older flask-cors sends '*', newer releases echo the request origin
        assert response.headers.get('Access-Control-Allow-Origin') in ('*', 'http://kiosk.local')

    def test_status_lists_config(self, client, coordinator):
        """Test /api/status reports gate configuration."""
        response = client.get('/api/status')
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['session_running'] is False
        assert data['gate_config']['consecutive_frames_required'] == coordinator.gate_config.consecutive_frames_required
        assert data['endpoints']['tick'] == '/tick'


class TestEvaluateEndpoint:
    """Test single-image evaluation."""

    def test_evaluate_requires_image(self, client):
        """Test /api/evaluate requires an image file."""
        response = client.post('/api/evaluate', data={}, content_type='multipart/form-data')
        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error_code'] == 'NO_IMAGE'

    def test_evaluate_rejects_garbage(self, client):
        """Test undecodable uploads are rejected."""
        response = client.post(
            '/api/evaluate',
            data={'image': (io.BytesIO(b'not an image'), 'page.jpg')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_document_passes(self, client, document_frame):
        """Test a sharp, framed page passes the per-image checks."""
        response = client.post('/api/evaluate', data=png_upload(document_frame),
                               content_type='multipart/form-data')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['passed'] is True
        assert data['reasons'] == []
        assert data['region'] == {'x': 0, 'y': 0, 'w': DOC_WIDTH, 'h': DOC_HEIGHT}

    def test_blank_page_fails(self, client, blank_frame):
        """Test a featureless frame fails focus and edges only."""
        response = client.post('/api/evaluate', data=png_upload(blank_frame),
                               content_type='multipart/form-data')
        data = json.loads(response.data)
        assert data['passed'] is False
        assert 'Out of focus' in data['reasons']
        assert 'Edges not detected' in data['reasons']
        assert 'Motion detected' not in data['reasons']
        assert 'Stabilizing camera...' not in data['reasons']

    def test_dark_frame_reports_too_dark(self, client, dark_frame):
        """Test an unlit frame is reported as too dark."""
        response = client.post('/api/evaluate', data=png_upload(dark_frame),
                               content_type='multipart/form-data')
        data = json.loads(response.data)
        assert 'Too dark' in data['reasons']
        assert data['metrics']['fill_ratio'] == 0.0


class TestGuideEndpoint:
    """Test guide layout reporting."""

    def test_valid_guide(self, client, coordinator):
        """Test a measured guide replaces the default."""
        response = client.post('/guide', json=DOCUMENT_GUIDE)
        assert response.status_code == 200
        guide = coordinator.guide_provider.get_guide_region()
        assert guide.w == DOC_WIDTH
        assert guide.container_height == DOC_HEIGHT

    def test_missing_field(self, client, coordinator):
        """Test incomplete guides are rejected."""
        payload = {k: v for k, v in DOCUMENT_GUIDE.items() if k != 'h'}
        response = client.post('/guide', json=payload)
        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error_code'] == 'INVALID_GUIDE'
        assert 'h' in data['error']

    def test_non_numeric_field(self, client, coordinator):
        """Test non-numeric guide values are rejected."""
        response = client.post('/guide', json={**DOCUMENT_GUIDE, 'x': 'left'})
        assert response.status_code == 400

    @pytest.mark.parametrize('literal', ['Infinity', '-Infinity', 'NaN'])
    def test_non_finite_field(self, client, coordinator, literal):
        """Test Infinity and NaN guide values are rejected."""
        body = json.dumps(DOCUMENT_GUIDE).replace(f'"w": {DOC_WIDTH}', f'"w": {literal}')
        response = client.post('/guide', data=body, content_type='application/json')
        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error_code'] == 'INVALID_GUIDE'
        assert 'w' in data['error']
        assert coordinator.guide_provider.get_guide_region() == \
            coordinator.default_guide.get_guide_region()

    def test_invalid_json(self, client, coordinator):
        """Test malformed JSON returns error."""
        response = client.post('/guide', data='{not json', content_type='application/json')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_JSON'

    def test_empty_body_restores_centered_guide(self, client, coordinator):
        """Test an empty report falls back to the centered guide."""
        client.post('/guide', json=DOCUMENT_GUIDE)
        response = client.post('/guide')
        assert json.loads(response.data)['guide'] == 'centered'
        assert coordinator.guide_provider.get_guide_region() == \
            coordinator.default_guide.get_guide_region()


class TestSessionEndpoints:
    """Test session control without a running camera."""

    def test_tick_without_session(self, client, coordinator):
        """Test /tick requires a running session."""
        response = client.post('/tick')
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'CAMERA_NOT_INITIALIZED'

    def test_video_feed_without_session(self, client, coordinator):
        """Test /video_feed requires a running session."""
        response = client.get('/video_feed')
        assert response.status_code == 409

    def test_detection_status_idle(self, client, coordinator):
        """Test status reports an idle service."""
        data = json.loads(client.get('/detection_status').data)
        assert data['success'] is False
        assert data['detection']['running'] is False
        assert data['detection']['last_tick'] is None

    def test_no_capture_yet(self, client, coordinator):
        """Test capture endpoints return 404 before the first capture."""
        assert client.get('/capture/latest').status_code == 404
        response = client.get('/capture/latest/info')
        assert response.status_code == 404
        assert json.loads(response.data)['error_code'] == 'NO_CAPTURE'

    def test_start_camera_missing_device(self, client, coordinator, monkeypatch):
        """Test a missing camera is reported, not raised."""
        monkeypatch.setattr(CameraHandler, '_check_device_exists', lambda self: False)
        response = client.post('/start_camera')
        data = json.loads(response.data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_NOT_FOUND'
        assert not coordinator.is_running

    def test_stop_camera_is_idempotent(self, client, coordinator):
        """Test stopping an idle service succeeds."""
        response = client.post('/stop_camera')
        assert json.loads(response.data)['success'] is True


class TestAutoCaptureFlow:
    """Test the service end to end with a scripted video source."""

    def test_tick_until_capture(self, client, coordinator, make_source, document_frame, fast_config):
        """Test consecutive passing ticks produce a downloadable capture."""
        coordinator.start(source=make_source([document_frame]), config=fast_config)
        client.post('/guide', json=DOCUMENT_GUIDE)

        statuses = []
        for _ in range(4):
            data = json.loads(client.post('/tick').data)
            assert data['success'] is True
            statuses.append(data['tick']['status'])

        assert statuses == ['evaluated', 'evaluated', 'evaluated', 'captured']

        response = client.get('/capture/latest')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.data[:2] == b'\xff\xd8'

        info = json.loads(client.get('/capture/latest/info').data)
        assert info['capture']['region'] == {'x': 0, 'y': 0, 'w': DOC_WIDTH, 'h': DOC_HEIGHT}

        detection = json.loads(client.get('/detection_status').data)['detection']
        assert detection['running'] is True
        assert detection['phase'] == 'evaluating'
        assert detection['captures'] == 1

    def test_tick_reports_diagnostics(self, client, coordinator, make_source, document_frame, fast_config):
        """Test the first tick explains why it did not pass."""
        coordinator.start(source=make_source([document_frame]), config=fast_config)
        client.post('/guide', json=DOCUMENT_GUIDE)

        report = json.loads(client.post('/tick').data)['tick']['report']
        assert report['passed'] is False
        assert report['reasons'] == ['Motion detected']
        assert report['metrics']['motion'] == 255.0

    def test_non_finite_guide_skips_tick(self, client, coordinator, make_source, document_frame, fast_config):
        """Test a guide with an infinite size skips the tick instead of failing."""
        coordinator.start(source=make_source([document_frame]), config=fast_config)
        coordinator.update_guide(GuideRegion(0, 0, float('inf'), DOC_HEIGHT, DOC_WIDTH, DOC_HEIGHT))

        response = client.post('/tick')

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['tick']['status'] == 'skipped'
        assert coordinator.is_running

    def test_source_lost(self, client, coordinator, make_source, document_frame, fast_config):
        """Test a failing source ends the session."""
        coordinator.start(source=make_source([document_frame], fail_at=2), config=fast_config)

        client.post('/tick')
        data = json.loads(client.post('/tick').data)

        assert data['success'] is False
        assert data['tick']['status'] == 'source_lost'
        assert data['tick']['error']['error_code'] == 'FRAME_CAPTURE_FAILED'
        assert not coordinator.is_running
        assert client.post('/tick').status_code == 409

    def test_video_feed_streams_until_single_capture(self, client, coordinator, make_source,
                                                     document_frame, fast_config):
        """Test the preview stream drives the gate and ends with the session."""
        config = dataclasses.replace(fast_config, repeat_capture=False)
        coordinator.start(source=make_source([document_frame]), config=config)
        client.post('/guide', json=DOCUMENT_GUIDE)

        response = client.get('/video_feed')
        body = response.data

        assert response.status_code == 200
        assert body.count(b'--frame') == 4
        assert coordinator.latest_capture is not None
        assert not coordinator.is_running

    def test_start_is_idempotent(self, coordinator, make_source, document_frame, fast_config):
        """Test starting a running service keeps the same session."""
        coordinator.start(source=make_source([document_frame]), config=fast_config)
        session = coordinator.session
        assert coordinator.start() is True
        assert coordinator.session is session


@pytest.mark.parametrize('path', ['/tick', '/guide', '/start_camera', '/stop_camera'])
def test_method_not_allowed(client, path):
    """Test POST-only endpoints reject GET."""
    response = client.get(path)
    assert response.status_code == 405
