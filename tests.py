"""
Tests for the ID card verification Flask application.
"""
import json
import os

from config import Settings
from error_handlers import (
    ErrorTag,
    InvalidFrameError,
    OCRUnavailableError,
    SessionStateError,
    handle_error,
)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_health_includes_services(self, client):
        """Test /health includes the OCR backend and session mode."""
        data = json.loads(client.get('/health').data)
        assert data['services']['ocr_backend'] == 'tesseract'
        assert data['services']['session_mode'] == 'idle'


class TestFrameEndpoint:
    """Test synchronous frame evaluation."""

    def test_frame_requires_image(self, client):
        """Test /api/frame requires image data."""
        response = client.post('/api/frame', json={'side': 'front'})
        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error_code'] == 'INVALID_FRAME'

    def test_frame_rejects_bad_base64(self, client):
        """Test undecodable payloads return 400."""
        response = client.post('/api/frame', json={'image': 'abc', 'side': 'front'})
        assert response.status_code == 400

    def test_frame_rejects_unknown_side(self, client, card_frame_base64):
        """Test an unknown side returns 400."""
        response = client.post('/api/frame', json={'image': card_frame_base64, 'side': 'left'})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_SIDE'

    def test_frame_returns_outcome(self, client, card_frame_base64):
        """Test a card frame is evaluated and scored."""
        response = client.post('/api/frame', json={'image': card_frame_base64, 'side': 'front'})
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['state'] == 'verifying'
        assert data['quality']['passed'] is True
        assert data['result']['decision'] == 'VALID'

    def test_full_session(self, client, card_frame_base64):
        """Test front and back capture followed by completion."""
        for side in ('front', 'back'):
            states = []
            for _ in range(3):
                response = client.post('/api/frame', json={'image': card_frame_base64, 'side': side})
                assert response.status_code == 200
                states.append(json.loads(response.data)['state'])
            assert states[-1] == 'captured'

        response = client.post('/api/complete')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['decision'] == 'VALID'
        assert data['fields']['national_id'] == '33058600656'
        assert data['fields']['national_id_match'] is True

        status = json.loads(client.get('/api/status').data)
        assert status['mode'] == 'completed'


class TestSessionEndpoints:
    """Test session control endpoints."""

    def test_start_session(self, client):
        """Test starting a side switches the session mode."""
        response = client.post('/api/session/start', json={'side': 'back'})
        assert response.status_code == 200
        assert json.loads(response.data)['mode'] == 'scanning_back'

    def test_start_unknown_side(self, client):
        """Test an unknown side returns 400."""
        response = client.post('/api/session/start', json={'side': 'top'})
        assert response.status_code == 400

    def test_complete_before_capture(self, client):
        """Test completion without both sides returns 409."""
        response = client.post('/api/complete')
        assert response.status_code == 409
        data = json.loads(response.data)
        assert data['error_code'] == 'INVALID_SESSION_STATE'

    def test_manual_capture(self, client, card_frame_base64):
        """Test the last processed frame can be captured manually."""
        client.post('/api/frame', json={'image': card_frame_base64, 'side': 'front'})
        response = client.post('/api/capture', json={'side': 'front'})
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['accepted'] is True

        status = json.loads(client.get('/api/status').data)
        assert 'front' in status['captured']

    def test_reset(self, client, card_frame_base64):
        """Test reset clears the session."""
        client.post('/api/frame', json={'image': card_frame_base64, 'side': 'front'})
        response = client.post('/api/session/reset')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['mode'] == 'idle'
        assert data['buffers']['front']['count'] == 0

    def test_auto_capture_submission(self, client, app, card_frame_base64):
        """Test frames submitted to the background worker are processed."""
        response = client.post('/api/session/start', json={'side': 'front', 'auto': True})
        assert json.loads(response.data)['running'] is True

        response = client.post('/api/frame/submit', json={'image': card_frame_base64})
        assert response.status_code == 200
        assert json.loads(response.data)['accepted'] is True

        assert app.config['COORDINATOR'].auto_capture.wait_idle(10)
        status = json.loads(client.get('/api/status').data)
        assert status['auto_capture']['processed'] == 1

        # Synchronous evaluation is refused while the worker owns the session
        response = client.post('/api/frame', json={'image': card_frame_base64, 'side': 'front'})
        assert response.status_code == 409


class TestErrorHandling:
    """Test error tags and the error response format."""

    def test_scanner_error_response(self):
        """Test known errors keep their code and details."""
        data = handle_error(InvalidFrameError("empty payload"))
        assert data['success'] is False
        assert data['error_code'] == 'INVALID_FRAME'
        assert data['details']['reason'] == 'empty payload'

    def test_unexpected_error_response(self):
        """Test unknown exceptions are wrapped."""
        data = handle_error(KeyError('boom'), log_message="failed")
        assert data['error_code'] == 'UNEXPECTED_ERROR'
        assert data['details']['error_type'] == 'KeyError'

    def test_session_state_error(self):
        """Test the session error names the operation and mode."""
        error = SessionStateError("complete the session", "scanning_front")
        assert "scanning_front" in error.message
        assert error.details['operation'] == "complete the session"

    def test_ocr_unavailable(self):
        """Test the OCR error keeps the engine name."""
        error = OCRUnavailableError("tesseract", FileNotFoundError("tesseract"))
        assert error.details['engine'] == 'tesseract'

    def test_error_tags(self):
        """Test tag rendering and recoverability."""
        assert ErrorTag.QUALITY_GATE_REJECT.with_reason("blur") == "quality-gate-reject:blur"
        assert ErrorTag.MRZ_CHECKSUM_FAILED.is_recoverable
        assert not ErrorTag.OCR_UNAVAILABLE.is_recoverable


class TestSettings:
    """Test environment configuration."""

    def test_defaults(self, monkeypatch):
        """Test defaults apply when the environment is empty."""
        for name in ('OCR_BACKEND', 'REQUIRED_FRAMES', 'PORT', 'ISSUING_COUNTRY'):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.ocr_backend == 'tesseract'
        assert settings.required_frames == 3
        assert settings.port == 5000
        assert settings.issuing_country == 'TUR'

    def test_environment_overrides(self, monkeypatch):
        """Test environment variables override defaults."""
        monkeypatch.setenv('OCR_BACKEND', 'FastMRZ')
        monkeypatch.setenv('REQUIRED_FRAMES', '5')
        monkeypatch.setenv('ISSUING_COUNTRY', 'tur')
        monkeypatch.setenv('LOG_LEVEL', 'debug')
        settings = Settings.from_env()
        assert settings.ocr_backend == 'fastmrz'
        assert settings.required_frames == 5
        assert settings.issuing_country == 'TUR'
        assert settings.log_level == 'DEBUG'


class TestPackaging:
    """Test project metadata."""

    def test_metadata_has_no_readme_pointer(self):
        """Test the package metadata does not point at a requirements document."""
        path = os.path.join(os.path.dirname(__file__), 'pyproject.toml')
        with open(path, encoding='utf-8') as f:
            lines = [line.strip() for line in f]
        assert 'name = "id-card-verifier"' in lines
        assert not any(line.startswith('readme') for line in lines)
