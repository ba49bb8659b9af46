"""
ID Card Verification Service
Thin coordinator for the layered verification pipeline.

Provides REST API for:
- Synchronous per-frame evaluation (pull model)
- Keep-latest asynchronous frame submission (auto-capture)
- Manual capture of the last processed frame
- Combined front + back session result
"""
from flask import Flask, jsonify, request
from flask_cors import CORS
import logging

# Import layers
from layer1_capture import AutoCaptureEngine, DocumentSide, Frame
from layer3_mrz import MRZExtractor, MRZLayout, create_recognizers
from layer4_decision import DecisionConfig, DecisionEngine

# Import configuration and error handling
from config import Settings
from error_handlers import (
    InvalidFrameError,
    InvalidSideError,
    ScannerError,
    SessionStateError,
    handle_error
)

logger = logging.getLogger(__name__)


class VerificationCoordinator:
    """
    Coordinates one capture session across layers
    Thin wrapper that delegates to layer-specific components
    """

    def __init__(self, settings: Settings, text_recognizer=None, mrz_recognizer=None):
        logger.info("Initializing VerificationCoordinator")
        self.settings = settings

        # Layer 3: OCR collaborators (engines load lazily on first frame)
        if text_recognizer is None:
            text_recognizer, default_mrz = create_recognizers(
                settings.ocr_backend,
                tessdata_path=settings.tessdata_path,
                tesseract_cmd=settings.tesseract_cmd or None,
            )
            mrz_recognizer = mrz_recognizer or default_mrz

        layout = MRZLayout(issuing_country=settings.issuing_country, nationality=settings.issuing_country)

        # Layer 4: Decision engine for the session
        self.engine = DecisionEngine(
            text_recognizer=text_recognizer,
            mrz_recognizer=mrz_recognizer,
            extractor=MRZExtractor(layout=layout),
            config=DecisionConfig(
                buffer_capacity=settings.buffer_capacity,
                required_frames=settings.required_frames,
            ),
        )

        # Layer 1: Keep-latest frame pump
        self.auto_capture = AutoCaptureEngine(self.engine)

        logger.info("VerificationCoordinator initialized successfully")

    def start(self, side, auto=False):
        """Begin scanning a side, optionally with the background worker."""
        side = DocumentSide.parse(side)
        if auto:
            return self.auto_capture.start(side).to_dict()
        self.auto_capture.stop()
        return {'mode': self.engine.start_side(side).value, 'side': side.value}

    def analyze(self, frame, side):
        """Evaluate one frame synchronously."""
        if self.auto_capture.status().running:
            raise SessionStateError("analyze frames synchronously", "auto-capturing")
        return self.engine.analyze_frame(frame, side).to_dict()

    def submit(self, frame):
        """Hand a frame to the background worker."""
        accepted = self.auto_capture.submit(frame)
        return {'accepted': accepted, 'status': self.auto_capture.status().to_dict()}

    def capture(self, side):
        self.auto_capture.wait_idle(timeout=5.0)
        return self.engine.capture_manually(side).to_dict()

    def complete(self):
        self.auto_capture.stop()
        self.auto_capture.wait_idle(timeout=5.0)
        return self.engine.complete().to_dict()

    def reset(self):
        self.auto_capture.stop()
        self.auto_capture.wait_idle(timeout=5.0)
        self.engine.reset()
        return self.engine.status()

    def status(self):
        status = self.engine.status()
        status['auto_capture'] = self.auto_capture.status().to_dict()
        return status


def _frame_from_request(payload):
    image = payload.get('image')
    if not image:
        raise InvalidFrameError("missing 'image' field")
    return Frame.from_base64(image, payload.get('timestamp'))


def _error_response(error):
    status_code = 500
    if isinstance(error, (InvalidFrameError, InvalidSideError)):
        status_code = 400
    elif isinstance(error, SessionStateError):
        status_code = 409
    elif isinstance(error, ScannerError):
        status_code = 422
    return jsonify(handle_error(error)), status_code


def create_app(coordinator=None, settings=None):
    """
    Build the Flask application.

    Args:
        coordinator: Pre-built coordinator (tests inject fake recognizers)
        settings: Settings (read from the environment if not provided)
    """
    settings = settings or Settings.from_env()
    app = Flask(__name__)

    # Enable CORS for cross-origin requests from the browser front end
    CORS(app, origins=["*"])

    coordinator = coordinator or VerificationCoordinator(settings)
    app.config['COORDINATOR'] = coordinator

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'healthy',
            'services': {
                'ocr_backend': settings.ocr_backend,
                'session_mode': coordinator.engine.mode.value,
            }
        })

    @app.route('/api/session/start', methods=['POST'])
    def start_session():
        payload = request.get_json(silent=True) or {}
        try:
            result = coordinator.start(payload.get('side', 'front'), auto=bool(payload.get('auto')))
            return jsonify({'success': True, **result})
        except Exception as e:
            return _error_response(e)

    @app.route('/api/frame', methods=['POST'])
    def analyze_frame():
        payload = request.get_json(silent=True) or {}
        try:
            frame = _frame_from_request(payload)
            outcome = coordinator.analyze(frame, payload.get('side', 'front'))
            return jsonify({'success': True, **outcome})
        except Exception as e:
            return _error_response(e)

    @app.route('/api/frame/submit', methods=['POST'])
    def submit_frame():
        payload = request.get_json(silent=True) or {}
        try:
            frame = _frame_from_request(payload)
            return jsonify({'success': True, **coordinator.submit(frame)})
        except Exception as e:
            return _error_response(e)

    @app.route('/api/status')
    def status():
        return jsonify({'success': True, **coordinator.status()})

    @app.route('/api/capture', methods=['POST'])
    def capture():
        payload = request.get_json(silent=True) or {}
        try:
            return jsonify({'success': True, **coordinator.capture(payload.get('side', 'front'))})
        except Exception as e:
            return _error_response(e)

    @app.route('/api/complete', methods=['POST'])
    def complete():
        try:
            return jsonify({'success': True, **coordinator.complete()})
        except Exception as e:
            return _error_response(e)

    @app.route('/api/session/reset', methods=['POST'])
    def reset():
        return jsonify({'success': True, **coordinator.reset()})

    return app


if __name__ == '__main__':
    settings = Settings.from_env()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    app = create_app(settings=settings)
    logger.info(f"Starting verification service on {settings.host}:{settings.port}")
    app.run(host=settings.host, port=settings.port, threaded=True)
