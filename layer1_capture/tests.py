"""
Tests for Layer 1 - frame intake, quality gate and auto-capture.
"""
import base64
import threading
from dataclasses import dataclass

import cv2
import numpy as np
import pytest

from error_handlers import InvalidFrameError, InvalidSideError
from layer1_capture import (
    AutoCaptureEngine,
    CaptureState,
    DocumentSide,
    Frame,
    QualityGate,
)


class TestFrame:
    """Test frame decoding and side parsing."""

    def test_side_parse(self):
        """Test sides parse from strings and enums."""
        assert DocumentSide.parse("front") is DocumentSide.FRONT
        assert DocumentSide.parse("BACK") is DocumentSide.BACK
        assert DocumentSide.parse(DocumentSide.BACK) is DocumentSide.BACK
        assert DocumentSide.FRONT.opposite is DocumentSide.BACK
        assert DocumentSide.BACK.is_back

    def test_side_parse_rejects_unknown(self):
        """Test unknown sides raise InvalidSideError."""
        with pytest.raises(InvalidSideError):
            DocumentSide.parse("left")

    def test_from_base64(self, card_frame):
        """Test PNG payloads decode with and without a data URL prefix."""
        ok, encoded = cv2.imencode('.png', card_frame)
        payload = base64.b64encode(encoded.tobytes()).decode('ascii')

        frame = Frame.from_base64(payload, timestamp=12.5)
        assert frame.width == card_frame.shape[1]
        assert frame.height == card_frame.shape[0]
        assert frame.timestamp == 12.5

        prefixed = Frame.from_base64("data:image/png;base64," + payload)
        assert np.array_equal(prefixed.pixels, frame.pixels)

    def test_invalid_payloads(self):
        """Test empty and non-image payloads raise InvalidFrameError."""
        with pytest.raises(InvalidFrameError):
            Frame.from_base64("")
        with pytest.raises(InvalidFrameError):
            Frame.from_bytes(b"not an image")


class TestQualityGate:
    """Test blur, brightness and glare checks."""

    def test_sharp_card_passes(self, card_frame):
        """Test a textured, evenly lit frame passes every check."""
        metrics = QualityGate().assess(card_frame)
        assert metrics.passed
        assert metrics.reasons == []
        assert metrics.blur_score >= 0.5

    def test_flat_image_is_blurry(self):
        """Test an image without edges fails the blur check."""
        metrics = QualityGate().assess(np.full((200, 300), 128, dtype=np.uint8))
        assert not metrics.passed
        assert "quality-gate-reject:blur" in metrics.reasons
        assert metrics.brightness_score == 1.0

    def test_dark_frame_rejected(self, card_frame):
        """Test a frame below the brightness band fails."""
        dark = (card_frame // 12).astype(np.uint8)
        metrics = QualityGate().assess(dark)
        assert "quality-gate-reject:brightness" in metrics.reasons
        assert metrics.brightness_score < 0.5

    def test_glare_rejected(self, card_frame):
        """Test a large saturated patch fails the glare check."""
        glared = card_frame.copy()
        glared[200:700, 300:1000] = 255
        metrics = QualityGate().assess(glared)
        assert metrics.glare_ratio > 0.15
        assert metrics.glare_score == 0.0
        assert "quality-gate-reject:glare" in metrics.reasons

    def test_glare_score_is_continuous(self):
        """Test the glare score steps down smoothly around the ceiling."""
        gate = QualityGate()
        assert gate._glare_score(0.0) == 1.0
        assert gate._glare_score(0.05) == pytest.approx(0.5)
        assert gate._glare_score(0.10) == pytest.approx(0.25)
        assert gate._glare_score(0.20) == 0.0

    def test_brightness_band(self):
        """Test in-band luminance scores 1 and out-of-band under the floor."""
        gate = QualityGate()
        assert gate._brightness_score(128) == 1.0
        assert gate._brightness_score(15) == pytest.approx(0.25)
        assert gate._brightness_score(250) < 0.5

    def test_empty_image(self):
        """Test missing pixels fail every check."""
        metrics = QualityGate().assess(np.zeros((0, 0), dtype=np.uint8))
        assert not metrics.passed
        assert len(metrics.reasons) == 3

    def test_custom_thresholds(self):
        """Test overrides merge with the defaults."""
        gate = QualityGate({'blur_reference': 1.0})
        assert gate.thresholds['blur_reference'] == 1.0
        assert gate.thresholds['min_sub_score'] == 0.5


@dataclass
class _Outcome:
    state: CaptureState

    def to_dict(self):
        return {'state': self.state.value}


class _SlowEngine:
    """Decision engine stand-in that blocks until released."""

    def __init__(self, state=CaptureState.VERIFYING):
        self.state = state
        self.release = threading.Event()
        self.started = threading.Event()
        self.frames = []
        self.committed = []

    def start_side(self, side):
        pass

    def analyze_frame(self, frame, side, commit):
        self.frames.append(frame)
        self.started.set()
        self.release.wait(5)
        with commit() as current:
            if current:
                self.committed.append(frame)
        return _Outcome(self.state)


class TestAutoCapture:
    """Test the keep-latest auto-capture loop."""

    def _frame(self, value=0):
        return Frame(np.full((4, 4, 3), value, dtype=np.uint8))

    def test_drops_frames_while_busy(self):
        """Test frames arriving during processing are dropped, not queued."""
        engine = _SlowEngine()
        auto = AutoCaptureEngine(engine)
        auto.start("front")

        assert auto.submit(self._frame(1))
        assert engine.started.wait(5)
        assert not auto.submit(self._frame(2))
        assert not auto.submit(self._frame(3))

        engine.release.set()
        assert auto.wait_idle(5)

        status = auto.status()
        assert status.processed == 1
        assert status.dropped == 2
        assert status.submitted == 3
        assert len(engine.frames) == 1

        assert auto.submit(self._frame(4))
        assert auto.wait_idle(5)
        assert auto.status().processed == 2

    def test_not_running_drops(self):
        """Test frames are dropped before start."""
        auto = AutoCaptureEngine(_SlowEngine())
        assert not auto.submit(self._frame())
        assert auto.status().dropped == 1

    def test_listener_receives_events_in_order(self):
        """Test one event per processed frame, in submission order."""
        engine = _SlowEngine()
        engine.release.set()
        auto = AutoCaptureEngine(engine)
        events = []
        auto.add_listener(events.append)
        auto.start(DocumentSide.BACK)

        for i in range(3):
            assert auto.submit(self._frame(i))
            assert auto.wait_idle(5)

        assert [e.sequence for e in events] == [1, 2, 3]
        assert all(e.side is DocumentSide.BACK for e in events)
        assert auto.status().last_event.sequence == 3
        assert len(engine.committed) == 3

    def test_stop_discards_in_flight_result(self):
        """Test a result finishing after stop is not published."""
        engine = _SlowEngine()
        auto = AutoCaptureEngine(engine)
        events = []
        auto.add_listener(events.append)
        auto.start("front")

        assert auto.submit(self._frame())
        assert engine.started.wait(5)
        auto.stop()
        engine.release.set()
        assert auto.wait_idle(5)

        assert events == []
        assert engine.committed == []
        assert auto.status().processed == 0
        assert not auto.status().running

    def test_captured_side_stops_analysis(self):
        """Test frames are dropped once the side is captured."""
        engine = _SlowEngine(CaptureState.CAPTURED)
        engine.release.set()
        auto = AutoCaptureEngine(engine)
        auto.start("front")

        assert auto.submit(self._frame())
        assert auto.wait_idle(5)
        assert auto.status().state is CaptureState.CAPTURED
        assert not auto.submit(self._frame())

    def test_engine_errors_become_error_events(self):
        """Test exceptions from the engine are reported, not raised."""
        class _Broken(_SlowEngine):
            def analyze_frame(self, frame, side, commit):
                raise RuntimeError("boom")

        auto = AutoCaptureEngine(_Broken())
        auto.start("front")
        assert auto.submit(self._frame())
        assert auto.wait_idle(5)

        event = auto.status().last_event
        assert event.state is CaptureState.ERROR
        assert event.error == "boom"
        assert auto.status().to_dict()['last_event']['error'] == "boom"
