"""
Pytest configuration and fixtures for the ID card verification tests.
"""
import base64
import os
import sys
import threading

import cv2
import numpy as np
import pytest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(__file__))

from layer3_mrz.checksum import checksum, enforce_length  # noqa: E402
from layer3_mrz.recognizer import TextRecognizer  # noqa: E402

ID1_RATIO = 85.60 / 53.98

NATIONAL_ID = "33058600656"
DOCUMENT_NUMBER = "A12B34567"


class FakeRecognizer(TextRecognizer):
    """Returns fixed lines for any image. With a gate, blocks until it is set."""

    name = "fake"

    def __init__(self, lines=None, error=None, gate=None):
        self.lines = list(lines or [])
        self.error = error
        self.gate = gate
        self.started = threading.Event()
        self.calls = 0

    def recognize(self, image):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return list(self.lines)


def build_td1(document_number=DOCUMENT_NUMBER, birth_date="970604", sex="M",
              expiry_date="310101", national_id=NATIONAL_ID, names="YILMAZ<<AYSE<FATMA"):
    """Three TD1 rows with correct check digits."""
    line1 = enforce_length(f"I<TUR{document_number}{checksum(document_number)}")
    line2 = (f"{birth_date}{checksum(birth_date)}{sex}"
             f"{expiry_date}{checksum(expiry_date)}TUR{national_id}")
    composite = line1[5:30] + line2[0:7] + line2[8:15] + line2[18:29]
    line2 = line2 + str(checksum(composite))
    return [line1, line2, enforce_length(names)]


def make_card_frame(angle=8.0, card_width=514, frame_size=(1280, 960), background=40, fill=225, keystone=0):
    """
    Dark frame with a textured, rotated ID-1 card in the middle.

    Args:
        angle: Card rotation in degrees (98 gives a portrait hold)
        card_width: Long side of the card in pixels
        frame_size: (width, height) of the frame
        background: Background gray level
        fill: Card gray level
        keystone: Pixels the top corners are pulled inwards by a perspective warp
    """
    card_height = int(round(card_width / ID1_RATIO))
    card = np.full((card_height, card_width, 3), fill, dtype=np.uint8)
    for y in range(45, card_height - 20, 30):
        cv2.putText(card, "TURKIYE 33058600656 KIMLIK", (24, y),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.7, (20, 20, 20), 2)

    width, height = frame_size
    frame = np.full((height, width, 3), background, dtype=np.uint8)
    canvas = np.zeros_like(frame)
    mask = np.zeros((height, width), dtype=np.uint8)

    x0 = (width - card_width) // 2
    y0 = (height - card_height) // 2
    canvas[y0:y0 + card_height, x0:x0 + card_width] = card
    mask[y0:y0 + card_height, x0:x0 + card_width] = 255

    if keystone:
        src = np.float32([[x0, y0], [x0 + card_width, y0],
                          [x0 + card_width, y0 + card_height], [x0, y0 + card_height]])
        dst = src.copy()
        dst[0, 0] += keystone
        dst[1, 0] -= keystone
        warp = cv2.getPerspectiveTransform(src, dst)
        canvas = cv2.warpPerspective(canvas, warp, (width, height))
        mask = cv2.warpPerspective(mask, warp, (width, height))

    matrix = cv2.getRotationMatrix2D((width / 2, height / 2), angle, 1.0)
    canvas = cv2.warpAffine(canvas, matrix, (width, height))
    mask = cv2.warpAffine(mask, matrix, (width, height))
    frame[mask > 127] = canvas[mask > 127]
    return frame


def encode_frame(frame):
    ok, encoded = cv2.imencode('.png', frame)
    assert ok
    return base64.b64encode(encoded.tobytes()).decode('ascii')


@pytest.fixture
def td1_rows():
    """Valid TD1 MRZ for the sample card."""
    return build_td1()


@pytest.fixture
def td1_builder():
    return build_td1


@pytest.fixture
def icao_td1_rows():
    """ICAO 9303 TD1 specimen."""
    return [
        "I<UTOD231458907<<<<<<<<<<<<<<<",
        "7408122F1204159UTO<<<<<<<<<<<6",
        "ERIKSSON<<ANNA<MARIA<<<<<<<<<<",
    ]


@pytest.fixture
def front_lines():
    """OCR text of the sample card front."""
    return [
        "TÜRKİYE CUMHURİYETİ KİMLİK KARTI",
        "T.C. KİMLİK NO / TR IDENTITY NO",
        f"{NATIONAL_ID}",
        "SOYADI / SURNAME",
        "YILMAZ",
        "ADI / GIVEN NAME(S)",
        "AYŞE",
        "DOĞUM TARİHİ / DATE OF BIRTH",
        "04.06.1997",
        f"SERİ NO / DOCUMENT NO {DOCUMENT_NUMBER}",
    ]


@pytest.fixture
def card_frame():
    """Landscape card, rotated 8 degrees."""
    return make_card_frame()


@pytest.fixture
def frame_factory():
    return make_card_frame


@pytest.fixture
def blank_frame():
    """Uniform dark frame with no card in view."""
    return np.full((480, 640, 3), 40, dtype=np.uint8)


@pytest.fixture
def fake_recognizer():
    return FakeRecognizer


@pytest.fixture
def card_frame_base64(card_frame):
    return encode_frame(card_frame)


@pytest.fixture
def coordinator(front_lines, td1_rows):
    """Coordinator wired to fixed OCR output."""
    from app import VerificationCoordinator
    from config import Settings
    return VerificationCoordinator(
        Settings(),
        text_recognizer=FakeRecognizer(front_lines),
        mrz_recognizer=FakeRecognizer(td1_rows),
    )


@pytest.fixture
def app(coordinator):
    """Create Flask test application."""
    from app import create_app
    from config import Settings
    flask_app = create_app(coordinator=coordinator, settings=Settings())
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
