"""
Layer 1 — Frame Intake
In-memory pixel buffer handed from the camera collaborator to the pipeline,
plus the side and state tags shared by every layer.
"""
import base64
import binascii
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import cv2
import numpy as np

from error_handlers import InvalidFrameError, InvalidSideError

logger = logging.getLogger(__name__)


class DocumentSide(Enum):
    FRONT = "front"
    BACK = "back"

    @property
    def is_back(self) -> bool:
        return self is DocumentSide.BACK

    @property
    def opposite(self) -> "DocumentSide":
        return DocumentSide.FRONT if self is DocumentSide.BACK else DocumentSide.BACK

    @classmethod
    def parse(cls, value) -> "DocumentSide":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidSideError(value)


class CaptureState(Enum):
    """Per-frame state reported to the presentation layer."""
    SEARCHING = "searching"   # No card in view
    ALIGNING = "aligning"     # Card found but quality or stability too low
    VERIFYING = "verifying"   # Text read, collecting evidence
    CAPTURED = "captured"     # Side finalized
    ERROR = "error"           # OCR unavailable


class SessionMode(Enum):
    IDLE = "idle"
    SCANNING_FRONT = "scanning_front"
    FRONT_CAPTURED = "front_captured"
    SCANNING_BACK = "scanning_back"
    BACK_CAPTURED = "back_captured"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class Frame:
    """Raw BGR pixel buffer with its capture timestamp."""
    pixels: np.ndarray
    timestamp: float = field(default_factory=time.time)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @classmethod
    def from_bytes(cls, data: bytes, timestamp: float = None) -> "Frame":
        """
        Decode an encoded image (JPEG/PNG).

        Raises:
            InvalidFrameError: If the bytes are not a decodable image
        """
        if not data:
            raise InvalidFrameError("empty payload")
        buffer = np.frombuffer(data, dtype=np.uint8)
        pixels = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if pixels is None:
            raise InvalidFrameError("not an image")
        return cls(pixels, timestamp if timestamp is not None else time.time())

    @classmethod
    def from_base64(cls, data: str, timestamp: float = None) -> "Frame":
        """Decode a base64 image, with or without a data URL prefix."""
        if not data:
            raise InvalidFrameError("empty payload")
        if data.startswith("data:") and "," in data:
            data = data.split(",", 1)[1]
        try:
            raw = base64.b64decode(data, validate=False)
        except (binascii.Error, ValueError) as e:
            raise InvalidFrameError(f"invalid base64: {e}")
        return cls.from_bytes(raw, timestamp)
