"""
Layer 3 — Text Recognition
Adapters around external OCR engines. Each adapter takes a region image
and returns recognized text lines with no correctness guarantee.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from error_handlers import OCRUnavailableError

logger = logging.getLogger(__name__)

# Tesseract options for single text blocks and for the MRZ character set
TEXT_CONFIG = "--psm 6"
MRZ_CONFIG = "--psm 6 -c tessedit_char_whitelist=ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789<"


def split_lines(text: Optional[str]) -> List[str]:
    """Split OCR output into non-empty, stripped lines."""
    if not text:
        return []
    return [line.strip() for line in text.splitlines() if line.strip()]


class TextRecognizer(ABC):
    """OCR collaborator contract"""

    name = "ocr"

    @abstractmethod
    def recognize(self, image: np.ndarray) -> List[str]:
        """
        Recognize text lines in an image.

        Args:
            image: Grayscale or BGR region image

        Returns:
            list: Text lines in reading order

        Raises:
            OCRUnavailableError: If the engine is missing or fails
        """


class TesseractRecognizer(TextRecognizer):
    """Tesseract through pytesseract"""

    name = "tesseract"

    def __init__(self, config: str = TEXT_CONFIG, lang: Optional[str] = None,
                 tesseract_cmd: Optional[str] = None):
        self.config = config
        self.lang = lang
        self.tesseract_cmd = tesseract_cmd
        self._engine = None
        logger.debug(f"TesseractRecognizer configured: config='{config}' lang={lang}")

    def _load(self):
        if self._engine is not None:
            return self._engine
        try:
            import pytesseract
        except ImportError as e:
            logger.error("pytesseract package not installed. Run: pip install pytesseract")
            raise OCRUnavailableError(self.name, e)

        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
        self._engine = pytesseract
        return self._engine

    def recognize(self, image: np.ndarray) -> List[str]:
        engine = self._load()
        kwargs = {'config': self.config}
        if self.lang:
            kwargs['lang'] = self.lang
        try:
            text = engine.image_to_string(image, **kwargs)
        except engine.TesseractNotFoundError as e:
            logger.error(f"Tesseract binary not found: {e}")
            raise OCRUnavailableError(self.name, e)
        except engine.TesseractError as e:
            logger.error(f"Tesseract failed: {e}")
            raise OCRUnavailableError(self.name, e)
        return split_lines(text)


class FastMRZRecognizer(TextRecognizer):
    """MRZ-only recognition through FastMRZ"""

    name = "fastmrz"

    def __init__(self, tessdata_path: Optional[str] = None):
        """
        Initialize FastMRZ recognizer

        Args:
            tessdata_path: Directory containing mrz.traineddata
        """
        self.tessdata_path = tessdata_path
        self._engine = None
        logger.debug(f"FastMRZRecognizer configured, tessdata path: {tessdata_path}")

    def _load(self):
        if self._engine is not None:
            return self._engine
        try:
            from fastmrz import FastMRZ
        except ImportError as e:
            logger.error("fastmrz package not installed. Run: pip install fastmrz")
            raise OCRUnavailableError(self.name, e)

        try:
            if self.tessdata_path:
                self._engine = FastMRZ(tessdata_path=self.tessdata_path)
            else:
                self._engine = FastMRZ()
            logger.info("FastMRZ loaded")
        except Exception as e:
            logger.error(f"Failed to initialize FastMRZ: {e}")
            raise OCRUnavailableError(self.name, e)
        return self._engine

    def recognize(self, image: np.ndarray) -> List[str]:
        engine = self._load()
        try:
            text = engine.get_details(image, input_type="numpy", ignore_parse=True)
        except Exception as e:
            logger.error(f"FastMRZ failed: {e}")
            raise OCRUnavailableError(self.name, e)
        if not isinstance(text, str):
            return []
        return split_lines(text)


def create_recognizers(backend: str = "tesseract", tessdata_path: Optional[str] = None,
                       tesseract_cmd: Optional[str] = None):
    """
    Build the (text, mrz) recognizer pair for a backend name.

    Args:
        backend: 'tesseract' or 'fastmrz' (FastMRZ reads the MRZ, Tesseract the front)
        tessdata_path: Tessdata directory for FastMRZ
        tesseract_cmd: Path to the tesseract binary

    Returns:
        tuple: (front text recognizer, MRZ recognizer)
    """
    text = TesseractRecognizer(TEXT_CONFIG, tesseract_cmd=tesseract_cmd)
    if backend == "fastmrz":
        mrz = FastMRZRecognizer(tessdata_path)
    elif backend == "tesseract":
        mrz = TesseractRecognizer(MRZ_CONFIG, tesseract_cmd=tesseract_cmd)
    else:
        raise ValueError(f"Unknown OCR backend: {backend}")
    logger.info(f"OCR backend: {backend}")
    return text, mrz
