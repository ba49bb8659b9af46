"""
Layer 2 – Region Mapping
Responsibility: Named field regions of the canonical card and their
per-field binarization
Output: Cropped, OCR-ready region images
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RegionId(Enum):
    """Printed fields of the ID-1 card."""
    DOCUMENT_NUMBER = "document_number"   # 11-digit identity number box (front)
    SURNAME = "surname"
    GIVEN_NAME = "given_name"
    BIRTH_DATE = "birth_date"
    SERIAL = "serial"
    PHOTO = "photo"
    HOLOGRAM = "hologram"
    MRZ = "mrz"
    MRZ_LINE1 = "mrz_line1"
    MRZ_LINE2 = "mrz_line2"
    MRZ_LINE3 = "mrz_line3"
    CHIP = "chip"
    BARCODE = "barcode"


@dataclass(frozen=True)
class RegionSpec:
    """Region as fractions of the canonical card plus its threshold settings."""
    x: float
    y: float
    w: float
    h: float
    invert: bool = False
    block_size: int = 0      # 0 selects Otsu
    constant: int = 0
    binarize: bool = True

    def to_rect(self, width: int, height: int) -> Optional[Tuple[int, int, int, int]]:
        """Pixel rectangle clamped to the image, or None if empty."""
        x0 = min(max(int(self.x * width), 0), width)
        y0 = min(max(int(self.y * height), 0), height)
        x1 = min(max(int((self.x + self.w) * width), 0), width)
        y1 = min(max(int((self.y + self.h) * height), 0), height)
        if x1 <= x0 or y1 <= y0:
            return None
        return x0, y0, x1 - x0, y1 - y0


FRONT_REGIONS: Dict[RegionId, RegionSpec] = {
    RegionId.DOCUMENT_NUMBER: RegionSpec(0.03, 0.20, 0.28, 0.12, False, 15, 8),
    RegionId.SURNAME: RegionSpec(0.03, 0.38, 0.55, 0.10, False, 21, 5),
    RegionId.GIVEN_NAME: RegionSpec(0.03, 0.48, 0.55, 0.10, False, 21, 5),
    RegionId.BIRTH_DATE: RegionSpec(0.03, 0.58, 0.40, 0.10, False, 17, 6),
    RegionId.SERIAL: RegionSpec(0.03, 0.68, 0.35, 0.10, False, 15, 7),
    RegionId.PHOTO: RegionSpec(0.68, 0.18, 0.28, 0.45, binarize=False),
    RegionId.HOLOGRAM: RegionSpec(0.65, 0.70, 0.32, 0.25),
}

# MRZ font survives a light blur and one strong threshold better than CLAHE
MRZ_BLUR_KERNEL = (3, 3)
MRZ_BLOCK_SIZE = 13
MRZ_CONSTANT = 10

BACK_REGIONS: Dict[RegionId, RegionSpec] = {
    RegionId.MRZ: RegionSpec(0.00, 0.72, 1.00, 0.28, False, MRZ_BLOCK_SIZE, MRZ_CONSTANT),
    RegionId.MRZ_LINE1: RegionSpec(0.02, 0.73, 0.96, 0.08, False, MRZ_BLOCK_SIZE, MRZ_CONSTANT),
    RegionId.MRZ_LINE2: RegionSpec(0.02, 0.81, 0.96, 0.08, False, MRZ_BLOCK_SIZE, MRZ_CONSTANT),
    RegionId.MRZ_LINE3: RegionSpec(0.02, 0.89, 0.96, 0.08, False, MRZ_BLOCK_SIZE, MRZ_CONSTANT),
    RegionId.CHIP: RegionSpec(0.02, 0.05, 0.20, 0.25),
    RegionId.BARCODE: RegionSpec(0.88, 0.05, 0.10, 0.60),
}

MRZ_REGIONS = (RegionId.MRZ, RegionId.MRZ_LINE1, RegionId.MRZ_LINE2, RegionId.MRZ_LINE3)


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert BGR/BGRA to single-channel grayscale."""
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def odd_block_size(block_size: int) -> int:
    """Adaptive threshold needs an odd block size of at least 3."""
    block_size = max(3, int(block_size))
    return block_size if block_size % 2 == 1 else block_size + 1


def region_table(is_back_side: bool) -> Dict[RegionId, RegionSpec]:
    return BACK_REGIONS if is_back_side else FRONT_REGIONS


def binarize_mrz(crop: np.ndarray, block_size: int = MRZ_BLOCK_SIZE, constant: int = MRZ_CONSTANT,
                 invert: bool = False) -> np.ndarray:
    """Dedicated MRZ pipeline: light blur, single Gaussian adaptive threshold."""
    gray = to_gray(crop)
    blurred = cv2.GaussianBlur(gray, MRZ_BLUR_KERNEL, 0)
    if invert:
        blurred = cv2.bitwise_not(blurred)
    return cv2.adaptiveThreshold(
        blurred, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY,
        odd_block_size(block_size), constant
    )


def binarize_field(crop: np.ndarray, spec: RegionSpec) -> np.ndarray:
    """
    Generic per-field binarizer.

    CLAHE, optional inversion, adaptive (or Otsu) threshold, light closing.
    """
    gray = to_gray(crop)
    clahe = cv2.createCLAHE(clipLimit=3.0, tileGridSize=(4, 4))
    enhanced = clahe.apply(gray)

    if spec.invert:
        enhanced = cv2.bitwise_not(enhanced)

    if spec.block_size > 0:
        binary = cv2.adaptiveThreshold(
            enhanced, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY,
            odd_block_size(spec.block_size), spec.constant
        )
    else:
        _, binary = cv2.threshold(enhanced, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (2, 2))
    return cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel)


def extract_region(card_image: np.ndarray, field_id: RegionId, is_back_side: bool) -> Optional[np.ndarray]:
    """
    Crop and prepare one field of a normalized card.

    Args:
        card_image: Canonical rectified card image
        field_id: Region to extract
        is_back_side: Which side's table to use

    Returns:
        numpy.ndarray: Binarized crop (photo crops unbinarized), or None if the
        field does not exist on that side or the crop is empty
    """
    if isinstance(field_id, str):
        try:
            field_id = RegionId(field_id)
        except ValueError:
            logger.debug(f"Unknown region: {field_id}")
            return None

    spec = region_table(is_back_side).get(field_id)
    if spec is None:
        logger.debug(f"Region {field_id.value} not defined for {'back' if is_back_side else 'front'} side")
        return None

    height, width = card_image.shape[:2]
    rect = spec.to_rect(width, height)
    if rect is None:
        logger.warning(f"Region {field_id.value} is empty at {width}x{height}")
        return None

    x, y, w, h = rect
    crop = card_image[y:y + h, x:x + w].copy()

    if not spec.binarize:
        return crop
    if field_id in MRZ_REGIONS:
        return binarize_mrz(crop, spec.block_size, spec.constant, spec.invert)
    return binarize_field(crop, spec)
