"""
Layer 2 – Image Readjustment
Responsibility: Card detection, perspective correction to the ID-1 canonical
size, binarization and region isolation
Output: NormalizedCard ready for OCR
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from error_handlers import ErrorTag

from .regions import RegionId, extract_region, region_table, odd_block_size, to_gray

logger = logging.getLogger(__name__)

ID1_ASPECT_RATIO = 85.60 / 53.98


@dataclass
class GeometryConfig:
    """Configuration for the geometry normalizer."""
    # Canonical output (landscape; portrait is the transpose)
    canonical_width: int = 856
    canonical_height: int = 540

    # Edge detection
    blur_kernel: int = 5
    canny_low: int = 30
    canny_high: int = 100
    dilate_iterations: int = 2

    # Quadrilateral admission
    min_area_ratio: float = 0.05      # Of frame area
    approx_epsilon: float = 0.02      # Of contour perimeter
    min_aspect: float = 0.2
    max_aspect: float = 5.0
    confidence_area_ratio: float = 0.5  # Area giving full confidence

    # Page binarizer
    clahe_clip: float = 2.0
    clahe_tiles: int = 8
    block_size: int = 15
    threshold_constant: int = 10

    # Frame metrics
    glare_cutoff: int = 240
    blur_scale: float = 20.0
    stability_size: tuple = (200, 126)


def order_corners(points) -> np.ndarray:
    """
    Order corners: top-left, top-right, bottom-right, bottom-left.
    """
    c = np.asarray(points, dtype='float32').reshape(4, 2)

    # Sort by y-coordinate
    c = c[c[:, 1].argsort(kind='stable')]

    # Top two and bottom two, each by x
    top = c[:2][c[:2, 0].argsort(kind='stable')]
    bottom = c[2:][c[2:, 0].argsort(kind='stable')]

    return np.array([top[0], top[1], bottom[1], bottom[0]], dtype='float32')


def edge_lengths(ordered: np.ndarray) -> Dict[str, float]:
    tl, tr, br, bl = ordered
    return {
        'top': float(np.linalg.norm(tr - tl)),
        'bottom': float(np.linalg.norm(br - bl)),
        'left': float(np.linalg.norm(bl - tl)),
        'right': float(np.linalg.norm(br - tr)),
    }


def is_degenerate(ordered: np.ndarray, min_area: float = 1.0) -> bool:
    """True for zero-area corner sets or any three collinear corners."""
    if abs(cv2.contourArea(ordered.reshape(-1, 1, 2))) < min_area:
        return True
    for i in range(4):
        a, b, c = ordered[i], ordered[(i + 1) % 4], ordered[(i + 2) % 4]
        cross = (b[0] - a[0]) * (c[1] - a[1]) - (b[1] - a[1]) * (c[0] - a[0])
        if abs(cross) < min_area:
            return True
    return False


@dataclass
class CardGeometry:
    """Detected card boundary for one frame."""
    corners: Optional[np.ndarray] = None
    confidence: float = 0.0
    detected: bool = False
    area: float = 0.0

    @property
    def ordered_corners(self) -> Optional[np.ndarray]:
        if self.corners is None:
            return None
        return order_corners(self.corners)

    @property
    def aspect_ratio(self) -> float:
        """Long side over short side, independent of how the card is held."""
        ordered = self.ordered_corners
        if ordered is None:
            return 0.0
        edges = edge_lengths(ordered)
        width = (edges['top'] + edges['bottom']) / 2
        height = (edges['left'] + edges['right']) / 2
        if min(width, height) <= 0:
            return 0.0
        return max(width, height) / min(width, height)

    def to_dict(self) -> Dict:
        ordered = self.ordered_corners
        return {
            'detected': self.detected,
            'confidence': round(self.confidence, 3),
            'area': round(self.area, 1),
            'aspect_ratio': round(self.aspect_ratio, 4),
            'corners': ordered.tolist() if ordered is not None else None,
        }


@dataclass
class NormalizedCard:
    """Rectified card with its binarized variant and region crops."""
    image: np.ndarray
    binarized: np.ndarray
    is_back_side: bool = False
    regions: Dict[RegionId, np.ndarray] = field(default_factory=dict)

    @property
    def size(self):
        height, width = self.image.shape[:2]
        return width, height

    def region(self, field_id: RegionId) -> Optional[np.ndarray]:
        return self.regions.get(field_id)


@dataclass
class NormalizationResult:
    """Result of normalizing one frame."""
    success: bool
    geometry: CardGeometry
    card: Optional[NormalizedCard] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        result = {
            'success': self.success,
            'geometry': self.geometry.to_dict(),
            'error': self.error,
        }
        if self.card is not None:
            result['size'] = list(self.card.size)
        return result


class GeometryNormalizer:
    """
    Card detection and rectification for ID-1 documents
    """

    def __init__(self, config: Optional[GeometryConfig] = None):
        """
        Initialize geometry normalizer

        Args:
            config: Geometry configuration (uses defaults if not provided)
        """
        self.config = config or GeometryConfig()
        cfg = self.config
        self._dilate_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
        self._close_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (2, 2))

        logger.info("GeometryNormalizer initialized")
        logger.debug(f"  Canonical size: {cfg.canonical_width}x{cfg.canonical_height}")
        logger.debug(f"  Canny thresholds: {cfg.canny_low}/{cfg.canny_high}")
        logger.debug(f"  Min area ratio: {cfg.min_area_ratio}")

    def detect_geometry(self, image: np.ndarray) -> CardGeometry:
        """
        Find the largest convex quadrilateral that could be the card.

        Args:
            image: Raw BGR or grayscale frame

        Returns:
            CardGeometry: detected=False if no candidate survives
        """
        cfg = self.config
        gray = to_gray(image)
        frame_area = float(gray.shape[0] * gray.shape[1])
        if frame_area == 0:
            return CardGeometry()

        blurred = cv2.GaussianBlur(gray, (cfg.blur_kernel, cfg.blur_kernel), 0)
        edges = cv2.Canny(blurred, cfg.canny_low, cfg.canny_high)
        edges = cv2.dilate(edges, self._dilate_kernel, iterations=cfg.dilate_iterations)

        contours, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

        best = None
        best_area = 0.0
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < frame_area * cfg.min_area_ratio:
                continue

            perimeter = cv2.arcLength(contour, True)
            approx = cv2.approxPolyDP(contour, cfg.approx_epsilon * perimeter, True)
            if len(approx) != 4 or not cv2.isContourConvex(approx):
                continue

            edges_len = edge_lengths(order_corners(approx))
            width = max(edges_len['top'], edges_len['bottom'])
            height = max(edges_len['left'], edges_len['right'])
            if height <= 0:
                continue
            ratio = width / height
            if not cfg.min_aspect <= ratio <= cfg.max_aspect:
                continue

            if area > best_area:
                best, best_area = approx, area

        if best is None:
            logger.debug("No card quadrilateral found")
            return CardGeometry()

        confidence = min(1.0, best_area / (cfg.confidence_area_ratio * frame_area))
        logger.debug(f"Card found: area={best_area:.0f} confidence={confidence:.2f}")
        return CardGeometry(
            corners=best.reshape(4, 2).astype('float32'),
            confidence=confidence,
            detected=True,
            area=best_area,
        )

    def canonical_size(self, ordered: np.ndarray):
        """(width, height) preset: landscape, or its transpose for portrait holds."""
        cfg = self.config
        edges = edge_lengths(ordered)
        width = max(edges['top'], edges['bottom'])
        height = max(edges['left'], edges['right'])
        if height > width:
            return cfg.canonical_height, cfg.canonical_width
        return cfg.canonical_width, cfg.canonical_height

    def rectify(self, image: np.ndarray, geometry: CardGeometry) -> Optional[np.ndarray]:
        """
        Warp the card to the canonical rectangle.

        Args:
            image: Raw frame
            geometry: Detected geometry

        Returns:
            numpy.ndarray: Canonical card image, or None for degenerate corners
        """
        if not geometry.detected or geometry.corners is None:
            return None

        src = geometry.ordered_corners
        if is_degenerate(src):
            logger.warning("Degenerate card corners, cannot rectify")
            return None

        width, height = self.canonical_size(src)
        dst = np.array([
            [0, 0],
            [width - 1, 0],
            [width - 1, height - 1],
            [0, height - 1]
        ], dtype='float32')

        matrix = cv2.getPerspectiveTransform(src, dst)
        return cv2.warpPerspective(image, matrix, (width, height), flags=cv2.INTER_CUBIC)

    def binarize(self, image: np.ndarray, block_size: Optional[int] = None,
                 constant: Optional[int] = None) -> np.ndarray:
        """
        OCR binarization of a whole card.

        CLAHE, light Gaussian denoise (no bilateral smoothing, which rounds off
        the MRZ filler glyph), adaptive Gaussian threshold, 2x2 closing.
        """
        cfg = self.config
        gray = to_gray(image)
        clahe = cv2.createCLAHE(clipLimit=cfg.clahe_clip, tileGridSize=(cfg.clahe_tiles, cfg.clahe_tiles))
        enhanced = clahe.apply(gray)
        denoised = cv2.GaussianBlur(enhanced, (3, 3), 0)

        binary = cv2.adaptiveThreshold(
            denoised, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY,
            odd_block_size(block_size if block_size is not None else cfg.block_size),
            constant if constant is not None else cfg.threshold_constant
        )
        return cv2.morphologyEx(binary, cv2.MORPH_CLOSE, self._close_kernel)

    def extract_region(self, card: NormalizedCard, field_id: RegionId,
                       is_back_side: Optional[bool] = None) -> Optional[np.ndarray]:
        """Crop one named field from a normalized card."""
        side = card.is_back_side if is_back_side is None else is_back_side
        return extract_region(card.image, field_id, side)

    def glare_score(self, image: np.ndarray) -> float:
        """Fraction of near-saturated pixels; lower is better."""
        gray = to_gray(image)
        if gray.size == 0:
            return 0.0
        return float(np.count_nonzero(gray > self.config.glare_cutoff)) / gray.size

    def blur_score(self, image: np.ndarray) -> float:
        """Scaled Laplacian variance in [0, 100]; higher is sharper."""
        gray = to_gray(image)
        if gray.size == 0:
            return 0.0
        variance = cv2.Laplacian(gray, cv2.CV_64F).var()
        return float(np.clip(variance * self.config.blur_scale, 0.0, 100.0))

    def thumbnail(self, image: np.ndarray) -> np.ndarray:
        """Small grayscale copy used for frame-to-frame stability."""
        return cv2.resize(to_gray(image), self.config.stability_size, interpolation=cv2.INTER_AREA)

    def stability(self, current: np.ndarray, previous: Optional[np.ndarray]) -> float:
        """
        Frame-to-frame similarity in [0, 1]; 1 means identical.

        Args:
            current: Normalized image (or thumbnail)
            previous: Previous normalized image (or thumbnail); None counts as stable
        """
        if previous is None:
            return 1.0
        a = self.thumbnail(current).astype(np.float32)
        b = self.thumbnail(previous).astype(np.float32)
        diff = float(np.mean(np.abs(a - b)))
        return float(np.clip(1.0 - diff / 255.0, 0.0, 1.0))

    def normalize(self, image: np.ndarray, is_back_side: bool = False,
                  regions: Optional[Iterable[RegionId]] = None) -> NormalizationResult:
        """
        Detect, rectify, binarize and crop regions for one frame.

        Args:
            image: Raw frame
            is_back_side: Selects the back region table
            regions: Regions to crop (defaults to every region of the side)

        Returns:
            NormalizationResult tagged geometry-not-found or rectification-failed on failure
        """
        geometry = self.detect_geometry(image)
        if not geometry.detected:
            return NormalizationResult(False, geometry, error=ErrorTag.GEOMETRY_NOT_FOUND.value)

        rectified = self.rectify(image, geometry)
        if rectified is None:
            return NormalizationResult(False, geometry, error=ErrorTag.RECTIFICATION_FAILED.value)

        card = NormalizedCard(
            image=rectified,
            binarized=self.binarize(rectified),
            is_back_side=is_back_side,
        )
        wanted: List[RegionId] = list(regions) if regions is not None else list(region_table(is_back_side))
        for region_id in wanted:
            crop = extract_region(rectified, region_id, is_back_side)
            if crop is not None:
                card.regions[region_id] = crop

        return NormalizationResult(True, geometry, card=card)
