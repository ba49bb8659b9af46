"""
Layer 1 — Quality Gate
Sharpness, brightness and glare checks that decide whether a frame is
worth an OCR pass at all.
"""
import cv2
import numpy as np
import logging
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from error_handlers import ErrorTag

logger = logging.getLogger(__name__)


@dataclass
class QualityMetrics:
    """Container for gate metrics. Sub-scores are 0..1, 1 = best."""
    blur_score: float
    glare_score: float
    brightness_score: float
    passed: bool
    reasons: List[str] = field(default_factory=list)
    laplacian_variance: float = 0.0  # Raw sharpness
    brightness: float = 0.0          # Mean luminance (0-255)
    glare_ratio: float = 0.0         # Share of saturated pixels

    @property
    def overall_score(self) -> float:
        """Mean of the sub-scores; diagnostic only."""
        return (self.blur_score + self.glare_score + self.brightness_score) / 3

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'blur_score': round(self.blur_score, 3),
            'glare_score': round(self.glare_score, 3),
            'brightness_score': round(self.brightness_score, 3),
            'overall_score': round(self.overall_score, 3),
            'passed': self.passed,
            'reasons': list(self.reasons),
            'laplacian_variance': round(self.laplacian_variance, 2),
            'brightness': round(self.brightness, 2),
            'glare_ratio': round(self.glare_ratio, 4),
        }


class QualityGate:
    """
    Frame quality gate.
    Every sub-score must clear the floor on its own for the frame to pass.
    """

    THRESHOLDS = {
        'blur_reference': 100.0,   # Laplacian variance giving a full blur score
        'min_brightness': 30.0,    # Accepted luminance band
        'max_brightness': 240.0,
        'glare_pixel': 250,        # Luminance counted as glare
        'glare_ceiling': 0.05,     # Glare share where the score reaches the floor
        'glare_zero': 0.15,        # Glare share where the score reaches 0
        'min_sub_score': 0.5,      # Floor for each sub-score
    }

    def __init__(self, thresholds: Optional[Dict] = None):
        """
        Initialize quality gate.

        Args:
            thresholds: Optional custom thresholds
        """
        self.thresholds = {**self.THRESHOLDS, **(thresholds or {})}
        logger.debug(f"QualityGate initialized: {self.thresholds}")

    def assess(self, image: np.ndarray) -> QualityMetrics:
        """
        Assess a frame.

        Args:
            image: BGR or grayscale image

        Returns:
            QualityMetrics with a quality-gate-reject reason per failed check
        """
        if image is None or image.size == 0:
            tag = ErrorTag.QUALITY_GATE_REJECT
            return QualityMetrics(0.0, 0.0, 0.0, False,
                                  [tag.with_reason(r) for r in ("blur", "glare", "brightness")])

        # cvtColor uses the 0.299/0.587/0.114 luminance weights
        if image.ndim == 3:
            code = cv2.COLOR_BGRA2GRAY if image.shape[2] == 4 else cv2.COLOR_BGR2GRAY
            luminance = cv2.cvtColor(image, code)
        else:
            luminance = image

        variance = float(cv2.Laplacian(luminance, cv2.CV_64F).var())
        mean = float(np.mean(luminance))
        glare_ratio = float(np.count_nonzero(luminance >= self.thresholds['glare_pixel'])) / luminance.size

        blur_score = self._blur_score(variance)
        brightness_score = self._brightness_score(mean)
        glare_score = self._glare_score(glare_ratio)

        floor = self.thresholds['min_sub_score']
        reasons = []
        if blur_score < floor:
            reasons.append(ErrorTag.QUALITY_GATE_REJECT.with_reason("blur"))
        if glare_score < floor:
            reasons.append(ErrorTag.QUALITY_GATE_REJECT.with_reason("glare"))
        if brightness_score < floor:
            reasons.append(ErrorTag.QUALITY_GATE_REJECT.with_reason("brightness"))

        metrics = QualityMetrics(
            blur_score=blur_score,
            glare_score=glare_score,
            brightness_score=brightness_score,
            passed=not reasons,
            reasons=reasons,
            laplacian_variance=variance,
            brightness=mean,
            glare_ratio=glare_ratio,
        )
        if reasons:
            logger.debug(f"Quality gate rejected frame: {reasons}")
        return metrics

    def _blur_score(self, variance: float) -> float:
        """Below half the reference variance the score drops under the floor."""
        return min(1.0, variance / self.thresholds['blur_reference'])

    def _brightness_score(self, mean: float) -> float:
        """1 inside the band, proportional and under the floor outside it."""
        low = self.thresholds['min_brightness']
        high = self.thresholds['max_brightness']
        if mean < low:
            return 0.5 * mean / low
        if mean > high:
            return 0.5 * (255.0 - mean) / (255.0 - high)
        return 1.0

    def _glare_score(self, ratio: float) -> float:
        """Proportional below the ceiling, under the floor above it."""
        ceiling = self.thresholds['glare_ceiling']
        zero = self.thresholds['glare_zero']
        if ratio <= ceiling:
            return 1.0 - 0.5 * ratio / ceiling
        return max(0.0, 0.5 * (zero - ratio) / (zero - ceiling))
