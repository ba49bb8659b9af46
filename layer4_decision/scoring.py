"""
Layer 4 — Scoring
Category scores, the 0-100 total and the VALID / RETRY / INVALID thresholds.

Categories (profile maxima):
- aspect ratio fit          20
- front text plausibility   20
- MRZ structure             20
- MRZ checksums             30
- national id algorithm     10
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from error_handlers import ErrorTag
from layer1_capture.frame import DocumentSide
from layer2_readjustment import ID1_ASPECT_RATIO

logger = logging.getLogger(__name__)


class Decision(Enum):
    VALID = "VALID"
    RETRY = "RETRY"
    INVALID = "INVALID"

    @property
    def rank(self) -> int:
        """Higher is better."""
        return {Decision.INVALID: 0, Decision.RETRY: 1, Decision.VALID: 2}[self]


@dataclass(frozen=True)
class ScoringProfile:
    """Point budget and thresholds. One profile is used for a whole deployment."""
    aspect_ratio_max: int = 20
    front_text_max: int = 20
    mrz_structure_max: int = 20
    mrz_checksum_max: int = 30
    national_id_max: int = 10
    total_max: int = 100

    valid_threshold: int = 80
    retry_threshold: int = 50

    # Strict aspect window around the ID-1 ratio. Inside 1.55-1.62 the
    # deviation never exceeds 2.3%, so the 4% band and the floor only score
    # for profiles that widen the window.
    ideal_aspect_ratio: float = round(ID1_ASPECT_RATIO, 4)
    min_aspect_ratio: float = 1.55
    max_aspect_ratio: float = 1.62
    aspect_bands: Tuple[Tuple[float, int], ...] = ((0.01, 20), (0.02, 18), (0.03, 15), (0.04, 12))
    aspect_floor: int = 10


DEFAULT_PROFILE = ScoringProfile()


def decide(score: float, profile: ScoringProfile = DEFAULT_PROFILE) -> Decision:
    """Map a 0-100 score to a decision."""
    if score >= profile.valid_threshold:
        return Decision.VALID
    if score >= profile.retry_threshold:
        return Decision.RETRY
    return Decision.INVALID


@dataclass
class AspectRatioResult:
    measured: float
    deviation: float
    score: int
    is_valid: bool

    def to_dict(self) -> Dict:
        return {
            'measured': round(self.measured, 4),
            'deviation': round(self.deviation, 4),
            'score': self.score,
            'is_valid': self.is_valid,
        }


def aspect_ratio_score(ratio: Optional[float], profile: ScoringProfile = DEFAULT_PROFILE) -> AspectRatioResult:
    """
    Score how close the measured card ratio is to ID-1.

    Args:
        ratio: Long side over short side (values below 1 are inverted)
        profile: Scoring profile

    Returns:
        AspectRatioResult: 0 outside the window, deviation-banded inside it
    """
    if not ratio or ratio <= 0:
        return AspectRatioResult(0.0, 1.0, 0, False)

    measured = ratio if ratio >= 1 else 1.0 / ratio
    ideal = profile.ideal_aspect_ratio
    deviation = abs(measured - ideal) / ideal

    if not profile.min_aspect_ratio <= measured <= profile.max_aspect_ratio:
        return AspectRatioResult(measured, deviation, 0, False)

    score = profile.aspect_floor
    for limit, points in profile.aspect_bands:
        if deviation <= limit:
            score = points
            break
    return AspectRatioResult(measured, deviation, min(score, profile.aspect_ratio_max), True)


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-category points for one frame or one side."""
    aspect_ratio: int = 0
    front_text: int = 0
    mrz_structure: int = 0
    mrz_checksum: int = 0
    national_id: int = 0

    @property
    def total(self) -> int:
        raw = self.aspect_ratio + self.front_text + self.mrz_structure + self.mrz_checksum + self.national_id
        return max(0, min(DEFAULT_PROFILE.total_max, raw))

    def points_for(self, side: DocumentSide) -> int:
        """Raw points in the categories a side can earn."""
        if side is DocumentSide.FRONT:
            return self.aspect_ratio + self.front_text + self.national_id
        return self.aspect_ratio + self.mrz_structure + self.mrz_checksum + self.national_id

    @classmethod
    def merge(cls, front: "ScoreBreakdown", back: "ScoreBreakdown") -> "ScoreBreakdown":
        """Session breakdown: front text from the front, MRZ from the back."""
        return cls(
            aspect_ratio=max(front.aspect_ratio, back.aspect_ratio),
            front_text=front.front_text,
            mrz_structure=back.mrz_structure,
            mrz_checksum=back.mrz_checksum,
            national_id=max(front.national_id, back.national_id),
        )

    def to_dict(self) -> Dict:
        return {
            'aspect_ratio': self.aspect_ratio,
            'front_text': self.front_text,
            'mrz_structure': self.mrz_structure,
            'mrz_checksum': self.mrz_checksum,
            'national_id': self.national_id,
            'total': self.total,
        }


class ScoringEngine:
    """Builds clamped category breakdowns from layer 3 analyses"""

    def __init__(self, profile: Optional[ScoringProfile] = None):
        self.profile = profile or DEFAULT_PROFILE
        logger.debug(f"ScoringEngine initialized: {self.profile}")

    def _clamp(self, value, maximum) -> int:
        return int(max(0, min(maximum, value)))

    def breakdown(self, aspect_ratio=0, front_text=0, mrz_structure=0, mrz_checksum=0,
                  national_id_valid=False) -> ScoreBreakdown:
        p = self.profile
        return ScoreBreakdown(
            aspect_ratio=self._clamp(aspect_ratio, p.aspect_ratio_max),
            front_text=self._clamp(front_text, p.front_text_max),
            mrz_structure=self._clamp(mrz_structure, p.mrz_structure_max),
            mrz_checksum=self._clamp(mrz_checksum, p.mrz_checksum_max),
            national_id=p.national_id_max if national_id_valid else 0,
        )

    def score_aspect(self, ratio: Optional[float]) -> Tuple[AspectRatioResult, list]:
        result = aspect_ratio_score(ratio, self.profile)
        errors = [] if result.is_valid else [ErrorTag.ASPECT_RATIO_OUT_OF_TOLERANCE.value]
        return result, errors

    def decide(self, score: float) -> Decision:
        return decide(score, self.profile)

    def side_max(self, side: DocumentSide) -> int:
        """Points available to one side (front 50, back 80 with the default profile)."""
        p = self.profile
        if side is DocumentSide.FRONT:
            return p.aspect_ratio_max + p.front_text_max + p.national_id_max
        return p.aspect_ratio_max + p.mrz_structure_max + p.mrz_checksum_max + p.national_id_max

    def side_score(self, side: DocumentSide, breakdown: ScoreBreakdown) -> int:
        """
        Side total on the 0-100 scale.

        A side is scored over the categories it can earn, so front and back
        totals are comparable and the session score is their mean.
        """
        points = breakdown.points_for(side)
        return int(round(min(100.0, 100.0 * points / self.side_max(side))))
