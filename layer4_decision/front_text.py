"""
Layer 4 — Front Text Plausibility
Heuristics over the OCR text of the card front: issuing-state markers,
a validated national id, uppercase share, name-like lines and dates.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from error_handlers import ErrorTag
from layer3_mrz.national_id import extract_candidates, find_digit_runs

logger = logging.getLogger(__name__)

TURKISH_FOLD = str.maketrans({
    'İ': 'I', 'Ş': 'S', 'Ğ': 'G', 'Ü': 'U', 'Ö': 'O', 'Ç': 'C',
})

DATE_PATTERN = re.compile(r"\b(\d{2})[./](\d{2})[./](\d{4})\b")
DOCUMENT_NUMBER_PATTERN = re.compile(r"\b[A-Z]\d{2}[A-Z]\d{5}\b")


def fold_turkish(text: str) -> str:
    """Uppercase and fold Turkish letters to ASCII."""
    return (text or "").upper().translate(TURKISH_FOLD)


@dataclass
class FrontTextAnalysis:
    """Front side plausibility for one frame."""
    score: int = 0
    locale_marker_found: bool = False
    national_id: Optional[str] = None
    invalid_candidate: bool = False
    uppercase_ratio: float = 0.0
    name_pattern_found: bool = False
    date_pattern_found: bool = False
    birth_date: Optional[str] = None
    document_number: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def national_id_valid(self) -> bool:
        return self.national_id is not None

    def fields(self) -> Dict:
        return {
            'national_id': self.national_id,
            'document_number': self.document_number,
            'birth_date': self.birth_date,
        }

    def to_dict(self) -> Dict:
        return {
            'score': self.score,
            'locale_marker_found': self.locale_marker_found,
            'national_id': self.national_id,
            'national_id_valid': self.national_id_valid,
            'uppercase_ratio': round(self.uppercase_ratio, 3),
            'name_pattern_found': self.name_pattern_found,
            'date_pattern_found': self.date_pattern_found,
            'document_number': self.document_number,
            'birth_date': self.birth_date,
            'errors': list(self.errors),
        }


class FrontTextAnalyzer:
    """
    Scores front side OCR text (0-20).

    A national id only earns points once it passes the check-digit
    algorithm; an 11-digit read that fails it earns nothing.
    """

    LOCALE_MARKERS = ("TURKIYE", "TORKIYE", "T.C.", "TC ", " TC", "CUMHURIYET", "KIMLIK", "NUFUS")

    POINTS = {
        'text_present': 4,
        'locale_marker': 5,
        'national_id': 6,
        'uppercase': 2,
        'name_pattern': 2,
        'date_pattern': 1,
    }

    THRESHOLDS = {
        'min_text_length': 10,
        'min_uppercase_ratio': 0.5,
        'name_min_letters': 3,
        'name_max_digits': 1,
        'name_min_uppercase': 0.5,
    }

    def __init__(self, locale_markers: Optional[Sequence[str]] = None, thresholds: Optional[Dict] = None):
        self.locale_markers = tuple(locale_markers or self.LOCALE_MARKERS)
        self.thresholds = {**self.THRESHOLDS, **(thresholds or {})}

    def analyze(self, lines: Sequence[str]) -> FrontTextAnalysis:
        """
        Analyze OCR lines from the card front.

        Args:
            lines: OCR text lines

        Returns:
            FrontTextAnalysis with its score and one tag per missing check
        """
        lines = [line for line in (lines or []) if line and line.strip()]
        text = "\n".join(lines)
        result = FrontTextAnalysis()
        points = self.POINTS

        if len(text.strip()) >= self.thresholds['min_text_length']:
            result.score += points['text_present']

        folded = fold_turkish(text)
        padded = f" {' '.join(folded.split())} "
        if any(marker in padded for marker in self.locale_markers):
            result.locale_marker_found = True
            result.score += points['locale_marker']
        else:
            result.errors.append(ErrorTag.FRONT_LOCALE_MARKER_MISSING.value)

        candidates = extract_candidates(text)
        if candidates:
            result.national_id = candidates[0]
            result.score += points['national_id']
        elif any(len(run) == 11 for run in find_digit_runs(text)):
            result.invalid_candidate = True
            result.errors.append(ErrorTag.NATIONAL_ID_ALGORITHM_FAILED.value)
        else:
            result.errors.append(ErrorTag.FRONT_NATIONAL_ID_MISSING.value)

        letters = [c for c in text if c.isalpha()]
        if letters:
            result.uppercase_ratio = sum(1 for c in letters if c.isupper()) / len(letters)
        if result.uppercase_ratio > self.thresholds['min_uppercase_ratio']:
            result.score += points['uppercase']

        if any(self._is_name_line(line) for line in lines):
            result.name_pattern_found = True
            result.score += points['name_pattern']
        else:
            result.errors.append(ErrorTag.FRONT_NAME_PATTERN_MISSING.value)

        date_match = DATE_PATTERN.search(text)
        if date_match:
            result.date_pattern_found = True
            result.birth_date = date_match.group(0)
            result.score += points['date_pattern']
        else:
            result.errors.append(ErrorTag.FRONT_DATE_PATTERN_MISSING.value)

        number_match = DOCUMENT_NUMBER_PATTERN.search(folded)
        if number_match:
            result.document_number = number_match.group(0)

        result.score = min(20, result.score)
        logger.debug(f"Front text score {result.score}: {result.errors}")
        return result

    def _is_name_line(self, line: str) -> bool:
        letters = [c for c in line if c.isalpha()]
        digits = sum(1 for c in line if c.isdigit())
        if len(letters) < self.thresholds['name_min_letters'] or digits > self.thresholds['name_max_digits']:
            return False
        upper = sum(1 for c in letters if c.isupper())
        return upper / len(letters) > self.thresholds['name_min_uppercase']
