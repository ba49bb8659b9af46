"""
Layer 3 — MRZ Extraction
Component: MRZ extractor
Responsibility: Pick MRZ rows out of raw OCR lines, score their structure,
correct and validate them, and parse the identity fields.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from error_handlers import ErrorTag

from .checksum import (
    FILLER, LINE_COUNT, LINE_LENGTH, MRZ_ALPHABET,
    Line2Score, ValidationScore, enforce_length, validate, validate_line2,
)
from .corrector import CANONICAL_MAP, MRZCorrector, MRZLayout
from .national_id import validate_national_id

logger = logging.getLogger(__name__)


def clean_line(text: str) -> Tuple[str, int]:
    """
    Uppercase an OCR line and map optical confusions to MRZ characters.

    Returns:
        tuple: (cleaned line, number of characters dropped as foreign)
    """
    cleaned = []
    dropped = 0
    for raw in (text or "").strip():
        c = CANONICAL_MAP.get(raw, raw.upper())
        if c in MRZ_ALPHABET:
            cleaned.append(c)
        else:
            dropped += 1
    return "".join(cleaned), dropped


@dataclass
class MRZStructure:
    """Structural plausibility of the MRZ rows found in one read."""
    rows: List[str] = field(default_factory=list)
    raw_lengths: List[int] = field(default_factory=list)
    score: int = 0
    fallback: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)

    @property
    def filler_ratio(self) -> float:
        total = sum(len(r) for r in self.rows)
        if total == 0:
            return 0.0
        return sum(r.count(FILLER) for r in self.rows) / total

    def to_dict(self) -> Dict:
        return {
            'rows': list(self.rows),
            'row_count': self.row_count,
            'score': self.score,
            'filler_ratio': round(self.filler_ratio, 3),
            'fallback': self.fallback,
            'errors': list(self.errors),
        }


@dataclass
class MRZFields:
    """Identity fields parsed from corrected TD1 rows."""
    document_type: str = ""
    issuing_country: str = ""
    document_number: str = ""
    birth_date: Optional[str] = None
    sex: str = ""
    expiry_date: Optional[str] = None
    nationality: str = ""
    national_id: str = ""
    surname: str = ""
    given_names: str = ""

    def to_dict(self) -> Dict:
        return {
            'document_type': self.document_type,
            'issuing_country': self.issuing_country,
            'document_number': self.document_number,
            'birth_date': self.birth_date,
            'sex': self.sex,
            'expiry_date': self.expiry_date,
            'nationality': self.nationality,
            'national_id': self.national_id,
            'surname': self.surname,
            'given_names': self.given_names,
        }


@dataclass
class MRZAnalysis:
    """Everything the back side contributes for one frame."""
    structure: MRZStructure
    corrected_rows: List[str]
    validation: ValidationScore
    line2: Optional[Line2Score] = None
    fields: Optional[MRZFields] = None
    national_id_valid: bool = False

    @property
    def errors(self) -> List[str]:
        errors = list(self.structure.errors) + list(self.validation.errors)
        if not self.national_id_valid:
            errors.append(ErrorTag.NATIONAL_ID_ALGORITHM_FAILED.value)
        return errors

    def to_dict(self) -> Dict:
        return {
            'structure': self.structure.to_dict(),
            'corrected_rows': list(self.corrected_rows),
            'validation': self.validation.to_dict(),
            'line2': self.line2.to_dict() if self.line2 else None,
            'fields': self.fields.to_dict() if self.fields else None,
            'national_id_valid': self.national_id_valid,
        }


def parse_mrz_date(value: str, expiry: bool = False, today: Optional[date] = None) -> Optional[str]:
    """
    Convert a YYMMDD MRZ date to ISO format.

    Birth dates in the future fall back one century; expiry dates are 20YY.

    Args:
        value: Six-digit MRZ date
        expiry: True for expiry dates
        today: Reference date (defaults to today)

    Returns:
        str: YYYY-MM-DD, or None when the date is malformed
    """
    if not value or len(value) != 6 or not value.isdigit():
        return None

    yy, mm, dd = int(value[0:2]), int(value[2:4]), int(value[4:6])
    today = today or date.today()
    year = 2000 + yy
    if not expiry and year > today.year:
        year -= 100

    try:
        return date(year, mm, dd).isoformat()
    except ValueError:
        return None


def parse_fields(rows: Sequence[str], today: Optional[date] = None) -> MRZFields:
    """Parse identity fields from three corrected rows."""
    lines = [enforce_length(r) for r in list(rows)[:LINE_COUNT]]
    lines += [FILLER * LINE_LENGTH] * (LINE_COUNT - len(lines))
    line1, line2, line3 = lines

    names = line3.split(FILLER * 2, 1)
    surname = names[0].replace(FILLER, " ").strip()
    given_names = names[1].replace(FILLER, " ").strip() if len(names) > 1 else ""
    given_names = " ".join(given_names.split())

    return MRZFields(
        document_type=line1[0:2].replace(FILLER, ""),
        issuing_country=line1[2:5].replace(FILLER, ""),
        document_number=line1[5:14].replace(FILLER, ""),
        birth_date=parse_mrz_date(line2[0:6], today=today),
        sex=line2[7].replace(FILLER, ""),
        expiry_date=parse_mrz_date(line2[8:14], expiry=True, today=today),
        nationality=line2[15:18].replace(FILLER, ""),
        national_id=line2[18:29].replace(FILLER, ""),
        surname=surname,
        given_names=given_names,
    )


class MRZExtractor:
    """Turns raw OCR lines from the MRZ region into a scored MRZ analysis"""

    THRESHOLDS = {
        'min_line_length': 15,        # Shorter lines are never MRZ rows
        'min_valid_ratio': 0.6,       # Share of MRZ alphabet characters
        'fallback_upper_ratio': 0.7,  # Uppercase/filler share for fallback rows
        'filler_min': 0.15,           # Expected filler band across the rows
        'filler_max': 0.40,
    }

    # Structural points, 20 in total
    POINTS = {
        'rows_3': 8,
        'rows_2': 6,
        'rows_1': 3,
        'length_all': 6,
        'length_some': 3,
        'charset': 3,
        'filler_ratio': 3,
        'fallback_per_row': 3,
        'fallback_max': 10,
    }

    MAX_SCORE = 20

    def __init__(self, layout: Optional[MRZLayout] = None, checksum_points: int = 30,
                 thresholds: Optional[Dict] = None):
        """
        Initialize MRZ extractor

        Args:
            layout: Constant TD1 positions for the issuing state
            checksum_points: Point budget of the checksum category
            thresholds: Optional overrides for THRESHOLDS
        """
        self.layout = layout or MRZLayout()
        self.corrector = MRZCorrector(self.layout)
        self.checksum_points = checksum_points
        self.thresholds = {**self.THRESHOLDS, **(thresholds or {})}
        logger.debug(f"MRZExtractor initialized (checksum budget {checksum_points})")

    def looks_like_mrz(self, line: str) -> bool:
        """Quick plausibility check on a cleaned line."""
        if len(line) < self.thresholds['min_line_length']:
            return False
        valid = sum(1 for c in line if c in MRZ_ALPHABET)
        has_upper = any(c.isupper() for c in line)
        has_filler_or_digit = FILLER in line or any(c.isdigit() for c in line)
        return valid / len(line) >= self.thresholds['min_valid_ratio'] and has_upper and has_filler_or_digit

    def select_rows(self, raw_lines: Sequence[str]) -> Tuple[List[Tuple[str, int]], bool]:
        """
        Pick up to three MRZ rows from OCR output.

        Returns:
            tuple: ([(cleaned row, dropped count)], fallback flag)
        """
        cleaned = [clean_line(line) for line in raw_lines if line and line.strip()]

        candidates = []
        seen = set()
        for line, dropped in cleaned:
            if self.looks_like_mrz(line) and line not in seen:
                seen.add(line)
                candidates.append((line, dropped))
        if candidates:
            return candidates[:LINE_COUNT], False

        # Nothing MRZ-like: keep the longest mostly-uppercase lines
        fallback = []
        for line, dropped in cleaned:
            if not line or line in seen:
                continue
            upper = sum(1 for c in line if c.isupper() or c == FILLER)
            if upper / len(line) > self.thresholds['fallback_upper_ratio']:
                seen.add(line)
                fallback.append((line, dropped))
        fallback.sort(key=lambda item: len(item[0]), reverse=True)
        return fallback[:LINE_COUNT], True

    def score_structure(self, raw_lines: Sequence[str]) -> MRZStructure:
        """
        Score row count, row length, character set and filler ratio (0-20).

        Args:
            raw_lines: OCR lines in reading order

        Returns:
            MRZStructure with the 30-character rows and structural error tags
        """
        selected, fallback = self.select_rows(raw_lines)
        structure = MRZStructure(
            rows=[enforce_length(line) for line, _ in selected],
            raw_lengths=[len(line) for line, _ in selected],
            fallback=fallback,
        )
        tag = ErrorTag.MRZ_STRUCTURE_INVALID

        if fallback or not selected:
            points = self.POINTS
            structure.score = min(points['fallback_max'], points['fallback_per_row'] * len(selected))
            structure.errors.append(tag.with_reason("row-count"))
            logger.debug(f"MRZ rows not found, fallback rows: {len(selected)}")
            return structure

        score = 0
        count = structure.row_count
        if count >= 3:
            score += self.POINTS['rows_3']
        else:
            score += self.POINTS['rows_2'] if count == 2 else self.POINTS['rows_1']
            structure.errors.append(tag.with_reason("row-count"))

        exact = [n == LINE_LENGTH for n in structure.raw_lengths]
        if all(exact):
            score += self.POINTS['length_all']
        else:
            if any(exact):
                score += self.POINTS['length_some']
            structure.errors.append(tag.with_reason("row-length"))

        if all(dropped == 0 for _, dropped in selected):
            score += self.POINTS['charset']
        else:
            structure.errors.append(tag.with_reason("charset"))

        if self.thresholds['filler_min'] <= structure.filler_ratio <= self.thresholds['filler_max']:
            score += self.POINTS['filler_ratio']
        else:
            structure.errors.append(tag.with_reason("filler-ratio"))

        structure.score = min(self.MAX_SCORE, score)
        return structure

    def analyze(self, raw_lines: Sequence[str],
                known_national_id: Optional[str] = None,
                known_document_number: Optional[str] = None) -> MRZAnalysis:
        """
        Full back-side text analysis for one frame.

        Args:
            raw_lines: OCR lines from the MRZ region
            known_national_id: Validated id from the front side, if any
            known_document_number: Document number read on the front side, if any

        Returns:
            MRZAnalysis: structure, corrected rows, checksums and parsed fields
        """
        structure = self.score_structure(raw_lines)
        rows = structure.rows if not structure.fallback else []

        corrected = self.corrector.correct(rows, known_national_id, known_document_number)
        if len(corrected) < 2:
            validation = validate([], self.checksum_points)
            return MRZAnalysis(structure=structure, corrected_rows=corrected, validation=validation)

        validation = validate(corrected, self.checksum_points)
        line2 = validate_line2(corrected[1])
        fields = parse_fields(corrected)
        national_id_valid = validate_national_id(fields.national_id).is_valid

        if validation.all_valid:
            logger.info(f"✓ MRZ checksums valid for document {fields.document_number}")

        return MRZAnalysis(
            structure=structure,
            corrected_rows=corrected,
            validation=validation,
            line2=line2,
            fields=fields,
            national_id_valid=national_id_valid,
        )
