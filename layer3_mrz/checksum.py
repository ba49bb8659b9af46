"""
Layer 3 — MRZ Checksum
ICAO 9303 check digits for the TD1 (3 x 30) layout.

Row 1: type(2) country(3) document number(9) check(1) optional(15)
Row 2: birth date(6) check(1) sex(1) expiry(6) check(1) nationality(3)
       optional/national id(11) composite check(1)
Row 3: surname << given names, filler padded
"""
import logging
import string
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from error_handlers import ErrorTag

from .national_id import validate_national_id

logger = logging.getLogger(__name__)

FILLER = "<"
LINE_LENGTH = 30
LINE_COUNT = 3
MRZ_ALPHABET = frozenset(string.ascii_uppercase + string.digits + FILLER)
WEIGHTS = (7, 3, 1)

CHECKED_FIELDS = ("document_number", "birth_date", "expiry_date", "composite")


def char_value(c: str) -> int:
    """Numeric value of an MRZ character; fillers and unknown characters count as 0."""
    if c in string.digits:
        return int(c)
    if c in string.ascii_uppercase:
        return ord(c) - ord("A") + 10
    return 0


def checksum(data: str) -> int:
    """7-3-1 weighted sum of the character values, modulo 10."""
    total = 0
    for i, c in enumerate(data):
        total += char_value(c) * WEIGHTS[i % 3]
    return total % 10


def check_digit_matches(data: str, declared: str) -> bool:
    """Compare a computed check digit with the declared one."""
    return len(declared) == 1 and declared in string.digits and checksum(data) == int(declared)


def enforce_length(line: str, length: int = LINE_LENGTH) -> str:
    """Truncate or filler-pad a row to the fixed MRZ width."""
    return line[:length].ljust(length, FILLER)


def normalize_rows(rows: Sequence[str]) -> List[str]:
    """Pad the row list to three rows and every row to 30 characters."""
    rows = [str(r or "") for r in list(rows)[:LINE_COUNT]]
    rows += [""] * (LINE_COUNT - len(rows))
    return [enforce_length(r.strip()) for r in rows]


def composite_data(rows: Sequence[str]) -> str:
    """Characters covered by the TD1 composite check digit."""
    line1, line2 = rows[0], rows[1]
    return line1[5:30] + line2[0:7] + line2[8:15] + line2[18:29]


@dataclass
class ValidationScore:
    """Per-field checksum outcome for one MRZ read."""
    document_number_valid: bool = False
    birth_date_valid: bool = False
    expiry_date_valid: bool = False
    composite_valid: bool = False
    max_points: int = 30
    rows: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return sum(1 for name in CHECKED_FIELDS if getattr(self, f"{name}_valid"))

    @property
    def points_per_field(self) -> float:
        return self.max_points / len(CHECKED_FIELDS)

    @property
    def total(self) -> int:
        return int(self.valid_count * self.points_per_field)

    @property
    def field_points(self) -> Dict[str, float]:
        return {
            name: self.points_per_field if getattr(self, f"{name}_valid") else 0.0
            for name in CHECKED_FIELDS
        }

    @property
    def is_valid(self) -> bool:
        """At least two checks pass and one of them anchors the identity."""
        return self.valid_count >= 2 and (self.document_number_valid or self.birth_date_valid)

    @property
    def all_valid(self) -> bool:
        return self.valid_count == len(CHECKED_FIELDS)

    def to_dict(self) -> Dict:
        return {
            'document_number_valid': self.document_number_valid,
            'birth_date_valid': self.birth_date_valid,
            'expiry_date_valid': self.expiry_date_valid,
            'composite_valid': self.composite_valid,
            'total': self.total,
            'max_points': self.max_points,
            'rows': list(self.rows),
            'errors': list(self.errors),
        }


def validate(rows: Sequence[str], max_points: int = 30) -> ValidationScore:
    """
    Check the document number, birth date, expiry date and composite digits.

    Args:
        rows: OCR rows (missing rows and short rows are filler padded)
        max_points: Checksum point budget shared equally by the four checks

    Returns:
        ValidationScore with the padded rows and one tag per failed check
    """
    lines = normalize_rows(rows)
    line1, line2 = lines[0], lines[1]

    score = ValidationScore(max_points=max_points, rows=lines)
    score.document_number_valid = check_digit_matches(line1[5:14], line1[14])
    score.birth_date_valid = check_digit_matches(line2[0:6], line2[6])
    score.expiry_date_valid = check_digit_matches(line2[8:14], line2[14])
    score.composite_valid = check_digit_matches(composite_data(lines), line2[29])

    for name in CHECKED_FIELDS:
        if not getattr(score, f"{name}_valid"):
            score.errors.append(ErrorTag.MRZ_CHECKSUM_FAILED.with_reason(name.replace("_", "-")))

    logger.debug(
        f"MRZ checksums: doc={score.document_number_valid} dob={score.birth_date_valid} "
        f"exp={score.expiry_date_valid} composite={score.composite_valid} -> {score.total}"
    )
    return score


@dataclass
class Line2Score:
    """Row 2 checks for reads where only the data row is legible."""
    birth_date_valid: bool = False
    expiry_date_valid: bool = False
    national_id_valid: bool = False
    national_id: str = ""
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return 10 * sum([self.birth_date_valid, self.expiry_date_valid, self.national_id_valid])

    def to_dict(self) -> Dict:
        return {
            'birth_date_valid': self.birth_date_valid,
            'expiry_date_valid': self.expiry_date_valid,
            'national_id_valid': self.national_id_valid,
            'national_id': self.national_id,
            'total': self.total,
            'errors': list(self.errors),
        }


def validate_line2(line2: str) -> Line2Score:
    """Validate birth date, expiry date and the embedded national id of row 2."""
    line2 = enforce_length((line2 or "").strip())
    result = Line2Score()
    result.birth_date_valid = check_digit_matches(line2[0:6], line2[6])
    result.expiry_date_valid = check_digit_matches(line2[8:14], line2[14])
    result.national_id = line2[18:29].replace(FILLER, "")
    result.national_id_valid = validate_national_id(result.national_id).is_valid

    if not result.birth_date_valid:
        result.errors.append(ErrorTag.MRZ_CHECKSUM_FAILED.with_reason("birth-date"))
    if not result.expiry_date_valid:
        result.errors.append(ErrorTag.MRZ_CHECKSUM_FAILED.with_reason("expiry-date"))
    if not result.national_id_valid:
        result.errors.append(ErrorTag.NATIONAL_ID_ALGORITHM_FAILED.value)
    return result
