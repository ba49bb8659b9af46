"""
Layer 3 — National ID
Check-digit validation for the 11-digit Turkish identity number (TCKN).
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

NATIONAL_ID_LENGTH = 11

_DIGIT_RUN = re.compile(r"(?<!\d)\d{11}(?!\d)")
_DIGIT_GROUP = re.compile(r"\d+")
# Segments of digits joined only by whitespace or punctuation
_GROUPED_SEGMENT = re.compile(r"\d[\d \t.,:;/\\\-_|]*\d")


@dataclass
class NationalIdResult:
    """Outcome of one national id check."""
    is_valid: bool
    normalized: str = ""
    reason: Optional[str] = None

    def to_dict(self):
        return {
            'is_valid': self.is_valid,
            'normalized': self.normalized,
            'reason': self.reason,
        }


def compute_check_digits(first_nine: str) -> str:
    """
    Compute digits 10 and 11 for the first nine digits of an id.

    Args:
        first_nine: Nine digit string

    Returns:
        str: The two check digits
    """
    d = [int(c) for c in first_nine]
    odd_sum = d[0] + d[2] + d[4] + d[6] + d[8]
    even_sum = d[1] + d[3] + d[5] + d[7]
    d10 = (odd_sum * 7 - even_sum) % 10
    d11 = (sum(d) + d10) % 10
    return f"{d10}{d11}"


def validate_national_id(value) -> NationalIdResult:
    """
    Validate an identity number with both check digits.

    Args:
        value: Candidate; non-digit characters are stripped first

    Returns:
        NationalIdResult: validity, digits-only form and failure reason
    """
    digits = re.sub(r"\D", "", str(value or ""))

    if len(digits) != NATIONAL_ID_LENGTH:
        return NationalIdResult(False, digits, "length")
    if digits[0] == "0":
        return NationalIdResult(False, digits, "leading-zero")

    expected = compute_check_digits(digits[:9])
    if digits[9] != expected[0]:
        return NationalIdResult(False, digits, "digit-10")
    if digits[10] != str(sum(int(c) for c in digits[:10]) % 10):
        return NationalIdResult(False, digits, "digit-11")

    return NationalIdResult(True, digits)


def is_valid_national_id(value) -> bool:
    return validate_national_id(value).is_valid


def find_digit_runs(text: str) -> List[str]:
    """Contiguous 11-digit runs plus digit groups split by spaces or punctuation."""
    text = text or ""
    runs = [m.group(0) for m in _DIGIT_RUN.finditer(text)]

    for segment in _GROUPED_SEGMENT.finditer(text):
        groups = _DIGIT_GROUP.findall(segment.group(0))
        if len(groups) < 2:
            continue
        # Try every group boundary as the start of an id
        for start in range(len(groups)):
            joined = ""
            for group in groups[start:]:
                joined += group
                if len(joined) >= NATIONAL_ID_LENGTH:
                    break
            if len(joined) == NATIONAL_ID_LENGTH:
                runs.append(joined)
    return runs


def extract_candidates(text: str) -> List[str]:
    """
    Find national ids in free OCR text.

    Args:
        text: Raw OCR text

    Returns:
        list: Distinct candidates passing the full algorithm, in reading order
    """
    candidates = []
    for run in find_digit_runs(text):
        if run not in candidates and is_valid_national_id(run):
            candidates.append(run)

    if candidates:
        logger.debug(f"National id candidates: {candidates}")
    return candidates
