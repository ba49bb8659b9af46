"""
Layer 3 — MRZ Correction
Best-effort repair of OCR'd TD1 rows before checksum validation.

Passes:
1. Canonicalize to the MRZ alphabet (optical confusions, unknowns to filler)
2. Force known-constant positions (document type, issuing country, nationality)
3. Letter-to-digit confusion table on positions that are always numeric
4. Overwrite slices with trusted values from a companion read
5. Re-enforce the 30-character row length

Nothing is invented: every character is either read or explicitly supplied.
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .checksum import FILLER, LINE_LENGTH, MRZ_ALPHABET, enforce_length

logger = logging.getLogger(__name__)

# Pass 1: characters OCR commonly returns in place of MRZ glyphs
CANONICAL_MAP = {
    ' ': FILLER, '-': FILLER, '_': FILLER, '.': FILLER, ',': FILLER,
    '«': FILLER, '‹': FILLER, '(': FILLER, '[': FILLER,
    '|': 'I', '!': 'I',
}

# Pass 3: letters read where a digit must be
DIGIT_CONFUSIONS = {
    'O': '0', 'Q': '0',
    'I': '1', 'L': '1',
    'Z': '2',
    'E': '3',
    'A': '4',
    'S': '5',
    'G': '6',
    'T': '7',
    'B': '8',
}

# Lowercase glyphs are looked up on the raw read, before uppercasing
RAW_DIGIT_CONFUSIONS = {
    'g': '9', 'q': '9',
    'b': '6',
}


@dataclass
class MRZLayout:
    """Constant parts of the TD1 layout for one issuing state."""
    document_type: str = "I<"        # Row 1 [0:2]
    issuing_country: str = "TUR"     # Row 1 [2:5]
    nationality: str = "TUR"         # Row 2 [15:18]
    numeric_national_id: bool = True  # Row 2 [18:29] holds digits only

    def synthetic_line1(self) -> str:
        """Constant-only row 1 for reads that lost the first row."""
        return enforce_length(self.document_type + self.issuing_country)


# (row, start, end) slices that can only contain digits or filler
NUMERIC_SLICES = (
    (0, 14, 15),   # document number check
    (1, 0, 7),     # birth date + check
    (1, 8, 15),    # expiry date + check
    (1, 29, 30),   # composite check
)
NATIONAL_ID_SLICE = (1, 18, 29)
DOCUMENT_NUMBER_SLICE = (0, 5, 14)


Row = List[Tuple[str, str]]


class MRZCorrector:
    """
    Five-pass MRZ corrector.

    Correction is idempotent: feeding corrected rows back in returns them unchanged.
    """

    def __init__(self, layout: Optional[MRZLayout] = None):
        self.layout = layout or MRZLayout()
        logger.debug(f"MRZCorrector initialized: {self.layout}")

    def correct(self, rows: Sequence[str],
                known_national_id: Optional[str] = None,
                known_document_number: Optional[str] = None) -> List[str]:
        """
        Correct OCR'd MRZ rows.

        Args:
            rows: Two or three OCR rows; with two, row 1 is synthesized
            known_national_id: Trusted 11-digit id from the front side
            known_document_number: Trusted document number from the front side

        Returns:
            list: Three 30-character rows, or the canonicalized input when
            fewer than two rows were read
        """
        rows = [str(r or "") for r in rows]
        if not rows:
            return []

        if len(rows) < 2:
            # Without row order nothing positional can be applied
            return [self._join(self.canonicalize(r)) for r in rows]

        if len(rows) == 2:
            logger.debug("Two MRZ rows read, synthesizing row 1")
            rows = [self.layout.synthetic_line1()] + rows
        rows = rows[:3]

        lines = [self.canonicalize(r) for r in rows]
        self._force_constants(lines)
        self._force_digits(lines)
        self._inject_known(lines, known_national_id, known_document_number)

        corrected = [enforce_length(self._join(line)) for line in lines]
        if corrected != [enforce_length(r.strip()) for r in rows]:
            logger.debug(f"MRZ corrected: {rows} -> {corrected}")
        return corrected

    # Pass 1
    def canonicalize(self, line: str) -> Row:
        """Map a raw row to (canonical, raw) character pairs of fixed length."""
        pairs = []
        for raw in line.strip():
            c = CANONICAL_MAP.get(raw, raw.upper())
            if c not in MRZ_ALPHABET:
                c = FILLER
            pairs.append((c, raw))

        pairs = pairs[:LINE_LENGTH]
        pairs += [(FILLER, FILLER)] * (LINE_LENGTH - len(pairs))
        return pairs

    # Pass 2
    def _force_constants(self, lines: List[Row]):
        layout = self.layout
        self._overwrite(lines[0], 0, layout.document_type[:2])
        self._overwrite(lines[0], 2, layout.issuing_country[:3])
        self._overwrite(lines[1], 15, layout.nationality[:3])

    # Pass 3
    def _force_digits(self, lines: List[Row]):
        slices = list(NUMERIC_SLICES)
        if self.layout.numeric_national_id:
            slices.append(NATIONAL_ID_SLICE)

        for row, start, end in slices:
            line = lines[row]
            for i in range(start, end):
                c, raw = line[i]
                line[i] = (self.force_digit(c, raw), raw)

    @staticmethod
    def force_digit(c: str, raw: str = "") -> str:
        """Resolve one character in a numeric position; unknown letters stay as read."""
        if c.isdigit() or c == FILLER:
            return c
        if raw in RAW_DIGIT_CONFUSIONS:
            return RAW_DIGIT_CONFUSIONS[raw]
        return DIGIT_CONFUSIONS.get(c, c)

    # Pass 4
    def _inject_known(self, lines: List[Row], national_id, document_number):
        if national_id:
            digits = re.sub(r"\D", "", str(national_id))
            if len(digits) == 11:
                row, start, _ = NATIONAL_ID_SLICE
                self._overwrite(lines[row], start, digits)
            else:
                logger.debug(f"Ignoring known national id of length {len(digits)}")

        if document_number:
            cleaned = "".join(c for c in str(document_number).upper() if c.isalnum() and c in MRZ_ALPHABET)
            row, start, end = DOCUMENT_NUMBER_SLICE
            if 7 <= len(cleaned) <= end - start:
                self._overwrite(lines[row], start, cleaned.ljust(end - start, FILLER))
            else:
                logger.debug(f"Ignoring known document number '{cleaned}'")

    @staticmethod
    def _overwrite(line: Row, start: int, value: str):
        for offset, c in enumerate(value):
            line[start + offset] = (c, c)

    @staticmethod
    def _join(line: Row) -> str:
        return "".join(c for c, _ in line)


def correct(rows: Sequence[str],
            known_national_id: Optional[str] = None,
            known_document_number: Optional[str] = None) -> List[str]:
    """Correct rows with the default layout."""
    return MRZCorrector().correct(rows, known_national_id, known_document_number)
