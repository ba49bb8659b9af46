"""
Layer 3 — MRZ and National ID
Checksum validation, correction, structure scoring and field parsing for
TD1 machine-readable zones, national id validation and OCR adapters.
"""
from .checksum import (
    Line2Score, ValidationScore, char_value, checksum, validate, validate_line2,
)
from .corrector import MRZCorrector, MRZLayout, correct
from .extractor import (
    MRZAnalysis, MRZExtractor, MRZFields, MRZStructure, parse_fields, parse_mrz_date,
)
from .national_id import (
    NationalIdResult, extract_candidates, is_valid_national_id, validate_national_id,
)
from .recognizer import (
    FastMRZRecognizer, TesseractRecognizer, TextRecognizer, create_recognizers,
)

__all__ = [
    'char_value',
    'checksum',
    'validate',
    'validate_line2',
    'ValidationScore',
    'Line2Score',
    'MRZCorrector',
    'MRZLayout',
    'correct',
    'MRZExtractor',
    'MRZAnalysis',
    'MRZFields',
    'MRZStructure',
    'parse_fields',
    'parse_mrz_date',
    'NationalIdResult',
    'validate_national_id',
    'is_valid_national_id',
    'extract_candidates',
    'TextRecognizer',
    'TesseractRecognizer',
    'FastMRZRecognizer',
    'create_recognizers',
]
