"""
Error Handling System
Error tags for recoverable per-frame outcomes, plus the exception
hierarchy used at the HTTP boundary.
"""
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorTag(Enum):
    """Validation outcome tags carried by results instead of exceptions."""
    GEOMETRY_NOT_FOUND = "geometry-not-found"
    RECTIFICATION_FAILED = "rectification-failed"
    QUALITY_GATE_REJECT = "quality-gate-reject"
    MRZ_STRUCTURE_INVALID = "mrz-structure-invalid"
    MRZ_CHECKSUM_FAILED = "mrz-checksum-failed"
    NATIONAL_ID_ALGORITHM_FAILED = "national-id-algorithm-failed"
    ASPECT_RATIO_OUT_OF_TOLERANCE = "aspect-ratio-out-of-tolerance"
    INSUFFICIENT_CONSISTENT_FRAMES = "insufficient-consistent-frames"
    OCR_UNAVAILABLE = "ocr-unavailable"
    FRAME_UNSTABLE = "frame-unstable"

    # Front / back cross-checks
    NATIONAL_ID_MISMATCH = "national-id-mismatch"
    DOCUMENT_NUMBER_MISMATCH = "document-number-mismatch"

    # Front side heuristics
    FRONT_LOCALE_MARKER_MISSING = "front-locale-marker-missing"
    FRONT_NATIONAL_ID_MISSING = "front-national-id-missing"
    FRONT_NAME_PATTERN_MISSING = "front-name-pattern-missing"
    FRONT_DATE_PATTERN_MISSING = "front-date-pattern-missing"

    @property
    def is_recoverable(self) -> bool:
        """Everything except a missing OCR engine is fixed by collecting more frames."""
        return self is not ErrorTag.OCR_UNAVAILABLE

    def with_reason(self, reason: str) -> str:
        """Render the tag with a sub-reason, e.g. ``quality-gate-reject:blur``."""
        return f"{self.value}:{reason}"


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Capture
class CaptureError(ScannerError):
    """Frame intake errors"""
    pass


class InvalidFrameError(CaptureError):
    """Frame payload could not be decoded"""
    def __init__(self, reason=None):
        super().__init__(
            message="Frame could not be decoded",
            error_code="INVALID_FRAME",
            details={
                "reason": reason,
                "suggestion": "Send a base64 encoded JPEG or PNG image"
            }
        )


# Layer 3 Errors - Text recognition
class RecognitionError(ScannerError):
    """Text recognition errors"""
    pass


class OCRUnavailableError(RecognitionError):
    """OCR engine missing or failing"""
    def __init__(self, engine, reason=None):
        super().__init__(
            message=f"OCR engine '{engine}' is unavailable",
            error_code="OCR_UNAVAILABLE",
            details={
                "engine": engine,
                "reason": str(reason) if reason else None,
                "suggestion": "Install the ocr extra and check the tesseract binary"
            }
        )


# Layer 4 Errors - Session
class SessionError(ScannerError):
    """Capture session errors"""
    pass


class SessionStateError(SessionError):
    """Operation called in the wrong session mode"""
    def __init__(self, operation, mode):
        super().__init__(
            message=f"Cannot {operation} while session is {mode}",
            error_code="INVALID_SESSION_STATE",
            details={
                "operation": operation,
                "mode": mode,
                "suggestion": "Reset the session or capture the missing side first"
            }
        )


class InvalidSideError(SessionError):
    """Unknown document side requested"""
    def __init__(self, side):
        super().__init__(
            message=f"Unknown document side: {side}",
            error_code="INVALID_SIDE",
            details={
                "side": side,
                "suggestion": "Use 'front' or 'back'"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
