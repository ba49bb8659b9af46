"""
Layer 1 — Capture
Frame intake, the quality gate and the keep-latest auto-capture loop.
"""
from .auto_capture import AutoCaptureEngine, CaptureConfig, CaptureEvent, CaptureStatus
from .frame import CaptureState, DocumentSide, Frame, SessionMode
from .quality import QualityGate, QualityMetrics

__all__ = [
    'AutoCaptureEngine',
    'CaptureConfig',
    'CaptureEvent',
    'CaptureStatus',
    'CaptureState',
    'DocumentSide',
    'Frame',
    'SessionMode',
    'QualityGate',
    'QualityMetrics',
]
