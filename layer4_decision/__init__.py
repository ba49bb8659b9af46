"""
Layer 4 — Decision
Category scoring, per-side frame buffers and the VALID / RETRY / INVALID
decision for each side and for the whole session.
"""
from .engine import (
    DecisionConfig,
    DecisionEngine,
    DecisionResult,
    FrameOutcome,
    ManualCaptureResult,
    SessionResult,
)
from .frame_buffer import BufferSnapshot, FrameBuffer, FrameEvidence
from .front_text import FrontTextAnalysis, FrontTextAnalyzer
from .scoring import (
    Decision,
    ScoreBreakdown,
    ScoringEngine,
    ScoringProfile,
    aspect_ratio_score,
    decide,
)

__all__ = [
    'DecisionConfig',
    'DecisionEngine',
    'DecisionResult',
    'FrameOutcome',
    'ManualCaptureResult',
    'SessionResult',
    'BufferSnapshot',
    'FrameBuffer',
    'FrameEvidence',
    'FrontTextAnalysis',
    'FrontTextAnalyzer',
    'Decision',
    'ScoreBreakdown',
    'ScoringEngine',
    'ScoringProfile',
    'aspect_ratio_score',
    'decide',
]
