"""
Layer 4 — Frame Buffer
Bounded per-side evidence buffer. Only the worker writes; readers take
immutable snapshots.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from layer1_capture.frame import DocumentSide

from .scoring import ScoreBreakdown

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameEvidence:
    """Scored evidence extracted from one frame."""
    score: int
    timestamp: float = field(default_factory=time.time)
    side: DocumentSide = DocumentSide.FRONT
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    fields: Dict = field(default_factory=dict)
    quality_passed: bool = True
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return {
            'score': self.score,
            'timestamp': self.timestamp,
            'side': self.side.value,
            'breakdown': self.breakdown.to_dict(),
            'fields': dict(self.fields),
            'quality_passed': self.quality_passed,
            'errors': list(self.errors),
        }


@dataclass(frozen=True)
class BufferSnapshot:
    """Read-only view of a buffer at one point in time."""
    count: int
    capacity: int
    required_frames: int
    mean_score: float
    best_score: int
    stability: float
    has_enough_frames: bool

    def to_dict(self) -> Dict:
        return {
            'count': self.count,
            'capacity': self.capacity,
            'required_frames': self.required_frames,
            'mean_score': round(self.mean_score, 2),
            'best_score': self.best_score,
            'stability': round(self.stability, 3),
            'has_enough_frames': self.has_enough_frames,
        }


class FrameBuffer:
    """
    FIFO of the most recent frame evidence for one document side.
    """

    def __init__(self, capacity: int = 10, required_frames: int = 3,
                 consistency_window: int = 3, reference_variance: float = 400.0):
        """
        Initialize frame buffer.

        Args:
            capacity: Maximum records kept; the oldest is evicted first
            required_frames: Records needed before a side can be final
            consistency_window: Records checked by has_consistent_quality
            reference_variance: Score variance that maps to zero stability
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.required_frames = required_frames
        self.consistency_window = consistency_window
        self.reference_variance = reference_variance
        self._records = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add(self, evidence: FrameEvidence):
        with self._lock:
            self._records.append(evidence)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def count(self) -> int:
        return len(self)

    def records(self) -> List[FrameEvidence]:
        """Copy of the buffered records, oldest first."""
        with self._lock:
            return list(self._records)

    def has_enough_frames(self) -> bool:
        return len(self) >= self.required_frames

    def best(self) -> Optional[FrameEvidence]:
        """Highest-scoring record; the earliest wins ties."""
        records = self.records()
        if not records:
            return None
        return max(records, key=lambda r: r.score)

    def mean_score(self) -> float:
        records = self.records()
        if not records:
            return 0.0
        return float(np.mean([r.score for r in records]))

    def recent(self, k: int) -> List[FrameEvidence]:
        """The last k records, oldest first."""
        if k <= 0:
            return []
        return self.records()[-k:]

    def has_consistent_quality(self, min_score: float) -> bool:
        """True if the last K records all score at least min_score."""
        window = self.recent(self.consistency_window)
        return len(window) >= self.consistency_window and all(r.score >= min_score for r in window)

    def stability(self) -> float:
        """1 - variance / reference variance, clamped to [0, 1]."""
        return self._stability([r.score for r in self.records()])

    def _stability(self, scores: List[int]) -> float:
        if not scores:
            return 0.0
        variance = float(np.var(scores))
        return float(np.clip(1.0 - variance / self.reference_variance, 0.0, 1.0))

    def clear(self):
        with self._lock:
            self._records.clear()

    def snapshot(self) -> BufferSnapshot:
        scores = [r.score for r in self.records()]
        return BufferSnapshot(
            count=len(scores),
            capacity=self.capacity,
            required_frames=self.required_frames,
            mean_score=float(np.mean(scores)) if scores else 0.0,
            best_score=max(scores) if scores else 0,
            stability=self._stability(scores),
            has_enough_frames=len(scores) >= self.required_frames,
        )
