"""
Layer 4 — Decision Engine
Per-frame evaluation, multi-frame evidence per document side, manual
capture and the combined front + back session result.

Pipeline per frame:
1. Geometry normalization (Layer 2)
2. Quality gate (Layer 1): OCR never runs on a rejected frame
3. Frame-to-frame stability
4. OCR on selected regions (Layer 3 recognizers)
5. Front text or MRZ analysis, scoring, buffering, side finalization
"""
import logging
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Callable, ContextManager, Dict, List, Optional, Sequence

import numpy as np

from error_handlers import ErrorTag, OCRUnavailableError, SessionStateError
from layer1_capture.frame import CaptureState, DocumentSide, Frame, SessionMode
from layer1_capture.quality import QualityGate, QualityMetrics
from layer2_readjustment import CardGeometry, GeometryNormalizer, NormalizedCard, RegionId
from layer3_mrz import MRZAnalysis, MRZExtractor, TextRecognizer

from .frame_buffer import BufferSnapshot, FrameBuffer, FrameEvidence
from .front_text import FrontTextAnalyzer
from .scoring import Decision, ScoreBreakdown, ScoringEngine, ScoringProfile

logger = logging.getLogger(__name__)

CommitGuard = Callable[[], ContextManager[bool]]


def always_commit() -> ContextManager[bool]:
    """Commit guard for callers that never cancel."""
    return nullcontext(True)


@dataclass
class DecisionConfig:
    """Configuration for the decision engine."""
    # Frame buffer
    buffer_capacity: int = 10
    required_frames: int = 3
    consistency_window: int = 3

    # Stability gate between consecutive normalized frames
    min_stability_front: float = 0.15
    min_stability_back: float = 0.20

    # Manual capture (own sub-score points)
    manual_front_threshold: int = 20          # Of aspect + front text + national id (50)
    manual_front_threshold_aligned: int = 18  # Same, when the aspect ratio scored >= 10
    manual_front_aspect_floor: int = 10
    manual_back_threshold: int = 20           # Of MRZ structure + checksum (50)
    manual_min_quality: float = 0.4           # Front: any one sub-score above this


@dataclass
class DecisionResult:
    """Decision for one frame, one side, or the whole session."""
    decision: Decision
    total_score: int
    breakdown: ScoreBreakdown
    errors: List[str] = field(default_factory=list)
    raw: Dict = field(default_factory=dict)
    side: Optional[DocumentSide] = None

    def to_dict(self) -> Dict:
        return {
            'decision': self.decision.value,
            'total_score': self.total_score,
            'breakdown': self.breakdown.to_dict(),
            'errors': list(self.errors),
            'raw': dict(self.raw),
            'side': self.side.value if self.side else None,
        }


@dataclass
class FrameOutcome:
    """Everything the presentation layer gets back for one frame."""
    side: DocumentSide
    state: CaptureState
    quality: Optional[QualityMetrics] = None
    geometry: Optional[CardGeometry] = None
    stability: Optional[float] = None
    result: Optional[DecisionResult] = None
    side_result: Optional[DecisionResult] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'side': self.side.value,
            'state': self.state.value,
            'quality': self.quality.to_dict() if self.quality else None,
            'geometry': self.geometry.to_dict() if self.geometry else None,
            'stability': round(self.stability, 3) if self.stability is not None else None,
            'result': self.result.to_dict() if self.result else None,
            'side_result': self.side_result.to_dict() if self.side_result else None,
            'errors': list(self.errors),
        }


@dataclass
class ManualCaptureResult:
    """Outcome of forcing a capture on the last processed frame."""
    accepted: bool
    points: int
    threshold: int
    result: Optional[DecisionResult] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            'accepted': self.accepted,
            'points': self.points,
            'threshold': self.threshold,
            'result': self.result.to_dict() if self.result else None,
            'errors': list(self.errors),
        }


@dataclass
class SessionResult:
    """Combined front + back result."""
    result: DecisionResult
    front: DecisionResult
    back: DecisionResult
    fields: Dict = field(default_factory=dict)

    @property
    def decision(self) -> Decision:
        return self.result.decision

    @property
    def total_score(self) -> int:
        return self.result.total_score

    def to_dict(self) -> Dict:
        return {
            'decision': self.result.decision.value,
            'total_score': self.result.total_score,
            'breakdown': self.result.breakdown.to_dict(),
            'errors': list(self.result.errors),
            'fields': dict(self.fields),
            'front': self.front.to_dict(),
            'back': self.back.to_dict(),
        }


class DecisionEngine:
    """
    One capture session: front and back frame buffers plus the layers
    that feed them. Construct one per session and reset() between sessions.

    Only the worker thread calls analyze_frame/evaluate_text/record; other
    threads read through status() and buffer_snapshot().
    """

    def __init__(self,
                 text_recognizer: Optional[TextRecognizer] = None,
                 mrz_recognizer: Optional[TextRecognizer] = None,
                 normalizer: Optional[GeometryNormalizer] = None,
                 quality_gate: Optional[QualityGate] = None,
                 extractor: Optional[MRZExtractor] = None,
                 front_analyzer: Optional[FrontTextAnalyzer] = None,
                 profile: Optional[ScoringProfile] = None,
                 config: Optional[DecisionConfig] = None):
        """
        Initialize decision engine.

        Args:
            text_recognizer: OCR for the card front
            mrz_recognizer: OCR for the MRZ region (defaults to text_recognizer)
            normalizer: Layer 2 geometry normalizer
            quality_gate: Layer 1 quality gate
            extractor: Layer 3 MRZ extractor
            front_analyzer: Front text heuristics
            profile: Scoring profile
            config: Decision configuration
        """
        self.config = config or DecisionConfig()
        self.text_recognizer = text_recognizer
        self.mrz_recognizer = mrz_recognizer or text_recognizer
        self.normalizer = normalizer or GeometryNormalizer()
        self.quality_gate = quality_gate or QualityGate()
        self.scoring = ScoringEngine(profile)
        self.extractor = extractor or MRZExtractor(checksum_points=self.scoring.profile.mrz_checksum_max)
        self.front_analyzer = front_analyzer or FrontTextAnalyzer()

        cfg = self.config
        self._buffers = {
            side: FrameBuffer(cfg.buffer_capacity, cfg.required_frames, cfg.consistency_window)
            for side in DocumentSide
        }
        self._lock = threading.Lock()
        self._mode = SessionMode.IDLE
        self._captured: Dict[DocumentSide, DecisionResult] = {}
        self._last_evidence: Dict[DocumentSide, FrameEvidence] = {}
        self._last_quality: Dict[DocumentSide, QualityMetrics] = {}
        self._thumbnails: Dict[DocumentSide, np.ndarray] = {}

        logger.info("DecisionEngine initialized")
        logger.debug(f"Config: {self.config}")

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def mode(self) -> SessionMode:
        with self._lock:
            return self._mode

    def _set_mode(self, mode: SessionMode):
        with self._lock:
            if self._mode is not mode:
                logger.debug(f"Session mode: {self._mode.value} -> {mode.value}")
            self._mode = mode

    def start_side(self, side) -> SessionMode:
        """Begin scanning one side."""
        side = DocumentSide.parse(side)
        if self.mode in (SessionMode.COMPLETED, SessionMode.ERROR):
            raise SessionStateError(f"scan the {side.value} side", self.mode.value)
        self._set_mode(SessionMode.SCANNING_BACK if side.is_back else SessionMode.SCANNING_FRONT)
        self._thumbnails.pop(side, None)
        return self.mode

    def is_captured(self, side) -> bool:
        side = DocumentSide.parse(side)
        with self._lock:
            return side in self._captured

    def reset(self):
        """Clear all evidence and return to IDLE."""
        for buffer in self._buffers.values():
            buffer.clear()
        with self._lock:
            self._captured.clear()
            self._mode = SessionMode.IDLE
        self._last_evidence.clear()
        self._last_quality.clear()
        self._thumbnails.clear()
        logger.info("Session reset")

    # ------------------------------------------------------------------
    # Per-frame pipeline
    # ------------------------------------------------------------------

    def analyze_frame(self, frame: Frame, side, commit: CommitGuard = always_commit) -> FrameOutcome:
        """
        Run one frame through the full pipeline.

        Args:
            frame: Raw frame from the camera collaborator
            side: Document side being scanned
            commit: Guard around every write to session state; a frame whose
                guard yields False is analyzed but leaves no trace

        Returns:
            FrameOutcome: state tag, quality, geometry and the frame's decision
        """
        side = DocumentSide.parse(side)
        captured = self.captured_result(side)
        if captured is not None:
            return FrameOutcome(side, CaptureState.CAPTURED, side_result=captured)

        mode = self.mode
        if mode is SessionMode.ERROR:
            return FrameOutcome(side, CaptureState.ERROR, errors=[ErrorTag.OCR_UNAVAILABLE.value])
        scanning = SessionMode.SCANNING_BACK if side.is_back else SessionMode.SCANNING_FRONT
        if mode is not scanning:
            self.start_side(side)

        normalized = self.normalizer.normalize(frame.pixels, side.is_back, self._regions_for(side))
        if not normalized.success:
            quality = self.quality_gate.assess(frame.pixels)
            return FrameOutcome(side, CaptureState.SEARCHING, quality=quality,
                                geometry=normalized.geometry, errors=[normalized.error])

        card = normalized.card
        quality = self.quality_gate.assess(card.image)
        if not quality.passed:
            with commit() as current:
                if current:
                    self._last_quality[side] = quality
            return FrameOutcome(side, CaptureState.ALIGNING, quality=quality,
                                geometry=normalized.geometry, errors=list(quality.reasons))

        thumbnail = self.normalizer.thumbnail(card.image)
        stability = self.normalizer.stability(thumbnail, self._thumbnails.get(side))
        with commit() as current:
            if current:
                self._thumbnails[side] = thumbnail
        min_stability = self.config.min_stability_back if side.is_back else self.config.min_stability_front
        if stability < min_stability:
            return FrameOutcome(side, CaptureState.ALIGNING, quality=quality, geometry=normalized.geometry,
                                stability=stability, errors=[ErrorTag.FRAME_UNSTABLE.value])

        try:
            lines = self._recognize(side, card)
        except OCRUnavailableError as e:
            logger.error(f"OCR unavailable: {e.message}")
            self._set_mode(SessionMode.ERROR)
            return FrameOutcome(side, CaptureState.ERROR, quality=quality, geometry=normalized.geometry,
                                stability=stability, errors=[ErrorTag.OCR_UNAVAILABLE.value])

        outcome = self.evaluate_text(side, lines, normalized.geometry.aspect_ratio, quality,
                                     frame.timestamp, commit=commit)
        outcome.geometry = normalized.geometry
        outcome.stability = stability
        return outcome

    def _regions_for(self, side: DocumentSide) -> List[RegionId]:
        if side.is_back:
            return [RegionId.MRZ]
        return [RegionId.DOCUMENT_NUMBER]

    def _recognize(self, side: DocumentSide, card: NormalizedCard) -> List[str]:
        """OCR the regions each side needs."""
        if side.is_back:
            if self.mrz_recognizer is None:
                raise OCRUnavailableError("none", "no MRZ recognizer configured")
            region = card.region(RegionId.MRZ)
            return self.mrz_recognizer.recognize(region if region is not None else card.binarized)

        if self.text_recognizer is None:
            raise OCRUnavailableError("none", "no text recognizer configured")
        lines = list(self.text_recognizer.recognize(card.binarized))
        number_region = card.region(RegionId.DOCUMENT_NUMBER)
        if number_region is not None:
            lines.extend(self.text_recognizer.recognize(number_region))
        return lines

    def evaluate_text(self, side, lines: Sequence[str], aspect_ratio: Optional[float] = None,
                      quality: Optional[QualityMetrics] = None,
                      timestamp: Optional[float] = None,
                      commit: CommitGuard = always_commit) -> FrameOutcome:
        """
        Score OCR lines for one frame and record the evidence.

        Args:
            side: Document side
            lines: OCR text lines
            aspect_ratio: Measured card ratio (None scores zero)
            quality: Quality metrics of the frame, if assessed
            timestamp: Frame timestamp
            commit: Guard around the buffer write (see analyze_frame)

        Returns:
            FrameOutcome in VERIFYING or CAPTURED state
        """
        side = DocumentSide.parse(side)
        lines = [str(line) for line in (lines or [])]
        aspect, errors = self.scoring.score_aspect(aspect_ratio)

        if side is DocumentSide.FRONT:
            front = self.front_analyzer.analyze(lines)
            breakdown = self.scoring.breakdown(
                aspect_ratio=aspect.score,
                front_text=front.score,
                national_id_valid=front.national_id_valid,
            )
            errors.extend(front.errors)
            fields = front.fields()
            raw = {'front_text': front.to_dict()}
        else:
            known = self._front_fields()
            mrz = self.extractor.analyze(lines, known.get('national_id'), known.get('document_number'))
            read = self._unassisted(lines, mrz, known)
            breakdown = self.scoring.breakdown(
                aspect_ratio=aspect.score,
                mrz_structure=mrz.structure.score,
                mrz_checksum=mrz.validation.total,
                national_id_valid=read.national_id_valid,
            )
            errors.extend(mrz.errors)
            if not read.national_id_valid:
                errors.append(ErrorTag.NATIONAL_ID_ALGORITHM_FAILED.value)
            fields = mrz.fields.to_dict() if mrz.fields else {}
            fields['mrz_rows'] = list(mrz.corrected_rows)
            fields['mrz_national_id'] = read.fields.national_id if read.fields else ""
            fields['mrz_document_number'] = read.fields.document_number if read.fields else ""
            raw = {'mrz': mrz.to_dict()}

        fields['raw_lines'] = lines
        raw['aspect_ratio'] = aspect.to_dict()
        raw['lines'] = lines

        evidence = FrameEvidence(
            score=self.scoring.side_score(side, breakdown),
            timestamp=timestamp if timestamp is not None else time.time(),
            side=side,
            breakdown=breakdown,
            fields=fields,
            quality_passed=quality.passed if quality is not None else True,
            errors=tuple(dict.fromkeys(errors)),
        )

        frame_result = DecisionResult(
            decision=self.scoring.decide(evidence.score),
            total_score=evidence.score,
            breakdown=breakdown,
            errors=list(evidence.errors),
            raw=raw,
            side=side,
        )

        with commit() as current:
            if not current:
                logger.debug(f"Dropping {side.value} evidence from a cancelled run")
                return FrameOutcome(side, CaptureState.VERIFYING, quality=quality, result=frame_result,
                                    errors=list(evidence.errors))
            if quality is not None:
                self._last_quality[side] = quality
            side_result = self.record(evidence)

        state = CaptureState.CAPTURED if side_result is not None else CaptureState.VERIFYING
        outcome_errors = list(evidence.errors)
        if side_result is None and not self._buffers[side].has_enough_frames():
            outcome_errors.append(ErrorTag.INSUFFICIENT_CONSISTENT_FRAMES.value)

        return FrameOutcome(side, state, quality=quality, result=frame_result,
                            side_result=side_result, errors=outcome_errors)

    def _unassisted(self, lines: Sequence[str], assisted: MRZAnalysis, known: Dict) -> MRZAnalysis:
        """The MRZ as read, without front values written into it."""
        if not known.get('national_id') and not known.get('document_number'):
            return assisted
        return self.extractor.analyze(lines)

    def _front_fields(self) -> Dict:
        """Trusted values from the front for MRZ correction."""
        best = self._buffers[DocumentSide.FRONT].best()
        if best is None:
            return {}
        return {
            'national_id': best.fields.get('national_id'),
            'document_number': best.fields.get('document_number'),
        }

    # ------------------------------------------------------------------
    # Evidence and side decisions
    # ------------------------------------------------------------------

    def record(self, evidence: FrameEvidence) -> Optional[DecisionResult]:
        """
        Append evidence to its side's buffer.

        Returns:
            DecisionResult for the side once it becomes final, else None
        """
        side = evidence.side
        self._buffers[side].add(evidence)
        self._last_evidence[side] = evidence

        if not self.is_side_final(side):
            return None

        result = self.side_result(side)
        with self._lock:
            first_capture = side not in self._captured
            self._captured[side] = result
        if first_capture:
            self._set_mode(SessionMode.BACK_CAPTURED if side.is_back else SessionMode.FRONT_CAPTURED)
            logger.info(f"✓ {side.value.capitalize()} side captured: {result.decision.value} ({result.total_score})")
        return result

    def is_side_final(self, side) -> bool:
        """Enough frames buffered and the best one clears the RETRY threshold."""
        side = DocumentSide.parse(side)
        buffer = self._buffers[side]
        best = buffer.best()
        return (buffer.has_enough_frames() and best is not None
                and best.score >= self.scoring.profile.retry_threshold)

    def side_result(self, side) -> Optional[DecisionResult]:
        """Decision from the best buffered record of a side."""
        side = DocumentSide.parse(side)
        best = self._buffers[side].best()
        if best is None:
            return None
        errors = list(best.errors)
        if not self._buffers[side].has_enough_frames():
            errors.append(ErrorTag.INSUFFICIENT_CONSISTENT_FRAMES.value)
        return DecisionResult(
            decision=self.scoring.decide(best.score),
            total_score=best.score,
            breakdown=best.breakdown,
            errors=errors,
            raw=dict(best.fields),
            side=side,
        )

    def captured_result(self, side) -> Optional[DecisionResult]:
        side = DocumentSide.parse(side)
        with self._lock:
            return self._captured.get(side)

    def buffer_snapshot(self, side) -> BufferSnapshot:
        return self._buffers[DocumentSide.parse(side)].snapshot()

    def buffer(self, side) -> FrameBuffer:
        return self._buffers[DocumentSide.parse(side)]

    # ------------------------------------------------------------------
    # Manual capture
    # ------------------------------------------------------------------

    def capture_manually(self, side) -> ManualCaptureResult:
        """
        Evaluate only the most recent processed frame of a side against the
        relaxed per-side thresholds, bypassing the frame count requirement.

        Args:
            side: Document side

        Returns:
            ManualCaptureResult; the side is marked captured when accepted
        """
        side = DocumentSide.parse(side)
        cfg = self.config
        evidence = self._last_evidence.get(side)
        if evidence is None:
            return ManualCaptureResult(False, 0, 0, errors=[ErrorTag.INSUFFICIENT_CONSISTENT_FRAMES.value])

        b = evidence.breakdown
        quality = self._last_quality.get(side)
        if side is DocumentSide.FRONT:
            points = b.aspect_ratio + b.front_text + b.national_id
            aligned = b.aspect_ratio >= cfg.manual_front_aspect_floor
            threshold = cfg.manual_front_threshold_aligned if aligned else cfg.manual_front_threshold
            quality_ok = quality is None or max(
                quality.blur_score, quality.glare_score, quality.brightness_score
            ) >= cfg.manual_min_quality
        else:
            points = b.mrz_structure + b.mrz_checksum
            threshold = cfg.manual_back_threshold
            quality_ok = quality is None or quality.passed

        errors = list(evidence.errors)
        if not quality_ok and quality is not None:
            errors.extend(r for r in quality.reasons if r not in errors)

        result = DecisionResult(
            decision=self.scoring.decide(evidence.score),
            total_score=evidence.score,
            breakdown=b,
            errors=errors,
            raw=dict(evidence.fields),
            side=side,
        )
        accepted = quality_ok and points >= threshold
        if accepted:
            with self._lock:
                self._captured[side] = result
            self._set_mode(SessionMode.BACK_CAPTURED if side.is_back else SessionMode.FRONT_CAPTURED)
            logger.info(f"✓ {side.value.capitalize()} side captured manually ({points}/{threshold})")
        else:
            logger.info(f"Manual {side.value} capture rejected ({points}/{threshold}, quality ok: {quality_ok})")

        return ManualCaptureResult(accepted, points, threshold, result, errors)

    # ------------------------------------------------------------------
    # Session completion
    # ------------------------------------------------------------------

    def complete(self) -> SessionResult:
        """
        Combine both captured sides.

        Returns:
            SessionResult: mean of the side scores, fields from the corrected
            back MRZ corroborated by the front

        Raises:
            SessionStateError: If either side has not been captured
        """
        with self._lock:
            front = self._captured.get(DocumentSide.FRONT)
            back = self._captured.get(DocumentSide.BACK)
            mode = self._mode
        if front is None or back is None:
            raise SessionStateError("complete the session", mode.value)

        score = int(round((front.total_score + back.total_score) / 2))
        breakdown = ScoreBreakdown.merge(front.breakdown, back.breakdown)
        fields = self._session_fields(front, back)

        errors = list(dict.fromkeys(front.errors + back.errors))
        decision = self.scoring.decide(score)
        # National id mismatch rejects, document number mismatch caps at RETRY
        if fields['national_id_mismatch']:
            errors.append(ErrorTag.NATIONAL_ID_MISMATCH.value)
            decision = Decision.INVALID
        if fields['document_number_mismatch']:
            errors.append(ErrorTag.DOCUMENT_NUMBER_MISMATCH.value)
            if decision is Decision.VALID:
                decision = Decision.RETRY

        combined = DecisionResult(
            decision=decision,
            total_score=score,
            breakdown=breakdown,
            errors=errors,
            raw={'front': dict(front.raw), 'back': dict(back.raw)},
        )

        self._set_mode(SessionMode.COMPLETED)
        logger.info(f"✓ Session completed: {combined.decision.value} ({score})")
        return SessionResult(result=combined, front=front, back=back, fields=fields)

    def _session_fields(self, front: DecisionResult, back: DecisionResult) -> Dict:
        """
        Re-run MRZ correction with the front's values and cross-check the
        front against the MRZ as it was read.

        The corrected analysis supplies the reported rows and checksums. The
        match flags compare against a second, unassisted analysis so a value
        copied in from the front never corroborates itself.
        """
        front_id = front.raw.get('national_id') or ""
        front_number = front.raw.get('document_number') or ""
        raw_lines = back.raw.get('raw_lines') or []

        analysis = self.extractor.analyze(raw_lines, front_id or None, front_number or None)
        read = self._unassisted(raw_lines, analysis, {'national_id': front_id, 'document_number': front_number})
        mrz_id = read.fields.national_id if read.fields else ""
        mrz_number = read.fields.document_number if read.fields else ""

        fields = analysis.fields.to_dict() if analysis.fields else {}
        fields['national_id'] = mrz_id
        fields['document_number'] = mrz_number
        fields['front_national_id'] = front_id
        fields['front_document_number'] = front_number
        fields['mrz_rows'] = list(analysis.corrected_rows)
        fields['checksums_valid'] = analysis.validation.all_valid
        fields['national_id_match'] = bool(front_id) and front_id == mrz_id
        fields['document_number_match'] = bool(front_number) and front_number == mrz_number
        # Mismatch only when both sides produced a well-formed value
        fields['national_id_mismatch'] = (bool(front_id) and read.national_id_valid
                                          and front_id != mrz_id)
        fields['document_number_mismatch'] = (bool(front_number) and read.validation.document_number_valid
                                              and front_number != mrz_number)
        fields['front_birth_date'] = front.raw.get('birth_date')
        return fields

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict:
        """Immutable snapshot of the session for status readers."""
        with self._lock:
            mode = self._mode
            captured = dict(self._captured)
        return {
            'mode': mode.value,
            'captured': {side.value: result.to_dict() for side, result in captured.items()},
            'buffers': {side.value: self._buffers[side].snapshot().to_dict() for side in DocumentSide},
        }
