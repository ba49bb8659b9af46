"""
Tests for Layer 4 - scoring, frame buffers and the decision engine.
"""
import threading
from dataclasses import replace

import pytest

from error_handlers import OCRUnavailableError, SessionStateError
from layer1_capture import AutoCaptureEngine, CaptureState, DocumentSide, Frame, SessionMode
from layer2_readjustment import ID1_ASPECT_RATIO
from layer4_decision import (
    Decision,
    DecisionEngine,
    FrameBuffer,
    FrameEvidence,
    FrontTextAnalyzer,
    ScoreBreakdown,
    ScoringEngine,
    ScoringProfile,
    aspect_ratio_score,
    decide,
)
from layer4_decision.front_text import fold_turkish


def _evidence(score, side=DocumentSide.FRONT, timestamp=0.0):
    return FrameEvidence(score=score, timestamp=timestamp, side=side)


class TestScoring:
    """Test category scores and decisions."""

    def test_decision_thresholds(self):
        """Test VALID at 80, RETRY at 50, INVALID below."""
        assert decide(100) is Decision.VALID
        assert decide(80) is Decision.VALID
        assert decide(79) is Decision.RETRY
        assert decide(50) is Decision.RETRY
        assert decide(49) is Decision.INVALID
        assert decide(0) is Decision.INVALID

    def test_decision_is_monotonic(self):
        """Test a higher score never gives a worse decision."""
        ranks = [decide(score).rank for score in range(0, 101)]
        assert ranks == sorted(ranks)

    def test_aspect_ratio_bands(self):
        """Test the ideal ratio scores full points and the window edges cut off."""
        assert aspect_ratio_score(ID1_ASPECT_RATIO).score == 20
        assert aspect_ratio_score(1.0 / ID1_ASPECT_RATIO).score == 20
        assert aspect_ratio_score(1.61).score == 18
        assert aspect_ratio_score(1.63).score == 0
        assert aspect_ratio_score(1.54).score == 0
        assert not aspect_ratio_score(None).is_valid

    def test_aspect_ratio_monotonic_in_deviation(self):
        """Test points never rise as the ratio moves away from ID-1."""
        ideal = ScoringProfile().ideal_aspect_ratio
        scores = [aspect_ratio_score(ideal + step * 0.002).score for step in range(0, 25)]
        assert scores == sorted(scores, reverse=True)

    def test_aspect_ratio_window_edge(self):
        """Test the far edge of the strict window lands in the 3% band."""
        assert aspect_ratio_score(1.55).score == 15
        assert aspect_ratio_score(1.62).score == 15

    def test_wider_window_reaches_lower_bands(self):
        """Test the 4% band and the floor score once a profile widens the window."""
        profile = ScoringProfile(min_aspect_ratio=1.40, max_aspect_ratio=1.80)
        assert aspect_ratio_score(1.6254, profile).score == 15
        assert aspect_ratio_score(1.6413, profile).score == 12
        assert aspect_ratio_score(1.6651, profile).score == 10
        assert aspect_ratio_score(1.6651).score == 0

    def test_raising_any_category_never_lowers_the_result(self):
        """Test total, side scores and decisions are monotonic in every category."""
        engine = ScoringEngine()
        maxima = {
            'aspect_ratio': 20,
            'front_text': 20,
            'mrz_structure': 20,
            'mrz_checksum': 30,
            'national_id': 10,
        }
        bases = [
            ScoreBreakdown(),
            ScoreBreakdown(10, 10, 10, 15, 0),
            ScoreBreakdown(20, 5, 20, 7, 10),
        ]
        for base in bases:
            for name, maximum in maxima.items():
                steps = [replace(base, **{name: value}) for value in range(0, maximum + 1)]
                totals = [b.total for b in steps]
                assert totals == sorted(totals), name
                for side in DocumentSide:
                    scores = [engine.side_score(side, b) for b in steps]
                    ranks = [engine.decide(score).rank for score in scores]
                    assert scores == sorted(scores), (name, side)
                    assert ranks == sorted(ranks), (name, side)

    def test_breakdown_clamps_categories(self):
        """Test each category is clamped to its maximum."""
        b = ScoringEngine().breakdown(aspect_ratio=50, front_text=-5, mrz_structure=25,
                                      mrz_checksum=31, national_id_valid=True)
        assert b.aspect_ratio == 20
        assert b.front_text == 0
        assert b.mrz_structure == 20
        assert b.mrz_checksum == 30
        assert b.national_id == 10
        assert b.total == 80

    def test_total_is_capped(self):
        """Test the total never exceeds 100."""
        b = ScoreBreakdown(20, 20, 20, 30, 10)
        assert b.total == 100

    def test_side_scores_are_normalized(self):
        """Test a perfect side scores 100 on its own categories."""
        engine = ScoringEngine()
        front = ScoreBreakdown(aspect_ratio=20, front_text=20, national_id=10)
        back = ScoreBreakdown(aspect_ratio=20, mrz_structure=20, mrz_checksum=30, national_id=10)
        assert engine.side_max(DocumentSide.FRONT) == 50
        assert engine.side_max(DocumentSide.BACK) == 80
        assert engine.side_score(DocumentSide.FRONT, front) == 100
        assert engine.side_score(DocumentSide.BACK, back) == 100
        assert engine.side_score(DocumentSide.FRONT, ScoreBreakdown(front_text=20)) == 40

    def test_merge(self):
        """Test the session breakdown takes each category from its side."""
        front = ScoreBreakdown(aspect_ratio=18, front_text=15, national_id=10)
        back = ScoreBreakdown(aspect_ratio=20, mrz_structure=17, mrz_checksum=22, national_id=0)
        merged = ScoreBreakdown.merge(front, back)
        assert merged == ScoreBreakdown(20, 15, 17, 22, 10)


class TestFrontText:
    """Test front side text heuristics."""

    def test_full_front(self, front_lines):
        """Test the sample front earns every heuristic."""
        result = FrontTextAnalyzer().analyze(front_lines)
        assert result.score == 20
        assert result.locale_marker_found
        assert result.national_id == "33058600656"
        assert result.document_number == "A12B34567"
        assert result.birth_date == "04.06.1997"
        assert result.errors == []

    def test_empty_text(self):
        """Test no text scores zero with a tag per missing check."""
        result = FrontTextAnalyzer().analyze([])
        assert result.score == 0
        assert "front-locale-marker-missing" in result.errors
        assert "front-national-id-missing" in result.errors
        assert "front-name-pattern-missing" in result.errors
        assert "front-date-pattern-missing" in result.errors

    def test_invalid_id_earns_nothing(self, front_lines):
        """Test an 11-digit read failing the algorithm is tagged, not scored."""
        lines = [line.replace("33058600656", "33058600657") for line in front_lines]
        result = FrontTextAnalyzer().analyze(lines)
        assert result.national_id is None
        assert result.invalid_candidate
        assert "national-id-algorithm-failed" in result.errors
        assert result.score == 14

    def test_fold_turkish(self):
        """Test Turkish letters fold to ASCII capitals."""
        assert fold_turkish("Türkiye Cumhuriyeti") == "TURKIYE CUMHURIYETI"
        assert fold_turkish("ŞĞÜÖÇİ") == "SGUOCI"


class TestFrameBuffer:
    """Test the bounded evidence buffer."""

    def test_fifo_eviction(self):
        """Test the oldest record is evicted at capacity."""
        buffer = FrameBuffer(capacity=3, required_frames=2)
        for score in (10, 20, 30, 40):
            buffer.add(_evidence(score))
        assert [r.score for r in buffer.records()] == [20, 30, 40]
        assert len(buffer) == 3

    def test_best_prefers_earliest_on_ties(self):
        """Test ties resolve to the earliest record."""
        buffer = FrameBuffer()
        buffer.add(_evidence(70, timestamp=1.0))
        buffer.add(_evidence(90, timestamp=2.0))
        buffer.add(_evidence(90, timestamp=3.0))
        assert buffer.best().timestamp == 2.0
        assert FrameBuffer().best() is None

    def test_consistency_and_stability(self):
        """Test the recent-window check and the variance based stability."""
        buffer = FrameBuffer(consistency_window=3)
        for score in (40, 85, 88, 90):
            buffer.add(_evidence(score))
        assert buffer.has_consistent_quality(80)
        assert not buffer.has_consistent_quality(89)
        assert [r.score for r in buffer.recent(2)] == [88, 90]
        assert buffer.recent(0) == []

        steady = FrameBuffer()
        for _ in range(3):
            steady.add(_evidence(80))
        assert steady.stability() == 1.0
        assert FrameBuffer().stability() == 0.0

    def test_snapshot(self):
        """Test snapshots report counts and scores."""
        buffer = FrameBuffer(capacity=5, required_frames=3)
        for score in (60, 80):
            buffer.add(_evidence(score))
        snapshot = buffer.snapshot()
        assert snapshot.count == 2
        assert snapshot.best_score == 80
        assert snapshot.mean_score == 70.0
        assert not snapshot.has_enough_frames

        buffer.clear()
        assert buffer.snapshot().count == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            FrameBuffer(capacity=0)


class TestDecisionEngine:
    """Test side finalization, manual capture and session completion."""

    def test_three_good_frames_make_side_valid(self):
        """Test records of 82, 85 and 90 finalize the side as VALID at 90."""
        engine = DecisionEngine()
        assert engine.record(_evidence(82)) is None
        assert engine.record(_evidence(85)) is None
        result = engine.record(_evidence(90))

        assert result is not None
        assert result.decision is Decision.VALID
        assert result.total_score == 90
        assert engine.is_captured("front")
        assert engine.mode is SessionMode.FRONT_CAPTURED

    def test_low_scores_never_finalize(self):
        """Test a side below the RETRY threshold stays open."""
        engine = DecisionEngine()
        for score in (20, 30, 40, 45):
            assert engine.record(_evidence(score)) is None
        assert not engine.is_side_final("front")
        assert engine.side_result("front").decision is Decision.INVALID

    def test_side_result_flags_missing_frames(self):
        """Test a side result with too few frames carries the tag."""
        engine = DecisionEngine()
        engine.record(_evidence(95))
        assert "insufficient-consistent-frames" in engine.side_result("front").errors

    def test_front_text_frames(self, front_lines):
        """Test front OCR text scores 100 on its own side and captures after three frames."""
        engine = DecisionEngine()
        outcomes = [engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO) for _ in range(3)]

        assert outcomes[0].state is CaptureState.VERIFYING
        assert outcomes[0].result.total_score == 100
        assert "insufficient-consistent-frames" in outcomes[0].errors
        assert outcomes[2].state is CaptureState.CAPTURED
        assert outcomes[2].side_result.decision is Decision.VALID

    def test_back_uses_front_values(self, front_lines, td1_rows):
        """Test MRZ reads are corrected with the front's national id."""
        engine = DecisionEngine()
        engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO)

        noisy = list(td1_rows)
        noisy[1] = td1_rows[1][:18] + "33O5860O6X6" + td1_rows[1][29]
        outcome = engine.evaluate_text("back", noisy, ID1_ASPECT_RATIO)

        assert outcome.result.breakdown.mrz_checksum == 30
        assert outcome.result.raw['mrz']['corrected_rows'][1] == td1_rows[1]

    def test_back_national_id_points_come_from_the_mrz(self, front_lines, td1_rows):
        """Test an unreadable MRZ id earns no points even when the front supplies one."""
        engine = DecisionEngine()
        engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO)

        noisy = list(td1_rows)
        noisy[1] = td1_rows[1][:18] + "33O5860O6X6" + td1_rows[1][29]
        outcome = engine.evaluate_text("back", noisy, ID1_ASPECT_RATIO)

        assert outcome.result.breakdown.national_id == 0
        assert "national-id-algorithm-failed" in outcome.errors

        clean = engine.evaluate_text("back", td1_rows, ID1_ASPECT_RATIO)
        assert clean.result.breakdown.national_id == 10

    def test_complete_session(self, front_lines, td1_rows):
        """Test both sides captured give a VALID session with cross-checked fields."""
        engine = DecisionEngine()
        for _ in range(3):
            engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO)
        for _ in range(3):
            engine.evaluate_text("back", td1_rows, ID1_ASPECT_RATIO)

        session = engine.complete()
        assert session.decision is Decision.VALID
        assert session.total_score == 100
        assert session.fields['national_id'] == "33058600656"
        assert session.fields['national_id_match']
        assert session.fields['document_number_match']
        assert session.fields['checksums_valid']
        assert not session.fields['national_id_mismatch']
        assert not session.fields['document_number_mismatch']
        assert session.result.breakdown.total == 100
        assert engine.mode is SessionMode.COMPLETED

    def test_complete_flags_different_person(self, front_lines, td1_builder):
        """Test a back MRZ belonging to someone else never matches the front."""
        other = td1_builder(national_id="12345678950", document_number="Z99Z99999")
        engine = DecisionEngine()
        for _ in range(3):
            engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO)
        for _ in range(3):
            engine.evaluate_text("back", other, ID1_ASPECT_RATIO)

        session = engine.complete()
        assert session.fields['national_id'] == "12345678950"
        assert session.fields['document_number'] == "Z99Z99999"
        assert session.fields['front_national_id'] == "33058600656"
        assert not session.fields['national_id_match']
        assert not session.fields['document_number_match']
        assert session.fields['national_id_mismatch']
        assert not session.fields['checksums_valid']
        assert session.decision is Decision.INVALID
        assert "national-id-mismatch" in session.result.errors
        assert "document-number-mismatch" in session.result.errors

    def test_complete_requires_both_sides(self, front_lines):
        """Test completing with a missing side raises SessionStateError."""
        engine = DecisionEngine()
        for _ in range(3):
            engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO)
        with pytest.raises(SessionStateError):
            engine.complete()

    def test_manual_capture_front(self):
        """Test manual capture accepts a weak but plausible front."""
        engine = DecisionEngine()
        engine.evaluate_text("front", ["TÜRKİYE CUMHURİYETİ"], ID1_ASPECT_RATIO)
        assert not engine.is_captured("front")

        manual = engine.capture_manually("front")
        assert manual.accepted
        assert manual.threshold == 18
        assert manual.points == 33
        assert engine.is_captured("front")

    def test_manual_capture_rejects_empty_frame(self):
        """Test manual capture rejects a frame with no evidence."""
        engine = DecisionEngine()
        engine.evaluate_text("front", [], None)
        manual = engine.capture_manually("front")
        assert not manual.accepted
        assert manual.threshold == 20
        assert not engine.is_captured("front")

    def test_manual_capture_without_frames(self):
        """Test manual capture before any frame is rejected."""
        manual = DecisionEngine().capture_manually("back")
        assert not manual.accepted
        assert "insufficient-consistent-frames" in manual.errors

    def test_manual_capture_back(self, td1_rows):
        """Test a single clean MRZ read can be captured manually."""
        engine = DecisionEngine()
        engine.evaluate_text("back", td1_rows, None)
        manual = engine.capture_manually("back")
        assert manual.accepted
        assert manual.points == 50
        assert engine.mode is SessionMode.BACK_CAPTURED

    def test_reset(self, front_lines):
        """Test reset clears buffers and captures."""
        engine = DecisionEngine()
        for _ in range(3):
            engine.evaluate_text("front", front_lines, ID1_ASPECT_RATIO)
        engine.reset()
        assert engine.mode is SessionMode.IDLE
        assert not engine.is_captured("front")
        assert engine.buffer_snapshot("front").count == 0


class TestFramePipeline:
    """Test full frames through normalization, quality and OCR."""

    def test_card_frames_capture_front(self, card_frame, front_lines, fake_recognizer):
        """Test three stable card frames capture the front."""
        engine = DecisionEngine(text_recognizer=fake_recognizer(front_lines))
        outcomes = [engine.analyze_frame(Frame(card_frame, float(i)), "front") for i in range(3)]

        assert outcomes[0].state is CaptureState.VERIFYING
        assert outcomes[0].quality.passed
        assert outcomes[0].stability == 1.0
        assert outcomes[0].geometry.detected
        assert outcomes[2].state is CaptureState.CAPTURED

        again = engine.analyze_frame(Frame(card_frame), "front")
        assert again.state is CaptureState.CAPTURED

    def test_no_card_is_searching(self, blank_frame, fake_recognizer):
        """Test frames without a card never reach OCR."""
        recognizer = fake_recognizer(["TURKIYE"])
        engine = DecisionEngine(text_recognizer=recognizer)
        outcome = engine.analyze_frame(Frame(blank_frame), "front")
        assert outcome.state is CaptureState.SEARCHING
        assert "geometry-not-found" in outcome.errors
        assert recognizer.calls == 0

    def test_poor_quality_is_aligning(self, card_frame, fake_recognizer):
        """Test a dark card is rejected before OCR."""
        recognizer = fake_recognizer(["TURKIYE"])
        engine = DecisionEngine(text_recognizer=recognizer)
        dark = card_frame.copy()
        dark[dark > 100] = 28
        dark[dark <= 100] = 5
        outcome = engine.analyze_frame(Frame(dark), "front")
        assert outcome.state in (CaptureState.ALIGNING, CaptureState.SEARCHING)
        assert recognizer.calls == 0

    def test_missing_ocr_is_error(self, card_frame, fake_recognizer):
        """Test an unavailable OCR engine moves the session to ERROR."""
        recognizer = fake_recognizer(error=OCRUnavailableError("fake", "missing"))
        engine = DecisionEngine(text_recognizer=recognizer)
        outcome = engine.analyze_frame(Frame(card_frame), "front")
        assert outcome.state is CaptureState.ERROR
        assert "ocr-unavailable" in outcome.errors
        assert engine.mode is SessionMode.ERROR
        assert engine.analyze_frame(Frame(card_frame), "front").state is CaptureState.ERROR

    def test_status_snapshot(self, card_frame, front_lines, fake_recognizer):
        """Test status reports mode and per-side buffers."""
        engine = DecisionEngine(text_recognizer=fake_recognizer(front_lines))
        engine.analyze_frame(Frame(card_frame), "front")
        status = engine.status()
        assert status['mode'] == "scanning_front"
        assert status['buffers']['front']['count'] == 1
        assert status['buffers']['back']['count'] == 0

    def test_stopped_auto_capture_leaves_no_evidence(self, card_frame, front_lines, fake_recognizer):
        """Test a frame still in OCR when auto-capture stops never reaches the buffer."""
        gate = threading.Event()
        recognizer = fake_recognizer(front_lines, gate=gate)
        engine = DecisionEngine(text_recognizer=recognizer)
        auto = AutoCaptureEngine(engine)
        auto.start("front")

        assert auto.submit(Frame(card_frame))
        assert recognizer.started.wait(5)
        auto.stop()
        gate.set()
        assert auto.wait_idle(5)

        assert engine.buffer_snapshot("front").count == 0
        assert not engine.capture_manually("front").accepted
        assert auto.status().processed == 0

        auto.start("front")
        assert auto.submit(Frame(card_frame))
        assert auto.wait_idle(5)
        assert engine.buffer_snapshot("front").count == 1
