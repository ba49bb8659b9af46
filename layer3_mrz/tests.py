"""
Tests for Layer 3 - MRZ checksums, correction, extraction and national ids.
"""
from datetime import date

import pytest

from error_handlers import OCRUnavailableError
from layer3_mrz import (
    MRZCorrector,
    MRZExtractor,
    MRZLayout,
    TesseractRecognizer,
    FastMRZRecognizer,
    char_value,
    checksum,
    correct,
    create_recognizers,
    extract_candidates,
    is_valid_national_id,
    parse_fields,
    parse_mrz_date,
    validate,
    validate_line2,
    validate_national_id,
)
from layer3_mrz.checksum import enforce_length, normalize_rows
from layer3_mrz.extractor import clean_line
from layer3_mrz.national_id import compute_check_digits, find_digit_runs
from layer3_mrz.recognizer import MRZ_CONFIG, split_lines


class TestChecksum:
    """Test ICAO 7-3-1 check digits."""

    def test_character_values(self):
        """Test digits, letters and filler values."""
        assert char_value('7') == 7
        assert char_value('A') == 10
        assert char_value('Z') == 35
        assert char_value('<') == 0
        assert char_value('?') == 0

    def test_known_check_digits(self):
        """Test check digits of the ICAO specimen fields."""
        assert checksum("D23145890") == 7
        assert checksum("740812") == 2
        assert checksum("120415") == 9
        assert checksum("") == 0

    def test_birth_date_970604(self):
        """Test 9*7 + 7*3 + 0*1 + 6*7 + 0*3 + 4*1 = 130 gives check digit 0."""
        assert checksum("970604") == 0

        row2 = "9706040M3101012TUR33058600656<"
        assert len(row2) == 30
        score = validate_line2(row2)
        assert score.birth_date_valid
        assert score.expiry_date_valid
        assert score.national_id == "33058600656"

        assert not validate_line2("9706041" + row2[7:]).birth_date_valid

    def test_birth_date_970604_in_full_rows(self, td1_builder):
        """Test the birth date check inside a complete TD1 read."""
        rows = td1_builder(birth_date="970604")
        assert rows[1][0:7] == "9706040"
        score = validate(rows)
        assert score.birth_date_valid
        assert score.all_valid

    def test_icao_specimen_is_fully_valid(self, icao_td1_rows):
        """Test all four checks pass on the ICAO TD1 specimen."""
        score = validate(icao_td1_rows)
        assert score.all_valid
        assert score.total == 30
        assert score.errors == []

    def test_sample_card_is_fully_valid(self, td1_rows):
        """Test the generated sample MRZ validates."""
        score = validate(td1_rows)
        assert score.all_valid
        assert score.is_valid

    def test_single_corrupted_field(self, icao_td1_rows):
        """Test a corrupted birth date fails its own check and the composite."""
        rows = list(icao_td1_rows)
        rows[1] = "7408132" + rows[1][7:]
        score = validate(rows)
        assert not score.birth_date_valid
        assert not score.composite_valid
        assert score.document_number_valid
        assert score.expiry_date_valid
        assert score.total == 15
        assert "mrz-checksum-failed:birth-date" in score.errors

    def test_points_scale_with_budget(self, icao_td1_rows):
        """Test the point budget is shared equally by the four checks."""
        rows = list(icao_td1_rows)
        rows[0] = rows[0][:14] + "0" + rows[0][15:]
        score = validate(rows, max_points=30)
        assert score.valid_count == 2
        assert score.total == 15
        assert validate(rows, max_points=40).total == 20

    def test_empty_rows_are_padded(self):
        """Test validation never raises on missing rows."""
        score = validate([])
        assert len(score.rows) == 3
        assert all(len(row) == 30 for row in score.rows)
        assert score.valid_count == 0

    def test_enforce_length(self):
        """Test truncation and filler padding."""
        assert enforce_length("ABC") == "ABC" + "<" * 27
        assert len(enforce_length("A" * 40)) == 30
        assert normalize_rows(["  ABC  "])[0].startswith("ABC<")

    def test_line2_validation(self, td1_rows):
        """Test row 2 checks including the embedded national id."""
        result = validate_line2(td1_rows[1])
        assert result.birth_date_valid
        assert result.expiry_date_valid
        assert result.national_id_valid
        assert result.national_id == "33058600656"
        assert result.total == 30

    def test_line2_bad_national_id(self, td1_builder):
        """Test an invalid embedded id is tagged."""
        rows = td1_builder(national_id="33058600657")
        result = validate_line2(rows[1])
        assert not result.national_id_valid
        assert "national-id-algorithm-failed" in result.errors


class TestNationalId:
    """Test the 11-digit national id algorithm."""

    def test_valid_fixtures(self):
        """Test known-valid ids."""
        assert is_valid_national_id("10000000146")
        assert is_valid_national_id("33058600656")

    def test_check_digit_computation(self):
        """Test digits 10 and 11 are derived from the first nine."""
        assert compute_check_digits("100000001") == "46"
        assert compute_check_digits("330586006") == "56"

    def test_single_digit_mutations_fail(self):
        """Test changing any one digit of a valid id fails the check."""
        valid = "10000000146"
        for i in range(11):
            digit = int(valid[i])
            mutated = valid[:i] + str((digit + 1) % 10) + valid[i + 1:]
            assert not is_valid_national_id(mutated), mutated

    def test_failure_reasons(self):
        """Test reasons for length, leading zero and each check digit."""
        assert validate_national_id("1234").reason == "length"
        assert validate_national_id("01234567890").reason == "leading-zero"
        assert validate_national_id("10000000156").reason == "digit-10"
        assert validate_national_id("10000000147").reason == "digit-11"

    def test_non_digits_are_stripped(self):
        """Test spaced and punctuated ids normalize to digits."""
        result = validate_national_id("100 000 001 46")
        assert result.is_valid
        assert result.normalized == "10000000146"

    def test_extract_from_free_text(self):
        """Test candidates are found in contiguous and grouped form."""
        assert extract_candidates("T.C. Kimlik No: 10000000146") == ["10000000146"]
        assert extract_candidates("ID 330 586 006 56 issued") == ["33058600656"]

    def test_invalid_runs_are_not_candidates(self):
        """Test 11-digit runs failing the algorithm are ignored."""
        text = "NO 12345678901"
        assert "12345678901" in find_digit_runs(text)
        assert extract_candidates(text) == []

    def test_runs_do_not_cross_lines(self):
        """Test digit groups on separate lines are not joined."""
        assert find_digit_runs("100000\n00146") == []


class TestCorrector:
    """Test the five-pass MRZ corrector."""

    def test_valid_rows_unchanged(self, td1_rows):
        """Test a clean read passes through untouched."""
        assert correct(td1_rows) == td1_rows

    def test_idempotent(self, td1_rows):
        """Test correcting twice equals correcting once."""
        noisy = [
            td1_rows[0].replace("<", " ", 3),
            "97O6O4OM31O1O12TUR33O586OO656O",
            td1_rows[2].lower(),
        ]
        once = correct(noisy)
        assert correct(once) == once

    def test_letter_digit_confusions_in_numeric_positions(self, td1_rows):
        """Test O/I/S style confusions are repaired where only digits fit."""
        noisy = list(td1_rows)
        noisy[1] = "97O6O4OM31O1O12TUR33O586OO656O"
        corrected = correct(noisy)
        assert corrected[1] == td1_rows[1]
        assert validate(corrected).all_valid

    def test_letters_kept_outside_numeric_positions(self, td1_rows):
        """Test names and the sex field are not digit-forced."""
        corrected = correct(td1_rows)
        assert corrected[1][7] == "M"
        assert corrected[2].startswith("YILMAZ<<AYSE<FATMA")

    def test_raw_lowercase_confusions(self):
        """Test lowercase g and b resolve before uppercasing."""
        assert MRZCorrector.force_digit("G", "g") == "9"
        assert MRZCorrector.force_digit("G", "G") == "6"
        assert MRZCorrector.force_digit("B", "b") == "6"
        assert MRZCorrector.force_digit("X", "X") == "X"

    def test_constants_forced(self, td1_rows):
        """Test document type, issuing country and nationality are forced."""
        noisy = list(td1_rows)
        noisy[0] = "1<TVR" + td1_rows[0][5:]
        noisy[1] = td1_rows[1][:15] + "T0R" + td1_rows[1][18:]
        corrected = correct(noisy)
        assert corrected[0][:5] == "I<TUR"
        assert corrected[1][15:18] == "TUR"

    def test_layout_for_other_state(self, icao_td1_rows):
        """Test the layout controls the forced constants."""
        layout = MRZLayout(issuing_country="UTO", nationality="UTO", numeric_national_id=False)
        assert MRZCorrector(layout).correct(icao_td1_rows) == icao_td1_rows

    def test_two_rows_synthesize_row1(self, td1_rows):
        """Test reads missing row 1 get the constant prefix."""
        corrected = correct(td1_rows[1:])
        assert len(corrected) == 3
        assert corrected[0].startswith("I<TUR")
        assert corrected[1] == td1_rows[1]

    def test_single_row_only_canonicalized(self):
        """Test a lone row gets no positional correction."""
        assert correct(["ABC O"]) == ["ABC<O" + "<" * 25]
        assert correct([]) == []

    def test_known_values_injected(self, td1_rows):
        """Test trusted front values overwrite their MRZ slices."""
        noisy = list(td1_rows)
        noisy[0] = "I<TURA12B3X5675" + td1_rows[0][15:]
        noisy[1] = td1_rows[1][:18] + "33O5860O6X6" + td1_rows[1][29]
        corrected = correct(noisy, known_national_id="33058600656", known_document_number="A12B34567")
        assert corrected == td1_rows

    def test_known_values_rejected_when_malformed(self, td1_rows):
        """Test short or long known values are ignored."""
        corrected = correct(td1_rows, known_national_id="1234", known_document_number="A1")
        assert corrected == td1_rows


class TestExtractor:
    """Test MRZ row selection, structure scoring and parsing."""

    def test_clean_line(self):
        """Test confusions map and foreign characters are counted."""
        assert clean_line("i<tur a12") == ("I<TUR<A12", 0)
        assert clean_line("AB*CD") == ("ABCD", 1)

    def test_full_structure_score(self, td1_rows):
        """Test three clean 30-character rows score the full 20."""
        structure = MRZExtractor().score_structure(td1_rows)
        assert structure.score == 20
        assert structure.errors == []
        assert not structure.fallback

    def test_noise_lines_are_skipped(self, td1_rows):
        """Test non-MRZ OCR lines around the zone are ignored."""
        lines = ["ok", "hello"] + td1_rows
        structure = MRZExtractor().score_structure(lines)
        assert structure.rows == td1_rows

    def test_two_rows_score_lower(self, td1_rows):
        """Test a missing row costs points and is tagged."""
        structure = MRZExtractor().score_structure(td1_rows[1:])
        assert structure.score < 20
        assert "mrz-structure-invalid:row-count" in structure.errors

    def test_fallback_rows(self):
        """Test uppercase lines are kept when nothing looks like an MRZ."""
        structure = MRZExtractor().score_structure(["NOTHING HERE", "ALSO NOTHING"])
        assert structure.fallback
        assert structure.score == 6
        assert "mrz-structure-invalid:row-count" in structure.errors

    def test_empty_read(self):
        """Test no lines at all scores zero."""
        analysis = MRZExtractor().analyze([])
        assert analysis.structure.score == 0
        assert analysis.validation.total == 0
        assert not analysis.national_id_valid
        assert "national-id-algorithm-failed" in analysis.errors

    def test_analyze_valid_card(self, td1_rows):
        """Test full analysis of a clean read."""
        analysis = MRZExtractor().analyze(td1_rows)
        assert analysis.validation.all_valid
        assert analysis.national_id_valid
        assert analysis.fields.national_id == "33058600656"
        assert analysis.fields.document_number == "A12B34567"
        assert analysis.fields.surname == "YILMAZ"
        assert analysis.fields.given_names == "AYSE FATMA"
        assert analysis.errors == []

    def test_parse_fields(self, icao_td1_rows):
        """Test field parsing of the ICAO specimen."""
        fields = parse_fields(icao_td1_rows, today=date(2026, 1, 1))
        assert fields.document_type == "I"
        assert fields.issuing_country == "UTO"
        assert fields.document_number == "D23145890"
        assert fields.birth_date == "1974-08-12"
        assert fields.expiry_date == "2012-04-15"
        assert fields.sex == "F"
        assert fields.surname == "ERIKSSON"
        assert fields.given_names == "ANNA MARIA"

    def test_date_century_pivot(self):
        """Test future birth years fall back a century."""
        today = date(2026, 6, 1)
        assert parse_mrz_date("100101", today=today) == "2010-01-01"
        assert parse_mrz_date("300101", today=today) == "1930-01-01"
        assert parse_mrz_date("300101", expiry=True, today=today) == "2030-01-01"
        assert parse_mrz_date("991332", today=today) is None
        assert parse_mrz_date("12AB56", today=today) is None


class TestRecognizers:
    """Test OCR adapter wiring."""

    def test_split_lines(self):
        """Test OCR text splits into stripped non-empty lines."""
        assert split_lines("  A \n\n B\n") == ["A", "B"]
        assert split_lines(None) == []

    def test_backend_selection(self):
        """Test backend names map to recognizer pairs."""
        text, mrz = create_recognizers("tesseract")
        assert isinstance(text, TesseractRecognizer)
        assert isinstance(mrz, TesseractRecognizer)
        assert mrz.config == MRZ_CONFIG

        text, mrz = create_recognizers("fastmrz", tessdata_path="models/")
        assert isinstance(text, TesseractRecognizer)
        assert isinstance(mrz, FastMRZRecognizer)

    def test_unknown_backend(self):
        """Test unknown backends are rejected."""
        with pytest.raises(ValueError):
            create_recognizers("paddle")

    def test_fake_recognizer_errors_propagate(self, fake_recognizer):
        """Test the recognizer contract raises OCRUnavailableError."""
        recognizer = fake_recognizer(error=OCRUnavailableError("fake", "missing"))
        with pytest.raises(OCRUnavailableError):
            recognizer.recognize(None)
