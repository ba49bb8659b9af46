"""
Tests for Layer 2 - card geometry, rectification and region crops.
"""
import numpy as np
import pytest

from layer2_readjustment import (
    BACK_REGIONS,
    FRONT_REGIONS,
    ID1_ASPECT_RATIO,
    CardGeometry,
    GeometryNormalizer,
    RegionId,
    extract_region,
    order_corners,
)
from layer2_readjustment.processor import is_degenerate
from layer2_readjustment.regions import MRZ_REGIONS, binarize_mrz


class TestCorners:
    """Test corner ordering and degeneracy checks."""

    def test_order_corners(self):
        """Test corners come back TL, TR, BR, BL."""
        shuffled = [[100, 80], [10, 12], [12, 78], [98, 10]]
        ordered = order_corners(shuffled)
        assert ordered.tolist() == [[10, 12], [98, 10], [100, 80], [12, 78]]

    def test_degenerate_corners(self):
        """Test collinear and zero-area corner sets are degenerate."""
        line = order_corners([[0, 0], [10, 0], [20, 0], [30, 0]])
        assert is_degenerate(line)
        square = order_corners([[0, 0], [100, 0], [100, 60], [0, 60]])
        assert not is_degenerate(square)

    def test_aspect_ratio_independent_of_orientation(self):
        """Test portrait and landscape rectangles report the same ratio."""
        landscape = CardGeometry(np.array([[0, 0], [856, 0], [856, 540], [0, 540]], dtype='float32'), 1.0, True)
        portrait = CardGeometry(np.array([[0, 0], [540, 0], [540, 856], [0, 856]], dtype='float32'), 1.0, True)
        assert landscape.aspect_ratio == pytest.approx(856 / 540)
        assert portrait.aspect_ratio == pytest.approx(856 / 540)
        assert CardGeometry().aspect_ratio == 0.0


class TestGeometryNormalizer:
    """Test detection and rectification on synthetic frames."""

    def test_detects_rotated_card(self, card_frame):
        """Test the card is found and its ratio is within 2% of ID-1."""
        geometry = GeometryNormalizer().detect_geometry(card_frame)
        assert geometry.detected
        assert geometry.corners.shape == (4, 2)
        assert geometry.aspect_ratio == pytest.approx(ID1_ASPECT_RATIO, rel=0.02)
        assert 0.0 < geometry.confidence <= 1.0

    def test_no_card_found(self, blank_frame):
        """Test a frame without edges reports geometry-not-found."""
        result = GeometryNormalizer().normalize(blank_frame)
        assert not result.success
        assert result.error == "geometry-not-found"
        assert result.card is None

    def test_landscape_canonical_size(self, card_frame):
        """Test a landscape card rectifies to 856x540."""
        result = GeometryNormalizer().normalize(card_frame)
        assert result.success
        assert result.card.image.shape[:2] == (540, 856)
        assert result.card.binarized.shape == (540, 856)
        assert result.to_dict()['size'] == [856, 540]

    def test_portrait_canonical_size(self, frame_factory):
        """Test a portrait hold rectifies to the transposed preset."""
        result = GeometryNormalizer().normalize(frame_factory(angle=98.0))
        assert result.success
        assert result.card.image.shape[:2] == (856, 540)

    def test_perspective_warped_card(self, frame_factory):
        """Test a keystoned, rotated card still measures and rectifies as ID-1."""
        frame = frame_factory(angle=5.0, keystone=6)
        normalizer = GeometryNormalizer()

        geometry = normalizer.detect_geometry(frame)
        assert geometry.detected
        assert geometry.aspect_ratio == pytest.approx(ID1_ASPECT_RATIO, rel=0.02)

        card = normalizer.rectify(frame, geometry)
        height, width = card.shape[:2]
        assert (height, width) == (540, 856)
        assert width / height == pytest.approx(ID1_ASPECT_RATIO, rel=0.02)
        # The card fills the canvas, so no dark background survives at the edges
        inner = card[5:-5, 5:-5]
        for edge in (inner[0], inner[-1], inner[:, 0], inner[:, -1]):
            assert edge.mean() > 150

    def test_binarized_is_two_level(self, card_frame):
        """Test the page binarizer output is black and white only."""
        card = GeometryNormalizer().normalize(card_frame).card
        assert set(np.unique(card.binarized)).issubset({0, 255})

    def test_front_regions_cropped(self, card_frame):
        """Test every front region is cropped by default."""
        card = GeometryNormalizer().normalize(card_frame, is_back_side=False).card
        assert set(card.regions) == set(FRONT_REGIONS)
        photo = card.region(RegionId.PHOTO)
        assert photo.ndim == 3

    def test_requested_back_regions_only(self, card_frame):
        """Test only the requested regions are cropped."""
        card = GeometryNormalizer().normalize(card_frame, True, [RegionId.MRZ]).card
        assert list(card.regions) == [RegionId.MRZ]
        assert card.is_back_side
        mrz = card.region(RegionId.MRZ)
        assert mrz.shape[1] == 856

    def test_stability(self, card_frame):
        """Test identical frames are fully stable and first frames count as stable."""
        normalizer = GeometryNormalizer()
        thumbnail = normalizer.thumbnail(card_frame)
        assert thumbnail.shape == (126, 200)
        assert normalizer.stability(card_frame, None) == 1.0
        assert normalizer.stability(card_frame, card_frame) == 1.0
        inverted = 255 - card_frame
        assert normalizer.stability(card_frame, inverted) < 0.5

    def test_frame_metrics(self, card_frame):
        """Test glare fraction and scaled blur metrics."""
        normalizer = GeometryNormalizer()
        assert normalizer.glare_score(card_frame) == 0.0
        assert normalizer.blur_score(card_frame) == 100.0
        assert normalizer.blur_score(np.full((50, 50), 90, dtype=np.uint8)) == 0.0


class TestRegions:
    """Test the named region tables."""

    def test_region_tables_are_side_specific(self):
        """Test MRZ rows live on the back and the photo on the front."""
        assert RegionId.MRZ in BACK_REGIONS
        assert RegionId.MRZ_LINE3 in BACK_REGIONS
        assert RegionId.PHOTO in FRONT_REGIONS
        assert RegionId.MRZ not in FRONT_REGIONS

    def test_regions_stay_inside_the_card(self):
        """Test every region fits inside the canonical card."""
        for spec in list(FRONT_REGIONS.values()) + list(BACK_REGIONS.values()):
            x, y, w, h = spec.to_rect(856, 540)
            assert x + w <= 856 and y + h <= 540

    def test_unknown_or_wrong_side_region(self):
        """Test regions missing from a side return None."""
        card = np.full((540, 856, 3), 200, dtype=np.uint8)
        assert extract_region(card, RegionId.MRZ, is_back_side=False) is None
        assert extract_region(card, "not-a-region", is_back_side=True) is None
        assert extract_region(card, "mrz", is_back_side=True) is not None

    def test_mrz_crop_is_binary(self):
        """Test MRZ crops are thresholded."""
        card = np.full((540, 856, 3), 200, dtype=np.uint8)
        card[420:440, 40:800] = 20
        crop = extract_region(card, RegionId.MRZ, is_back_side=True)
        assert crop.ndim == 2
        assert set(np.unique(crop)).issubset({0, 255})

    def test_mrz_table_drives_the_mrz_binarizer(self):
        """Test MRZ crops use the threshold settings from their table entries."""
        for region in MRZ_REGIONS:
            spec = BACK_REGIONS[region]
            assert (spec.invert, spec.block_size, spec.constant) == (False, 13, 10)

        card = np.full((540, 856, 3), 200, dtype=np.uint8)
        card[420:440, 40:800] = 20
        x, y, w, h = BACK_REGIONS[RegionId.MRZ].to_rect(856, 540)
        raw = card[y:y + h, x:x + w]

        crop = extract_region(card, RegionId.MRZ, is_back_side=True)
        assert np.array_equal(crop, binarize_mrz(raw, 13, 10))
        assert not np.array_equal(binarize_mrz(raw, 13, 10), binarize_mrz(raw, 13, 10, invert=True))
