"""Tests for the nesting search and the nesting pass."""

import itertools
import math

import pytest
from pydantic import ValidationError

from sheetnest.dispatch import SerialDispatcher
from sheetnest.geometry import bounds_overlap
from sheetnest.models import (
    DesignDocumentPart,
    DuplicateNestingIdError,
    Nesting,
    NestingConfig,
    NestingConsistencyError,
)
from sheetnest.nesting import (
    NestingPass,
    NestOneResult,
    nest,
    sheet_bounds_for,
    sheet_inner_fit_bounds,
)
from sheetnest.parts import part_from_points, part_nesting_bounds, part_to_polygon, rectangle_part


def design(part, sheet=1):
    return DesignDocumentPart(nesting_id=sheet, part=part)


def ring(nesting_id="ring"):
    """30 x 30 frame with a 20 x 20 hole"""
    return part_from_points(
        [(0.0, 0.0), (30.0, 0.0), (30.0, 30.0), (0.0, 30.0)],
        [[(5.0, 5.0), (25.0, 5.0), (25.0, 25.0), (5.0, 25.0)]],
        nesting_id=nesting_id,
    )


def assert_apart(parts, gap=2.0):
    """No two nesting footprints overlap."""
    for a, b in itertools.combinations(parts, 2):
        assert not bounds_overlap(part_nesting_bounds(a, gap), part_nesting_bounds(b, gap))


@pytest.fixture
def config():
    return NestingConfig(part_to_part_gap=2.0, part_to_sheet_gap=2.0, pitch=1.0)


@pytest.fixture
def sheet():
    return Nesting(id=1, sheet_width=100, sheet_height=100)


class TestConfig:
    """Tests for NestingConfig."""

    def test_default_rotations(self):
        assert NestingConfig().rotation_angles() == [0.0, 90.0, 180.0, 270.0]

    def test_rotation_step(self):
        assert NestingConfig(rotation_step=100).rotation_angles() == [0.0, 100.0, 200.0, 300.0]
        assert NestingConfig(rotation_step=360).rotation_angles() == [0.0]
        assert len(NestingConfig(rotation_step=45).rotation_angles()) == 8

    def test_explicit_rotations(self):
        assert NestingConfig(rotations=[90, 0]).rotation_angles() == [90.0, 0.0]

    def test_empty_rotations_rejected(self):
        with pytest.raises(ValidationError):
            NestingConfig(rotations=[])

    def test_pitch_must_be_positive(self):
        with pytest.raises(ValidationError):
            NestingConfig(pitch=0)


class TestSheetRegions:
    """Tests for the sheet and inner-fit regions."""

    def test_sheet_bounds(self, sheet):
        assert sheet_bounds_for(sheet, 2.0) == ((2.0, 2.0), (100, 100))

    def test_inner_fit(self):
        assert sheet_inner_fit_bounds(((2.0, 2.0), (100.0, 100.0)), (12.0, 12.0), 2.0) == ((2.0, 2.0), (86.0, 86.0))

    def test_part_larger_than_sheet(self):
        assert sheet_inner_fit_bounds(((2.0, 2.0), (5.0, 5.0)), (12.0, 12.0), 2.0) is None


class TestPlacement:
    """End-to-end placement on an empty or partly filled sheet."""

    def test_single_part_bottom_left(self, sheet, config):
        """A lone part lands on the inner-fit minimum corner."""
        result = nest(sheet, [design(rectangle_part(10, 10, "p1"))], config)
        assert len(result.newly_nested_design_document_parts) == 1
        assert result.placements[0].location == (2.0, 2.0)
        assert result.placements[0].rotation == 0.0
        placed = result.newly_nested_design_document_parts[0].part
        assert placed.outside_loop.bounds_tuple() == ((3.0, 3.0), (13.0, 13.0))
        assert result.utilization == pytest.approx(0.01)

    def test_second_part_goes_right(self, sheet, config):
        """Equal envelope growth resolves to the lower candidate."""
        parts = [design(rectangle_part(10, 10, "p1")), design(rectangle_part(10, 10, "p2"))]
        result = nest(sheet, parts, config)
        assert [p.location for p in result.placements] == [(2.0, 2.0), (14.0, 2.0)]
        assert_apart(result.all_nested_parts)
        assert result.nested_parts_bounds == ((2.0, 2.0), (26.0, 14.0))

    def test_part_too_large(self, config):
        """A part larger than the sheet is reported, not raised."""
        small_sheet = Nesting(id=1, sheet_width=5, sheet_height=5)
        result = nest(small_sheet, [design(rectangle_part(10, 10, "big"))], config)
        assert result.newly_nested_design_document_parts == []
        assert len(result.not_nested_design_document_parts) == 1
        assert result.utilization == 0.0

    def test_many_parts_stay_apart(self, sheet, config):
        parts = [design(rectangle_part(10 + i, 8, f"p{i}")) for i in range(6)]
        result = nest(sheet, parts, config)
        assert len(result.newly_nested_design_document_parts) == 6
        assert_apart(result.all_nested_parts)
        for part in result.all_nested_parts:
            (min_x, min_y), (max_x, max_y) = part.outside_loop.bounds_tuple()
            assert min_x >= 3.0 and min_y >= 3.0
            assert max_x <= 99.0 and max_y <= 99.0

    def test_rotation_makes_it_fit(self, config):
        """A part that only fits turned a quarter is placed at 90 degrees."""
        tall_sheet = Nesting(id=1, sheet_width=10, sheet_height=40)
        result = nest(tall_sheet, [design(rectangle_part(20, 4, "bar"))], config)
        assert result.placements[0].rotation == 90.0
        placed = result.newly_nested_design_document_parts[0].part
        assert placed.outside_loop.bounds_tuple() == ((3.0, 3.0), (7.0, 23.0))
        assert placed.outside_loop.nesting_rotation_in_degrees == 90.0

    def test_already_nested_parts_are_kept(self, sheet, config):
        sheet.already_nested_parts = [rectangle_part(10, 10, "old", origin=(3.0, 3.0))]
        result = nest(sheet, [design(rectangle_part(10, 10, "new"))], config)
        assert result.placements[0].location == (14.0, 2.0)
        assert [p.nesting_id for p in result.all_nested_parts] == ["old", "new"]

    def test_boundary_parts_are_obstacles_only(self, sheet, config):
        """Boundary parts block placement but are never reported as nested."""
        sheet.already_cut_boundary_parts = [rectangle_part(50, 100, "offcut")]
        result = nest(sheet, [design(rectangle_part(10, 10, "p"))], config)
        assert result.placements[0].location == (51.0, 2.0)
        assert [p.nesting_id for p in result.all_nested_parts] == ["p"]

    def test_wrong_sheet_is_skipped(self, sheet, config):
        result = nest(sheet, [design(rectangle_part(10, 10, "elsewhere"), sheet=2)], config)
        assert result.placements == []
        assert result.not_nested_design_document_parts[0].part.nesting_id == "elsewhere"


class TestEmbedding:
    """Placement inside the holes of nested parts."""

    @pytest.fixture
    def sheet(self):
        return Nesting(id=1, sheet_width=60, sheet_height=60)

    @pytest.mark.parametrize("raster", [False, True])
    def test_small_part_goes_into_hole(self, sheet, raster):
        """Filling a hole does not grow the envelope, so it wins."""
        config = NestingConfig(pitch=1.0, rotations=[0.0], raster=raster)
        result = nest(sheet, [design(ring()), design(rectangle_part(6, 6, "small"))], config, SerialDispatcher())
        assert result.placements[0].location == (2.0, 2.0)
        assert result.placements[1].location == (9.0, 9.0)
        assert result.placements[1].embedding_nesting_id == "ring"
        assert result.embedded_parts == {"ring": ["small"]}
        small = result.newly_nested_design_document_parts[1].part
        assert small.outside_loop.bounds_tuple() == ((10.0, 10.0), (16.0, 16.0))
        assert result.nested_parts_bounds == ((2.0, 2.0), (34.0, 34.0))

    @pytest.mark.parametrize("raster", [False, True])
    def test_embedding_disabled(self, sheet, raster):
        config = NestingConfig(pitch=1.0, rotations=[0.0], raster=raster, allow_embedding=False)
        result = nest(sheet, [design(ring()), design(rectangle_part(6, 6, "small"))], config, SerialDispatcher())
        assert result.placements[1].location == (34.0, 2.0)
        assert result.placements[1].embedding_nesting_id is None
        assert result.embedded_parts == {}

    def test_hole_already_taken(self, sheet):
        """A second small part avoids the one already in the hole."""
        config = NestingConfig(pitch=1.0, rotations=[0.0])
        parts = [design(ring()), design(rectangle_part(6, 6, "a")), design(rectangle_part(6, 6, "b"))]
        result = nest(sheet, parts, config, SerialDispatcher())
        assert result.placements[2].location == (17.0, 9.0)
        assert result.embedded_parts == {"ring": ["a", "b"]}
        assert_apart(result.all_nested_parts[1:])

    def test_existing_embedding_is_indexed(self, sheet):
        """Parts already inside a nested part's hole are found when the pass starts."""
        sheet.already_nested_parts = [
            ring().model_copy(),
            rectangle_part(6, 6, "inside", origin=(8.0, 8.0)),
        ]
        nesting_pass = NestingPass(sheet, NestingConfig(pitch=1.0), SerialDispatcher())
        assert nesting_pass.embedded_parts.embedded_handles(0) == [1]


class TestConsistency:
    """The pass stops on contradictory search results."""

    def test_commit_without_part_raises(self, sheet, config):
        nesting_pass = NestingPass(sheet, config, SerialDispatcher())
        with pytest.raises(NestingConsistencyError):
            nesting_pass.commit(
                design(rectangle_part(10, 10, "p")),
                NestOneResult(nested=True, location=(2.0, 2.0)),
            )

    def test_run_propagates(self, sheet, config, monkeypatch):
        nesting_pass = NestingPass(sheet, config, SerialDispatcher())
        monkeypatch.setattr(
            nesting_pass, "nest_one", lambda design_part, rotation: NestOneResult(nested=True)
        )
        with pytest.raises(NestingConsistencyError):
            nesting_pass.run([design(rectangle_part(10, 10, "p"))])

    def test_nest_one_does_not_commit(self, sheet, config):
        nesting_pass = NestingPass(sheet, config, SerialDispatcher())
        result = nesting_pass.nest_one(design(rectangle_part(10, 10, "p")), 0.0)
        assert result.nested
        assert result.location == (2.0, 2.0)
        assert nesting_pass.placements == []
        assert nesting_pass.nested_parts_bounds is None


def outline_distance(a, b):
    return part_to_polygon(a).distance(part_to_polygon(b))


class TestClearance:
    """Placed parts keep the part-to-part gap even off the raster lattice."""

    @pytest.mark.parametrize("raster", [False, True])
    def test_parts_between_lattice_columns(self, sheet, raster):
        """A 10.5 wide neighbour pushes the next part a whole pitch further."""
        config = NestingConfig(pitch=1.0, rotations=[0.0], raster=raster)
        parts = [design(rectangle_part(10.5, 10.5, "a")), design(rectangle_part(10.5, 10.5, "b"))]
        result = nest(sheet, parts, config, SerialDispatcher())
        assert [p.location for p in result.placements] == [(2.0, 2.0), (15.0, 2.0)]
        first, second = result.all_nested_parts
        assert outline_distance(first, second) >= 2.0 - 1e-9

    def test_round_hole(self, sheet):
        """A part embedded in a curved hole stays a full gap away from the host."""
        circle = [
            (20.0 + 11.3 * math.cos(2 * math.pi * k / 64), 20.0 + 11.3 * math.sin(2 * math.pi * k / 64))
            for k in range(64)
        ]
        host = part_from_points(
            [(0.0, 0.0), (40.0, 0.0), (40.0, 40.0), (0.0, 40.0)], [circle], nesting_id="host"
        )
        config = NestingConfig(pitch=1.0, rotations=[0.0])
        result = nest(sheet, [design(host), design(rectangle_part(10.7, 10.7, "square"))], config)
        assert result.placements[1].embedding_nesting_id == "host"
        placed_host, square = result.all_nested_parts
        assert outline_distance(placed_host, square) >= 2.0 - 1e-9

    def test_zero_gap_allows_touching(self, sheet):
        config = NestingConfig(part_to_part_gap=0.0, pitch=1.0, rotations=[0.0])
        parts = [design(rectangle_part(10, 10, "a")), design(rectangle_part(10, 10, "b"))]
        result = nest(sheet, parts, config)
        assert [p.location for p in result.placements] == [(2.0, 2.0), (12.0, 2.0)]


class TestNestingIds:
    """Nesting ids identify parts in the results."""

    def test_repeated_design_ids_rejected(self, sheet, config):
        parts = [design(rectangle_part(10, 10)), design(rectangle_part(5, 5))]
        with pytest.raises(DuplicateNestingIdError):
            nest(sheet, parts, config)

    def test_repeated_sheet_ids_rejected(self, sheet, config):
        sheet.already_nested_parts = [rectangle_part(10, 10, "old")]
        sheet.already_cut_boundary_parts = [rectangle_part(5, 5, "old", origin=(50.0, 50.0))]
        with pytest.raises(DuplicateNestingIdError):
            NestingPass(sheet, config, SerialDispatcher())

    def test_design_id_clashing_with_nested_part(self, sheet, config):
        sheet.already_nested_parts = [rectangle_part(10, 10, "p", origin=(3.0, 3.0))]
        with pytest.raises(DuplicateNestingIdError):
            nest(sheet, [design(rectangle_part(10, 10, "p"))], config)

    def test_skipped_parts_are_not_checked(self, sheet, config):
        """Parts meant for another sheet do not take part in the pass."""
        parts = [design(rectangle_part(10, 10, "p")), design(rectangle_part(10, 10, "p"), sheet=2)]
        result = nest(sheet, parts, config)
        assert len(result.placements) == 1


class TestUtilization:
    """Utilization counts net part area."""

    def test_holes_do_not_count(self):
        sheet = Nesting(id=1, sheet_width=60, sheet_height=60)
        result = nest(sheet, [design(ring())], NestingConfig(pitch=1.0, rotations=[0.0]))
        assert result.utilization == pytest.approx((900 - 400) / 3600)
