"""Tests for reducing molds to wall/floor descriptors."""

from __future__ import annotations

import numpy as np
import pytest
import trimesh

from formwork.contracts import (
    AdjacentElement,
    ElementCategory,
    FloorDescriptor,
    FormworkKind,
    InvalidLoopError,
    Level,
    MoldSolid,
    WallDescriptor,
)
from formwork.conversion import (
    longest_segment,
    reduce_mold,
    reduce_mold_parts,
    reduce_to_descriptor,
    split_mold,
    validate_loop,
)
from formwork.model import InMemoryModel
from formwork.synthesis import synthesize, synthesize_cylinder
from geometry_primitives import (
    ArcCurve,
    CurveLoop,
    box_solid,
    extract_planar_faces,
    find_cylindrical_faces,
    mesh_bounding_box,
)


def _mold(mesh, kind=FormworkKind.PANEL):
    volume = abs(float(mesh.volume))
    return MoldSolid(
        mesh=mesh,
        source_element_id="E1",
        face_index=0,
        kind=kind,
        outward_normal=np.array([0.0, -1.0, 0.0]),
        thickness=0.02,
        face_area=volume / 0.02,
        expected_volume=volume,
        realized_volume=volume,
    )


@pytest.fixture
def model_with_levels():
    model = InMemoryModel()
    model.add_level(Level("L1", "Level 1", 3.0))
    model.add_level(Level("L0", "Ground", 0.0))
    return model


class TestWall:

    def test_rectangular_vertical_mold(self, model_with_levels):
        # 5 m long, 2.5 m tall panel of 20 mm.
        mold = _mold(box_solid([1.0, -0.02, 0.5], [6.0, 0.0, 3.0]))
        descriptor = reduce_to_descriptor(mold, model_with_levels, wall_type="FW-20")
        assert isinstance(descriptor, WallDescriptor)
        assert descriptor.base_curve.length == pytest.approx(5.0)
        assert descriptor.height == pytest.approx(2.5)
        assert descriptor.level.level_id == "L0"
        assert descriptor.base_offset == pytest.approx(0.5)
        assert descriptor.wall_type == "FW-20"
        assert descriptor.source_element_id == "E1"

    def test_longest_edge_of_tall_panel(self, model_with_levels):
        mold = _mold(box_solid([0.0, -0.02, 0.0], [0.4, 0.0, 3.0]))
        descriptor = reduce_to_descriptor(mold, model_with_levels)
        edges = sorted(s.length for s in descriptor.source_loop)
        assert descriptor.base_curve.length == pytest.approx(edges[-1])
        assert descriptor.base_curve.length == pytest.approx(3.0)
        assert descriptor.height == pytest.approx(3.0)

    def test_synthesized_column_panel(self, column_solid, find_face, model_with_levels):
        face = find_face(extract_planar_faces(column_solid), [0, 1, 0])
        mold = synthesize(face, ElementCategory.COLUMN, [], 0.02, solid=column_solid)
        descriptor = reduce_to_descriptor(mold, model_with_levels)
        assert isinstance(descriptor, WallDescriptor)
        assert descriptor.height == pytest.approx(3.0)


class TestFloor:

    def test_horizontal_mold_becomes_floor(self, model_with_levels):
        mold = _mold(box_solid([0.0, 0.0, 2.98], [4.0, 3.0, 3.0]), FormworkKind.SLAB)
        descriptor = reduce_to_descriptor(mold, model_with_levels, floor_type="SLAB-20")
        assert isinstance(descriptor, FloorDescriptor)
        assert len(descriptor.boundary) == 4
        assert descriptor.boundary.perimeter == pytest.approx(14.0)
        assert descriptor.height_offset == pytest.approx(2.98)
        assert descriptor.floor_type == "SLAB-20"


class TestAbsence:

    def test_no_level(self):
        mold = _mold(box_solid([0.0, -0.02, 0.0], [4.0, 0.0, 3.0]))
        outcome = reduce_mold(mold, InMemoryModel())
        assert outcome.descriptor is None
        assert outcome.reason == "no_level"

    def test_inclined_mold(self, model_with_levels):
        mesh = box_solid([0.0, 0.0, 0.0], [4.0, 2.0, 0.02])
        angle = np.radians(50.0)
        mesh.apply_transform(
            np.array([
                [1.0, 0.0, 0.0, 0.0],
                [0.0, np.cos(angle), -np.sin(angle), 0.0],
                [0.0, np.sin(angle), np.cos(angle), 1.0],
                [0.0, 0.0, 0.0, 1.0],
            ])
        )
        outcome = reduce_mold(_mold(mesh, FormworkKind.SLAB), model_with_levels)
        assert outcome.descriptor is None
        assert outcome.reason == "inclined"


class TestLoops:

    def test_validate_loop(self):
        square = CurveLoop.from_points([(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0)])
        assert validate_loop(square) is square
        with pytest.raises(InvalidLoopError):
            validate_loop(CurveLoop.from_points([(0, 0, 0), (1, 1, 0), (1, 0, 0), (0, 1, 0)]))
        with pytest.raises(InvalidLoopError):
            validate_loop(None)

    def test_longest_segment_first_wins_ties(self):
        square = CurveLoop.from_points([(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0)])
        assert longest_segment(square) is square.segments[0]


def _split_panel():
    """Two 2.5 m panel pieces either side of a 1 m gap, as one mesh."""
    return trimesh.util.concatenate([
        box_solid([0.0, -0.02, 2.5], [2.5, 0.0, 3.0]),
        box_solid([3.5, -0.02, 2.5], [6.0, 0.0, 3.0]),
    ])


def _round_column_mold(neighbors=()):
    column = trimesh.creation.cylinder(radius=0.25, height=3.0, sections=32)
    column.apply_translation([0.0, 0.0, 1.5])
    (cylinder,) = find_cylindrical_faces(extract_planar_faces(column))
    return synthesize_cylinder(
        cylinder, ElementCategory.COLUMN, list(neighbors), 0.02, element_id="C1",
    ).mold


class TestBodies:

    def test_several_bodies_have_no_single_descriptor(self, model_with_levels):
        outcome = reduce_mold(_mold(_split_panel()), model_with_levels)
        assert outcome.descriptor is None
        assert outcome.reason == "multi_body"

    def test_split_shares_volumes(self):
        mold = _mold(_split_panel())
        mold.realized_volume = 0.04
        parts = split_mold(mold)
        assert len(parts) == 2
        assert sum(p.realized_volume for p in parts) == pytest.approx(0.04)
        assert sum(p.expected_volume for p in parts) == pytest.approx(mold.expected_volume)
        assert sum(p.face_area for p in parts) == pytest.approx(mold.face_area)
        assert all(p.source_element_id == "E1" for p in parts)

    def test_single_body_not_split(self):
        mold = _mold(box_solid([0.0, -0.02, 0.0], [4.0, 0.0, 3.0]))
        parts = split_mold(mold)
        assert len(parts) == 1 and parts[0] is mold

    def test_each_body_becomes_a_wall(self, model_with_levels):
        results = reduce_mold_parts(_mold(_split_panel()), model_with_levels, wall_type="FW")
        assert len(results) == 2
        walls = [outcome.descriptor for _, outcome in results]
        assert all(isinstance(w, WallDescriptor) for w in walls)
        assert sorted(w.base_curve.length for w in walls) == pytest.approx([2.5, 2.5])
        assert {round(w.height, 6) for w in walls} == {0.5}
        assert {round(w.base_offset, 6) for w in walls} == {2.5}


class TestCurved:

    def test_round_mold_becomes_circular_wall(self, model_with_levels):
        descriptor = reduce_to_descriptor(_round_column_mold(), model_with_levels, "FW-R")
        assert isinstance(descriptor, WallDescriptor)
        assert isinstance(descriptor.base_curve, ArcCurve)
        assert descriptor.base_curve.is_full_circle
        assert descriptor.base_curve.radius == pytest.approx(0.25, rel=1e-6)
        assert descriptor.height == pytest.approx(3.0)
        assert descriptor.base_offset == pytest.approx(0.0, abs=1e-9)
        assert descriptor.wall_type == "FW-R"

    def test_cut_round_mold_gives_two_arcs(self, model_with_levels):
        wall = box_solid([-1.0, -0.05, 0.0], [1.0, 0.05, 3.0])
        neighbor = AdjacentElement("W1", ElementCategory.WALL, wall, mesh_bounding_box(wall))
        results = reduce_mold_parts(_round_column_mold([neighbor]), model_with_levels)
        arcs = [outcome.descriptor.base_curve for _, outcome in results]
        assert len(arcs) == 2
        for arc in arcs:
            assert isinstance(arc, ArcCurve)
            assert 0.8 * np.pi < arc.sweep < np.pi
        assert {np.sign(np.sin(0.5 * (a.start_angle + a.end_angle))) for a in arcs} == {-1.0, 1.0}
