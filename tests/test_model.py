"""Tests for the in-memory host model."""

from __future__ import annotations

import numpy as np
import pytest

from formwork.contracts import ElementCategory, FormworkError, Level, StructuralElement
from formwork.model import InMemoryModel
from geometry_primitives import ArcCurve, CurveLoop, LineSegment, box_solid


@pytest.fixture
def model(ground_level):
    model = InMemoryModel()
    model.add_level(ground_level)
    model.add_element(
        StructuralElement("C1", ElementCategory.COLUMN, box_solid([0, 0, 0], [1, 1, 3]), "C-1")
    )
    return model


def _wall(model, level):
    return model.create_wall(
        LineSegment(np.zeros(3), np.array([2.0, 0.0, 0.0])), "FW", level, 3.0, 0.5,
    )


class TestQueries:

    def test_bounding_box_by_id_and_solid(self, model):
        by_id = model.bounding_box_of("C1")
        assert np.allclose(by_id.max, [1, 1, 3])
        assert model.bounding_box_of("missing") is None
        assert np.allclose(model.bounding_box_of(model.solid_of("C1")).min, 0.0)

    def test_faces_of(self, model):
        assert len(model.faces_of(model.solid_of("C1"))) == 6

    def test_lowest_level(self, model):
        model.add_level(Level("B1", "Basement", -3.0))
        assert model.lowest_level().level_id == "B1"
        assert InMemoryModel().lowest_level() is None

    def test_duplicate_element_rejected(self, model):
        with pytest.raises(ValueError):
            model.add_element(
                StructuralElement("C1", ElementCategory.WALL, box_solid([0, 0, 0], [1, 1, 1]))
            )


class TestMaterialize:

    def test_wall_boundary(self, model, ground_level):
        ref = _wall(model, ground_level)
        loop = model.boundary_of(ref)
        assert loop.is_closed()
        assert loop.perimeter == pytest.approx(10.0)
        assert loop.vertices[:, 2].min() == pytest.approx(0.5)

    def test_invalid_wall(self, model, ground_level):
        with pytest.raises(FormworkError):
            model.create_wall(
                LineSegment(np.zeros(3), np.zeros(3)), None, ground_level, 3.0,
            )

    def test_open_floor_rejected(self, model, ground_level):
        a, b, c = np.zeros(3), np.array([1.0, 0, 0]), np.array([1.0, 1, 0])
        open_loop = CurveLoop([LineSegment(a, b), LineSegment(b, c), LineSegment(c, a + 0.1)])
        with pytest.raises(FormworkError):
            model.create_floor(open_loop, None, ground_level)

    def test_copy_comment(self, model, ground_level):
        ref = _wall(model, ground_level)
        model.copy_comment_parameter("C1", ref)
        assert model.comment_of(ref) == "C-1"
        with pytest.raises(KeyError):
            model.copy_comment_parameter("C1", "wall-9999")

    def test_payload(self, model, ground_level):
        _wall(model, ground_level)
        payload = model.to_payload()
        assert payload["walls"][0]["height"] == pytest.approx(3.0)
        assert payload["floors"] == [] and payload["shapes"] == []
        assert payload["walls"][0]["base_curve"]["type"] == "line"

    def test_arc_wall(self, model, ground_level):
        arc = ArcCurve(np.array([1.0, 1.0, 0.0]), 0.25, 0.0, 2 * np.pi)
        ref = model.create_wall(arc, "FW-R", ground_level, 3.0)
        loop = model.boundary_of(ref)
        assert loop.is_closed()
        assert loop.vertices[:, 2].max() == pytest.approx(3.0)
        radii = np.linalg.norm(loop.vertices[:, :2] - [1.0, 1.0], axis=1)
        assert np.allclose(radii, 0.25)
        curve = model.to_payload()["walls"][0]["base_curve"]
        assert curve["type"] == "arc"
        assert curve["radius"] == pytest.approx(0.25)
        assert curve["end_angle"] - curve["start_angle"] == pytest.approx(2 * np.pi)


class TestTransaction:

    def test_commit(self, model, ground_level):
        with model.transaction("ok"):
            _wall(model, ground_level)
        assert len(model.walls) == 1

    def test_rollback_restores_output_and_comments(self, model, ground_level):
        ref = _wall(model, ground_level)
        with pytest.raises(RuntimeError):
            with model.transaction("boom"):
                model.copy_comment_parameter("C1", ref)
                _wall(model, ground_level)
                raise RuntimeError("boom")
        assert list(model.walls) == [ref]
        assert model.comment_of(ref) == ""
