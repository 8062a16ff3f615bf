"""End-to-end tests for the formwork batch."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
import trimesh
from shapely.geometry import Polygon

from formwork import (
    BatchCancelled,
    BatchRolledBack,
    ElementCategory,
    FloorDescriptor,
    FormworkConfig,
    FormworkKind,
    InMemoryModel,
    TrimMode,
    apply_batch,
    run_formwork,
)
from formwork.audit import AuditTrail, verify_chain
from formwork.contracts import FormworkError, Level, StructuralElement, WallDescriptor
from geometry_primitives import ArcCurve, CurveLoop, LineSegment, box_solid


class FailingFloorModel(InMemoryModel):
    """Host whose floor creation always fails."""

    def create_floor(self, boundary, floor_type, level, height_offset=0.0):
        raise RuntimeError("floor type missing")


class TestScenarios:

    def test_column_without_neighbors(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        result = run_formwork(model)

        assert result.status == "ok"
        assert result.faces_formed == 4
        assert result.faces_omitted == 2
        assert result.faces_skipped == 0
        assert sum(f.cuts_applied for f in result.elements[0].faces) == 0
        assert result.walls_created == 4
        assert result.floors_created == 0
        assert len(model.walls) == 4
        assert result.total_area == pytest.approx(4 * 0.4 * 3.0)
        assert result.discounted_area == pytest.approx(0.0, abs=1e-9)

    def test_beam_against_column(self, make_model, beam_and_column):
        beam, column = beam_and_column
        model = make_model(
            ("B1", ElementCategory.BEAM, beam),
            ("C1", ElementCategory.COLUMN, column),
        )
        result = run_formwork(model, ["B1"])

        report = result.elements[0]
        assert report.neighbor_count == 1
        assert report.formed == 5  # 4 sides + soffit
        assert report.omitted == 1
        assert report.discounted == 1
        cut = [f for f in report.faces if f.cuts_applied]
        assert len(cut) == 1
        assert cut[0].realized_volume == pytest.approx(cut[0].expected_volume / 2, rel=1e-3)
        assert result.discounted_area == pytest.approx(1.0, rel=1e-3)
        assert result.floors_created == 1

    def test_floor_slab_only_soffit(self, make_model, floor_solid):
        model = make_model(("S1", ElementCategory.FLOOR, floor_solid))
        result = run_formwork(model)

        faces = result.elements[0].faces
        slabs = [f for f in faces if f.kind == FormworkKind.SLAB]
        assert len(slabs) == 1
        assert slabs[0].normal[2] == pytest.approx(-1.0)
        top = [f for f in faces if f.normal[2] > 0.7]
        assert len(top) == 1 and top[0].kind == FormworkKind.NONE
        edges = [f for f in faces if abs(f.normal[2]) < 0.3]
        assert len(edges) == 4
        assert all(f.kind == FormworkKind.NONE for f in edges)
        assert result.faces_omitted == 5
        assert result.floors_created == 1

    def test_floor_round_trip(self, make_model, floor_solid):
        model = make_model(("S1", ElementCategory.FLOOR, floor_solid))
        result = run_formwork(model)
        ref = result.created_refs[0]

        stored = model.floors[ref].boundary
        returned = model.boundary_of(ref)
        assert len(returned) == len(stored)
        assert returned.perimeter == pytest.approx(stored.perimeter, abs=1e-6)
        assert returned.perimeter == pytest.approx(14.0, abs=1e-6)

    def test_direct_cut_mode(self, make_model, beam_and_column):
        beam, column = beam_and_column
        model = make_model(
            ("B1", ElementCategory.BEAM, beam),
            ("C1", ElementCategory.COLUMN, column),
        )
        config = FormworkConfig(trim_mode=TrimMode.DIRECT_CUT_FIRST)
        result = run_formwork(model, ["B1"], config)
        assert result.faces_discounted == 1
        assert result.realized_volume < result.expected_volume

    def test_shapes_only(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        result = run_formwork(model, config=FormworkConfig(convert_to_native=False))
        assert result.shapes_created == 4
        assert result.walls_created == 0
        assert len(model.shapes) == 4

    def test_no_level_keeps_shapes(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid), levels=[])
        result = run_formwork(model)
        assert result.shapes_created == 4
        assert result.walls_created == 0

    def test_narrow_gap_cuts_both_facing_panels(self, make_model):
        model = make_model(
            ("C1", ElementCategory.COLUMN, box_solid([0, 0, 0], [0.4, 0.4, 3])),
            ("C2", ElementCategory.COLUMN, box_solid([0.41, 0, 0], [0.81, 0.4, 3])),
        )
        result = run_formwork(model)
        # The 10 mm gap is narrower than a panel; each facing panel is cut back to it.
        for report in result.elements:
            assert report.neighbor_count == 1
            cut = [f for f in report.faces if f.cuts_applied]
            assert len(cut) == 1
            assert cut[0].realized_volume == pytest.approx(cut[0].expected_volume / 2, rel=1e-3)

    def test_missing_element_reported(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        result = run_formwork(model, ["C1", "nope"])
        assert result.elements[1].geometry_unavailable
        assert result.faces_formed == 4


class TestComments:

    def test_comment_copied(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid, "C-101"))
        result = run_formwork(model)
        assert {model.comment_of(ref) for ref in result.created_refs} == {"C-101"}

    def test_element_id_used_without_comment(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        result = run_formwork(model)
        assert {model.comment_of(ref) for ref in result.created_refs} == {"C1"}

    def test_comments_disabled(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid, "C-101"))
        result = run_formwork(model, config=FormworkConfig(copy_comments=False))
        assert {model.comment_of(ref) for ref in result.created_refs} == {""}


class TestBatch:

    def test_cancel_before_start(self, make_model, column_solid):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        with pytest.raises(BatchCancelled):
            run_formwork(model, should_cancel=lambda: True)
        assert not model.walls

    def test_failure_rolls_back_everything(self, ground_level, column_solid, floor_solid):
        model = FailingFloorModel()
        model.add_level(ground_level)
        model.add_element(StructuralElement("C1", ElementCategory.COLUMN, column_solid))
        model.add_element(StructuralElement("S1", ElementCategory.FLOOR, floor_solid))
        with pytest.raises(BatchRolledBack) as excinfo:
            run_formwork(model)
        assert isinstance(excinfo.value.cause, RuntimeError)
        assert isinstance(excinfo.value, FormworkError)
        assert not model.walls
        assert not model.floors

    def test_apply_batch(self, ground_level):
        model = InMemoryModel()
        floor = FloorDescriptor(
            boundary=CurveLoop.from_points([(0, 0, 0), (2, 0, 0), (2, 2, 0), (0, 2, 0)]),
            level=ground_level,
        )
        wall = WallDescriptor(
            base_curve=LineSegment(np.zeros(3), np.array([3.0, 0.0, 0.0])),
            height=2.0,
            level=ground_level,
        )
        refs = apply_batch(model, [floor, wall])
        assert refs == ["floor-0001", "wall-0002"]
        assert model.boundary_of("wall-0002").perimeter == pytest.approx(10.0)

    def test_apply_batch_rolls_back(self, ground_level):
        model = InMemoryModel()
        good = WallDescriptor(
            base_curve=LineSegment(np.zeros(3), np.array([3.0, 0.0, 0.0])),
            height=2.0,
            level=ground_level,
        )
        bad = WallDescriptor(
            base_curve=LineSegment(np.zeros(3), np.array([3.0, 0.0, 0.0])),
            height=0.0,
            level=ground_level,
        )
        with pytest.raises(BatchRolledBack):
            apply_batch(model, [good, bad])
        assert not model.walls


class TestAudit:

    def test_decision_log_is_chained(self, make_model, column_solid, tmp_path: Path):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        audit = AuditTrail(run_id="audit_case", artifacts_dir=tmp_path)
        run_formwork(model, run_id="audit_case", audit=audit)

        records = [
            json.loads(line)
            for line in audit.decision_log_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]
        # 6 classifications, 4 syntheses, 4 conversions.
        assert len(records) == 14
        assert [r["seq"] for r in records] == list(range(1, 15))
        assert {r["stage"] for r in records} == {"classify", "synthesize", "convert"}
        assert verify_chain(audit.decision_log_path)

        chain = json.loads(audit.hash_chain_path.read_text(encoding="utf-8"))
        assert chain["decision_count"] == 14
        assert chain["final_hash"] == records[-1]["hash"]
        assert chain["checkpoints"] == {"summary": audit.checkpoints[0].payload_sha256}

    def test_tampered_log_fails_verification(self, make_model, column_solid, tmp_path: Path):
        model = make_model(("C1", ElementCategory.COLUMN, column_solid))
        audit = AuditTrail(run_id="tamper", artifacts_dir=tmp_path)
        run_formwork(model, audit=audit)

        lines = audit.decision_log_path.read_text(encoding="utf-8").splitlines()
        entry = json.loads(lines[0])
        entry["selected"] = "slab"
        lines[0] = json.dumps(entry, sort_keys=True)
        audit.decision_log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        assert not verify_chain(audit.decision_log_path)


def test_summary_lines(make_model, column_solid):
    model = make_model(("C1", ElementCategory.COLUMN, column_solid))
    lines = run_formwork(model).summary_lines()
    assert lines[0] == "Elements processed: 1"
    assert "Faces formed: 4" in lines
    assert "Faces omitted: 2" in lines
    assert any(line.startswith("Walls: 4") for line in lines)


def test_levels_lowest_used(make_model, column_solid):
    model = make_model(
        ("C1", ElementCategory.COLUMN, column_solid),
        levels=[Level("L1", "First", 3.0), Level("B1", "Basement", -3.0)],
    )
    run_formwork(model)
    assert {w.level.level_id for w in model.walls.values()} == {"B1"}
    assert all(w.base_offset == pytest.approx(3.0) for w in model.walls.values())


def _round_column(radius=0.25, height=3.0, sections=32):
    mesh = trimesh.creation.cylinder(radius=radius, height=height, sections=sections)
    mesh.apply_translation([0.0, 0.0, height / 2.0])
    return mesh


class TestSplitPanels:
    """A column at mid-span splits the beam side into two panels."""

    @pytest.fixture
    def model(self, make_model):
        return make_model(
            ("B1", ElementCategory.BEAM, box_solid([0.0, 0.0, 2.5], [6.0, 0.3, 3.0])),
            ("C1", ElementCategory.COLUMN, box_solid([2.5, -0.5, 0.0], [3.5, 0.0, 3.0])),
        )

    def _check_split_side(self, model, result):
        (cut,) = [f for f in result.elements[0].faces if f.cuts_applied]
        assert len(cut.output_refs) == 2
        assert cut.output_ref == cut.output_refs[0]
        walls = [model.walls[ref] for ref in cut.output_refs]
        assert sorted(w.base_curve.length for w in walls) == pytest.approx([2.5, 2.5])
        formed = sum(w.base_curve.length * w.height for w in walls) * 0.02
        assert formed == pytest.approx(cut.realized_volume, rel=1e-6)
        assert cut.realized_volume == pytest.approx(0.05, rel=1e-6)

    def test_both_pieces_become_walls(self, model):
        result = run_formwork(model, ["B1"])
        self._check_split_side(model, result)
        # Two halves of the cut side, the other side and both ends.
        assert result.walls_created == 5
        assert result.floors_created == 1
        assert result.shapes_created == 0

    def test_both_pieces_with_direct_cut(self, model):
        config = FormworkConfig(trim_mode=TrimMode.DIRECT_CUT_FIRST)
        result = run_formwork(model, ["B1"], config)
        self._check_split_side(model, result)
        assert result.walls_created == 5

    def test_pieces_kept_as_one_shape_without_conversion(self, model):
        result = run_formwork(model, ["B1"], FormworkConfig(convert_to_native=False))
        (cut,) = [f for f in result.elements[0].faces if f.cuts_applied]
        assert len(cut.output_refs) == 1
        assert model.shapes[cut.output_ref].mold.mesh.body_count == 2


class TestRoundColumns:

    def test_round_column_gets_one_curved_wall(self, make_model):
        model = make_model(("C1", ElementCategory.COLUMN, _round_column(), "C-R"))
        result = run_formwork(model)

        assert result.walls_created == 1
        assert result.faces_formed == 1
        assert result.faces_omitted == 2
        (wall,) = model.walls.values()
        assert isinstance(wall.base_curve, ArcCurve)
        assert wall.base_curve.is_full_circle
        assert wall.base_curve.radius == pytest.approx(0.25, rel=1e-6)
        assert wall.height == pytest.approx(3.0)
        assert wall.comment == "C-R"
        (formed,) = [f for f in result.elements[0].faces if f.kind == FormworkKind.PANEL]
        assert len(formed.member_faces) == 32
        assert formed.area == pytest.approx(result.total_area)

    def test_faceted_panels_when_detection_off(self, make_model):
        model = make_model(("C1", ElementCategory.COLUMN, _round_column()))
        result = run_formwork(model, config=FormworkConfig(detect_cylinders=False))
        assert result.walls_created == 32
        assert result.faces_formed == 32

    def test_wall_through_round_column(self, make_model):
        model = make_model(
            ("C1", ElementCategory.COLUMN, _round_column()),
            ("W1", ElementCategory.WALL, box_solid([-1.0, -0.05, 0.0], [1.0, 0.05, 3.0])),
        )
        result = run_formwork(model, ["C1"])

        assert result.walls_created == 2
        assert result.faces_discounted == 1
        for wall in model.walls.values():
            assert isinstance(wall.base_curve, ArcCurve)
            assert 0.8 * np.pi < wall.base_curve.sweep < np.pi

    def test_half_round_column(self, make_model):
        angles = np.linspace(0.0, np.pi, 33)
        outline = Polygon(np.column_stack([0.3 * np.cos(angles), 0.3 * np.sin(angles)]))
        column = trimesh.creation.extrude_polygon(outline, 3.0)
        model = make_model(("C1", ElementCategory.COLUMN, column))
        result = run_formwork(model)

        assert result.walls_created == 2
        curves = [w.base_curve for w in model.walls.values()]
        (arc,) = [c for c in curves if isinstance(c, ArcCurve)]
        (line,) = [c for c in curves if isinstance(c, LineSegment)]
        assert arc.sweep == pytest.approx(np.pi)
        assert max(line.start[1], line.end[1]) <= 1e-9

    def test_audit_records_cylinder(self, make_model, tmp_path: Path):
        model = make_model(("C1", ElementCategory.COLUMN, _round_column()))
        audit = AuditTrail(run_id="round", artifacts_dir=tmp_path)
        run_formwork(model, audit=audit)

        records = [
            json.loads(line)
            for line in audit.decision_log_path.read_text(encoding="utf-8").splitlines()
        ]
        # Two caps and the cylinder classified, one synthesis, one conversion.
        assert len(records) == 5
        (merged,) = [r for r in records if "cylindrical" in r["reason_codes"]]
        assert len(merged["metadata"]["faces"]) == 32
        assert merged["metadata"]["closed"] is True
        assert verify_chain(audit.decision_log_path)
