"""
Host model collaborators for the formwork pipeline.

The pipeline reads solids, faces, bounding boxes and levels through
``ModelQuery`` and writes its output through ``Materializer``. Both are
abstract; ``InMemoryModel`` implements them for tests, scenes and the CLI.
"""

from __future__ import annotations

import copy
import itertools
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Union

import numpy as np
import trimesh

from formwork.contracts import (
    FormworkError,
    Level,
    MoldSolid,
    StructuralElement,
)
from geometry_primitives import (
    ArcCurve,
    BoundingBox,
    CurveLoop,
    LineSegment,
    PlanarFace,
    extract_planar_faces,
    mesh_bounding_box,
)

logger = logging.getLogger(__name__)


class ModelQuery(ABC):
    """Read access to the surrounding model."""

    @abstractmethod
    def structural_elements(self) -> List[StructuralElement]:
        """Every structural element currently in the model."""

    @abstractmethod
    def element(self, element_id: str) -> Optional[StructuralElement]:
        """Look up one element, or None."""

    @abstractmethod
    def lowest_level(self) -> Optional[Level]:
        """The level with the smallest elevation, or None if there are none."""

    def solid_of(self, element_id: str) -> Optional[trimesh.Trimesh]:
        element = self.element(element_id)
        return element.solid if element is not None else None

    def faces_of(self, solid: trimesh.Trimesh, min_area: float = 1e-9) -> List[PlanarFace]:
        return extract_planar_faces(solid, min_area=min_area)

    def bounding_box_of(
        self, target: Union[str, trimesh.Trimesh],
    ) -> Optional[BoundingBox]:
        solid = self.solid_of(target) if isinstance(target, str) else target
        if solid is None or solid.is_empty:
            return None
        return mesh_bounding_box(solid)


class Materializer(ABC):
    """Write access: turns descriptors and molds into host elements."""

    @abstractmethod
    def create_wall(
        self,
        base_curve: Union[LineSegment, ArcCurve],
        wall_type: Optional[str],
        level: Level,
        height: float,
        base_offset: float = 0.0,
    ) -> str:
        """Create a wall and return its reference."""

    @abstractmethod
    def create_floor(
        self,
        boundary: CurveLoop,
        floor_type: Optional[str],
        level: Level,
        height_offset: float = 0.0,
    ) -> str:
        """Create a floor and return its reference."""

    @abstractmethod
    def create_temporary_shape(self, mold: MoldSolid) -> str:
        """Keep a mold as raw geometry and return its reference."""

    @abstractmethod
    def copy_comment_parameter(self, source_ref: str, dest_ref: str) -> None:
        """Copy the comment of *source_ref* onto *dest_ref*."""

    @abstractmethod
    def transaction(self, name: str):
        """Context manager: commit on success, roll back on any exception."""


@dataclass
class WallRecord:
    ref: str
    base_curve: Union[LineSegment, ArcCurve]
    wall_type: Optional[str]
    level: Level
    height: float
    base_offset: float
    comment: str = ""


@dataclass
class FloorRecord:
    ref: str
    boundary: CurveLoop
    floor_type: Optional[str]
    level: Level
    height_offset: float
    comment: str = ""


@dataclass
class ShapeRecord:
    ref: str
    mold: MoldSolid
    comment: str = ""


class InMemoryModel(ModelQuery, Materializer):
    """A self-contained host model: elements, levels, and created output."""

    def __init__(self) -> None:
        self._elements: Dict[str, StructuralElement] = {}
        self._levels: List[Level] = []
        self.walls: Dict[str, WallRecord] = {}
        self.floors: Dict[str, FloorRecord] = {}
        self.shapes: Dict[str, ShapeRecord] = {}
        self._counter = itertools.count(1)
        self._open_transactions = 0

    # ─── Building the model ───────────────────────────────────────────────

    def add_element(self, element: StructuralElement) -> StructuralElement:
        if element.element_id in self._elements:
            raise ValueError(f"Duplicate element id: {element.element_id}")
        self._elements[element.element_id] = element
        return element

    def add_level(self, level: Level) -> Level:
        self._levels.append(level)
        return level

    @property
    def levels(self) -> List[Level]:
        return list(self._levels)

    # ─── ModelQuery ───────────────────────────────────────────────────────

    def structural_elements(self) -> List[StructuralElement]:
        return list(self._elements.values())

    def element(self, element_id: str) -> Optional[StructuralElement]:
        return self._elements.get(element_id)

    def lowest_level(self) -> Optional[Level]:
        if not self._levels:
            return None
        return min(self._levels, key=lambda lvl: lvl.elevation)

    # ─── Materializer ─────────────────────────────────────────────────────

    def create_wall(
        self,
        base_curve: Union[LineSegment, ArcCurve],
        wall_type: Optional[str],
        level: Level,
        height: float,
        base_offset: float = 0.0,
    ) -> str:
        if height <= 0:
            raise FormworkError(f"Wall height must be positive, got {height}")
        if base_curve.length <= 0:
            raise FormworkError("Wall base curve has zero length")
        ref = self._next_ref("wall")
        self.walls[ref] = WallRecord(
            ref=ref,
            base_curve=base_curve,
            wall_type=wall_type,
            level=level,
            height=float(height),
            base_offset=float(base_offset),
        )
        return ref

    def create_floor(
        self,
        boundary: CurveLoop,
        floor_type: Optional[str],
        level: Level,
        height_offset: float = 0.0,
    ) -> str:
        if not boundary.is_closed():
            raise FormworkError("Floor boundary is not closed")
        ref = self._next_ref("floor")
        self.floors[ref] = FloorRecord(
            ref=ref,
            boundary=boundary,
            floor_type=floor_type,
            level=level,
            height_offset=float(height_offset),
        )
        return ref

    def create_temporary_shape(self, mold: MoldSolid) -> str:
        ref = self._next_ref("shape")
        self.shapes[ref] = ShapeRecord(ref=ref, mold=mold)
        return ref

    def copy_comment_parameter(self, source_ref: str, dest_ref: str) -> None:
        element = self._elements.get(source_ref)
        if element is not None:
            comment = element.comment or element.element_id
        else:
            source = self._record(source_ref)
            if source is None:
                raise KeyError(source_ref)
            comment = source.comment
        dest = self._record(dest_ref)
        if dest is None:
            raise KeyError(dest_ref)
        dest.comment = comment

    @contextmanager
    def transaction(self, name: str) -> Iterator["InMemoryModel"]:
        """Snapshot created output; restore it if the block raises."""
        saved = (dict(self.walls), dict(self.floors), dict(self.shapes))
        comments = {
            ref: record.comment
            for ref, record in itertools.chain(
                self.walls.items(), self.floors.items(), self.shapes.items()
            )
        }
        self._open_transactions += 1
        logger.debug("Transaction '%s' started", name)
        try:
            yield self
        except BaseException:
            self.walls, self.floors, self.shapes = saved
            for ref, comment in comments.items():
                record = self._record(ref)
                if record is not None:
                    record.comment = comment
            logger.warning("Transaction '%s' rolled back", name)
            raise
        else:
            logger.debug("Transaction '%s' committed", name)
        finally:
            self._open_transactions -= 1

    # ─── Queries on created output ────────────────────────────────────────

    def boundary_of(self, ref: str) -> Optional[CurveLoop]:
        """Boundary loop of a created wall or floor, or None."""
        if ref in self.floors:
            return copy.deepcopy(self.floors[ref].boundary)
        if ref in self.walls:
            wall = self.walls[ref]
            z0 = wall.level.elevation + wall.base_offset
            up = np.array([0.0, 0.0, wall.height])
            if isinstance(wall.base_curve, ArcCurve):
                # Curved walls: the bottom arc, then the top arc back.
                bottom = wall.base_curve.at_elevation(z0).sample()
                return CurveLoop.from_points(list(bottom) + list(bottom[::-1] + up))
            a = np.array([wall.base_curve.start[0], wall.base_curve.start[1], z0])
            b = np.array([wall.base_curve.end[0], wall.base_curve.end[1], z0])
            return CurveLoop.from_points([a, b, b + up, a + up])
        return None

    def comment_of(self, ref: str) -> Optional[str]:
        record = self._record(ref)
        return record.comment if record is not None else None

    def to_payload(self) -> Dict[str, object]:
        """JSON-serialisable view of everything created in this model."""
        return {
            "schema_version": "formwork.output.v1",
            "walls": [
                {
                    "ref": w.ref,
                    "base_curve": _curve_payload(w.base_curve),
                    "wall_type": w.wall_type,
                    "level": w.level.level_id,
                    "height": w.height,
                    "base_offset": w.base_offset,
                    "comment": w.comment,
                }
                for w in self.walls.values()
            ],
            "floors": [
                {
                    "ref": f.ref,
                    "boundary": [_vec(p) for p in f.boundary.vertices],
                    "floor_type": f.floor_type,
                    "level": f.level.level_id,
                    "height_offset": f.height_offset,
                    "comment": f.comment,
                }
                for f in self.floors.values()
            ],
            "shapes": [
                {
                    "ref": s.ref,
                    "source_element_id": s.mold.source_element_id,
                    "face_index": s.mold.face_index,
                    "kind": s.mold.kind.value,
                    "volume": s.mold.realized_volume,
                    "comment": s.comment,
                }
                for s in self.shapes.values()
            ],
        }

    # ─── Internal ─────────────────────────────────────────────────────────

    def _next_ref(self, prefix: str) -> str:
        return f"{prefix}-{next(self._counter):04d}"

    def _record(self, ref: str):
        return self.walls.get(ref) or self.floors.get(ref) or self.shapes.get(ref)


def _vec(p) -> List[float]:
    return [float(c) for c in p]


def _curve_payload(curve: Union[LineSegment, ArcCurve]) -> Dict[str, object]:
    if isinstance(curve, ArcCurve):
        return {
            "type": "arc",
            "center": _vec(curve.center),
            "radius": float(curve.radius),
            "start_angle": float(curve.start_angle),
            "end_angle": float(curve.end_angle),
        }
    return {"type": "line", "points": [_vec(curve.start), _vec(curve.end)]}

