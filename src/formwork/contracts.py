"""Contracts for the formwork pipeline: enums, configuration, results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import trimesh

from geometry_primitives import ArcCurve, BoundingBox, CurveLoop, LineSegment

Vec3 = Tuple[float, float, float]


class ElementCategory(Enum):
    """Structural element categories that drive face classification."""
    COLUMN = "column"
    BEAM = "beam"
    WALL = "wall"
    FLOOR = "floor"
    STAIR = "stair"
    FOUNDATION = "foundation"
    OTHER = "other"


class FormworkKind(Enum):
    """What a face receives: nothing, a vertical panel, or a horizontal slab."""
    NONE = "none"
    PANEL = "panel"
    SLAB = "slab"


class TrimMode(Enum):
    """How a mold shell is trimmed against neighbouring solids."""
    BOOLEAN = "boolean"
    DIRECT_CUT_FIRST = "direct_cut_first"


class SynthesisFailure(Enum):
    """Why a face produced no mold solid."""
    NOT_CLASSIFIED = "not_classified"
    DEGENERATE_FACE = "degenerate_face"
    EXTRUSION_FAILED = "extrusion_failed"
    FULLY_OCCLUDED = "fully_occluded"


class FormworkError(Exception):
    """Base exception for formwork errors."""
    pass


class InvalidLoopError(FormworkError):
    """A boundary loop is open or self-intersecting."""
    pass


class BatchCancelled(FormworkError):
    """The user cancelled before the batch started."""
    pass


class BatchRolledBack(FormworkError):
    """The batch failed and every change made in it was rolled back."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


@dataclass(frozen=True)
class FormworkConfig:
    """Configuration for mold synthesis and conversion.

    Lengths are in model units (metres by default).
    """

    thickness: float = 0.02
    adjacency_margin: float = 0.1
    overlap_tol: float = 1e-6
    min_face_area: float = 1e-6
    min_volume: float = 1e-7
    min_intersection_volume: float = 1e-8
    discount_ratio: float = 0.98
    trim_mode: TrimMode = TrimMode.BOOLEAN
    boolean_engine: Optional[str] = "manifold"
    direct_cut_area_tol: float = 1e-6
    convert_to_native: bool = True
    copy_comments: bool = True
    detect_cylinders: bool = True
    cylinder_min_facets: int = 6
    cylinder_max_step_deg: float = 30.0


@dataclass(frozen=True)
class Level:
    """A named datum elevation in the host model."""

    level_id: str
    name: str
    elevation: float


@dataclass
class StructuralElement:
    """A structural element of the host model and its solid."""

    element_id: str
    category: ElementCategory
    solid: trimesh.Trimesh
    comment: str = ""


@dataclass
class AdjacentElement:
    """Another element near the one being processed, valid for one pass."""

    element_id: str
    category: ElementCategory
    solid: trimesh.Trimesh
    bounding_box: BoundingBox


@dataclass
class MoldSolid:
    """Thin formwork shell generated for one classified face."""

    mesh: trimesh.Trimesh
    source_element_id: str
    face_index: int
    kind: FormworkKind
    outward_normal: np.ndarray
    thickness: float
    face_area: float
    expected_volume: float
    realized_volume: float
    cuts_applied: int = 0
    trim_mode: str = TrimMode.BOOLEAN.value
    skipped_neighbors: List[str] = field(default_factory=list)
    # Base arc of a curved panel; None for flat panels and slabs.
    arc: Optional[ArcCurve] = None

    @property
    def discounted_volume(self) -> float:
        return max(0.0, self.expected_volume - self.realized_volume)

    @property
    def discounted_area(self) -> float:
        if self.thickness <= 0:
            return 0.0
        return self.discounted_volume / self.thickness

    def is_discounted(self, ratio: float = 0.98) -> bool:
        return self.realized_volume < self.expected_volume * ratio


@dataclass
class SynthesisOutcome:
    """Mold solid for a face, or the reason there is none."""

    mold: Optional[MoldSolid] = None
    failure: Optional[SynthesisFailure] = None

    @property
    def ok(self) -> bool:
        return self.mold is not None


@dataclass
class WallDescriptor:
    """Minimal input for materialising a native wall."""

    base_curve: Union[LineSegment, ArcCurve]
    height: float
    level: Level
    base_offset: float = 0.0
    wall_type: Optional[str] = None
    source_element_id: str = ""
    source_loop: Optional[CurveLoop] = None


@dataclass
class FloorDescriptor:
    """Minimal input for materialising a native floor."""

    boundary: CurveLoop
    level: Level
    height_offset: float = 0.0
    floor_type: Optional[str] = None
    source_element_id: str = ""


NativeElementDescriptor = Union[WallDescriptor, FloorDescriptor]


@dataclass
class FaceDecision:
    """Record of what happened to one face of one element."""

    face_index: int
    normal: Vec3
    area: float
    kind: FormworkKind
    failure: Optional[SynthesisFailure] = None
    expected_volume: float = 0.0
    realized_volume: float = 0.0
    cuts_applied: int = 0
    discounted: bool = False
    output_ref: Optional[str] = None
    output_kind: Optional[str] = None  # "wall" | "floor" | "shape"
    # Every element created for the face; more than one when trimming split it.
    output_refs: List[str] = field(default_factory=list)
    # Faces merged into this decision, for faceted cylinders.
    member_faces: Tuple[int, ...] = ()


@dataclass
class ElementReport:
    """Per-element aggregate of face decisions."""

    element_id: str
    category: ElementCategory
    neighbor_count: int = 0
    faces: List[FaceDecision] = field(default_factory=list)
    geometry_unavailable: bool = False

    @property
    def formed(self) -> int:
        return sum(1 for f in self.faces if f.output_ref is not None)

    @property
    def omitted(self) -> int:
        return sum(1 for f in self.faces if f.kind == FormworkKind.NONE)

    @property
    def skipped(self) -> int:
        return sum(
            1 for f in self.faces
            if f.kind != FormworkKind.NONE and f.output_ref is None
        )

    @property
    def discounted(self) -> int:
        return sum(1 for f in self.faces if f.discounted)


@dataclass
class FormworkRunResult:
    """In-memory result from one formwork batch."""

    run_id: str
    status: str
    elements: List[ElementReport] = field(default_factory=list)
    created_refs: List[str] = field(default_factory=list)
    walls_created: int = 0
    floors_created: int = 0
    shapes_created: int = 0
    invalid_loops: int = 0
    total_area: float = 0.0
    discounted_area: float = 0.0
    expected_volume: float = 0.0
    realized_volume: float = 0.0
    debug: Dict[str, object] = field(default_factory=dict)

    @property
    def faces_formed(self) -> int:
        return sum(e.formed for e in self.elements)

    @property
    def faces_omitted(self) -> int:
        return sum(e.omitted for e in self.elements)

    @property
    def faces_skipped(self) -> int:
        return sum(e.skipped for e in self.elements)

    @property
    def faces_discounted(self) -> int:
        return sum(e.discounted for e in self.elements)

    def summary_lines(self) -> List[str]:
        net = self.total_area - self.discounted_area
        pct = self.discounted_area * 100.0 / self.total_area if self.total_area > 0 else 0.0
        return [
            f"Elements processed: {len(self.elements)}",
            f"Faces formed: {self.faces_formed}",
            f"Faces with discounts: {self.faces_discounted}",
            f"Faces omitted: {self.faces_omitted}",
            f"Faces skipped: {self.faces_skipped}",
            f"Walls: {self.walls_created}, floors: {self.floors_created}, "
            f"raw shapes: {self.shapes_created}",
            f"Area: {self.total_area:.2f} total, {self.discounted_area:.2f} discounted, "
            f"{net:.2f} net ({pct:.1f}% discounted)",
        ]


def to_vec3(values: Sequence[float]) -> Vec3:
    return (float(values[0]), float(values[1]), float(values[2]))
