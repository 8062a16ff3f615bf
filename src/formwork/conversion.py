"""Reduce a mold solid to a native wall or floor descriptor.

The mold's largest planar face decides the outcome: a vertical face becomes
a wall (its longest edge is the base curve), a horizontal one a floor (its
outer loop is the boundary). Anything in between stays raw geometry. A
curved mold becomes a wall on its base arc. A mold that trimming split into
separate bodies is reduced one body at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from formwork.contracts import (
    FloorDescriptor,
    InvalidLoopError,
    MoldSolid,
    NativeElementDescriptor,
    WallDescriptor,
)
from formwork.model import ModelQuery
from geometry_primitives import ArcCurve, CurveLoop, LineSegment, PlanarFace, arc_span

logger = logging.getLogger(__name__)

WALL_MAX_Z = 0.3
FLOOR_MIN_Z = 0.7
# Relative area difference under which two faces count as equally large.
AREA_TIE_TOL = 1e-9


@dataclass
class ConversionOutcome:
    """Descriptor for a mold, or why there is none.

    ``reason`` is one of "multi_body", "no_faces", "inclined", "no_loop",
    "invalid_loop", "no_base_curve", "no_level", "degenerate_height".
    """
    descriptor: Optional[NativeElementDescriptor] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.descriptor is not None


def reference_face(mold: MoldSolid, model: ModelQuery) -> Optional[PlanarFace]:
    """Largest planar face of the mold; the first one wins a tie."""
    best: Optional[PlanarFace] = None
    for face in model.faces_of(mold.mesh):
        if best is None or face.area > best.area * (1.0 + AREA_TIE_TOL):
            best = face
    return best


def longest_segment(loop: CurveLoop) -> Optional[LineSegment]:
    best: Optional[LineSegment] = None
    for segment in loop:
        if segment.length <= 0:
            continue
        if best is None or segment.length > best.length:
            best = segment
    return best


def validate_loop(loop: Optional[CurveLoop]) -> CurveLoop:
    """Return *loop* if it is closed and simple, else raise InvalidLoopError."""
    if loop is None or len(loop) < 3:
        raise InvalidLoopError("loop has fewer than three segments")
    if not loop.is_closed():
        raise InvalidLoopError("loop is not closed")
    if not loop.is_simple():
        raise InvalidLoopError("loop intersects itself")
    return loop


def reduce_mold(
    mold: MoldSolid,
    model: ModelQuery,
    wall_type: Optional[str] = None,
    floor_type: Optional[str] = None,
) -> ConversionOutcome:
    """Wall or floor descriptor for *mold*; never raises.

    A mold of several bodies has no single descriptor (reason
    "multi_body"); reduce it with reduce_mold_parts instead.
    """
    if mold.mesh.body_count > 1:
        logger.debug("Mold of face %d has %d bodies", mold.face_index, mold.mesh.body_count)
        return ConversionOutcome(reason="multi_body")
    if mold.arc is not None:
        return _reduce_curved(mold, model, wall_type)

    try:
        face = reference_face(mold, model)
    except (ValueError, IndexError) as exc:
        logger.warning("Face extraction on mold of face %d failed: %s", mold.face_index, exc)
        face = None
    if face is None:
        return ConversionOutcome(reason="no_faces")

    z = abs(float(face.normal[2]))
    if WALL_MAX_Z <= z <= FLOOR_MIN_Z:
        logger.debug("Mold of face %d is inclined (|Z|=%.3f); no descriptor", mold.face_index, z)
        return ConversionOutcome(reason="inclined")

    if face.outer_loop is None:
        return ConversionOutcome(reason="no_loop")
    try:
        loop = validate_loop(face.outer_loop)
    except InvalidLoopError as exc:
        logger.error(
            "Invalid boundary on mold of %s face %d: %s",
            mold.source_element_id, mold.face_index, exc,
        )
        return ConversionOutcome(reason="invalid_loop")

    level = model.lowest_level()
    if level is None:
        logger.warning("No level in model; mold of face %d left as shape", mold.face_index)
        return ConversionOutcome(reason="no_level")

    bounds = mold.mesh.bounds
    z_min, z_max = float(bounds[0][2]), float(bounds[1][2])
    offset = z_min - level.elevation

    if z < WALL_MAX_Z:
        base = longest_segment(loop)
        if base is None:
            return ConversionOutcome(reason="no_base_curve")
        height = z_max - z_min
        if height <= 0:
            return ConversionOutcome(reason="degenerate_height")
        return ConversionOutcome(
            descriptor=WallDescriptor(
                base_curve=base,
                height=height,
                level=level,
                base_offset=offset,
                wall_type=wall_type,
                source_element_id=mold.source_element_id,
                source_loop=loop,
            )
        )

    return ConversionOutcome(
        descriptor=FloorDescriptor(
            boundary=loop,
            level=level,
            height_offset=offset,
            floor_type=floor_type,
            source_element_id=mold.source_element_id,
        )
    )


def _reduce_curved(
    mold: MoldSolid, model: ModelQuery, wall_type: Optional[str],
) -> ConversionOutcome:
    level = model.lowest_level()
    if level is None:
        logger.warning("No level in model; curved mold of face %d left as shape", mold.face_index)
        return ConversionOutcome(reason="no_level")
    bounds = mold.mesh.bounds
    z_min, z_max = float(bounds[0][2]), float(bounds[1][2])
    if z_max - z_min <= 0:
        return ConversionOutcome(reason="degenerate_height")
    if mold.arc.length <= 0:
        return ConversionOutcome(reason="no_base_curve")
    return ConversionOutcome(
        descriptor=WallDescriptor(
            base_curve=mold.arc.at_elevation(z_min),
            height=z_max - z_min,
            level=level,
            base_offset=z_min - level.elevation,
            wall_type=wall_type,
            source_element_id=mold.source_element_id,
        )
    )


def split_mold(mold: MoldSolid) -> List[MoldSolid]:
    """One mold per connected body of *mold*.

    Face area and volumes are shared out in proportion to body volume. A
    curved body gets the sub-arc its vertices cover.
    """
    if mold.mesh.body_count <= 1:
        return [mold]
    bodies = [b for b in mold.mesh.split(only_watertight=True) if abs(float(b.volume)) > 0]
    total = sum(abs(float(b.volume)) for b in bodies)
    if len(bodies) < 2 or total <= 0:
        return [mold]

    parts = []
    for body in bodies:
        share = abs(float(body.volume)) / total
        arc = mold.arc
        if arc is not None:
            start, end = arc_span(body.vertices, arc.center)
            arc = ArcCurve(arc.center, arc.radius, start, end)
        parts.append(
            replace(
                mold,
                mesh=body,
                face_area=mold.face_area * share,
                expected_volume=mold.expected_volume * share,
                realized_volume=mold.realized_volume * share,
                arc=arc,
            )
        )
    logger.debug("Mold of face %d split into %d bodies", mold.face_index, len(parts))
    return parts


def reduce_mold_parts(
    mold: MoldSolid,
    model: ModelQuery,
    wall_type: Optional[str] = None,
    floor_type: Optional[str] = None,
) -> List[Tuple[MoldSolid, ConversionOutcome]]:
    """Split *mold* into bodies and reduce each; never raises."""
    return [
        (part, reduce_mold(part, model, wall_type, floor_type))
        for part in split_mold(mold)
    ]


def reduce_to_descriptor(
    mold: MoldSolid,
    model: ModelQuery,
    wall_type: Optional[str] = None,
    floor_type: Optional[str] = None,
) -> Optional[NativeElementDescriptor]:
    return reduce_mold(mold, model, wall_type, floor_type).descriptor
