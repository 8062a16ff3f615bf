"""Mold solids for classified faces.

A face that needs formwork is extruded outward by the panel thickness (the
faces of a faceted cylinder together, as one curved panel) and
the resulting shell is trimmed against neighbouring elements, either with
3D boolean differences or, when possible, by cutting the outline in 2D.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import trimesh
from shapely.geometry import Polygon
from shapely.geometry.polygon import orient

from formwork.contracts import (
    AdjacentElement,
    ElementCategory,
    FormworkConfig,
    FormworkKind,
    MoldSolid,
    SynthesisFailure,
    SynthesisOutcome,
    TrimMode,
)
from formwork.normals import resolve
from formwork.rules import classify
from formwork.trim import direct_cut, polygon_parts
from geometry_primitives import (
    CylindricalFace,
    PlanarFace,
    _make_2d_basis,
    is_valid_solid,
    loop_to_polygon,
    mesh_bounding_box,
)

logger = logging.getLogger(__name__)


def face_frame(origin: np.ndarray, outward: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """(u, v, 4x4 transform) of a right-handed frame whose Z is *outward*."""
    n = np.asarray(outward, dtype=float)
    n = n / np.linalg.norm(n)
    u, v = _make_2d_basis(n)
    transform = np.eye(4)
    transform[:3, 0] = u
    transform[:3, 1] = v
    transform[:3, 2] = n
    transform[:3, 3] = origin
    return u, v, transform


def extrude_outline(outline, transform: np.ndarray, thickness: float) -> Optional[trimesh.Trimesh]:
    """Extrude a local-frame outline (Polygon or MultiPolygon) into world space."""
    pieces = []
    for part in polygon_parts(outline):
        if not part.is_valid:
            part = part.buffer(0)
            if part.is_empty or not isinstance(part, Polygon):
                continue
        piece = trimesh.creation.extrude_polygon(orient(part, sign=1.0), height=thickness)
        pieces.append(piece)
    if not pieces:
        return None
    mesh = pieces[0] if len(pieces) == 1 else trimesh.util.concatenate(pieces)
    mesh.apply_transform(transform)
    return mesh


def _boolean_trim(
    shell: trimesh.Trimesh,
    neighbors: Sequence[AdjacentElement],
    config: FormworkConfig,
) -> Tuple[trimesh.Trimesh, int, List[str]]:
    """Subtract each overlapping neighbour from *shell*.

    A neighbour whose cut fails, or whose result is invalid or larger than
    the shell it was cut from, is skipped; the shell is kept as it was.
    """
    current = shell
    cuts = 0
    skipped: List[str] = []
    for neighbor in neighbors:
        if not mesh_bounding_box(current).overlaps(neighbor.bounding_box, config.overlap_tol):
            continue
        try:
            overlap = current.intersection(neighbor.solid, engine=config.boolean_engine)
            overlap_volume = abs(float(overlap.volume)) if not overlap.is_empty else 0.0
            if overlap_volume < config.min_intersection_volume:
                continue
            result = current.difference(neighbor.solid, engine=config.boolean_engine)
        except Exception as exc:
            logger.warning(
                "Boolean cut against %s failed: %s", neighbor.element_id, exc,
            )
            skipped.append(neighbor.element_id)
            continue

        if result is None or result.is_empty:
            # Neighbour swallows the whole shell.
            return result, cuts + 1, skipped
        if not result.is_watertight:
            logger.warning("Cut against %s left an open shell; skipped", neighbor.element_id)
            skipped.append(neighbor.element_id)
            continue
        if abs(float(result.volume)) > abs(float(current.volume)) + config.min_intersection_volume:
            logger.warning("Cut against %s grew the shell; skipped", neighbor.element_id)
            skipped.append(neighbor.element_id)
            continue
        current = result
        cuts += 1
    return current, cuts, skipped


def synthesize_face(
    face: PlanarFace,
    category: ElementCategory,
    adjacent: Sequence[AdjacentElement],
    thickness: Optional[float] = None,
    *,
    solid: Optional[trimesh.Trimesh] = None,
    element_id: str = "",
    config: Optional[FormworkConfig] = None,
) -> SynthesisOutcome:
    """Build the mold for one face, or say why there is none.

    Args:
        face: Face of the element's solid.
        category: Category of the element the face belongs to.
        adjacent: Neighbouring elements to trim against.
        thickness: Panel thickness; ``config.thickness`` when omitted.
        solid: The element's solid, used to orient the face outward. When
            omitted the stored face normal is trusted.
        element_id: Recorded on the mold.
        config: Tolerances and trim mode.

    Returns:
        SynthesisOutcome with a mold, or a SynthesisFailure reason.
    """
    config = config or FormworkConfig()
    thickness = config.thickness if thickness is None else float(thickness)

    if face.outer_loop is None or len(face.outer_loop) < 3 or face.area < config.min_face_area:
        return SynthesisOutcome(failure=SynthesisFailure.DEGENERATE_FACE)
    if thickness <= 0:
        return SynthesisOutcome(failure=SynthesisFailure.DEGENERATE_FACE)

    if solid is not None:
        outward = resolve(face, solid)
    else:
        logger.debug("Face %d: no solid given, stored normal taken as outward", face.index)
        outward = np.asarray(face.normal, dtype=float)
    kind = classify(category, outward)
    if kind == FormworkKind.NONE:
        return SynthesisOutcome(failure=SynthesisFailure.NOT_CLASSIFIED)

    u, v, transform = face_frame(face.origin, outward)
    outline = loop_to_polygon(face.outer_loop, face.origin, u, v)
    if outline.is_empty or outline.area < config.min_face_area:
        return SynthesisOutcome(failure=SynthesisFailure.DEGENERATE_FACE)

    try:
        shell = extrude_outline(outline, transform, thickness)
    except (ValueError, IndexError) as exc:
        logger.warning("Extrusion of face %d failed: %s", face.index, exc)
        shell = None
    if not is_valid_solid(shell, config.min_volume):
        return SynthesisOutcome(failure=SynthesisFailure.EXTRUSION_FAILED)
    expected = abs(float(shell.volume))

    neighbors = [
        n for n in adjacent
        if mesh_bounding_box(shell).overlaps(n.bounding_box, config.overlap_tol)
    ]

    mesh: Optional[trimesh.Trimesh] = None
    cuts = 0
    skipped: List[str] = []
    mode = TrimMode.BOOLEAN.value
    if neighbors and config.trim_mode == TrimMode.DIRECT_CUT_FIRST:
        trimmed = direct_cut(
            outline, neighbors, face.origin, u, v, outward, thickness,
            config.direct_cut_area_tol,
        )
        if trimmed.resolved:
            mode = "direct_cut"
            cuts = trimmed.cuts
            if trimmed.outline is not None:
                mesh = shell if cuts == 0 else extrude_outline(trimmed.outline, transform, thickness)
        else:
            logger.debug(
                "Face %d: direct cut unresolved (%s), using booleans",
                face.index, ", ".join(trimmed.unresolved),
            )
            mode = "direct_cut_fallback"
            mesh, cuts, skipped = _boolean_trim(shell, neighbors, config)
    elif neighbors:
        mesh, cuts, skipped = _boolean_trim(shell, neighbors, config)
    else:
        mesh = shell

    if mesh is None or mesh.is_empty or abs(float(mesh.volume)) <= config.min_volume:
        logger.debug("Face %d fully occluded by neighbours", face.index)
        return SynthesisOutcome(failure=SynthesisFailure.FULLY_OCCLUDED)

    realized = min(abs(float(mesh.volume)), expected)
    mold = MoldSolid(
        mesh=mesh,
        source_element_id=element_id,
        face_index=face.index,
        kind=kind,
        outward_normal=outward,
        thickness=thickness,
        face_area=float(outline.area),
        expected_volume=expected,
        realized_volume=realized,
        cuts_applied=cuts,
        trim_mode=mode,
        skipped_neighbors=skipped,
    )
    logger.debug(
        "Face %d -> %s mold, %d cuts, volume %.6g/%.6g",
        face.index, kind.value, cuts, realized, expected,
    )
    return SynthesisOutcome(mold=mold)


def synthesize(
    face: PlanarFace,
    category: ElementCategory,
    adjacent: Sequence[AdjacentElement],
    thickness: Optional[float] = None,
    **kwargs,
) -> Optional[MoldSolid]:
    """Mold solid for *face*, or None when the face gets no formwork.

    Pass ``solid=`` to have the face normal resolved outward first; without
    it the face must already carry its outward normal.
    """
    return synthesize_face(face, category, adjacent, thickness, **kwargs).mold


def cylinder_outline(cylinder: CylindricalFace, thickness: float) -> Polygon:
    """Plan-view outline of a curved panel *thickness* thick around *cylinder*.

    Each rim corner is pushed out radially; a closed rim gives a ring with a
    hole, an open one a single band.
    """
    inner = np.asarray(cylinder.rim, dtype=float)
    radial = inner - cylinder.center
    radial /= np.linalg.norm(radial, axis=1)[:, None]
    outer = inner + thickness * radial
    if cylinder.closed:
        return Polygon(outer, [inner])
    return Polygon(np.vstack([inner, outer[::-1]]))


def synthesize_cylinder(
    cylinder: CylindricalFace,
    category: ElementCategory,
    adjacent: Sequence[AdjacentElement],
    thickness: Optional[float] = None,
    *,
    element_id: str = "",
    config: Optional[FormworkConfig] = None,
) -> SynthesisOutcome:
    """One curved mold wrapping the faces of a faceted cylinder.

    The panel follows the rim outward by *thickness* over the cylinder's
    full height and is trimmed with boolean cuts.
    """
    config = config or FormworkConfig()
    thickness = config.thickness if thickness is None else float(thickness)
    if thickness <= 0 or cylinder.height <= 0 or cylinder.area < config.min_face_area:
        return SynthesisOutcome(failure=SynthesisFailure.DEGENERATE_FACE)

    outward = cylinder.mid_normal()
    kind = classify(category, outward)
    if kind == FormworkKind.NONE:
        return SynthesisOutcome(failure=SynthesisFailure.NOT_CLASSIFIED)

    outline = cylinder_outline(cylinder, thickness)
    transform = np.eye(4)
    transform[2, 3] = cylinder.z_min
    try:
        shell = extrude_outline(outline, transform, cylinder.height)
    except (ValueError, IndexError) as exc:
        logger.warning("Extrusion of cylinder at face %d failed: %s", cylinder.face_indices[0], exc)
        shell = None
    if not is_valid_solid(shell, config.min_volume):
        return SynthesisOutcome(failure=SynthesisFailure.EXTRUSION_FAILED)
    expected = abs(float(shell.volume))

    neighbors = [
        n for n in adjacent
        if mesh_bounding_box(shell).overlaps(n.bounding_box, config.overlap_tol)
    ]
    mesh, cuts, skipped = _boolean_trim(shell, neighbors, config) if neighbors else (shell, 0, [])
    if mesh is None or mesh.is_empty or abs(float(mesh.volume)) <= config.min_volume:
        return SynthesisOutcome(failure=SynthesisFailure.FULLY_OCCLUDED)

    realized = min(abs(float(mesh.volume)), expected)
    logger.debug(
        "Cylinder of %d faces (r=%.4g) -> curved mold, %d cuts, volume %.6g/%.6g",
        len(cylinder.face_indices), cylinder.radius, cuts, realized, expected,
    )
    return SynthesisOutcome(
        mold=MoldSolid(
            mesh=mesh,
            source_element_id=element_id,
            face_index=cylinder.face_indices[0],
            kind=kind,
            outward_normal=outward,
            thickness=thickness,
            face_area=cylinder.area,
            expected_volume=expected,
            realized_volume=realized,
            cuts_applied=cuts,
            skipped_neighbors=skipped,
            arc=cylinder.base_arc(),
        )
    )
