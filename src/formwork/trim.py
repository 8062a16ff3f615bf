"""Direct (2D) trimming of a face outline against neighbouring solids.

Instead of a 3D boolean, each neighbour is sliced by planes parallel to the
face inside the mold's thickness band. When the slices agree, the neighbour
is a prism across the band and its footprint can simply be subtracted from
the face outline in the face's own frame. When they disagree the neighbour
is reported as unresolved and the caller falls back to boolean trimming.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import reduce
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import trimesh
from shapely.geometry import LineString, MultiPolygon, Polygon
from shapely.ops import polygonize, unary_union

from formwork.contracts import AdjacentElement
from geometry_primitives import project_point

logger = logging.getLogger(__name__)

# Fractions of the thickness at which neighbours are sliced.
SAMPLE_FRACTIONS: Tuple[float, ...] = (0.1, 0.5, 0.9)
# Decimal places section points are rounded to before polygonising.
SNAP_DIGITS = 9


@dataclass
class TrimOutcome:
    """Outline left after direct trimming.

    ``outline`` is None when nothing is left. ``unresolved`` lists the
    neighbours that could not be cut in 2D; when it is non-empty the
    outline must not be used.
    """
    outline: Optional[Union[Polygon, MultiPolygon]]
    cuts: int = 0
    unresolved: List[str] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return not self.unresolved


def _clean_polygon(geom, min_area: float = 0.0):
    """Return the polygonal part of *geom* above *min_area*, or ``None``.

    Pieces are kept (a cut may split an outline in two); slivers and any
    line or point debris from the overlay are dropped.
    """
    if geom is None or geom.is_empty:
        return None
    if isinstance(geom, Polygon):
        parts = [geom]
    else:
        parts = [g for g in getattr(geom, "geoms", []) if isinstance(g, Polygon)]
    parts = [p for p in parts if not p.is_empty and p.area > min_area]
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return MultiPolygon(parts)


def polygon_parts(geom) -> List[Polygon]:
    """Split a Polygon/MultiPolygon into its polygons (empty list for None)."""
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom]
    return [g for g in geom.geoms if isinstance(g, Polygon) and not g.is_empty]


def section_polygon(
    mesh: trimesh.Trimesh,
    plane_origin: np.ndarray,
    normal: np.ndarray,
    frame_origin: np.ndarray,
    u: np.ndarray,
    v: np.ndarray,
) -> Optional[Union[Polygon, MultiPolygon]]:
    """Cross-section of *mesh* on a plane, in the (u, v) frame.

    Closed section rings are polygonised and combined even-odd, so a ring
    nested in another becomes a hole. Returns None when the plane misses.
    """
    segments = trimesh.intersections.mesh_plane(
        mesh, plane_normal=normal, plane_origin=plane_origin,
    )
    if segments is None or len(segments) == 0:
        return None
    lines = []
    for a, b in segments:
        # Snap so edges shared by two triangles meet exactly.
        pa = tuple(round(c, SNAP_DIGITS) for c in project_point(a, frame_origin, u, v))
        pb = tuple(round(c, SNAP_DIGITS) for c in project_point(b, frame_origin, u, v))
        if pa != pb:
            lines.append(LineString([pa, pb]))
    if not lines:
        return None
    rings = [Polygon(p.exterior) for p in polygonize(unary_union(lines))]
    if not rings:
        return None
    combined = reduce(lambda acc, p: acc.symmetric_difference(p), rings[1:], rings[0])
    return _clean_polygon(combined)


def neighbor_footprint(
    mesh: trimesh.Trimesh,
    origin: np.ndarray,
    u: np.ndarray,
    v: np.ndarray,
    normal: np.ndarray,
    thickness: float,
    area_tol: float = 1e-6,
    fractions: Sequence[float] = SAMPLE_FRACTIONS,
) -> Tuple[bool, Optional[Union[Polygon, MultiPolygon]]]:
    """Footprint of a neighbour across the band ``[0, thickness]`` along *normal*.

    Returns ``(resolved, footprint)``. ``(True, None)`` means the neighbour
    does not enter the band. ``(False, None)`` means it enters only part of
    the band or changes shape across it.
    """
    samples = []
    for fraction in fractions:
        plane_origin = origin + normal * (thickness * fraction)
        samples.append(section_polygon(mesh, plane_origin, normal, origin, u, v))

    hits = [s for s in samples if s is not None]
    if not hits:
        return True, None
    if len(hits) != len(samples):
        return False, None
    reference = hits[len(hits) // 2]
    for other in hits:
        if reference.symmetric_difference(other).area > area_tol:
            return False, None
    return True, reference


def direct_cut(
    outline: Polygon,
    neighbors: Sequence[AdjacentElement],
    origin: np.ndarray,
    u: np.ndarray,
    v: np.ndarray,
    normal: np.ndarray,
    thickness: float,
    area_tol: float = 1e-6,
) -> TrimOutcome:
    """Subtract each neighbour's footprint from *outline* in 2D.

    Stops at the first unresolved neighbour: the face then has to be trimmed
    with 3D booleans as a whole.
    """
    current = _clean_polygon(outline)
    cuts = 0
    for neighbor in neighbors:
        if current is None:
            break
        try:
            resolved, footprint = neighbor_footprint(
                neighbor.solid, origin, u, v, normal, thickness, area_tol,
            )
        except (ValueError, IndexError) as exc:
            logger.debug("Section of %s failed: %s", neighbor.element_id, exc)
            resolved, footprint = False, None
        if not resolved:
            logger.debug("Neighbour %s not resolvable by direct cut", neighbor.element_id)
            return TrimOutcome(outline=None, cuts=cuts, unresolved=[neighbor.element_id])
        if footprint is None:
            continue
        if current.intersection(footprint).area <= area_tol:
            continue
        current = _clean_polygon(current.difference(footprint), area_tol)
        cuts += 1
    return TrimOutcome(outline=current, cuts=cuts)
