"""Outward extrusion direction for formwork faces.

A face's stored normal is not trusted: the mold must always grow away from
the element, so the normal is compared against the vector from the solid's
centroid to the face's centroid and flipped when the two disagree.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np
import trimesh

from geometry_primitives import PlanarFace

logger = logging.getLogger(__name__)

CentroidStrategy = Callable[[trimesh.Trimesh], Optional[np.ndarray]]


def _mass_centroid(solid: trimesh.Trimesh) -> Optional[np.ndarray]:
    """Exact volumetric centroid; only meaningful for a closed solid."""
    if solid is None or solid.is_empty or not solid.is_watertight:
        return None
    if abs(float(solid.volume)) < 1e-15:
        return None
    center = np.asarray(solid.center_mass, dtype=float)
    return center if np.all(np.isfinite(center)) else None


def _bounding_box_centroid(solid: trimesh.Trimesh) -> Optional[np.ndarray]:
    if solid is None or solid.is_empty:
        return None
    bounds = np.asarray(solid.bounds, dtype=float)
    center = bounds.mean(axis=0)
    return center if np.all(np.isfinite(center)) else None


def _origin(solid: trimesh.Trimesh) -> Optional[np.ndarray]:
    return np.zeros(3)


# Tried in order; each is a strictly worse approximation than the one before.
CENTROID_STRATEGIES: List[CentroidStrategy] = [
    _mass_centroid,
    _bounding_box_centroid,
    _origin,
]


def solid_centroid(
    solid: trimesh.Trimesh,
    strategies: Sequence[CentroidStrategy] = CENTROID_STRATEGIES,
) -> np.ndarray:
    """Centroid of *solid* from the first strategy that succeeds."""
    for strategy in strategies:
        try:
            center = strategy(solid)
        except (ValueError, FloatingPointError, AttributeError, IndexError) as exc:
            logger.debug("Centroid strategy %s failed: %s", strategy.__name__, exc)
            continue
        if center is not None:
            return center
    return np.zeros(3)


def face_centroid(face: PlanarFace) -> Optional[np.ndarray]:
    """Mean of every segment endpoint of the outer loop (holes ignored)."""
    loop = face.outer_loop
    if loop is None or len(loop) == 0:
        return None
    return loop.endpoints.mean(axis=0)


def points_outward(
    normal: np.ndarray, face_point: np.ndarray, solid_center: np.ndarray,
) -> bool:
    """True when *normal* points away from *solid_center* at *face_point*."""
    direction = np.asarray(face_point, dtype=float) - np.asarray(solid_center, dtype=float)
    length = np.linalg.norm(direction)
    if length < 1e-12:
        return False
    return float(np.dot(normal, direction / length)) > 0


def correct(
    normal: np.ndarray, face_point: np.ndarray, solid_center: np.ndarray,
) -> np.ndarray:
    """Return *normal* or its negation, whichever points outward."""
    normal = np.asarray(normal, dtype=float)
    if points_outward(normal, face_point, solid_center):
        return normal
    return -normal


def resolve(face: PlanarFace, solid: trimesh.Trimesh) -> np.ndarray:
    """Outward-pointing normal of *face* on *solid*.

    Never raises. When the centroids cannot be compared the raw normal is
    returned unchanged and the degraded result is logged.
    """
    raw = np.asarray(face.normal, dtype=float)
    try:
        center = solid_centroid(solid)
        face_c = face_centroid(face)
        if face_c is None:
            logger.warning("Face %d has no outer loop; keeping raw normal", face.index)
            return raw
        direction = face_c - center
        length = float(np.linalg.norm(direction))
        if length < 1e-12 or not np.isfinite(length):
            logger.warning(
                "Face %d centroid coincides with solid centroid; keeping raw normal",
                face.index,
            )
            return raw
        if float(np.dot(raw, direction / length)) < 0:
            return -raw
        return raw
    except (ValueError, FloatingPointError, AttributeError, IndexError, TypeError) as exc:
        logger.warning("Outward normal for face %d degraded to raw normal: %s", face.index, exc)
        return raw
