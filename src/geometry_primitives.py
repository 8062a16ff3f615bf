"""
Core geometry types for formwork generation.

Built on trimesh for solids and Shapely for 2D polygon operations. Provides
LineSegment/CurveLoop (ordered straight-edge boundaries), ArcCurve, PlanarFace
(a coplanar facet of a solid with its boundary loops), CylindricalFace (the
vertical facets of a faceted cylinder), BoundingBox, and the conversions
between 3D loops and 2D polygons in a face's local frame.
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import trimesh
from shapely.geometry import LinearRing, MultiPolygon, Polygon
from shapely.geometry.polygon import orient
from shapely.ops import unary_union

# Relative tolerance for dropping collinear boundary vertices (sine of angle).
COLLINEAR_TOL = 1e-9
# Absolute tolerance for loop closure and repeated points, in model units.
POINT_TOL = 1e-7


@dataclass(frozen=True, eq=False)
class LineSegment:
    """A straight boundary curve between two 3D points."""
    start: np.ndarray  # (3,)
    end: np.ndarray    # (3,)

    @property
    def length(self) -> float:
        return float(np.linalg.norm(self.end - self.start))


@dataclass(frozen=True, eq=False)
class ArcCurve:
    """Counter-clockwise circular arc in the horizontal plane through *center*.

    A sweep of 2*pi is a full circle; start and end then coincide.
    """
    center: np.ndarray  # (3,)
    radius: float
    start_angle: float
    end_angle: float

    @property
    def sweep(self) -> float:
        return float(self.end_angle - self.start_angle)

    @property
    def length(self) -> float:
        return float(self.radius * self.sweep)

    @property
    def is_full_circle(self) -> bool:
        return self.sweep >= 2.0 * np.pi - 1e-9

    def point_at(self, angle: float) -> np.ndarray:
        return self.center + self.radius * np.array([np.cos(angle), np.sin(angle), 0.0])

    @property
    def start(self) -> np.ndarray:
        return self.point_at(self.start_angle)

    @property
    def end(self) -> np.ndarray:
        return self.point_at(self.end_angle)

    def at_elevation(self, z: float) -> "ArcCurve":
        center = np.array([self.center[0], self.center[1], z], dtype=float)
        return ArcCurve(center, self.radius, self.start_angle, self.end_angle)

    def sample(self, per_turn: int = 32) -> np.ndarray:
        """Points along the arc, ends included, (N, 3)."""
        count = max(2, int(np.ceil(per_turn * self.sweep / (2.0 * np.pi))) + 1)
        angles = np.linspace(self.start_angle, self.end_angle, count)
        return np.array([self.point_at(a) for a in angles])


@dataclass
class CurveLoop:
    """An ordered chain of segments; closed when each end meets the next start."""
    segments: List[LineSegment] = field(default_factory=list)

    @classmethod
    def from_points(cls, points: Sequence[Sequence[float]]) -> "CurveLoop":
        """Build a closed loop through *points* (closing segment added)."""
        pts = [np.asarray(p, dtype=float) for p in points]
        if len(pts) > 1 and np.linalg.norm(pts[0] - pts[-1]) < POINT_TOL:
            pts = pts[:-1]
        segments = [
            LineSegment(pts[i], pts[(i + 1) % len(pts)]) for i in range(len(pts))
        ]
        return cls(segments=segments)

    def __len__(self) -> int:
        return len(self.segments)

    def __iter__(self):
        return iter(self.segments)

    @property
    def vertices(self) -> np.ndarray:
        """Start point of every segment, (N, 3)."""
        if not self.segments:
            return np.zeros((0, 3))
        return np.array([s.start for s in self.segments], dtype=float)

    @property
    def endpoints(self) -> np.ndarray:
        """Both endpoints of every segment, (2N, 3)."""
        if not self.segments:
            return np.zeros((0, 3))
        return np.array(
            [p for s in self.segments for p in (s.start, s.end)], dtype=float
        )

    @property
    def perimeter(self) -> float:
        return float(sum(s.length for s in self.segments))

    def is_closed(self, tol: float = POINT_TOL) -> bool:
        if len(self.segments) < 3:
            return False
        n = len(self.segments)
        for i in range(n):
            gap = np.linalg.norm(self.segments[i].end - self.segments[(i + 1) % n].start)
            if gap > tol:
                return False
        return True

    def plane_normal(self) -> Optional[np.ndarray]:
        """Unit normal of the loop by Newell's method, or None if degenerate."""
        verts = self.vertices
        if len(verts) < 3:
            return None
        nxt = np.roll(verts, -1, axis=0)
        n = np.array([
            np.sum((verts[:, 1] - nxt[:, 1]) * (verts[:, 2] + nxt[:, 2])),
            np.sum((verts[:, 2] - nxt[:, 2]) * (verts[:, 0] + nxt[:, 0])),
            np.sum((verts[:, 0] - nxt[:, 0]) * (verts[:, 1] + nxt[:, 1])),
        ])
        norm = np.linalg.norm(n)
        if norm < 1e-12:
            return None
        return n / norm

    def is_simple(self) -> bool:
        """True when the loop does not cross itself in its own plane."""
        normal = self.plane_normal()
        if normal is None:
            return False
        u, v = _make_2d_basis(normal)
        origin = self.vertices[0]
        ring = [project_point(p, origin, u, v) for p in self.vertices]
        if len(ring) < 3:
            return False
        return bool(LinearRing(ring).is_simple)


@dataclass(eq=False)
class PlanarFace:
    """A bounded planar region of one solid.

    Faces are identified by ``index`` within their parent solid only.
    """
    index: int
    normal: np.ndarray           # (3,) raw unit normal as stored
    area: float
    loops: List[CurveLoop]       # outer loop first, then holes
    origin: np.ndarray           # (3,) point on the plane (frame origin)
    basis_u: np.ndarray          # (3,) first in-plane axis
    basis_v: np.ndarray          # (3,) second in-plane axis

    @property
    def outer_loop(self) -> Optional[CurveLoop]:
        return self.loops[0] if self.loops else None

    @property
    def hole_loops(self) -> List[CurveLoop]:
        return self.loops[1:]

    def with_normal(self, normal: np.ndarray) -> "PlanarFace":
        """Copy of this face carrying a different stored normal."""
        return PlanarFace(
            index=self.index,
            normal=np.asarray(normal, dtype=float),
            area=self.area,
            loops=self.loops,
            origin=self.origin,
            basis_u=self.basis_u,
            basis_v=self.basis_v,
        )


@dataclass(frozen=True, eq=False)
class BoundingBox:
    """Axis-aligned bounding box."""
    min: np.ndarray  # (3,)
    max: np.ndarray  # (3,)

    @classmethod
    def of_points(cls, points: np.ndarray) -> "BoundingBox":
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        return cls(pts.min(axis=0), pts.max(axis=0))

    @property
    def center(self) -> np.ndarray:
        return (self.min + self.max) / 2.0

    @property
    def extents(self) -> np.ndarray:
        return self.max - self.min

    def expanded(self, margin: float) -> "BoundingBox":
        return BoundingBox(self.min - margin, self.max + margin)

    def overlaps(self, other: "BoundingBox", tol: float = 0.0) -> bool:
        """True when the boxes share volume thicker than *tol* on every axis.

        Boxes that merely touch (overlap <= tol on some axis) do not overlap.
        """
        lo = np.maximum(self.min, other.min)
        hi = np.minimum(self.max, other.max)
        return bool(np.all(hi - lo > tol))

    def intersects(self, other: "BoundingBox") -> bool:
        """True when the boxes touch or overlap."""
        return bool(np.all(self.min <= other.max) and np.all(other.min <= self.max))


# ─── Solid helpers ───────────────────────────────────────────────────────────

def mesh_bounding_box(mesh: trimesh.Trimesh) -> BoundingBox:
    return BoundingBox.of_points(mesh.bounds)


def is_valid_solid(mesh: Optional[trimesh.Trimesh], min_volume: float = 0.0) -> bool:
    """A usable closed solid: non-empty, watertight, volume above *min_volume*."""
    if mesh is None or mesh.is_empty:
        return False
    if not mesh.is_watertight:
        return False
    return abs(float(mesh.volume)) > min_volume


def box_solid(min_corner: Sequence[float], max_corner: Sequence[float]) -> trimesh.Trimesh:
    """Axis-aligned box solid between two corners."""
    lo = np.asarray(min_corner, dtype=float)
    hi = np.asarray(max_corner, dtype=float)
    mesh = trimesh.creation.box(extents=hi - lo)
    mesh.apply_translation((lo + hi) / 2.0)
    return mesh


# ─── Face extraction ─────────────────────────────────────────────────────────

def extract_planar_faces(
    mesh: trimesh.Trimesh,
    min_area: float = 1e-9,
) -> List[PlanarFace]:
    """Group coplanar adjacent triangles of *mesh* into PlanarFaces.

    Facets come first in trimesh order, then any triangle that belongs to no
    facet as a face of its own. Each group is projected into its plane,
    unioned with Shapely, and the resulting outline mapped back to 3D.

    Args:
        mesh: Source solid (not modified).
        min_area: Groups with a smaller projected area are dropped.

    Returns:
        Faces in deterministic order, indexed 0..N-1.
    """
    groups: List[Tuple[np.ndarray, np.ndarray]] = []
    in_facet = np.zeros(len(mesh.faces), dtype=bool)
    facet_normals = np.asarray(mesh.facets_normal) if len(mesh.facets) else np.zeros((0, 3))
    for facet_index, face_ids in enumerate(mesh.facets):
        face_ids = np.asarray(face_ids, dtype=int)
        in_facet[face_ids] = True
        groups.append((face_ids, facet_normals[facet_index]))
    for face_id in np.flatnonzero(~in_facet):
        groups.append((np.array([face_id]), mesh.face_normals[face_id]))

    faces: List[PlanarFace] = []
    for face_ids, normal in groups:
        face = _face_from_triangles(mesh, face_ids, normal, len(faces))
        if face is None or face.area < min_area:
            continue
        faces.append(face)
    return faces


def _face_from_triangles(
    mesh: trimesh.Trimesh,
    face_ids: np.ndarray,
    normal: np.ndarray,
    index: int,
) -> Optional[PlanarFace]:
    norm = float(np.linalg.norm(normal))
    if norm < 1e-12:
        return None
    n = np.asarray(normal, dtype=float) / norm
    u, v = _make_2d_basis(n)

    triangles_3d = mesh.vertices[mesh.faces[face_ids]]  # (K, 3, 3)
    origin = triangles_3d.reshape(-1, 3).mean(axis=0)

    polygons_2d = []
    for tri in triangles_3d:
        p = Polygon([project_point(pt, origin, u, v) for pt in tri])
        if p.is_valid and p.area > 0:
            polygons_2d.append(p)
    if not polygons_2d:
        return None

    merged = unary_union(polygons_2d)
    if isinstance(merged, MultiPolygon):
        merged = max(merged.geoms, key=lambda g: g.area)
    if not isinstance(merged, Polygon) or merged.is_empty:
        return None
    merged = orient(merged, sign=1.0)

    loops = [ring_to_loop(merged.exterior.coords, origin, u, v)]
    loops.extend(ring_to_loop(hole.coords, origin, u, v) for hole in merged.interiors)
    loops = [loop for loop in loops if len(loop) >= 3]
    if not loops:
        return None

    return PlanarFace(
        index=index,
        normal=n,
        area=float(merged.area),
        loops=loops,
        origin=origin,
        basis_u=u,
        basis_v=v,
    )


# ─── Cylinder detection ──────────────────────────────────────────────────────

@dataclass(eq=False)
class CylindricalFace:
    """Vertical faces of a faceted cylinder around one vertical axis.

    ``rim`` holds the face corners in XY, ordered counter-clockwise;
    ``closed`` is True when the faces go all the way round.
    """
    face_indices: List[int]
    center: np.ndarray   # (2,)
    radius: float
    z_min: float
    z_max: float
    area: float
    rim: np.ndarray      # (K, 2)
    closed: bool

    @property
    def height(self) -> float:
        return self.z_max - self.z_min

    def base_arc(self, z: Optional[float] = None) -> ArcCurve:
        center = np.array([self.center[0], self.center[1], self.z_min if z is None else z])
        if self.closed:
            return ArcCurve(center, self.radius, 0.0, 2.0 * np.pi)
        start, end = arc_span(self.rim, self.center)
        return ArcCurve(center, self.radius, start, end)

    def mid_normal(self) -> np.ndarray:
        """Outward radial direction halfway along the patch."""
        arc = self.base_arc()
        mid = 0.0 if self.closed else 0.5 * (arc.start_angle + arc.end_angle)
        return np.array([np.cos(mid), np.sin(mid), 0.0])


def arc_span(points_xy: np.ndarray, center: np.ndarray) -> Tuple[float, float]:
    """(start, end) angles of the arc covered by *points_xy* around *center*.

    The arc starts after the largest angular gap between the points and runs
    counter-clockwise, so end - start < 2*pi.
    """
    d = np.asarray(points_xy, dtype=float)[:, :2] - np.asarray(center, dtype=float)[:2]
    angles = np.sort(np.mod(np.arctan2(d[:, 1], d[:, 0]), 2.0 * np.pi))
    gaps = np.diff(np.append(angles, angles[0] + 2.0 * np.pi))
    first = (int(np.argmax(gaps)) + 1) % len(angles)
    rolled = np.roll(angles, -first)
    unwrapped = rolled[0] + np.mod(rolled - rolled[0], 2.0 * np.pi)
    return float(unwrapped[0]), float(unwrapped[-1])


def find_cylindrical_faces(
    faces: Sequence[PlanarFace],
    min_facets: int = 6,
    max_step_deg: float = 30.0,
    rel_tol: float = 1e-3,
) -> List[CylindricalFace]:
    """Group vertical faces that together approximate a convex cylinder.

    Normals are taken as given, so resolve them outward first. A run of
    vertical faces qualifies when consecutive normals turn by at most
    *max_step_deg*, neighbours share a corner, all span the same heights,
    and every corner lies on one circle whose radial direction matches each
    face normal. Boxes and coarse prisms never qualify.

    Args:
        faces: Faces of one solid.
        min_facets: Smallest run that counts as a cylinder.
        max_step_deg: Largest turn between neighbouring face normals.
        rel_tol: Distance tolerance relative to the solid's size.

    Returns:
        One CylindricalFace per qualifying run.
    """
    max_step = np.radians(max_step_deg)
    candidates = []
    for face in faces:
        n = np.asarray(face.normal, dtype=float)
        if abs(n[2]) > 1e-6 or len(face.loops) != 1:
            continue
        candidates.append((float(np.arctan2(n[1], n[0])), face, face.outer_loop.vertices))
    if len(candidates) < min_facets:
        return []
    candidates.sort(key=lambda c: c[0])

    corners = np.vstack([c[2] for c in candidates])
    tol = rel_tol * max(float(np.ptp(corners, axis=0).max()), 1.0)

    def continues(a, b) -> bool:
        step = (b[0] - a[0]) % (2.0 * np.pi)
        if step <= 0 or step > max_step:
            return False
        if abs(a[2][:, 2].min() - b[2][:, 2].min()) > tol:
            return False
        if abs(a[2][:, 2].max() - b[2][:, 2].max()) > tol:
            return False
        gaps = np.linalg.norm(a[2][:, None, :] - b[2][None, :, :], axis=2)
        return bool(gaps.min() <= tol)

    runs = [[candidates[0]]]
    for prev, cur in zip(candidates, candidates[1:]):
        if continues(prev, cur):
            runs[-1].append(cur)
        else:
            runs.append([cur])
    closed = False
    if continues(candidates[-1], candidates[0]):
        if len(runs) == 1:
            closed = True
        else:
            runs[0] = runs.pop() + runs[0]

    found = []
    for run in runs:
        if len(run) < min_facets:
            continue
        cylinder = _fit_cylinder(run, closed, tol, max_step)
        if cylinder is not None:
            found.append(cylinder)
    return found


def _fit_cylinder(run, closed: bool, tol: float, max_step: float) -> Optional[CylindricalFace]:
    corners = np.vstack([verts for _, _, verts in run])
    xy = np.unique(np.round(corners[:, :2], 9), axis=0)
    if len(xy) < 3:
        return None
    # Algebraic circle fit: x^2 + y^2 = 2ax + 2by + c.
    lhs = np.column_stack([2.0 * xy, np.ones(len(xy))])
    sol, *_ = np.linalg.lstsq(lhs, (xy ** 2).sum(axis=1), rcond=None)
    center = sol[:2]
    r2 = float(sol[2] + center @ center)
    if r2 <= 0:
        return None
    radius = float(np.sqrt(r2))
    if np.abs(np.linalg.norm(xy - center, axis=1) - radius).max() > tol:
        return None

    min_cos = np.cos(max_step / 2.0)
    for _, face, verts in run:
        radial = verts[:, :2].mean(axis=0) - center
        length = float(np.linalg.norm(radial))
        if length < tol or float(face.normal[:2] @ radial) / length < min_cos:
            return None

    d = xy - center
    angles = np.arctan2(d[:, 1], d[:, 0])
    if closed:
        rim = xy[np.argsort(angles)]
    else:
        start, _ = arc_span(xy, center)
        rim = xy[np.argsort(np.mod(angles - start + 1e-9, 2.0 * np.pi))]
    return CylindricalFace(
        face_indices=[face.index for _, face, _ in run],
        center=center,
        radius=radius,
        z_min=float(corners[:, 2].min()),
        z_max=float(corners[:, 2].max()),
        area=float(sum(face.area for _, face, _ in run)),
        rim=rim,
        closed=closed,
    )


# ─── Conversion functions ────────────────────────────────────────────────────

def project_point(
    point: np.ndarray, origin: np.ndarray, u: np.ndarray, v: np.ndarray,
) -> Tuple[float, float]:
    """Project a 3D point into the (u, v) frame anchored at *origin*."""
    d = np.asarray(point, dtype=float) - origin
    return (float(d @ u), float(d @ v))


def ring_to_loop(
    coords: Iterable[Sequence[float]],
    origin: np.ndarray,
    u: np.ndarray,
    v: np.ndarray,
) -> CurveLoop:
    """Map a 2D ring in the (u, v) frame back to a closed 3D CurveLoop."""
    pts_2d = drop_collinear(list(coords))
    pts_3d = [origin + x * u + y * v for x, y in pts_2d]
    return CurveLoop.from_points(pts_3d)


def loop_to_polygon(
    loop: CurveLoop, origin: np.ndarray, u: np.ndarray, v: np.ndarray,
) -> Polygon:
    """Project a 3D loop into the (u, v) frame as a Shapely Polygon."""
    if len(loop) < 3:
        return Polygon()
    return Polygon([project_point(p, origin, u, v) for p in loop.vertices])


def drop_collinear(
    coords: List[Sequence[float]], tol: float = COLLINEAR_TOL,
) -> List[Tuple[float, float]]:
    """Remove repeated and collinear vertices from a 2D ring.

    The closing duplicate (if any) is dropped; the result is open.
    """
    pts = [(float(c[0]), float(c[1])) for c in coords]
    if len(pts) > 1 and np.hypot(pts[0][0] - pts[-1][0], pts[0][1] - pts[-1][1]) < POINT_TOL:
        pts = pts[:-1]

    changed = True
    while changed and len(pts) > 3:
        changed = False
        for i in range(len(pts)):
            prev = np.array(pts[i - 1])
            cur = np.array(pts[i])
            nxt = np.array(pts[(i + 1) % len(pts)])
            a = cur - prev
            b = nxt - cur
            la, lb = np.linalg.norm(a), np.linalg.norm(b)
            if la < POINT_TOL or lb < POINT_TOL:
                del pts[i]
                changed = True
                break
            cross = a[0] * b[1] - a[1] * b[0]
            if abs(cross) <= tol * la * lb and float(a @ b) > 0:
                del pts[i]
                changed = True
                break
    return pts


# ─── Internal helpers ────────────────────────────────────────────────────────

def _make_2d_basis(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Build an orthonormal (u, v) basis perpendicular to normal.

    The frame is right-handed: u x v == normal.
    """
    n = normal / np.linalg.norm(normal)
    if abs(n[2]) < 0.9:
        ref = np.array([0.0, 0.0, 1.0])
    else:
        ref = np.array([1.0, 0.0, 0.0])
    u = np.cross(n, ref)
    u /= np.linalg.norm(u)
    v = np.cross(n, u)
    v /= np.linalg.norm(v)
    return u, v
