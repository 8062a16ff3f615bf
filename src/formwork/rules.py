"""Per-category formwork rules.

Which faces of a structural element receive formwork, and of which kind, is
a pure function of the element category and the Z component of the face
normal. The rules live in ``FORMWORK_RULES`` as plain data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from formwork.contracts import ElementCategory, FormworkKind

# Normal Z thresholds.
LATERAL_MAX_Z = 0.3   # |Z| below this: vertical face
SOFFIT_MAX_Z = -0.7   # Z below this: downward-facing face
INCLINE_MAX_Z = 0.7   # stairs: Z below this (and not lateral) gets a slab; treads above stay bare


@dataclass(frozen=True)
class CategoryRule:
    """One row of the formwork table.

    ``panel`` and ``slab`` name the test applied to the normal's Z:
    "lateral" (|Z| < 0.3), "soffit" (Z < -0.7), "incline" (Z < 0.7),
    or None when the row never yields that kind.
    """
    panel: Optional[str]
    slab: Optional[str]


FORMWORK_RULES: Dict[ElementCategory, CategoryRule] = {
    ElementCategory.COLUMN: CategoryRule(panel="lateral", slab=None),
    ElementCategory.BEAM: CategoryRule(panel="lateral", slab="soffit"),
    ElementCategory.WALL: CategoryRule(panel="lateral", slab=None),
    ElementCategory.FLOOR: CategoryRule(panel=None, slab="soffit"),
    ElementCategory.STAIR: CategoryRule(panel="lateral", slab="incline"),
    ElementCategory.FOUNDATION: CategoryRule(panel="lateral", slab="soffit"),
    ElementCategory.OTHER: CategoryRule(panel=None, slab=None),
}

_TESTS = {
    "lateral": lambda z: abs(z) < LATERAL_MAX_Z,
    "soffit": lambda z: z < SOFFIT_MAX_Z,
    "incline": lambda z: z < INCLINE_MAX_Z,
}

CATEGORY_DISPLAY_NAMES: Dict[ElementCategory, str] = {
    ElementCategory.COLUMN: "Column",
    ElementCategory.BEAM: "Beam",
    ElementCategory.WALL: "Wall",
    ElementCategory.FLOOR: "Floor",
    ElementCategory.STAIR: "Stair",
    ElementCategory.FOUNDATION: "Foundation",
    ElementCategory.OTHER: "Unknown",
}

# Host category names accepted by category_from_name (lower-cased).
_CATEGORY_ALIASES: Dict[str, ElementCategory] = {
    "column": ElementCategory.COLUMN,
    "structural_column": ElementCategory.COLUMN,
    "ost_structuralcolumns": ElementCategory.COLUMN,
    "beam": ElementCategory.BEAM,
    "framing": ElementCategory.BEAM,
    "structural_framing": ElementCategory.BEAM,
    "ost_structuralframing": ElementCategory.BEAM,
    "wall": ElementCategory.WALL,
    "ost_walls": ElementCategory.WALL,
    "floor": ElementCategory.FLOOR,
    "slab": ElementCategory.FLOOR,
    "ost_floors": ElementCategory.FLOOR,
    "stair": ElementCategory.STAIR,
    "stairs": ElementCategory.STAIR,
    "ost_stairs": ElementCategory.STAIR,
    "foundation": ElementCategory.FOUNDATION,
    "structural_foundation": ElementCategory.FOUNDATION,
    "ost_structuralfoundation": ElementCategory.FOUNDATION,
}


def classify(category: Optional[ElementCategory], normal: Optional[Sequence[float]]) -> FormworkKind:
    """Decide the formwork kind for a face of an element of *category*.

    The Panel test runs first, then Slab; anything else is NONE. Missing
    categories and malformed normals yield NONE.
    """
    rule = FORMWORK_RULES.get(category) if category is not None else None
    if rule is None:
        return FormworkKind.NONE
    z = _normal_z(normal)
    if z is None:
        return FormworkKind.NONE
    if rule.panel is not None and _TESTS[rule.panel](z):
        return FormworkKind.PANEL
    if rule.slab is not None and _TESTS[rule.slab](z):
        return FormworkKind.SLAB
    return FormworkKind.NONE


def category_display_name(category: Optional[ElementCategory]) -> str:
    return CATEGORY_DISPLAY_NAMES.get(category, "Unknown")


def category_from_name(name: Optional[str]) -> ElementCategory:
    """Map a host category name to an ElementCategory (OTHER if unknown)."""
    if not name:
        return ElementCategory.OTHER
    key = name.strip().lower().replace(" ", "_").replace("-", "_")
    if key in _CATEGORY_ALIASES:
        return _CATEGORY_ALIASES[key]
    try:
        return ElementCategory(key)
    except ValueError:
        return ElementCategory.OTHER


def _normal_z(normal: Optional[Sequence[float]]) -> Optional[float]:
    if normal is None:
        return None
    try:
        if len(normal) != 3:
            return None
        x, y, z = (float(c) for c in normal)
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(c) for c in (x, y, z)):
        return None
    length = math.sqrt(x * x + y * y + z * z)
    if length < 1e-12:
        return None
    return z / length
