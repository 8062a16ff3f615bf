"""
Shared fixtures for formwork tests.
"""
import sys
import warnings
from pathlib import Path

# Suppress trimesh internal RuntimeWarning for degenerate cross-sections
# (divide-by-zero when slicing yields zero-area geometry).
warnings.filterwarnings(
    "ignore",
    message="invalid value encountered in divide",
    category=RuntimeWarning,
    module=r"trimesh\.triangles",
)

import numpy as np
import pytest

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from formwork.contracts import Level, StructuralElement
from formwork.model import InMemoryModel
from geometry_primitives import box_solid


@pytest.fixture
def ground_level():
    return Level(level_id="L0", name="Ground", elevation=0.0)


@pytest.fixture
def column_solid():
    """A 0.4 x 0.4 x 3.0 column standing on z=0."""
    return box_solid([0.0, 0.0, 0.0], [0.4, 0.4, 3.0])


@pytest.fixture
def floor_solid():
    """A 4 x 3 x 0.2 slab with its soffit at z=3."""
    return box_solid([0.0, 0.0, 3.0], [4.0, 3.0, 3.2])


@pytest.fixture
def beam_and_column():
    """Beam x 0-4 whose y=0 side is half covered by an adjacent column."""
    beam = box_solid([0.0, 0.0, 2.5], [4.0, 0.3, 3.0])
    column = box_solid([2.0, -0.5, 0.0], [4.4, 0.0, 3.0])
    return beam, column


@pytest.fixture
def make_model(ground_level):
    """Factory: InMemoryModel with a ground level and the given elements.

    Each element is ``(element_id, category, solid)`` or
    ``(element_id, category, solid, comment)``.
    """
    def _make(*elements, levels=None):
        model = InMemoryModel()
        for level in levels if levels is not None else [ground_level]:
            model.add_level(level)
        for spec in elements:
            element_id, category, solid = spec[:3]
            comment = spec[3] if len(spec) > 3 else ""
            model.add_element(
                StructuralElement(
                    element_id=element_id,
                    category=category,
                    solid=solid,
                    comment=comment,
                )
            )
        return model

    return _make


def face_with_normal(faces, normal, tol=1e-6):
    """First face whose stored normal matches *normal*."""
    target = np.asarray(normal, dtype=float)
    for face in faces:
        if np.allclose(face.normal, target, atol=tol):
            return face
    raise AssertionError(f"no face with normal {normal}")


@pytest.fixture
def find_face():
    return face_with_normal


