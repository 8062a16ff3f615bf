"""Load a formwork scene (levels + structural elements) from JSON.

Example::

    {
      "name": "bay-1",
      "levels": [{"id": "L0", "name": "Ground", "elevation": 0.0}],
      "elements": [
        {"id": "C1", "category": "column", "box": [[0, 0, 0], [0.3, 0.3, 3]]},
        {"id": "S1", "category": "OST_Floors", "mesh": "slab.stl", "comment": "S-101"}
      ]
    }

Mesh paths are relative to the scene file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Union

import trimesh

from formwork.contracts import Level, StructuralElement
from formwork.model import InMemoryModel
from formwork.rules import category_from_name
from geometry_primitives import box_solid

logger = logging.getLogger(__name__)


def load_scene(path: Union[str, Path]) -> InMemoryModel:
    """Read a scene file into an InMemoryModel.

    Raises:
        ValueError: malformed scene, unknown mesh, or duplicate ids.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return scene_from_dict(payload, base_dir=path.parent)


def scene_from_dict(payload: Dict[str, object], base_dir: Path = Path(".")) -> InMemoryModel:
    if not isinstance(payload, dict):
        raise ValueError("Scene must be a JSON object")
    model = InMemoryModel()

    for i, entry in enumerate(payload.get("levels", [])):
        try:
            level_id = str(entry.get("id", f"level-{i}"))
            model.add_level(
                Level(
                    level_id=level_id,
                    name=str(entry.get("name", level_id)),
                    elevation=float(entry["elevation"]),
                )
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise ValueError(f"Bad level #{i}: {exc}") from exc

    elements = payload.get("elements", [])
    if not isinstance(elements, list):
        raise ValueError("'elements' must be a list")
    for i, entry in enumerate(elements):
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValueError(f"Element #{i} has no id")
        element_id = str(entry["id"])
        solid = _element_solid(entry, base_dir, element_id)
        model.add_element(
            StructuralElement(
                element_id=element_id,
                category=category_from_name(entry.get("category")),
                solid=solid,
                comment=str(entry.get("comment", "")),
            )
        )
    logger.info(
        "Loaded scene: %d levels, %d elements",
        len(model.levels), len(model.structural_elements()),
    )
    return model


def _element_solid(entry: Dict[str, object], base_dir: Path, element_id: str) -> trimesh.Trimesh:
    if "box" in entry:
        corners = entry["box"]
        try:
            lo, hi = corners
            if len(lo) != 3 or len(hi) != 3:
                raise ValueError("corners must be 3D")
            if any(float(b) <= float(a) for a, b in zip(lo, hi)):
                raise ValueError("max corner must exceed min corner")
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Element {element_id}: bad box {corners!r}: {exc}") from exc
        return box_solid(lo, hi)
    if "mesh" in entry:
        mesh_path = base_dir / str(entry["mesh"])
        if not mesh_path.exists():
            raise ValueError(f"Element {element_id}: mesh not found: {mesh_path}")
        loaded = trimesh.load(str(mesh_path), force="mesh")
        if not isinstance(loaded, trimesh.Trimesh) or loaded.is_empty:
            raise ValueError(f"Element {element_id}: empty mesh {mesh_path}")
        return loaded
    raise ValueError(f"Element {element_id} needs a 'box' or a 'mesh'")


def scene_mesh_paths(path: Union[str, Path]) -> List[Path]:
    """Mesh files referenced by a scene, resolved against its directory."""
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return [
        path.parent / str(e["mesh"])
        for e in payload.get("elements", [])
        if isinstance(e, dict) and "mesh" in e
    ]
