"""Run-folder layout for formwork runs.

Each run gets ``<runs_root>/<timestamp>_<name>/`` with the input scene copied
under ``input/``, generated files under ``artifacts/`` and the manifest,
metrics and summary at the top. ``<runs_root>/LATEST`` names the newest.
"""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Union


@dataclass
class RunPaths:
    run_id: str
    run_dir: Path
    input_dir: Path
    artifacts_dir: Path
    manifest_path: Path
    metrics_path: Path
    summary_path: Path
    output_path: Path


def create_run_id(scene_name: str) -> str:
    """``<UTC timestamp>_<scene name as a slug>``."""
    slug = re.sub(r"[^a-z0-9]+", "-", scene_name.lower()).strip("-") or "scene"
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + slug


def prepare_run_dir(runs_root: str, scene_name: str) -> RunPaths:
    runs_path = Path(runs_root)
    runs_path.mkdir(parents=True, exist_ok=True)

    run_id = create_run_id(scene_name)
    run_dir = runs_path / run_id
    suffix = 1
    while run_dir.exists():
        suffix += 1
        run_dir = runs_path / f"{run_id}-{suffix}"
    run_id = run_dir.name
    input_dir = run_dir / "input"
    artifacts_dir = run_dir / "artifacts"

    input_dir.mkdir(parents=True, exist_ok=True)
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    return RunPaths(
        run_id=run_id,
        run_dir=run_dir,
        input_dir=input_dir,
        artifacts_dir=artifacts_dir,
        manifest_path=run_dir / "manifest.json",
        metrics_path=run_dir / "metrics.json",
        summary_path=run_dir / "summary.md",
        output_path=artifacts_dir / "formwork_output.json",
    )


def copy_scene(scene_path: str, mesh_paths: Iterable[Path], input_dir: Path) -> Path:
    """Copy a scene file and its meshes into *input_dir*, keeping relative paths."""
    src = Path(scene_path)
    dst = input_dir / src.name
    if src.resolve() != dst.resolve():
        shutil.copy2(src, dst)
    for mesh_path in mesh_paths:
        rel = Path(os.path.relpath(mesh_path, src.parent))
        if rel.is_absolute() or ".." in rel.parts:
            # Outside the scene folder; the copied scene would not find it.
            continue
        target = input_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if Path(mesh_path).exists():
            shutil.copy2(mesh_path, target)
    return dst


def write_artifact(path: Path, content: Union[str, Dict[str, Any]]) -> Path:
    """Write *content* to *path*: text as is, anything else as indented JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if not isinstance(content, str):
        content = json.dumps(content, indent=2, sort_keys=True) + "\n"
    path.write_text(content, encoding="utf-8")
    return path


def mark_latest(runs_root: str, run_paths: RunPaths) -> Path:
    """Record the newest run id in ``<runs_root>/LATEST``."""
    marker = Path(runs_root) / "LATEST"
    marker.write_text(run_paths.run_id + "\n", encoding="utf-8")
    return marker
