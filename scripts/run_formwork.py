#!/usr/bin/env python3
"""Generate formwork for a scene (levels + structural elements)."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from formwork import (
    BatchRolledBack,
    FormworkConfig,
    TrimMode,
    load_scene,
    run_formwork,
)
from formwork.audit import AuditTrail, sha256_file
from formwork.scene import scene_mesh_paths
from run_protocol import (
    copy_scene,
    prepare_run_dir,
    mark_latest,
    write_artifact,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate formwork panels and slabs for structural elements"
    )
    parser.add_argument("--scene", required=True, help="Path to scene JSON")
    parser.add_argument("--name", default=None, help="Run name (defaults to scene name)")
    parser.add_argument("--runs-dir", default="runs", help="Runs output root")
    parser.add_argument(
        "--elements",
        nargs="*",
        default=None,
        help="Element ids to form (default: every element)",
    )
    parser.add_argument(
        "--thickness", type=float, default=0.02, help="Panel thickness in model units"
    )
    parser.add_argument(
        "--margin",
        type=float,
        default=0.1,
        help="Bounding-box margin for neighbour search",
    )
    parser.add_argument(
        "--trim-mode",
        choices=[m.value for m in TrimMode],
        default=TrimMode.BOOLEAN.value,
        help="Trim with booleans, or try direct 2D cuts first",
    )
    parser.add_argument(
        "--engine", default="manifold", help="trimesh boolean engine"
    )
    parser.add_argument(
        "--discount-ratio",
        type=float,
        default=0.98,
        help="Realised/expected volume below which a face counts as discounted",
    )
    parser.add_argument("--wall-type", default=None, help="Wall type for panels")
    parser.add_argument("--floor-type", default=None, help="Floor type for slabs")
    parser.add_argument(
        "--shapes-only",
        action="store_true",
        help="Keep molds as raw shapes instead of walls/floors",
    )
    parser.add_argument(
        "--no-comments", action="store_true", help="Do not copy element comments"
    )
    parser.add_argument(
        "--flat-only",
        action="store_true",
        help="Form faceted cylinders face by face instead of as one curved panel",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logs"
    )
    return parser


def _build_summary(*, run_id: str, elapsed_s: float, status: str, lines) -> str:
    return "\n".join(
        [
            f"# Run {run_id}",
            "",
            f"- Status: **{status.upper()}**",
            f"- Duration: {elapsed_s:.2f}s",
            *[f"- {line}" for line in lines],
            "",
        ]
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    scene_path = Path(args.scene)
    name = args.name or scene_path.stem
    started = time.perf_counter()
    run_paths = prepare_run_dir(args.runs_dir, name)
    copied_scene = copy_scene(str(scene_path), scene_mesh_paths(scene_path), run_paths.input_dir)

    model = load_scene(copied_scene)
    config = FormworkConfig(
        thickness=float(args.thickness),
        adjacency_margin=max(0.0, float(args.margin)),
        trim_mode=TrimMode(args.trim_mode),
        boolean_engine=args.engine or None,
        discount_ratio=max(0.0, min(1.0, float(args.discount_ratio))),
        convert_to_native=not args.shapes_only,
        copy_comments=not args.no_comments,
        detect_cylinders=not args.flat_only,
    )

    audit = AuditTrail(run_id=run_paths.run_id, artifacts_dir=run_paths.artifacts_dir)
    try:
        result = run_formwork(
            model,
            args.elements or None,
            config,
            wall_type=args.wall_type,
            floor_type=args.floor_type,
            run_id=run_paths.run_id,
            audit=audit,
        )
    except BatchRolledBack as exc:
        logging.getLogger(__name__).error("Run failed: %s", exc)
        write_artifact(
            run_paths.summary_path,
            _build_summary(
                run_id=run_paths.run_id,
                elapsed_s=time.perf_counter() - started,
                status="rolled_back",
                lines=[str(exc)],
            ),
        )
        print(f"Run ID: {run_paths.run_id}")
        print("Status: ROLLED_BACK")
        return 1
    elapsed = time.perf_counter() - started

    write_artifact(run_paths.output_path, model.to_payload())

    metrics_payload = {
        "run_id": result.run_id,
        "status": result.status,
        "elapsed_s": round(elapsed, 3),
        "scene_sha256": sha256_file(copied_scene),
        "counts": {
            "elements": len(result.elements),
            "faces_formed": result.faces_formed,
            "faces_discounted": result.faces_discounted,
            "faces_omitted": result.faces_omitted,
            "faces_skipped": result.faces_skipped,
            "walls": result.walls_created,
            "floors": result.floors_created,
            "shapes": result.shapes_created,
            "invalid_loops": result.invalid_loops,
        },
        "area": {
            "total": result.total_area,
            "discounted": result.discounted_area,
            "net": result.total_area - result.discounted_area,
        },
        "volume": {
            "expected": result.expected_volume,
            "realized": result.realized_volume,
        },
        "elements": [
            {
                "element_id": e.element_id,
                "category": e.category.value,
                "neighbors": e.neighbor_count,
                "formed": e.formed,
                "omitted": e.omitted,
                "skipped": e.skipped,
                "discounted": e.discounted,
                "geometry_unavailable": e.geometry_unavailable,
            }
            for e in result.elements
        ],
        "debug": result.debug,
    }
    write_artifact(run_paths.metrics_path, metrics_payload)

    write_artifact(
        run_paths.summary_path,
        _build_summary(
            run_id=result.run_id,
            elapsed_s=elapsed,
            status=result.status,
            lines=result.summary_lines(),
        ),
    )

    manifest = {
        "run_id": result.run_id,
        "scene_name": name,
        "created_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "input_scene": str(copied_scene),
        "status": result.status,
        "config": {
            "thickness": config.thickness,
            "adjacency_margin": config.adjacency_margin,
            "trim_mode": config.trim_mode.value,
            "boolean_engine": config.boolean_engine,
            "discount_ratio": config.discount_ratio,
            "convert_to_native": config.convert_to_native,
            "copy_comments": config.copy_comments,
            "detect_cylinders": config.detect_cylinders,
            "wall_type": args.wall_type,
            "floor_type": args.floor_type,
        },
        "artifacts": {
            "output": str(run_paths.output_path),
            "metrics": str(run_paths.metrics_path),
            "summary": str(run_paths.summary_path),
            "checkpoints": [str(c.path) for c in audit.checkpoints],
            "decision_log": str(audit.decision_log_path),
            "decision_hash_chain": str(audit.hash_chain_path),
        },
    }
    write_artifact(run_paths.manifest_path, manifest)
    mark_latest(args.runs_dir, run_paths)

    print(f"Run ID: {result.run_id}")
    print(f"Run dir: {run_paths.run_dir}")
    print(f"Status: {result.status.upper()}")
    for line in result.summary_lines():
        print(line)
    print(f"Output: {run_paths.output_path}")
    print(f"Decision log: {audit.decision_log_path}")
    print(f"Metrics: {run_paths.metrics_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
