"""Formwork batch: elements in, panels, slabs and native elements out."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

from formwork.adjacency import AdjacencyIndex
from formwork.audit import AuditTrail
from formwork.contracts import (
    BatchCancelled,
    BatchRolledBack,
    ElementCategory,
    ElementReport,
    FaceDecision,
    FloorDescriptor,
    FormworkConfig,
    FormworkError,
    FormworkKind,
    FormworkRunResult,
    MoldSolid,
    NativeElementDescriptor,
    SynthesisOutcome,
    WallDescriptor,
    to_vec3,
)
from formwork.conversion import reduce_mold_parts
from formwork.model import Materializer, ModelQuery
from formwork.normals import resolve
from formwork.rules import category_display_name, classify
from formwork.synthesis import synthesize_cylinder, synthesize_face
from geometry_primitives import CylindricalFace, find_cylindrical_faces

logger = logging.getLogger(__name__)

BatchItem = Union[NativeElementDescriptor, MoldSolid]


def run_formwork(
    model: ModelQuery,
    element_ids: Optional[Sequence[str]] = None,
    config: Optional[FormworkConfig] = None,
    *,
    materializer: Optional[Materializer] = None,
    wall_type: Optional[str] = None,
    floor_type: Optional[str] = None,
    run_id: str = "formwork",
    audit: Optional[AuditTrail] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> FormworkRunResult:
    """Generate formwork for *element_ids* (every structural element if None).

    All output is created inside one transaction of *materializer* (the
    model itself when it can materialise). Any unexpected failure rolls the
    whole batch back and raises BatchRolledBack.

    Raises:
        BatchCancelled: *should_cancel* returned True before the batch began.
        BatchRolledBack: the batch failed; nothing was created.
    """
    config = config or FormworkConfig()
    if materializer is None:
        if not isinstance(model, Materializer):
            raise TypeError("model cannot materialise output; pass a materializer")
        materializer = model

    if should_cancel is not None and should_cancel():
        logger.info("Formwork run %s cancelled before start", run_id)
        raise BatchCancelled("cancelled before the batch started")

    index = AdjacencyIndex(model, margin=config.adjacency_margin)
    if element_ids is None:
        element_ids = [e.element_id for e in model.structural_elements()]

    result = FormworkRunResult(run_id=run_id, status="running")
    result.debug["adjacency_indexed"] = len(index)
    logger.info("Formwork run %s: %d elements", run_id, len(element_ids))

    try:
        with materializer.transaction("Formwork"):
            for element_id in element_ids:
                report = _process_element(
                    element_id, model, materializer, index, config, result,
                    audit=audit, wall_type=wall_type, floor_type=floor_type,
                )
                result.elements.append(report)
    except Exception as exc:
        result.status = "rolled_back"
        logger.error("Formwork run %s rolled back: %s", run_id, exc)
        raise BatchRolledBack(f"formwork batch rolled back: {exc}", cause=exc) from exc

    result.status = "ok"
    for line in result.summary_lines():
        logger.info(line)

    if audit is not None:
        audit.write_checkpoint(
            stage="summary",
            counts={
                "elements": len(result.elements),
                "faces_formed": result.faces_formed,
                "faces_omitted": result.faces_omitted,
                "faces_skipped": result.faces_skipped,
                "faces_discounted": result.faces_discounted,
                "walls": result.walls_created,
                "floors": result.floors_created,
                "shapes": result.shapes_created,
                "invalid_loops": result.invalid_loops,
            },
            metrics={
                "total_area": result.total_area,
                "discounted_area": result.discounted_area,
                "expected_volume": result.expected_volume,
                "realized_volume": result.realized_volume,
            },
        )
        audit.finalize()
    return result


def _process_element(
    element_id: str,
    model: ModelQuery,
    materializer: Materializer,
    index: AdjacencyIndex,
    config: FormworkConfig,
    result: FormworkRunResult,
    *,
    audit: Optional[AuditTrail],
    wall_type: Optional[str],
    floor_type: Optional[str],
) -> ElementReport:
    element = model.element(element_id)
    if element is None:
        logger.warning("Element %s not found; skipped", element_id)
        return _unavailable(element_id, None)
    report = ElementReport(element_id=element_id, category=element.category)

    solid = element.solid
    if solid is None or solid.is_empty:
        logger.warning("Element %s has no solid; skipped", element_id)
        report.geometry_unavailable = True
        return report
    try:
        faces = model.faces_of(solid, config.min_face_area)
    except (ValueError, IndexError) as exc:
        logger.warning("Faces of element %s unavailable: %s", element_id, exc)
        report.geometry_unavailable = True
        return report

    if element_id in index:
        neighbors = index.find_nearby(element_id)
    else:
        bbox = model.bounding_box_of(solid)
        neighbors = [
            n for n in index.find_nearby_box(bbox) if n.element_id != element_id
        ] if bbox is not None else []
    report.neighbor_count = len(neighbors)
    logger.info(
        "%s %s: %d faces, %d neighbours",
        category_display_name(element.category), element_id, len(faces), len(neighbors),
    )

    resolved = [face.with_normal(resolve(face, solid)) for face in faces]
    cylinders: List[CylindricalFace] = []
    if config.detect_cylinders:
        cylinders = find_cylindrical_faces(
            resolved, config.cylinder_min_facets, config.cylinder_max_step_deg,
        )
    merged = {index for cylinder in cylinders for index in cylinder.face_indices}

    for face in resolved:
        if face.index in merged:
            continue
        kind = classify(element.category, face.normal)
        decision = FaceDecision(
            face_index=face.index, normal=to_vec3(face.normal), area=face.area, kind=kind,
        )
        report.faces.append(decision)
        if audit is not None:
            audit.append_decision(
                stage="classify",
                element_id=element_id,
                face_index=face.index,
                selected=kind.value,
                reason_codes=[element.category.value],
                numeric_evidence={"normal_z": float(face.normal[2]), "area": float(face.area)},
            )
        if kind == FormworkKind.NONE:
            logger.debug("%s face %d: no formwork", element_id, face.index)
            continue
        outcome = synthesize_face(
            face, element.category, neighbors, config.thickness,
            element_id=element_id, config=config,
        )
        _record_outcome(
            outcome, decision, element_id, model, materializer, config, result,
            audit=audit, wall_type=wall_type, floor_type=floor_type,
        )

    for cylinder in cylinders:
        normal = cylinder.mid_normal()
        kind = classify(element.category, normal)
        decision = FaceDecision(
            face_index=cylinder.face_indices[0],
            normal=to_vec3(normal),
            area=cylinder.area,
            kind=kind,
            member_faces=tuple(cylinder.face_indices),
        )
        report.faces.append(decision)
        logger.info(
            "%s: %d faces form a cylinder of radius %.4g",
            element_id, len(cylinder.face_indices), cylinder.radius,
        )
        if audit is not None:
            audit.append_decision(
                stage="classify",
                element_id=element_id,
                face_index=decision.face_index,
                selected=kind.value,
                reason_codes=[element.category.value, "cylindrical"],
                numeric_evidence={"radius": cylinder.radius, "area": cylinder.area},
                metadata={"faces": list(cylinder.face_indices), "closed": cylinder.closed},
            )
        if kind == FormworkKind.NONE:
            continue
        outcome = synthesize_cylinder(
            cylinder, element.category, neighbors, config.thickness,
            element_id=element_id, config=config,
        )
        _record_outcome(
            outcome, decision, element_id, model, materializer, config, result,
            audit=audit, wall_type=wall_type, floor_type=floor_type,
        )
    return report


def _record_outcome(
    outcome: SynthesisOutcome,
    decision: FaceDecision,
    element_id: str,
    model: ModelQuery,
    materializer: Materializer,
    config: FormworkConfig,
    result: FormworkRunResult,
    *,
    audit: Optional[AuditTrail],
    wall_type: Optional[str],
    floor_type: Optional[str],
) -> None:
    """Account for one synthesis outcome and materialise its mold."""
    face_index = decision.face_index
    if not outcome.ok:
        decision.failure = outcome.failure
        logger.debug("%s face %d skipped: %s", element_id, face_index, outcome.failure.value)
        if audit is not None:
            audit.append_decision(
                stage="synthesize",
                element_id=element_id,
                face_index=face_index,
                selected="skipped",
                reason_codes=[outcome.failure.value],
            )
        return

    mold = outcome.mold
    decision.expected_volume = mold.expected_volume
    decision.realized_volume = mold.realized_volume
    decision.cuts_applied = mold.cuts_applied
    decision.discounted = mold.is_discounted(config.discount_ratio)
    result.total_area += mold.face_area
    result.discounted_area += mold.discounted_area
    result.expected_volume += mold.expected_volume
    result.realized_volume += mold.realized_volume
    if audit is not None:
        audit.append_decision(
            stage="synthesize",
            element_id=element_id,
            face_index=face_index,
            selected=mold.trim_mode,
            reason_codes=["discounted"] if decision.discounted else [],
            numeric_evidence={
                "expected_volume": mold.expected_volume,
                "realized_volume": mold.realized_volume,
                "cuts": float(mold.cuts_applied),
            },
            metadata={"skipped_neighbors": list(mold.skipped_neighbors)},
        )

    for ref, output_kind, reason in _materialize_mold(
        mold, model, materializer, config, wall_type, floor_type,
    ):
        if reason == "invalid_loop":
            result.invalid_loops += 1
        if decision.output_ref is None:
            decision.output_ref = ref
            decision.output_kind = output_kind
        decision.output_refs.append(ref)
        _count_output(result, ref, output_kind)
        if config.copy_comments:
            copy_comment(materializer, element_id, ref)
        if audit is not None:
            audit.append_decision(
                stage="convert",
                element_id=element_id,
                face_index=face_index,
                selected=output_kind,
                reason_codes=[reason] if reason else [],
                metadata={"ref": ref},
            )


def _unavailable(element_id: str, category: Optional[ElementCategory]) -> ElementReport:
    report = ElementReport(element_id=element_id, category=category or ElementCategory.OTHER)
    report.geometry_unavailable = True
    return report


def _materialize_mold(
    mold: MoldSolid,
    model: ModelQuery,
    materializer: Materializer,
    config: FormworkConfig,
    wall_type: Optional[str],
    floor_type: Optional[str],
) -> List[Tuple[str, str, Optional[str]]]:
    """Create native elements for *mold*, one per body; unconvertible bodies stay shapes."""
    if not config.convert_to_native:
        ref, kind = create_item(materializer, mold)
        return [(ref, kind, None)]
    created = []
    for part, conversion in reduce_mold_parts(mold, model, wall_type, floor_type):
        if conversion.ok:
            ref, kind = create_item(materializer, conversion.descriptor)
            created.append((ref, kind, None))
        else:
            ref, kind = create_item(materializer, part)
            created.append((ref, kind, conversion.reason))
    return created


def create_item(materializer: Materializer, item: BatchItem) -> Tuple[str, str]:
    """Materialise one descriptor or mold; returns (ref, "wall"|"floor"|"shape")."""
    if isinstance(item, WallDescriptor):
        ref = materializer.create_wall(
            item.base_curve, item.wall_type, item.level, item.height, item.base_offset,
        )
        return ref, "wall"
    if isinstance(item, FloorDescriptor):
        ref = materializer.create_floor(
            item.boundary, item.floor_type, item.level, item.height_offset,
        )
        return ref, "floor"
    if isinstance(item, MoldSolid):
        return materializer.create_temporary_shape(item), "shape"
    raise TypeError(f"Cannot materialise {type(item).__name__}")


def copy_comment(materializer: Materializer, source_id: str, ref: str) -> None:
    """Stamp *ref* with the comment of *source_id*; failures are only logged."""
    if not source_id:
        return
    try:
        materializer.copy_comment_parameter(source_id, ref)
    except (KeyError, FormworkError) as exc:
        logger.debug("Comment not copied from %s to %s: %s", source_id, ref, exc)


def _count_output(result: FormworkRunResult, ref: str, kind: str) -> None:
    result.created_refs.append(ref)
    if kind == "wall":
        result.walls_created += 1
    elif kind == "floor":
        result.floors_created += 1
    else:
        result.shapes_created += 1


def apply_batch(
    materializer: Materializer,
    items: Iterable[BatchItem],
    *,
    name: str = "Formwork",
    copy_comments: bool = True,
) -> List[str]:
    """Materialise every item in one transaction.

    Returns the created refs in input order. If any item fails, everything
    created by this call is rolled back and BatchRolledBack is raised.
    """
    refs: List[str] = []
    try:
        with materializer.transaction(name):
            for item in items:
                ref, _ = create_item(materializer, item)
                refs.append(ref)
                source_id = getattr(item, "source_element_id", "")
                if copy_comments:
                    copy_comment(materializer, source_id, ref)
    except Exception as exc:
        logger.error("Batch '%s' rolled back after %d items: %s", name, len(refs), exc)
        raise BatchRolledBack(f"batch '{name}' rolled back: {exc}", cause=exc) from exc
    return refs
