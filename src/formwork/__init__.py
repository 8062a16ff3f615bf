"""Public API for the formwork pipeline."""

from formwork.contracts import (
    BatchCancelled,
    BatchRolledBack,
    ElementCategory,
    FloorDescriptor,
    FormworkConfig,
    FormworkError,
    FormworkKind,
    FormworkRunResult,
    Level,
    MoldSolid,
    StructuralElement,
    TrimMode,
    WallDescriptor,
)
from formwork.conversion import reduce_mold_parts, reduce_to_descriptor
from formwork.model import InMemoryModel, Materializer, ModelQuery
from formwork.normals import resolve
from formwork.pipeline import apply_batch, run_formwork
from formwork.rules import classify
from formwork.scene import load_scene
from formwork.synthesis import synthesize, synthesize_cylinder

__all__ = [
    "BatchCancelled",
    "BatchRolledBack",
    "ElementCategory",
    "FloorDescriptor",
    "FormworkConfig",
    "FormworkError",
    "FormworkKind",
    "FormworkRunResult",
    "InMemoryModel",
    "Level",
    "Materializer",
    "ModelQuery",
    "MoldSolid",
    "StructuralElement",
    "TrimMode",
    "WallDescriptor",
    "apply_batch",
    "classify",
    "load_scene",
    "reduce_mold_parts",
    "reduce_to_descriptor",
    "resolve",
    "run_formwork",
    "synthesize",
    "synthesize_cylinder",
]
