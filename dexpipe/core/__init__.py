"""Core data model subpackage."""

from dexpipe.core.types import (
    TABLE_COLUMNS,
    CountMatrix,
    FitResult,
    GeneAnnotation,
    GeneSetCollection,
    ModelFit,
    NormalizedMatrix,
    SampleMetadata,
)

__all__ = [
    "TABLE_COLUMNS",
    "CountMatrix",
    "SampleMetadata",
    "GeneAnnotation",
    "NormalizedMatrix",
    "ModelFit",
    "FitResult",
    "GeneSetCollection",
]
