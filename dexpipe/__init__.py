"""dexpipe public API."""

from dexpipe._version import __version__
from dexpipe.config import PipelineConfig, load_pipeline_config
from dexpipe.core.types import (
    CountMatrix,
    FitResult,
    GeneSetCollection,
    NormalizedMatrix,
    SampleMetadata,
)
from dexpipe.errors import (
    EmptyResultAfterFiltering,
    InputShapeError,
    RankDeficientDesignError,
    UnmappedGeneIdentifierWarning,
)
from dexpipe.filtering import filter_by_expression
from dexpipe.metadata import build_design, join_metadata
from dexpipe.normalization import calc_norm_factors


def analyze(*args, **kwargs):
    """Lazy wrapper to avoid importing the fitting stack at import time."""
    from dexpipe.pipeline.run import analyze as _analyze

    return _analyze(*args, **kwargs)


def run_pipeline(*args, **kwargs):
    from dexpipe.pipeline.run import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


__all__ = [
    "__version__",
    "CountMatrix",
    "SampleMetadata",
    "NormalizedMatrix",
    "FitResult",
    "GeneSetCollection",
    "PipelineConfig",
    "load_pipeline_config",
    "InputShapeError",
    "EmptyResultAfterFiltering",
    "RankDeficientDesignError",
    "UnmappedGeneIdentifierWarning",
    "filter_by_expression",
    "join_metadata",
    "build_design",
    "calc_norm_factors",
    "analyze",
    "run_pipeline",
]
