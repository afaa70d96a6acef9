"""Configuration loading utilities for dexpipe runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


def _checked_kwargs(cls, section: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    data = dict(payload or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}' config: {', '.join(unknown)}.")
    return data


@dataclass(frozen=True)
class FilterConfig:
    min_count: float = 10.0
    lib_size_reference: str = "min"
    min_samples: int | None = None

    def __post_init__(self) -> None:
        if float(self.min_count) < 0.0:
            raise ValueError("filter.min_count must be non-negative.")
        if self.lib_size_reference not in {"min", "median"}:
            raise ValueError("filter.lib_size_reference must be 'min' or 'median'.")
        if self.min_samples is not None and int(self.min_samples) < 0:
            raise ValueError("filter.min_samples must be non-negative.")

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "FilterConfig":
        return cls(**_checked_kwargs(cls, "filter", payload))


@dataclass(frozen=True)
class NormalizationConfig:
    method: str = "TMM"
    logratio_trim: float = 0.3
    sum_trim: float = 0.05
    do_weighting: bool = True
    a_cutoff: float = -1e10

    def __post_init__(self) -> None:
        if self.method not in {"TMM", "upperquartile", "none"}:
            raise ValueError("normalization.method must be TMM, upperquartile or none.")
        for name in ("logratio_trim", "sum_trim"):
            val = float(getattr(self, name))
            if not 0.0 <= val < 0.5:
                raise ValueError(f"normalization.{name} must be in [0, 0.5).")

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "NormalizationConfig":
        return cls(**_checked_kwargs(cls, "normalization", payload))


@dataclass(frozen=True)
class ModelConfig:
    covariates: tuple[str, ...] = ()
    reference_level: str | None = None
    interest_level: str | None = None
    voom: bool = True
    sample_weights: bool = True
    lowess_span: float = 0.5
    weight_tol: float = 1e-5
    weight_max_iter: int = 50
    lfc_threshold: float = 0.0
    n_jobs: int = 1
    chunk_size: int = 2000

    def __post_init__(self) -> None:
        object.__setattr__(self, "covariates", tuple(str(c) for c in self.covariates))
        if not 0.0 < float(self.lowess_span) <= 1.0:
            raise ValueError("model.lowess_span must be in (0, 1].")
        if float(self.weight_tol) <= 0.0:
            raise ValueError("model.weight_tol must be positive.")
        if int(self.weight_max_iter) <= 0:
            raise ValueError("model.weight_max_iter must be positive.")
        if float(self.lfc_threshold) < 0.0:
            raise ValueError("model.lfc_threshold must be non-negative.")
        if int(self.n_jobs) <= 0 or int(self.chunk_size) <= 0:
            raise ValueError("model.n_jobs and model.chunk_size must be positive.")

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "ModelConfig":
        return cls(**_checked_kwargs(cls, "model", payload))


@dataclass(frozen=True)
class CorrectionConfig:
    method: str = "BH"
    alpha: float = 0.05
    lfc: float = 0.0

    def __post_init__(self) -> None:
        if self.method not in {"BH", "BY", "holm", "bonferroni", "none"}:
            raise ValueError("correction.method must be BH, BY, holm, bonferroni or none.")
        if not 0.0 < float(self.alpha) <= 1.0:
            raise ValueError("correction.alpha must be in (0, 1].")

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "CorrectionConfig":
        return cls(**_checked_kwargs(cls, "correction", payload))


@dataclass(frozen=True)
class EnrichmentConfig:
    modes: tuple[str, ...] = ("ora", "camera")
    min_set_size: int = 5
    max_set_size: int | None = 500
    inter_gene_cor: float | None = 0.01
    use_ranks: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "modes", tuple(str(m).lower() for m in self.modes))
        bad = sorted(set(self.modes) - {"ora", "camera"})
        if bad:
            raise ValueError(f"Unknown enrichment modes: {', '.join(bad)}.")
        if int(self.min_set_size) < 1:
            raise ValueError("enrichment.min_set_size must be at least 1.")
        if self.inter_gene_cor is not None and not -1.0 < float(self.inter_gene_cor) < 1.0:
            raise ValueError("enrichment.inter_gene_cor must be in (-1, 1).")

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "EnrichmentConfig":
        return cls(**_checked_kwargs(cls, "enrichment", payload))


@dataclass(frozen=True)
class PipelineConfig:
    counts_dir: str = ""
    metadata_path: str = ""
    output_dir: str = "dexpipe_out"
    sample_column: str = "sample"
    group_column: str = "group"
    count_pattern: str = "*.txt"
    replicate_pattern: str | None = None
    annotation_path: str | None = None
    gene_sets_path: str | None = None
    library_size_buckets: int = 0
    filter: FilterConfig = field(default_factory=FilterConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PipelineConfig":
        data = _checked_kwargs(cls, "pipeline", payload)
        data["filter"] = FilterConfig.from_dict(data.get("filter"))
        data["normalization"] = NormalizationConfig.from_dict(data.get("normalization"))
        data["model"] = ModelConfig.from_dict(data.get("model"))
        data["correction"] = CorrectionConfig.from_dict(data.get("correction"))
        data["enrichment"] = EnrichmentConfig.from_dict(data.get("enrichment"))
        return cls(**data)


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    """Load a `PipelineConfig` from strict JSON."""
    return PipelineConfig.from_dict(load_json_config(path))
