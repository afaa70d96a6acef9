"""Expression filter on counts-per-million."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd

from dexpipe.config import FilterConfig
from dexpipe.core.types import CountMatrix, SampleMetadata
from dexpipe.errors import EmptyResultAfterFiltering, InputShapeError

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterResult:
    keep: pd.Series
    cpm_cutoff: float
    min_samples: int
    counts: CountMatrix

    @property
    def n_kept(self) -> int:
        return int(self.keep.sum())

    @property
    def n_removed(self) -> int:
        return int(self.keep.size - self.keep.sum())

    @property
    def is_empty(self) -> bool:
        return self.n_kept == 0


def cpm(counts: CountMatrix, norm_factors: np.ndarray | None = None) -> pd.DataFrame:
    """Counts per million using (effective) library sizes."""
    lib = np.asarray(counts.lib_sizes, dtype=float)
    if norm_factors is not None:
        nf = np.asarray(norm_factors, dtype=float).ravel()
        if nf.size != lib.size:
            raise InputShapeError("norm_factors must have one entry per sample.")
        lib = lib * nf
    values = counts.values() / lib[None, :] * 1e6
    return pd.DataFrame(values, index=counts.genes, columns=counts.samples)


def cpm_cutoff(counts: CountMatrix, min_count: float, reference: str = "min") -> float:
    """CPM equivalent of `min_count` reads at the reference library size."""
    lib = np.asarray(counts.lib_sizes, dtype=float)
    if reference == "min":
        ref = float(np.min(lib))
    elif reference == "median":
        ref = float(np.median(lib))
    else:
        raise ValueError("reference must be 'min' or 'median'.")
    return float(min_count) / (ref / 1e6)


def filter_by_expression(
    counts: CountMatrix,
    metadata: SampleMetadata | None = None,
    config: FilterConfig | None = None,
    *,
    norm_factors: np.ndarray | None = None,
    logger: logging.Logger | None = None,
) -> FilterResult:
    """Keep genes whose CPM reaches the cutoff in enough samples.

    The number of samples defaults to the size of the smallest group in
    `metadata`. When no gene survives, an `EmptyResultAfterFiltering`
    warning is issued and an empty result is returned.
    """
    cfg = config or FilterConfig()
    log = logger or _log

    if cfg.min_samples is not None:
        n_min = int(cfg.min_samples)
    elif metadata is not None:
        groups = metadata.groups.reindex(counts.samples)
        if groups.isna().any():
            raise InputShapeError("Group labels are missing for some count columns.")
        n_min = int(groups.value_counts().min())
    else:
        raise ValueError("Either metadata groups or filter.min_samples must be provided.")
    if n_min > counts.n_samples:
        raise ValueError(
            f"min_samples={n_min} exceeds the number of samples ({counts.n_samples})."
        )

    cutoff = cpm_cutoff(counts, cfg.min_count, cfg.lib_size_reference) if counts.n_genes else 0.0
    values = cpm(counts, norm_factors=norm_factors).to_numpy()
    n_above = np.sum(values >= cutoff, axis=1)
    keep = pd.Series(n_above >= n_min, index=counts.genes, name="keep")

    filtered = counts.subset_genes(keep.to_numpy())
    result = FilterResult(keep=keep, cpm_cutoff=cutoff, min_samples=n_min, counts=filtered)
    log.info(
        "Expression filter: CPM >= %.4g in >= %d samples keeps %d of %d genes.",
        cutoff,
        n_min,
        result.n_kept,
        counts.n_genes,
    )
    if result.is_empty:
        msg = (
            f"All {counts.n_genes} genes were removed by the expression filter "
            f"(CPM cutoff {cutoff:.4g} in {n_min} samples)."
        )
        log.warning(msg)
        warnings.warn(msg, EmptyResultAfterFiltering, stacklevel=2)
    return result


def retained_counts(
    counts: CountMatrix,
    min_samples_grid: list[int],
    config: FilterConfig | None = None,
) -> pd.Series:
    """Number of retained genes for each `min_samples` value."""
    cfg = config or FilterConfig()
    cutoff = cpm_cutoff(counts, cfg.min_count, cfg.lib_size_reference)
    n_above = np.sum(cpm(counts).to_numpy() >= cutoff, axis=1)
    out = {int(n): int(np.sum(n_above >= int(n))) for n in min_samples_grid}
    return pd.Series(out, name="n_retained").sort_index()
