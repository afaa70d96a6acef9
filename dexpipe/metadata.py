"""Joining sample metadata to count matrices and building design matrices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from dexpipe.core.types import CountMatrix, SampleMetadata
from dexpipe.errors import InputShapeError, RankDeficientDesignError, format_ids

_log = logging.getLogger(__name__)


def join_metadata(
    counts: CountMatrix,
    metadata: SampleMetadata,
    logger: logging.Logger | None = None,
) -> SampleMetadata:
    """Align metadata records to the column order of `counts`."""
    log = logger or _log
    samples = [str(s) for s in counts.samples]
    missing = [s for s in samples if s not in metadata.samples]
    if missing:
        raise InputShapeError(
            f"Count columns without a metadata record: {format_ids(missing)}."
        )
    extra = [s for s in metadata.samples if s not in set(samples)]
    if extra:
        log.info("Ignoring %d metadata rows with no count column: %s", len(extra), format_ids(extra))
    return metadata.subset(samples)


def library_size_bucket(counts: CountMatrix, n_buckets: int = 3) -> pd.Series:
    """Label samples by library-size quantile (Q1 smallest)."""
    k = int(n_buckets)
    if k < 1:
        raise ValueError("n_buckets must be at least 1.")
    lib = pd.Series(np.asarray(counts.lib_sizes), index=counts.samples)
    if k == 1:
        return pd.Series("Q1", index=lib.index, name="lib_size_bucket")
    ranks = lib.rank(method="first")
    buckets = pd.qcut(ranks, q=k, labels=[f"Q{i}" for i in range(1, k + 1)])
    return buckets.astype(str).rename("lib_size_bucket")


@dataclass(frozen=True)
class Design:
    """Design matrix (samples x columns) and the coefficient of interest."""

    matrix: pd.DataFrame
    coef_name: str

    def __post_init__(self) -> None:
        if self.coef_name not in self.matrix.columns:
            raise KeyError(f"Coefficient '{self.coef_name}' not in design columns.")
        values = self.matrix.to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise ValueError("Design matrix must be finite.")

    @property
    def samples(self) -> pd.Index:
        return self.matrix.index

    @property
    def columns(self) -> list[str]:
        return [str(c) for c in self.matrix.columns]

    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=float)


def dependent_columns(matrix: pd.DataFrame) -> list[str]:
    """Return the columns that are linear combinations of earlier columns."""
    values = matrix.to_numpy(dtype=float)
    out: list[str] = []
    rank = 0
    for j, col in enumerate(matrix.columns):
        r = int(np.linalg.matrix_rank(values[:, : j + 1]))
        if r <= rank:
            out.append(str(col))
        rank = r
    return out


def check_design_rank(design: Design) -> None:
    values = design.values()
    if values.shape[0] <= values.shape[1]:
        raise RankDeficientDesignError(
            f"Design has {values.shape[1]} columns but only {values.shape[0]} samples; "
            "no residual degrees of freedom.",
            columns=design.columns,
        )
    if int(np.linalg.matrix_rank(values)) < values.shape[1]:
        cols = dependent_columns(design.matrix)
        raise RankDeficientDesignError(
            f"Design matrix is rank deficient; dependent columns: {', '.join(cols)}.",
            columns=cols,
        )


def _categorical_levels(values: pd.Series, reference: str | None) -> list[str]:
    levels = sorted(values.astype(str).unique().tolist())
    if reference is not None:
        if reference not in levels:
            raise KeyError(f"Reference level '{reference}' not found; levels: {levels}.")
        levels.remove(reference)
        levels.insert(0, reference)
    return levels


def build_design(
    metadata: SampleMetadata,
    covariates: Iterable[str] = (),
    of_interest: str | None = None,
    *,
    reference: Mapping[str, str] | None = None,
    interest_level: str | None = None,
) -> Design:
    """Treatment-coded design with intercept.

    `of_interest` defaults to the metadata group column. Categorical columns
    are expanded against their reference level (explicit, else first sorted);
    numeric columns enter as-is.
    """
    target = of_interest or metadata.group_column
    refs = dict(reference or {})
    columns = [target] + [c for c in covariates if c != target]
    frame = metadata.covariates(columns)

    missing = frame.index[frame.isna().any(axis=1)]
    if len(missing) > 0:
        raise InputShapeError(f"Missing covariate values for samples: {format_ids(list(missing))}.")

    parts = [pd.Series(1.0, index=frame.index, name="(Intercept)")]
    coef_name: str | None = None
    for col in columns:
        values = frame[col]
        if col != metadata.group_column and pd.api.types.is_numeric_dtype(values):
            parts.append(values.astype(float).rename(col))
            if col == target:
                coef_name = col
            continue
        levels = _categorical_levels(values, refs.get(col))
        if len(levels) < 2:
            if col == target:
                raise InputShapeError(
                    f"Covariate of interest '{col}' has a single level '{levels[0]}'."
                )
            _log.info("Dropping constant covariate '%s'.", col)
            continue
        for level in levels[1:]:
            name = f"{col}{level}"
            parts.append((values.astype(str) == level).astype(float).rename(name))
        if col == target:
            if interest_level is None:
                if len(levels) > 2:
                    raise ValueError(
                        f"Covariate of interest '{col}' has {len(levels)} levels; set interest_level."
                    )
                coef_name = f"{col}{levels[1]}"
            else:
                if interest_level not in levels[1:]:
                    raise KeyError(
                        f"interest_level '{interest_level}' is not a non-reference level of '{col}'."
                    )
                coef_name = f"{col}{interest_level}"

    matrix = pd.concat(parts, axis=1)
    if coef_name is None:
        raise ValueError(f"Could not resolve a coefficient for '{target}'.")
    design = Design(matrix=matrix, coef_name=coef_name)
    check_design_rank(design)
    return design
