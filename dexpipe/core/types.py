"""Immutable value objects passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from dexpipe.core.utils import readonly
from dexpipe.errors import InputShapeError, format_ids


def _duplicated(index: pd.Index) -> list[str]:
    return [str(x) for x in index[index.duplicated()].unique()]


@dataclass(frozen=True)
class CountMatrix:
    """Genes (rows) by samples (columns) of non-negative integer counts."""

    frame: pd.DataFrame

    def __post_init__(self) -> None:
        frame = self.frame
        dup_genes = _duplicated(frame.index)
        if dup_genes:
            raise InputShapeError(f"Duplicate gene identifiers: {format_ids(dup_genes)}.")
        dup_samples = _duplicated(frame.columns)
        if dup_samples:
            raise InputShapeError(
                f"Duplicate sample identifiers: {format_ids(dup_samples)}."
            )
        values = frame.to_numpy(dtype=float)
        if not np.isfinite(values).all():
            raise ValueError("Counts must be finite.")
        if np.any(values < 0):
            raise ValueError("Counts must be non-negative.")
        if np.any(values != np.round(values)):
            raise ValueError("Counts must be integers.")
        if frame.shape[0] > 0:
            empty = [str(c) for c, s in zip(frame.columns, values.sum(axis=0)) if s <= 0]
            if empty:
                raise InputShapeError(f"Samples with zero library size: {format_ids(empty)}.")
        clean = frame.astype(np.int64).copy()
        clean.index = clean.index.astype(str)
        clean.columns = clean.columns.astype(str)
        object.__setattr__(self, "frame", clean)

    @classmethod
    def from_array(
        cls,
        counts: np.ndarray,
        genes: Iterable[str],
        samples: Iterable[str],
    ) -> "CountMatrix":
        return cls(pd.DataFrame(np.asarray(counts), index=list(genes), columns=list(samples)))

    @property
    def genes(self) -> pd.Index:
        return self.frame.index

    @property
    def samples(self) -> pd.Index:
        return self.frame.columns

    @property
    def n_genes(self) -> int:
        return int(self.frame.shape[0])

    @property
    def n_samples(self) -> int:
        return int(self.frame.shape[1])

    @property
    def lib_sizes(self) -> np.ndarray:
        return readonly(self.frame.to_numpy(dtype=float).sum(axis=0))

    def values(self) -> np.ndarray:
        return self.frame.to_numpy(dtype=float)

    def subset_genes(self, keep: np.ndarray) -> "CountMatrix":
        mask = np.asarray(keep, dtype=bool).ravel()
        if mask.size != self.n_genes:
            raise InputShapeError(
                f"Gene mask length {mask.size} does not match {self.n_genes} genes."
            )
        return CountMatrix(self.frame.loc[mask])

    def subset_samples(self, samples: Iterable[str]) -> "CountMatrix":
        wanted = [str(s) for s in samples]
        missing = [s for s in wanted if s not in self.frame.columns]
        if missing:
            raise InputShapeError(f"Samples not in count matrix: {format_ids(missing)}.")
        return CountMatrix(self.frame.loc[:, wanted])


@dataclass(frozen=True)
class SampleMetadata:
    """One record per sample with a designated group column."""

    frame: pd.DataFrame
    group_column: str

    def __post_init__(self) -> None:
        frame = self.frame.copy()
        frame.index = frame.index.astype(str)
        dup = _duplicated(frame.index)
        if dup:
            raise InputShapeError(f"Duplicate sample identifiers in metadata: {format_ids(dup)}.")
        if self.group_column not in frame.columns:
            raise KeyError(f"Group column '{self.group_column}' not found in metadata.")
        missing = frame.index[frame[self.group_column].isna()]
        if len(missing) > 0:
            raise InputShapeError(
                f"Samples without a group label: {format_ids(list(missing))}."
            )
        frame[self.group_column] = frame[self.group_column].astype(str)
        object.__setattr__(self, "frame", frame)

    @property
    def samples(self) -> pd.Index:
        return self.frame.index

    @property
    def groups(self) -> pd.Series:
        return self.frame[self.group_column]

    def group_sizes(self) -> pd.Series:
        return self.groups.value_counts().sort_index()

    def smallest_group_size(self) -> int:
        sizes = self.group_sizes()
        return int(sizes.min()) if not sizes.empty else 0

    def covariates(self, columns: Iterable[str]) -> pd.DataFrame:
        cols = list(columns)
        missing = [c for c in cols if c not in self.frame.columns]
        if missing:
            raise KeyError(f"Covariates not found in metadata: {', '.join(missing)}.")
        return self.frame.loc[:, cols].copy()

    def subset(self, samples: Iterable[str]) -> "SampleMetadata":
        wanted = [str(s) for s in samples]
        missing = [s for s in wanted if s not in self.frame.index]
        if missing:
            raise InputShapeError(
                f"Samples missing from metadata: {format_ids(missing)}."
            )
        return SampleMetadata(self.frame.loc[wanted], self.group_column)

    def with_covariate(self, name: str, values: pd.Series) -> "SampleMetadata":
        aligned = pd.Series(values).reindex(self.frame.index)
        if aligned.isna().any():
            missing = list(aligned.index[aligned.isna()])
            raise InputShapeError(f"Covariate '{name}' missing for: {format_ids(missing)}.")
        frame = self.frame.copy()
        frame[name] = aligned.to_numpy()
        return SampleMetadata(frame, self.group_column)


@dataclass(frozen=True)
class GeneAnnotation:
    """Gene identifier to symbol/chromosome/external identifier records."""

    frame: pd.DataFrame

    COLUMNS = ("symbol", "chromosome", "external_id")

    def __post_init__(self) -> None:
        frame = self.frame.copy()
        for col in self.COLUMNS:
            if col not in frame.columns:
                frame[col] = pd.NA
        frame.index = frame.index.astype(str)
        frame = frame.loc[~frame.index.duplicated(keep="first"), list(self.COLUMNS)]
        object.__setattr__(self, "frame", frame)

    @property
    def genes(self) -> pd.Index:
        return self.frame.index

    def external_ids(self) -> pd.Series:
        ids = self.frame["external_id"].dropna().astype(str)
        return ids[ids.str.strip() != ""]

    def symbols(self) -> pd.Series:
        return self.frame["symbol"]


@dataclass(frozen=True)
class NormalizedMatrix:
    """Counts plus per-sample scaling factors with geometric mean 1."""

    counts: CountMatrix
    norm_factors: np.ndarray
    method: str = "TMM"
    reference_sample: str | None = None

    def __post_init__(self) -> None:
        nf = np.asarray(self.norm_factors, dtype=float).ravel()
        if nf.size != self.counts.n_samples:
            raise InputShapeError(
                f"Got {nf.size} normalization factors for {self.counts.n_samples} samples."
            )
        if not np.isfinite(nf).all() or np.any(nf <= 0.0):
            raise ValueError("Normalization factors must be finite and strictly positive.")
        object.__setattr__(self, "norm_factors", readonly(nf))

    @property
    def lib_sizes(self) -> np.ndarray:
        return self.counts.lib_sizes

    @property
    def effective_lib_sizes(self) -> np.ndarray:
        return readonly(self.counts.lib_sizes * self.norm_factors)

    @property
    def genes(self) -> pd.Index:
        return self.counts.genes

    @property
    def samples(self) -> pd.Index:
        return self.counts.samples

    def factors(self) -> pd.Series:
        return pd.Series(np.asarray(self.norm_factors), index=self.samples, name="norm_factor")

    def cpm(self) -> pd.DataFrame:
        values = self.counts.values() / self.effective_lib_sizes[None, :] * 1e6
        return pd.DataFrame(values, index=self.genes, columns=self.samples)

    def log_cpm(self, prior_count: float = 0.5) -> pd.DataFrame:
        lib = self.effective_lib_sizes
        values = np.log2((self.counts.values() + float(prior_count)) / (lib[None, :] + 1.0) * 1e6)
        return pd.DataFrame(values, index=self.genes, columns=self.samples)


@dataclass(frozen=True)
class ModelFit:
    """Per-gene weighted least-squares fit before moderation."""

    genes: pd.Index
    design: pd.DataFrame
    coef_name: str
    coefficients: np.ndarray
    stdev_unscaled: np.ndarray
    sigma: np.ndarray
    df_residual: np.ndarray
    amean: np.ndarray
    residuals: np.ndarray
    weights: np.ndarray | None = None

    @property
    def coef_index(self) -> int:
        return int(list(self.design.columns).index(self.coef_name))

    @property
    def coef(self) -> np.ndarray:
        return self.coefficients[:, self.coef_index]

    @property
    def se_unscaled(self) -> np.ndarray:
        return self.stdev_unscaled[:, self.coef_index]

    def standardized_residuals(self) -> np.ndarray:
        """Weighted residuals centred and scaled to unit length per gene."""
        r = np.asarray(self.residuals, dtype=float)
        if self.weights is not None:
            r = r * np.sqrt(np.asarray(self.weights, dtype=float))
        r = r - r.mean(axis=1, keepdims=True)
        norm = np.sqrt(np.sum(r * r, axis=1, keepdims=True))
        norm[norm <= 0.0] = np.inf
        return r / norm


TABLE_COLUMNS = ("logFC", "AveExpr", "t", "P.Value", "adj.P.Val")
MODERATED_T = "moderated_t"


@dataclass(frozen=True)
class FitResult:
    """Moderated per-gene test results for the covariate of interest."""

    table: pd.DataFrame
    coef_name: str
    df_prior: float
    s2_prior: float
    lfc_threshold: float = 0.0
    adjust_method: str = "BH"
    model: ModelFit | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        missing = [c for c in TABLE_COLUMNS if c not in self.table.columns]
        if missing:
            raise ValueError(f"FitResult table missing columns: {', '.join(missing)}.")
        object.__setattr__(self, "table", self.table.copy())

    @property
    def genes(self) -> pd.Index:
        return self.table.index

    def statistics(self) -> pd.Series:
        """Continuous moderated t per gene.

        TREAT tables keep the unthresholded moderated t in `moderated_t`; the
        `t` column there is shrunk toward zero by the fold-change threshold.
        """
        column = MODERATED_T if MODERATED_T in self.table.columns else "t"
        return self.table[column].rename("t")

    def top_table(self, sort_by: str = "p", n: int | None = None) -> pd.DataFrame:
        """Return results ordered by significance, fold change or name."""
        key = str(sort_by).strip().lower()
        if key in {"p", "p.value", "t"}:
            order = np.lexsort(
                (-np.abs(self.table["t"].to_numpy()), self.table["P.Value"].to_numpy())
            )
            out = self.table.iloc[order]
        elif key in {"logfc", "lfc"}:
            out = self.table.iloc[np.argsort(-np.abs(self.table["logFC"].to_numpy()), kind="mergesort")]
        elif key in {"aveexpr", "a"}:
            out = self.table.sort_values("AveExpr", ascending=False, kind="mergesort")
        elif key == "none":
            out = self.table
        else:
            raise ValueError(f"Unsupported sort_by '{sort_by}'.")
        out = out.copy()
        if n is not None:
            out = out.head(int(n))
        return out

    def decide(self, alpha: float = 0.05, lfc: float = 0.0) -> pd.Series:
        """Return -1/0/1 per gene for down/not significant/up."""
        sig = (self.table["adj.P.Val"] <= float(alpha)) & (
            self.table["logFC"].abs() >= float(lfc)
        )
        sign = np.sign(self.table["logFC"]).astype(int)
        return pd.Series(np.where(sig, sign, 0), index=self.table.index, name="decision")

    def summary(self, alpha: float = 0.05, lfc: float = 0.0) -> dict[str, int]:
        d = self.decide(alpha=alpha, lfc=lfc)
        return {
            "up": int((d > 0).sum()),
            "down": int((d < 0).sum()),
            "not_significant": int((d == 0).sum()),
        }


@dataclass(frozen=True)
class GeneSetCollection:
    """Read-only mapping from gene-set name to member identifiers."""

    sets: Mapping[str, frozenset[str]]
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        clean = {
            str(name): frozenset(str(g) for g in members)
            for name, members in self.sets.items()
        }
        object.__setattr__(self, "sets", dict(sorted(clean.items())))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[str]]) -> "GeneSetCollection":
        return cls({k: frozenset(v) for k, v in mapping.items()})

    def __len__(self) -> int:
        return len(self.sets)

    def __iter__(self):
        return iter(self.sets)

    def __getitem__(self, name: str) -> frozenset[str]:
        return self.sets[name]

    def items(self):
        return self.sets.items()

    def sizes(self) -> pd.Series:
        return pd.Series({k: len(v) for k, v in self.sets.items()}, dtype=int, name="size")

    def restrict(self, universe: Iterable[str]) -> "GeneSetCollection":
        """Intersect every set with `universe`; sets left empty are removed."""
        uni = frozenset(str(g) for g in universe)
        kept = {name: members & uni for name, members in self.sets.items()}
        return GeneSetCollection({k: v for k, v in kept.items() if v}, dict(self.metadata))

    def filter_by_size(
        self, min_size: int = 1, max_size: int | None = None
    ) -> "GeneSetCollection":
        lo = int(min_size)
        hi = None if max_size is None else int(max_size)
        kept = {
            k: v
            for k, v in self.sets.items()
            if len(v) >= lo and (hi is None or len(v) <= hi)
        }
        return GeneSetCollection(kept, dict(self.metadata))
