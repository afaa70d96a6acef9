"""Gene-set enrichment: hypergeometric over-representation and camera."""

from __future__ import annotations

import logging
import math
from typing import Iterable

import numpy as np
import pandas as pd
from scipy.stats import hypergeom, norm, rankdata
from scipy.stats import t as t_dist

from dexpipe.core.types import FitResult, GeneSetCollection
from dexpipe.stats.multitest import bh_fdr

_log = logging.getLogger(__name__)

ORA_COLUMNS = ("n_genes", "n_selected", "expected", "p_over", "q_over", "p_under", "q_under")
CAMERA_COLUMNS = ("n_genes", "correlation", "direction", "p_value", "fdr")


def prepare_gene_sets(
    gene_sets: GeneSetCollection,
    universe: Iterable[str],
    min_size: int = 1,
    max_size: int | None = None,
    logger: logging.Logger | None = None,
) -> GeneSetCollection:
    """Restrict sets to the universe, dropping empty and out-of-range sets."""
    log = logger or _log
    restricted = gene_sets.restrict(universe)
    n_empty = len(gene_sets) - len(restricted)
    if n_empty:
        log.info("Dropped %d gene sets with no overlap with the tested genes.", n_empty)
    sized = restricted.filter_by_size(min_size=min_size, max_size=max_size)
    n_sized = len(restricted) - len(sized)
    if n_sized:
        log.info(
            "Dropped %d gene sets outside the size range [%d, %s].",
            n_sized,
            int(min_size),
            "inf" if max_size is None else int(max_size),
        )
    return sized


def over_representation(
    selected: Iterable[str],
    universe: Iterable[str],
    gene_sets: GeneSetCollection,
    *,
    min_size: int = 1,
    max_size: int | None = None,
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """Hypergeometric over- and under-representation of `selected` per set."""
    uni = frozenset(str(g) for g in universe)
    sel = frozenset(str(g) for g in selected) & uni
    sets = prepare_gene_sets(gene_sets, uni, min_size, max_size, logger=logger)
    n_universe = len(uni)
    n_sel = len(sel)

    rows = []
    for name, members in sets.items():
        k_set = len(members)
        hits = len(members & sel)
        rows.append(
            {
                "gene_set": name,
                "n_genes": k_set,
                "n_selected": hits,
                "expected": k_set * n_sel / n_universe if n_universe else float("nan"),
                "p_over": float(hypergeom.sf(hits - 1, n_universe, k_set, n_sel)),
                "p_under": float(hypergeom.cdf(hits, n_universe, k_set, n_sel)),
            }
        )
    if not rows:
        return pd.DataFrame(columns=list(ORA_COLUMNS)).rename_axis("gene_set")

    out = pd.DataFrame(rows).set_index("gene_set")
    out["p_over"] = out["p_over"].clip(0.0, 1.0)
    out["p_under"] = out["p_under"].clip(0.0, 1.0)
    out["q_over"] = bh_fdr(out["p_over"].to_numpy())
    out["q_under"] = bh_fdr(out["p_under"].to_numpy())
    out = out.loc[:, list(ORA_COLUMNS)]
    return out.sort_values(["p_over", "n_genes"], ascending=[True, False], kind="mergesort")


def over_representation_by_direction(
    result: FitResult,
    gene_sets: GeneSetCollection,
    id_map: pd.Series | None = None,
    *,
    alpha: float = 0.05,
    lfc: float = 0.0,
    min_size: int = 1,
    max_size: int | None = None,
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """Over-representation among up- and down-regulated genes separately.

    `id_map` translates result gene ids to the identifiers used by the gene
    sets; genes missing from it are outside the universe.
    """
    decision = result.decide(alpha=alpha, lfc=lfc)
    if id_map is not None:
        decision = decision[decision.index.isin(id_map.index)]
        decision.index = id_map.reindex(decision.index).astype(str).to_numpy()
        decision = decision[~decision.index.duplicated(keep="first")]
    universe = list(decision.index)
    parts = {}
    for label, sign in (("up", 1), ("down", -1)):
        selected = decision.index[decision == sign]
        parts[label] = over_representation(
            selected, universe, gene_sets, min_size=min_size, max_size=max_size, logger=logger
        )
    combined = parts["up"].join(parts["down"], how="outer", lsuffix="_up", rsuffix="_down")
    if combined.empty:
        return combined
    best = np.minimum(combined["p_over_up"], combined["p_over_down"])
    return combined.iloc[np.argsort(best.to_numpy(), kind="mergesort")]


def set_correlation(unit_residuals: np.ndarray) -> float:
    """Mean pairwise correlation of unit-length residual rows."""
    u = np.asarray(unit_residuals, dtype=float)
    m = u.shape[0]
    if m < 2:
        return 0.0
    s = np.sum(u, axis=0)
    total = float(s @ s)
    return float((total - float(np.sum(u * u))) / (m * (m - 1)))


def rank_sum_with_correlation(
    index: np.ndarray,
    statistics: np.ndarray,
    correlation: float = 0.0,
) -> tuple[float, float]:
    """Wilcoxon rank-sum allowing for correlation between set members.

    Returns `(p_less, p_greater)`: the probabilities that the set's statistics
    are shifted down or up relative to the remaining genes.
    """
    stats = np.asarray(statistics, dtype=float).ravel()
    n = stats.size
    r = rankdata(stats, method="average")
    r1 = r[np.asarray(index, dtype=int)]
    n1 = r1.size
    n2 = n - n1
    if n1 == 0 or n2 == 0:
        raise ValueError("Gene set must be a proper non-empty subset of the statistics.")
    u_stat = n1 * n2 + n1 * (n1 + 1) / 2.0 - float(np.sum(r1))
    mu = n1 * n2 / 2.0

    rho = float(correlation)
    if rho == 0.0 or n1 == 1:
        sigma2 = n1 * n2 * (n + 1) / 12.0
    else:
        sigma2 = (
            math.asin(1.0) * n1 * n2
            + math.asin(0.5) * n1 * n2 * (n2 - 1)
            + math.asin(rho / 2.0) * n1 * (n1 - 1) * n2 * (n2 - 1)
            + math.asin((rho + 1.0) / 2.0) * n1 * (n1 - 1) * n2
        )
        sigma2 = sigma2 / 2.0 / math.pi

    _, ties = np.unique(r, return_counts=True)
    if np.any(ties > 1):
        t = ties.astype(float)
        adjustment = float(np.sum(t * (t + 1.0) * (t - 1.0))) / (n * (n + 1.0) * (n - 1.0))
        sigma2 = sigma2 * (1.0 - adjustment)
    sd = math.sqrt(max(sigma2, 1e-300))
    z_lower = (u_stat + 0.5 - mu) / sd
    z_upper = (u_stat - 0.5 - mu) / sd
    p_less = float(norm.sf(z_upper))
    p_greater = float(norm.cdf(z_lower))
    return p_less, p_greater


def _parametric_camera(
    stats: np.ndarray, index: np.ndarray, vif: float, df: float
) -> tuple[float, float]:
    g = stats.size
    m = index.size
    m2 = g - m
    mean_all = float(np.mean(stats))
    var_all = float(np.var(stats, ddof=1))
    delta = g / m2 * (float(np.mean(stats[index])) - mean_all)
    var_pooled = ((g - 1) * var_all - delta * delta * m * m2 / g) / (g - 2)
    t_val = delta / math.sqrt(max(var_pooled, 1e-300) * (vif / m + 1.0 / m2))
    return float(t_dist.cdf(t_val, df)), float(t_dist.sf(t_val, df))


def camera(
    statistics: pd.Series,
    gene_sets: GeneSetCollection,
    unit_residuals: pd.DataFrame | None = None,
    *,
    inter_gene_cor: float | None = 0.01,
    use_ranks: bool = True,
    min_size: int = 2,
    max_size: int | None = None,
    df_residual: float | None = None,
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """Competitive gene-set test on per-gene statistics.

    With `inter_gene_cor=None` the correlation of each set is estimated from
    `unit_residuals` (genes x residual dimensions, unit length per gene).
    The variance inflation factor is `1 + (m - 1) * correlation`. The
    parametric test has `G - 2` degrees of freedom, capped at `df_residual`
    when the correlation is estimated.
    """
    log = logger or _log
    stats = statistics.dropna()
    if stats.index.has_duplicates:
        stats = stats[~stats.index.duplicated(keep="first")]
    if inter_gene_cor is None and unit_residuals is None:
        raise ValueError("unit_residuals are required when inter_gene_cor is None.")
    g = int(stats.size)
    if g < 3:
        raise ValueError("camera needs at least three genes with statistics.")
    sets = prepare_gene_sets(
        gene_sets, stats.index.astype(str), max(int(min_size), 1), max_size, logger=log
    )
    df_camera = float(g - 2)
    if inter_gene_cor is None and df_residual is not None:
        df_camera = min(float(df_residual), df_camera)
    position = pd.Series(np.arange(g), index=stats.index.astype(str))
    values = stats.to_numpy(dtype=float)
    resid = None
    if inter_gene_cor is None:
        resid = unit_residuals.reindex(stats.index).to_numpy(dtype=float)

    rows = []
    for name, members in sets.items():
        idx = position.loc[sorted(members)].to_numpy()
        m = idx.size
        if m >= g:
            log.info("Skipping gene set '%s': it covers every tested gene.", name)
            continue
        if inter_gene_cor is None:
            rho = set_correlation(resid[idx]) if m > 1 else 0.0
        else:
            rho = float(inter_gene_cor)
        vif = 1.0 + (m - 1) * rho
        if use_ranks:
            p_down, p_up = rank_sum_with_correlation(idx, values, rho)
        else:
            p_down, p_up = _parametric_camera(values, idx, vif, df_camera)
        direction = "Up" if p_up < p_down else "Down"
        rows.append(
            {
                "gene_set": name,
                "n_genes": int(m),
                "correlation": rho,
                "direction": direction,
                "p_value": float(min(1.0, 2.0 * min(p_up, p_down))),
            }
        )
    if not rows:
        return pd.DataFrame(columns=list(CAMERA_COLUMNS)).rename_axis("gene_set")
    out = pd.DataFrame(rows).set_index("gene_set")
    out["fdr"] = bh_fdr(out["p_value"].to_numpy())
    out = out.loc[:, list(CAMERA_COLUMNS)]
    return out.sort_values(["p_value", "n_genes"], ascending=[True, False], kind="mergesort")


def camera_from_fit(
    result: FitResult,
    gene_sets: GeneSetCollection,
    id_map: pd.Series | None = None,
    **kwargs,
) -> pd.DataFrame:
    """Run `camera` on a FitResult's moderated statistics.

    Uses the unthresholded moderated t even when the result came from TREAT.
    """
    stats = result.statistics()
    residuals = None
    if result.model is not None:
        residuals = pd.DataFrame(result.model.standardized_residuals(), index=result.genes)
        design = result.model.design
        kwargs.setdefault("df_residual", float(design.shape[0] - design.shape[1]))
    if id_map is not None:
        stats = stats[stats.index.isin(id_map.index)]
        new_index = pd.Index(id_map.reindex(stats.index).astype(str).to_numpy())
        first = ~new_index.duplicated(keep="first")
        if residuals is not None:
            residuals = residuals.loc[stats.index][first]
            residuals.index = new_index[first]
        stats = pd.Series(stats.to_numpy()[first], index=new_index[first], name=stats.name)
    return camera(stats, gene_sets, residuals, **kwargs)
