"""Multiple-testing correction of per-gene and per-set p-values."""

from __future__ import annotations

import numpy as np
from statsmodels.stats.multitest import multipletests

ADJUST_METHODS = ("BH", "BY", "holm", "bonferroni", "none")

_STATSMODELS_METHODS = {"BY": "fdr_by", "holm": "holm", "bonferroni": "bonferroni"}


def _check_pvals(flat: np.ndarray, finite: np.ndarray) -> None:
    if np.any((flat[finite] < 0.0) | (flat[finite] > 1.0)):
        raise ValueError("p-values must be in [0,1] or NaN.")


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg step-up adjustment; NaN entries map to 1."""
    arr = np.asarray(pvals, dtype=float)
    flat = arr.ravel()
    q = np.ones_like(flat)
    finite = np.isfinite(flat)
    _check_pvals(flat, finite)
    if np.any(finite):
        p = flat[finite]
        m = int(p.size)
        order = np.argsort(p, kind="mergesort")
        ranked = p[order]
        ranks = np.arange(1, m + 1, dtype=float)
        adj = ranked * (float(m) / ranks)
        adj = np.minimum.accumulate(adj[::-1])[::-1]
        adj = np.clip(adj, 0.0, 1.0)
        q_valid = np.empty_like(adj)
        q_valid[order] = adj
        q[finite] = q_valid
    return q.reshape(arr.shape)


def adjust_pvalues(pvals: np.ndarray, method: str = "BH") -> np.ndarray:
    """Adjust p-values for multiple testing.

    Supported methods are "BH", "BY", "holm", "bonferroni" and "none". BY,
    Holm and Bonferroni go through `statsmodels.stats.multitest.multipletests`.
    NaN entries map to 1.
    """
    if method not in ADJUST_METHODS:
        raise ValueError(f"Unknown adjustment method '{method}'. Use one of {ADJUST_METHODS}.")
    if method == "BH":
        return bh_fdr(pvals)

    arr = np.asarray(pvals, dtype=float)
    flat = arr.ravel()
    out = np.ones_like(flat)
    finite = np.isfinite(flat)
    _check_pvals(flat, finite)
    if not np.any(finite):
        return out.reshape(arr.shape)
    if method == "none":
        out[finite] = flat[finite]
    else:
        _, corrected, _, _ = multipletests(flat[finite], method=_STATSMODELS_METHODS[method])
        out[finite] = np.clip(corrected, 0.0, 1.0)
    return out.reshape(arr.shape)
