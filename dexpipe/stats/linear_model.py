"""Gene-wise weighted least-squares fitting."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from dexpipe.core.types import ModelFit
from dexpipe.core.utils import readonly
from dexpipe.errors import InputShapeError, RankDeficientDesignError
from dexpipe.metadata import Design, check_design_rank, dependent_columns

_log = logging.getLogger(__name__)

EPS = 1e-12


def _as_weight_matrix(weights: Any, shape: tuple[int, int]) -> np.ndarray | None:
    if weights is None:
        return None
    w = np.asarray(weights, dtype=float)
    if w.ndim == 1:
        if w.shape[0] != shape[1]:
            raise InputShapeError("1D weights must have one entry per sample.")
        w = np.broadcast_to(w[None, :], shape)
    elif w.shape != shape:
        raise InputShapeError(f"weights shape {w.shape} does not match expression {shape}.")
    if not np.isfinite(w).all() or np.any(w < 0.0):
        raise ValueError("Weights must be finite and non-negative.")
    return np.array(w, dtype=float)


def _fit_block(y: np.ndarray, x: np.ndarray, w: np.ndarray | None) -> dict[str, np.ndarray]:
    """Solve the normal equations for a block of genes at once."""
    n_genes, n_samples = y.shape
    p = x.shape[1]
    if w is None:
        xtx = np.broadcast_to(x.T @ x, (n_genes, p, p))
        xty = y @ x
    else:
        xtx = np.einsum("gn,np,nq->gpq", w, x, x)
        xty = np.einsum("gn,np,gn->gp", w, x, y)

    ranks = np.linalg.matrix_rank(xtx)
    deficient = np.flatnonzero(ranks < p)
    cov = np.full((n_genes, p, p), np.nan, dtype=float)
    ok = ranks == p
    if np.any(ok):
        cov[ok] = np.linalg.inv(xtx[ok])
    beta = np.einsum("gpq,gq->gp", cov, xty)
    fitted = beta @ x.T
    resid = y - fitted
    if w is None:
        rss = np.sum(resid * resid, axis=1)
        n_obs = np.full(n_genes, n_samples, dtype=float)
    else:
        rss = np.sum(w * resid * resid, axis=1)
        n_obs = np.sum(w > 0.0, axis=1).astype(float)
    df = n_obs - p
    with np.errstate(divide="ignore", invalid="ignore"):
        sigma = np.where(df > 0, np.sqrt(rss / df), np.nan)
    stdu = np.sqrt(np.clip(np.diagonal(cov, axis1=1, axis2=2), 0.0, None))
    return {
        "coefficients": beta,
        "stdev_unscaled": stdu,
        "sigma": sigma,
        "df_residual": df,
        "residuals": resid,
        "deficient": deficient,
    }


def _chunks(n: int, size: int) -> list[tuple[int, int]]:
    return [(start, min(start + size, n)) for start in range(0, n, max(1, int(size)))]


def lm_fit(
    expression: pd.DataFrame,
    design: Design,
    weights: Any = None,
    *,
    n_jobs: int = 1,
    chunk_size: int = 2000,
    logger: logging.Logger | None = None,
) -> ModelFit:
    """Fit one linear model per gene (rows of `expression`).

    `weights` may be a per-sample vector or a genes x samples matrix of
    precision weights. Genes are independent, so with `n_jobs > 1` chunks of
    genes are fitted on joblib worker threads and reassembled in gene order.
    """
    log = logger or _log
    samples = [str(s) for s in expression.columns]
    if list(design.samples.astype(str)) != samples:
        missing = sorted(set(samples) ^ set(design.samples.astype(str)))
        if missing:
            raise InputShapeError(
                f"Design and expression samples differ: {', '.join(missing[:5])}."
            )
        design = Design(design.matrix.loc[samples], design.coef_name)
    check_design_rank(design)

    y = expression.to_numpy(dtype=float)
    if not np.isfinite(y).all():
        raise ValueError("Expression values must be finite.")
    x = design.values()
    w = _as_weight_matrix(weights, y.shape)

    spans = _chunks(y.shape[0], chunk_size)
    jobs = max(1, int(n_jobs))
    if jobs > 1 and len(spans) > 1:
        parts = Parallel(n_jobs=jobs, backend="threading")(
            delayed(_fit_block)(y[a:b], x, None if w is None else w[a:b]) for a, b in spans
        )
    else:
        parts = [_fit_block(y[a:b], x, None if w is None else w[a:b]) for a, b in spans]

    for (a, _), part in zip(spans, parts):
        if part["deficient"].size:
            g = int(a + part["deficient"][0])
            gene = str(expression.index[g])
            wx = x if w is None else x * np.sqrt(w[g])[:, None]
            cols = dependent_columns(pd.DataFrame(wx, columns=design.columns))
            raise RankDeficientDesignError(
                f"Weighted design is rank deficient for gene '{gene}'"
                + (f" (dependent columns: {', '.join(cols)})." if cols else "."),
                gene=gene,
                columns=cols,
            )

    def _stack(key: str) -> np.ndarray:
        return np.concatenate([p[key] for p in parts], axis=0)

    log.debug(
        "Fitted %d genes on %d samples x %d design columns (n_jobs=%d).",
        y.shape[0],
        y.shape[1],
        x.shape[1],
        jobs,
    )
    return ModelFit(
        genes=expression.index.copy(),
        design=design.matrix.copy(),
        coef_name=design.coef_name,
        coefficients=readonly(_stack("coefficients")),
        stdev_unscaled=readonly(_stack("stdev_unscaled")),
        sigma=readonly(_stack("sigma")),
        df_residual=readonly(_stack("df_residual")),
        amean=readonly(np.mean(y, axis=1)),
        residuals=readonly(_stack("residuals")),
        weights=None if w is None else readonly(w),
    )


def hat_values(x: np.ndarray, w: np.ndarray | None = None) -> np.ndarray:
    """Leverages of the (weighted) design; genes x samples when `w` is 2D."""
    x = np.asarray(x, dtype=float)
    if w is None:
        cov = np.linalg.pinv(x.T @ x)
        return np.einsum("np,pq,nq->n", x, cov, x)
    w2 = np.atleast_2d(np.asarray(w, dtype=float))
    xtx = np.einsum("gn,np,nq->gpq", w2, x, x)
    cov = np.linalg.pinv(xtx)
    return w2 * np.einsum("np,gpq,nq->gn", x, cov, x)
