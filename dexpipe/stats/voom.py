"""Log-CPM transform with mean-variance precision weights and sample weights."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from dexpipe.core.types import NormalizedMatrix
from dexpipe.core.utils import geometric_mean, readonly
from dexpipe.metadata import Design
from dexpipe.stats.linear_model import hat_values, lm_fit

_log = logging.getLogger(__name__)

EPS = 1e-12


@dataclass(frozen=True)
class VoomResult:
    """log2-CPM expression with observation-level precision weights.

    - `weights`: genes x samples precision weights for the final fit.
    - `trend_x`/`trend_y`: lowess curve of sqrt residual SD on log-count.
    """

    expression: pd.DataFrame
    weights: np.ndarray
    sample_weights: np.ndarray | None
    mean_log_count: np.ndarray
    sqrt_sd: np.ndarray
    trend_x: np.ndarray
    trend_y: np.ndarray


def _lowess_trend(sx: np.ndarray, sy: np.ndarray, span: float) -> tuple[np.ndarray, np.ndarray]:
    ok = np.isfinite(sx) & np.isfinite(sy)
    if int(ok.sum()) < 2:
        raise ValueError("Need at least two genes with finite variance to fit a trend.")
    x = sx[ok]
    delta = 0.01 * float(np.ptp(x))
    curve = lowess(sy[ok], x, frac=float(span), it=3, delta=delta, return_sorted=True)
    tx, idx = np.unique(curve[:, 0], return_index=True)
    ty = curve[idx, 1]
    return tx, ty


def voom(
    normalized: NormalizedMatrix,
    design: Design,
    sample_weights: np.ndarray | None = None,
    span: float = 0.5,
    logger: logging.Logger | None = None,
) -> VoomResult:
    """Transform counts to log2-CPM and estimate precision weights."""
    log = logger or _log
    if normalized.counts.n_genes < 2:
        raise ValueError("Need at least two genes to fit a mean-variance trend.")
    lib = np.asarray(normalized.effective_lib_sizes, dtype=float)
    expression = normalized.log_cpm(prior_count=0.5)

    fit = lm_fit(expression, design, weights=sample_weights, logger=log)
    sx = np.asarray(fit.amean) + float(np.mean(np.log2(lib + 1.0))) - np.log2(1e6)
    sy = np.sqrt(np.asarray(fit.sigma, dtype=float))
    tx, ty = _lowess_trend(sx, sy, span)

    x = design.matrix.loc[expression.columns].to_numpy(dtype=float)
    fitted = np.asarray(fit.coefficients) @ x.T
    fitted_count = 1e-6 * np.exp2(fitted) * (lib[None, :] + 1.0)
    fitted_logcount = np.log2(fitted_count)
    trend = np.interp(fitted_logcount, tx, ty)
    trend = np.clip(trend, EPS, None)
    weights = 1.0 / trend**4
    log.info(
        "voom weights for %d genes (median %.3g).", weights.shape[0], float(np.median(weights))
    )
    return VoomResult(
        expression=expression,
        weights=readonly(weights),
        sample_weights=None if sample_weights is None else readonly(sample_weights),
        mean_log_count=readonly(sx),
        sqrt_sd=readonly(sy),
        trend_x=readonly(tx),
        trend_y=readonly(ty),
    )


def sample_quality_weights(
    expression: pd.DataFrame,
    design: Design,
    weights: np.ndarray | None = None,
    *,
    tol: float = 1e-5,
    max_iter: int = 50,
    logger: logging.Logger | None = None,
) -> np.ndarray:
    """Per-sample weights that down-weight samples with inflated residual variance.

    Each round refits the weighted model and divides every sample's weight by
    the ratio of its mean standardized squared residual to the value expected
    from its leverage. Weights are rescaled to geometric mean 1; iteration stops
    once the largest change falls below `tol` or after `max_iter` rounds.
    """
    log = logger or _log
    y = expression.to_numpy(dtype=float)
    n_genes, n_samples = y.shape
    x = design.matrix.loc[expression.columns].to_numpy(dtype=float)
    if n_samples - x.shape[1] < 2 or n_genes < 2:
        log.info("Too few residual df for sample weights; using unit weights.")
        return np.ones(n_samples, dtype=float)
    obs_w = np.ones_like(y) if weights is None else np.asarray(weights, dtype=float)
    sw = np.ones(n_samples, dtype=float)
    converged = False
    for it in range(1, int(max_iter) + 1):
        w = obs_w * sw[None, :]
        fit = lm_fit(expression, design, weights=w, logger=log)
        s2 = np.asarray(fit.sigma, dtype=float) ** 2
        ok = np.isfinite(s2) & (s2 > 1e-15)
        if int(ok.sum()) < 2:
            break
        h = hat_values(x, w[ok])
        resid = np.asarray(fit.residuals)[ok]
        r2 = w[ok] * resid * resid / s2[ok, None]
        expected = np.clip(np.sum(1.0 - h, axis=0), EPS, None)
        ratio = np.clip(np.sum(r2, axis=0) / expected, EPS, None)
        new = sw / ratio
        new = new / geometric_mean(new)
        change = float(np.max(np.abs(new - sw)))
        sw = new
        if change < float(tol):
            converged = True
            break
    if converged:
        log.info("Sample weights converged after %d iterations.", it)
    else:
        log.warning("Sample weights did not converge within %d iterations.", int(max_iter))
    return sw


def voom_with_quality_weights(
    normalized: NormalizedMatrix,
    design: Design,
    span: float = 0.5,
    *,
    tol: float = 1e-5,
    max_iter: int = 50,
    logger: logging.Logger | None = None,
) -> VoomResult:
    """voom, sample weights, voom again with them, then final sample weights."""
    log = logger or _log
    first = voom(normalized, design, span=span, logger=log)
    sw = sample_quality_weights(
        first.expression, design, first.weights, tol=tol, max_iter=max_iter, logger=log
    )
    second = voom(normalized, design, sample_weights=sw, span=span, logger=log)
    sw = sample_quality_weights(
        second.expression, design, second.weights, tol=tol, max_iter=max_iter, logger=log
    )
    log.info(
        "Sample weights: %s",
        ", ".join(f"{s}={v:.3f}" for s, v in zip(second.expression.columns, sw)),
    )
    return VoomResult(
        expression=second.expression,
        weights=readonly(np.asarray(second.weights) * sw[None, :]),
        sample_weights=readonly(sw),
        mean_log_count=second.mean_log_count,
        sqrt_sd=second.sqrt_sd,
        trend_x=second.trend_x,
        trend_y=second.trend_y,
    )
