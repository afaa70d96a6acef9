"""Empirical Bayes moderation of gene-wise variances."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.special import digamma, polygamma
from scipy.stats import t as t_dist

from dexpipe.core.types import MODERATED_T, FitResult, ModelFit
from dexpipe.stats.multitest import adjust_pvalues

_log = logging.getLogger(__name__)


def trigamma(x: np.ndarray) -> np.ndarray:
    return polygamma(1, x)


def trigamma_inverse(x: np.ndarray | float, tol: float = 1e-8, max_iter: int = 50) -> np.ndarray:
    """Solve trigamma(y) = x for y by Newton iteration."""
    arr = np.atleast_1d(np.asarray(x, dtype=float))
    out = np.full(arr.shape, np.nan, dtype=float)
    big = arr > 1e7
    small = (arr < 1e-6) & (arr >= 0)
    out[big] = 1.0 / np.sqrt(arr[big])
    out[small] = 1.0 / arr[small]
    mid = np.isfinite(arr) & (arr >= 1e-6) & (arr <= 1e7)
    if np.any(mid):
        xm = arr[mid]
        y = 0.5 + 1.0 / xm
        for _ in range(int(max_iter)):
            tri = trigamma(y)
            dif = tri * (1.0 - tri / xm) / polygamma(2, y)
            y = y + dif
            if np.max(-dif / y) < tol:
                break
        else:
            _log.warning("trigamma_inverse: iteration limit exceeded.")
        out[mid] = y
    return out


@dataclass(frozen=True)
class PriorVariance:
    df_prior: float
    s2_prior: float


def fit_f_dist(s2: np.ndarray, df: np.ndarray) -> PriorVariance:
    """Moment estimates of a scaled F prior on gene-wise variances."""
    x = np.asarray(s2, dtype=float).ravel()
    d = np.broadcast_to(np.asarray(df, dtype=float), x.shape)
    ok = np.isfinite(x) & np.isfinite(d) & (d > 0) & (x > 1e-15)
    n_ok = int(ok.sum())
    if n_ok == 0:
        return PriorVariance(df_prior=np.nan, s2_prior=np.nan)
    if n_ok == 1:
        return PriorVariance(df_prior=0.0, s2_prior=float(x[ok][0]))

    xo = x[ok]
    do = d[ok]
    z = np.log(xo)
    e = z - digamma(do / 2.0) + np.log(do / 2.0)
    emean = float(np.mean(e))
    evar = float(np.sum((e - emean) ** 2) / (n_ok - 1))
    evar -= float(np.mean(trigamma(do / 2.0)))
    if evar > 0:
        df2 = float(2.0 * trigamma_inverse(evar)[0])
        s20 = float(np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0)))
    else:
        df2 = np.inf
        s20 = float(np.exp(emean))
    return PriorVariance(df_prior=df2, s2_prior=s20)


def squeeze_var(s2: np.ndarray, df: np.ndarray, prior: PriorVariance | None = None) -> np.ndarray:
    """Posterior gene-wise variances shrunk toward the prior."""
    x = np.asarray(s2, dtype=float)
    d = np.broadcast_to(np.asarray(df, dtype=float), x.shape)
    pr = prior or fit_f_dist(x, d)
    if not np.isfinite(pr.df_prior):
        return np.full(x.shape, pr.s2_prior, dtype=float)
    return (pr.df_prior * pr.s2_prior + d * x) / (pr.df_prior + d)


def _moderate(fit: ModelFit) -> tuple[PriorVariance, np.ndarray, np.ndarray]:
    df_res = np.asarray(fit.df_residual, dtype=float)
    if not np.any(df_res > 0):
        raise ValueError("No residual degrees of freedom: cannot estimate variances.")
    s2 = np.asarray(fit.sigma, dtype=float) ** 2
    prior = fit_f_dist(s2, df_res)
    if np.isnan(prior.df_prior):
        raise ValueError("No finite residual variances: cannot estimate prior.")
    s2_post = squeeze_var(s2, df_res, prior)
    df_pooled = float(np.sum(df_res[np.isfinite(df_res)]))
    df_total = np.minimum(df_res + prior.df_prior, df_pooled)
    return prior, s2_post, df_total


def _result_table(
    fit: ModelFit,
    t_stat: np.ndarray,
    p_value: np.ndarray,
    adjust_method: str,
) -> pd.DataFrame:
    table = pd.DataFrame(
        {
            "logFC": np.asarray(fit.coef, dtype=float),
            "AveExpr": np.asarray(fit.amean, dtype=float),
            "t": t_stat,
            "P.Value": p_value,
            "adj.P.Val": adjust_pvalues(p_value, adjust_method),
        },
        index=fit.genes.copy(),
    )
    table.index.name = "gene"
    return table


def ebayes(
    fit: ModelFit,
    adjust_method: str = "BH",
    logger: logging.Logger | None = None,
) -> FitResult:
    """Moderated t-statistics for the coefficient of interest."""
    log = logger or _log
    prior, s2_post, df_total = _moderate(fit)
    se = np.asarray(fit.se_unscaled, dtype=float) * np.sqrt(s2_post)
    t_stat = np.asarray(fit.coef, dtype=float) / se
    p_value = 2.0 * t_dist.sf(np.abs(t_stat), df=df_total)
    log.info(
        "Empirical Bayes prior: df0=%.3g s0^2=%.4g.",
        prior.df_prior,
        prior.s2_prior,
    )
    return FitResult(
        table=_result_table(fit, t_stat, p_value, adjust_method),
        coef_name=fit.coef_name,
        df_prior=float(prior.df_prior),
        s2_prior=float(prior.s2_prior),
        lfc_threshold=0.0,
        adjust_method=adjust_method,
        model=fit,
    )


def treat(
    fit: ModelFit,
    lfc: float,
    adjust_method: str = "BH",
    logger: logging.Logger | None = None,
) -> FitResult:
    """Moderated test of the null |effect| <= `lfc`."""
    log = logger or _log
    threshold = abs(float(lfc))
    prior, s2_post, df_total = _moderate(fit)
    coef = np.asarray(fit.coef, dtype=float)
    se = np.asarray(fit.se_unscaled, dtype=float) * np.sqrt(s2_post)
    acoef = np.abs(coef)
    t_right = (acoef - threshold) / se
    t_left = (acoef + threshold) / se
    p_value = t_dist.sf(t_right, df=df_total) + t_dist.sf(t_left, df=df_total)
    p_value = np.clip(p_value, 0.0, 1.0)
    t_stat = np.sign(coef) * np.maximum(t_right, 0.0)
    log.info("TREAT against |logFC| <= %.3g (df0=%.3g).", threshold, prior.df_prior)
    table = _result_table(fit, t_stat, p_value, adjust_method)
    table[MODERATED_T] = coef / se
    return FitResult(
        table=table,
        coef_name=fit.coef_name,
        df_prior=float(prior.df_prior),
        s2_prior=float(prior.s2_prior),
        lfc_threshold=threshold,
        adjust_method=adjust_method,
        model=fit,
    )
