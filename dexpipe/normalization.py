"""Between-sample scaling factors (TMM and upper-quartile)."""

from __future__ import annotations

import logging

import numpy as np
from scipy.stats import rankdata

from dexpipe.config import NormalizationConfig
from dexpipe.core.types import CountMatrix, NormalizedMatrix
from dexpipe.core.utils import geometric_mean

_log = logging.getLogger(__name__)


def _upper_quartile_fractions(x: np.ndarray, lib: np.ndarray, p: float = 0.75) -> np.ndarray:
    return np.quantile(x / lib[None, :], p, axis=0)


def select_reference_sample(x: np.ndarray, lib: np.ndarray) -> int:
    """Index of the sample whose upper quartile is closest to the mean one.

    `np.argmin` returns the first index on ties, so the choice is fixed for
    identical input.
    """
    f75 = _upper_quartile_fractions(x, lib)
    if float(np.median(f75)) < 1e-20:
        return int(np.argmax(np.sum(np.sqrt(x), axis=0)))
    return int(np.argmin(np.abs(f75 - np.mean(f75))))


def tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float | None = None,
    lib_ref: float | None = None,
    *,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    """Trimmed mean of M-values of `obs` against `ref` (unnormalized factor)."""
    o = np.asarray(obs, dtype=float).ravel()
    r = np.asarray(ref, dtype=float).ravel()
    if o.size != r.size:
        raise ValueError("obs and ref must have the same length.")
    n_o = float(np.sum(o) if lib_obs is None else lib_obs)
    n_r = float(np.sum(r) if lib_ref is None else lib_ref)
    if n_o <= 0.0 or n_r <= 0.0:
        raise ValueError("Library sizes must be positive.")

    with np.errstate(divide="ignore", invalid="ignore"):
        log_o = np.log2(o / n_o)
        log_r = np.log2(r / n_r)
        m_val = log_o - log_r
        a_val = 0.5 * (log_o + log_r)
        v_val = (n_o - o) / n_o / o + (n_r - r) / n_r / r

    fin = np.isfinite(m_val) & np.isfinite(a_val) & (a_val > float(a_cutoff))
    m_val = m_val[fin]
    a_val = a_val[fin]
    v_val = v_val[fin]
    if m_val.size == 0 or float(np.max(np.abs(m_val))) < 1e-6:
        return 1.0

    n = m_val.size
    lo_l = np.floor(n * float(logratio_trim)) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * float(sum_trim)) + 1
    hi_s = n + 1 - lo_s
    rank_m = rankdata(m_val, method="average")
    rank_a = rankdata(a_val, method="average")
    keep = (rank_m >= lo_l) & (rank_m <= hi_l) & (rank_a >= lo_s) & (rank_a <= hi_s)
    if not np.any(keep):
        return 1.0

    if do_weighting:
        f = float(np.sum(m_val[keep] / v_val[keep]) / np.sum(1.0 / v_val[keep]))
    else:
        f = float(np.mean(m_val[keep]))
    if not np.isfinite(f):
        f = 0.0
    return float(2.0**f)


def _rescale(factors: np.ndarray) -> np.ndarray:
    return factors / geometric_mean(factors)


def calc_norm_factors(
    counts: CountMatrix,
    config: NormalizationConfig | None = None,
    logger: logging.Logger | None = None,
) -> NormalizedMatrix:
    """Compute per-sample scaling factors with geometric mean 1."""
    cfg = config or NormalizationConfig()
    log = logger or _log
    if counts.n_genes == 0:
        raise ValueError("Cannot normalize an empty count matrix.")

    x = counts.values()
    lib = np.asarray(counts.lib_sizes, dtype=float)
    x = x[np.any(x > 0, axis=1)]
    reference: str | None = None

    if cfg.method == "none" or counts.n_samples == 1:
        factors = np.ones(counts.n_samples, dtype=float)
    elif cfg.method == "upperquartile":
        factors = _upper_quartile_fractions(x, lib)
        if np.any(factors <= 0.0):
            raise ValueError(
                "Upper quartile is zero for some samples; use TMM on this matrix."
            )
    else:
        ref_idx = select_reference_sample(x, lib)
        reference = str(counts.samples[ref_idx])
        factors = np.array(
            [
                tmm_factor(
                    x[:, j],
                    x[:, ref_idx],
                    lib[j],
                    lib[ref_idx],
                    logratio_trim=cfg.logratio_trim,
                    sum_trim=cfg.sum_trim,
                    do_weighting=cfg.do_weighting,
                    a_cutoff=cfg.a_cutoff,
                )
                for j in range(counts.n_samples)
            ],
            dtype=float,
        )

    factors = _rescale(factors)
    log.info(
        "%s normalization factors range %.3f-%.3f (reference sample: %s).",
        cfg.method,
        float(np.min(factors)),
        float(np.max(factors)),
        reference or "n/a",
    )
    return NormalizedMatrix(
        counts=counts,
        norm_factors=factors,
        method=cfg.method,
        reference_sample=reference,
    )
