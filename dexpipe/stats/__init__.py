"""Statistical utilities for dexpipe."""

from dexpipe.stats.ebayes import ebayes, fit_f_dist, squeeze_var, treat, trigamma_inverse
from dexpipe.stats.enrichment import (
    camera,
    camera_from_fit,
    over_representation,
    over_representation_by_direction,
    rank_sum_with_correlation,
)
from dexpipe.stats.linear_model import lm_fit
from dexpipe.stats.multitest import adjust_pvalues, bh_fdr
from dexpipe.stats.voom import sample_quality_weights, voom, voom_with_quality_weights

__all__ = [
    "lm_fit",
    "voom",
    "voom_with_quality_weights",
    "sample_quality_weights",
    "fit_f_dist",
    "squeeze_var",
    "trigamma_inverse",
    "ebayes",
    "treat",
    "bh_fdr",
    "adjust_pvalues",
    "over_representation",
    "over_representation_by_direction",
    "camera",
    "camera_from_fit",
    "rank_sum_with_correlation",
]
