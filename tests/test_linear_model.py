from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from dexpipe.core.types import SampleMetadata
from dexpipe.errors import InputShapeError, RankDeficientDesignError
from dexpipe.metadata import Design, build_design
from dexpipe.stats.ebayes import ebayes
from dexpipe.stats.linear_model import hat_values, lm_fit


def _two_groups(n_per_group: int = 5) -> tuple[SampleMetadata, Design]:
    samples = [f"A{i}" for i in range(n_per_group)] + [f"B{i}" for i in range(n_per_group)]
    meta = SampleMetadata(
        pd.DataFrame({"group": ["A"] * n_per_group + ["B"] * n_per_group}, index=samples),
        "group",
    )
    return meta, build_design(meta, reference={"group": "B"})


def _expression(rng, n_genes: int, samples: list[str], sd: float = 0.1) -> pd.DataFrame:
    values = 2.0 + sd * rng.standard_normal((n_genes, len(samples)))
    return pd.DataFrame(values, index=[f"g{i}" for i in range(n_genes)], columns=samples)


def test_single_shifted_gene_is_detected(rng):
    meta, design = _two_groups()
    expr = _expression(rng, 200, list(meta.samples))
    expr.iloc[0, :5] += 3.0

    result = ebayes(lm_fit(expr, design))
    assert design.coef_name == "groupA"
    assert abs(result.table.loc["g0", "logFC"] - 3.0) < 0.2
    assert result.table.loc["g0", "adj.P.Val"] < 0.05
    assert result.top_table().index[0] == "g0"
    assert result.summary()["up"] >= 1


def test_noiseless_fit_recovers_coefficients():
    meta, design = _two_groups(3)
    x = design.values()
    beta = np.array([[1.0, 2.0], [-0.5, 0.25], [3.0, 0.0]])
    expr = pd.DataFrame(beta @ x.T, index=["g0", "g1", "g2"], columns=meta.samples)
    fit = lm_fit(expr, design)
    assert np.allclose(fit.coefficients, beta)
    assert np.allclose(fit.sigma, 0.0, atol=1e-7)
    assert fit.df_residual.tolist() == [4.0, 4.0, 4.0]
    assert np.allclose(fit.coef, beta[:, 1])


def test_weighted_fit_matches_row_scaling(rng):
    meta, design = _two_groups(4)
    expr = _expression(rng, 5, list(meta.samples), sd=1.0)
    w = rng.uniform(0.5, 2.0, size=expr.shape)
    fit = lm_fit(expr, design, weights=w)
    x = design.values()
    for g in range(expr.shape[0]):
        sw = np.sqrt(w[g])
        coef, *_ = np.linalg.lstsq(x * sw[:, None], expr.iloc[g].to_numpy() * sw, rcond=None)
        assert np.allclose(fit.coefficients[g], coef)


def test_parallel_chunks_match_serial(rng):
    meta, design = _two_groups()
    expr = _expression(rng, 130, list(meta.samples))
    serial = lm_fit(expr, design)
    threaded = lm_fit(expr, design, n_jobs=2, chunk_size=40)
    assert np.allclose(serial.coefficients, threaded.coefficients)
    assert np.allclose(serial.sigma, threaded.sigma)
    assert list(threaded.genes) == list(expr.index)


def test_design_rows_are_realigned(rng):
    meta, design = _two_groups()
    expr = _expression(rng, 20, list(meta.samples))
    shuffled = expr[list(reversed(expr.columns))]
    a = lm_fit(expr, design)
    b = lm_fit(shuffled, design)
    assert np.allclose(a.coefficients, b.coefficients)

    with pytest.raises(InputShapeError, match="differ"):
        lm_fit(expr.rename(columns={"A0": "Z0"}), design)


def test_zero_weights_make_gene_rank_deficient(rng):
    meta, design = _two_groups()
    expr = _expression(rng, 10, list(meta.samples))
    w = np.ones(expr.shape)
    w[3, :5] = 0.0
    with pytest.raises(RankDeficientDesignError) as excinfo:
        lm_fit(expr, design, weights=w)
    assert excinfo.value.gene == "g3"
    assert excinfo.value.columns == ("groupA",)


def test_bad_weights_rejected(rng):
    meta, design = _two_groups()
    expr = _expression(rng, 4, list(meta.samples))
    with pytest.raises(InputShapeError):
        lm_fit(expr, design, weights=np.ones(3))
    with pytest.raises(ValueError, match="non-negative"):
        lm_fit(expr, design, weights=-np.ones(expr.shape))


def test_hat_values_sum_to_rank():
    _, design = _two_groups(3)
    h = hat_values(design.values())
    assert np.isclose(h.sum(), 2.0)
    hw = hat_values(design.values(), np.ones((2, 6)))
    assert np.allclose(hw.sum(axis=1), 2.0)
