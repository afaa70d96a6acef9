from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from dexpipe.core.types import CountMatrix, SampleMetadata


def simulate_counts(
    seed: int = 0,
    n_genes: int = 400,
    n_per_group: int = 3,
    n_de: int = 20,
    fold: float = 4.0,
) -> tuple[CountMatrix, SampleMetadata]:
    """Gamma-Poisson counts for a control/treated comparison.

    The first `n_de` genes are `fold` times higher in the treated group.
    """
    rng = np.random.default_rng(seed)
    base = rng.lognormal(mean=4.0, sigma=1.5, size=n_genes)
    n_samples = 2 * n_per_group
    depth = rng.uniform(0.6, 1.6, size=n_samples)
    mu = base[:, None] * depth[None, :]
    mu[:n_de, n_per_group:] *= fold
    lam = rng.gamma(shape=20.0, scale=mu / 20.0)
    counts = rng.poisson(lam)

    samples = [f"ctrl{i + 1}" for i in range(n_per_group)] + [
        f"trt{i + 1}" for i in range(n_per_group)
    ]
    genes = [f"ENSG{i:05d}" for i in range(n_genes)]
    frame = pd.DataFrame(
        {
            "group": ["control"] * n_per_group + ["treated"] * n_per_group,
            "batch": ["b1", "b2"] * n_per_group,
        },
        index=samples,
    )
    return CountMatrix.from_array(counts, genes, samples), SampleMetadata(frame, "group")


@pytest.fixture
def simulated():
    return simulate_counts()


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def make_counts():
    return simulate_counts
