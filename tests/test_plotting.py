import os

os.environ.setdefault("MPLCONFIGDIR", "/tmp/mpl-test")

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from dexpipe.config import PipelineConfig
from dexpipe.pipeline.run import analyze
from dexpipe.plotting import plot_md, plot_mean_variance, plot_volcano


def test_figure_factories_return_figures(simulated):
    counts, meta = simulated
    cfg = PipelineConfig.from_dict({"model": {"sample_weights": False}})
    result = analyze(counts, meta, cfg)

    fig = plot_mean_variance(result.voom)
    assert isinstance(fig, Figure)
    ax = fig.axes[0]
    assert len(ax.lines) == 1
    assert ax.get_xlabel().startswith("log2")
    plt.close(fig)

    fig = plot_md(result.fit, alpha=0.05)
    assert isinstance(fig, Figure)
    assert "grouptreated" in fig.axes[0].get_ylabel()
    plt.close(fig)

    fig = plot_volcano(result.fit, alpha=0.05, lfc=1.0)
    ax = fig.axes[0]
    assert len(ax.collections) == 1
    assert len(ax.lines) == 2
    plt.close(fig)
