"""Diagnostic figure factories.

Each function returns a `matplotlib.figure.Figure`; saving is left to the
caller.
"""

from __future__ import annotations

from dataclasses import dataclass

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

from dexpipe.core.types import FitResult
from dexpipe.stats.voom import VoomResult


@dataclass(frozen=True)
class PlotStyle:
    fig_small: tuple[float, float] = (6.0, 5.0)
    fs_title: int = 13
    fs_label: int = 12
    marker_size: float = 6.0
    alpha_bg: float = 0.35
    alpha_fg: float = 0.90
    line_width: float = 1.8
    color_up: str = "#b2182b"
    color_down: str = "#2166ac"
    color_ns: str = "#9e9e9e"
    color_trend: str = "#d95f02"


DEFAULT_STYLE = PlotStyle()


def _sig_colors(fit: FitResult, alpha: float, lfc: float, style: PlotStyle) -> np.ndarray:
    decision = fit.decide(alpha=alpha, lfc=lfc).to_numpy()
    colors = np.full(decision.shape, style.color_ns, dtype=object)
    colors[decision > 0] = style.color_up
    colors[decision < 0] = style.color_down
    return colors


def plot_mean_variance(voom_result: VoomResult, *, style: PlotStyle = DEFAULT_STYLE):
    """sqrt residual SD against mean log-count with the fitted lowess trend."""
    fig, ax = plt.subplots(figsize=style.fig_small, constrained_layout=True)
    ax.scatter(
        voom_result.mean_log_count,
        voom_result.sqrt_sd,
        s=style.marker_size,
        alpha=style.alpha_bg,
        color=style.color_ns,
        rasterized=True,
    )
    ax.plot(
        voom_result.trend_x,
        voom_result.trend_y,
        color=style.color_trend,
        linewidth=style.line_width,
    )
    ax.set_xlabel("log2(count + 0.5)", fontsize=style.fs_label)
    ax.set_ylabel("sqrt(standard deviation)", fontsize=style.fs_label)
    ax.set_title("Mean-variance trend", fontsize=style.fs_title)
    return fig


def plot_md(
    fit: FitResult,
    alpha: float = 0.05,
    lfc: float = 0.0,
    *,
    style: PlotStyle = DEFAULT_STYLE,
):
    """Log fold-change against average log-expression."""
    table = fit.table
    fig, ax = plt.subplots(figsize=style.fig_small, constrained_layout=True)
    ax.scatter(
        table["AveExpr"],
        table["logFC"],
        c=list(_sig_colors(fit, alpha, lfc, style)),
        s=style.marker_size,
        alpha=style.alpha_fg,
        rasterized=True,
    )
    ax.axhline(0.0, color="black", linewidth=0.8)
    if fit.lfc_threshold > 0:
        for y in (-fit.lfc_threshold, fit.lfc_threshold):
            ax.axhline(y, color="black", linewidth=0.8, linestyle="--")
    ax.set_xlabel("Average log2-expression", fontsize=style.fs_label)
    ax.set_ylabel(f"log2 fold-change ({fit.coef_name})", fontsize=style.fs_label)
    ax.set_title("MD plot", fontsize=style.fs_title)
    return fig


def plot_volcano(
    fit: FitResult,
    alpha: float = 0.05,
    lfc: float = 0.0,
    *,
    style: PlotStyle = DEFAULT_STYLE,
):
    table = fit.table
    p = np.clip(table["P.Value"].to_numpy(dtype=float), 1e-300, 1.0)
    fig, ax = plt.subplots(figsize=style.fig_small, constrained_layout=True)
    ax.scatter(
        table["logFC"],
        -np.log10(p),
        c=list(_sig_colors(fit, alpha, lfc, style)),
        s=style.marker_size,
        alpha=style.alpha_fg,
        rasterized=True,
    )
    if lfc > 0:
        for x in (-lfc, lfc):
            ax.axvline(x, color="black", linewidth=0.8, linestyle="--")
    ax.set_xlabel(f"log2 fold-change ({fit.coef_name})", fontsize=style.fs_label)
    ax.set_ylabel("-log10 p-value", fontsize=style.fs_label)
    ax.set_title("Volcano plot", fontsize=style.fs_title)
    return fig
