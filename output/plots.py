"""Plot utilities.

Visualizes fitted regressions on their completed design rows: regressor
against response with the fitted line(s), fitted against observed response,
and prediction errors.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import matplotlib.pyplot as plt
import numpy as np

from remreg.output.summary import model_parameters

if TYPE_CHECKING:
    from remreg.estimators.base import DesignData

__all__ = ["error_plot", "regressor_plot", "response_plot"]


def _stats(model: Any, stats: DesignData | None) -> DesignData:
    stats = model.statistics() if stats is None else stats
    if stats is None or len(stats) == 0:
        msg = "Model has no fitted statistics to plot. Call .fit() first."
        raise ValueError(msg)
    return stats


def regressor_plot(
    model: Any,
    j: int = 1,
    *,
    stats: DesignData | None = None,
    ax: plt.Axes | None = None,
):
    """Scatter of regressor ``j`` against the response with each component's line.

    The line of a component holds the other regressors at their means.
    """
    stats = _stats(model, stats)
    if not (1 <= j < stats.n_cols):
        msg = f"regressor index must lie in 1..{stats.n_cols - 1}; got {j}."
        raise ValueError(msg)
    if ax is None:
        _, ax = plt.subplots(figsize=(6, 4))
    xj = stats.x[:, j]
    ax.scatter(xj, stats.response, s=10, alpha=0.6, color="tab:gray", label="completed rows")
    grid = np.linspace(float(np.min(xj)), float(np.max(xj)), 50)
    base = np.mean(stats.x, axis=0)
    for k, p in enumerate(model_parameters(model)):
        rows = np.tile(base, (grid.size, 1))
        rows[:, j] = grid
        label = "fit" if len(model_parameters(model)) == 1 else f"component {k + 1}"
        ax.plot(grid, rows @ p.alpha, linewidth=1.5, label=label)
    ax.set_xlabel(stats.x_labels[j - 1])
    ax.set_ylabel(stats.z_label)
    ax.legend(loc="best", frameon=False)
    return ax


def response_plot(model: Any, *, stats: DesignData | None = None, ax: plt.Axes | None = None):
    """Fitted against observed response with the 45-degree line."""
    stats = _stats(model, stats)
    fitted = model.predict_design(stats.x)
    if ax is None:
        _, ax = plt.subplots(figsize=(5, 5))
    z = stats.response
    ax.scatter(z, fitted, s=10, alpha=0.6)
    lo = float(np.nanmin([np.nanmin(z), np.nanmin(fitted)]))
    hi = float(np.nanmax([np.nanmax(z), np.nanmax(fitted)]))
    ax.plot([lo, hi], [lo, hi], color="black", linewidth=0.8, linestyle="--")
    ax.set_xlabel(f"{stats.z_label} (observed)")
    ax.set_ylabel(f"{stats.z_label} (fitted)")
    return ax


def error_plot(model: Any, *, stats: DesignData | None = None, ax: plt.Axes | None = None):
    """Absolute prediction error per completed row."""
    stats = _stats(model, stats)
    err = np.abs(model.predict_design(stats.x) - stats.response)
    if ax is None:
        _, ax = plt.subplots(figsize=(6, 3))
    ax.plot(np.arange(err.size), err, marker=".", linewidth=0.6)
    ax.axhline(float(np.mean(err)), color="tab:red", linewidth=0.8, label="mean")
    ax.set_xlabel("row")
    ax.set_ylabel("|error|")
    ax.legend(loc="best", frameon=False)
    return ax
