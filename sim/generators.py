"""Synthetic data for regressions and mixtures of regressions.

Generates samples drawn from K linear models ``z = alpha . [1, x] + e`` and
helpers to blank cells completely at random.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

__all__ = [
    "generate_regressive_gaussian_data",
    "generate_regressive_gaussian_data_with_x_intervals",
    "mask_missing",
]


def _columns(n_regressors: int) -> list[str]:
    return [f"x{j + 1}" for j in range(n_regressors)] + ["z"]


def _alphas(
    rng: np.random.Generator,
    n_components: int,
    n_regressors: int,
    alphas: Sequence[Sequence[float]] | None,
) -> NDArray[np.float64]:
    if alphas is None:
        # Well separated intercepts, moderate slopes.
        out = rng.uniform(-1.0, 1.0, size=(n_components, n_regressors + 1))
        out[:, 0] = 10.0 * np.arange(n_components)
        return out
    out = np.asarray(alphas, dtype=np.float64)
    if out.shape != (n_components, n_regressors + 1):
        msg = f"alphas must have shape ({n_components}, {n_regressors + 1}); got {out.shape}."
        raise ValueError(msg)
    return out


def generate_regressive_gaussian_data(  # noqa: PLR0913
    n_components: int = 1,
    n_rows: int = 100,
    *,
    n_regressors: int = 1,
    alphas: Sequence[Sequence[float]] | None = None,
    variance: float = 0.01,
    seed: int | None = 42,
) -> tuple[pd.DataFrame, NDArray[np.float64], NDArray[np.int64]]:
    """Rows from ``n_components`` linear models with x uniform on [0, 1].

    Each component contributes ``n_rows`` rows. Returns the frame (columns
    ``x1..xn, z``), the true alphas ``(K, n + 1)`` and the component label
    of every row.
    """
    rng = np.random.default_rng(seed)
    A = _alphas(rng, n_components, n_regressors, alphas)
    X = rng.random((n_components * n_rows, n_regressors))
    labels = np.repeat(np.arange(n_components), n_rows)
    return _assemble(rng, X, A, labels, variance, n_regressors)


def generate_regressive_gaussian_data_with_x_intervals(  # noqa: PLR0913
    n_components: int = 1,
    n_rows: int = 100,
    *,
    n_regressors: int = 1,
    alphas: Sequence[Sequence[float]] | None = None,
    variance: float = 0.01,
    seed: int | None = 42,
) -> tuple[pd.DataFrame, NDArray[np.float64], NDArray[np.int64]]:
    """Like :func:`generate_regressive_gaussian_data` with x of component k in ((k-1)/K, k/K]."""
    rng = np.random.default_rng(seed)
    A = _alphas(rng, n_components, n_regressors, alphas)
    labels = np.repeat(np.arange(n_components), n_rows)
    lo = labels[:, None] / n_components
    # 1 - U lies in (0, 1], so each draw falls in the half-open interval.
    X = lo + (1.0 - rng.random((labels.shape[0], n_regressors))) / n_components
    return _assemble(rng, X, A, labels, variance, n_regressors)


def _assemble(  # noqa: PLR0913
    rng: np.random.Generator,
    X: NDArray[np.float64],
    A: NDArray[np.float64],
    labels: NDArray[np.int64],
    variance: float,
    n_regressors: int,
) -> tuple[pd.DataFrame, NDArray[np.float64], NDArray[np.int64]]:
    if variance < 0:
        msg = f"variance must be non-negative; got {variance}."
        raise ValueError(msg)
    design = np.column_stack([np.ones(X.shape[0]), X])
    z = np.einsum("ij,ij->i", design, A[labels]) + np.sqrt(variance) * rng.standard_normal(X.shape[0])
    frame = pd.DataFrame(np.column_stack([X, z]), columns=_columns(n_regressors))
    return frame, A, labels


def mask_missing(
    frame: pd.DataFrame,
    columns: Sequence[str],
    fraction: float = 0.1,
    *,
    seed: int | None = 42,
) -> pd.DataFrame:
    """Copy of ``frame`` with ``fraction`` of the cells of each column set to NaN (MCAR)."""
    if not (0.0 <= fraction <= 1.0):
        msg = f"fraction must lie in [0, 1]; got {fraction}."
        raise ValueError(msg)
    rng = np.random.default_rng(seed)
    out = frame.copy()
    n = len(out)
    k = int(round(fraction * n))
    for col in columns:
        rows = rng.choice(n, size=k, replace=False)
        out.loc[out.index[rows], col] = np.nan
    return out
