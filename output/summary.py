"""Summary tables and fit diagnostics.

Renders learned regressions (single or mixture) as text tables and computes
in-sample fit statistics on the completed design rows.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, cast

import numpy as np
import pandas as pd
from tabulate import tabulate

from remreg.core.missing import is_used

if TYPE_CHECKING:
    from collections.abc import Sequence

    from remreg.estimators.base import DesignData, ExchangedParameter

__all__ = ["coefficient_frame", "diagnostics", "fit_statistics", "model_parameters", "modelsummary"]


def model_parameters(model: Any) -> list[ExchangedParameter]:
    params = getattr(model, "parameters", None)
    if params is None:
        single = getattr(model, "parameter", None)
        params = None if single is None else [single]
    return list(params or [])


def coefficient_frame(model: Any) -> pd.DataFrame:
    """One column per component with alphas, betas and mixture scalars."""
    params = model_parameters(model)
    if not params:
        return pd.DataFrame()
    x_labels = model.regressor_names()
    if len(x_labels) != params[0].n_cols - 1:
        x_labels = [f"x{j}" for j in range(1, params[0].n_cols)]
    index = ["alpha:const"] + [f"alpha:{lab}" for lab in x_labels]
    index += [f"beta:{lab}:{part}" for lab in x_labels for part in ("intercept", "slope")]
    index += ["coeff", "z_mean", "z_variance"]
    cols = {}
    for k, p in enumerate(params):
        values = list(p.alpha) + list(p.betas[1:].reshape(-1))
        values += [np.nan if v is None else v for v in (p.coeff, p.z_mean, p.z_variance)]
        cols[f"c{k + 1}" if len(params) > 1 else "REM"] = values
    return pd.DataFrame(cols, index=index)


def fit_statistics(model: Any, stats: DesignData | None = None) -> dict[str, float]:
    """In-sample fit of ``model`` on completed design rows.

    Returns the mean squared error (``variance``), the correlation between
    fitted and observed responses (``r``) and the mean/variance of the
    signed prediction error.
    """
    stats = model.statistics() if stats is None else stats
    nan = float("nan")
    out = {"n": 0, "variance": nan, "r": nan, "error_mean": nan, "error_variance": nan}
    if stats is None or len(stats) == 0:
        return out
    fitted = model.predict_design(stats.x)
    if fitted is None:
        return out
    z = stats.response
    ok = is_used(z) & is_used(fitted)
    if not np.any(ok):
        return out
    err = fitted[ok] - z[ok]
    out["n"] = int(ok.sum())
    out["variance"] = float(np.mean(err**2))
    out["error_mean"] = float(np.mean(err))
    out["error_variance"] = float(np.var(err))
    if out["n"] > 1 and np.std(fitted[ok]) > 0 and np.std(z[ok]) > 0:
        out["r"] = float(np.corrcoef(fitted[ok], z[ok])[0, 1])
    return out


def modelsummary(
    models: Sequence[Any],
    model_names: Sequence[str] | None = None,
    *,
    digits: int = 4,
) -> str:
    """Text table of alpha coefficients for several fitted models."""
    if model_names is None:
        model_names = [f"({i + 1})" for i in range(len(models))]
    frames = []
    for name, m in zip(model_names, models):
        frame = coefficient_frame(m)
        if frame.empty:
            frame = pd.DataFrame({"": []})
        frame.columns = [f"{name} {c}" if len(frame.columns) > 1 else str(name) for c in frame.columns]
        frames.append(frame)
    table = pd.concat(frames, axis=1) if frames else pd.DataFrame()
    table = table.loc[[i for i in table.index if str(i).startswith(("alpha:", "coeff", "z_variance"))]]
    rows = [[idx, *(("" if pd.isna(v) else f"{v:.{digits}f}") for v in row)] for idx, row in table.iterrows()]
    headers = ["", *table.columns]
    return cast("str", tabulate(rows, headers=headers, stralign="center"))


def diagnostics(
    models: Sequence[Any],
    model_names: Sequence[str] | None = None,
    *,
    digits: int = 4,
) -> str:
    """Text table of :func:`fit_statistics` for several fitted models."""
    if model_names is None:
        model_names = [f"({i + 1})" for i in range(len(models))]
    keys = [("n", "N"), ("variance", "MSE"), ("r", "R"), ("error_mean", "Error mean"), ("error_variance", "Error variance")]
    stats = [fit_statistics(m) for m in models]
    rows = []
    for key, label in keys:
        row = [label]
        for s in stats:
            v = s[key]
            row.append(str(v) if key == "n" else ("" if not np.isfinite(v) else f"{v:.{digits}f}"))
        rows.append(row)
    return cast("str", tabulate(rows, headers=["", *model_names], stralign="center"))
