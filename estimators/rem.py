"""Regression with missing values estimated by EM (REM).

The model couples two sets of linear relations over the design row
``[1, x1..xn]`` and the response ``z``::

    z  = alpha . [1, x1..xn]
    xj = betaj0 + betaj1 * z        (j = 1..n)

The E-step completes every row under the current relations; the M-step
re-estimates ``alpha`` and ``betas`` by least squares on the completed rows.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from remreg.core import linalg as la
from remreg.core.em import EMEngine, EMStatus, run_em
from remreg.core.errors import InsufficientDataError, REMError
from remreg.core.missing import UNUSED, is_used
from remreg.core.sample import Profile, as_sample
from remreg.estimators.base import (
    BaseEstimator,
    DesignData,
    ExchangedParameter,
    REMConfig,
    REMResult,
    RowStatistic,
    parameter_series,
)
from remreg.utils.indices import Indices, extract_value, parse_indices

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from remreg.core.em import EMControl, EMState
    from remreg.core.sample import Sample

__all__ = ["REM", "scan_design"]

LOGGER = logging.getLogger(__name__)


def _scan_observed(sample: Sample, indices: Indices) -> tuple[list[int], bool]:
    """First pass: regressor positions observed at least once, and whether z is."""
    seen = [False] * len(indices.x)
    z_seen = False
    sample.reset()
    while (profile := sample.next()) is not None:
        if not z_seen:
            z_seen = bool(is_used(extract_value(profile, indices.response)))
        for j in range(1, len(indices.x)):
            if not seen[j]:
                seen[j] = bool(is_used(extract_value(profile, indices.x[j])))
    sample.reset()
    return [j for j in range(1, len(indices.x)) if seen[j]], z_seen


def scan_design(sample: Sample, indices: Indices, names: Sequence[str]) -> DesignData:
    """Second pass: extract ``[1, x]`` / ``[1, z]`` rows through ``indices``.

    Rows without any observed regressor or response are skipped.
    """
    x_rows: list[list[float]] = []
    z_vals: list[float] = []
    rows: list[int] = []
    sample.reset()
    pos = 0
    while (profile := sample.next()) is not None:
        xr = [1.0] + [extract_value(profile, e) for e in indices.x[1:]]
        zv = extract_value(profile, indices.response)
        if is_used(zv) or any(is_used(v) for v in xr[1:]):
            x_rows.append(xr)
            z_vals.append(zv)
            rows.append(pos)
        pos += 1
    sample.reset()
    n_cols = len(indices.x)
    x = np.asarray(x_rows, dtype=np.float64).reshape(len(x_rows), n_cols)
    z = np.column_stack([np.ones(len(z_vals)), np.asarray(z_vals, dtype=np.float64)])
    return DesignData(
        x=x,
        z=z.reshape(-1, 2),
        rows=np.asarray(rows, dtype=np.int64),
        x_labels=indices.x_labels(names),
        z_label=indices.z_label(names),
    )


class REM(BaseEstimator, EMEngine[ExchangedParameter, DesignData]):
    """Linear regression with missing regressors and responses, fitted by EM.

    Parameters
    ----------
    config : REMConfig, optional
        Convergence, index and imputation settings. Keyword overrides are
        applied on top (e.g. ``REM(epsilon=1e-4, indices="1, 2, 3")``).

    Attributes
    ----------
    indices : Indices or None
        Parsed regressor/response indices of the last fit.
    names : list of str
        Field names of the fitted sample.
    data : DesignData or None
        Design rows cached for the last fit (missing cells hold ``UNUSED``).
    parameter : ExchangedParameter or None
        Learned parameter, or None when no model could be fitted.

    Examples
    --------
    >>> import numpy as np
    >>> import pandas as pd
    >>> from remreg.estimators.rem import REM
    >>> rng = np.random.default_rng(0)
    >>> df = pd.DataFrame(rng.random((100, 2)), columns=["x1", "x2"])
    >>> df["z"] = 1.0 + 2.0 * df["x1"] - df["x2"] + 0.01 * rng.standard_normal(100)
    >>> df.loc[::10, "x1"] = np.nan
    >>> model = REM(epsilon=1e-4)
    >>> result = model.fit(df)
    >>> model.execute({"x1": 0.5, "x2": 0.5, "z": None})
    """

    def __init__(self, config: REMConfig | None = None, **overrides: Any) -> None:
        super().__init__(config, **overrides)
        self.indices: Indices | None = None
        self.names: list[str] = []
        self.data: DesignData | None = None

    @classmethod
    def from_design(
        cls,
        data: DesignData,
        indices: Indices,
        names: Sequence[str],
        config: REMConfig | None = None,
    ) -> REM:
        """Component sharing already prepared design data (no sample scan)."""
        rem = cls(config)
        rem.data = data
        rem.indices = indices
        rem.names = list(names)
        return rem

    # -- preparation ---------------------------------------------------
    def prepare(self, sample: Sample) -> DesignData:
        """Parse indices and build the design data from ``sample``.

        Raises ParseError for a malformed index specification and
        InsufficientDataError when fewer than two usable columns (or no rows)
        remain.
        """
        names = list(sample.names)
        if len(names) < 2:
            msg = f"At least two fields are required; got {len(names)}."
            raise InsufficientDataError(msg)
        indices = parse_indices(self.config.indices, names)

        keep, z_seen = _scan_observed(sample, indices)
        if not z_seen:
            msg = "The response is never observed."
            raise InsufficientDataError(msg)
        if not keep:
            msg = "No regressor is ever observed; fewer than two usable columns."
            raise InsufficientDataError(msg)
        if len(keep) < indices.n_regressors:
            dropped = [indices.label(indices.x[j], names) for j in range(1, len(indices.x)) if j not in keep]
            LOGGER.debug("REM: dropping never-observed regressor(s) %s", dropped)
        indices = indices.with_regressors(keep)

        data = scan_design(sample, indices, names)
        if len(data) == 0:
            msg = "No row holds an observed value."
            raise InsufficientDataError(msg)

        self.indices = indices
        self.names = names
        self.data = data
        return data

    # -- fitting ------------------------------------------------------
    def fit(self, data: Any, *, control: EMControl | None = None) -> REMResult:
        """Prepare the design data from ``data`` and run EM.

        Never raises for data problems: a failed fit returns a result whose
        ``parameter`` is None.
        """
        control = self._begin(control)
        sample = as_sample(data)
        try:
            self.prepare(sample)
        except REMError as exc:
            LOGGER.warning("REM: no model (%s)", exc)
            self.data = None
            self._results = REMResult.failed(self._model_info(), reason=str(exc))
            return self._results
        state = run_em(self, self.config, control=control, listeners=self.listeners)
        self._results = self._make_result(state)
        return self._results

    def _model_info(self) -> dict[str, Any]:
        return {
            "Estimator": "REM",
            "estimate_mode": self.config.estimate_mode,
            "loop_balance": self.config.loop_balance,
        }

    def _make_result(self, state: EMState) -> REMResult:
        if not state.succeeded or self.data is None:
            return REMResult.failed(self._model_info(), status=state.status.value)
        param: ExchangedParameter = state.current
        info = self._model_info()
        info["converged"] = state.status is EMStatus.CONVERGED
        return REMResult(
            parameter=param,
            params=parameter_series(param, self.data.x_labels),
            status=state.status,
            iterations=state.iteration,
            n_obs=len(self.data),
            model_info=info,
            extra={
                "betas": pd.DataFrame(
                    param.betas[1:],
                    index=self.data.x_labels,
                    columns=["intercept", "slope"],
                ),
                "z_variance": param.z_variance,
                "x_labels": list(self.data.x_labels),
                "z_label": self.data.z_label,
            },
        )

    @property
    def parameter(self) -> ExchangedParameter | None:
        if self._results is None:
            return None
        return self._results.parameter

    # -- EM hooks -----------------------------------------------------
    def initialize(self) -> ExchangedParameter | None:
        if self.data is None:
            return None
        return self.initialize_parameter(self.data)

    def expectation(self, parameter: ExchangedParameter) -> DesignData | None:
        if self.data is None:
            return None
        x, z, valid = self.complete_rows(parameter, self.data)
        if not np.any(valid):
            LOGGER.debug("REM: no row could be completed")
            return None
        n_drop = int(np.sum(~valid))
        if n_drop:
            LOGGER.debug("REM: dropped %d row(s) from this iteration", n_drop)
        return DesignData(
            x=x[valid],
            z=np.column_stack([np.ones(int(valid.sum())), z[valid]]),
            rows=self.data.rows[valid],
            x_labels=list(self.data.x_labels),
            z_label=self.data.z_label,
        )

    def maximization(
        self,
        statistics: DesignData,
        current: ExchangedParameter | None,
    ) -> ExchangedParameter | None:
        return self.maximize(statistics, current)

    def terminated(
        self,
        estimated: ExchangedParameter,
        current: ExchangedParameter,
        previous: ExchangedParameter | None,
    ) -> bool:
        return estimated.terminated(current, previous, self.config.epsilon, self.config.ratio_mode)

    # -- initialization -----------------------------------------------
    def initialize_parameter(self, data: DesignData) -> ExchangedParameter | None:
        """Fit on fully observed rows; else a constant model on observed means."""
        complete = data.complete()
        if len(complete) > 0:
            param = self.maximize(complete, None)
            if param is not None:
                return param
        z = data.response[is_used(data.response)]
        if z.size == 0:
            return None
        n_cols = data.n_cols
        alpha = np.zeros(n_cols)
        alpha[0] = float(np.mean(z))
        betas = np.zeros((n_cols, 2))
        betas[0] = (1.0, 0.0)
        x_mean = np.ones(n_cols)
        x_var = np.zeros(n_cols)
        for j in range(1, n_cols):
            col = data.x[:, j]
            col = col[is_used(col)]
            if col.size:
                betas[j, 0] = x_mean[j] = float(np.mean(col))
                x_var[j] = float(np.var(col))
            else:
                x_mean[j] = 0.0
        gaussian = self.config.estimate_mode == "gaussian"
        LOGGER.debug("REM: no usable complete rows; starting from the constant model")
        return ExchangedParameter(
            alpha=alpha,
            betas=betas,
            z_variance=float(np.var(z)),
            x_mean=x_mean if gaussian else None,
            x_variance=x_var if gaussian else None,
        )

    # -- expectation --------------------------------------------------
    def complete_rows(
        self,
        parameter: ExchangedParameter,
        data: DesignData | None = None,
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], NDArray[np.bool_]]:
        """Row-aligned E-step.

        Returns completed ``x``, completed ``z`` and a mask of rows that
        could be completed. Fully observed rows pass through unchanged.
        """
        data = self.data if data is None else data
        x = data.x.copy()
        z = data.response.copy()
        valid = data.complete_mask()
        for i in np.flatnonzero(~valid):
            stat = self.estimate_row(data.x[i], float(data.z[i, 1]), parameter)
            if stat is not None and stat.valid:
                x[i] = stat.x
                z[i] = stat.z
                valid[i] = True
        return x, z, valid

    def estimate_row(self, x: NDArray[np.float64], z: float, parameter: ExchangedParameter) -> RowStatistic | None:
        """Complete one row under ``parameter``; None when it cannot be done."""
        x = np.asarray(x, dtype=np.float64)
        missing = ~is_used(x)
        if self.config.estimate_mode == "gaussian":
            return self._estimate_gaussian(x, z, missing, parameter)

        if is_used(z):
            if not missing.any():
                return RowStatistic(x=x.copy(), z=z)
            stat = RowStatistic(x=self._x_from_z(x, missing, z, parameter), z=z)
            return stat if stat.valid else None

        forward = self._estimate_forward(x, missing, parameter)
        inverse = self._estimate_inverse(x, missing, parameter)
        if self.config.loop_balance:
            forward = None if forward is None else self._balance(forward, missing, parameter, inverse=False)
            inverse = None if inverse is None else self._balance(inverse, missing, parameter, inverse=True)
        forward = forward if forward is not None and forward.valid else None
        inverse = inverse if inverse is not None and inverse.valid else None
        # Averaging the two estimates is a bias-reduction heuristic, not a derived E-step.
        if forward is not None and inverse is not None:
            return forward.mean(inverse)
        return forward if forward is not None else inverse

    @staticmethod
    def _x_from_z(x, missing, z: float, parameter: ExchangedParameter) -> NDArray[np.float64]:
        out = x.copy()
        out[missing] = parameter.betas[missing, 0] + parameter.betas[missing, 1] * z
        return out

    def _estimate_forward(self, x, missing, parameter: ExchangedParameter) -> RowStatistic | None:
        """Solve ``z = (a + b) / (1 - c)`` with missing xj expressed through betas."""
        alpha, betas = parameter.alpha, parameter.betas
        observed = ~missing
        b = float(alpha[observed] @ x[observed])
        a = float(alpha[missing] @ betas[missing, 0])
        c = float(alpha[missing] @ betas[missing, 1])
        if c == 1.0:
            return None
        z = (a + b) / (1.0 - c)
        return RowStatistic(x=self._x_from_z(x, missing, z, parameter), z=z)

    def _estimate_inverse(self, x, missing, parameter: ExchangedParameter) -> RowStatistic | None:
        """Solve the missing regressors jointly, then ``z = alpha . x``."""
        alpha, betas = parameter.alpha, parameter.betas
        observed = ~missing
        b = float(alpha[observed] @ x[observed])
        out = x.copy()
        U = np.flatnonzero(missing)
        if U.size:
            A = np.outer(betas[U, 1], alpha[U]) - np.eye(U.size)
            y = -betas[U, 0] - betas[U, 1] * b
            sol = la.solve(A, y)
            if sol is None:
                return None
            out[U] = sol
        return RowStatistic(x=out, z=float(alpha @ out))

    def _balance(
        self,
        stat: RowStatistic,
        missing,
        parameter: ExchangedParameter,
        *,
        inverse: bool,
    ) -> RowStatistic:
        """Alternate z-from-x and x-from-z until both are stable."""
        x, z = stat.x, stat.z
        cfg = self.config
        for _ in range(cfg.effective_max_iteration):
            if inverse:
                x_next = self._x_from_z(x, missing, z, parameter)
                z_next = float(parameter.alpha @ x_next)
            else:
                z_next = float(parameter.alpha @ x)
                x_next = self._x_from_z(x, missing, z_next, parameter)
            stable = not cfg.not_satisfy(z_next, z) and not any(
                cfg.not_satisfy(a, b) for a, b in zip(x_next, x)
            )
            x, z = x_next, z_next
            if stable or not np.isfinite(z):
                break
        return RowStatistic(x=x, z=z)

    def _estimate_gaussian(self, x, z: float, missing, parameter: ExchangedParameter) -> RowStatistic | None:
        """Impute regressors by their normal means, then z by ``alpha . x``."""
        out = x.copy()
        if missing.any():
            if parameter.x_mean is None:
                return None
            out[missing] = parameter.x_mean[missing]
        z_out = z if is_used(z) else float(parameter.alpha @ out)
        return RowStatistic(x=out, z=z_out)

    # -- maximization -------------------------------------------------
    def maximize(
        self,
        stats: DesignData,
        current: ExchangedParameter | None,
        weights: NDArray[np.float64] | None = None,
    ) -> ExchangedParameter | None:
        """Least-squares re-estimation on completed rows.

        With ``weights`` (per-row component probabilities) ``alpha`` is a
        weighted fit and the mixture scalars ``coeff``, ``z_mean`` and
        ``z_variance`` are weighted; ``betas`` stay unweighted.
        """
        N = len(stats)
        if N == 0:
            return None
        X = stats.x
        z = stats.response
        n_cols = X.shape[1]
        w = None if weights is None else np.asarray(weights, dtype=np.float64).reshape(-1)
        w_sum = float(N) if w is None else float(np.sum(w))

        alpha = la.solve_normal_eq(X, z, weights=w)
        if alpha is None:
            if current is not None:
                alpha = current.alpha.copy()
            else:
                alpha = np.zeros(n_cols)
                alpha[0] = float(np.average(z, weights=w)) if w is not None and w_sum > 0 else float(np.mean(z))
            LOGGER.debug("REM: alpha solve failed; falling back")

        betas = np.zeros((n_cols, 2))
        betas[0] = (1.0, 0.0)
        Z = stats.z
        for j in range(1, n_cols):
            beta = la.solve_normal_eq(Z, X[:, j])
            if beta is None:
                beta = current.betas[j].copy() if current is not None else np.array([float(np.mean(X[:, j])), 0.0])
                LOGGER.debug("REM: beta[%d] solve failed; falling back", j)
            betas[j] = beta

        fitted = X @ alpha
        resid2 = (z - fitted) ** 2
        param = ExchangedParameter(alpha=alpha, betas=betas)
        if w is None:
            param.z_variance = float(np.mean(resid2))
        else:
            param.coeff = w_sum / N
            if w_sum > 0:
                param.z_mean = float(np.sum(w * fitted) / w_sum)
                param.z_variance = float(np.sum(w * resid2) / w_sum)
            else:
                param.z_mean = current.z_mean if current is not None and current.z_mean is not None else float(np.mean(fitted))
                param.z_variance = (
                    current.z_variance if current is not None and current.z_variance is not None else float(np.mean(resid2))
                )

        if self.config.estimate_mode == "gaussian":
            if w is None or w_sum <= 0:
                param.x_mean = np.mean(X, axis=0)
                param.x_variance = np.var(X, axis=0)
            else:
                mean = (w @ X) / w_sum
                param.x_mean = mean
                param.x_variance = (w @ (X - mean) ** 2) / w_sum
        return param

    # -- prediction ---------------------------------------------------
    def _profile(self, row: Any) -> Profile | None:
        if isinstance(row, Profile):
            return row
        if isinstance(row, pd.Series):
            return Profile([str(k) for k in row.index], list(row.to_numpy(dtype=object)))
        if isinstance(row, Mapping):
            return Profile.from_mapping({str(k): v for k, v in row.items()})
        if isinstance(row, (Sequence, np.ndarray)) and len(row) == len(self.names):
            return Profile(self.names, list(row))
        return None

    def design_row(self, row: Any) -> NDArray[np.float64] | None:
        """``[1, x1..xn]`` for ``row``; None if any regressor is missing.

        ``row`` may be a Profile, mapping, Series, a full record in field
        order, or just the ``n`` regressor values.
        """
        if self.indices is None:
            return None
        n = self.indices.n_regressors
        if isinstance(row, (Sequence, np.ndarray)) and not isinstance(row, (str, Mapping)) and len(row) == n and len(row) != len(self.names):
            values = [extract_value(list(row), j) for j in range(n)]
        else:
            profile = self._profile(row)
            if profile is None:
                return None
            values = [extract_value(profile, e) for e in self.indices.x[1:]]
        x = np.asarray([1.0, *values], dtype=np.float64)
        if not np.all(is_used(x)):
            return None
        return x

    def execute(self, row: Any) -> float | None:
        """Predict the response of ``row``; None when regressors are missing."""
        if self._results is None:
            warnings.warn("REM has not been fitted; execute() returns None.", stacklevel=2)
            return None
        param = self.parameter
        if param is None:
            return None
        x = self.design_row(row)
        if x is None:
            return None
        out = param.mean_z(x)
        return out if np.isfinite(out) else None

    def predict(self, data: Any) -> pd.Series:
        """Vectorized :meth:`execute` over a sample; NaN where no result."""
        sample = as_sample(data)
        out: list[float] = []
        sample.reset()
        while (profile := sample.next()) is not None:
            v = self.execute(profile)
            out.append(UNUSED if v is None else v)
        sample.reset()
        return pd.Series(out, name="prediction", dtype=np.float64)

    # -- supplementary operations ------------------------------------
    def extract_regressor_value(self, row: Any, j: int) -> float:
        """Raw value of regressor ``j`` (1-based in the design row) for ``row``."""
        profile = self._profile(row)
        if profile is None or self.indices is None or not (0 <= j < len(self.indices.x)):
            return UNUSED
        return extract_value(profile, self.indices.x[j])

    def extract_response_value(self, row: Any) -> float:
        profile = self._profile(row)
        if profile is None or self.indices is None:
            return UNUSED
        return extract_value(profile, self.indices.response)

    def regressor_names(self) -> list[str]:
        return [] if self.data is None else list(self.data.x_labels)

    def response_name(self) -> str | None:
        return None if self.data is None else self.data.z_label

    def impute(self, data: Any = None) -> pd.DataFrame | None:
        """Design frame with missing cells filled by the learned model.

        Rows that cannot be completed keep NaN cells.
        """
        param = self.parameter
        if param is None or self.indices is None:
            return None
        design = self.data if data is None else scan_design(as_sample(data), self.indices, self.names)
        x, z, _ = self.complete_rows(param, design)
        filled = DesignData(
            x=x,
            z=np.column_stack([np.ones(len(z)), z]),
            rows=design.rows,
            x_labels=list(design.x_labels),
            z_label=design.z_label,
        )
        return filled.to_frame()

    def describe(self) -> str:
        param = self.parameter
        if param is None or self.data is None:
            return "No model"
        return param.describe(self.data.x_labels, self.data.z_label, iteration=self.results.iterations)

    def __str__(self) -> str:
        return self.describe()

    def statistics(self) -> DesignData | None:
        """Completed design rows under the learned parameter."""
        param = self.parameter
        if param is None:
            return None
        return self.expectation(param)

    def predict_design(self, X: NDArray[np.float64]) -> NDArray[np.float64] | None:
        """Predictions for design rows ``[1, x1..xn]``."""
        param = self.parameter
        if param is None:
            return None
        return np.asarray(X, dtype=np.float64) @ param.alpha
