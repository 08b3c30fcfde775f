"""Mixture of missing-data regressions with a fixed number of components.

Each component is a :class:`~remreg.estimators.rem.REM` sharing the same
design data. The E-step completes rows under every component and combines
the imputations by mixture weight; the M-step computes per-row component
probabilities from the normal density of the response and refits each
component by weighted least squares.
"""

from __future__ import annotations

import logging
import math
import warnings
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy.special import logsumexp
from scipy.stats import norm

from remreg.core.em import EMEngine, EMStatus, run_em
from remreg.core.errors import REMError
from remreg.core.missing import is_used
from remreg.core.sample import as_sample
from remreg.estimators.base import (
    BaseEstimator,
    DesignData,
    ExchangedParameter,
    REMConfig,
    REMResult,
    normal_pdf,
    parameter_series,
)
from remreg.estimators.rem import REM

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from remreg.core.em import EMControl, EMState
    from remreg.utils.indices import Indices

__all__ = ["MixtureREM"]

LOGGER = logging.getLogger(__name__)

Parameters = list[ExchangedParameter]

#: Component variances credited by the fitness never fall below this
#: fraction of the observed response variance.
FITNESS_VARIANCE_FLOOR = 1e-6


def _weights(params: Sequence[ExchangedParameter]) -> NDArray[np.float64]:
    K = len(params)
    return np.asarray([1.0 / K if p.coeff is None else float(p.coeff) for p in params])


class MixtureREM(BaseEstimator, EMEngine[Parameters, DesignData]):
    """Mixture of ``n_components`` REM regressions.

    Parameters
    ----------
    config : REMConfig, optional
        Shared settings of every component.
    n_components : int, optional
        Number of components K. Defaults to ``len(prior_parameters) + 1``
        (or 1 without prior).
    prior_parameters : sequence of ExchangedParameter, optional
        Parameters of an accepted smaller mixture; they seed the first
        components, the remaining ones are fitted on the rows the prior
        explains worst.

    Attributes
    ----------
    components : list of REM
        Component estimators (sharing ``data``).
    fitness : float
        Mean log-likelihood of the observed responses with a BIC penalty
        (NaN before fitting). See :meth:`compute_fitness`.
    """

    def __init__(
        self,
        config: REMConfig | None = None,
        *,
        n_components: int | None = None,
        prior_parameters: Sequence[ExchangedParameter] | None = None,
        **overrides: Any,
    ) -> None:
        super().__init__(config, **overrides)
        self.prior_parameters: Parameters = [p.copy() for p in (prior_parameters or [])]
        if n_components is None:
            n_components = len(self.prior_parameters) + 1 if self.prior_parameters else 1
        if n_components < 1:
            msg = f"n_components must be positive; got {n_components}."
            raise ValueError(msg)
        self.n_components = int(n_components)
        self.components: list[REM] = []
        self.indices: Indices | None = None
        self.names: list[str] = []
        self.data: DesignData | None = None
        self.fitness: float = math.nan

    @classmethod
    def from_design(  # noqa: PLR0913
        cls,
        data: DesignData,
        indices: Indices,
        names: Sequence[str],
        config: REMConfig | None = None,
        *,
        n_components: int | None = None,
        prior_parameters: Sequence[ExchangedParameter] | None = None,
    ) -> MixtureREM:
        mix = cls(config, n_components=n_components, prior_parameters=prior_parameters)
        mix._bind(data, indices, names)
        return mix

    def _bind(self, data: DesignData, indices: Indices, names: Sequence[str]) -> None:
        self.data = data
        self.indices = indices
        self.names = list(names)
        self.components = [REM.from_design(data, indices, names, self.config) for _ in range(self.n_components)]

    # -- fitting ------------------------------------------------------
    def fit(self, data: Any, *, control: EMControl | None = None) -> REMResult:
        control = self._begin(control)
        sample = as_sample(data)
        base = REM(self.config)
        try:
            design = base.prepare(sample)
        except REMError as exc:
            LOGGER.warning("MixtureREM: no model (%s)", exc)
            self._results = REMResult.failed(self._model_info(), reason=str(exc))
            return self._results
        self._bind(design, base.indices, base.names)
        return self.fit_design(control=control)

    def fit_design(self, *, control: EMControl | None = None) -> REMResult:
        """Run EM on already bound design data."""
        control = self._begin(control) if control is not None else self.control
        if self.data is None:
            self._results = REMResult.failed(self._model_info(), reason="no design data")
            return self._results
        state = run_em(self, self.config, control=control, listeners=self.listeners)
        self._results = self._make_result(state)
        return self._results

    def _model_info(self) -> dict[str, Any]:
        return {
            "Estimator": "MixtureREM",
            "n_components": self.n_components,
            "estimate_mode": self.config.estimate_mode,
        }

    def _make_result(self, state: EMState) -> REMResult:
        if not state.succeeded or self.data is None:
            self.fitness = math.nan
            return REMResult.failed(self._model_info(), status=state.status.value)
        params: Parameters = state.current
        self.fitness = self.compute_fitness(params)
        labels = self.data.x_labels
        series = pd.concat(
            [parameter_series(p, labels, prefix=f"c{k + 1}:") for k, p in enumerate(params)],
        )
        info = self._model_info()
        info["converged"] = state.status is EMStatus.CONVERGED
        return REMResult(
            parameter=params,
            params=series,
            status=state.status,
            iterations=state.iteration,
            n_obs=len(self.data),
            model_info=info,
            extra={
                "fitness": self.fitness,
                "coeffs": np.asarray([p.coeff for p in params], dtype=np.float64),
                "z_variances": np.asarray([p.z_variance for p in params], dtype=np.float64),
                "x_labels": list(labels),
                "z_label": self.data.z_label,
            },
        )

    @property
    def parameters(self) -> Parameters | None:
        if self._results is None:
            return None
        return self._results.parameter

    # -- initialization -----------------------------------------------
    def initialize(self) -> Parameters | None:
        if self.data is None or not self.components:
            return None
        data = self.data
        K = self.n_components
        complete = data.complete()
        params: Parameters = [p.copy() for p in self.prior_parameters[:K]]
        if not params:
            params = self._seed_blocks(complete, K)
            if not params:
                first = self.components[0].initialize_parameter(data)
                if first is None:
                    return None
                params = [first]
        while len(params) < K:
            new = self._seed_residual(complete, params, K)
            if new is None:
                LOGGER.debug("MixtureREM: could not seed component %d of %d", len(params) + 1, K)
                return None
            params.append(new)

        fitted_rows = complete.x if len(complete) else data.x[:, :1]
        for p in params:
            p.coeff = 1.0 / K
            if p.z_variance is None or not p.z_variance > 0.0:
                p.z_variance = 1.0
            if p.z_mean is None:
                p.z_mean = float(np.mean(fitted_rows @ p.alpha[: fitted_rows.shape[1]]))
        return params

    def _seed_blocks(self, complete: DesignData, K: int) -> Parameters:
        """K components from consecutive blocks of complete rows ordered by z."""
        if len(complete) < K:
            return []
        order = np.argsort(complete.response, kind="stable")
        out: Parameters = []
        for block in np.array_split(order, K):
            p = self.components[0].maximize(complete.subset(block), None)
            if p is None or any(p.alpha_equals(q) for q in out):
                return []
            out.append(p)
        return out

    def _seed_residual(self, complete: DesignData, params: Parameters, K: int) -> ExchangedParameter | None:
        """New component fitted on the rows lying furthest above their best component."""
        N = len(complete)
        if N == 0:
            return None
        probs = self.conditional_probabilities(complete, params)
        best = np.argmax(probs, axis=1)
        alphas = np.stack([p.alpha for p in params])
        resid = complete.response - np.einsum("ij,ij->i", complete.x, alphas[best])
        m = max(1, math.ceil(N / K))
        order = np.argsort(-resid, kind="stable")
        for rows in (order[:m], order[::-1][:m]):
            p = self.components[0].maximize(complete.subset(np.sort(rows)), None)
            if p is not None and not any(p.alpha_equals(q) for q in params):
                return p
        return None

    # -- EM hooks -----------------------------------------------------
    def expectation(self, parameter: Parameters) -> DesignData | None:
        if self.data is None:
            return None
        data = self.data
        N = len(data)
        x_acc = np.zeros_like(data.x)
        z_acc = np.zeros(N)
        w_acc = np.zeros(N)
        for comp, p, w in zip(self.components, parameter, _weights(parameter)):
            x_k, z_k, valid_k = comp.complete_rows(p, data)
            if w <= 0.0 or not np.any(valid_k):
                continue
            x_acc[valid_k] += w * x_k[valid_k]
            z_acc[valid_k] += w * z_k[valid_k]
            w_acc[valid_k] += w
        valid = w_acc > 0.0
        if not np.any(valid):
            return None
        x = x_acc[valid] / w_acc[valid, None]
        z = z_acc[valid] / w_acc[valid]
        # Observed cells keep their values exactly.
        x_obs = data.x[valid]
        z_obs = data.response[valid]
        used = is_used(x_obs)
        x[used] = x_obs[used]
        z_used = is_used(z_obs)
        z[z_used] = z_obs[z_used]
        return DesignData(
            x=x,
            z=np.column_stack([np.ones(x.shape[0]), z]),
            rows=data.rows[valid],
            x_labels=list(data.x_labels),
            z_label=data.z_label,
        )

    def maximization(self, statistics: DesignData, current: Parameters | None) -> Parameters | None:
        if current is None:
            return None
        probs = self.conditional_probabilities(statistics, current)
        out: Parameters = []
        for k, comp in enumerate(self.components):
            p = comp.maximize(statistics, current[k], weights=probs[:, k])
            if p is None:
                return None
            out.append(p)
        return out

    def terminated(self, estimated: Parameters, current: Parameters, previous: Parameters | None) -> bool:
        if len(estimated) != len(current):
            return False
        eps, ratio = self.config.epsilon, self.config.ratio_mode
        for k, (est, cur) in enumerate(zip(estimated, current)):
            prev = previous[k] if previous is not None and k < len(previous) else None
            if not est.terminated(cur, prev, eps, ratio):
                return False
        return True

    # -- probabilities and fitness -----------------------------------
    def densities(self, stats: DesignData, params: Sequence[ExchangedParameter]) -> NDArray[np.float64]:
        """``(N, K)`` normal densities of the response under each component."""
        return np.column_stack([np.atleast_1d(p.z_likelihood(stats.x, stats.response)) for p in params])

    def conditional_probabilities(self, stats: DesignData, params: Sequence[ExchangedParameter]) -> NDArray[np.float64]:
        """Posterior component probabilities per row; uniform where all densities vanish."""
        K = len(params)
        weighted = self.densities(stats, params) * _weights(params)[None, :]
        denom = weighted.sum(axis=1)
        probs = np.full_like(weighted, 1.0 / K)
        ok = denom > 0.0
        probs[ok] = weighted[ok] / denom[ok, None]
        return probs

    def variance_floor(self) -> float:
        """Smallest component variance credited by :meth:`compute_fitness`."""
        eps = float(np.finfo(np.float64).eps)
        if self.data is None:
            return eps
        z = self.data.response[is_used(self.data.response)]
        spread = float(np.var(z)) if z.size else 0.0
        return max(FITNESS_VARIANCE_FLOOR * spread, eps)

    def n_free_parameters(self, n_components: int | None = None) -> int:
        """Coefficients, variance and weight per component, weights summing to one."""
        K = self.n_components if n_components is None else n_components
        n_cols = 1 if self.data is None else self.data.n_cols
        return K * (n_cols + 2) - 1

    def log_likelihood(self, params: Sequence[ExchangedParameter]) -> tuple[float, int]:
        """Mixture log-likelihood of the observed responses and the number of rows used.

        Regressors are taken from the completed rows; component variances
        are floored at :meth:`variance_floor`.
        """
        if self.data is None:
            return math.nan, 0
        completed = self.expectation(list(params))
        if completed is None:
            return math.nan, 0
        observed = np.isin(completed.rows, self.data.rows[is_used(self.data.response)])
        x = completed.x[observed]
        z = completed.response[observed]
        if z.size == 0:
            return math.nan, 0
        floor = self.variance_floor()
        logs = np.column_stack(
            [
                norm.logpdf(z, loc=x @ p.alpha, scale=math.sqrt(max(1.0 if p.z_variance is None else p.z_variance, floor)))
                for p in params
            ],
        )
        return float(np.sum(logsumexp(logs, axis=1, b=_weights(params)))), int(z.size)

    def compute_fitness(self, params: Sequence[ExchangedParameter]) -> float:
        """Penalized mean log-likelihood ``(logL - p/2 * log N) / N``.

        ``p`` is :meth:`n_free_parameters` for ``len(params)`` components
        and ``N`` the number of rows with an observed response.
        """
        loglik, n = self.log_likelihood(params)
        if n == 0 or not math.isfinite(loglik):
            return math.nan
        penalty = 0.5 * self.n_free_parameters(len(params)) * math.log(n)
        return (loglik - penalty) / n

    # -- prediction ---------------------------------------------------
    def _row_weights(self, x: NDArray[np.float64], params: Parameters) -> NDArray[np.float64]:
        w = _weights(params).copy()
        if self.config.estimate_mode == "gaussian":
            for k, p in enumerate(params):
                if p.x_mean is not None and p.x_variance is not None:
                    w[k] *= float(np.prod(normal_pdf(x[1:], p.x_mean[1:], p.x_variance[1:])))
        return w

    def execute(self, row: Any) -> float | None:
        """Mixture-weighted prediction; None when regressors are missing."""
        if self._results is None:
            warnings.warn("MixtureREM has not been fitted; execute() returns None.", stacklevel=2)
            return None
        params = self.parameters
        if not params or not self.components:
            return None
        x = self.components[0].design_row(row)
        if x is None:
            return None
        preds = np.asarray([p.mean_z(x) for p in params])
        w = self._row_weights(x, params)
        total = float(np.sum(w))
        out = float(np.mean(preds)) if total <= 0.0 else float(w @ preds / total)
        return out if np.isfinite(out) else None

    def execute_by_max_coeff(self, row: Any) -> float | None:
        """Prediction of the heaviest component only."""
        params = self.parameters
        if not params or not self.components:
            return None
        x = self.components[0].design_row(row)
        if x is None:
            return None
        k = int(np.argmax(self._row_weights(x, params)))
        return params[k].mean_z(x)

    def component_of(self, row: Any) -> int | None:
        """Index of the most probable component for ``row`` (None if undetermined)."""
        params = self.parameters
        if not params or not self.components:
            return None
        comp = self.components[0]
        x = comp.design_row(row)
        if x is None:
            return None
        w = self._row_weights(x, params)
        z = comp.extract_response_value(row)
        if is_used(z):
            w = w * np.asarray([normal_pdf(z, p.mean_z(x), 1.0 if p.z_variance is None else p.z_variance) for p in params])
        if not np.any(w > 0.0):
            return None
        return int(np.argmax(w))

    def extract_clusters(self, data: Any) -> pd.Series:
        """Component label per sample row (-1 where undetermined)."""
        sample = as_sample(data)
        labels: list[int] = []
        sample.reset()
        while (profile := sample.next()) is not None:
            k = self.component_of(profile)
            labels.append(-1 if k is None else k)
        sample.reset()
        return pd.Series(labels, name="component", dtype=np.int64)

    def describe(self) -> str:
        params = self.parameters
        if not params or self.data is None:
            return "No model"
        lines = [p.describe(self.data.x_labels, self.data.z_label) for p in params]
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.describe()

    def statistics(self) -> DesignData | None:
        """Completed design rows under the learned parameters."""
        params = self.parameters
        if not params:
            return None
        return self.expectation(params)

    def predict_design(self, X: NDArray[np.float64]) -> NDArray[np.float64] | None:
        """Mixture-weighted predictions for design rows ``[1, x1..xn]``."""
        params = self.parameters
        if not params:
            return None
        X = np.asarray(X, dtype=np.float64)
        preds = np.column_stack([X @ p.alpha for p in params])
        w = np.stack([self._row_weights(x, params) for x in X]) if len(X) else np.empty((0, len(params)))
        total = w.sum(axis=1)
        out = preds.mean(axis=1)
        ok = total > 0.0
        out[ok] = np.einsum("ij,ij->i", w[ok], preds[ok]) / total[ok]
        return out

    def regressor_names(self) -> list[str]:
        return [] if self.data is None else list(self.data.x_labels)

    def response_name(self) -> str | None:
        return None if self.data is None else self.data.z_label
