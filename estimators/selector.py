"""Greedy selection of the number of mixture components.

Starting from a single regression, the selector repeatedly refits a mixture
with one more component, seeded with the accepted smaller solution, and
keeps growing only while the fitness improves by more than the configured
threshold.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, Any

import numpy as np

from remreg.core.em import EMStatus, not_satisfy
from remreg.core.errors import REMError
from remreg.core.sample import as_sample
from remreg.estimators.base import BaseEstimator, REMConfig, REMResult
from remreg.estimators.mixture import MixtureREM
from remreg.estimators.rem import REM

if TYPE_CHECKING:
    from remreg.core.em import EMControl
    from remreg.estimators.base import ExchangedParameter

__all__ = ["MixtureOrderSelector"]

LOGGER = logging.getLogger(__name__)


class MixtureOrderSelector(BaseEstimator):
    """Forward search over the number of mixture components.

    Parameters
    ----------
    config : REMConfig, optional
        ``max_components`` caps the search (<= 0 means unbounded);
        ``fitness_threshold`` (default ``epsilon``) with ``ratio_mode``
        sets the minimum accepted fitness gain.

    Attributes
    ----------
    model : MixtureREM or None
        Last accepted mixture.
    fitness_history : list of float
        Fitness of every accepted mixture, in order (non-decreasing).

    Notes
    -----
    A larger mixture is rejected when any component ends with a zero
    weight, an all-zero ``alpha`` or an effective support ``coeff * N``
    below ``n + 2`` rows (a component collapsed onto the few points it
    interpolates). The fitness is the penalized log-likelihood of
    :meth:`MixtureREM.compute_fitness`. The design data is prepared once
    and shared by every candidate mixture.
    """

    def __init__(self, config: REMConfig | None = None, **overrides: Any) -> None:
        super().__init__(config, **overrides)
        self.model: MixtureREM | None = None
        self.fitness_history: list[float] = []

    def _model_info(self) -> dict[str, Any]:
        return {
            "Estimator": "MixtureOrderSelector",
            "max_components": self.config.max_components,
            "estimate_mode": self.config.estimate_mode,
        }

    def _acceptable(self, params: list[ExchangedParameter] | None, n_rows: int) -> bool:
        if not params:
            return False
        if any(p.coeff == 0.0 or p.is_null_alpha() for p in params):
            return False
        if len(params) == 1:
            return True
        min_support = params[0].n_cols + 1
        return all(p.coeff is not None and p.coeff * n_rows >= min_support for p in params)

    def fit(self, data: Any, *, control: EMControl | None = None) -> REMResult:
        control = self._begin(control)
        self.model = None
        self.fitness_history = []
        base = REM(self.config)
        try:
            design = base.prepare(as_sample(data))
        except REMError as exc:
            LOGGER.warning("MixtureOrderSelector: no model (%s)", exc)
            self._results = REMResult.failed(self._model_info(), reason=str(exc))
            return self._results

        cfg = self.config
        max_k = cfg.effective_max_components
        threshold = cfg.effective_fitness_threshold
        prior: list[ExchangedParameter] | None = None
        prev_fitness = -math.inf
        tried: list[int] = []
        while control.checkpoint():
            K = 1 if prior is None else len(prior) + 1
            if max_k is not None and K > max_k:
                break
            mixture = MixtureREM.from_design(
                design,
                base.indices,
                base.names,
                cfg,
                n_components=K,
                prior_parameters=prior,
            )
            mixture.listeners = list(self.listeners)
            result = mixture.fit_design(control=control)
            tried.append(K)
            if control.stopped:
                break
            params = result.parameter
            if not self._acceptable(params, len(design)):
                LOGGER.debug("MixtureOrderSelector: rejecting K=%d (degenerate component)", K)
                break
            fitness = mixture.fitness
            improved = prior is None or (
                fitness > prev_fitness and not_satisfy(fitness, prev_fitness, threshold, cfg.ratio_mode)
            )
            if not (math.isfinite(fitness) and improved):
                LOGGER.debug("MixtureOrderSelector: rejecting K=%d (fitness %.6g vs %.6g)", K, fitness, prev_fitness)
                break
            LOGGER.info("MixtureOrderSelector: accepted K=%d with fitness %.6g", K, fitness)
            self.model = mixture
            self.fitness_history.append(fitness)
            prior = params
            prev_fitness = fitness
            if max_k is not None and len(params) >= max_k:
                break

        if self.model is None or self.model._results is None:  # noqa: SLF001
            self._results = REMResult.failed(self._model_info(), tried=tried)
            return self._results
        inner = self.model.results
        info = self._model_info()
        info["n_components"] = self.n_components
        info["converged"] = inner.status is EMStatus.CONVERGED
        self._results = REMResult(
            parameter=inner.parameter,
            params=inner.params,
            status=inner.status,
            iterations=inner.iterations,
            n_obs=inner.n_obs,
            model_info=info,
            extra={
                **inner.extra,
                "fitness_history": np.asarray(self.fitness_history),
                "tried": tried,
            },
        )
        return self._results

    @property
    def n_components(self) -> int:
        return 0 if self.model is None else self.model.n_components

    @property
    def parameters(self) -> list[ExchangedParameter] | None:
        return None if self.model is None else self.model.parameters

    def execute(self, row: Any) -> float | None:
        """Prediction of the accepted mixture; None when there is none."""
        if self.model is None:
            return None
        return self.model.execute(row)

    def describe(self) -> str:
        return "No model" if self.model is None else self.model.describe()

    def statistics(self):
        return None if self.model is None else self.model.statistics()

    def predict_design(self, X):
        return None if self.model is None else self.model.predict_design(X)

    def regressor_names(self) -> list[str]:
        return [] if self.model is None else self.model.regressor_names()

    def response_name(self) -> str | None:
        return None if self.model is None else self.model.response_name()
