"""Base classes, configuration and parameter containers.

This module defines the estimator configuration, the parameter exchanged
between EM steps, the in-memory design data and the standardized fit result.
"""

# remreg/estimators/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd
from scipy import stats

from remreg.core.em import EMConfig, EMControl, EMStatus, not_satisfy
from remreg.core.missing import is_used

if TYPE_CHECKING:  # import-only typing
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from remreg.core.em import Listener

__all__ = [
    "ESTIMATE_MODES",
    "BaseEstimator",
    "DesignData",
    "ExchangedParameter",
    "REMConfig",
    "REMResult",
    "RowStatistic",
    "normal_pdf",
    "parameter_series",
]

ESTIMATE_MODES = ("reversible", "gaussian")


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class REMConfig(EMConfig):
    """Settings of the regression estimators.

    Attributes
    ----------
    indices
        Index specification (see :mod:`remreg.utils.indices`). ``None``
        uses every field but the last as regressors and the last as the
        response.
    loop_balance
        Refine each imputed row by alternating z-from-x and x-from-z
        updates until both are stable.
    estimate_mode
        ``"reversible"`` imputes through the regressor-on-response lines;
        ``"gaussian"`` imputes regressors by their (normal) means.
    max_components
        Cap on mixture components for the order selector; values <= 0 mean
        unbounded.
    fitness_threshold
        Minimum fitness gain for accepting a larger mixture; ``None`` reuses
        ``epsilon`` (with ``ratio_mode``).
    """

    indices: str | None = None
    loop_balance: bool = False
    estimate_mode: str = "reversible"
    max_components: int = 10
    fitness_threshold: float | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.estimate_mode not in ESTIMATE_MODES:
            msg = f"estimate_mode must be one of {ESTIMATE_MODES}; got {self.estimate_mode!r}."
            raise ValueError(msg)
        if self.fitness_threshold is not None and not (self.fitness_threshold >= 0.0):
            msg = f"fitness_threshold must be non-negative; got {self.fitness_threshold!r}."
            raise ValueError(msg)

    @property
    def effective_max_components(self) -> int | None:
        return int(self.max_components) if self.max_components > 0 else None

    @property
    def effective_fitness_threshold(self) -> float:
        return self.epsilon if self.fitness_threshold is None else float(self.fitness_threshold)


# ---------------------------------------------------------------------
# Densities
# ---------------------------------------------------------------------
def normal_pdf(value, mean, variance):
    """Normal density; a zero variance gives 1 where ``value == mean`` else 0."""
    v = np.asarray(value, dtype=np.float64)
    m = np.asarray(mean, dtype=np.float64)
    var = np.asarray(variance, dtype=np.float64)
    degenerate = np.where(v == m, 1.0, 0.0)
    safe = np.where(var > 0.0, var, 1.0)
    out = np.where(var > 0.0, stats.norm.pdf(v, loc=m, scale=np.sqrt(safe)), degenerate)
    return float(out) if out.ndim == 0 else out


# ---------------------------------------------------------------------
# Parameter exchanged between EM steps
# ---------------------------------------------------------------------
_OPTIONAL_FIELDS = ("coeff", "z_mean", "z_variance", "x_mean", "x_variance")


def _not_satisfied(new, old, threshold: float, ratio_mode: bool) -> NDArray[np.bool_]:
    diff = np.abs(new - old)
    if ratio_mode:
        return diff > threshold * np.abs(old)
    return diff > threshold


def _converged(new, cur, prev, threshold: float, ratio_mode: bool) -> bool:
    new = np.asarray(new, dtype=np.float64)
    cur = np.asarray(cur, dtype=np.float64)
    if new.shape != cur.shape:
        return False
    bad = _not_satisfied(new, cur, threshold, ratio_mode)
    if not np.any(bad):
        return True
    if prev is None:
        return False
    prev = np.asarray(prev, dtype=np.float64)
    if prev.shape != new.shape:
        return False
    # Entries oscillating back to the previous estimate count as converged.
    return not np.any(bad & _not_satisfied(new, prev, threshold, ratio_mode))


@dataclass
class ExchangedParameter:
    """Regression parameter of one (component) model.

    ``alpha`` maps the design row ``[1, x1..xn]`` to the response; row ``j``
    of ``betas`` holds ``[intercept, slope]`` of ``xj`` regressed on the
    response. Row 0 belongs to the constant column and is ``[1, 0]``.
    """

    alpha: NDArray[np.float64]
    betas: NDArray[np.float64]
    coeff: float | None = None
    z_mean: float | None = None
    z_variance: float | None = None
    x_mean: NDArray[np.float64] | None = None
    x_variance: NDArray[np.float64] | None = None

    def __post_init__(self) -> None:
        self.alpha = np.asarray(self.alpha, dtype=np.float64).reshape(-1)
        self.betas = np.asarray(self.betas, dtype=np.float64).reshape(-1, 2)
        if self.alpha.shape[0] != self.betas.shape[0]:
            msg = f"alpha has {self.alpha.shape[0]} entries but betas has {self.betas.shape[0]} rows."
            raise ValueError(msg)
        if self.x_mean is not None:
            self.x_mean = np.asarray(self.x_mean, dtype=np.float64).reshape(-1)
        if self.x_variance is not None:
            self.x_variance = np.asarray(self.x_variance, dtype=np.float64).reshape(-1)

    @classmethod
    def zeros(cls, n_cols: int) -> ExchangedParameter:
        betas = np.zeros((n_cols, 2))
        betas[0] = (1.0, 0.0)
        return cls(alpha=np.zeros(n_cols), betas=betas)

    @property
    def n_cols(self) -> int:
        return int(self.alpha.shape[0])

    def copy(self) -> ExchangedParameter:
        return replace(
            self,
            alpha=self.alpha.copy(),
            betas=self.betas.copy(),
            x_mean=None if self.x_mean is None else self.x_mean.copy(),
            x_variance=None if self.x_variance is None else self.x_variance.copy(),
        )

    def is_null_alpha(self) -> bool:
        return bool(np.all(self.alpha == 0.0))

    def alpha_equals(self, other: ExchangedParameter) -> bool:
        return bool(np.array_equal(self.alpha, other.alpha))

    def mean_z(self, x: Sequence[float] | NDArray[np.float64]) -> float:
        """Response mean ``alpha . x`` for a design row ``x = [1, x1..xn]``."""
        return float(self.alpha @ np.asarray(x, dtype=np.float64))

    def mean_x(self, j: int, z: float) -> float:
        """Regressor ``j`` implied by response ``z`` through ``betas[j]``."""
        return float(self.betas[j, 0] + self.betas[j, 1] * z)

    def terminated(
        self,
        current: ExchangedParameter,
        previous: ExchangedParameter | None,
        threshold: float,
        ratio_mode: bool,
    ) -> bool:
        """Return True when ``self`` (the new estimate) converged on ``current``.

        Every coefficient must lie within ``threshold`` of ``current`` (or of
        ``previous``). Optional fields must be present on both sides or absent
        on both.
        """
        if not _converged(self.alpha, current.alpha, None if previous is None else previous.alpha, threshold, ratio_mode):
            return False
        if not _converged(self.betas, current.betas, None if previous is None else previous.betas, threshold, ratio_mode):
            return False
        for name in _OPTIONAL_FIELDS:
            new = getattr(self, name)
            cur = getattr(current, name)
            if (new is None) != (cur is None):
                return False
            if new is None:
                continue
            prev = None if previous is None else getattr(previous, name)
            if not _converged(new, cur, prev, threshold, ratio_mode):
                return False
        return True

    def z_likelihood(self, x, z):
        """Normal density of ``z`` around ``alpha . x`` (rows of ``x``)."""
        var = 1.0 if self.z_variance is None else self.z_variance
        return normal_pdf(z, np.asarray(x, dtype=np.float64) @ self.alpha, var)

    def describe(
        self,
        x_labels: Sequence[str] | None = None,
        z_label: str = "z",
        iteration: int | None = None,
    ) -> str:
        """Render the regression as ``z = a0 + a1*(x1) + ...`` plus scalars."""
        labels = list(x_labels) if x_labels is not None else [f"x{j}" for j in range(1, self.n_cols)]
        terms = [f"{self.alpha[0]:.6g}"]
        for j in range(1, self.n_cols):
            a = self.alpha[j]
            sign = "-" if a < 0 else "+"
            terms.append(f"{sign} {abs(a):.6g}*({labels[j - 1]})")
        text = f"{z_label} = " + " ".join(terms)
        extras = []
        if iteration is not None:
            extras.append(f"t={iteration}")
        if self.coeff is not None:
            extras.append(f"coeff={self.coeff:.6g}")
        if self.z_mean is not None:
            extras.append(f"z-mean={self.z_mean:.6g}")
        if self.z_variance is not None:
            extras.append(f"z-variance={self.z_variance:.6g}")
        if extras:
            text += ": " + ", ".join(extras)
        return text

    def __str__(self) -> str:
        return self.describe()


# ---------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------
@dataclass
class RowStatistic:
    """One completed design row ``x = [1, x1..xn]`` with its response."""

    x: NDArray[np.float64]
    z: float

    @property
    def valid(self) -> bool:
        return bool(is_used(self.z)) and bool(np.all(is_used(self.x)))

    def mean(self, other: RowStatistic) -> RowStatistic:
        return RowStatistic(x=(self.x + other.x) / 2.0, z=(self.z + other.z) / 2.0)


@dataclass
class DesignData:
    """Design rows cached in memory for the whole fit.

    ``x`` is ``(N, n + 1)`` with a leading column of ones, ``z`` is
    ``(N, 2)`` as ``[1, z]``. Missing cells hold ``UNUSED``. ``rows`` maps
    each design row back to its position in the sample.
    """

    x: NDArray[np.float64]
    z: NDArray[np.float64]
    rows: NDArray[np.int64] | None = None
    x_labels: list[str] = field(default_factory=list)
    z_label: str = "z"

    def __post_init__(self) -> None:
        self.x = np.asarray(self.x, dtype=np.float64)
        if self.x.ndim != 2:
            msg = f"x must be two-dimensional; got shape {self.x.shape}."
            raise ValueError(msg)
        self.z = np.asarray(self.z, dtype=np.float64).reshape(-1, 2)
        if self.x.shape[0] != self.z.shape[0]:
            msg = f"x has {self.x.shape[0]} rows but z has {self.z.shape[0]}."
            raise ValueError(msg)
        if self.rows is None:
            self.rows = np.arange(self.x.shape[0])
        if not self.x_labels:
            self.x_labels = [f"x{j}" for j in range(1, self.x.shape[1])]

    def __len__(self) -> int:
        return int(self.x.shape[0])

    @property
    def n_cols(self) -> int:
        return int(self.x.shape[1])

    @property
    def response(self) -> NDArray[np.float64]:
        return self.z[:, 1]

    def complete_mask(self) -> NDArray[np.bool_]:
        return np.all(is_used(self.x), axis=1) & is_used(self.z[:, 1])

    def subset(self, mask) -> DesignData:
        return DesignData(
            x=self.x[mask],
            z=self.z[mask],
            rows=self.rows[mask],
            x_labels=list(self.x_labels),
            z_label=self.z_label,
        )

    def complete(self) -> DesignData:
        return self.subset(self.complete_mask())

    def to_frame(self) -> pd.DataFrame:
        data = {lab: self.x[:, j + 1] for j, lab in enumerate(self.x_labels)}
        data[self.z_label] = self.z[:, 1]
        return pd.DataFrame(data, index=pd.Index(self.rows, name="row"))


# ---------------------------------------------------------------------
# Results container
# ---------------------------------------------------------------------
def parameter_series(
    parameter: ExchangedParameter,
    x_labels: Sequence[str],
    prefix: str = "",
) -> pd.Series:
    """Alpha coefficients as a Series labelled ``const, x1, ...``."""
    index = [f"{prefix}const"] + [f"{prefix}{lab}" for lab in x_labels]
    return pd.Series(parameter.alpha, index=index, name="alpha")


@dataclass
class REMResult:
    """Container for a fitted regression (or mixture of regressions).

    ``parameter`` is ``None`` when the fit produced no model; ``params``
    is then empty.
    """

    parameter: ExchangedParameter | list[ExchangedParameter] | None
    params: pd.Series
    status: EMStatus = EMStatus.INIT
    iterations: int = 0
    n_obs: int | None = None
    model_info: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    """Dictionary for estimator-specific diagnostics and intermediate results."""

    @property
    def fitted(self) -> bool:
        return self.parameter is not None

    @classmethod
    def failed(cls, model_info: dict[str, Any] | None = None, **extra: Any) -> REMResult:
        return cls(
            parameter=None,
            params=pd.Series(dtype=np.float64, name="alpha"),
            status=EMStatus.FAILED,
            model_info=dict(model_info or {}),
            extra=dict(extra),
        )

    def __repr__(self) -> str:  # pragma: no cover - convenience only
        head = ", ".join(f"{k}={v}" for k, v in self.model_info.items())
        return f"REMResult(k={len(self.params)}, n={self.n_obs}, status={self.status.value}, {head})"


# ---------------------------------------------------------------------
# Base interface
# ---------------------------------------------------------------------
class BaseEstimator(ABC):
    """Abstract base class for all `remreg` estimators.

    Principles
    ----------
    1) All linear algebra goes through `core.linalg`.
    2) Iteration goes through `core.em.run_em`; no iteration state lives on
       the estimator.
    3) A failed fit is "no model": `fit` returns a failed `REMResult` and
       `execute` returns None, never an exception from the numerical core.
    """

    def __init__(self, config: REMConfig | None = None, **overrides: Any) -> None:
        cfg = config or REMConfig()
        if overrides:
            cfg = replace(cfg, **overrides)
        self.config: REMConfig = cfg
        self.control = EMControl()
        self.listeners: list[Listener] = []
        self._results: REMResult | None = None

    @abstractmethod
    def fit(self, data: Any, *, control: EMControl | None = None) -> REMResult:
        """Fit the estimator and return REMResult (abstract)."""
        ...

    def learn(self, data: Any, *, control: EMControl | None = None):
        """Fit and return the learned parameter, or None when no model."""
        return self.fit(data, control=control).parameter

    # -- control -------------------------------------------------------
    def _begin(self, control: EMControl | None) -> EMControl:
        self.control = control if control is not None else EMControl()
        return self.control

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def pause(self) -> None:
        self.control.pause()

    def resume(self) -> None:
        self.control.resume()

    def stop(self) -> None:
        self.control.stop()

    # -- convenience accessors ----------------------------------------
    @property
    def results(self) -> REMResult:
        if self._results is None:
            msg = "Model has not been fitted yet. Call .fit() first."
            raise RuntimeError(msg)
        return self._results

    @property
    def params(self) -> pd.Series:
        return self.results.params

    @property
    def n_obs(self) -> int | None:
        return self.results.n_obs

    @property
    def fitted(self) -> bool:
        return self._results is not None and self._results.fitted

    def not_satisfy(self, estimated: float, current: float) -> bool:
        return not_satisfy(estimated, current, self.config.epsilon, self.config.ratio_mode)
