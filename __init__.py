"""remreg: Regression with missing values estimated by EM.

This package provides linear regression estimators that learn from samples
with missing regressors and responses, a mixture of such regressions and a
greedy search over the number of mixture components.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

__all__ = [
    "REM",
    "BaseEstimator",
    "EMConfig",
    "EMControl",
    "ExchangedParameter",
    "FrameSample",
    "MixtureOrderSelector",
    "MixtureREM",
    "REMConfig",
    "REMResult",
    "diagnostics",
    "error_plot",
    "modelsummary",
    "parse_expression",
    "parse_indices",
    "regressor_plot",
    "response_plot",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("remreg.estimators.base", "BaseEstimator"),
    "ExchangedParameter": ("remreg.estimators.base", "ExchangedParameter"),
    "REMConfig": ("remreg.estimators.base", "REMConfig"),
    "REMResult": ("remreg.estimators.base", "REMResult"),
    "REM": ("remreg.estimators.rem", "REM"),
    "MixtureREM": ("remreg.estimators.mixture", "MixtureREM"),
    "MixtureOrderSelector": ("remreg.estimators.selector", "MixtureOrderSelector"),
    "EMConfig": ("remreg.core.em", "EMConfig"),
    "EMControl": ("remreg.core.em", "EMControl"),
    "FrameSample": ("remreg.core.sample", "FrameSample"),
    "parse_expression": ("remreg.utils.expression", "parse_expression"),
    "parse_indices": ("remreg.utils.indices", "parse_indices"),
    "diagnostics": ("remreg.output.summary", "diagnostics"),
    "modelsummary": ("remreg.output.summary", "modelsummary"),
    "regressor_plot": ("remreg.output.plots", "regressor_plot"),
    "response_plot": ("remreg.output.plots", "response_plot"),
    "error_plot": ("remreg.output.plots", "error_plot"),
}


def __getattr__(name: str) -> Any:
    """Lazily import public estimators and utilities on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'remreg' has no attribute '{name}'")


def __dir__() -> list[str]:
    """Ensure dir() exposes lazily imported names."""
    return sorted(set(globals()) | set(__all__))
