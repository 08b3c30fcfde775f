"""Estimator exports with lazy loading.

Public estimator classes and result containers. Uses lazy imports to avoid
circular dependencies.
"""
from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "REM",
    "BaseEstimator",
    "ExchangedParameter",
    "MixtureOrderSelector",
    "MixtureREM",
    "REMConfig",
    "REMResult",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "BaseEstimator": ("remreg.estimators.base", "BaseEstimator"),
    "ExchangedParameter": ("remreg.estimators.base", "ExchangedParameter"),
    "REMConfig": ("remreg.estimators.base", "REMConfig"),
    "REMResult": ("remreg.estimators.base", "REMResult"),
    "REM": ("remreg.estimators.rem", "REM"),
    "MixtureREM": ("remreg.estimators.mixture", "MixtureREM"),
    "MixtureOrderSelector": ("remreg.estimators.selector", "MixtureOrderSelector"),
}


def __getattr__(name: str) -> Any:
    """Lazily import estimator classes on first access."""
    if name in _LAZY_IMPORTS:
        module_name, attr_name = _LAZY_IMPORTS[name]
        module = import_module(module_name)
        attr = getattr(module, attr_name)
        globals()[name] = attr
        return attr
    raise AttributeError(f"module 'remreg.estimators' has no attribute '{name}'")


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
