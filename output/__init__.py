# remreg/output/__init__.py
"""Output and visualization module for fitted regressions."""
from .plots import error_plot, regressor_plot, response_plot
from .summary import coefficient_frame, diagnostics, fit_statistics, modelsummary

__all__ = [
    "coefficient_frame",
    "diagnostics",
    "error_plot",
    "fit_statistics",
    "modelsummary",
    "regressor_plot",
    "response_plot",
]
