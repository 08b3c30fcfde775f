"""Synthetic samples for regressions and mixtures of regressions."""
from .generators import (
    generate_regressive_gaussian_data,
    generate_regressive_gaussian_data_with_x_intervals,
    mask_missing,
)

__all__ = [
    "generate_regressive_gaussian_data",
    "generate_regressive_gaussian_data_with_x_intervals",
    "mask_missing",
]
