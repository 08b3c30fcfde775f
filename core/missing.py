"""Missing-value sentinel shared by the design data and the solvers.

Missing design cells always hold :data:`UNUSED`. Code must test cells with
:func:`is_used` / :func:`is_unused` rather than comparing against the
sentinel, since the sentinel is a NaN.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

__all__ = ["UNUSED", "is_unused", "is_used", "to_value"]

UNUSED: float = float("nan")


def is_used(value: Any) -> Any:
    """Return True where ``value`` holds a finite number (array-aware)."""
    if np.ndim(value) == 0:
        try:
            return bool(np.isfinite(float(value)))
        except (TypeError, ValueError):
            return False
    return np.isfinite(np.asarray(value, dtype=np.float64))


def is_unused(value: Any) -> Any:
    """Negation of :func:`is_used`."""
    used = is_used(value)
    if isinstance(used, bool):
        return not used
    return ~used


def to_value(raw: Any) -> float:
    """Coerce a raw field value to a float, mapping missing cells to UNUSED."""
    if raw is None:
        return UNUSED
    try:
        if pd.isna(raw):
            return UNUSED
    except (TypeError, ValueError):
        return UNUSED
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return UNUSED
    return value if np.isfinite(value) else UNUSED
