"""Error taxonomy of the regression core.

All errors derive from ``ValueError`` so callers catching ``ValueError``
keep working. Estimators recover from them locally: a failed fit yields no
model instead of an exception.
"""

from __future__ import annotations

__all__ = [
    "InsufficientDataError",
    "NumericInvalidError",
    "ParseError",
    "REMError",
    "SingularSystemError",
]


class REMError(ValueError):
    """Base class for recoverable errors of the regression core."""


class ParseError(REMError):
    """Malformed index specification or expression."""

    def __init__(self, message: str, *, text: str | None = None, position: int | None = None) -> None:
        if text is not None and position is not None:
            message = f"{message} (at position {position} in {text!r})"
        super().__init__(message)
        self.text = text
        self.position = position


class InsufficientDataError(REMError):
    """Fewer than two usable columns, or no usable rows."""


class SingularSystemError(REMError):
    """Every tier of the robust solver failed on a linear system."""


class NumericInvalidError(REMError):
    """A system or its solution holds NaN/Inf values."""
