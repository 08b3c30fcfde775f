# remreg/core/__init__.py
"""Core computational modules for remreg."""
from . import em, errors, linalg, missing, sample

__all__ = ["em", "errors", "linalg", "missing", "sample"]
