# remreg/utils/__init__.py
"""Index specification and expression parsing."""
from .expression import Expression, parse_expression
from .indices import Indices, extract_value, parse_indices

__all__ = [
    "Expression",
    "Indices",
    "extract_value",
    "parse_expression",
    "parse_indices",
]
