"""Regressor/response index specification.

An index specification selects which record fields (or expressions over
fields) act as regressors and which one acts as the response. Two surface
forms are accepted::

    "1, 2, #x3^2, log(#y)"          flat list, last entry is the response
    "{1, 2}, {#x3}, {log(#y)}"      brace groups, last group is the response

Integer entries are 1-based field positions. Any other entry is an
arithmetic expression (see :mod:`remreg.utils.expression`). Both output lists
start with the sentinel ``-1`` standing for the constant 1 of the design
row ``[1, x1, ..., xn]``.
"""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from remreg.core.errors import ParseError
from remreg.core.missing import UNUSED, to_value
from remreg.utils.expression import FIELD_MARKER, Expression, parse_expression

if TYPE_CHECKING:
    from collections.abc import Sequence

__all__ = [
    "CONSTANT_INDEX",
    "INDICES_TEMPLATE",
    "IndexEntry",
    "Indices",
    "extract_value",
    "parse_indices",
    "split_entries",
    "split_indices",
]

CONSTANT_INDEX = -1
INDICES_TEMPLATE = "{1, #x2, -1, (#x3 + #x4)^2, log(#y)}"

IndexEntry = Union[int, Expression]

_GROUP_SEP_PAT = re.compile(r"\}\s*,\s*\{")
_INT_PAT = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class Indices:
    """Parsed regressor/response lists.

    Attributes
    ----------
    x
        Regressor entries; ``x[0]`` is :data:`CONSTANT_INDEX`.
    z
        ``[CONSTANT_INDEX, response_entry]``.
    groups
        The raw parsed groups (all elements); only the first element of each
        group feeds ``x``/``z``.
    """

    x: list[IndexEntry]
    z: list[IndexEntry]
    groups: list[list[IndexEntry]] = field(default_factory=list)

    @property
    def n_regressors(self) -> int:
        return len(self.x) - 1

    @property
    def response(self) -> IndexEntry:
        return self.z[1]

    def with_regressors(self, keep: Sequence[int]) -> Indices:
        """Return a copy keeping the constant plus regressor positions ``keep`` (1-based in ``x``)."""
        x = [self.x[0]] + [self.x[j] for j in keep if j >= 1]
        return Indices(x=x, z=list(self.z), groups=self.groups)

    def label(self, entry: IndexEntry, names: Sequence[str]) -> str:
        if isinstance(entry, Expression):
            return str(entry)
        if entry == CONSTANT_INDEX:
            return "1"
        return str(names[entry])

    def x_labels(self, names: Sequence[str]) -> list[str]:
        return [self.label(e, names) for e in self.x[1:]]

    def z_label(self, names: Sequence[str]) -> str:
        return self.label(self.response, names)


def split_entries(text: str) -> list[str]:
    """Split ``text`` on commas outside parentheses."""
    out: list[str] = []
    depth = 0
    start = 0
    for i, ch in enumerate(text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            out.append(text[start:i].strip())
            start = i + 1
    out.append(text[start:].strip())
    return [s for s in out if s]


def split_indices(text: str | None) -> list[list[str]]:
    """Split a specification into groups of raw entry strings.

    A flat list yields one single-element group per entry. A lone brace
    group such as ``"{1, 2, 3}"`` is read the same way, with a warning.
    Empty text and the documentation template yield no groups.
    """
    if text is None:
        return []
    text = text.strip()
    if not text or text == INDICES_TEMPLATE:
        return []
    segments = [s.replace("{", "").replace("}", "").strip() for s in _GROUP_SEP_PAT.split(text)]
    segments = [s for s in segments if s]
    if len(segments) <= 1:
        entries = split_entries(segments[0]) if segments else []
        if "{" in text and len(entries) > 1:
            warnings.warn(
                "A single index group is read as a flat list: one entry per group.",
                stacklevel=2,
            )
        return [[e] for e in entries]
    return [split_entries(s) for s in segments]


def _parse_entry(raw: str, names: Sequence[str]) -> IndexEntry:
    n_fields = len(names)
    if FIELD_MARKER not in raw and _INT_PAT.match(raw):
        pos = int(raw)
        if pos < 1 or pos > n_fields:
            msg = f"Field position {pos} out of range 1..{n_fields}"
            raise ParseError(msg, text=raw, position=0)
        return pos - 1
    expr = parse_expression(raw)
    unknown = sorted(expr.fields() - set(names))
    if unknown:
        msg = f"Expression references unknown field(s) {unknown}"
        raise ParseError(msg, text=raw, position=0)
    return expr


def parse_indices(text: str | None, names: Sequence[str]) -> Indices:
    """Parse an index specification against the field ``names`` of a sample.

    Fewer than two entries (or no specification) selects the default
    layout: every field but the last is a regressor, the last is the
    response.
    """
    names = [str(n) for n in names]
    groups_raw = split_indices(text)
    groups: list[list[IndexEntry]] = []
    for g in groups_raw:
        parsed = [_parse_entry(e, names) for e in g]
        if parsed:
            groups.append(parsed)

    if len(groups) < 2:
        if len(names) < 2:
            msg = f"At least two fields are required; got {len(names)}."
            raise ParseError(msg)
        groups = [[j] for j in range(len(names))]

    if any(len(g) > 1 for g in groups):
        warnings.warn(
            "Index groups with several elements: only the first element of each group is used.",
            stacklevel=2,
        )
    x: list[IndexEntry] = [CONSTANT_INDEX] + [g[0] for g in groups[:-1]]
    z: list[IndexEntry] = [CONSTANT_INDEX, groups[-1][0]]
    return Indices(x=x, z=z, groups=groups)


def extract_value(record: Any, entry: IndexEntry) -> float:
    """Value of ``entry`` for ``record`` (a Profile, mapping or sequence).

    Missing fields, and expressions over missing fields, give ``UNUSED``.
    """
    if isinstance(entry, Expression):
        mapping = record.as_mapping() if hasattr(record, "as_mapping") else record
        return entry.evaluate(mapping)
    if entry == CONSTANT_INDEX:
        return 1.0
    if hasattr(record, "value"):
        return record.value(entry)
    try:
        if hasattr(record, "iloc"):
            return to_value(record.iloc[entry])
        return to_value(record[entry])
    except (IndexError, KeyError):
        return UNUSED
