"""Sample and profile abstractions.

A *sample* is a restartable forward-only cursor over *profiles* (records of
named fields). The estimators read a sample exactly twice while preparing
their design data and never again afterwards.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np
import pandas as pd

from remreg.core.missing import UNUSED, is_used, to_value

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

__all__ = ["FrameSample", "Profile", "Sample", "as_sample"]


class Profile:
    """One record of a sample: field names and raw values."""

    __slots__ = ("_index", "names", "values")

    def __init__(self, names: Sequence[str], values: Sequence[Any]) -> None:
        if len(names) != len(values):
            msg = f"Profile has {len(values)} values for {len(names)} names."
            raise ValueError(msg)
        self.names = tuple(str(n) for n in names)
        self.values = tuple(values)
        self._index = {n: i for i, n in enumerate(self.names)}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> Profile:
        return cls(list(mapping.keys()), list(mapping.values()))

    def __len__(self) -> int:
        return len(self.values)

    def value(self, i: int) -> float:
        """Numeric value of field ``i``; ``UNUSED`` when missing."""
        if i < 0 or i >= len(self.values):
            return UNUSED
        return to_value(self.values[i])

    def value_by_name(self, name: str) -> float:
        i = self._index.get(str(name))
        return UNUSED if i is None else self.value(i)

    def is_missing(self, i: int) -> bool:
        return not is_used(self.value(i))

    def as_mapping(self) -> dict[str, Any]:
        return dict(zip(self.names, self.values))

    def __repr__(self) -> str:
        body = ", ".join(f"{n}={v!r}" for n, v in zip(self.names, self.values))
        return f"Profile({body})"


@runtime_checkable
class Sample(Protocol):
    """Forward-only, restartable cursor over profiles."""

    @property
    def names(self) -> list[str]: ...

    def next(self) -> Profile | None: ...

    def pick(self) -> Profile | None: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


class FrameSample:
    """:class:`Sample` backed by a :class:`pandas.DataFrame`.

    NaN/None/NA cells are missing. Non-numeric columns are kept as-is and
    read as missing by the numeric accessors.
    """

    def __init__(self, frame: pd.DataFrame) -> None:
        if not isinstance(frame, pd.DataFrame):
            msg = "FrameSample requires a pandas DataFrame."
            raise TypeError(msg)
        self._frame = frame
        self._names = [str(c) for c in frame.columns]
        self._rows = frame.to_numpy(dtype=object)
        self._pos = 0
        self._closed = False

    @property
    def names(self) -> list[str]:
        return list(self._names)

    @property
    def frame(self) -> pd.DataFrame:
        return self._frame

    def __len__(self) -> int:
        return self._rows.shape[0]

    def _check_open(self) -> None:
        if self._closed:
            msg = "Sample is closed."
            raise RuntimeError(msg)

    def pick(self) -> Profile | None:
        self._check_open()
        if self._pos >= self._rows.shape[0]:
            return None
        return Profile(self._names, list(self._rows[self._pos]))

    def next(self) -> Profile | None:
        profile = self.pick()
        if profile is not None:
            self._pos += 1
        return profile

    def reset(self) -> None:
        self._check_open()
        self._pos = 0

    def close(self) -> None:
        self._closed = True

    def __iter__(self) -> Iterator[Profile]:
        self.reset()
        while (profile := self.next()) is not None:
            yield profile


def as_sample(data: Any) -> Sample:
    """Wrap a DataFrame (or 2-D array) as a sample; pass samples through."""
    if isinstance(data, pd.DataFrame):
        return FrameSample(data)
    if isinstance(data, np.ndarray) and data.ndim == 2:
        cols = [f"x{j + 1}" for j in range(data.shape[1] - 1)] + ["z"]
        return FrameSample(pd.DataFrame(data, columns=cols))
    if isinstance(data, Sample):
        return data
    msg = f"Unsupported sample type: {type(data).__name__}"
    raise TypeError(msg)
