"""
Compositional value type and log-ratio arithmetic.

Concentrations are parts of a whole, so the only meaningful comparisons are
ratios between parts. Every function here treats a missing or non-positive
operand as "undefined" and returns NaN for it instead of raising, so callers
never need their own zero/NaN checks.
"""
from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

Pair = Tuple[str, str]


def _valid(values) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    with np.errstate(invalid="ignore"):
        return np.isfinite(arr) & (arr > 0)


def ratio(x, y):
    """x / y, NaN wherever either operand is missing or non-positive. Works on scalars, arrays and Series."""
    xa, ya = np.asarray(x, dtype=float), np.asarray(y, dtype=float)
    ok = _valid(xa) & _valid(ya)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = np.where(ok, xa / np.where(ok, ya, 1.0), np.nan)
    return _like(out, x)


def log_ratio(x, y):
    """log(x / y) with the same undefined-operand rule as ratio()."""
    xa, ya = np.asarray(x, dtype=float), np.asarray(y, dtype=float)
    ok = _valid(xa) & _valid(ya)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = np.where(ok, np.log(np.where(ok, xa, 1.0)) - np.log(np.where(ok, ya, 1.0)), np.nan)
    return _like(out, x)


def _like(out: np.ndarray, template):
    if isinstance(template, pd.Series):
        return pd.Series(out, index=template.index)
    if out.ndim == 0:
        return float(out)
    return out


def log_ratio_name(numerator: str, denominator: str) -> str:
    return f"log({numerator}/{denominator})"


def all_pairs(parts: Iterable[str]) -> List[Pair]:
    """Every unordered pair of parts, each as (a, b) with a < b, in lexicographic order."""
    return list(combinations(sorted(parts), 2))


def log_ratio_frame(df: pd.DataFrame, pairs: Sequence[Pair]) -> pd.DataFrame:
    """One column per pair; undefined ratios stay NaN."""
    data = {log_ratio_name(a, b): log_ratio(df[a], df[b]) for a, b in pairs}
    return pd.DataFrame(data, index=df.index, columns=[log_ratio_name(a, b) for a, b in pairs])


def clr(df: pd.DataFrame) -> pd.DataFrame:
    """
    Centred log-ratio transform of each row.
    A row with any missing or non-positive part has no CLR and comes back all-NaN.
    """
    values = df.to_numpy(dtype=float)
    ok = _valid(values).all(axis=1)
    logs = np.full(values.shape, np.nan)
    logs[ok] = np.log(values[ok])
    out = logs - logs.mean(axis=1, keepdims=True)
    return pd.DataFrame(out, index=df.index, columns=df.columns)


class Composition:
    """
    One composition: a fixed, ordered set of named parts.

    Example:
        >>> c = Composition({"Au": 0.5, "Cu": 120.0, "As": 0.0})
        >>> c.log_ratio("Cu", "Au")   # log(240)
        >>> c.log_ratio("Cu", "As")   # nan, As is not positive
    """

    def __init__(self, parts: Mapping[str, float]):
        self._names = tuple(parts)
        self._values = np.array([parts[name] for name in self._names], dtype=float)

    @classmethod
    def from_row(cls, row: pd.Series) -> "Composition":
        return cls(row.to_dict())

    @property
    def parts(self) -> Tuple[str, ...]:
        return self._names

    def __getitem__(self, name: str) -> float:
        return float(self._values[self._names.index(name)])

    def __len__(self) -> int:
        return len(self._names)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Composition):
            return NotImplemented
        return self._names == other._names and np.array_equal(self._values, other._values, equal_nan=True)

    def __repr__(self) -> str:
        body = ", ".join(f"{n}={v:g}" for n, v in zip(self._names, self._values))
        return f"Composition({body})"

    def is_complete(self) -> bool:
        """True when every part is observed and positive."""
        return bool(_valid(self._values).all())

    def ratio(self, numerator: str, denominator: str) -> float:
        return ratio(self[numerator], self[denominator])

    def log_ratio(self, numerator: str, denominator: str) -> float:
        return log_ratio(self[numerator], self[denominator])

    def log_ratios(self, pairs: Sequence[Pair]) -> Dict[str, float]:
        return {log_ratio_name(a, b): self.log_ratio(a, b) for a, b in pairs}

    def to_series(self) -> pd.Series:
        return pd.Series(self._values, index=list(self._names))

    def closure(self, total: float = 1.0) -> "Composition":
        """Rescale parts to sum to `total`. Ratios are unchanged."""
        s = np.nansum(self._values)
        return Composition(dict(zip(self._names, self._values * (total / s))))

    def clr(self) -> Dict[str, float]:
        if not self.is_complete():
            return {name: np.nan for name in self._names}
        logs = np.log(self._values)
        return dict(zip(self._names, logs - logs.mean()))
