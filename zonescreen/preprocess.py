# Import required libraries
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from zonescreen.config import (
    TARGET_COL,
    ID_COLS,
    FROM_COL,
    TO_COL,
    INTERVAL_COLS,
    SENTINEL_VALUES,
    SENTINEL_SYMBOLS,
    CENSOR_DIVISOR,
    COMPOSITE_LENGTH,
    COMPOSITE_TOLERANCE,
    ConfigurationError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# COLUMN TYPES AND CELL STATES
# =============================================================================
# NUMERIC:  plain numbers (interval bounds). "<t" is not accepted here.
# CENSORED: concentrations; "<t" is a below-detection reading resolved to t / divisor.
# STRING:   identifiers and the label. Only sentinel / blank handling applies.
#
# Every concentration cell ends in exactly one state: observed (>= 0),
# censored (flagged, substituted) or missing (NaN).

NUMERIC = "numeric"
CENSORED = "censored"
STRING = "string"
COLUMN_TYPES = (NUMERIC, CENSORED, STRING)

CENSORED_PATTERN = re.compile(r"^\s*<\s*((?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)\s*$")


@dataclass(frozen=True)
class DataQualityIssue:
    """One unresolved cell (or interval flag), with its row and column identity."""
    row: object
    column: str
    value: object
    reason: str


@dataclass
class CleaningResult:
    """Output of clean_samples: cleaned table plus audit and diagnostic outputs."""
    data: pd.DataFrame
    censored: pd.DataFrame
    issues: List[DataQualityIssue]
    interval_flags: List[DataQualityIssue]
    missing_report: pd.DataFrame
    missing_by_label: Optional[pd.DataFrame]
    usable: pd.Series = field(repr=False)

    def issues_frame(self) -> pd.DataFrame:
        rows = [vars(i) for i in self.issues + self.interval_flags]
        return pd.DataFrame(rows, columns=["row", "column", "value", "reason"])

    def supervised_rows(self, target_col: str = TARGET_COL) -> pd.DataFrame:
        """Rows usable for selection/screening: no data-quality error and a known label."""
        mask = self.usable
        if target_col in self.data.columns:
            mask = mask & self.data[target_col].notna()
        return self.data[mask]


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if value is pd.NA:
        return True
    return isinstance(value, str) and value.strip() == ""


def _is_sentinel(value, sentinel_values: frozenset, sentinel_symbols: frozenset) -> bool:
    if isinstance(value, str):
        text = value.strip()
        if text in sentinel_symbols:
            return True
        try:
            return float(text) in sentinel_values
        except ValueError:
            return False
    if isinstance(value, (int, float, np.integer, np.floating)):
        return float(value) in sentinel_values
    return False


def resolve_numeric_cell(
    value,
    allow_censored: bool = True,
    censor_divisor: float = CENSOR_DIVISOR,
    sentinel_values=SENTINEL_VALUES,
    sentinel_symbols=SENTINEL_SYMBOLS,
) -> Tuple[float, bool, Optional[str]]:
    """
    Resolve one raw numeric/concentration cell.

    Returns (value, was_censored, error_reason). On error the value is NaN and
    error_reason says why; missing and sentinel cells are NaN with no error.
    """
    sentinel_values = frozenset(float(v) for v in sentinel_values)
    sentinel_symbols = frozenset(sentinel_symbols)

    if _is_blank(value) or _is_sentinel(value, sentinel_values, sentinel_symbols):
        return np.nan, False, None

    censored = False
    if isinstance(value, str):
        match = CENSORED_PATTERN.match(value) if allow_censored else None
        if match:
            number = float(match.group(1)) / censor_divisor
            censored = True
        else:
            try:
                number = float(value.strip())
            except ValueError:
                return np.nan, False, "non-numeric value"
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return np.nan, False, "non-numeric value"

    if not math.isfinite(number):
        return np.nan, False, "non-finite value"
    if number < 0:
        return np.nan, False, "negative value"
    return number, censored, None


def resolve_string_cell(value, sentinel_values=SENTINEL_VALUES, sentinel_symbols=SENTINEL_SYMBOLS):
    """Blank and sentinel cells become NaN; anything else is kept as stripped text."""
    sentinel_values = frozenset(float(v) for v in sentinel_values)
    if _is_blank(value) or _is_sentinel(value, sentinel_values, frozenset(sentinel_symbols)):
        return np.nan
    return str(value).strip()


def infer_column_types(df: pd.DataFrame, target_col: str = TARGET_COL) -> Dict[str, str]:
    """Ids and label are strings, interval bounds numeric, every other column a concentration."""
    types = {}
    for col in df.columns:
        if col in ID_COLS or col == target_col:
            types[col] = STRING
        elif col in INTERVAL_COLS:
            types[col] = NUMERIC
        else:
            types[col] = CENSORED
    return types


def missingness_report(df: pd.DataFrame, columns: Optional[List[str]] = None) -> pd.DataFrame:
    """Per-column missing count and percentage."""
    columns = list(df.columns) if columns is None else columns
    n_missing = df[columns].isna().sum()
    pct = n_missing / len(df) * 100 if len(df) else n_missing.astype(float)
    return pd.DataFrame({"n_missing": n_missing.astype(int), "pct_missing": pct.astype(float)})


def missingness_by_label(
    df: pd.DataFrame,
    label_col: str = TARGET_COL,
    unlabeled_name: str = "unlabeled",
) -> pd.DataFrame:
    """Percentage of missing cells per column within each label (unlabeled rows grouped together)."""
    labels = df[label_col].fillna(unlabeled_name)
    missing = df.drop(columns=[label_col]).isna()
    return missing.groupby(labels).mean() * 100


def check_composite_lengths(
    df: pd.DataFrame,
    from_col: str = FROM_COL,
    to_col: str = TO_COL,
    expected: Optional[float] = COMPOSITE_LENGTH,
    tolerance: float = COMPOSITE_TOLERANCE,
) -> List[DataQualityIssue]:
    """
    Flag intervals whose length differs from the composite length.
    Values are never corrected; the flags are returned for reporting.

    Args:
        df: Cleaned dataframe with numeric interval bounds
        expected: Composite length; None uses the most common interval length
        tolerance: Absolute tolerance on the length comparison

    Returns:
        List of DataQualityIssue flags
    """
    if from_col not in df.columns or to_col not in df.columns:
        return []

    lengths = df[to_col] - df[from_col]
    flags = []
    for row, length in lengths.items():
        if pd.notna(length) and length <= 0:
            flags.append(DataQualityIssue(row, to_col, df.at[row, to_col], "'to' not greater than 'from'"))

    positive = lengths[lengths > 0]
    if expected is None:
        if positive.empty:
            return flags
        expected = float(positive.round(6).mode().iloc[0])

    for row, length in positive.items():
        if abs(length - expected) > tolerance:
            flags.append(DataQualityIssue(
                row, to_col, float(length),
                f"interval length {length:g} differs from composite length {expected:g}",
            ))
    if flags:
        logger.warning("%d interval(s) deviate from the composite length %g", len(flags), expected)
    return flags


def clean_samples(
    df: pd.DataFrame,
    column_types: Optional[Dict[str, str]] = None,
    sentinel_values=SENTINEL_VALUES,
    sentinel_symbols=SENTINEL_SYMBOLS,
    censor_divisor: float = CENSOR_DIVISOR,
    target_col: str = TARGET_COL,
    composite_length: Optional[float] = COMPOSITE_LENGTH,
) -> CleaningResult:
    """
    Resolve censored and sentinel cells into numbers or NaN.

    Special Value Handling:
    - "<t" in a concentration column: t / censor_divisor, flagged in `censored`
    - Sentinel codes (e.g. -999) and symbols (e.g. "?"): NaN, in every column
    - Anything else that is not a non-negative finite number in a numeric
      column: NaN, recorded as a DataQualityIssue, row marked unusable

    Args:
        df: Raw dataframe (cells as read from CSV, usually text)
        column_types: Overrides for the inferred column types
        sentinel_values: Numeric missing codes
        sentinel_symbols: String missing placeholders
        censor_divisor: Divisor applied to censored thresholds
        target_col: Label column (string typed, sentinel handling applies)
        composite_length: Expected interval length; None infers it

    Returns:
        CleaningResult
    """
    if not censor_divisor or censor_divisor <= 0:
        raise ConfigurationError(f"censor_divisor must be positive, got {censor_divisor!r}")

    types = infer_column_types(df, target_col=target_col)
    for col, kind in (column_types or {}).items():
        if kind not in COLUMN_TYPES:
            raise ConfigurationError(f"Unknown column type {kind!r} for column {col!r}")
        if col in types:
            types[col] = kind

    cleaned = {}
    censored = {}
    issues = []
    for col in df.columns:
        kind = types[col]
        if kind == STRING:
            cleaned[col] = [resolve_string_cell(v, sentinel_values, sentinel_symbols) for v in df[col]]
            continue

        values, flags = [], []
        for row, raw in df[col].items():
            value, was_censored, reason = resolve_numeric_cell(
                raw,
                allow_censored=(kind == CENSORED),
                censor_divisor=censor_divisor,
                sentinel_values=sentinel_values,
                sentinel_symbols=sentinel_symbols,
            )
            if reason is not None:
                issues.append(DataQualityIssue(row, col, raw, reason))
            values.append(value)
            flags.append(was_censored)
        cleaned[col] = np.asarray(values, dtype=float)
        if kind == CENSORED:
            censored[col] = flags

    data = pd.DataFrame(cleaned, index=df.index, columns=df.columns)
    censored_frame = pd.DataFrame(censored, index=df.index, dtype=bool)

    usable = pd.Series(True, index=df.index)
    if issues:
        usable.loc[list({i.row for i in issues})] = False
        logger.warning("%d unresolved cell(s) in %d row(s)", len(issues), int((~usable).sum()))

    interval_flags = check_composite_lengths(data, expected=composite_length)

    by_label = None
    if target_col in data.columns:
        by_label = missingness_by_label(data, label_col=target_col)

    logger.info(
        "Cleaned %d rows x %d columns: %d censored cells, %d missing cells",
        len(data), data.shape[1], int(censored_frame.values.sum()), int(data.isna().values.sum()),
    )
    return CleaningResult(
        data=data,
        censored=censored_frame,
        issues=issues,
        interval_flags=interval_flags,
        missing_report=missingness_report(data),
        missing_by_label=by_label,
        usable=usable,
    )
