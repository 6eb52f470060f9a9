"""
Data loading utilities.
Loads the raw assay table and provides labeled subsets, features and target.
"""
from typing import List, Optional

import pandas as pd

from zonescreen.config import (
    SAMPLES_CSV,
    TARGET_COL,
    ID_COLS,
    INTERVAL_COLS,
    HOLDOUT_SIZE,
    RANDOM_STATE,
)


def load_samples(path=SAMPLES_CSV) -> pd.DataFrame:
    """
    Load the raw sample table with every cell as text.
    Censored cells ("<0.2") and sentinel symbols only survive if nothing is parsed here.
    """
    return pd.read_csv(path, dtype=str)


def element_columns(df: pd.DataFrame, target_col: str = TARGET_COL) -> List[str]:
    """Element concentration columns: everything that is not an id, interval or label column."""
    reserved = set(ID_COLS) | set(INTERVAL_COLS) | {target_col}
    return [c for c in df.columns if c not in reserved]


def labeled_rows(df: pd.DataFrame, target_col: str = TARGET_COL) -> pd.DataFrame:
    """Rows with a known label. Unlabeled rows stay in the cleaned table for diagnostics only."""
    if target_col not in df.columns:
        return df.iloc[0:0]
    return df[df[target_col].notna()]


def split_X_y(
    df: pd.DataFrame,
    target_col: str = TARGET_COL,
    feature_cols: Optional[List[str]] = None,
) -> tuple[pd.DataFrame, pd.Series]:
    """
    Split DataFrame into element features X and target y.
    Excludes id, interval and target columns from X unless feature_cols is given.
    """
    if feature_cols is None:
        feature_cols = element_columns(df, target_col=target_col)
    X = df[feature_cols]
    y = df[target_col] if target_col in df.columns else None
    return X, y


def get_train_holdout_split(
    df: pd.DataFrame,
    holdout_size: float = HOLDOUT_SIZE,
    random_state: int = RANDOM_STATE,
    target_col: str = TARGET_COL,
):
    """
    Split labeled DataFrame into train/holdout, stratified on the label.
    Returns (train_df, holdout_df).
    """
    from sklearn.model_selection import train_test_split
    train_df, holdout_df = train_test_split(
        df, test_size=holdout_size, random_state=random_state, stratify=df[target_col]
    )
    return train_df, holdout_df
