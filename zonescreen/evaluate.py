"""
Evaluation module.
Metric registry, plain cross-validation for baselines, and the holdout report
(confusion matrix, F-score) for the top-ranked pipeline.
Exposes: get_metric(...), run_validation(...), holdout_report(...)
"""
from functools import partial

import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score,
    balanced_accuracy_score,
    classification_report,
    confusion_matrix,
    f1_score,
    matthews_corrcoef,
)
from sklearn.model_selection import RepeatedStratifiedKFold, cross_val_score

from zonescreen.config import METRIC, N_FOLDS, N_REPEATS, RANDOM_STATE, ConfigurationError

# All metrics are label based and higher-is-better.
METRICS = {
    "f1_macro": partial(f1_score, average="macro", zero_division=0),
    "f1_weighted": partial(f1_score, average="weighted", zero_division=0),
    "accuracy": accuracy_score,
    "balanced_accuracy": balanced_accuracy_score,
    "mcc": matthews_corrcoef,
}


def get_metric(name: str = METRIC):
    """Return metric(y_true, y_pred) -> float."""
    try:
        return METRICS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown metric {name!r}; available: {sorted(METRICS)}") from None


def metric_scorer(name: str = METRIC):
    """scorer(estimator, X, y) for cross_val_score, scoring label predictions with a registered metric."""
    metric_fn = get_metric(name)

    def scorer(estimator, X, y):
        return float(metric_fn(y, estimator.predict(X)))

    return scorer


def make_splitter(n_folds: int = N_FOLDS, n_repeats: int = N_REPEATS, random_state: int = RANDOM_STATE):
    """Stratified k-fold, repeated n_repeats times."""
    return RepeatedStratifiedKFold(n_splits=n_folds, n_repeats=n_repeats, random_state=random_state)


def run_validation(
    X: pd.DataFrame,
    y: pd.Series,
    model,
    n_folds: int = N_FOLDS,
    random_state: int = RANDOM_STATE,
    metric: str = METRIC,
) -> dict:
    """
    Run stratified K-fold cross-validation.
    Returns dict with mean, std, and fold scores.
    """
    cv = make_splitter(n_folds=n_folds, n_repeats=1, random_state=random_state)
    scores = cross_val_score(model, X, y, cv=cv, scoring=metric_scorer(metric))
    return {
        "metric": metric,
        "mean": float(scores.mean()),
        "std": float(scores.std()),
        "fold_scores": scores.tolist(),
    }


def holdout_report(pipeline, X_holdout: pd.DataFrame, y_holdout: pd.Series, metric: str = METRIC) -> dict:
    """Score a fitted pipeline on the held-out split."""
    pred = pipeline.predict(X_holdout)
    labels = np.unique(np.concatenate([np.asarray(y_holdout), np.asarray(pred)]))
    confusion = pd.DataFrame(
        confusion_matrix(y_holdout, pred, labels=labels),
        index=pd.Index(labels, name="actual"),
        columns=pd.Index(labels, name="predicted"),
    )
    return {
        "metric": metric,
        "score": float(get_metric(metric)(y_holdout, pred)),
        "f1_macro": float(f1_score(y_holdout, pred, average="macro", zero_division=0)),
        "confusion_matrix": confusion,
        "report": classification_report(y_holdout, pred, output_dict=True, zero_division=0),
    }
