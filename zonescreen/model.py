"""
Model module.
Defines the classifier families screened against each recipe (logistic,
random forest, CatBoost, SVM, kNN, naive Bayes) with their search spaces, and
the fit/predict contract used for external model-fitting backends.
Exposes: ModelFamily, build_model(...), default_families(...), BackendClassifier
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np
from catboost import CatBoostClassifier
from scipy.stats import loguniform, randint, uniform
from sklearn.base import BaseEstimator, ClassifierMixin, clone
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression
from sklearn.naive_bayes import GaussianNB
from sklearn.neighbors import KNeighborsClassifier
from sklearn.svm import SVC

from zonescreen.config import RANDOM_STATE, ConfigurationError


@dataclass(frozen=True)
class ModelFamily:
    """
    name: model name shown on the leaderboard
    factory: factory(random_state) -> unfitted estimator
    search_space: estimator parameters -> list (grid) or scipy distribution (random)
    """
    name: str
    factory: Callable[[int], Any]
    search_space: Dict[str, Any] = field(default_factory=dict)

    def build(self, random_state: int = RANDOM_STATE, **params):
        estimator = self.factory(random_state)
        if params:
            estimator.set_params(**params)
        return estimator


# ---------------------------------------------------------------------
# Estimator factories (module level so families pickle into workers)
# ---------------------------------------------------------------------
def _logistic(random_state):
    return LogisticRegression(
        penalty="elasticnet", solver="saga", l1_ratio=0.5, max_iter=5000, random_state=random_state,
    )


def _random_forest(random_state):
    return RandomForestClassifier(n_estimators=300, random_state=random_state, n_jobs=1)


def _catboost(random_state):
    return CatBoostClassifier(
        iterations=300,
        depth=6,
        learning_rate=0.05,
        l2_leaf_reg=3,
        random_seed=random_state,
        verbose=0,
        allow_writing_files=False,
        thread_count=1,
    )


def _svm(random_state):
    return SVC(kernel="rbf", random_state=random_state)


def _knn(random_state):
    return KNeighborsClassifier()


def _naive_bayes(random_state):
    return GaussianNB()


FAMILIES = {
    "logistic": ModelFamily("logistic", _logistic, {
        "C": loguniform(1e-3, 1e2),
        "l1_ratio": uniform(0.0, 1.0),
    }),
    "random_forest": ModelFamily("random_forest", _random_forest, {
        "max_features": ["sqrt", 0.5, 1.0],
        "min_samples_leaf": randint(1, 10),
    }),
    "catboost": ModelFamily("catboost", _catboost, {
        "depth": [4, 6, 8],
        "learning_rate": loguniform(1e-2, 3e-1),
        "l2_leaf_reg": [1, 3, 6, 10],
    }),
    "svm": ModelFamily("svm", _svm, {
        "C": loguniform(1e-2, 1e2),
        "gamma": loguniform(1e-3, 1e0),
    }),
    "knn": ModelFamily("knn", _knn, {
        "n_neighbors": [3, 5, 7, 9, 11, 15],
        "weights": ["uniform", "distance"],
    }),
    "naive_bayes": ModelFamily("naive_bayes", _naive_bayes, {
        "var_smoothing": loguniform(1e-11, 1e-5),
    }),
}


def default_families(names: Optional[Sequence[str]] = None) -> List[ModelFamily]:
    """Registered families, all of them or the named subset in the given order."""
    if names is None:
        return list(FAMILIES.values())
    unknown = [n for n in names if n not in FAMILIES]
    if unknown:
        raise ConfigurationError(f"Unknown model families: {unknown}; available: {sorted(FAMILIES)}")
    return [FAMILIES[n] for n in names]


def build_model(name: str = "logistic", random_state: int = RANDOM_STATE, **kwargs):
    """Build and return an unfitted estimator of a registered family."""
    return default_families([name])[0].build(random_state=random_state, **kwargs)


# ---------------------------------------------------------------------
# External backend contract
# ---------------------------------------------------------------------
class ModelBackend(Protocol):
    """
    Opaque model-fitting backend (e.g. a Bayesian sampler).
    Must be deterministic for a fixed seed carried in `config`.
    """

    def fit(self, training_features, training_labels, config: Dict[str, Any]) -> Any:
        ...

    def predict(self, fitted_model, features):
        ...


class EstimatorBackend:
    """Any scikit-learn estimator exposed through the backend contract."""

    def __init__(self, estimator):
        self.estimator = estimator

    def fit(self, training_features, training_labels, config):
        return clone(self.estimator).set_params(**config).fit(training_features, training_labels)

    def predict(self, fitted_model, features):
        return fitted_model.predict(features)


class BackendClassifier(BaseEstimator, ClassifierMixin):
    """
    Wraps a ModelBackend as a scikit-learn classifier so it can sit at the end
    of a recipe pipeline and be screened like any other family.
    """

    def __init__(self, backend=None, config=None):
        self.backend = backend
        self.config = config

    def fit(self, X, y):
        if self.backend is None:
            raise ValueError("BackendClassifier needs a backend")
        self.classes_ = np.unique(y)
        self.model_ = self.backend.fit(X, y, dict(self.config or {}))
        return self

    def predict(self, X):
        return np.asarray(self.backend.predict(self.model_, X))
