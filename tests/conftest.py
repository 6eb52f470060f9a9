"""
Shared fixtures: synthetic drill-hole assay tables and labeled compositions.
"""
import numpy as np
import pandas as pd
import pytest
from sklearn.base import BaseEstimator, ClassifierMixin

from zonescreen.model import ModelFamily


class AlwaysFailsClassifier(BaseEstimator, ClassifierMixin):
    """Stands in for a model whose solver never converges."""

    def fit(self, X, y):
        raise RuntimeError("solver did not converge")

    def predict(self, X):
        raise RuntimeError("not fitted")


def _always_fails(random_state):
    return AlwaysFailsClassifier()


@pytest.fixture
def failing_family():
    return ModelFamily("always_fails", _always_fails, {})


def make_labeled_composition(n_ore: int = 40, n_waste: int = 60, seed: int = 0):
    """Four elements; Cu is enriched in 'ore' rows. A few As values are missing."""
    rng = np.random.default_rng(seed)
    labels = np.array(["ore"] * n_ore + ["waste"] * n_waste)
    ore = labels == "ore"
    X = pd.DataFrame({
        "Au": rng.lognormal(0.0, 0.7, len(labels)),
        "Cu": rng.lognormal(3.0 + 1.2 * ore, 0.5),
        "Zn": rng.lognormal(3.0, 0.5, len(labels)),
        "As": rng.lognormal(1.0, 0.6, len(labels)),
    })
    X.loc[rng.choice(len(labels), 5, replace=False), "As"] = np.nan
    return X, pd.Series(labels, name="Class")


@pytest.fixture
def labeled_composition():
    return make_labeled_composition()


@pytest.fixture
def composition5():
    """Five elements, every row complete and positive."""
    rng = np.random.default_rng(7)
    n = 60
    base = rng.lognormal(0.0, 1.0, (n, 1))
    data = {
        "Au": rng.lognormal(0.0, 0.8, n),
        "Ag": rng.lognormal(1.0, 0.5, n),
        "Cu": base[:, 0] * rng.lognormal(2.0, 0.3, n),
        "Pb": base[:, 0] * rng.lognormal(1.5, 0.3, n),
        "Zn": rng.lognormal(2.5, 0.9, n),
    }
    return pd.DataFrame(data)


def make_raw_samples(n_labeled: int = 120, n_unlabeled: int = 10, seed: int = 3) -> pd.DataFrame:
    """
    Raw table as read from CSV (all text), with censored Au, sentinel codes
    and '?' labels for unlabeled intervals.
    """
    rng = np.random.default_rng(seed)
    n = n_labeled + n_unlabeled
    labels = ["ore" if i % 3 == 0 else "waste" for i in range(n_labeled)] + ["?"] * n_unlabeled
    ore = np.array([lab == "ore" for lab in labels])

    au = rng.lognormal(-1.0, 0.8, n)
    cu = rng.lognormal(3.0 + 1.5 * ore, 0.4)
    zn = rng.lognormal(3.0, 0.5, n)
    pb = rng.lognormal(2.0 + 0.5 * ore, 0.5)
    as_ = rng.lognormal(1.0, 0.6, n)

    au_text = [f"{v:.4f}" for v in au]
    for i in range(0, n, 9):
        au_text[i] = "<0.02"
    as_text = [f"{v:.3f}" for v in as_]
    for i in range(5, n, 17):
        as_text[i] = "-999"

    return pd.DataFrame({
        "HoleID": [f"DH{i // 20:03d}" for i in range(n)],
        "From": [f"{2 * (i % 20):.1f}" for i in range(n)],
        "To": [f"{2 * (i % 20) + 2:.1f}" for i in range(n)],
        "SampleID": [f"S{i:05d}" for i in range(n)],
        "Au": au_text,
        "Cu": [f"{v:.2f}" for v in cu],
        "Zn": [f"{v:.2f}" for v in zn],
        "Pb": [f"{v:.2f}" for v in pb],
        "As": as_text,
        "Class": labels,
    })


@pytest.fixture
def raw_samples():
    return make_raw_samples()


@pytest.fixture
def raw_samples_csv(tmp_path):
    path = tmp_path / "samples.csv"
    make_raw_samples().to_csv(path, index=False)
    return path
