import numpy as np
import pandas as pd
import pytest
from sklearn.naive_bayes import GaussianNB

from zonescreen.config import ConfigurationError
from zonescreen.evaluate import METRICS, get_metric, holdout_report, metric_scorer, run_validation


class TestMetrics:

    def test_known_metrics(self):
        y = ["a", "a", "b", "b"]
        for name in METRICS:
            assert get_metric(name)(y, y) == pytest.approx(1.0)

    def test_unknown_metric(self):
        with pytest.raises(ConfigurationError):
            get_metric("f2")


class TestValidation:

    def test_run_validation(self, labeled_composition):
        X, y = labeled_composition
        X = X.fillna(X.median())
        result = run_validation(X, y, GaussianNB(), n_folds=4)
        assert len(result["fold_scores"]) == 4
        assert 0.0 <= result["mean"] <= 1.0
        assert result["metric"] == "f1_macro"
        assert not np.isnan(result["fold_scores"]).any()

    def test_string_labels_with_every_metric(self, labeled_composition):
        X, y = labeled_composition
        X = X.fillna(X.median())
        for name in METRICS:
            scores = run_validation(X, y, GaussianNB(), n_folds=3, metric=name)["fold_scores"]
            assert np.isfinite(scores).all(), name

    def test_metric_scorer(self, labeled_composition):
        X, y = labeled_composition
        X = X.fillna(X.median())
        model = GaussianNB().fit(X, y)
        assert metric_scorer("accuracy")(model, X, y) == pytest.approx(model.score(X, y))

    def test_holdout_report(self, labeled_composition):
        X, y = labeled_composition
        X = X.fillna(X.median())
        model = GaussianNB().fit(X, y)
        report = holdout_report(model, X, y)
        confusion = report["confusion_matrix"]
        assert isinstance(confusion, pd.DataFrame)
        assert confusion.values.sum() == len(y)
        assert list(confusion.index) == ["ore", "waste"]
        assert report["score"] == pytest.approx(report["f1_macro"])
        assert "ore" in report["report"]
