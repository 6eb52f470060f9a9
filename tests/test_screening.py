"""
Unit tests for the pipeline screening engine.

Tests cover:
- Grid enumeration and candidate drawing
- Failure isolation per cell
- Deterministic ranking with variance tie-break
- Training-fold-only fitting (no leakage)
- Configuration errors and timeout
"""
import dataclasses

import numpy as np
import pandas as pd
import pytest
from scipy.stats import loguniform
from sklearn.linear_model import LogisticRegression

from zonescreen.config import ConfigurationError
from zonescreen.evaluate import make_splitter
from zonescreen.model import BackendClassifier, EstimatorBackend, ModelFamily, default_families
from zonescreen.recipes import base_recipe, logratio_recipe, pca_recipe
from zonescreen.screening import (
    CellResult,
    WorkItem,
    aggregate,
    draw_candidates,
    enumerate_work_items,
    fit_cell,
    rank,
    screen,
)


def _one_iteration_logistic(random_state):
    return LogisticRegression(max_iter=1, random_state=random_state)


def _backend_knn(random_state):
    from sklearn.neighbors import KNeighborsClassifier
    return BackendClassifier(backend=EstimatorBackend(KNeighborsClassifier()), config={"n_neighbors": 7})


class TestDrawCandidates:

    def test_empty_space(self):
        assert draw_candidates({}, budget=5) == [{}]

    def test_small_grid_is_exhaustive(self):
        space = {"a": [1, 2], "b": ["x", "y"]}
        candidates = draw_candidates(space, budget=10)
        assert len(candidates) == 4
        assert {(c["a"], c["b"]) for c in candidates} == {(1, "x"), (1, "y"), (2, "x"), (2, "y")}

    def test_large_grid_is_sampled_to_budget(self):
        candidates = draw_candidates({"a": list(range(100))}, budget=5, random_state=1)
        assert len(candidates) == 5
        assert len({c["a"] for c in candidates}) == 5

    def test_distribution_draws_are_seeded(self):
        space = {"C": loguniform(1e-3, 1e2)}
        first = draw_candidates(space, budget=3, random_state=0)
        second = draw_candidates(space, budget=3, random_state=0)
        assert first == second
        assert all(isinstance(c["C"], float) for c in first)


class TestWorkItems:

    def test_grid_size(self, failing_family):
        recipes = [base_recipe(), pca_recipe()]
        families = default_families(["knn", "naive_bayes"]) + [failing_family]
        items = enumerate_work_items(recipes, families, n_splits=5, search_budget=2)

        # pca has tunable steps, so every pair draws exactly `budget` candidates
        # except base x always_fails, whose merged space is empty
        per_pair = {}
        for item in items:
            per_pair.setdefault((item.recipe, item.model), set()).add(item.candidate)
        assert len(per_pair) == 6
        assert len(per_pair[("base", "always_fails")]) == 1
        assert len(per_pair[("pca", "knn")]) == 2
        assert len(items) == 5 * sum(len(c) for c in per_pair.values())

    def test_items_are_immutable(self):
        item = WorkItem("base", "knn", 0, (("model__n_neighbors", 5),), 0)
        with pytest.raises(dataclasses.FrozenInstanceError):
            item.fold = 1
        assert item.param_dict() == {"model__n_neighbors": 5}
        assert item.key == ("base", "knn", 0)


class TestAggregateAndRank:

    def _cells(self, recipe, model, candidate, scores, errors=None):
        errors = errors or [None] * len(scores)
        return [
            CellResult(WorkItem(recipe, model, candidate, (), fold), score, error)
            for fold, (score, error) in enumerate(zip(scores, errors))
        ]

    def test_candidate_with_failed_fold_is_excluded(self):
        cells = self._cells("r", "m", 0, [0.8, 0.9, 0.7]) + \
            self._cells("r", "m", 1, [0.9, np.nan, 0.9], errors=[None, "boom", None])
        candidates, failures = aggregate(cells, n_splits=3)
        assert candidates["candidate"].tolist() == [0]
        assert len(failures) == 1
        assert failures.iloc[0]["error"] == "boom"

    def test_incomplete_candidate_is_not_ranked(self):
        cells = self._cells("r", "m", 0, [0.8, 0.9])
        candidates, failures = aggregate(cells, n_splits=3)
        assert candidates.empty
        assert failures.empty

    def test_mean_and_variance(self):
        candidates, _ = aggregate(self._cells("r", "m", 0, [0.6, 0.8, 1.0]), n_splits=3)
        row = candidates.iloc[0]
        assert row["mean"] == pytest.approx(0.8)
        assert row["variance"] == pytest.approx(0.04)

    def test_best_candidate_per_pair_and_tie_break_on_variance(self):
        cells = (
            self._cells("r1", "m", 0, [0.7, 0.7, 0.7])
            + self._cells("r1", "m", 1, [0.9, 0.9, 0.9])
            + self._cells("r2", "m", 0, [0.8, 1.0, 0.9])     # mean 0.9, variance 0.01
            + self._cells("r3", "m", 0, [0.5, 0.5, 0.5])
        )
        candidates, _ = aggregate(cells, n_splits=3)
        board = rank(candidates, metric="f1_macro")

        assert board["recipe"].tolist() == ["r1", "r2", "r3"]
        assert board["rank"].tolist() == [1, 2, 3]
        top = board.iloc[0]
        assert top["n_candidates"] == 2
        assert top["mean"] == pytest.approx(0.9)
        assert top["variance"] == pytest.approx(0.0)

    def test_rank_empty(self):
        board = rank(pd.DataFrame(columns=["recipe", "model", "candidate", "params", "mean", "variance", "std", "n_folds"]))
        assert board.empty
        assert "best_params" in board.columns


class TestScreen:

    def test_failing_model_is_isolated(self, labeled_composition, failing_family):
        X, y = labeled_composition
        recipes = [base_recipe(), pca_recipe()]
        families = default_families(["knn", "naive_bayes"]) + [failing_family]

        result = screen(X, y, recipes, families, n_folds=5, search_budget=2)

        assert len(result.leaderboard) == 4
        assert "always_fails" not in set(result.leaderboard["model"])
        assert set(result.failures["model"]) == {"always_fails"}
        assert "solver did not converge" in result.failures.iloc[0]["error"]
        assert result.leaderboard["rank"].tolist() == [1, 2, 3, 4]
        means = result.leaderboard["mean"].tolist()
        assert means == sorted(means, reverse=True)
        assert not result.timed_out

    def test_leaderboard_fields(self, labeled_composition):
        X, y = labeled_composition
        result = screen(X, y, [base_recipe()], default_families(["naive_bayes"]), n_folds=3, search_budget=1)
        row = result.best()
        for field in ["recipe", "model", "best_params", "mean", "variance", "rank"]:
            assert field in row.index
        assert row["n_folds"] == 3
        assert 0.0 <= row["mean"] <= 1.0

    def test_repeated_folds(self, labeled_composition):
        X, y = labeled_composition
        result = screen(X, y, [base_recipe()], default_families(["naive_bayes"]),
                        n_folds=3, n_repeats=2, search_budget=1)
        assert result.best()["n_folds"] == 6

    def test_deterministic(self, labeled_composition):
        X, y = labeled_composition
        recipes = [base_recipe(), pca_recipe()]
        families = default_families(["knn", "logistic"])
        first = screen(X, y, recipes, families, n_folds=3, search_budget=2, random_state=11)
        second = screen(X, y, recipes, families, n_folds=3, search_budget=2, random_state=11)
        pd.testing.assert_frame_equal(first.leaderboard, second.leaderboard)

    def test_logratio_recipe(self, labeled_composition):
        X, y = labeled_composition
        recipe = logratio_recipe(n_ratios=2)
        result = screen(X, y, [recipe], default_families(["naive_bayes"]), n_folds=3, search_budget=1)
        assert result.best()["recipe"] == "logratio"
        assert result.failures.empty

    def test_backend_family(self, labeled_composition):
        X, y = labeled_composition
        family = ModelFamily("backend_knn", _backend_knn, {})
        result = screen(X, y, [base_recipe()], [family], n_folds=3, search_budget=1)
        assert result.best()["model"] == "backend_knn"

    def test_strict_convergence_marks_cells_failed(self, labeled_composition):
        X, y = labeled_composition
        family = ModelFamily("logistic_1iter", _one_iteration_logistic, {})
        lenient = screen(X, y, [base_recipe()], [family], n_folds=3, search_budget=1)
        strict = screen(X, y, [base_recipe()], [family], n_folds=3, search_budget=1, strict_convergence=True)
        assert len(lenient.leaderboard) == 1
        assert strict.leaderboard.empty
        assert strict.failures["error"].str.contains("ConvergenceWarning").all()
        with pytest.raises(RuntimeError):
            strict.best()

    def test_timeout_ranks_completed_cells_only(self, labeled_composition):
        X, y = labeled_composition
        result = screen(X, y, [base_recipe()], default_families(["naive_bayes"]), n_folds=3, timeout=0)
        assert result.timed_out
        assert result.leaderboard.empty
        assert result.results == []

    @pytest.mark.parametrize("kwargs", [
        {"n_folds": 1},
        {"metric": "auc_pr"},
        {"n_repeats": 0},
        {"search_budget": 0},
    ])
    def test_configuration_errors(self, labeled_composition, kwargs):
        X, y = labeled_composition
        with pytest.raises(ConfigurationError):
            screen(X, y, [base_recipe()], default_families(["knn"]), **kwargs)

    def test_empty_sets_rejected(self, labeled_composition):
        X, y = labeled_composition
        with pytest.raises(ConfigurationError):
            screen(X, y, [], default_families(["knn"]))
        with pytest.raises(ConfigurationError):
            screen(X, y, [base_recipe()], [])
        with pytest.raises(ConfigurationError):
            screen(X, y, [base_recipe(), base_recipe()], default_families(["knn"]))


class TestNoLeakage:

    def test_training_fit_ignores_validation_rows(self, labeled_composition):
        X, y = labeled_composition
        train_idx, val_idx = next(make_splitter(n_folds=5).split(X, y))
        item = WorkItem("base", "knn", 0, (("model__n_neighbors", 5),), 0)
        family = default_families(["knn"])[0]

        fitted = fit_cell(item, X, y, train_idx, base_recipe(), family)

        perturbed = X.copy()
        perturbed.iloc[val_idx] = perturbed.iloc[val_idx] * 1000.0
        refitted = fit_cell(item, perturbed, y, train_idx, base_recipe(), family)

        for step, attr in [("impute", "statistics_"), ("normalize", "lambdas_"), ("scale", "mean_"), ("scale", "scale_")]:
            np.testing.assert_array_equal(
                getattr(fitted.named_steps[step], attr),
                getattr(refitted.named_steps[step], attr),
            )

        # validation predictions may change, fitted state does not
        assert fitted.named_steps["model"] is not refitted.named_steps["model"]

    def test_log_ratio_ranking_ignores_validation_labels(self, labeled_composition):
        X, y = labeled_composition
        train_idx, val_idx = next(make_splitter(n_folds=5).split(X, y))
        item = WorkItem("logratio", "naive_bayes", 0, (), 0)
        family = default_families(["naive_bayes"])[0]
        recipe = logratio_recipe(n_ratios=3, criterion="separation")

        fitted = fit_cell(item, X, y, train_idx, recipe, family)

        flipped = y.copy()
        flipped.iloc[val_idx] = np.where(flipped.iloc[val_idx] == "ore", "waste", "ore")
        refitted = fit_cell(item, X, flipped, train_idx, recipe, family)

        assert fitted.named_steps["log_ratios"].pairs_ == refitted.named_steps["log_ratios"].pairs_
        assert fitted.named_steps["log_ratios"].selection_.n_rows <= len(train_idx)

    def test_log_ratios_ranked_per_fold(self, labeled_composition):
        X, y = labeled_composition
        splits = list(make_splitter(n_folds=3).split(X, y))
        item = WorkItem("logratio", "naive_bayes", 0, (), 0)
        family = default_families(["naive_bayes"])[0]
        recipe = logratio_recipe(n_ratios=2)
        a = fit_cell(item, X, y, splits[0][0], recipe, family)
        b = fit_cell(item, X, y, splits[1][0], recipe, family)
        assert a.named_steps["log_ratios"] is not b.named_steps["log_ratios"]
        assert a.named_steps["log_ratios"].selection_.n_rows != X.shape[0]

    def test_each_fold_gets_a_fresh_pipeline(self, labeled_composition):
        X, y = labeled_composition
        splits = list(make_splitter(n_folds=3).split(X, y))
        item = WorkItem("base", "naive_bayes", 0, (), 0)
        family = default_families(["naive_bayes"])[0]
        a = fit_cell(item, X, y, splits[0][0], base_recipe(), family)
        b = fit_cell(item, X, y, splits[1][0], base_recipe(), family)
        assert a.named_steps["scale"] is not b.named_steps["scale"]
        assert not np.allclose(a.named_steps["scale"].mean_, b.named_steps["scale"].mean_)
