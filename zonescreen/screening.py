"""
Pipeline screening engine.

Every (recipe, model, hyperparameter candidate, fold) combination is one
immutable WorkItem. Items are evaluated independently on a joblib worker pool;
each worker fits a fresh pipeline on the fold's training rows only and scores
it on the fold's validation rows. Results are aggregated per candidate once
all its folds are back, and the best candidate of each (recipe, model) pair
goes on the leaderboard.
Exposes: screen(...), enumerate_work_items(...), draw_candidates(...), fit_cell(...)
"""
import logging
import time
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from sklearn.exceptions import ConvergenceWarning
from sklearn.model_selection import ParameterGrid, ParameterSampler

from zonescreen.config import (
    METRIC,
    N_FOLDS,
    N_REPEATS,
    SEARCH_BUDGET,
    RANDOM_STATE,
    N_JOBS,
    SCREEN_TIMEOUT,
    ConfigurationError,
)
from zonescreen.evaluate import get_metric, make_splitter
from zonescreen.model import ModelFamily
from zonescreen.recipes import Recipe, build_pipeline

logger = logging.getLogger(__name__)

LEADERBOARD_COLUMNS = [
    "rank", "recipe", "model", "best_params", "mean", "variance", "std", "n_folds", "n_candidates", "metric",
]
FAILURE_COLUMNS = ["recipe", "model", "candidate", "params", "fold", "error"]


@dataclass(frozen=True)
class WorkItem:
    recipe: str
    model: str
    candidate: int
    params: Tuple[Tuple[str, Any], ...]
    fold: int

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.recipe, self.model, self.candidate)

    def param_dict(self) -> Dict[str, Any]:
        return dict(self.params)


@dataclass(frozen=True)
class CellResult:
    item: WorkItem
    score: float
    error: Optional[str] = None
    seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ScreeningResult:
    leaderboard: pd.DataFrame
    candidates: pd.DataFrame
    failures: pd.DataFrame
    results: List[CellResult]
    metric: str
    timed_out: bool = False

    def best(self) -> pd.Series:
        """Top-ranked leaderboard entry."""
        if self.leaderboard.empty:
            raise RuntimeError("No pipeline completed successfully; see `failures`")
        return self.leaderboard.iloc[0]


def validate_screening_config(
    recipes: Sequence[Recipe],
    families: Sequence[ModelFamily],
    metric: str,
    n_folds: int,
    n_repeats: int,
    search_budget: int,
) -> None:
    """Reject bad settings before any fitting starts."""
    get_metric(metric)
    if not recipes:
        raise ConfigurationError("No preprocessing recipes given")
    if not families:
        raise ConfigurationError("No model families given")
    if n_folds < 2:
        raise ConfigurationError(f"n_folds must be >= 2, got {n_folds}")
    if n_repeats < 1:
        raise ConfigurationError(f"n_repeats must be >= 1, got {n_repeats}")
    if search_budget < 1:
        raise ConfigurationError(f"search_budget must be >= 1, got {search_budget}")
    for kind, names in (("recipe", [r.name for r in recipes]), ("model", [f.name for f in families])):
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate {kind} names: {names}")


def _plain(value):
    """numpy scalars -> Python scalars, so params print and compare cleanly."""
    return value.item() if isinstance(value, np.generic) else value


def draw_candidates(space: Dict[str, Any], budget: int = SEARCH_BUDGET,
                    random_state: int = RANDOM_STATE) -> List[Dict[str, Any]]:
    """
    Candidate hyperparameter assignments for one (recipe, model) pair.
    A list-only space small enough for the budget is searched exhaustively;
    otherwise `budget` seeded random draws are taken.
    """
    if not space:
        return [{}]
    if all(isinstance(v, (list, tuple)) for v in space.values()):
        grid = ParameterGrid(space)
        if len(grid) <= budget:
            return [{k: _plain(v) for k, v in p.items()} for p in grid]
    sampler = ParameterSampler(space, n_iter=budget, random_state=random_state)
    return [{k: _plain(v) for k, v in p.items()} for p in sampler]


def search_space(recipe: Recipe, family: ModelFamily) -> Dict[str, Any]:
    """Recipe step parameters plus model parameters, in pipeline namespace."""
    space = dict(recipe.search_space)
    space.update({f"model__{k}": v for k, v in family.search_space.items()})
    return space


def enumerate_work_items(
    recipes: Sequence[Recipe],
    families: Sequence[ModelFamily],
    n_splits: int,
    search_budget: int = SEARCH_BUDGET,
    random_state: int = RANDOM_STATE,
) -> List[WorkItem]:
    """The whole grid, grouped by (recipe, model, candidate) with folds innermost."""
    items = []
    for recipe in recipes:
        for family in families:
            candidates = draw_candidates(search_space(recipe, family), search_budget, random_state)
            for c, params in enumerate(candidates):
                frozen = tuple(sorted(params.items()))
                items.extend(WorkItem(recipe.name, family.name, c, frozen, fold) for fold in range(n_splits))
    return items


def fit_cell(item: WorkItem, X: pd.DataFrame, y: pd.Series, train_idx: np.ndarray,
             recipe: Recipe, family: ModelFamily, random_state: int = RANDOM_STATE):
    """Build a fresh pipeline for `item` and fit it on the training rows only."""
    pipe = build_pipeline(recipe, family.build(random_state), item.param_dict(), random_state)
    return pipe.fit(X.iloc[train_idx], y.iloc[train_idx])


def evaluate_cell(item: WorkItem, X: pd.DataFrame, y: pd.Series, split: Tuple[np.ndarray, np.ndarray],
                  recipe: Recipe, family: ModelFamily, metric_fn, random_state: int = RANDOM_STATE,
                  strict_convergence: bool = False) -> CellResult:
    """Fit on the fold's training rows, score on its validation rows. Never raises."""
    train_idx, val_idx = split
    start = time.perf_counter()
    try:
        with warnings.catch_warnings():
            if strict_convergence:
                warnings.simplefilter("error", ConvergenceWarning)
            pipe = fit_cell(item, X, y, train_idx, recipe, family, random_state)
            score = float(metric_fn(y.iloc[val_idx], pipe.predict(X.iloc[val_idx])))
        if not np.isfinite(score):
            raise ValueError(f"non-finite score {score}")
    except Exception as exc:  # one failing cell must not abort the grid
        return CellResult(item, np.nan, f"{type(exc).__name__}: {exc}", time.perf_counter() - start)
    return CellResult(item, score, None, time.perf_counter() - start)


def aggregate(results: Sequence[CellResult], n_splits: int) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Per-candidate mean/variance over folds.
    A candidate counts only when every fold returned and none failed.

    Returns:
        (candidates, failures) DataFrames
    """
    by_key: Dict[Tuple[str, str, int], List[CellResult]] = {}
    for r in results:
        by_key.setdefault(r.item.key, []).append(r)

    rows, failures, incomplete = [], [], 0
    for (recipe, model, candidate), cells in by_key.items():
        params = cells[0].item.param_dict()
        failed = [c for c in cells if not c.ok]
        for c in failed:
            failures.append((recipe, model, candidate, params, c.item.fold, c.error))
        if failed:
            continue
        if len(cells) < n_splits:
            incomplete += 1
            continue
        scores = np.array([c.score for c in sorted(cells, key=lambda c: c.item.fold)])
        rows.append({
            "recipe": recipe,
            "model": model,
            "candidate": candidate,
            "params": params,
            "mean": float(scores.mean()),
            "variance": float(scores.var(ddof=1)) if len(scores) > 1 else 0.0,
            "std": float(scores.std(ddof=1)) if len(scores) > 1 else 0.0,
            "n_folds": len(scores),
        })
    if incomplete:
        logger.warning("%d candidate(s) left incomplete and not ranked", incomplete)

    candidates = pd.DataFrame(rows, columns=["recipe", "model", "candidate", "params", "mean", "variance", "std", "n_folds"])
    return candidates, pd.DataFrame(failures, columns=FAILURE_COLUMNS)


def rank(candidates: pd.DataFrame, metric: str = METRIC) -> pd.DataFrame:
    """
    Best candidate per (recipe, model), then all pairs ranked by mean score
    (higher first), lower fold variance, recipe and model name.
    """
    if candidates.empty:
        return pd.DataFrame(columns=LEADERBOARD_COLUMNS)

    ordered = candidates.sort_values(
        ["mean", "variance", "recipe", "model", "candidate"],
        ascending=[False, True, True, True, True],
        kind="mergesort",
    )
    counts = ordered.groupby(["recipe", "model"]).size().rename("n_candidates")
    best = ordered.drop_duplicates(["recipe", "model"], keep="first")
    best = best.join(counts, on=["recipe", "model"])

    board = best.rename(columns={"params": "best_params"}).reset_index(drop=True)
    board["rank"] = np.arange(1, len(board) + 1)
    board["metric"] = metric
    return board[LEADERBOARD_COLUMNS]


def screen(
    X: pd.DataFrame,
    y: pd.Series,
    recipes: Sequence[Recipe],
    families: Sequence[ModelFamily],
    metric: str = METRIC,
    n_folds: int = N_FOLDS,
    n_repeats: int = N_REPEATS,
    search_budget: int = SEARCH_BUDGET,
    random_state: int = RANDOM_STATE,
    n_jobs: int = N_JOBS,
    timeout: Optional[float] = SCREEN_TIMEOUT,
    strict_convergence: bool = False,
) -> ScreeningResult:
    """
    Cross-validated screening of every recipe x model family combination.

    Args:
        X: Labeled features (read-only, shared by all workers)
        y: Labels
        recipes: Preprocessing recipes
        families: Classifier families with search spaces
        metric: Name of a registered metric (higher is better)
        n_folds: Folds per repeat (>= 2)
        n_repeats: Repeats of the stratified k-fold split
        search_budget: Hyperparameter candidates per (recipe, model)
        random_state: Seed for folds, candidate draws, samplers and models
        n_jobs: joblib workers
        timeout: Seconds after which no new batch is submitted
        strict_convergence: Treat ConvergenceWarning as a cell failure

    Returns:
        ScreeningResult
    """
    validate_screening_config(recipes, families, metric, n_folds, n_repeats, search_budget)
    metric_fn = get_metric(metric)

    X = X.reset_index(drop=True)
    y = y.reset_index(drop=True)
    splits = list(make_splitter(n_folds, n_repeats, random_state).split(X, y))
    items = enumerate_work_items(recipes, families, len(splits), search_budget, random_state)
    recipes_by_name = {r.name: r for r in recipes}
    families_by_name = {f.name: f for f in families}
    logger.info("Screening %d recipes x %d models: %d cells on %d split(s)",
                len(recipes), len(families), len(items), len(splits))

    deadline = None if timeout is None else time.monotonic() + timeout
    batch_size = 4 * effective_n_jobs(n_jobs)
    results: List[CellResult] = []
    timed_out = False
    with Parallel(n_jobs=n_jobs) as parallel:
        for start in range(0, len(items), batch_size):
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                logger.warning("Timeout reached after %d of %d cells", len(results), len(items))
                break
            batch = items[start:start + batch_size]
            results.extend(parallel(
                delayed(evaluate_cell)(
                    item, X, y, splits[item.fold], recipes_by_name[item.recipe],
                    families_by_name[item.model], metric_fn, random_state, strict_convergence,
                )
                for item in batch
            ))

    candidates, failures = aggregate(results, len(splits))
    leaderboard = rank(candidates, metric)

    ranked = set(zip(leaderboard["recipe"], leaderboard["model"]))
    for pair in sorted(set(zip(failures["recipe"], failures["model"])) - ranked):
        logger.warning("No successful candidate for recipe=%s model=%s", *pair)
    logger.info("%d of %d cells failed", len(failures), len(results))

    return ScreeningResult(leaderboard, candidates, failures, results, metric, timed_out)
