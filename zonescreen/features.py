import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.decomposition import PCA

from zonescreen.compositions import Composition, Pair, all_pairs, clr, log_ratio, log_ratio_frame, log_ratio_name
from zonescreen.config import (
    SELECTION_CRITERION,
    MAX_LOG_RATIOS,
    MIN_RATIO_GAIN,
    INCLUDE_UNLABELED_IN_SELECTION,
    N_LOG_RATIO_FEATURES,
    ConfigurationError,
)

logger = logging.getLogger(__name__)

CRITERIA = ("variance", "separation")

# A candidate whose centred log-ratio lies (numerically) inside the span of the
# already selected ratios adds nothing.
RANK_TOL = 1e-10
# Gains closer than this are ties; the lexicographically first pair wins.
# Gains below it count as zero.
TIE_TOL = 1e-12


@dataclass(frozen=True)
class LogRatioStep:
    numerator: str
    denominator: str
    gain: float
    cumulative: float

    @property
    def name(self) -> str:
        return log_ratio_name(self.numerator, self.denominator)

    @property
    def pair(self) -> Pair:
        return (self.numerator, self.denominator)


@dataclass
class LogRatioSelection:
    """Ordered log-ratio ranking, best-explaining first."""
    steps: List[LogRatioStep]
    elements: List[str]
    n_rows: int
    criterion: str
    empty: bool = False
    reason: Optional[str] = None

    def __len__(self) -> int:
        return len(self.steps)

    def pairs(self, k: Optional[int] = None) -> List[Pair]:
        """Prefix of the ranking as (numerator, denominator) pairs."""
        steps = self.steps if k is None else self.steps[:k]
        return [s.pair for s in steps]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(s.name, s.numerator, s.denominator, s.gain, s.cumulative) for s in self.steps],
            columns=["log_ratio", "numerator", "denominator", "gain", "cumulative"],
        )


@dataclass
class _SelectionState:
    """Accumulator passed between greedy steps."""
    basis: np.ndarray          # orthonormal columns spanning the selected ratios
    residual: np.ndarray       # part of the target not yet explained
    selected: List[Pair] = field(default_factory=list)
    explained: float = 0.0


def _empty(elements, n_rows, criterion, reason) -> LogRatioSelection:
    logger.warning("No log-ratio features: %s", reason)
    return LogRatioSelection([], list(elements), n_rows, criterion, empty=True, reason=reason)


def _complete_cases(composition: pd.DataFrame) -> Tuple[pd.DataFrame, Optional[str]]:
    """
    Drop elements with no valid value, then rows with any missing/non-positive part.

    A row missing one element is dropped for every candidate, not only for the
    ratios that use that element, so all candidates are scored on the same rows.
    """
    values = composition.apply(pd.to_numeric, errors="coerce")
    valid = values.gt(0) & np.isfinite(values)

    kept = [c for c in values.columns if valid[c].any()]
    dropped = [c for c in values.columns if c not in kept]
    if dropped:
        logger.info("Dropping elements with no positive values: %s", dropped)
    if len(kept) < 2:
        return values[kept], "fewer than two elements with valid values"

    rows = valid[kept].all(axis=1)
    if rows.sum() < 2:
        return values.loc[rows, kept], "fewer than two complete rows"
    return values.loc[rows, kept], None


def _target_matrix(matrix: pd.DataFrame, labels: Optional[pd.Series], criterion: str) -> Tuple[np.ndarray, float]:
    """Centred target matrix and the total CLR variance it is measured against."""
    z = clr(matrix)
    z = z - z.mean(axis=0)
    scale = float((z.to_numpy() ** 2).sum())
    if criterion == "separation":
        z = z.groupby(labels.loc[z.index]).transform("mean")
    return z.to_numpy(), scale


def _centred_log_ratio(logs: pd.DataFrame, pair: Pair) -> np.ndarray:
    x = (logs[pair[0]] - logs[pair[1]]).to_numpy()
    return x - x.mean()


def score_candidate(state: _SelectionState, x: np.ndarray, total: float) -> float:
    """Marginal explained fraction of adding centred log-ratio x to the selected set."""
    norm0 = float(x @ x)
    if norm0 == 0.0:
        return 0.0
    r = x - state.basis @ (state.basis.T @ x)
    norm = float(r @ r)
    if norm <= RANK_TOL * norm0:
        return 0.0
    proj = r @ state.residual
    gain = float(proj @ proj) / norm / total
    return gain if gain > TIE_TOL else 0.0


def advance(state: _SelectionState, pair: Pair, x: np.ndarray, gain: float) -> _SelectionState:
    """Next state after selecting `pair`; the input state is left untouched."""
    r = x - state.basis @ (state.basis.T @ x)
    if float(r @ r) <= RANK_TOL * float(x @ x):
        # already spanned: ranked, but the basis and explained fraction stay put
        return _SelectionState(state.basis, state.residual, state.selected + [pair], state.explained)
    q = r / np.linalg.norm(r)
    return _SelectionState(
        basis=np.column_stack([state.basis, q]),
        residual=state.residual - np.outer(q, q @ state.residual),
        selected=state.selected + [pair],
        explained=min(1.0, state.explained + gain),
    )


def _best_candidate(scores: Sequence[Tuple[Pair, float]]) -> Tuple[Optional[Pair], float]:
    # scores arrive in lexicographic pair order; only a strictly larger gain replaces the leader
    best, best_gain = None, -np.inf
    for pair, gain in scores:
        if gain > best_gain + TIE_TOL:
            best, best_gain = pair, gain
    return best, best_gain


def select_log_ratios(
    composition: pd.DataFrame,
    labels: Optional[pd.Series] = None,
    criterion: str = SELECTION_CRITERION,
    max_ratios: Optional[int] = MAX_LOG_RATIOS,
    min_gain: Optional[float] = MIN_RATIO_GAIN,
    include_unlabeled: bool = INCLUDE_UNLABELED_IN_SELECTION,
    n_jobs: int = 1,
) -> LogRatioSelection:
    """
    Greedy stepwise selection of pairwise log-ratios.

    At each step every unselected element pair is scored by how much of the
    target it explains on top of the ratios already chosen; the best one is
    kept. Without a threshold every pair is ranked; pairs that add nothing
    come last in name order. With criterion="variance" the target is the total log-ratio variance
    of the composition, with criterion="separation" it is the between-class
    part of that variance.

    Args:
        composition: Element concentrations (rows = samples, columns = elements)
        labels: Class labels aligned with composition; required for "separation"
        criterion: "variance" or "separation"
        max_ratios: Stop after this many ratios (None = no limit)
        min_gain: Stop when the best marginal gain drops below this (None = rank every candidate)
        include_unlabeled: Keep unlabeled rows for the "variance" criterion
        n_jobs: Workers for scoring the candidates of one step

    Returns:
        LogRatioSelection, with empty=True and a reason when nothing can be selected
    """
    if criterion not in CRITERIA:
        raise ConfigurationError(f"Unknown selection criterion {criterion!r}; expected one of {CRITERIA}")
    if criterion == "separation" and labels is None:
        raise ConfigurationError("The 'separation' criterion needs class labels")
    if max_ratios is not None and max_ratios < 1:
        raise ConfigurationError(f"max_ratios must be >= 1, got {max_ratios}")

    if labels is not None and (criterion == "separation" or not include_unlabeled):
        composition = composition.loc[labels.loc[composition.index].notna()]

    matrix, problem = _complete_cases(composition)
    if problem:
        return _empty(matrix.columns, len(matrix), criterion, problem)

    target, scale = _target_matrix(matrix, labels, criterion)
    total = float((target ** 2).sum())
    if scale <= 0 or total <= RANK_TOL * scale:
        return _empty(matrix.columns, len(matrix), criterion, "no variance to explain")

    logs = np.log(matrix)
    candidates = {pair: _centred_log_ratio(logs, pair) for pair in all_pairs(matrix.columns)}
    state = _SelectionState(basis=np.empty((len(matrix), 0)), residual=target)
    limit = len(candidates) if max_ratios is None else min(max_ratios, len(candidates))
    steps = []

    while len(steps) < limit:
        remaining = [p for p in candidates if p not in state.selected]
        if not remaining:
            break
        if n_jobs == 1:
            gains = [score_candidate(state, candidates[p], total) for p in remaining]
        else:
            gains = Parallel(n_jobs=n_jobs, prefer="threads")(
                delayed(score_candidate)(state, candidates[p], total) for p in remaining
            )
        pair, gain = _best_candidate(zip(remaining, gains))
        if pair is None or (min_gain is not None and gain < min_gain):
            break
        state = advance(state, pair, candidates[pair], gain)
        steps.append(LogRatioStep(pair[0], pair[1], gain, state.explained))
        logger.debug("Step %d: %s gain=%.4f cumulative=%.4f",
                     len(steps), log_ratio_name(*pair), gain, state.explained)

    logger.info("Selected %d log-ratio(s) from %d elements on %d rows (%.1f%% %s explained)",
                len(steps), matrix.shape[1], len(matrix), 100 * state.explained, criterion)
    return LogRatioSelection(steps, list(matrix.columns), len(matrix), criterion)


def _as_frame(X, columns, owner: str) -> pd.DataFrame:
    if isinstance(X, pd.DataFrame):
        return X
    if columns is None:
        raise ValueError(f"{owner} needs `columns` when given an array")
    return pd.DataFrame(np.asarray(X, dtype=float), columns=list(columns))


class LogRatioTransformer(BaseEstimator, TransformerMixin):
    """
    Stateless transformer: element concentrations -> the given pairwise log-ratios.
    Undefined ratios come out as NaN, so follow it with an imputer.
    """

    def __init__(self, pairs=(), columns=None):
        self.pairs = pairs
        self.columns = columns

    def fit(self, X, y=None):
        self.n_features_in_ = np.asarray(X).shape[1]
        return self

    def transform(self, X):
        frame = _as_frame(X, self.columns, type(self).__name__)
        return np.column_stack([log_ratio(frame[a].to_numpy(), frame[b].to_numpy()) for a, b in self.pairs])

    def get_feature_names_out(self, input_features=None):
        return np.array([log_ratio_name(a, b) for a, b in self.pairs], dtype=object)



class LogRatioSelector(BaseEstimator, TransformerMixin):
    """
    Fitted log-ratio features for a recipe.

    `fit` ranks the log-ratios on the rows it is given (the training part of a
    fold) and keeps the first `n_ratios` pairs with a positive gain; `transform`
    applies those pairs unchanged. With criterion="separation" the labels
    passed to `fit` drive the ranking.
    """

    def __init__(self, n_ratios=N_LOG_RATIO_FEATURES, criterion=SELECTION_CRITERION, columns=None):
        self.n_ratios = n_ratios
        self.criterion = criterion
        self.columns = columns

    def fit(self, X, y=None):
        frame = _as_frame(X, self.columns, type(self).__name__)
        labels = None if y is None else pd.Series(np.asarray(y), index=frame.index)
        self.selection_ = select_log_ratios(
            frame, labels=labels, criterion=self.criterion, max_ratios=self.n_ratios, min_gain=None,
        )
        self.pairs_ = [s.pair for s in self.selection_.steps if s.gain > 0]
        if not self.pairs_:
            reason = self.selection_.reason or "no ratio explains anything"
            raise ValueError(f"No log-ratio features on the training rows: {reason}")
        self.transformer_ = LogRatioTransformer(pairs=tuple(self.pairs_), columns=self.columns).fit(frame)
        self.n_features_in_ = frame.shape[1]
        return self

    def transform(self, X):
        return self.transformer_.transform(X)

    def get_feature_names_out(self, input_features=None):
        return self.transformer_.get_feature_names_out()


def clr_pca(composition: pd.DataFrame) -> Tuple[pd.Series, pd.DataFrame]:
    """
    Compositional PCA diagnostic on complete rows.
    Returns (explained variance ratio per component, loadings components x elements).
    """
    matrix, problem = _complete_cases(composition)
    if problem:
        raise ValueError(f"Cannot run compositional PCA: {problem}")
    z = clr(matrix)
    pca = PCA().fit(z)
    names = [f"PC{i + 1}" for i in range(pca.n_components_)]
    ratios = pd.Series(pca.explained_variance_ratio_, index=names)
    loadings = pd.DataFrame(pca.components_, index=names, columns=matrix.columns)
    return ratios, loadings



def compositional_centre(composition: pd.DataFrame, total: float = 1.0) -> Composition:
    """Closed geometric mean of the complete rows."""
    matrix, problem = _complete_cases(composition)
    if problem:
        raise ValueError(f"Cannot compute the compositional centre: {problem}")
    centre = np.exp(np.log(matrix).mean(axis=0))
    return Composition(centre.to_dict()).closure(total)


def add_log_ratio_features(df: pd.DataFrame, selection: LogRatioSelection, k: Optional[int] = None) -> pd.DataFrame:
    """Append the first k selected log-ratios as columns (NaN where undefined)."""
    return pd.concat([df, log_ratio_frame(df, selection.pairs(k))], axis=1)
