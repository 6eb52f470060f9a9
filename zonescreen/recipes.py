"""
Preprocessing recipes.
A recipe is a named, ordered list of step factories. Factories build new,
unfitted transformers every time, so each cross-validation fold fits its own.
Exposes: Recipe, base_recipe(), pca_recipe(), logratio_recipe(), default_recipes()
"""
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from imblearn.over_sampling import SMOTE
from imblearn.pipeline import Pipeline as ImbPipeline
from sklearn.decomposition import PCA
from sklearn.feature_selection import VarianceThreshold
from sklearn.impute import SimpleImputer
from sklearn.preprocessing import PowerTransformer, StandardScaler

from zonescreen.config import N_LOG_RATIO_FEATURES, RANDOM_STATE, SELECTION_CRITERION
from zonescreen.features import LogRatioSelector

StepFactory = Callable[[int], object]


@dataclass(frozen=True)
class Recipe:
    """
    name: recipe name shown on the leaderboard
    steps: (step name, factory(random_state) -> transformer or sampler)
    search_space: tunable step parameters, keyed "<step>__<param>"
    """
    name: str
    steps: Tuple[Tuple[str, StepFactory], ...]
    search_space: Dict[str, object] = field(default_factory=dict)

    def build_steps(self, random_state: int = RANDOM_STATE) -> List[Tuple[str, object]]:
        return [(name, factory(random_state)) for name, factory in self.steps]


def build_pipeline(recipe: Recipe, estimator, params: Optional[dict] = None,
                   random_state: int = RANDOM_STATE) -> ImbPipeline:
    """Fresh, unfitted recipe steps followed by the estimator as step "model"."""
    pipe = ImbPipeline(recipe.build_steps(random_state) + [("model", estimator)])
    if params:
        pipe.set_params(**params)
    return pipe


# ---------------------------------------------------------------------
# Step factories
# ---------------------------------------------------------------------
def _impute(random_state):
    return SimpleImputer(strategy="median")


def _zero_variance(random_state):
    return VarianceThreshold(threshold=0.0)


def _yeo_johnson(random_state):
    return PowerTransformer(method="yeo-johnson", standardize=False)


def _scale(random_state):
    return StandardScaler()


def _smote(random_state):
    return SMOTE(random_state=random_state, k_neighbors=5)


def _pca(random_state):
    return PCA(n_components=0.95, random_state=random_state)


def _log_ratios(n_ratios, criterion, columns, random_state):
    return LogRatioSelector(n_ratios=n_ratios, criterion=criterion, columns=columns)


BASE_STEPS = (
    ("impute", _impute),
    ("zero_variance", _zero_variance),
    ("normalize", _yeo_johnson),
    ("scale", _scale),
    ("rebalance", _smote),
)


def base_recipe(rebalance: bool = True) -> Recipe:
    """Median impute, drop zero-variance columns, Yeo-Johnson, standardise, SMOTE."""
    steps = BASE_STEPS if rebalance else BASE_STEPS[:-1]
    return Recipe("base" if rebalance else "base_no_smote", steps)


def pca_recipe() -> Recipe:
    """base + PCA, keeping a tunable fraction of variance."""
    return Recipe(
        "pca",
        BASE_STEPS + (("reduce", _pca),),
        search_space={"reduce__n_components": [0.8, 0.9, 0.95]},
    )


def logratio_recipe(n_ratios: int = N_LOG_RATIO_FEATURES, criterion: str = SELECTION_CRITERION,
                    columns: Optional[Sequence[str]] = None, name: str = "logratio") -> Recipe:
    """
    Log-ratios ranked on each fold's training rows in place of raw
    concentrations, then impute, filter, scale, SMOTE.
    """
    log_ratios = partial(_log_ratios, n_ratios, criterion, None if columns is None else tuple(columns))
    return Recipe(
        name,
        (("log_ratios", log_ratios), ("impute", _impute), ("zero_variance", _zero_variance),
         ("scale", _scale), ("rebalance", _smote)),
    )


def default_recipes(n_log_ratios: int = 0, criterion: str = SELECTION_CRITERION) -> List[Recipe]:
    """base and pca always; logratio when n_log_ratios > 0."""
    recipes = [base_recipe(), pca_recipe()]
    if n_log_ratios > 0:
        recipes.append(logratio_recipe(n_log_ratios, criterion))
    return recipes
