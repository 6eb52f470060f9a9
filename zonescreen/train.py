"""
Screening pipeline - integration.
Wires cleaning, log-ratio selection, screening and holdout evaluation together.
1) Clean the raw assay table
2) Split labeled rows into train/holdout
3) Rank log-ratios on the training (and optionally unlabeled) rows for reporting
4) Screen recipes x models with cross-validation on train
   (the logratio recipe re-ranks log-ratios inside every fold)
5) Refit the top-ranked pipeline on train, score it on holdout
6) Save leaderboard, reports, model and artifacts for predict.py
"""
import argparse
import logging
import pickle
from pathlib import Path

from sklearn.dummy import DummyClassifier

from zonescreen.config import (
    SAMPLES_CSV,
    OUTPUT_DIR,
    MODEL_ARTIFACT_DIR,
    TARGET_COL,
    SENTINEL_VALUES,
    SENTINEL_SYMBOLS,
    CENSOR_DIVISOR,
    SELECTION_CRITERION,
    MAX_LOG_RATIOS,
    MIN_RATIO_GAIN,
    INCLUDE_UNLABELED_IN_SELECTION,
    N_LOG_RATIO_FEATURES,
    HOLDOUT_SIZE,
    RANDOM_STATE,
    N_FOLDS,
    N_REPEATS,
    SEARCH_BUDGET,
    METRIC,
    N_JOBS,
    SCREEN_TIMEOUT,
)
from zonescreen.data import load_samples, element_columns, split_X_y, get_train_holdout_split
from zonescreen.preprocess import clean_samples
from zonescreen.features import select_log_ratios, add_log_ratio_features, clr_pca, compositional_centre
from zonescreen.recipes import default_recipes, build_pipeline
from zonescreen.model import default_families
from zonescreen.screening import screen, validate_screening_config
from zonescreen.evaluate import run_validation, holdout_report


MODEL_FILE = "model.pkl"
ARTIFACTS_FILE = "artifacts.pkl"


def run_screening_pipeline(
    samples_path=SAMPLES_CSV,
    output_dir: Path = OUTPUT_DIR,
    artifact_dir: Path = MODEL_ARTIFACT_DIR,
    model_names=None,
    sentinel_values=SENTINEL_VALUES,
    sentinel_symbols=SENTINEL_SYMBOLS,
    censor_divisor: float = CENSOR_DIVISOR,
    selection_criterion: str = SELECTION_CRITERION,
    max_log_ratios=MAX_LOG_RATIOS,
    min_ratio_gain: float = MIN_RATIO_GAIN,
    include_unlabeled: bool = INCLUDE_UNLABELED_IN_SELECTION,
    n_log_ratio_features: int = N_LOG_RATIO_FEATURES,
    holdout_size: float = HOLDOUT_SIZE,
    metric: str = METRIC,
    n_folds: int = N_FOLDS,
    n_repeats: int = N_REPEATS,
    search_budget: int = SEARCH_BUDGET,
    random_state: int = RANDOM_STATE,
    n_jobs: int = N_JOBS,
    timeout=SCREEN_TIMEOUT,
    verbose: bool = True,
) -> dict:
    """
    Full screening pipeline. Returns metrics dict.
    """
    output_dir = Path(output_dir)
    artifact_dir = Path(artifact_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    artifact_dir.mkdir(parents=True, exist_ok=True)

    # Settings are checked before any data is touched
    families = default_families(model_names)
    validate_screening_config(default_recipes(), families, metric, n_folds, n_repeats, search_budget)

    # 1. Load and clean
    raw = load_samples(samples_path)
    cleaning = clean_samples(
        raw,
        sentinel_values=sentinel_values,
        sentinel_symbols=sentinel_symbols,
        censor_divisor=censor_divisor,
    )
    data = cleaning.data
    elements = element_columns(data)
    if verbose:
        print(f"Samples after cleaning: {data.shape}")
        print(f"Censored cells resolved: {int(cleaning.censored.values.sum())}")
        print(f"Unresolved cells: {len(cleaning.issues)}, interval flags: {len(cleaning.interval_flags)}")
        print("\nMissing value summary:")
        report = cleaning.missing_report
        print(report[report["n_missing"] > 0].to_string())

    # 2. Holdout split on labeled, usable rows
    labeled = cleaning.supervised_rows()
    if labeled[TARGET_COL].nunique() < 2:
        raise ValueError(f"Need at least two classes in '{TARGET_COL}' to screen classifiers")
    train_df, holdout_df = get_train_holdout_split(labeled, holdout_size=holdout_size, random_state=random_state)
    X_train, y_train = split_X_y(train_df, feature_cols=elements)
    X_holdout, y_holdout = split_X_y(holdout_df, feature_cols=elements)

    # 3. Log-ratio ranking and compositional diagnostics (holdout rows never seen)
    usable = data[cleaning.usable]
    selection_rows = usable[~usable.index.isin(holdout_df.index)]
    selection = select_log_ratios(
        selection_rows[elements],
        labels=selection_rows[TARGET_COL],
        criterion=selection_criterion,
        max_ratios=max_log_ratios,
        min_gain=min_ratio_gain,
        include_unlabeled=include_unlabeled,
        n_jobs=n_jobs,
    )
    if verbose:
        if selection.empty:
            print(f"\nNo log-ratio features: {selection.reason}")
        else:
            print("\nLog-ratio ranking:")
            print(selection.to_frame().to_string(index=False))

    diagnostics = None
    if not selection.empty:
        diagnostics = clr_pca(selection_rows[elements]), compositional_centre(selection_rows[elements])
        if verbose:
            variance_ratios, _ = diagnostics[0]
            print("\nCompositional PCA (explained variance ratio):")
            print(variance_ratios.round(4).to_string())

    # 4. Screening
    recipes = default_recipes(n_log_ratio_features, selection_criterion)
    screening = screen(
        X_train, y_train, recipes, families,
        metric=metric,
        n_folds=n_folds,
        n_repeats=n_repeats,
        search_budget=search_budget,
        random_state=random_state,
        n_jobs=n_jobs,
        timeout=timeout,
    )
    baseline = run_validation(
        X_train, y_train, DummyClassifier(strategy="most_frequent"),
        n_folds=n_folds, random_state=random_state, metric=metric,
    )
    if verbose:
        print(f"\nLeaderboard ({metric}):")
        print(screening.leaderboard.to_string(index=False))
        print(f"Majority-class baseline: {baseline['mean']:.4f} ± {baseline['std']:.4f}")
        if not screening.failures.empty:
            print(f"Failed cells: {len(screening.failures)}")

    # 5. Refit the winner on the whole training split, score on holdout
    best = screening.best()
    recipe = {r.name: r for r in recipes}[best["recipe"]]
    family = {f.name: f for f in families}[best["model"]]
    pipeline = build_pipeline(recipe, family.build(random_state), best["best_params"], random_state)
    pipeline.fit(X_train, y_train)
    holdout = holdout_report(pipeline, X_holdout, y_holdout, metric=metric)
    if verbose:
        print(f"\nBest pipeline: recipe={best['recipe']} model={best['model']} params={best['best_params']}")
        print(f"Holdout {metric}: {holdout['score']:.4f}")
        print(holdout["confusion_matrix"].to_string())

    # 6. Save reports and artifacts
    screening.leaderboard.to_csv(output_dir / "leaderboard.csv", index=False)
    screening.failures.to_csv(output_dir / "failures.csv", index=False)
    selection.to_frame().to_csv(output_dir / "log_ratios.csv", index=False)
    cleaning.issues_frame().to_csv(output_dir / "data_quality_issues.csv", index=False)
    cleaning.censored.to_csv(output_dir / "censored_flags.csv")
    cleaning.missing_report.to_csv(output_dir / "missingness.csv")
    if cleaning.missing_by_label is not None:
        cleaning.missing_by_label.to_csv(output_dir / "missingness_by_label.csv")
    add_log_ratio_features(data, selection, n_log_ratio_features).to_csv(
        output_dir / "samples_clean.csv", index=False
    )
    if diagnostics is not None:
        (variance_ratios, loadings), centre = diagnostics
        variance_ratios.rename("explained_variance_ratio").to_csv(output_dir / "clr_pca_variance.csv")
        loadings.to_csv(output_dir / "clr_pca_loadings.csv")
        centre.to_series().rename("closed_geometric_mean").to_csv(output_dir / "compositional_centre.csv")

    artifacts = {
        "elements": elements,
        "target_col": TARGET_COL,
        "recipe": best["recipe"],
        "model": best["model"],
        "params": best["best_params"],
        "metric": metric,
        "log_ratios": (
            pipeline.named_steps["log_ratios"].pairs_ if "log_ratios" in pipeline.named_steps
            else selection.pairs(n_log_ratio_features)
        ),
        "cleaning": {
            "sentinel_values": tuple(sentinel_values),
            "sentinel_symbols": tuple(sentinel_symbols),
            "censor_divisor": censor_divisor,
        },
        "leaderboard": screening.leaderboard,
    }
    with open(artifact_dir / MODEL_FILE, "wb") as f:
        pickle.dump(pipeline, f)
    with open(artifact_dir / ARTIFACTS_FILE, "wb") as f:
        pickle.dump(artifacts, f)
    if verbose:
        print(f"Model saved to {artifact_dir / MODEL_FILE}")

    return {
        "cv_mean": float(best["mean"]),
        "cv_variance": float(best["variance"]),
        "baseline_mean": baseline["mean"],
        "holdout_score": holdout["score"],
        "holdout_f1_macro": holdout["f1_macro"],
        "n_ranked": len(screening.leaderboard),
        "n_failed_cells": len(screening.failures),
        "timed_out": screening.timed_out,
    }


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Screen classifiers that predict zone labels from assay compositions.")
    parser.add_argument("--samples", default=str(SAMPLES_CSV), help="raw sample CSV")
    parser.add_argument("--output-dir", default=str(OUTPUT_DIR))
    parser.add_argument("--artifact-dir", default=str(MODEL_ARTIFACT_DIR))
    parser.add_argument("--models", nargs="+", default=None, help="model families to screen (default: all)")
    parser.add_argument("--sentinel-values", nargs="*", type=float, default=list(SENTINEL_VALUES))
    parser.add_argument("--sentinel-symbols", nargs="*", default=list(SENTINEL_SYMBOLS))
    parser.add_argument("--censor-divisor", type=float, default=CENSOR_DIVISOR)
    parser.add_argument("--criterion", choices=["variance", "separation"], default=SELECTION_CRITERION)
    parser.add_argument("--max-log-ratios", type=int, default=MAX_LOG_RATIOS)
    parser.add_argument("--min-ratio-gain", type=float, default=MIN_RATIO_GAIN)
    parser.add_argument("--exclude-unlabeled", action="store_true",
                        help="drop unlabeled rows from the log-ratio variance computation")
    parser.add_argument("--n-log-ratio-features", type=int, default=N_LOG_RATIO_FEATURES)
    parser.add_argument("--holdout-size", type=float, default=HOLDOUT_SIZE)
    parser.add_argument("--metric", default=METRIC)
    parser.add_argument("--folds", type=int, default=N_FOLDS)
    parser.add_argument("--repeats", type=int, default=N_REPEATS)
    parser.add_argument("--budget", type=int, default=SEARCH_BUDGET)
    parser.add_argument("--seed", type=int, default=RANDOM_STATE)
    parser.add_argument("--jobs", type=int, default=N_JOBS)
    parser.add_argument("--timeout", type=float, default=SCREEN_TIMEOUT)
    parser.add_argument("--quiet", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> dict:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.WARNING if args.quiet else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")
    return run_screening_pipeline(
        samples_path=args.samples,
        output_dir=Path(args.output_dir),
        artifact_dir=Path(args.artifact_dir),
        model_names=args.models,
        sentinel_values=tuple(args.sentinel_values),
        sentinel_symbols=tuple(args.sentinel_symbols),
        censor_divisor=args.censor_divisor,
        selection_criterion=args.criterion,
        max_log_ratios=args.max_log_ratios,
        min_ratio_gain=args.min_ratio_gain,
        include_unlabeled=not args.exclude_unlabeled,
        n_log_ratio_features=args.n_log_ratio_features,
        holdout_size=args.holdout_size,
        metric=args.metric,
        n_folds=args.folds,
        n_repeats=args.repeats,
        search_budget=args.budget,
        random_state=args.seed,
        n_jobs=args.jobs,
        timeout=args.timeout,
        verbose=not args.quiet,
    )


if __name__ == "__main__":
    main()
