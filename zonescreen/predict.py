"""
Prediction pipeline - integration.
Loads the saved best pipeline, cleans new samples the same way, predicts the
zone label of unlabeled intervals and writes a predictions CSV.
"""
import pickle
from pathlib import Path

from zonescreen.config import SAMPLES_CSV, OUTPUT_DIR, MODEL_ARTIFACT_DIR, ID_COLS, INTERVAL_COLS
from zonescreen.data import load_samples, split_X_y
from zonescreen.preprocess import clean_samples
from zonescreen.train import MODEL_FILE, ARTIFACTS_FILE


def load_artifacts(artifact_dir: Path = MODEL_ARTIFACT_DIR):
    """Return (fitted pipeline, artifacts dict) saved by train.py."""
    artifact_dir = Path(artifact_dir)
    artifacts_path = artifact_dir / ARTIFACTS_FILE
    model_path = artifact_dir / MODEL_FILE
    if not artifacts_path.exists() or not model_path.exists():
        raise FileNotFoundError(
            f"Model artifacts not found. Run train.py first.\n"
            f"Expected: {model_path} and {artifacts_path}"
        )

    with open(model_path, "rb") as f:
        model = pickle.load(f)
    with open(artifacts_path, "rb") as f:
        artifacts = pickle.load(f)
    return model, artifacts


def run_predict_pipeline(
    samples_path=SAMPLES_CSV,
    output_dir: Path = OUTPUT_DIR,
    artifact_dir: Path = MODEL_ARTIFACT_DIR,
    output_name: str = "predictions.csv",
    only_unlabeled: bool = True,
    verbose: bool = True,
) -> str:
    """
    Load samples, clean, predict, write predictions.
    Rows with unresolved cells are skipped. Returns path to the written file.
    """
    model, artifacts = load_artifacts(artifact_dir)
    target_col = artifacts["target_col"]

    cleaning = clean_samples(load_samples(samples_path), **artifacts["cleaning"], target_col=target_col)
    df = cleaning.data[cleaning.usable]
    if only_unlabeled and target_col in df.columns:
        df = df[df[target_col].isna()]

    X, _ = split_X_y(df, target_col=target_col, feature_cols=artifacts["elements"])
    preds = model.predict(X) if len(X) else []

    keep = [c for c in ID_COLS + INTERVAL_COLS if c in df.columns]
    predictions = df[keep].copy()
    predictions[f"predicted_{target_col}"] = preds

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    out_path = output_dir / output_name
    predictions.to_csv(out_path, index=False)
    if verbose:
        print(f"Predictions written to {out_path} ({len(predictions)} rows, "
              f"model={artifacts['model']}, recipe={artifacts['recipe']})")
    return str(out_path)


if __name__ == "__main__":
    run_predict_pipeline()
