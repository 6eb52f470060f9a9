"""
Configuration for the zone screening pipeline.
Paths, column names, cleaning rules, and screening settings.
"""
from pathlib import Path

# Project root (parent of zonescreen/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Data paths (raw CSVs are read-only)
DATA_DIR = PROJECT_ROOT / "data"
SAMPLES_CSV = DATA_DIR / "samples.csv"

# Output paths
OUTPUT_DIR = PROJECT_ROOT / "outputs"
MODEL_ARTIFACT_DIR = PROJECT_ROOT / "data" / "processed"

# Identifier, interval and target columns
HOLE_COL = "HoleID"
FROM_COL = "From"
TO_COL = "To"
SAMPLE_COL = "SampleID"
TARGET_COL = "Class"
ID_COLS = [HOLE_COL, SAMPLE_COL]
INTERVAL_COLS = [FROM_COL, TO_COL]

# Cleaning rules
SENTINEL_VALUES = (-999,)      # numeric "missing" codes, any column
SENTINEL_SYMBOLS = ("?",)      # placeholder symbols, any column (label included)
CENSOR_DIVISOR = 2.0           # "<t" -> t / CENSOR_DIVISOR
COMPOSITE_LENGTH = None        # expected To - From; None = most common length
COMPOSITE_TOLERANCE = 1e-6

# Log-ratio selection
SELECTION_CRITERION = "variance"     # "variance" or "separation"
MAX_LOG_RATIOS = None                # None = no count limit
MIN_RATIO_GAIN = None                # None = rank every candidate pair
INCLUDE_UNLABELED_IN_SELECTION = True
N_LOG_RATIO_FEATURES = 4             # log-ratios the logratio recipe keeps per fold

# Validation settings
HOLDOUT_SIZE = 0.2
RANDOM_STATE = 42
N_FOLDS = 5
N_REPEATS = 1
SEARCH_BUDGET = 5                    # hyperparameter draws per (recipe, model)
METRIC = "f1_macro"
N_JOBS = 1
SCREEN_TIMEOUT = None                # seconds; None = no limit


class ConfigurationError(ValueError):
    """Invalid settings, raised before any computation starts."""
