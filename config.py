# config.py

import os

# ==========================================================
# SECTION 1: CORE PIPELINE CONTROL
# ==========================================================

# --- Execution Control ---
TRAIN = True   # Set to False to only score the unlabeled test table with saved artifacts
PREDICT_TEST_TABLE = True  # Score the unlabeled test table after evaluation (if the file exists)

# --- Framework Rerun Flags ---
# Use these to force specific stages to run again, ignoring checkpoints.
FORCE_RERUN_SETUP = False
FORCE_RERUN_PREPROCESSING = False
FORCE_RERUN_TRAINING = False

# ==========================================================
# SECTION 2: PATHS & GLOBAL CONSTANTS
# ==========================================================

# --- Path Configuration ---
# WLE_DATA_DIR points at the folder holding the training and test CSV files.
PARENT_DIR = os.environ.get("WLE_DATA_DIR", os.path.join(os.getcwd(), "data"))
TRAIN_CSV_PATH = os.path.join(PARENT_DIR, "pml-training.csv")
TEST_CSV_PATH = os.path.join(PARENT_DIR, "pml-testing.csv")
MODEL_SAVE_DIR = os.path.join(PARENT_DIR, "pre_trained_model")

SPLIT_PATH = os.path.join(MODEL_SAVE_DIR, "split_partition.pkl")
PIPELINE_PATH = os.path.join(MODEL_SAVE_DIR, "fitted_pipeline.pkl")
MODEL_PATH = os.path.join(MODEL_SAVE_DIR, "trained_model.pkl")
PREDICTIONS_PATH = os.path.join(MODEL_SAVE_DIR, "test_predictions.csv")

# --- Global Constants ---
# The seed drives the split, the CV folds and the forest.
RANDOM_STATE = 18181
N_JOBS = -1  # Workers for the cross-validation grid search (-1 = all cores)
COLUMN_STATS_N_JOBS = 1  # Workers for per-column statistics in the NZV filter

# ==========================================================
# SECTION 3: PREPROCESSING CONFIGURATION
# ==========================================================

# --- 3.1 Split ---
# Share of rows held out for validation, drawn per class.
VALIDATION_FRACTION = 0.2
MIN_ROWS_PER_CLASS = 5  # Stratification is refused below this many rows in any class

# --- 3.2 Column Filters ---
# A column is dropped when its missing fraction reaches this value.
SPARSE_COLUMN_THRESHOLD = 0.9

# Near-zero-variance rule: both cuts must hold for a column to be dropped.
NZV_FREQ_CUT = 95 / 5   # most frequent / second most frequent value count
NZV_UNIQUE_CUT = 10     # percent of distinct values relative to row count

# --- 3.3 Correlation Pruning ---
# CRITICAL: Columns are removed until no pair has |r| above this value.
CORRELATION_CUTOFF = 0.9

# --- 3.4 Dimensionality Reduction ---
# Minimum cumulative explained variance retained by the leading components.
# Recommended range: 0.8 (current) to 0.95.
PCA_VARIANCE_THRESHOLD = 0.8

# ==========================================================
# SECTION 4: MODEL & TRAINING CONFIGURATION
# ==========================================================

# --- 4.1 Resampling ---
CV_FOLDS = 5
CV_REPEATS = 3

# --- 4.2 Random Forest ---
# Impact: more trees give a steadier estimate at a linear cost in training time.
N_ESTIMATORS = 200
# Candidate values for the number of components tried at each split (mtry).
# Values larger than the number of retained components are skipped.
MAX_FEATURES_GRID = [2, 4, 8, 16]

# ==========================================================
# SECTION 5: STATIC DEFINITIONS
# ==========================================================

# --- Label Definitions ---
LABEL_COL = 'classe'
CLASS_LABELS = ['A', 'B', 'C', 'D', 'E']

# --- Raw Table Definitions ---
ROW_INDEX_COL = 'X'
# Header names an unnamed first column may receive from the CSV reader.
UNNAMED_INDEX_ALIASES = ['', 'column_1', 'Unnamed: 0']

# Identifier, timestamp and window columns; never used as features.
METADATA_COLS = [
    ROW_INDEX_COL,
    'user_name',
    'raw_timestamp_part_1',
    'raw_timestamp_part_2',
    'cvtd_timestamp',
    'new_window',
    'num_window',
    'problem_id',
]

# Tokens normalized to a missing value when the CSV is read.
MISSING_VALUE_TOKENS = ['', 'NA', '#DIV/0!']

# ==========================================================
# List of keys to monitor for artifact regeneration
# ==========================================================
# pipeline_stages.py writes these values, with a digest of the training CSV, into a
# fingerprint file next to each saved artifact. A mismatch forces that stage to rerun.
PIPELINE_CONFIG_KEYS = [
    # --- Split ---
    'RANDOM_STATE', 'VALIDATION_FRACTION', 'MIN_ROWS_PER_CLASS',

    # --- Preprocessing ---
    'SPARSE_COLUMN_THRESHOLD', 'NZV_FREQ_CUT', 'NZV_UNIQUE_CUT',
    'CORRELATION_CUTOFF', 'PCA_VARIANCE_THRESHOLD',

    # --- Training ---
    'CV_FOLDS', 'CV_REPEATS', 'N_ESTIMATORS', 'MAX_FEATURES_GRID',

    # --- Data Shape ---
    'LABEL_COL', 'CLASS_LABELS', 'METADATA_COLS',
]
