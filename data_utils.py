# data_utils.py

import os
from dataclasses import dataclass

import numpy as np
import pandas as pd
import polars as pl
from sklearn.model_selection import train_test_split

# Import the project's configuration settings
import config


class DegenerateSplitError(ValueError):
    """Raised when the labels cannot support a stratified train/validation split."""


def load_data(csv_path: str) -> pl.DataFrame:
    """
    Reads a raw sensor table from CSV.

    Every column is read as text so that no sensor column is silently
    dropped by schema inference; the missing-value tokens listed in
    config.MISSING_VALUE_TOKENS are normalized to null at this point.
    An unnamed first column is treated as the row index.

    Args:
        csv_path (str): Path to the training or test CSV.
    """
    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"Sensor table not found: {csv_path}")

    print(f"Loading sensor data from {csv_path}...")
    df = pl.read_csv(csv_path, null_values=config.MISSING_VALUE_TOKENS, infer_schema_length=0)

    first_col = df.columns[0]
    if first_col in config.UNNAMED_INDEX_ALIASES:
        df = df.rename({first_col: config.ROW_INDEX_COL})

    print(f"Sensor data loaded. Shape: {df.shape}")
    return df


def select_columns(df: pl.DataFrame, label_col: str | None = config.LABEL_COL):
    """
    Splits a raw table into a numeric feature matrix and a label vector.

    Metadata columns (config.METADATA_COLS) are dropped. Every other column
    is coerced to float; tokens that do not parse become NaN. Row order is
    kept, so position i of the features matches position i of the labels.

    Args:
        df (pl.DataFrame): Raw table as returned by load_data.
        label_col (str | None): Name of the label column, or None for an
            unlabeled table.

    Returns:
        (pd.DataFrame, pd.Series | None): features and labels.
    """
    if label_col is not None and label_col not in df.columns:
        raise ValueError(f"Label column '{label_col}' not found in the table.")

    # Never let the label leak into the features, even for an unlabeled call
    excluded = set(config.METADATA_COLS) | {config.LABEL_COL}
    if label_col is not None:
        excluded.add(label_col)
    sensor_cols = [c for c in df.columns if c not in excluded]

    numeric = df.select([
        pl.col(c).cast(pl.Utf8).str.strip_chars().cast(pl.Float64, strict=False).alias(c)
        for c in sensor_cols
    ])
    features = pd.DataFrame(numeric.to_numpy(), columns=sensor_cols, dtype=float)

    labels = None
    if label_col is not None:
        labels = pd.Series(df[label_col].to_list(), name=label_col, index=features.index)
        unknown = sorted(set(labels.dropna()) - set(config.CLASS_LABELS))
        if unknown or labels.isna().any():
            raise ValueError(f"Labels outside the vocabulary {config.CLASS_LABELS}: {unknown or ['<missing>']}")

    return features, labels


@dataclass(frozen=True)
class SplitPartition:
    """Row positions assigned to training and validation. Both arrays are read-only."""
    train_index: np.ndarray
    validation_index: np.ndarray

    def __post_init__(self):
        for arr in (self.train_index, self.validation_index):
            arr.setflags(write=False)

    def __setstate__(self, state):
        # Unpickling bypasses __init__, so the read-only flags are restored here.
        self.__dict__.update(state)
        self.__post_init__()

    def take(self, data, subset: str):
        """Selects the 'train' or 'validation' rows of a DataFrame or Series."""
        if subset == 'train':
            return data.iloc[self.train_index]
        if subset == 'validation':
            return data.iloc[self.validation_index]
        raise ValueError(f"Unknown subset '{subset}'. Use 'train' or 'validation'.")


def stratified_split(labels: pd.Series, validation_fraction: float = config.VALIDATION_FRACTION,
                     random_state: int = config.RANDOM_STATE,
                     min_rows_per_class: int = config.MIN_ROWS_PER_CLASS) -> SplitPartition:
    """
    Creates a stratified, seeded train/validation partition of row positions.

    Each class is sampled independently so the validation share holds per class.
    """
    if not 0 < validation_fraction < 1:
        raise DegenerateSplitError(f"Validation fraction must lie in (0, 1), got {validation_fraction}.")

    class_counts = labels.value_counts()
    too_small = class_counts[class_counts < min_rows_per_class]
    if not too_small.empty:
        raise DegenerateSplitError(
            f"Classes with fewer than {min_rows_per_class} rows cannot be stratified: {too_small.to_dict()}"
        )

    positions = np.arange(len(labels))
    train_idx, val_idx = train_test_split(
        positions,
        test_size=validation_fraction,
        random_state=random_state,
        stratify=labels.to_numpy()
    )
    print(f"Split: {len(train_idx)} training rows, {len(val_idx)} validation rows.")
    return SplitPartition(train_index=np.sort(train_idx), validation_index=np.sort(val_idx))
