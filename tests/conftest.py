import csv

import numpy as np
import pandas as pd
import polars as pl
import pytest

import config

INFORMATIVE_COLS = ['roll_belt', 'pitch_forearm']
CONSTANT_COL = 'gyros_dumbbell_x'
SPARSE_COL = 'kurtosis_roll_belt'
SENSOR_COLS = INFORMATIVE_COLS + [CONSTANT_COL, SPARSE_COL]

USERS = ['adelmo', 'carlitos', 'charles', 'eurico', 'jeremy', 'pedro']
MISSING_TOKENS = ['', 'NA', '#DIV/0!']


def make_raw_records(n_rows=1000, seed=7, labeled=True, sparse_fraction=0.95):
    """
    Builds a raw sensor table as columns of strings, the way the CSV stores it.

    Two informative sensors, one constant sensor and one sensor that is
    missing (as a mix of the three missing tokens) in `sparse_fraction` of rows.
    """
    rng = np.random.default_rng(seed)
    class_idx = np.arange(n_rows) % len(config.CLASS_LABELS)

    roll = class_idx * 3.0 + rng.normal(0, 1, n_rows)
    pitch = (class_idx % 2) * 2.0 + rng.normal(0, 1, n_rows)
    sparse = rng.normal(0, 1, n_rows)

    n_missing = int(round(sparse_fraction * n_rows))
    missing_rows = set(rng.permutation(n_rows)[:n_missing].tolist())

    records = {
        '': [str(i + 1) for i in range(n_rows)],
        'user_name': [USERS[i % len(USERS)] for i in range(n_rows)],
        'raw_timestamp_part_1': [str(1322489729 + i) for i in range(n_rows)],
        'raw_timestamp_part_2': [str(rng.integers(0, 999999)) for _ in range(n_rows)],
        'cvtd_timestamp': ['28/11/2011 14:15'] * n_rows,
        'new_window': ['yes' if i % 25 == 0 else 'no' for i in range(n_rows)],
        'num_window': [str(i // 25 + 1) for i in range(n_rows)],
        'roll_belt': [f"{v:.6f}" for v in roll],
        'pitch_forearm': [f"{v:.6f}" for v in pitch],
        CONSTANT_COL: ['0.02'] * n_rows,
        SPARSE_COL: [
            MISSING_TOKENS[i % len(MISSING_TOKENS)] if i in missing_rows else f"{sparse[i]:.6f}"
            for i in range(n_rows)
        ],
    }
    if labeled:
        records[config.LABEL_COL] = [config.CLASS_LABELS[c] for c in class_idx]
    else:
        records['problem_id'] = [str(i + 1) for i in range(n_rows)]
    return records


def write_raw_csv(records, path):
    columns = list(records)
    n_rows = len(records[columns[0]])
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(columns)
        for i in range(n_rows):
            writer.writerow([records[c][i] for c in columns])
    return str(path)


def to_polars(records):
    """Polars frame equivalent to load_data output (index column already named)."""
    renamed = {(config.ROW_INDEX_COL if k == '' else k): v for k, v in records.items()}
    return pl.DataFrame(renamed)


@pytest.fixture
def raw_records():
    return make_raw_records()


@pytest.fixture
def raw_table(raw_records):
    return to_polars(raw_records)


@pytest.fixture
def raw_csv(tmp_path, raw_records):
    return write_raw_csv(raw_records, tmp_path / "pml-training.csv")


@pytest.fixture
def feature_frame():
    """Numeric training-like matrix with a few missing values in every column."""
    rng = np.random.default_rng(11)
    n = 400
    base = rng.normal(0, 1, n)
    frame = {
        'a': base,
        'b': base * 0.5 + rng.normal(0, 1, n),
        'c': rng.normal(5, 2, n),
        'd': rng.uniform(-1, 1, n),
    }
    df = pd.DataFrame(frame)
    for col in df.columns:
        df.loc[rng.choice(n, 10, replace=False), col] = np.nan
    return df
