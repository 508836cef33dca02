# preprocessing.py

import joblib
import numpy as np
import pandas as pd
from dataclasses import dataclass
from sklearn.decomposition import PCA
from tqdm import tqdm

# Import the project's configuration settings
import config

# ===================================================================
# Errors
# ===================================================================

class SchemaMismatchError(ValueError):
    """A matrix handed to apply() does not carry the columns the transform was fit on."""


class PipelineConfigurationError(RuntimeError):
    """Correlation or eigen-decomposition failed on the training matrix."""


def _check_schema(X: pd.DataFrame, expected_columns: tuple, step_name: str) -> pd.DataFrame:
    """Returns X restricted to expected_columns in fit order, or raises SchemaMismatchError."""
    expected = set(expected_columns)
    missing = [c for c in expected_columns if c not in X.columns]
    unexpected = [c for c in X.columns if c not in expected]
    if missing or unexpected:
        raise SchemaMismatchError(
            f"{step_name}: input columns differ from the fitted schema "
            f"(missing: {missing[:5]}, unexpected: {unexpected[:5]})."
        )
    return X.loc[:, list(expected_columns)]


def _require_finite(values: np.ndarray, step_name: str):
    if values.size == 0:
        raise PipelineConfigurationError(f"{step_name}: cannot fit on an empty matrix.")
    if not np.all(np.isfinite(values)):
        raise PipelineConfigurationError(
            f"{step_name}: training matrix contains missing or infinite values. "
            "Impute and scale before this step."
        )

# ===================================================================
# Column-Dropping Filters
# ===================================================================
# Each filter learns a drop-set from the training matrix only. apply()
# removes exactly those columns from any matrix with the fitted schema.

@dataclass(frozen=True)
class ColumnDropTransform:
    input_columns: tuple
    dropped_columns: tuple

    @property
    def output_columns(self) -> tuple:
        dropped = set(self.dropped_columns)
        return tuple(c for c in self.input_columns if c not in dropped)

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        X = _check_schema(X, self.input_columns, type(self).__name__)
        return X.loc[:, list(self.output_columns)]


@dataclass(frozen=True)
class SparseColumnFilter(ColumnDropTransform):
    threshold: float

    @classmethod
    def fit(cls, X: pd.DataFrame, threshold: float = config.SPARSE_COLUMN_THRESHOLD):
        """Drops columns whose missing fraction is at least `threshold`."""
        missing_fraction = X.isna().mean()
        dropped = missing_fraction.index[missing_fraction >= threshold]
        return cls(tuple(X.columns), tuple(dropped), threshold)


def _frequency_stats(values: np.ndarray):
    """
    Frequency ratio, percent unique and zero-variance flag for one column.
    Missing entries are ignored for counting but still count toward the row total.
    """
    total = len(values)
    present = values[~np.isnan(values)]
    if present.size == 0:
        return 0.0, 0.0, True

    _, counts = np.unique(present, return_counts=True)
    if counts.size < 2:
        return 0.0, 100.0 / total, True

    top_two = np.sort(counts)[::-1][:2]
    freq_ratio = top_two[0] / top_two[1]
    percent_unique = 100.0 * counts.size / total
    return float(freq_ratio), float(percent_unique), False


@dataclass(frozen=True)
class NearZeroVarianceFilter(ColumnDropTransform):
    freq_cut: float
    unique_cut: float

    @classmethod
    def fit(cls, X: pd.DataFrame, freq_cut: float = config.NZV_FREQ_CUT,
            unique_cut: float = config.NZV_UNIQUE_CUT, n_jobs: int = config.COLUMN_STATS_N_JOBS):
        """
        Flags near-constant columns.

        A column is dropped when it has a single distinct value, or when BOTH
        its frequency ratio exceeds `freq_cut` and its percent of distinct
        values is at most `unique_cut`. Low-cardinality columns with a
        balanced distribution are kept.
        """
        columns = list(X.columns)
        stats = joblib.Parallel(n_jobs=n_jobs, verbose=0)(
            joblib.delayed(_frequency_stats)(X[col].to_numpy(dtype=float))
            for col in tqdm(columns, desc="Near-Zero-Variance Scan", disable=len(columns) < 50)
        )

        dropped = [
            col for col, (freq_ratio, percent_unique, zero_var) in zip(columns, stats)
            if zero_var or (freq_ratio > freq_cut and percent_unique <= unique_cut)
        ]
        return cls(tuple(columns), tuple(dropped), freq_cut, unique_cut)

# ===================================================================
# Impute / Scale
# ===================================================================

@dataclass(frozen=True)
class MedianImputer:
    input_columns: tuple
    medians: tuple

    @classmethod
    def fit(cls, X: pd.DataFrame):
        return cls(tuple(X.columns), tuple(float(m) for m in X.median(skipna=True)))

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        X = _check_schema(X, self.input_columns, type(self).__name__)
        return X.fillna(dict(zip(self.input_columns, self.medians)))


@dataclass(frozen=True)
class Standardizer:
    input_columns: tuple
    means: tuple
    stds: tuple

    @classmethod
    def fit(cls, X: pd.DataFrame):
        return cls(
            tuple(X.columns),
            tuple(float(m) for m in X.mean()),
            tuple(float(s) for s in X.std(ddof=1)),
        )

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        X = _check_schema(X, self.input_columns, type(self).__name__)
        means = np.asarray(self.means, dtype=float)
        stds = np.asarray(self.stds, dtype=float)

        # Zero (or undefined) training spread maps the whole column to 0
        has_spread = stds > 0
        scaled = (X.to_numpy(dtype=float) - means) / np.where(has_spread, stds, 1.0)
        scaled[:, ~has_spread] = 0.0
        return pd.DataFrame(scaled, index=X.index, columns=X.columns)


@dataclass(frozen=True)
class ImputeScaleTransformer:
    """Median imputation followed by standardization. The order is fixed."""
    imputer: MedianImputer
    scaler: Standardizer

    @property
    def input_columns(self) -> tuple:
        return self.imputer.input_columns

    @property
    def output_columns(self) -> tuple:
        return self.scaler.input_columns

    @classmethod
    def fit(cls, X: pd.DataFrame):
        imputer = MedianImputer.fit(X)
        # The scaler learns its statistics from the imputed training matrix
        scaler = Standardizer.fit(imputer.apply(X))
        return cls(imputer, scaler)

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        return self.scaler.apply(self.imputer.apply(X))

# ===================================================================
# Correlation Pruning
# ===================================================================

def absolute_correlation(values: np.ndarray) -> np.ndarray:
    """
    Absolute Pearson correlation between columns with a zeroed diagonal.
    Pairs involving a zero-variance column are reported as 0.
    """
    with np.errstate(divide='ignore', invalid='ignore'):
        corr = np.atleast_2d(np.corrcoef(values, rowvar=False))
    corr = np.abs(corr)
    corr[~np.isfinite(corr)] = 0.0
    np.fill_diagonal(corr, 0.0)
    return corr


@dataclass(frozen=True)
class CorrelationPruner(ColumnDropTransform):
    cutoff: float

    @classmethod
    def fit(cls, X: pd.DataFrame, cutoff: float = config.CORRELATION_CUTOFF):
        """
        Removes columns until no remaining pair has |r| above `cutoff`.

        Each round takes the most correlated remaining pair and drops the
        member whose mean absolute correlation with the other remaining
        columns is higher (the later column on a tie).
        """
        values = X.to_numpy(dtype=float)
        _require_finite(values, cls.__name__)
        corr = absolute_correlation(values)

        remaining = list(range(values.shape[1]))
        dropped = []
        while len(remaining) > 1:
            sub = corr[np.ix_(remaining, remaining)]
            i, j = np.unravel_index(np.argmax(sub), sub.shape)
            if sub[i, j] <= cutoff:
                break
            mean_abs = sub.sum(axis=1) / (len(remaining) - 1)
            victim = remaining[i] if mean_abs[i] > mean_abs[j] else remaining[j]
            dropped.append(X.columns[victim])
            remaining.remove(victim)

        return cls(tuple(X.columns), tuple(dropped), cutoff)

# ===================================================================
# Dimensionality Reduction
# ===================================================================

@dataclass(frozen=True, eq=False)
class PrincipalComponentProjection:
    input_columns: tuple
    center: np.ndarray
    rotation: np.ndarray  # shape (n_input_columns, n_components)
    explained_variance_ratio: np.ndarray  # every component, not only the retained ones
    variance_threshold: float

    def __post_init__(self):
        for arr in (self.center, self.rotation, self.explained_variance_ratio):
            arr.setflags(write=False)

    def __setstate__(self, state):
        self.__dict__.update(state)
        self.__post_init__()

    @property
    def n_components(self) -> int:
        return self.rotation.shape[1]

    @property
    def output_columns(self) -> tuple:
        return tuple(f"PC{i + 1}" for i in range(self.n_components))

    @property
    def retained_variance(self) -> float:
        return float(np.sum(self.explained_variance_ratio[:self.n_components]))

    @classmethod
    def fit(cls, X: pd.DataFrame, variance_threshold: float = config.PCA_VARIANCE_THRESHOLD):
        """Keeps the fewest leading components whose cumulative explained variance reaches the threshold."""
        values = X.to_numpy(dtype=float)
        _require_finite(values, cls.__name__)
        if values.shape[0] < 2:
            raise PipelineConfigurationError(f"{cls.__name__}: need at least 2 rows, got {values.shape[0]}.")

        try:
            pca = PCA(svd_solver='full').fit(values)
        except np.linalg.LinAlgError as e:
            raise PipelineConfigurationError(f"{cls.__name__}: eigen-decomposition failed ({e}).") from e

        ratios = np.asarray(pca.explained_variance_ratio_, dtype=float)
        if not np.all(np.isfinite(ratios)):
            raise PipelineConfigurationError(
                f"{cls.__name__}: explained variance is undefined; the training matrix has no variance left."
            )

        cumulative = np.cumsum(ratios)
        n_keep = min(int(np.searchsorted(cumulative, variance_threshold, side='left')) + 1, len(ratios))
        rotation = np.array(pca.components_[:n_keep].T, dtype=float)
        return cls(tuple(X.columns), np.array(pca.mean_, dtype=float), rotation, ratios.copy(), variance_threshold)

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        X = _check_schema(X, self.input_columns, type(self).__name__)
        projected = (X.to_numpy(dtype=float) - self.center) @ self.rotation
        return pd.DataFrame(projected, index=X.index, columns=list(self.output_columns))

# ===================================================================
# Fitted Pipeline
# ===================================================================

@dataclass(frozen=True)
class FittedPipeline:
    """Ordered (name, transform) pairs, fit once on training data and replayed on anything else."""
    steps: tuple

    @property
    def input_columns(self) -> tuple:
        return self.steps[0][1].input_columns

    @property
    def output_columns(self) -> tuple:
        return self.steps[-1][1].output_columns

    @property
    def dropped_columns(self) -> list:
        """Columns removed by the filtering steps before projection, in removal order."""
        return [c for _, step in self.steps for c in getattr(step, 'dropped_columns', ())]

    def step(self, name: str):
        for step_name, transform in self.steps:
            if step_name == name:
                return transform
        raise KeyError(f"No pipeline step named '{name}'.")

    def apply(self, X: pd.DataFrame) -> pd.DataFrame:
        for _, transform in self.steps:
            X = transform.apply(X)
        return X

    def summary(self) -> pd.DataFrame:
        """One row per step with its input and output column counts."""
        return pd.DataFrame([
            {'step': name, 'columns_in': len(t.input_columns), 'columns_out': len(t.output_columns)}
            for name, t in self.steps
        ])

    def save(self, path: str):
        joblib.dump(self, path)

    @staticmethod
    def load(path: str) -> "FittedPipeline":
        pipeline = joblib.load(path)
        if not isinstance(pipeline, FittedPipeline):
            raise TypeError(f"{path} does not hold a FittedPipeline.")
        return pipeline


def fit_pipeline(X_train: pd.DataFrame,
                 sparse_threshold: float = config.SPARSE_COLUMN_THRESHOLD,
                 freq_cut: float = config.NZV_FREQ_CUT,
                 unique_cut: float = config.NZV_UNIQUE_CUT,
                 correlation_cutoff: float = config.CORRELATION_CUTOFF,
                 variance_threshold: float = config.PCA_VARIANCE_THRESHOLD,
                 n_jobs: int = config.COLUMN_STATS_N_JOBS):
    """
    Fits every preprocessing step on the training matrix, in order.

    Each step is fit on the output of the previous step applied to the
    training rows. Returns the FittedPipeline and the projected training matrix.
    """
    fitters = [
        ('sparse_filter', lambda X: SparseColumnFilter.fit(X, threshold=sparse_threshold)),
        ('nzv_filter', lambda X: NearZeroVarianceFilter.fit(X, freq_cut=freq_cut, unique_cut=unique_cut, n_jobs=n_jobs)),
        ('impute_scale', ImputeScaleTransformer.fit),
        ('correlation_pruner', lambda X: CorrelationPruner.fit(X, cutoff=correlation_cutoff)),
        ('pca', lambda X: PrincipalComponentProjection.fit(X, variance_threshold=variance_threshold)),
    ]

    steps = []
    X = X_train
    for name, fit in fitters:
        transform = fit(X)
        X = transform.apply(X)
        steps.append((name, transform))

    return FittedPipeline(tuple(steps)), X
