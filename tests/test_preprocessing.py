import dataclasses

import numpy as np
import pandas as pd
import pytest

from preprocessing import (
    CorrelationPruner,
    FittedPipeline,
    ImputeScaleTransformer,
    MedianImputer,
    NearZeroVarianceFilter,
    PipelineConfigurationError,
    PrincipalComponentProjection,
    SchemaMismatchError,
    SparseColumnFilter,
    absolute_correlation,
    fit_pipeline,
)


def _with_missing(values, fraction, rng):
    values = np.asarray(values, dtype=float).copy()
    n_missing = int(round(fraction * len(values)))
    values[rng.permutation(len(values))[:n_missing]] = np.nan
    return values


# ===================================================================
# Sparse-Column Filter
# ===================================================================

def test_sparse_filter_threshold():
    rng = np.random.default_rng(0)
    n = 1000
    X = pd.DataFrame({
        'dense': rng.normal(size=n),
        'missing_95': _with_missing(rng.normal(size=n), 0.95, rng),
        'missing_85': _with_missing(rng.normal(size=n), 0.85, rng),
    })
    fitted = SparseColumnFilter.fit(X, threshold=0.9)

    assert fitted.dropped_columns == ('missing_95',)
    assert list(fitted.apply(X).columns) == ['dense', 'missing_85']


def test_sparse_filter_uses_training_drop_set_verbatim():
    train = pd.DataFrame({'a': [np.nan] * 9 + [1.0], 'b': np.arange(10.0)})
    other = pd.DataFrame({'a': np.arange(10.0), 'b': [np.nan] * 10})
    fitted = SparseColumnFilter.fit(train)

    # 'b' is fully missing in the other table but was dense in training
    assert list(fitted.apply(other).columns) == ['b']


def test_sparse_filter_schema_mismatch():
    fitted = SparseColumnFilter.fit(pd.DataFrame({'a': [1.0, 2.0], 'b': [3.0, 4.0]}))

    with pytest.raises(SchemaMismatchError):
        fitted.apply(pd.DataFrame({'a': [1.0]}))
    with pytest.raises(SchemaMismatchError):
        fitted.apply(pd.DataFrame({'a': [1.0], 'b': [2.0], 'extra': [0.0]}))

# ===================================================================
# Near-Zero-Variance Filter
# ===================================================================

def test_nzv_requires_both_conditions():
    rng = np.random.default_rng(1)
    n = 1000
    rare_spike = np.zeros(n)
    rare_spike[:10] = 1.0
    skewed_but_varied = np.concatenate([np.zeros(500), rng.normal(size=500)])
    X = pd.DataFrame({
        'constant': np.full(n, 3.0),
        'rare_spike': rare_spike,                       # ratio 99, 0.2% unique
        'balanced_binary': np.tile([0.0, 1.0], n // 2),  # ratio 1, 0.2% unique
        'skewed_but_varied': skewed_but_varied,         # ratio 500, ~50% unique
        'continuous': rng.normal(size=n),
    })
    fitted = NearZeroVarianceFilter.fit(X)

    assert set(fitted.dropped_columns) == {'constant', 'rare_spike'}
    assert fitted.output_columns == ('balanced_binary', 'skewed_but_varied', 'continuous')


def test_nzv_ignores_missing_values_when_counting():
    X = pd.DataFrame({'mostly_missing_constant': [np.nan] * 8 + [2.0, 2.0]})
    assert NearZeroVarianceFilter.fit(X).dropped_columns == ('mostly_missing_constant',)


def test_nzv_parallel_matches_serial():
    rng = np.random.default_rng(2)
    X = pd.DataFrame(rng.integers(0, 3, size=(200, 6)).astype(float), columns=list('abcdef'))
    X['f'] = 0.0
    serial = NearZeroVarianceFilter.fit(X, n_jobs=1)
    parallel = NearZeroVarianceFilter.fit(X, n_jobs=2)
    assert serial == parallel

# ===================================================================
# Impute / Scale
# ===================================================================

def test_median_imputer_fills_with_training_median():
    train = pd.DataFrame({'a': [1.0, 2.0, np.nan, 10.0]})
    imputer = MedianImputer.fit(train)

    assert imputer.medians == (2.0,)
    assert imputer.apply(pd.DataFrame({'a': [np.nan, 5.0]}))['a'].tolist() == [2.0, 5.0]


def test_impute_scale_leaves_no_missing_values(feature_frame):
    fitted = ImputeScaleTransformer.fit(feature_frame)
    other = feature_frame.copy()
    other.iloc[::3, :] = np.nan

    assert not fitted.apply(feature_frame).isna().any().any()
    assert not fitted.apply(other).isna().any().any()


def test_scaler_stats_come_from_imputed_training(feature_frame):
    fitted = ImputeScaleTransformer.fit(feature_frame)
    imputed = fitted.imputer.apply(feature_frame)

    np.testing.assert_allclose(fitted.scaler.means, imputed.mean().to_numpy())
    np.testing.assert_allclose(fitted.scaler.stds, imputed.std().to_numpy())

    scaled = fitted.apply(feature_frame)
    np.testing.assert_allclose(scaled.mean().to_numpy(), 0.0, atol=1e-10)
    np.testing.assert_allclose(scaled.std().to_numpy(), 1.0)


def test_constant_training_column_scales_to_zero():
    train = pd.DataFrame({'flat': [4.0, 4.0, np.nan, 4.0], 'moving': [1.0, 2.0, 3.0, 4.0]})
    other = pd.DataFrame({'flat': [0.0, 100.0, np.nan], 'moving': [1.0, 2.0, 3.0]})
    fitted = ImputeScaleTransformer.fit(train)

    assert fitted.apply(train)['flat'].tolist() == [0.0] * 4
    assert fitted.apply(other)['flat'].tolist() == [0.0] * 3


def test_impute_scale_preserves_row_order_and_index(feature_frame):
    shuffled = feature_frame.sample(frac=1.0, random_state=0)
    out = ImputeScaleTransformer.fit(feature_frame).apply(shuffled)
    assert out.index.equals(shuffled.index)

# ===================================================================
# Correlation Pruner
# ===================================================================

def _correlated_frame(n=500, seed=3):
    rng = np.random.default_rng(seed)
    base = rng.normal(size=n)
    other = rng.normal(size=n)
    return pd.DataFrame({
        'base': base,
        'near_copy': base + rng.normal(0, 0.05, n),
        'mirror': -base + rng.normal(0, 0.1, n),
        'partial': 0.6 * base + 0.8 * other,
        'independent': rng.normal(size=n),
        'other': other,
    })


def test_correlation_pruner_caps_remaining_correlation():
    X = _correlated_frame()
    fitted = CorrelationPruner.fit(X, cutoff=0.9)
    kept = fitted.apply(X)

    assert len(fitted.dropped_columns) == 2
    assert absolute_correlation(kept.to_numpy()).max() <= 0.9
    assert {'partial', 'independent', 'other'} <= set(kept.columns)


@pytest.mark.parametrize("cutoff", [0.5, 0.75, 0.9])
def test_correlation_property_holds_for_any_cutoff(cutoff):
    X = _correlated_frame(seed=4)
    kept = CorrelationPruner.fit(X, cutoff=cutoff).apply(X)
    assert absolute_correlation(kept.to_numpy()).max() <= cutoff


def test_correlation_pruner_treats_constant_column_as_uncorrelated():
    X = pd.DataFrame({'flat': np.zeros(50), 'x': np.arange(50.0)})
    assert CorrelationPruner.fit(X).dropped_columns == ()


def test_correlation_pruner_rejects_missing_values():
    X = pd.DataFrame({'a': [1.0, np.nan, 3.0], 'b': [1.0, 2.0, 3.0]})
    with pytest.raises(PipelineConfigurationError):
        CorrelationPruner.fit(X)


def _tie_break_frame(n=2000, seed=5):
    # x and y share `a` (r ~ 0.94); z leans on y's own noise, so y is the more connected of the pair
    rng = np.random.default_rng(seed)
    a, e, f = rng.normal(size=(3, n))
    return pd.DataFrame({
        'x': a + 0.25 * f,
        'y': a + 0.25 * e,
        'z': 0.5 * a + e,
    })


@pytest.mark.parametrize("order", [['x', 'y', 'z'], ['y', 'x', 'z'], ['z', 'y', 'x']])
def test_correlation_pruner_drops_member_with_higher_mean_correlation(order):
    X = _tie_break_frame()[order]
    corr = X.corr().abs()
    assert corr.loc['x', 'y'] > 0.9
    assert corr.loc['y', 'z'] - corr.loc['x', 'z'] > 0.1

    fitted = CorrelationPruner.fit(X, cutoff=0.9)
    assert fitted.dropped_columns == ('y',)
    assert list(fitted.apply(X).columns) == [c for c in order if c != 'y']

# ===================================================================
# Dimensionality Reducer
# ===================================================================

@pytest.mark.parametrize("threshold", [0.5, 0.8, 0.95])
def test_pca_keeps_minimum_components_for_threshold(threshold):
    rng = np.random.default_rng(5)
    latent = rng.normal(size=(300, 3)) * [5.0, 2.0, 1.0]
    X = pd.DataFrame(latent @ rng.normal(size=(3, 6)) + rng.normal(0, 0.3, (300, 6)),
                     columns=[f"s{i}" for i in range(6)])
    fitted = PrincipalComponentProjection.fit(X, variance_threshold=threshold)

    cumulative = np.cumsum(fitted.explained_variance_ratio)
    k = fitted.n_components
    assert cumulative[k - 1] >= threshold
    if k > 1:
        assert cumulative[k - 2] < threshold


def test_pca_apply_projects_with_stored_rotation(feature_frame):
    X = ImputeScaleTransformer.fit(feature_frame).apply(feature_frame)
    fitted = PrincipalComponentProjection.fit(X, variance_threshold=0.8)
    projected = fitted.apply(X)

    assert list(projected.columns) == [f"PC{i + 1}" for i in range(fitted.n_components)]
    assert projected.index.equals(X.index)
    np.testing.assert_allclose(projected.to_numpy(), (X.to_numpy() - fitted.center) @ fitted.rotation)


def test_pca_rejects_non_finite_input():
    X = pd.DataFrame({'a': [1.0, np.inf, 2.0], 'b': [0.0, 1.0, 2.0]})
    with pytest.raises(PipelineConfigurationError):
        PrincipalComponentProjection.fit(X)


def test_pca_rejects_empty_matrix():
    with pytest.raises(PipelineConfigurationError):
        PrincipalComponentProjection.fit(pd.DataFrame(index=range(10)))


def test_pca_parameters_are_read_only(feature_frame):
    X = ImputeScaleTransformer.fit(feature_frame).apply(feature_frame)
    fitted = PrincipalComponentProjection.fit(X)
    with pytest.raises(ValueError):
        fitted.rotation[0, 0] = 1.0

# ===================================================================
# Fitted Pipeline
# ===================================================================

def _raw_like_frame(n=600, seed=9):
    rng = np.random.default_rng(seed)
    base = rng.normal(size=n)
    return pd.DataFrame({
        'signal_a': _with_missing(base, 0.02, rng),
        'signal_b': rng.normal(size=n),
        'signal_a_copy': base * 2.0 + rng.normal(0, 0.01, n),
        'flat': np.full(n, 7.0),
        'mostly_missing': _with_missing(rng.normal(size=n), 0.97, rng),
        'signal_c': rng.uniform(size=n),
    })


def test_fit_pipeline_runs_steps_in_order():
    X = _raw_like_frame()
    pipeline, projected = fit_pipeline(X)

    assert [name for name, _ in pipeline.steps] == [
        'sparse_filter', 'nzv_filter', 'impute_scale', 'correlation_pruner', 'pca'
    ]
    assert pipeline.step('sparse_filter').dropped_columns == ('mostly_missing',)
    assert pipeline.step('nzv_filter').dropped_columns == ('flat',)
    assert len(pipeline.step('correlation_pruner').dropped_columns) == 1
    assert len(pipeline.dropped_columns) == 3
    assert list(projected.columns) == list(pipeline.output_columns)


def test_pipeline_apply_is_deterministic():
    X = _raw_like_frame()
    other = _raw_like_frame(n=100, seed=10)
    pipeline, projected = fit_pipeline(X)

    pd.testing.assert_frame_equal(pipeline.apply(X), projected)
    pd.testing.assert_frame_equal(pipeline.apply(other), pipeline.apply(other))


def test_pipeline_apply_does_not_mutate_input():
    X = _raw_like_frame()
    other = _raw_like_frame(n=100, seed=10)
    before = other.copy()
    pipeline, _ = fit_pipeline(X)
    pipeline.apply(other)
    pd.testing.assert_frame_equal(other, before)


def test_pipeline_rejects_other_schema():
    pipeline, _ = fit_pipeline(_raw_like_frame())
    with pytest.raises(SchemaMismatchError):
        pipeline.apply(_raw_like_frame().drop(columns=['mostly_missing']))


def test_fitted_transforms_are_immutable():
    pipeline, _ = fit_pipeline(_raw_like_frame())
    with pytest.raises(dataclasses.FrozenInstanceError):
        pipeline.step('sparse_filter').dropped_columns = ()
    with pytest.raises(dataclasses.FrozenInstanceError):
        pipeline.steps = ()


def test_pipeline_save_and_load(tmp_path):
    X = _raw_like_frame()
    pipeline, projected = fit_pipeline(X)
    path = str(tmp_path / "pipeline.pkl")
    pipeline.save(path)

    loaded = FittedPipeline.load(path)
    pd.testing.assert_frame_equal(loaded.apply(X), projected)

    # Reloaded parameters stay read-only
    pca = loaded.step('pca')
    for arr in (pca.center, pca.rotation, pca.explained_variance_ratio):
        assert not arr.flags.writeable
    with pytest.raises(ValueError):
        pca.rotation[0, 0] = 0.0


def test_pipeline_summary_counts_columns_per_step():
    X = _raw_like_frame()
    pipeline, projected = fit_pipeline(X)
    summary = pipeline.summary()

    assert summary['step'].tolist() == [name for name, _ in pipeline.steps]
    assert summary['columns_in'].iloc[0] == X.shape[1]
    assert summary['columns_out'].iloc[-1] == projected.shape[1]
    # Each step consumes exactly what the previous one produced
    assert summary['columns_in'].iloc[1:].tolist() == summary['columns_out'].iloc[:-1].tolist()
