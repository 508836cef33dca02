# pipeline_stages.py

import os
import hashlib
import json
import joblib
import pandas as pd

# Import from our modules
import config
import data_utils
import preprocessing
import model_definition
import analysis_tools

# ===================================================================
# Checkpoint Helpers
# ===================================================================

def _get_current_pipeline_config():
    """
    Precisely collects the settings that shape the saved artifacts by reading
    the list of keys defined in the config.py file itself.
    """
    config_dict = {}
    for key in config.PIPELINE_CONFIG_KEYS:
        if hasattr(config, key):
            config_dict[key] = getattr(config, key)

    return config_dict


def _file_digest(path):
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1 << 20), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _fingerprint_path(artifact_path):
    """Each artifact keeps its own fingerprint next to it, e.g. model.pkl -> model_fingerprint.json."""
    return os.path.splitext(artifact_path)[0] + "_fingerprint.json"


def _build_fingerprint(upstream_path=None):
    """
    Identifies what an artifact was built from: the monitored config values,
    the content of the training CSV and, for downstream stages, the exact
    upstream artifact file it was fit on.
    """
    return {
        'config': _get_current_pipeline_config(),
        'training_csv_sha256': _file_digest(config.TRAIN_CSV_PATH),
        'upstream_sha256': _file_digest(upstream_path) if upstream_path else None,
    }


def _can_reuse(artifact_path, force_rerun, upstream_path=None, upstream_reused=True):
    """
    An artifact is reused only if it exists, its stage is not forced, every
    upstream stage was reused too, and its own fingerprint matches.
    """
    fingerprint_path = _fingerprint_path(artifact_path)
    if force_rerun or not upstream_reused:
        return False
    if not os.path.exists(artifact_path) or not os.path.exists(fingerprint_path):
        return False
    with open(fingerprint_path, 'r') as f:
        saved = json.load(f)
    return saved == _build_fingerprint(upstream_path)


def _invalidate_fingerprint(artifact_path):
    """Called before an artifact is overwritten, so a crash mid-stage never leaves a matching fingerprint behind."""
    fingerprint_path = _fingerprint_path(artifact_path)
    if os.path.exists(fingerprint_path):
        os.remove(fingerprint_path)


def _save_fingerprint(artifact_path, upstream_path=None):
    fingerprint_path = _fingerprint_path(artifact_path)
    with open(fingerprint_path, 'w') as f:
        json.dump(_build_fingerprint(upstream_path), f, indent=4)
    print(f"Artifact fingerprint saved to: {fingerprint_path}")

# ===================================================================
# Main Pipeline Stage Functions
# ===================================================================

def run_setup_stage():
    """
    Loads the labeled table, selects sensor columns and creates the stratified split.
    The split is checkpointed.
    """
    print("\n" + "="*80 + "\n--- STAGE 1: Load, Column Selection & Split ---\n" + "="*80)

    df_raw = data_utils.load_data(config.TRAIN_CSV_PATH)
    if df_raw.height == 0:
        raise ValueError("Data loading returned an empty DataFrame. Cannot proceed.")

    features, labels = data_utils.select_columns(df_raw, label_col=config.LABEL_COL)
    print(f"Column selection kept {features.shape[1]} sensor columns for {features.shape[0]} rows.")
    del df_raw

    if _can_reuse(config.SPLIT_PATH, config.FORCE_RERUN_SETUP):
        print("✅ Saved split matches the current configuration and training table. Loading from disk.")
        return features, labels, joblib.load(config.SPLIT_PATH), True

    partition = data_utils.stratified_split(
        labels,
        validation_fraction=config.VALIDATION_FRACTION,
        random_state=config.RANDOM_STATE,
        min_rows_per_class=config.MIN_ROWS_PER_CLASS
    )
    _invalidate_fingerprint(config.SPLIT_PATH)
    joblib.dump(partition, config.SPLIT_PATH)
    _save_fingerprint(config.SPLIT_PATH)
    print("Setup stage complete.")
    return features, labels, partition, False


def run_preprocessing_stage(features, partition, upstream_reused=False):
    """
    Fits the preprocessing chain on the training rows only, then projects them.
    Validation rows are never touched here.
    """
    print("\n" + "="*80 + "\n--- STAGE 2: Preprocessing (fit on training rows) ---\n" + "="*80)

    train_features = partition.take(features, 'train')

    if _can_reuse(config.PIPELINE_PATH, config.FORCE_RERUN_PREPROCESSING,
                  upstream_path=config.SPLIT_PATH, upstream_reused=upstream_reused):
        print("✅ Fitted pipeline is up-to-date. Loading from disk.")
        pipeline = preprocessing.FittedPipeline.load(config.PIPELINE_PATH)
        return pipeline, pipeline.apply(train_features), True

    print(f"Fitting preprocessing on {len(train_features)} training rows...")
    pipeline, train_projected = preprocessing.fit_pipeline(
        train_features,
        sparse_threshold=config.SPARSE_COLUMN_THRESHOLD,
        freq_cut=config.NZV_FREQ_CUT,
        unique_cut=config.NZV_UNIQUE_CUT,
        correlation_cutoff=config.CORRELATION_CUTOFF,
        variance_threshold=config.PCA_VARIANCE_THRESHOLD,
        n_jobs=config.COLUMN_STATS_N_JOBS
    )

    print(pipeline.summary().to_string(index=False))
    pca = pipeline.step('pca')
    print(f"Dropped {len(pipeline.dropped_columns)} columns before projection.")
    print(f"Retained {pca.n_components} components ({pca.retained_variance:.2%} of training variance).")

    _invalidate_fingerprint(config.PIPELINE_PATH)
    pipeline.save(config.PIPELINE_PATH)
    _save_fingerprint(config.PIPELINE_PATH, upstream_path=config.SPLIT_PATH)
    print("Preprocessing stage complete.")
    return pipeline, train_projected, False


def run_training_stage(train_projected, train_labels, upstream_reused=False):
    """Runs the repeated k-fold model selection and saves the final forest."""
    print("\n" + "="*80)
    print("--- STAGE 3: Model Training ---")
    print("="*80)

    if _can_reuse(config.MODEL_PATH, config.FORCE_RERUN_TRAINING,
                  upstream_path=config.PIPELINE_PATH, upstream_reused=upstream_reused):
        print("✅ Trained model is up-to-date. Loading from disk.")
        return joblib.load(config.MODEL_PATH)

    _invalidate_fingerprint(config.MODEL_PATH)
    print(f"🏃 Starting {config.CV_REPEATS}x repeated {config.CV_FOLDS}-fold cross-validation...")
    model = model_definition.train_classifier(
        train_projected,
        train_labels,
        n_splits=config.CV_FOLDS,
        n_repeats=config.CV_REPEATS,
        n_estimators=config.N_ESTIMATORS,
        max_features_grid=config.MAX_FEATURES_GRID,
        random_state=config.RANDOM_STATE,
        n_jobs=config.N_JOBS
    )

    print(f"Best parameters: {model.best_params}")
    print(f"Cross-validated accuracy: {model.cv_accuracy:.4f} (+/- {model.cv_accuracy_std:.4f})")
    print(f"Estimated out-of-sample error: {model.cv_error:.2%}")

    joblib.dump(model, config.MODEL_PATH)
    _save_fingerprint(config.MODEL_PATH, upstream_path=config.PIPELINE_PATH)

    print("Training stage complete.")
    return model


def run_evaluation_stage(pipeline, model, features, labels, partition):
    """
    Replays the fitted chain on the validation rows and scores the model.
    """
    print("\n" + "="*80 + "\n--- STAGE 4: Validation ---\n" + "="*80)

    validation_features = partition.take(features, 'validation')
    validation_labels = partition.take(labels, 'validation')

    result = analysis_tools.evaluate_on_validation(
        pipeline, model, validation_features, validation_labels, class_names=config.CLASS_LABELS
    )

    print("\nConfusion matrix (rows = actual, columns = predicted):")
    print(result.confusion)
    print("\nPer-class accuracy (row-normalized):")
    print(result.per_class_accuracy.round(4))
    print(f"\nValidation accuracy: {result.accuracy:.4f}")
    print(f"Validation out-of-sample error: {result.out_of_sample_error:.2%}")

    analysis_tools.save_confusion_matrix(result, config.MODEL_SAVE_DIR)

    importance_df = analysis_tools.calculate_permutation_importance(
        model, pipeline.apply(validation_features), validation_labels, random_state=config.RANDOM_STATE
    )
    print("\nTop 10 Permutation Importance Scores (Accuracy Drop):")
    print(importance_df.head(10))

    print("Validation stage complete.")
    return result


def run_prediction_stage(pipeline, model):
    """
    Scores the unlabeled test table through the same apply-only chain.
    Returns None when no test table is present.
    """
    print("\n" + "="*80 + "\n--- STAGE 5: Test Table Predictions ---\n" + "="*80)

    if not os.path.exists(config.TEST_CSV_PATH):
        print(f"⚠️ Warning: No test table found at {config.TEST_CSV_PATH}. Skipping.")
        return None

    df_test = data_utils.load_data(config.TEST_CSV_PATH)
    test_features, _ = data_utils.select_columns(df_test, label_col=None)
    predictions = analysis_tools.predict_with_pipeline(pipeline, model, test_features)

    if 'problem_id' in df_test.columns:
        ids = df_test['problem_id'].to_list()
    else:
        ids = list(range(1, len(predictions) + 1))
    output = pd.DataFrame({'problem_id': ids, 'prediction': predictions.to_numpy()})

    output.to_csv(config.PREDICTIONS_PATH, index=False)
    print(f"{len(output)} predictions saved to: {config.PREDICTIONS_PATH}")
    return output


def run_diagnostics(partition, n_rows):
    """Run post-run validation checks to ensure split integrity and artifact presence."""
    print("\n" + "="*50 + "\n--- RUNNING POST-RUN DIAGNOSTICS ---\n" + "="*50)

    try:
        train_ids = set(partition.train_index.tolist())
        val_ids = set(partition.validation_index.tolist())

        overlap = train_ids & val_ids
        uncovered = set(range(n_rows)) - (train_ids | val_ids)
        if not overlap and not uncovered:
            print(f"✅ SUCCESS: Split is disjoint and covers all {n_rows} rows.")
        if overlap:
            print(f"⚠️ WARNING: {len(overlap)} rows appear in both training and validation.")
            print(f"   (Example overlap: {sorted(overlap)[:3]})")
        if uncovered:
            print(f"⚠️ WARNING: {len(uncovered)} rows are in neither subset.")

        for path in (config.SPLIT_PATH, config.PIPELINE_PATH, config.MODEL_PATH):
            if not os.path.exists(path):
                print(f"⚠️ WARNING: Expected artifact is missing: {path}")
    except Exception as e:
        print(f"❌ ERROR: Diagnostics failed to run. Reason: {e}")


def main_orchestrator():
    """Main function to run the entire pipeline in sequence."""
    print("--- Weight Lifting Quality Pipeline Execution Started ---")

    os.makedirs(config.MODEL_SAVE_DIR, exist_ok=True)

    if not config.TRAIN:
        print("Running in Inference Mode (TRAIN=False). Loading saved artifacts.")
        pipeline = preprocessing.FittedPipeline.load(config.PIPELINE_PATH)
        model = joblib.load(config.MODEL_PATH)
        predictions = run_prediction_stage(pipeline, model)
        print("--- Weight Lifting Quality Pipeline Execution Finished ---")
        return {'pipeline': pipeline, 'model': model, 'predictions': predictions}

    # Stage 1: Load, select and split
    features, labels, partition, split_reused = run_setup_stage()

    # Stage 2: Fit preprocessing on training rows
    pipeline, train_projected, pipeline_reused = run_preprocessing_stage(features, partition, split_reused)

    # Stage 3: Model training
    train_labels = partition.take(labels, 'train')
    model = run_training_stage(train_projected, train_labels, pipeline_reused)

    # Stage 4: Validation
    result = run_evaluation_stage(pipeline, model, features, labels, partition)

    # Stage 5: Unlabeled test table
    predictions = run_prediction_stage(pipeline, model) if config.PREDICT_TEST_TABLE else None

    run_diagnostics(partition, len(labels))

    print("--- Weight Lifting Quality Pipeline Execution Finished ---")
    return {
        'partition': partition,
        'pipeline': pipeline,
        'model': model,
        'evaluation': result,
        'predictions': predictions,
    }
