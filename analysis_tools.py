# analysis_tools.py
import os
import numpy as np
import pandas as pd
from dataclasses import dataclass
from sklearn.metrics import confusion_matrix

import config

# Convention: rows are the actual class, columns the predicted class, and the
# normalized table divides each ROW by its sum (per-class recall). A class with
# no validation rows gets a row of zeros.


@dataclass(frozen=True, eq=False)
class EvaluationResult:
    predictions: pd.Series
    confusion: pd.DataFrame             # integer counts
    normalized_confusion: pd.DataFrame  # row-normalized
    accuracy: float

    @property
    def out_of_sample_error(self) -> float:
        return 1.0 - self.accuracy

    @property
    def per_class_accuracy(self) -> pd.Series:
        return pd.Series(np.diag(self.normalized_confusion.to_numpy()), index=self.normalized_confusion.index)


def compute_confusion_matrix(true_labels, predicted_labels, class_names: list):
    """
    Builds the count and row-normalized confusion matrices.

    Args:
        true_labels: 1D array-like of actual labels.
        predicted_labels: 1D array-like of predicted labels, same length.
        class_names (list): Label order for both axes.

    Returns:
        (pd.DataFrame, pd.DataFrame): counts and row-normalized rates.
    """
    true_labels = np.asarray(true_labels)
    predicted_labels = np.asarray(predicted_labels)
    if true_labels.shape != predicted_labels.shape:
        raise ValueError(f"Label vectors differ in length: {true_labels.shape} vs {predicted_labels.shape}.")

    counts = confusion_matrix(true_labels, predicted_labels, labels=class_names)
    row_sums = counts.sum(axis=1, keepdims=True)
    rates = np.divide(counts, row_sums, out=np.zeros(counts.shape, dtype=float), where=row_sums > 0)

    index = pd.Index(class_names, name='actual')
    columns = pd.Index(class_names, name='predicted')
    return pd.DataFrame(counts, index=index, columns=columns), pd.DataFrame(rates, index=index, columns=columns)


def accuracy_from_confusion(counts: pd.DataFrame) -> float:
    total = counts.to_numpy().sum()
    if total == 0:
        raise ValueError("Cannot compute accuracy from an empty confusion matrix.")
    return float(np.trace(counts.to_numpy()) / total)


def predict_with_pipeline(pipeline, model, features: pd.DataFrame) -> pd.Series:
    """Replays the fitted preprocessing chain (apply only) and predicts labels."""
    projected = pipeline.apply(features)
    return pd.Series(model.predict(projected), index=features.index, name='prediction')


def evaluate_on_validation(pipeline, model, validation_features: pd.DataFrame, validation_labels: pd.Series,
                           class_names: list = config.CLASS_LABELS) -> EvaluationResult:
    """
    Scores the trained model on held-out rows.

    Every preprocessing step is applied with its training-time parameters;
    nothing is refit here. Accuracy is the diagonal of the count matrix over
    the number of validation rows.
    """
    predictions = predict_with_pipeline(pipeline, model, validation_features)
    counts, rates = compute_confusion_matrix(validation_labels.to_numpy(), predictions.to_numpy(), class_names)
    return EvaluationResult(predictions, counts, rates, accuracy_from_confusion(counts))


def save_confusion_matrix(result: EvaluationResult, output_dir: str):
    """Writes the count and row-normalized confusion matrices as CSV files."""
    print("Saving confusion matrix...")
    os.makedirs(output_dir, exist_ok=True)
    counts_path = os.path.join(output_dir, "confusion_matrix_counts.csv")
    rates_path = os.path.join(output_dir, "confusion_matrix_normalized.csv")
    result.confusion.to_csv(counts_path)
    result.normalized_confusion.to_csv(rates_path)
    print(f"Confusion matrix saved to: {counts_path} and {rates_path}")
    return counts_path, rates_path


def calculate_permutation_importance(model, X: pd.DataFrame, y_true, random_state: int = config.RANDOM_STATE) -> pd.DataFrame:
    """
    Accuracy drop when each column of a projected matrix is shuffled.
    """
    print("\nStarting permutation importance calculation...")
    rng = np.random.default_rng(random_state)
    y_true = np.asarray(y_true)

    baseline_accuracy = np.mean(model.predict(X) == y_true)
    print(f"Baseline accuracy: {baseline_accuracy:.4f}")

    importance = {}
    for feature_name in X.columns:
        shuffled = X.copy()
        shuffled[feature_name] = rng.permutation(shuffled[feature_name].to_numpy())
        shuffled_accuracy = np.mean(model.predict(shuffled) == y_true)
        importance[feature_name] = baseline_accuracy - shuffled_accuracy

    importance_df = pd.DataFrame(
        list(importance.items()),
        columns=['Feature', 'Importance (Accuracy Drop)']
    ).sort_values(by='Importance (Accuracy Drop)', ascending=False)

    return importance_df
