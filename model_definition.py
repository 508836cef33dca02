# model_definition.py

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import GridSearchCV, RepeatedStratifiedKFold

import config


@dataclass(frozen=True, eq=False)
class TrainedModel:
    """A fitted forest plus the cross-validated accuracy that selected it."""
    classifier: RandomForestClassifier
    cv_accuracy: float
    cv_accuracy_std: float
    best_params: dict = field(default_factory=dict)
    cv_results: pd.DataFrame | None = None

    @property
    def cv_error(self) -> float:
        """Estimated out-of-sample error from resampling."""
        return 1.0 - self.cv_accuracy

    def predict(self, X: pd.DataFrame) -> np.ndarray:
        return self.classifier.predict(X)


def resolve_max_features_grid(grid: list, n_features: int) -> list[int]:
    """Keeps grid values usable with n_features columns; falls back to using every column."""
    usable = sorted({int(m) for m in grid if 1 <= int(m) <= n_features})
    return usable or [n_features]


def build_search(n_features: int, n_splits: int = config.CV_FOLDS, n_repeats: int = config.CV_REPEATS,
                 n_estimators: int = config.N_ESTIMATORS, max_features_grid: list = config.MAX_FEATURES_GRID,
                 random_state: int = config.RANDOM_STATE, n_jobs: int = config.N_JOBS) -> GridSearchCV:
    """
    Builds the repeated k-fold grid search over the forest's max_features.

    Folds are independent and run on a joblib worker pool; the winning
    setting is the one with the best mean fold accuracy.
    """
    cv = RepeatedStratifiedKFold(n_splits=n_splits, n_repeats=n_repeats, random_state=random_state)
    forest = RandomForestClassifier(n_estimators=n_estimators, random_state=random_state)
    param_grid = {'max_features': resolve_max_features_grid(max_features_grid, n_features)}
    return GridSearchCV(forest, param_grid=param_grid, scoring='accuracy', cv=cv, n_jobs=n_jobs, refit=True)


def train_classifier(X_train: pd.DataFrame, y_train: pd.Series, **search_kwargs) -> TrainedModel:
    """
    Selects hyperparameters by repeated stratified k-fold CV and refits on all training rows.

    Only training rows may be passed in; resampling happens strictly inside them.
    """
    if len(X_train) != len(y_train):
        raise ValueError(f"Feature rows ({len(X_train)}) and labels ({len(y_train)}) differ in length.")

    search = build_search(X_train.shape[1], **search_kwargs)
    n_fits = search.cv.get_n_splits() * len(search.param_grid['max_features'])
    print(f"Running grid search: {len(search.param_grid['max_features'])} candidates, {n_fits} fits...")
    search.fit(X_train, np.asarray(y_train))

    best = search.best_index_
    results = pd.DataFrame(search.cv_results_)[['param_max_features', 'mean_test_score', 'std_test_score', 'rank_test_score']]
    return TrainedModel(
        classifier=search.best_estimator_,
        cv_accuracy=float(search.best_score_),
        cv_accuracy_std=float(search.cv_results_['std_test_score'][best]),
        best_params=dict(search.best_params_),
        cv_results=results,
    )
