# covid_models.py
# One prediction interface for every model in the walkthrough:
#   - a closed-form risk heuristic (CDC relative-risk table by age)
#   - scikit-learn pipelines (decision tree, random forest, tuned forest)
# plus the fitting helpers that produce those pipelines.

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import joblib
import numpy as np
import pandas as pd
from scipy.stats import randint, uniform
from sklearn.compose import ColumnTransformer
from sklearn.ensemble import ExtraTreesClassifier, RandomForestClassifier
from sklearn.model_selection import RandomizedSearchCV, StratifiedKFold
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder
from sklearn.tree import DecisionTreeClassifier, export_text

from covid_errors import InvalidInputError, MissingColumnError, SchemaMismatchError

RANDOM_SEED = 42

# Relative risk of death by age group vs. the 18–29 reference (CDC table).
AGE_BINS      = [-np.inf, 4.5, 17.5, 29.5, 39.5, 49.5, 64.5, 74.5, 84.5, np.inf]
RELATIVE_RISK = [1, 1, 15, 45, 130, 400, 1100, 2800, 7900]
BASE_RISK     = 0.00003


def cdc_risk(table: pd.DataFrame, base_risk: float = BASE_RISK) -> np.ndarray:
    """base_risk × relative risk of the patient's age group, clipped to [0, 1]."""
    if "Age" not in table.columns:
        raise MissingColumnError("cdc_risk needs an 'Age' column")
    age = pd.to_numeric(table["Age"], errors="coerce")
    if age.isna().any():
        raise InvalidInputError("cdc_risk: Age has missing or non-numeric values")
    bucket = pd.cut(age, bins=AGE_BINS, labels=False, right=True)
    rr = np.asarray(RELATIVE_RISK, dtype=float)[np.asarray(bucket, dtype=int)]
    return np.clip(rr * base_risk, 0.0, 1.0)


# ============================== Adapters ====================================

def _is_factor(dtype) -> bool:
    return not pd.api.types.is_numeric_dtype(dtype) or pd.api.types.is_bool_dtype(dtype)


class ModelAdapter:
    """
    Wrapped model: predictive function + reference data/labels + display label.

    predict(table) returns one probability of the positive class per row.
    The reference data fix the feature subset (names, kinds, factor levels)
    that every input table is checked against.
    """

    model_type = "classification"

    def __init__(self, data: pd.DataFrame, y, label: str,
                 features: Optional[Sequence[str]] = None):
        features = list(features) if features is not None else list(data.columns)
        missing = [c for c in features if c not in data.columns]
        if missing:
            raise MissingColumnError(f"Reference data lacks features {missing}")
        y = np.asarray(y)
        if len(y) != len(data):
            raise InvalidInputError(f"{len(y)} labels for {len(data)} reference rows")
        if not set(np.unique(y).tolist()) <= {0, 1}:
            raise InvalidInputError("Reference labels must be 0/1")

        self._data = data.loc[:, features].reset_index(drop=True).copy()
        self._y = y.astype(int).copy()
        self._y.setflags(write=False)
        self._label = str(label)
        self._features = tuple(features)

    # read-only views
    @property
    def data(self) -> pd.DataFrame:
        return self._data.copy()

    @property
    def y(self) -> np.ndarray:
        return self._y

    @property
    def label(self) -> str:
        return self._label

    @property
    def features(self) -> tuple:
        return self._features

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(label={self._label!r}, "
                f"features={len(self._features)}, reference_rows={len(self._data)})")

    # -- schema ---------------------------------------------------------------
    def check_schema(self, table: pd.DataFrame) -> None:
        if not isinstance(table, pd.DataFrame):
            raise SchemaMismatchError(f"Expected a DataFrame, got {type(table).__name__}")
        missing = [c for c in self._features if c not in table.columns]
        if missing:
            raise SchemaMismatchError(f"{self._label}: input lacks features {missing}")
        for col in self._features:
            ref, got = self._data[col].dtype, table[col].dtype
            if _is_factor(ref) != _is_factor(got):
                raise SchemaMismatchError(
                    f"{self._label}: '{col}' should be {'a factor' if _is_factor(ref) else 'numeric'}, got {got}")
            if isinstance(ref, pd.CategoricalDtype):
                values = table[col].dropna().astype(str)
                unknown = sorted(set(values) - set(map(str, ref.categories)))
                if unknown:
                    raise SchemaMismatchError(f"{self._label}: '{col}' has unknown levels {unknown}")

    def align(self, table: pd.DataFrame) -> pd.DataFrame:
        """Feature columns in model order, factors cast to the reference levels."""
        self.check_schema(table)
        X = table.loc[:, list(self._features)].copy()
        for col in self._features:
            ref = self._data[col].dtype
            if isinstance(ref, pd.CategoricalDtype) and X[col].dtype != ref:
                X[col] = X[col].astype(str).where(X[col].notna()).astype(ref)
        return X

    # -- prediction -----------------------------------------------------------
    def _predict(self, X: pd.DataFrame) -> np.ndarray:
        raise NotImplementedError

    def predict(self, table: pd.DataFrame) -> np.ndarray:
        X = self.align(table)
        if len(X) == 0:
            return np.empty(0, dtype=float)
        p = np.asarray(self._predict(X), dtype=float).ravel()
        if len(p) != len(X):
            raise InvalidInputError(f"{self._label}: {len(p)} predictions for {len(X)} rows")
        if not np.all(np.isfinite(p)) or p.min() < 0.0 or p.max() > 1.0:
            raise InvalidInputError(f"{self._label}: predictions outside [0, 1]")
        return p


class RiskFormulaAdapter(ModelAdapter):
    """Closed-form scoring function f(table, **params) -> probabilities."""

    def __init__(self, func: Callable, data: pd.DataFrame, y, label: str,
                 features: Optional[Sequence[str]] = None, **params):
        super().__init__(data, y, label, features)
        self._func = func
        self._params = dict(params)

    def _predict(self, X: pd.DataFrame) -> np.ndarray:
        return self._func(X, **self._params)


class ClassifierAdapter(ModelAdapter):
    """Fitted scikit-learn estimator/pipeline exposing predict_proba."""

    def __init__(self, estimator, data: pd.DataFrame, y, label: str,
                 features: Optional[Sequence[str]] = None, positive=1):
        super().__init__(data, y, label, features)
        if not hasattr(estimator, "predict_proba"):
            raise InvalidInputError(f"{label}: estimator has no predict_proba")
        classes = list(getattr(estimator, "classes_", []))
        if positive not in classes:
            raise InvalidInputError(f"{label}: positive class {positive!r} not in {classes}")
        self._estimator = estimator
        self._pos_idx = classes.index(positive)

    @property
    def estimator(self):
        return self._estimator

    @property
    def positive_index(self) -> int:
        return self._pos_idx

    def _predict(self, X: pd.DataFrame) -> np.ndarray:
        return self._estimator.predict_proba(X)[:, self._pos_idx]


@dataclass(frozen=True)
class TuningRecord:
    """What the randomized search tried and what it picked."""
    best_params: dict
    best_score: float
    n_iter: int
    scoring: str
    results: pd.DataFrame = field(repr=False)

    @classmethod
    def from_search(cls, search: RandomizedSearchCV) -> "TuningRecord":
        cv = pd.DataFrame(search.cv_results_)
        results = pd.DataFrame({
            "params": cv["params"].map(_describe_params),
            "mean_test_score": cv["mean_test_score"],
            "std_test_score": cv["std_test_score"],
            "rank_test_score": cv["rank_test_score"],
        }).sort_values("rank_test_score").reset_index(drop=True)
        scoring = search.scoring if isinstance(search.scoring, str) else str(search.scoring)
        return cls(best_params=dict(search.best_params_), best_score=float(search.best_score_),
                   n_iter=int(search.n_iter), scoring=scoring, results=results)

    def describe(self) -> str:
        return _describe_params(self.best_params)


def _describe_params(params: dict) -> str:
    parts = []
    for k, v in sorted(params.items()):
        if hasattr(v, "get_params"):
            v = type(v).__name__
        elif isinstance(v, float):
            v = f"{v:.3f}"
        parts.append(f"{k.replace('clf__', '')}={v}")
    return ", ".join(parts)


class TunedClassifierAdapter(ClassifierAdapter):
    """Best pipeline of a fitted randomized search, with its TuningRecord."""

    def __init__(self, search: RandomizedSearchCV, data: pd.DataFrame, y, label: str,
                 features: Optional[Sequence[str]] = None, positive=1):
        if not hasattr(search, "best_estimator_"):
            raise InvalidInputError(f"{label}: search is not fitted (or refit=False)")
        super().__init__(search.best_estimator_, data, y, label, features, positive)
        self._record = TuningRecord.from_search(search)

    @property
    def record(self) -> TuningRecord:
        return self._record


# ============================== Fitting =====================================

def build_preprocessor(X: pd.DataFrame) -> ColumnTransformer:
    cat_cols = [c for c in X.columns if _is_factor(X[c].dtype)]
    num_cols = [c for c in X.columns if c not in cat_cols]
    return ColumnTransformer(
        [("cat", OneHotEncoder(drop="if_binary", handle_unknown="ignore"), cat_cols),
         ("num", "passthrough", num_cols)],
        sparse_threshold=0,
    )


def encoded_feature_owner(prep: ColumnTransformer) -> list:
    """For each output column of a fitted preprocessor, the input feature it came from."""
    owners = []
    for name, trans, cols in prep.transformers_:
        if name == "remainder" and trans == "drop":
            continue
        cols = list(cols) if isinstance(cols, (list, tuple, np.ndarray, pd.Index)) else [cols]
        if isinstance(trans, OneHotEncoder):
            drop_idx = trans.drop_idx_
            for i, (col, cats) in enumerate(zip(cols, trans.categories_)):
                dropped = drop_idx is not None and drop_idx[i] is not None
                owners.extend([col] * (len(cats) - int(dropped)))
        else:
            owners.extend(cols)
    return owners


def fit_tree(X: pd.DataFrame, y, max_depth: int = 4, min_samples_leaf: int = 30,
             random_state: int = RANDOM_SEED) -> Pipeline:
    pipe = Pipeline([
        ("prep", build_preprocessor(X)),
        ("clf", DecisionTreeClassifier(max_depth=max_depth, min_samples_leaf=min_samples_leaf,
                                       random_state=random_state)),
    ])
    return pipe.fit(X, y)


def fit_forest(X: pd.DataFrame, y, n_estimators: int = 500, min_samples_leaf: int = 5,
               n_jobs: int = -1, random_state: int = RANDOM_SEED) -> Pipeline:
    pipe = Pipeline([
        ("prep", build_preprocessor(X)),
        ("clf", RandomForestClassifier(n_estimators=n_estimators, min_samples_leaf=min_samples_leaf,
                                       n_jobs=n_jobs, random_state=random_state)),
    ])
    return pipe.fit(X, y)


def search_space(random_state: int = RANDOM_SEED, n_jobs: int = -1,
                 max_trees: int = 1000) -> list:
    """Random forest vs extremely randomized trees, each with its own draws."""
    if max_trees < 1:
        raise InvalidInputError("max_trees must be >= 1")
    common = {
        "clf__n_estimators": randint(min(50, max_trees), max_trees + 1),
        "clf__max_features": uniform(0.1, 0.8),
        "clf__min_samples_leaf": randint(1, 101),
        "clf__criterion": ["gini", "entropy"],
    }
    return [
        {"clf": [RandomForestClassifier(random_state=random_state, n_jobs=n_jobs)], **common},
        {"clf": [ExtraTreesClassifier(random_state=random_state, n_jobs=n_jobs)], **common},
    ]


def tune_forest(X: pd.DataFrame, y, n_iter: int = 10, cv: int = 5, max_trees: int = 1000,
                n_jobs: int = -1, random_state: int = RANDOM_SEED) -> RandomizedSearchCV:
    """Randomized search with a fixed evaluation budget (n_iter), scored by CV ROC-AUC."""
    if n_iter < 1:
        raise InvalidInputError("n_iter must be >= 1")
    pipe = Pipeline([("prep", build_preprocessor(X)),
                     ("clf", RandomForestClassifier(random_state=random_state))])
    search = RandomizedSearchCV(
        pipe,
        param_distributions=search_space(random_state, n_jobs=1, max_trees=max_trees),
        n_iter=n_iter,
        scoring="roc_auc",
        cv=StratifiedKFold(n_splits=cv, shuffle=True, random_state=random_state),
        n_jobs=n_jobs,
        random_state=random_state,
        refit=True,
    )
    return search.fit(X, y)


def tree_rules(adapter: ClassifierAdapter, decimals: int = 1) -> str:
    """Text rendering of a fitted decision-tree pipeline."""
    pipe = adapter.estimator
    prep, clf = pipe.named_steps["prep"], pipe.named_steps["clf"]
    names = [n.split("__", 1)[-1] for n in prep.get_feature_names_out()]
    return export_text(clf, feature_names=names, decimals=decimals)


# ============================ Persistence ===================================

def save_model(obj, path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    joblib.dump(obj, path)
    print(f"[SAVE] {path}")


def load_model(path: str):
    return joblib.load(path)
