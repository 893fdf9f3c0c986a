# covid_explain.py
# Model-agnostic explanations for any wrapped model (covid_models.ModelAdapter):
#   global: permutation variable importance, partial-dependence profiles
#   local : Shapley attributions (shap permutation sampling; exact TreeSHAP for tree models),
#           ceteris-paribus profiles
# Every function is a pure function of (model, data, parameters).

from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans
from sklearn.inspection import permutation_importance

from covid_errors import InvalidInputError, MissingColumnError, SchemaMismatchError
from covid_metrics import auc_score, binary_labels

RANDOM_SEED = 42


# ============================== Losses ======================================

def loss_one_minus_auc(y, scores) -> float:
    return 1.0 - auc_score(y, scores)


def loss_cross_entropy(y, scores, eps: float = 1e-15) -> float:
    y = np.asarray(y, dtype=float)
    p = np.clip(np.asarray(scores, dtype=float), eps, 1 - eps)
    return float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))


LOSS_FUNCTIONS = {
    "one_minus_auc": loss_one_minus_auc,
    "cross_entropy": loss_cross_entropy,
}


# ============================== Reports =====================================

@dataclass(frozen=True)
class ImportanceReport:
    """Loss after permuting each variable, one row per (variable, repeat)."""
    label: str
    loss_name: str
    full_model_loss: float
    permutations: pd.DataFrame = field(repr=False)

    def summary(self) -> pd.DataFrame:
        per_var = self.permutations[~self.permutations["variable"].str.startswith("_")]
        inc = per_var.assign(increase=per_var["dropout_loss"] - self.full_model_loss)
        out = (inc.groupby("variable")["increase"]
                  .agg(mean_increase="mean", std_increase="std", min_increase="min", max_increase="max")
                  .reset_index()
                  .sort_values(["mean_increase", "variable"], ascending=[False, True])
                  .reset_index(drop=True))
        out.insert(0, "model", self.label)
        return out


@dataclass(frozen=True)
class ProfileReport:
    """Predicted response along a grid of one variable (one curve per group)."""
    label: str
    variable: str
    kind: str
    profiles: pd.DataFrame = field(repr=False)
    observation: Optional[pd.DataFrame] = field(default=None, repr=False)

    @property
    def groups(self) -> list:
        return list(dict.fromkeys(self.profiles["_groups_"]))

    def curve(self, group: str = "") -> list:
        sub = self.profiles[self.profiles["_groups_"] == group]
        if sub.empty:
            raise InvalidInputError(f"No profile for group '{group}' (have {self.groups})")
        return list(zip(sub["_x_"].tolist(), sub["_yhat_"].tolist()))


@dataclass(frozen=True)
class AttributionReport:
    """Additive decomposition: prediction = baseline + sum(contributions)."""
    label: str
    method: str
    baseline: float
    prediction: float
    contributions: pd.DataFrame = field(repr=False)
    n_samples: int = 0

    @property
    def total(self) -> float:
        return float(self.contributions["contribution"].sum())

    @property
    def residual(self) -> float:
        return float(self.prediction - self.baseline - self.total)

    def sorted(self) -> pd.DataFrame:
        order = self.contributions["contribution"].abs().sort_values(ascending=False).index
        return self.contributions.loc[order].reset_index(drop=True)

    def as_series(self) -> pd.Series:
        return self.contributions.set_index("variable")["contribution"]


# ============================== Helpers =====================================

def _features(model, table: pd.DataFrame) -> pd.DataFrame:
    return model.align(table).reset_index(drop=True)


def _as_instance(model, instance_row) -> pd.DataFrame:
    """One-row frame in model feature order, factors cast to the model's levels."""
    if isinstance(instance_row, pd.Series):
        instance_row = instance_row.to_frame().T
        ref = model.data
        for col in model.features:
            if col in instance_row.columns and pd.api.types.is_numeric_dtype(ref[col].dtype):
                instance_row[col] = pd.to_numeric(instance_row[col], errors="coerce")
    if not isinstance(instance_row, pd.DataFrame):
        raise SchemaMismatchError(f"Instance must be a DataFrame row, got {type(instance_row).__name__}")
    if len(instance_row) != 1:
        raise InvalidInputError(f"Expected exactly one instance row, got {len(instance_row)}")
    return model.align(instance_row).reset_index(drop=True)


def _with_value(X: pd.DataFrame, variable: str, value) -> pd.DataFrame:
    out = X.copy()
    dtype = X[variable].dtype
    if isinstance(dtype, pd.CategoricalDtype):
        out[variable] = pd.Categorical([value] * len(X), dtype=dtype)
    else:
        out[variable] = value
    return out


def _check_grid(model, variable: str, value_grid) -> list:
    if variable not in model.features:
        raise MissingColumnError(f"'{variable}' is not a feature of {model.label}")
    grid = list(value_grid)
    if not grid:
        raise InvalidInputError("value_grid is empty")
    dtype = model.data[variable].dtype
    if isinstance(dtype, pd.CategoricalDtype):
        unknown = [v for v in grid if v not in set(dtype.categories)]
        if unknown:
            raise InvalidInputError(f"Grid values {unknown} are not levels of '{variable}'")
    return grid


def default_grid(series: pd.Series, grid_points: int = 101) -> list:
    """Factor levels, or distinct quantiles of a numeric column."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    if not pd.api.types.is_numeric_dtype(series.dtype):
        return sorted(series.dropna().unique().tolist())
    values = series.dropna().to_numpy(dtype=float)
    return np.unique(np.quantile(values, np.linspace(0, 1, grid_points))).tolist()


def ice_matrix(model, variable: str, value_grid, table: pd.DataFrame) -> np.ndarray:
    """Predictions with `variable` set to each grid value: shape (rows, grid)."""
    grid = _check_grid(model, variable, value_grid)
    X = _features(model, table)
    if len(X) == 0:
        raise InvalidInputError("Background table is empty")
    stacked = pd.concat([_with_value(X, variable, v) for v in grid], ignore_index=True)
    return model.predict(stacked).reshape(len(grid), len(X)).T


# ======================== Permutation importance ============================

def _canonical_order(X: pd.DataFrame, y: np.ndarray):
    frame = X.copy()
    frame["__y__"] = y
    frame = frame.sort_values(list(frame.columns), kind="mergesort").reset_index(drop=True)
    return frame.drop(columns="__y__"), frame["__y__"].to_numpy()


class _ScoringEstimator:
    """What sklearn.inspection sees: a no-op fit and the adapter's predict."""

    def __init__(self, model):
        self.model = model

    def fit(self, X, y=None):
        return self

    def predict(self, X):
        return self.model.predict(X)


def _negative_loss(estimator, X, y, loss_fn):
    return -loss_fn(y, estimator.predict(X))


def variable_importance(model, table: pd.DataFrame, labels, n_repeats: int = 10,
                        loss: str = "one_minus_auc", variables: Optional[Sequence[str]] = None,
                        random_state: int = RANDOM_SEED, n_jobs: int = 1) -> ImportanceReport:
    """
    Permutation importance: increase of `loss` after shuffling one variable.

    Rows are put in a canonical order before shuffling, so the report does not
    depend on how the input table happens to be ordered. The per-variable
    shuffles come from sklearn's permutation_importance (scored with the
    negated loss); `_baseline_` rows shuffle whole rows against the labels.
    """
    if loss not in LOSS_FUNCTIONS:
        raise InvalidInputError(f"Unknown loss '{loss}' (choose from {sorted(LOSS_FUNCTIONS)})")
    if n_repeats < 1:
        raise InvalidInputError("n_repeats must be >= 1")
    loss_fn = LOSS_FUNCTIONS[loss]
    y = binary_labels(labels)
    X = _features(model, table)
    if len(y) != len(X):
        raise InvalidInputError(f"{len(y)} labels for {len(X)} rows")
    if len(X) == 0:
        raise InvalidInputError("Cannot compute importance on an empty table")
    variables = list(model.features) if variables is None else list(variables)
    missing = [v for v in variables if v not in model.features]
    if missing:
        raise MissingColumnError(f"Not features of {model.label}: {missing}")

    X, y = _canonical_order(X, y)
    full_loss = loss_fn(y, model.predict(X))
    result = permutation_importance(
        _ScoringEstimator(model), X, y,
        scoring=partial(_negative_loss, loss_fn=loss_fn),
        n_repeats=n_repeats, random_state=random_state, n_jobs=n_jobs,
    )

    rows = [("_full_model_", r, full_loss) for r in range(n_repeats)]
    for j, var in enumerate(X.columns):
        if var in variables:
            rows.extend((var, r, full_loss + float(inc)) for r, inc in enumerate(result.importances[j]))
    rng = np.random.default_rng(random_state)
    for r in range(n_repeats):
        shuffled = X.iloc[rng.permutation(len(X))].set_axis(X.index)
        rows.append(("_baseline_", r, loss_fn(y, model.predict(shuffled))))

    perms = pd.DataFrame(rows, columns=["variable", "permutation", "dropout_loss"])
    return ImportanceReport(label=model.label, loss_name=loss,
                            full_model_loss=float(full_loss), permutations=perms)


# ============================ Profiles ======================================

def _profile_frame(variable, grid, curves: dict) -> pd.DataFrame:
    parts = []
    for group, values in curves.items():
        parts.append(pd.DataFrame({
            "_vname_": variable,
            "_groups_": group,
            "_x_": grid,
            "_yhat_": np.asarray(values, dtype=float),
        }))
    return pd.concat(parts, ignore_index=True)


def partial_dependence(model, variable: str, value_grid, background_table: pd.DataFrame,
                       groups: Optional[str] = None, k: Optional[int] = None,
                       random_state: int = RANDOM_SEED) -> ProfileReport:
    """
    Average prediction over `background_table` with `variable` set to each grid value.

    groups: one curve per level of this column of `background_table`.
    k     : cluster the centered per-row curves into k curves (k-means), each
            shifted to the overall mean prediction.
    """
    if groups is not None and k is not None:
        raise InvalidInputError("Use either groups or k, not both")
    if value_grid is None:
        value_grid = default_grid(model.data[variable]) if variable in model.features else []
    grid = _check_grid(model, variable, value_grid)
    ice = ice_matrix(model, variable, grid, background_table)

    if groups is not None:
        if groups not in background_table.columns:
            raise MissingColumnError(f"Grouping column '{groups}' not in background table")
        g = background_table[groups].reset_index(drop=True)
        levels = list(g.cat.categories) if isinstance(g.dtype, pd.CategoricalDtype) \
            else sorted(g.dropna().unique().tolist(), key=str)
        curves = {}
        for level in levels:
            mask = (g == level).to_numpy()
            if mask.any():
                curves[str(level)] = ice[mask].mean(axis=0)
        kind = "partial_grouped"
    elif k is not None:
        if not 1 <= int(k) <= len(ice):
            raise InvalidInputError(f"k={k} must be between 1 and the number of rows ({len(ice)})")
        centered = ice - ice.mean(axis=1, keepdims=True)
        km = KMeans(n_clusters=int(k), n_init=10, random_state=random_state).fit(centered)
        level = ice.mean()
        curves = {}
        for c in range(int(k)):
            members = centered[km.labels_ == c]
            if len(members):
                curves[f"cluster_{c + 1}"] = members.mean(axis=0) + level
        kind = "partial_clustered"
    else:
        curves = {"": ice.mean(axis=0)}
        kind = "partial"
    return ProfileReport(label=model.label, variable=variable, kind=kind,
                         profiles=_profile_frame(variable, grid, curves))


def ceteris_paribus_profile(model, instance_row, variable: str, value_grid) -> ProfileReport:
    """Prediction for one instance as `variable` sweeps the grid, all else fixed."""
    x = _as_instance(model, instance_row)
    grid = _check_grid(model, variable, value_grid)
    curve = ice_matrix(model, variable, grid, x)[0]
    obs = x.assign(_yhat_=model.predict(x))
    return ProfileReport(label=model.label, variable=variable, kind="ceteris_paribus",
                         profiles=_profile_frame(variable, grid, {"": curve}), observation=obs)


# ============================== Shapley =====================================

def _encode(model, X: pd.DataFrame) -> np.ndarray:
    """Numeric matrix in feature order; factors become codes of the model's levels."""
    cols = []
    for c in model.features:
        s = X[c]
        if isinstance(s.dtype, pd.CategoricalDtype):
            cols.append(s.cat.codes.to_numpy(dtype=float))
        else:
            cols.append(s.to_numpy(dtype=float))
    return np.column_stack(cols)


def _decoder(model):
    dtypes = model.data.dtypes

    def decode(Z) -> pd.DataFrame:
        Z = np.asarray(Z)
        cols = {}
        for j, c in enumerate(model.features):
            if isinstance(dtypes[c], pd.CategoricalDtype):
                cols[c] = pd.Categorical.from_codes(Z[:, j].astype(int), dtype=dtypes[c])
            else:
                cols[c] = Z[:, j]
        return pd.DataFrame(cols)

    return decode


def shapley_attribution(model, instance_row, background_table: pd.DataFrame,
                        n_samples: int = 1000, random_state: int = RANDOM_SEED,
                        batch_size: int = 500) -> AttributionReport:
    """
    Shapley values from shap's permutation explainer on any wrapped model.

    Features are switched from background to instance values along sampled
    orderings, each walked forwards and backwards. Every coalition is averaged
    over the whole background, so the contributions add up to
    prediction - mean background prediction for any budget. `n_samples` is the
    number of coalitions evaluated (raised to 2 * features + 1 if smaller).
    """
    import shap

    if n_samples < 1:
        raise InvalidInputError("n_samples must be >= 1")
    x = _as_instance(model, instance_row)
    bg = _features(model, background_table)
    if len(bg) == 0:
        raise InvalidInputError("Background table is empty")
    features = list(model.features)
    decode = _decoder(model)

    masker = shap.maskers.Independent(_encode(model, bg), max_samples=len(bg))
    explainer = shap.explainers.Permutation(lambda Z: model.predict(decode(Z)), masker,
                                            feature_names=features, seed=random_state)
    max_evals = max(int(n_samples), 2 * len(features) + 1)
    explanation = explainer(_encode(model, x), max_evals=max_evals, batch_size=batch_size,
                            silent=True)

    contributions = pd.DataFrame({
        "variable": features,
        "value": [str(x[c].iloc[0]) for c in features],
        "contribution": np.asarray(explanation.values, dtype=float)[0],
        "std": np.zeros(len(features)),
    })
    return AttributionReport(
        label=model.label, method="shapley_permutation",
        baseline=float(np.ravel(explanation.base_values)[0]),
        prediction=float(model.predict(x)[0]),
        contributions=contributions, n_samples=max_evals,
    )


def tree_shap_attribution(model, instance_row, background_table: pd.DataFrame,
                          max_background: int = 200,
                          random_state: int = RANDOM_SEED) -> AttributionReport:
    """
    Exact interventional TreeSHAP (shap library) for tree-based pipelines.
    One-hot columns are summed back to the feature they encode.
    """
    import shap
    from covid_models import ClassifierAdapter, encoded_feature_owner

    if not isinstance(model, ClassifierAdapter):
        raise InvalidInputError(f"{model.label}: TreeSHAP needs a fitted tree pipeline")
    x = _as_instance(model, instance_row)
    bg = _features(model, background_table)
    if len(bg) == 0:
        raise InvalidInputError("Background table is empty")
    if len(bg) > max_background:
        bg = bg.sample(n=max_background, random_state=random_state).reset_index(drop=True)

    pipe = model.estimator
    prep, clf = pipe.named_steps["prep"], pipe.named_steps["clf"]
    X_bg = np.asarray(prep.transform(bg), dtype=float)
    X_x = np.asarray(prep.transform(x), dtype=float)

    explainer = shap.TreeExplainer(clf, data=X_bg, feature_perturbation="interventional",
                                   model_output="probability")
    values = explainer.shap_values(X_x, check_additivity=False)
    if isinstance(values, list):
        values = values[model.positive_index]
    values = np.asarray(values)
    if values.ndim == 3:
        values = values[..., model.positive_index]
    values = values[0]
    expected = np.atleast_1d(explainer.expected_value)
    base = float(expected[model.positive_index] if len(expected) > 1 else expected[0])

    owners = encoded_feature_owner(prep)
    per_feature = pd.Series(values, index=owners).groupby(level=0).sum()
    features = list(model.features)
    contributions = pd.DataFrame({
        "variable": features,
        "value": [str(x[c].iloc[0]) for c in features],
        "contribution": [float(per_feature.get(c, 0.0)) for c in features],
        "std": np.zeros(len(features)),
    })
    return AttributionReport(label=model.label, method="tree_shap", baseline=base,
                             prediction=float(model.predict(x)[0]),
                             contributions=contributions, n_samples=len(bg))
