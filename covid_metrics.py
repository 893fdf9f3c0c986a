# covid_metrics.py
# Ranking and classification quality of a wrapped model on a labeled table:
# AUC (rank based), confusion matrix at a cutoff, ROC and lift curves.
# Degenerate label sets give NaN metrics, not exceptions.

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.stats import rankdata
from sklearn.metrics import confusion_matrix

from covid_data import YES_NO
from covid_errors import InvalidInputError


def _safe_rate(num, den) -> float:
    return float(num / den) if den > 0 else np.nan


def binary_labels(labels, classes=YES_NO) -> np.ndarray:
    """
    Labels as 0/1 ints. Accepts 0/1, booleans, or the two class names in
    `classes` (negative first). Anything else is an InvalidInputError.
    """
    arr = np.asarray(labels.to_numpy() if isinstance(labels, pd.Series) else labels, dtype=object).ravel()
    if pd.isna(arr).any():
        raise InvalidInputError("Labels contain missing values")
    values = set(arr.tolist())
    if values <= {0, 1}:
        return arr.astype(int)
    if values <= set(classes):
        return (arr == classes[1]).astype(int)
    raise InvalidInputError(f"Labels {sorted(map(str, values))} are not in {{0, 1}} or {list(classes)}")


def auc_score(y, scores) -> float:
    """Mann–Whitney AUC; tied scores count one half. NaN with a single class."""
    y = np.asarray(y, dtype=int)
    scores = np.asarray(scores, dtype=float)
    n_pos = int(y.sum())
    n_neg = len(y) - n_pos
    if n_pos == 0 or n_neg == 0:
        return np.nan
    ranks = rankdata(scores)  # average ranks for ties
    return float((ranks[y == 1].sum() - n_pos * (n_pos + 1) / 2.0) / (n_pos * n_neg))


def ks_statistic(y, scores) -> float:
    y = np.asarray(y, dtype=int)
    if y.sum() == 0 or y.sum() == len(y):
        return np.nan
    roc = roc_points(y, scores)
    return float(np.max(np.abs(roc["tpr"] - roc["fpr"])))


def brier_score(y, scores) -> float:
    y = np.asarray(y, dtype=float)
    scores = np.asarray(scores, dtype=float)
    return float(np.mean((y - scores) ** 2))


def _by_threshold(y, scores) -> pd.DataFrame:
    """Cumulative TP/FP counts at each distinct score, highest score first."""
    df = pd.DataFrame({"s": np.asarray(scores, dtype=float), "y": np.asarray(y, dtype=int)})
    grp = df.groupby("s", sort=True)["y"].agg(pos="sum", n="size").iloc[::-1]
    out = pd.DataFrame({
        "threshold": grp.index.to_numpy(),
        "tp": grp["pos"].cumsum().to_numpy(),
        "n": grp["n"].cumsum().to_numpy(),
    })
    out["fp"] = out["n"] - out["tp"]
    return out


def roc_points(y, scores) -> pd.DataFrame:
    """ROC sampled at every distinct score; starts at (0, 0), ends at (1, 1)."""
    y = np.asarray(y, dtype=int)
    n_pos = int(y.sum())
    n_neg = len(y) - n_pos
    if n_pos == 0 or n_neg == 0:
        return pd.DataFrame({"fpr": [0.0, 1.0], "tpr": [0.0, 1.0], "threshold": [np.inf, -np.inf]})
    cum = _by_threshold(y, scores)
    return pd.DataFrame({
        "fpr": np.concatenate([[0.0], cum["fp"].to_numpy() / n_neg]),
        "tpr": np.concatenate([[0.0], cum["tp"].to_numpy() / n_pos]),
        "threshold": np.concatenate([[np.inf], cum["threshold"].to_numpy()]),
    })


def lift_points(y, scores) -> pd.DataFrame:
    """Lift and cumulative gain of the top-scored share of the population."""
    y = np.asarray(y, dtype=int)
    n, n_pos = len(y), int(y.sum())
    cum = _by_threshold(y, scores)
    base_rate = _safe_rate(n_pos, n)
    rate_top = cum["tp"] / cum["n"]
    return pd.DataFrame({
        "fraction": cum["n"].to_numpy() / n,
        "lift": (rate_top / base_rate).to_numpy() if n_pos > 0 else np.full(len(cum), np.nan),
        "gain": cum["tp"].to_numpy() / n_pos if n_pos > 0 else np.full(len(cum), np.nan),
        "threshold": cum["threshold"].to_numpy(),
    })


# ============================== Reports =====================================

@dataclass(frozen=True)
class PerformanceReport:
    label: str
    cutoff: float
    n: int
    positives: int
    auc: float
    gini: float
    ks: float
    brier: float
    precision: float
    recall: float
    f1: float
    accuracy: float
    tn: int
    fp: int
    fn: int
    tp: int
    roc: pd.DataFrame = field(repr=False)
    lift: pd.DataFrame = field(repr=False)

    def as_row(self) -> dict:
        return {
            "model": self.label, "cutoff": self.cutoff, "n": self.n, "positives": self.positives,
            "AUC": self.auc, "Gini": self.gini, "KS": self.ks, "Brier": self.brier,
            "Precision": self.precision, "Recall": self.recall, "F1": self.f1,
            "Accuracy": self.accuracy,
            "TN": self.tn, "FP": self.fp, "FN": self.fn, "TP": self.tp,
        }


def _scores_and_labels(model, table: pd.DataFrame, labels):
    if len(table) == 0:
        raise InvalidInputError("Cannot evaluate on an empty table")
    y = binary_labels(labels)
    if len(y) != len(table):
        raise InvalidInputError(f"{len(y)} labels for {len(table)} rows")
    return model.predict(table), y


def report_from_scores(label: str, y, scores, cutoff: float) -> PerformanceReport:
    if not 0.0 <= float(cutoff) <= 1.0:
        raise InvalidInputError(f"cutoff {cutoff} outside [0, 1]")
    y = np.asarray(y, dtype=int)
    scores = np.asarray(scores, dtype=float)
    y_hat = (scores >= cutoff).astype(int)
    tn, fp, fn, tp = (int(v) for v in confusion_matrix(y, y_hat, labels=[0, 1]).ravel())

    precision = _safe_rate(tp, tp + fp)
    recall = _safe_rate(tp, tp + fn)
    f1 = (2 * precision * recall / (precision + recall)
          if np.isfinite(precision) and np.isfinite(recall) and (precision + recall) > 0 else np.nan)
    auc = auc_score(y, scores)
    return PerformanceReport(
        label=label, cutoff=float(cutoff), n=len(y), positives=int(y.sum()),
        auc=auc, gini=2 * auc - 1 if np.isfinite(auc) else np.nan,
        ks=ks_statistic(y, scores), brier=brier_score(y, scores),
        precision=precision, recall=recall, f1=f1,
        accuracy=_safe_rate(tp + tn, len(y)),
        tn=tn, fp=fp, fn=fn, tp=tp,
        roc=roc_points(y, scores), lift=lift_points(y, scores),
    )


def evaluate(model, table: pd.DataFrame, labels, cutoff: float) -> PerformanceReport:
    """Performance of `model` on `table`; rows with score >= cutoff are flagged."""
    scores, y = _scores_and_labels(model, table, labels)
    return report_from_scores(model.label, y, scores, cutoff)


def roc_curve(model, table: pd.DataFrame, labels) -> list:
    scores, y = _scores_and_labels(model, table, labels)
    roc = roc_points(y, scores)
    return list(zip(roc["fpr"].tolist(), roc["tpr"].tolist()))


def lift_curve(model, table: pd.DataFrame, labels) -> list:
    scores, y = _scores_and_labels(model, table, labels)
    lift = lift_points(y, scores)
    return list(zip(lift["fraction"].tolist(), lift["lift"].tolist()))


def performance_table(reports) -> pd.DataFrame:
    return pd.DataFrame([r.as_row() for r in reports])


def cutoff_table(model, table: pd.DataFrame, labels, grid=None) -> pd.DataFrame:
    """Precision/recall/F1 across a grid of cutoffs (for picking an operating point)."""
    scores, y = _scores_and_labels(model, table, labels)
    grid = np.linspace(0.05, 0.95, 19) if grid is None else grid
    rows = []
    for c in grid:
        r = report_from_scores(model.label, y, scores, c)
        rows.append({"model": r.label, "cutoff": r.cutoff, "flagged": r.tp + r.fp,
                     "precision": r.precision, "recall": r.recall, "f1": r.f1})
    return pd.DataFrame(rows)
