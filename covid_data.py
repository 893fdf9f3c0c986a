# covid_data.py
# Cohort tables: loading semicolon-separated files with a fixed schema,
# selecting the pre-outcome feature subset, and simulating cohorts.
#
# Run directly to (re)create the two demo cohorts under data/:
#     python covid_data.py

from __future__ import annotations

import csv
import os
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from covid_errors import (
    InvalidInputError, MissingColumnError, ParseError, SchemaError,
)

# -------------------- Schema ------------------------------------------------
TARGET   = "Death"
POSITIVE = "Yes"
NEGATIVE = "No"
YES_NO   = ["No", "Yes"]

# Known before the outcome; order is the model's feature order.
FEATURES = [
    "Gender", "Age", "Cardiovascular Diseases", "Diabetes",
    "Neurological Diseases", "Kidney Diseases", "Cancer",
]
# Recorded after (or because of) the outcome: never used as features.
POST_OUTCOME = ["Hospitalization", "Fever", "Cough"]

COVID_SCHEMA = {
    "Gender": ["Female", "Male"],
    "Age": "numeric",
    "Cardiovascular Diseases": YES_NO,
    "Diabetes": YES_NO,
    "Neurological Diseases": YES_NO,
    "Kidney Diseases": YES_NO,
    "Cancer": YES_NO,
    "Hospitalization": YES_NO,
    "Fever": YES_NO,
    "Cough": YES_NO,
    "Death": YES_NO,
}
# ----------------------------------------------------------------------------


# ============================== Loading =====================================

def _check_row_widths(path: Path, sep: str) -> None:
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f, delimiter=sep)
        header = next(reader, None)
        if header is None:
            raise ParseError(f"{path}: file is empty (no header row)")
        width = len(header)
        for row in reader:
            if not row:
                continue
            if len(row) != width:
                raise ParseError(
                    f"{path}: line {reader.line_num} has {len(row)} fields, "
                    f"header has {width}"
                )


def _coerce_numeric(df: pd.DataFrame, col: str) -> pd.Series:
    raw = df[col]
    out = pd.to_numeric(raw, errors="coerce")
    bad = out.isna() & raw.notna()
    if bad.any():
        examples = raw[bad].astype(str).unique()[:5].tolist()
        raise SchemaError(f"Column '{col}' is declared numeric but holds {examples}")
    return out


def _coerce_factor(df: pd.DataFrame, col: str, levels: list) -> pd.Series:
    raw = df[col].astype(object)
    text = raw.where(raw.isna(), raw.astype(str).str.strip())
    bad = text.notna() & ~text.isin(levels)
    if bad.any():
        examples = text[bad].unique()[:5].tolist()
        raise SchemaError(f"Column '{col}' has values {examples} outside levels {levels}")
    return pd.Series(pd.Categorical(text, categories=levels), index=df.index, name=col)


def coerce_schema(df: pd.DataFrame, schema: dict, factors: bool = True) -> pd.DataFrame:
    """Coerce declared columns to their type; factor levels are fixed by the schema."""
    missing = [c for c in schema if c not in df.columns]
    if missing:
        raise MissingColumnError(f"Missing declared columns: {missing}")
    out = df.copy()
    for col, kind in schema.items():
        if kind == "numeric":
            out[col] = _coerce_numeric(out, col)
        else:
            fac = _coerce_factor(out, col, list(kind))
            out[col] = fac if factors else fac.astype(object)
    return out


def load_table(path, sep: str = ";", factors: bool = True,
               schema: Optional[dict] = None) -> pd.DataFrame:
    """
    Read one cohort file into a DataFrame.
      - every row must have as many fields as the header (ParseError)
      - declared columns are coerced to numeric / fixed-level factors (SchemaError)
      - with factors=True other text columns become categoricals with sorted levels
    """
    path = Path(path)
    if not path.exists():
        print("\n[ERROR] Can't find the cohort file.")
        print(f"Looked for: {path.resolve()}")
        print("Run 'python covid_data.py' to write the demo cohorts, or change the path.")
        raise FileNotFoundError(str(path.resolve()))

    _check_row_widths(path, sep)
    try:
        df = pd.read_csv(path, sep=sep)
    except pd.errors.ParserError as e:
        raise ParseError(f"{path}: {e}") from e
    df.columns = [c.strip() for c in df.columns]

    if schema is not None:
        df = coerce_schema(df, schema, factors=factors)
    if factors:
        for col in [c for c in df.columns if pd.api.types.is_string_dtype(df[c].dtype)]:
            levels = sorted(df[col].dropna().astype(str).unique())
            df[col] = pd.Categorical(df[col], categories=levels)
    return df


def check_same_schema(a: pd.DataFrame, b: pd.DataFrame) -> None:
    """Both cohorts must share column names, dtypes and factor levels."""
    if list(a.columns) != list(b.columns):
        raise SchemaError(f"Column mismatch: {list(a.columns)} vs {list(b.columns)}")
    for col in a.columns:
        da, db = a[col].dtype, b[col].dtype
        if isinstance(da, pd.CategoricalDtype) or isinstance(db, pd.CategoricalDtype):
            if not (isinstance(da, pd.CategoricalDtype) and isinstance(db, pd.CategoricalDtype)) \
                    or list(da.categories) != list(db.categories):
                raise SchemaError(f"Column '{col}' has different factor levels")
        elif pd.api.types.is_numeric_dtype(da) != pd.api.types.is_numeric_dtype(db):
            raise SchemaError(f"Column '{col}' has different types: {da} vs {db}")


# ============================ Feature selection =============================

def select_features(df: pd.DataFrame, columns: Iterable[str], target: Optional[str] = None,
                    forbidden: Iterable[str] = ()) -> pd.DataFrame:
    """Projection onto `columns` (in order), plus `target` appended when given."""
    columns = list(columns)
    leaked = [c for c in columns if c in set(forbidden)]
    if leaked:
        raise SchemaError(f"Columns {leaked} are only known after the outcome")
    wanted = columns + ([target] if target is not None and target not in columns else [])
    missing = [c for c in wanted if c not in df.columns]
    if missing:
        raise MissingColumnError(f"Missing columns: {missing}")
    return df.loc[:, wanted].copy()


def target_vector(df: pd.DataFrame, target: str = TARGET, positive=POSITIVE,
                  negative=NEGATIVE) -> np.ndarray:
    """Outcome column as 0/1 ints (1 = `positive`). A cohort may hold only one of the two levels."""
    if target not in df.columns:
        raise MissingColumnError(f"Missing target column '{target}'")
    s = df[target]
    if s.isna().any():
        raise InvalidInputError(f"Target '{target}' has missing values")
    if isinstance(s.dtype, pd.CategoricalDtype):
        levels = list(s.cat.categories)
    else:
        levels = sorted(s.unique().tolist(), key=str)
    if not levels or not set(levels) <= {positive, negative}:
        raise InvalidInputError(
            f"Target '{target}' levels {levels} are not in {[negative, positive]}")
    return (s == positive).to_numpy().astype(int)


# ============================== Explore =====================================

def level_summary(df: pd.DataFrame, target: str = TARGET, positive=POSITIVE) -> pd.DataFrame:
    """Per factor level: number of patients and outcome rate."""
    y = target_vector(df, target, positive)
    rows = []
    for col in df.columns:
        if col == target or not isinstance(df[col].dtype, pd.CategoricalDtype):
            continue
        grp = pd.DataFrame({"level": df[col], "y": y}).groupby("level", observed=False)["y"]
        for level, n, rate in zip(grp.size().index, grp.size().values, grp.mean().values):
            rows.append({"variable": col, "level": str(level), "n": int(n), "rate": float(rate)})
    return pd.DataFrame(rows, columns=["variable", "level", "n", "rate"])


def age_summary(df: pd.DataFrame, target: str = TARGET) -> pd.DataFrame:
    return df.groupby(target, observed=False)["Age"].describe()


# ============================== Simulation ==================================

def _sigmoid(z):
    return 1.0 / (1.0 + np.exp(-z))


def simulate_cohort(n: int = 10_000, wave: str = "spring", seed: int = 42) -> pd.DataFrame:
    """
    Synthetic cohort with the COVID schema. Age drives both comorbidities and
    mortality; the summer wave has lower mortality at the same risk profile.
    Hospitalization/Fever/Cough are generated from the outcome.
    """
    if wave not in ("spring", "summer"):
        raise InvalidInputError(f"Unknown wave '{wave}'")
    rng = np.random.default_rng(seed)

    age = np.clip(np.round(rng.normal(48, 20, size=n)), 0, 100).astype(int)
    male = rng.random(n) < 0.48
    a = (age - 50) / 10.0

    def comorbidity(intercept, slope):
        return rng.random(n) < _sigmoid(intercept + slope * a)

    cardio = comorbidity(-1.9, 0.55)
    diab   = comorbidity(-2.4, 0.35)
    neuro  = comorbidity(-3.2, 0.45)
    kidney = comorbidity(-3.5, 0.40)
    cancer = comorbidity(-3.3, 0.30)

    shift = 0.0 if wave == "spring" else -0.9
    logit = (-4.0 + shift + 0.85 * a + 0.3 * male + 0.7 * cardio + 0.4 * diab
             + 0.6 * neuro + 0.8 * kidney + 0.6 * cancer)
    death = rng.random(n) < _sigmoid(logit)

    hosp  = rng.random(n) < _sigmoid(-2.0 + 3.0 * death + 0.25 * a)
    fever = rng.random(n) < _sigmoid(-0.6 + 1.4 * death)
    cough = rng.random(n) < _sigmoid(-0.4 + 0.9 * death)

    yn = np.array(YES_NO)
    df = pd.DataFrame({
        "Gender": np.where(male, "Male", "Female"),
        "Age": age,
        "Cardiovascular Diseases": yn[cardio.astype(int)],
        "Diabetes": yn[diab.astype(int)],
        "Neurological Diseases": yn[neuro.astype(int)],
        "Kidney Diseases": yn[kidney.astype(int)],
        "Cancer": yn[cancer.astype(int)],
        "Hospitalization": yn[hosp.astype(int)],
        "Fever": yn[fever.astype(int)],
        "Cough": yn[cough.astype(int)],
        "Death": yn[death.astype(int)],
    })
    return coerce_schema(df, COVID_SCHEMA)


def write_table(df: pd.DataFrame, path, sep: str = ";") -> None:
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    df.to_csv(path, sep=sep, index=False)
    print(f"[SAVE] {path}")


if __name__ == "__main__":
    write_table(simulate_cohort(10_000, "spring", seed=1313), "data/covid_spring.csv")
    write_table(simulate_cohort(10_000, "summer", seed=2020), "data/covid_summer.csv")
