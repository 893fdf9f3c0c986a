"""Pytest fixtures: simulated cohorts, fitted models, temporary cohort files."""

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import pandas as pd
import pytest

from covid_data import (
    FEATURES, POST_OUTCOME, TARGET, simulate_cohort, select_features, target_vector, write_table,
)
from covid_models import (
    ClassifierAdapter, RiskFormulaAdapter, cdc_risk, fit_forest, fit_tree,
)


@pytest.fixture(scope="session")
def spring() -> pd.DataFrame:
    """Small training cohort."""
    return simulate_cohort(1500, "spring", seed=11)


@pytest.fixture(scope="session")
def summer() -> pd.DataFrame:
    """Small validation cohort."""
    return simulate_cohort(800, "summer", seed=12)


@pytest.fixture(scope="session")
def train_xy(spring: pd.DataFrame):
    return select_features(spring, FEATURES, forbidden=POST_OUTCOME), target_vector(spring, TARGET)


@pytest.fixture(scope="session")
def valid_xy(summer: pd.DataFrame):
    return select_features(summer, FEATURES, forbidden=POST_OUTCOME), target_vector(summer, TARGET)


@pytest.fixture(scope="session")
def cdc_model(train_xy) -> RiskFormulaAdapter:
    X, y = train_xy
    return RiskFormulaAdapter(cdc_risk, X, y, "CDC risk", features=FEATURES)


@pytest.fixture(scope="session")
def tree_model(train_xy) -> ClassifierAdapter:
    X, y = train_xy
    return ClassifierAdapter(fit_tree(X, y), X, y, "Decision tree", features=FEATURES)


@pytest.fixture(scope="session")
def forest_model(train_xy) -> ClassifierAdapter:
    X, y = train_xy
    pipe = fit_forest(X, y, n_estimators=30, n_jobs=1)
    return ClassifierAdapter(pipe, X, y, "Random forest", features=FEATURES)


@pytest.fixture
def cohort_files(tmp_path: Path, spring: pd.DataFrame, summer: pd.DataFrame):
    """Spring/summer cohorts written as semicolon-separated files."""
    spring_path = tmp_path / "covid_spring.csv"
    summer_path = tmp_path / "covid_summer.csv"
    write_table(spring, spring_path)
    write_table(summer, summer_path)
    return spring_path, summer_path
