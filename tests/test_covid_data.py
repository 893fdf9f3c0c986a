"""Tests for cohort loading, schema coercion and feature selection."""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from covid_data import (
    COVID_SCHEMA, FEATURES, POST_OUTCOME, TARGET,
    check_same_schema, level_summary, load_table, select_features, simulate_cohort,
    target_vector,
)
from covid_errors import InvalidInputError, MissingColumnError, ParseError, SchemaError


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadTable:
    """Tests for load_table."""

    def test_round_trip_keeps_schema(self, cohort_files, spring: pd.DataFrame) -> None:
        """Test that a written cohort loads back with fixed factor levels."""
        spring_path, _ = cohort_files
        df = load_table(spring_path, sep=";", schema=COVID_SCHEMA)

        assert list(df.columns) == list(spring.columns)
        assert len(df) == len(spring)
        assert pd.api.types.is_numeric_dtype(df["Age"])
        assert list(df["Diabetes"].cat.categories) == ["No", "Yes"]
        assert list(df["Gender"].cat.categories) == ["Female", "Male"]

    def test_factor_levels_fixed_even_if_unseen(self, tmp_path: Path) -> None:
        """Test that declared levels are kept when a level does not occur."""
        path = _write(tmp_path / "t.csv", "Gender;Age\nMale;30\nMale;40\n")
        df = load_table(path, schema={"Gender": ["Female", "Male"], "Age": "numeric"})

        assert list(df["Gender"].cat.categories) == ["Female", "Male"]

    def test_text_columns_become_factors(self, tmp_path: Path) -> None:
        """Test that undeclared text columns get sorted levels."""
        path = _write(tmp_path / "t.csv", "a;b\nz;1\nx;2\ny;3\n")
        df = load_table(path)

        assert list(df["a"].cat.categories) == ["x", "y", "z"]
        assert pd.api.types.is_numeric_dtype(df["b"])

    def test_factors_false_keeps_text(self, tmp_path: Path) -> None:
        """Test that factors=False leaves text columns as text."""
        path = _write(tmp_path / "t.csv", "a;b\nz;1\nx;2\n")
        df = load_table(path, factors=False)

        assert not isinstance(df["a"].dtype, pd.CategoricalDtype)

    def test_extra_field_is_parse_error(self, tmp_path: Path) -> None:
        """Test that a row with too many fields is rejected."""
        path = _write(tmp_path / "t.csv", "a;b\n1;2\n3;4;5\n")
        with pytest.raises(ParseError, match="line 3"):
            load_table(path)

    def test_missing_field_is_parse_error(self, tmp_path: Path) -> None:
        """Test that a row with too few fields is rejected."""
        path = _write(tmp_path / "t.csv", "a;b;c\n1;2;3\n4;5\n")
        with pytest.raises(ParseError):
            load_table(path)

    def test_bad_level_is_schema_error(self, tmp_path: Path) -> None:
        """Test that a value outside the level set is rejected."""
        path = _write(tmp_path / "t.csv", "Diabetes\nYes\nMaybe\n")
        with pytest.raises(SchemaError, match="Maybe"):
            load_table(path, schema={"Diabetes": ["No", "Yes"]})

    def test_non_numeric_is_schema_error(self, tmp_path: Path) -> None:
        """Test that text in a numeric column is rejected."""
        path = _write(tmp_path / "t.csv", "Age\n30\nold\n")
        with pytest.raises(SchemaError, match="old"):
            load_table(path, schema={"Age": "numeric"})

    def test_missing_declared_column(self, tmp_path: Path) -> None:
        """Test that an absent declared column is a MissingColumnError."""
        path = _write(tmp_path / "t.csv", "Age\n30\n")
        with pytest.raises(MissingColumnError):
            load_table(path, schema={"Age": "numeric", "Gender": ["Female", "Male"]})

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_table(tmp_path / "nope.csv")


class TestSchema:
    """Tests for schema checks across cohorts."""

    def test_cohorts_share_schema(self, spring: pd.DataFrame, summer: pd.DataFrame) -> None:
        """Test that simulated cohorts share the schema."""
        check_same_schema(spring, summer)

    def test_level_mismatch(self, spring: pd.DataFrame) -> None:
        """Test that different level sets are detected."""
        other = spring.copy()
        other["Gender"] = other["Gender"].cat.add_categories(["Other"])
        with pytest.raises(SchemaError, match="Gender"):
            check_same_schema(spring, other)

    def test_column_mismatch(self, spring: pd.DataFrame) -> None:
        """Test that different column lists are detected."""
        with pytest.raises(SchemaError):
            check_same_schema(spring, spring.drop(columns=["Cough"]))


class TestSelectFeatures:
    """Tests for select_features."""

    def test_projection_order(self, spring: pd.DataFrame) -> None:
        """Test that columns come back in the requested order with the target last."""
        cols = ["Age", "Gender", "Cancer"]
        out = select_features(spring, cols, target=TARGET)

        assert list(out.columns) == cols + [TARGET]

    def test_input_not_mutated(self, spring: pd.DataFrame) -> None:
        """Test that the projection is a copy."""
        before = spring.copy()
        out = select_features(spring, FEATURES)
        out["Age"] = 0

        pd.testing.assert_frame_equal(spring, before)

    def test_missing_column(self, spring: pd.DataFrame) -> None:
        """Test that an absent column is reported."""
        with pytest.raises(MissingColumnError, match="Weight"):
            select_features(spring, ["Age", "Weight"])

    def test_post_outcome_column_rejected(self, spring: pd.DataFrame) -> None:
        """Test that post-outcome columns cannot be selected as features."""
        with pytest.raises(SchemaError, match="Hospitalization"):
            select_features(spring, FEATURES + ["Hospitalization"], forbidden=POST_OUTCOME)

    def test_features_exclude_post_outcome(self) -> None:
        """Test the declared feature subset."""
        assert not set(FEATURES) & set(POST_OUTCOME)
        assert TARGET not in FEATURES


class TestTargetAndSummaries:
    """Tests for target_vector and exploration summaries."""

    def test_target_vector(self) -> None:
        """Test conversion of the outcome to 0/1."""
        df = pd.DataFrame({"Death": pd.Categorical(["No", "Yes", "No"], categories=["No", "Yes"])})
        assert target_vector(df).tolist() == [0, 1, 0]

    def test_target_vector_bad_levels(self) -> None:
        """Test that unexpected outcome levels are rejected."""
        df = pd.DataFrame({"Death": ["No", "Dead", "Alive"]})
        with pytest.raises(InvalidInputError):
            target_vector(df)

    def test_target_vector_single_level(self) -> None:
        """Test that a text outcome with only one of the two levels is accepted."""
        survivors = pd.DataFrame({"Death": ["No", "No", "No"]})
        deaths = pd.DataFrame({"Death": ["Yes", "Yes"]})

        assert target_vector(survivors).tolist() == [0, 0, 0]
        assert target_vector(deaths).tolist() == [1, 1]

    def test_target_vector_single_unknown_level(self) -> None:
        """Test that one level outside No/Yes is still rejected."""
        with pytest.raises(InvalidInputError):
            target_vector(pd.DataFrame({"Death": ["Alive", "Alive"]}))

    def test_level_summary_rates(self) -> None:
        """Test outcome rate per level."""
        df = pd.DataFrame({
            "Cancer": pd.Categorical(["Yes", "Yes", "No", "No"], categories=["No", "Yes"]),
            "Death": pd.Categorical(["Yes", "No", "No", "No"], categories=["No", "Yes"]),
        })
        out = level_summary(df).set_index("level")

        assert out.loc["Yes", "rate"] == 0.5
        assert out.loc["No", "rate"] == 0.0
        assert out.loc["Yes", "n"] == 2

    def test_simulated_waves_differ(self) -> None:
        """Test that the summer wave has lower mortality than spring."""
        spring = target_vector(simulate_cohort(5000, "spring", seed=3))
        summer = target_vector(simulate_cohort(5000, "summer", seed=3))

        assert summer.mean() < spring.mean()
        assert 0 < summer.mean() < 0.5
        assert np.isin(spring, [0, 1]).all()
