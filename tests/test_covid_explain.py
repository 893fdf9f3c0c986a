"""Tests for permutation importance, profiles and Shapley attributions."""

import numpy as np
import pandas as pd
import pytest

from covid_data import FEATURES
from covid_errors import InvalidInputError, MissingColumnError, SchemaMismatchError
from sklearn.inspection import permutation_importance

from covid_explain import (
    _ScoringEstimator, _canonical_order, ceteris_paribus_profile, default_grid, loss_one_minus_auc,
    partial_dependence, shapley_attribution, tree_shap_attribution, variable_importance,
)
from covid_models import RiskFormulaAdapter, cdc_risk

AGE_GRID = [25, 45, 60, 85]


@pytest.fixture(scope="module")
def small_valid(valid_xy):
    X, y = valid_xy
    return X.iloc[:300].reset_index(drop=True), y[:300]


@pytest.fixture(scope="module")
def patient(valid_xy) -> pd.DataFrame:
    X, _ = valid_xy
    return X.iloc[[0]].reset_index(drop=True)


class TestVariableImportance:
    """Tests for permutation variable importance."""

    def test_invariant_to_row_order(self, tree_model, small_valid) -> None:
        """Test that shuffling the input rows does not change the report."""
        X, y = small_valid
        order = np.random.default_rng(5).permutation(len(X))
        a = variable_importance(tree_model, X, y, n_repeats=3)
        b = variable_importance(tree_model, X.iloc[order], y[order], n_repeats=3)

        pd.testing.assert_frame_equal(a.permutations, b.permutations)
        assert a.full_model_loss == b.full_model_loss

    def test_only_age_matters_for_cdc(self, cdc_model, small_valid) -> None:
        """Test that variables the model ignores have zero importance."""
        X, y = small_valid
        summary = variable_importance(cdc_model, X, y, n_repeats=3).summary().set_index("variable")

        assert summary.loc["Age", "mean_increase"] > 0
        others = summary.drop(index="Age")
        assert (others[["min_increase", "max_increase"]] == 0).all().all()
        assert summary.index[0] == "Age"

    def test_report_layout(self, cdc_model, small_valid) -> None:
        """Test full-model, per-variable and baseline rows per repeat."""
        X, y = small_valid
        r = variable_importance(cdc_model, X, y, n_repeats=4)
        counts = r.permutations["variable"].value_counts()

        assert counts["_full_model_"] == 4 and counts["_baseline_"] == 4
        assert all(counts[v] == 4 for v in FEATURES)
        assert len(r.summary()) == len(FEATURES)
        assert r.loss_name == "one_minus_auc"

    def test_one_column_permuted_per_call(self, train_xy, small_valid) -> None:
        """Test that each variable's loss comes from a table with only that column shuffled."""
        X_train, y_train = train_xy
        calls = []

        def spy(table):
            calls.append(table.copy())
            return cdc_risk(table)

        model = RiskFormulaAdapter(spy, X_train, y_train, "spy", features=FEATURES)
        X, y = small_valid
        variable_importance(model, X, y, n_repeats=2)

        reference = calls[0]
        per_variable = calls[:-2]  # the last two shuffle whole rows (_baseline_)
        changed = [{c for c in FEATURES if not t[c].equals(reference[c])} for t in per_variable]
        assert all(len(s) <= 1 for s in changed)
        assert set().union(*changed) == set(FEATURES)
        for t, s in zip(per_variable, changed):
            for c in s:
                assert sorted(t[c].tolist(), key=str) == sorted(reference[c].tolist(), key=str)

    def test_matches_sklearn_permutation_importance(self, tree_model, small_valid) -> None:
        """Test that per-variable increases are sklearn's importances under the negated loss."""
        X, y = small_valid
        r = variable_importance(tree_model, X, y, n_repeats=3, random_state=9)

        Xc, yc = _canonical_order(tree_model.align(X).reset_index(drop=True), y)
        ref = permutation_importance(
            _ScoringEstimator(tree_model), Xc, yc, n_repeats=3, random_state=9,
            scoring=lambda est, A, b: -loss_one_minus_auc(b, est.predict(A)),
        )
        age = r.permutations[r.permutations["variable"] == "Age"]["dropout_loss"].to_numpy()
        j = list(Xc.columns).index("Age")
        np.testing.assert_allclose(age - r.full_model_loss, ref.importances[j], atol=1e-12)

    def test_subset_of_variables(self, cdc_model, small_valid) -> None:
        """Test that only the requested variables are permuted."""
        X, y = small_valid
        r = variable_importance(cdc_model, X, y, n_repeats=2, variables=["Age", "Cancer"])
        assert r.summary()["variable"].tolist() == ["Age", "Cancer"]

    def test_cross_entropy_loss(self, tree_model, small_valid) -> None:
        """Test the alternative loss."""
        X, y = small_valid
        r = variable_importance(tree_model, X, y, n_repeats=2, loss="cross_entropy")
        assert r.loss_name == "cross_entropy"
        assert r.full_model_loss > 0

    def test_parallel_matches_serial(self, cdc_model, small_valid) -> None:
        """Test that parallel workers give the same result as a serial run."""
        X, y = small_valid
        serial = variable_importance(cdc_model, X, y, n_repeats=3, n_jobs=1)
        parallel = variable_importance(cdc_model, X, y, n_repeats=3, n_jobs=2)
        pd.testing.assert_frame_equal(serial.permutations, parallel.permutations)

    def test_unknown_loss(self, cdc_model, small_valid) -> None:
        """Test that an unknown loss name is rejected."""
        X, y = small_valid
        with pytest.raises(InvalidInputError, match="Unknown loss"):
            variable_importance(cdc_model, X, y, loss="rmse")

    def test_unknown_variable(self, cdc_model, small_valid) -> None:
        """Test that a non-feature variable is rejected."""
        X, y = small_valid
        with pytest.raises(MissingColumnError):
            variable_importance(cdc_model, X, y, variables=["Fever"])


class TestPartialDependence:
    """Tests for partial-dependence profiles."""

    def test_grid_order_and_values(self, cdc_model, small_valid) -> None:
        """Test that the curve follows the grid and equals the heuristic on Age alone."""
        X, _ = small_valid
        grid = [85, 25, 60]
        r = partial_dependence(cdc_model, "Age", grid, X)
        xs, ys = zip(*r.curve())

        assert list(xs) == grid
        np.testing.assert_allclose(ys, cdc_risk(pd.DataFrame({"Age": grid})), rtol=1e-12)
        assert r.kind == "partial" and r.groups == [""]

    def test_factor_grid(self, tree_model, small_valid) -> None:
        """Test a profile over factor levels."""
        X, _ = small_valid
        r = partial_dependence(tree_model, "Cardiovascular Diseases", ["No", "Yes"], X)
        assert [x for x, _ in r.curve()] == ["No", "Yes"]

    def test_default_grid(self, tree_model, small_valid) -> None:
        """Test that a missing grid falls back to levels or quantiles."""
        X, _ = small_valid
        r = partial_dependence(tree_model, "Gender", None, X)
        assert [x for x, _ in r.curve()] == ["Female", "Male"]
        ages = default_grid(X["Age"], grid_points=11)
        assert ages == sorted(ages) and ages[0] == X["Age"].min() and ages[-1] == X["Age"].max()

    def test_grouped_curves_average_to_overall(self, tree_model, small_valid) -> None:
        """Test that group curves weighted by group size give the plain curve."""
        X, _ = small_valid
        plain = partial_dependence(tree_model, "Age", AGE_GRID, X)
        grouped = partial_dependence(tree_model, "Age", AGE_GRID, X, groups="Gender")
        weights = X["Gender"].value_counts()

        assert grouped.kind == "partial_grouped"
        assert grouped.groups == ["Female", "Male"]
        mixed = sum(weights[g] * np.array([y for _, y in grouped.curve(g)]) for g in grouped.groups)
        np.testing.assert_allclose(mixed / len(X), [y for _, y in plain.curve()])

    def test_clustered_curves(self, forest_model, small_valid) -> None:
        """Test k-means clustered profiles."""
        X, _ = small_valid
        r = partial_dependence(forest_model, "Age", AGE_GRID, X, k=2)

        assert r.kind == "partial_clustered"
        assert 1 <= len(r.groups) <= 2
        assert all(g.startswith("cluster_") for g in r.groups)
        assert all(len(r.curve(g)) == len(AGE_GRID) for g in r.groups)

    def test_single_cluster_is_plain_curve(self, cdc_model, small_valid) -> None:
        """Test that one cluster reproduces the plain partial-dependence curve."""
        X, _ = small_valid
        plain = partial_dependence(cdc_model, "Age", AGE_GRID, X)
        one = partial_dependence(cdc_model, "Age", AGE_GRID, X, k=1)
        np.testing.assert_allclose([y for _, y in one.curve("cluster_1")], [y for _, y in plain.curve()])

    def test_groups_and_k_exclusive(self, tree_model, small_valid) -> None:
        """Test that groups and k cannot be combined."""
        X, _ = small_valid
        with pytest.raises(InvalidInputError):
            partial_dependence(tree_model, "Age", AGE_GRID, X, groups="Gender", k=2)

    def test_unknown_level(self, tree_model, small_valid) -> None:
        """Test that grid values must be levels of a factor."""
        X, _ = small_valid
        with pytest.raises(InvalidInputError, match="Other"):
            partial_dependence(tree_model, "Gender", ["Female", "Other"], X)

    def test_unknown_variable(self, tree_model, small_valid) -> None:
        """Test that a non-feature variable is rejected."""
        X, _ = small_valid
        with pytest.raises(MissingColumnError):
            partial_dependence(tree_model, "Fever", ["No", "Yes"], X)

    def test_unknown_group(self, tree_model, small_valid) -> None:
        """Test that the grouping column must exist."""
        X, _ = small_valid
        with pytest.raises(MissingColumnError):
            partial_dependence(tree_model, "Age", AGE_GRID, X, groups="Region")


class TestCeterisParibus:
    """Tests for ceteris-paribus profiles."""

    @pytest.mark.parametrize("model_name", ["tree_model", "cdc_model"])
    def test_reproduces_prediction(self, request, model_name, patient) -> None:
        """Test that the curve passes through the instance's own prediction."""
        model = request.getfixturevalue(model_name)
        own_age = int(patient["Age"].iloc[0])
        r = ceteris_paribus_profile(model, patient, "Age", sorted({20, 50, 80, own_age}))
        curve = dict(r.curve())

        assert curve[own_age] == pytest.approx(model.predict(patient)[0], abs=1e-12)
        assert r.observation["_yhat_"].iloc[0] == pytest.approx(model.predict(patient)[0], abs=1e-12)
        assert r.kind == "ceteris_paribus"

    def test_factor_sweep(self, tree_model, patient) -> None:
        """Test a sweep over factor levels."""
        r = ceteris_paribus_profile(tree_model, patient, "Cardiovascular Diseases", ["No", "Yes"])
        assert [x for x, _ in r.curve()] == ["No", "Yes"]

    def test_needs_one_row(self, tree_model, valid_xy) -> None:
        """Test that more than one instance row is rejected."""
        X, _ = valid_xy
        with pytest.raises(InvalidInputError):
            ceteris_paribus_profile(tree_model, X.iloc[:2], "Age", AGE_GRID)


class TestShapley:
    """Tests for permutation-sampled and tree Shapley attributions."""

    def test_contributions_add_up(self, tree_model, patient, valid_xy) -> None:
        """Test that contributions add up to prediction minus the mean background prediction."""
        X, _ = valid_xy
        bg = X.iloc[:20]
        r = shapley_attribution(tree_model, patient, bg, n_samples=200, random_state=1)

        assert r.residual == pytest.approx(0.0, abs=1e-10)
        assert r.prediction == pytest.approx(tree_model.predict(patient)[0])
        assert r.baseline == pytest.approx(tree_model.predict(bg).mean())
        assert r.contributions["variable"].tolist() == FEATURES
        assert r.method == "shapley_permutation"

    @pytest.mark.parametrize("n_samples", [100, 10000])
    def test_additive_for_any_budget(self, tree_model, patient, valid_xy, n_samples) -> None:
        """Test that small and large budgets both give additive contributions."""
        X, _ = valid_xy
        bg = X.iloc[:30]
        r = shapley_attribution(tree_model, patient, bg, n_samples=n_samples, random_state=2)

        assert abs(r.residual) <= 1e-10
        assert r.n_samples == n_samples

    def test_budget_raised_to_one_ordering(self, tree_model, patient, valid_xy) -> None:
        """Test that a budget below one forward and backward pass is raised to it."""
        X, _ = valid_xy
        r = shapley_attribution(tree_model, patient, X.iloc[:20], n_samples=3)

        assert r.n_samples == 2 * len(FEATURES) + 1
        assert abs(r.residual) <= 1e-10

    def test_ignored_features_get_zero(self, cdc_model, patient, valid_xy) -> None:
        """Test that features the model ignores get exactly zero."""
        X, _ = valid_xy
        r = shapley_attribution(cdc_model, patient, X.iloc[:25], n_samples=100)
        series = r.as_series()

        assert (series.drop("Age") == 0).all()
        assert series["Age"] == pytest.approx(r.prediction - r.baseline, abs=1e-12)

    def test_same_seed_same_result(self, tree_model, patient, valid_xy) -> None:
        """Test reproducibility with a fixed seed."""
        X, _ = valid_xy
        a = shapley_attribution(tree_model, patient, X.iloc[:40], n_samples=120, random_state=7)
        b = shapley_attribution(tree_model, patient, X.iloc[:40], n_samples=120, random_state=7)
        pd.testing.assert_frame_equal(a.contributions, b.contributions)

    def test_batches_do_not_change_result(self, tree_model, patient, valid_xy) -> None:
        """Test that the batch size is only a memory knob."""
        X, _ = valid_xy
        a = shapley_attribution(tree_model, patient, X.iloc[:40], n_samples=120, batch_size=500)
        b = shapley_attribution(tree_model, patient, X.iloc[:40], n_samples=120, batch_size=7)
        np.testing.assert_allclose(a.contributions["contribution"], b.contributions["contribution"])

    def test_series_instance(self, tree_model, patient, valid_xy) -> None:
        """Test that a Series row gives the same attribution as a one-row frame."""
        X, _ = valid_xy
        a = shapley_attribution(tree_model, patient, X.iloc[:20], n_samples=40)
        b = shapley_attribution(tree_model, patient.iloc[0], X.iloc[:20], n_samples=40)
        np.testing.assert_allclose(a.contributions["contribution"], b.contributions["contribution"])

    def test_instance_missing_feature(self, tree_model, patient, valid_xy) -> None:
        """Test that an instance without all features is rejected."""
        X, _ = valid_xy
        with pytest.raises(SchemaMismatchError):
            shapley_attribution(tree_model, patient.drop(columns=["Age"]), X.iloc[:20], n_samples=20)

    def test_instance_unknown_level(self, tree_model, patient, valid_xy) -> None:
        """Test that an instance with an unknown level is rejected."""
        X, _ = valid_xy
        bad = patient.astype({"Gender": object}).assign(Gender="Other")
        with pytest.raises(SchemaMismatchError):
            shapley_attribution(tree_model, bad, X.iloc[:20], n_samples=20)

    def test_instance_not_a_table(self, tree_model, valid_xy) -> None:
        """Test that a plain list is rejected."""
        X, _ = valid_xy
        with pytest.raises(SchemaMismatchError):
            shapley_attribution(tree_model, [1, 2, 3], X.iloc[:20], n_samples=20)

    def test_sorted_by_magnitude(self, tree_model, patient, valid_xy) -> None:
        """Test that sorted() orders contributions by absolute size."""
        X, _ = valid_xy
        r = shapley_attribution(tree_model, patient, X.iloc[:20], n_samples=40)
        sizes = r.sorted()["contribution"].abs().tolist()
        assert sizes == sorted(sizes, reverse=True)

    def test_tree_shap_additive(self, tree_model, patient, valid_xy) -> None:
        """Test TreeSHAP: baseline plus contributions equals the prediction."""
        X, _ = valid_xy
        r = tree_shap_attribution(tree_model, patient, X.iloc[:50])

        assert r.method == "tree_shap"
        assert r.residual == pytest.approx(0.0, abs=1e-4)
        assert r.contributions["variable"].tolist() == FEATURES

    def test_tree_shap_needs_classifier(self, cdc_model, patient, valid_xy) -> None:
        """Test that TreeSHAP rejects a formula model."""
        X, _ = valid_xy
        with pytest.raises(InvalidInputError):
            tree_shap_attribution(cdc_model, patient, X.iloc[:20])
