"""
================= COVID-19 Mortality Risk — Explanatory Model Analysis =================

A top-to-bottom walkthrough of evaluating and explaining classification models
on two cohorts of COVID-19 patients: spring (training) and summer (validation).

It includes: reproducibility log; exploration (outcome balance, age by outcome,
death rate per comorbidity level); feature selection (only what is known
before the outcome); models (CDC relative-risk heuristic, decision tree,
random forest, randomized-search tuned forest); validation performance (AUC,
Gini, KS, Brier, precision/recall/F1 at an explicit cutoff, ROC and lift);
global explanations (permutation importance, partial dependence with groups
and clusters); and a local explanation for one patient (Shapley values,
TreeSHAP, ceteris-paribus profiles). Outputs: figures, CSV exports, saved
pipelines and a short model card.

Run `python covid_data.py` once to write the demo cohorts, then `python main.py`.

Palette: blue = survived (No), coral = died (Yes).
=========================================================================================
"""

import os
import sys
import platform
import warnings
warnings.filterwarnings("ignore", category=UserWarning)

import numpy as np
import pandas as pd

import covid_plots as plots
from covid_data import (
    COVID_SCHEMA, FEATURES, POST_OUTCOME, TARGET, POSITIVE,
    load_table, check_same_schema, select_features, target_vector,
    level_summary, age_summary,
)
from covid_models import (
    RiskFormulaAdapter, ClassifierAdapter, TunedClassifierAdapter,
    cdc_risk, fit_tree, fit_forest, tune_forest, tree_rules, save_model,
)
from covid_metrics import evaluate, performance_table, cutoff_table
from covid_explain import (
    variable_importance, partial_dependence, default_grid,
    shapley_attribution, tree_shap_attribution, ceteris_paribus_profile,
)

# -------------------- Configuration ----------------------------------------
SPRING_PATH   = "data/covid_spring.csv"   # training cohort
SUMMER_PATH   = "data/covid_summer.csv"   # validation cohort
SEP           = ";"
RANDOM_SEED   = 42
CUTOFF        = 0.10                      # decision cutoff for the rare positive class
N_TREES       = 500
TUNE_N_ITER   = 10                        # randomized-search evaluation budget
TUNE_CV       = 5
TUNE_MAX_TREES = 1000
IMPORTANCE_REPEATS = 10
PD_VARIABLES  = ["Age", "Cardiovascular Diseases"]
PD_GROUPS     = "Cardiovascular Diseases"
PD_CLUSTERS   = 3
PD_SAMPLE     = 500                       # background rows for profiles
SHAP_SAMPLES  = 1000
SHAP_BACKGROUND = 200
N_JOBS        = -1
REPORTS_DIR   = "reports"
EXPORTS_DIR   = "exports"
ARTIFACTS_DIR = "artifacts"

# The patient explained locally: 76-year-old man with cardiovascular disease.
INSTANCE = {
    "Gender": "Male", "Age": 76, "Cardiovascular Diseases": "Yes", "Diabetes": "No",
    "Neurological Diseases": "No", "Kidney Diseases": "No", "Cancer": "No",
}
# ----------------------------------------------------------------------------


# ============================== Small helpers ==============================

def save_run_environment(reports_dir: str = REPORTS_DIR):
    os.makedirs(reports_dir, exist_ok=True)
    path = os.path.join(reports_dir, "run_environment.txt")
    import sklearn, scipy, matplotlib, seaborn, joblib, shap
    with open(path, "w", encoding="utf-8") as f:
        f.write("=== Run Environment ===\n")
        f.write(f"Python        : {sys.version.split()[0]} ({platform.system()})\n")
        f.write(f"numpy         : {np.__version__}\n")
        f.write(f"pandas        : {pd.__version__}\n")
        f.write(f"scipy         : {scipy.__version__}\n")
        f.write(f"scikit-learn  : {sklearn.__version__}\n")
        f.write(f"joblib        : {joblib.__version__}\n")
        f.write(f"shap          : {shap.__version__}\n")
        f.write(f"matplotlib    : {matplotlib.__version__}\n")
        f.write(f"seaborn       : {seaborn.__version__}\n")
    print(f"[SAVE] Environment -> {path}")


def export_csv(df: pd.DataFrame, name: str, exports_dir: str = EXPORTS_DIR) -> str:
    os.makedirs(exports_dir, exist_ok=True)
    path = os.path.join(exports_dir, name)
    df.to_csv(path, index=False)
    print(f"[SAVE] {path}")
    return path


def instance_frame(values: dict, like: pd.DataFrame) -> pd.DataFrame:
    """One-row frame with the same dtypes (factor levels) as `like`."""
    row = pd.DataFrame([values])
    for col in row.columns:
        if col in like.columns:
            row[col] = row[col].astype(like[col].dtype)
    return row


# ============================ Load & explore ================================

def load_cohorts(spring_path: str = SPRING_PATH, summer_path: str = SUMMER_PATH, sep: str = SEP):
    spring = load_table(spring_path, sep=sep, factors=True, schema=COVID_SCHEMA)
    summer = load_table(summer_path, sep=sep, factors=True, schema=COVID_SCHEMA)
    check_same_schema(spring, summer)
    print(f"[LOAD] spring: {spring.shape}  summer: {summer.shape}")
    return spring, summer


def explore(spring: pd.DataFrame, summer: pd.DataFrame, fig_dir: str, exports_dir: str):
    for name, df in [("spring", spring), ("summer", summer)]:
        y = target_vector(df, TARGET, POSITIVE)
        print(f"[EDA] {name}: {int(y.sum()):,} deaths of {len(y):,} = {y.mean():.2%}")
        plots.outcome_balance(df, TARGET, f"Deaths — {name} cohort", f"death_counts_{name}.png", fig_dir)
    print("\n[EDA] Age by outcome (spring):\n", age_summary(spring, TARGET))
    plots.age_by_outcome(spring, TARGET, "Age by outcome — spring cohort", "age_by_death.png", fig_dir)

    levels = level_summary(spring, TARGET, POSITIVE)
    export_csv(levels, "death_rate_by_level.csv", exports_dir)
    plots.rate_by_level(levels, "Death rate by level — spring cohort", "death_rate_by_level.png", fig_dir)
    return levels


# ================================ Modeling =================================

def fit_models(X_train: pd.DataFrame, y_train: np.ndarray, *, n_trees: int = N_TREES,
               tune_n_iter: int = TUNE_N_ITER, tune_cv: int = TUNE_CV,
               tune_max_trees: int = TUNE_MAX_TREES, n_jobs: int = N_JOBS,
               random_state: int = RANDOM_SEED) -> list:
    models = [RiskFormulaAdapter(cdc_risk, X_train, y_train, "CDC risk", features=FEATURES)]
    print("[FIT] CDC relative-risk heuristic (no training)")

    tree = fit_tree(X_train, y_train, random_state=random_state)
    models.append(ClassifierAdapter(tree, X_train, y_train, "Decision tree", features=FEATURES))
    print(f"[FIT] Decision tree: depth={tree.named_steps['clf'].get_depth()}, "
          f"leaves={tree.named_steps['clf'].get_n_leaves()}")

    forest = fit_forest(X_train, y_train, n_estimators=n_trees, n_jobs=n_jobs, random_state=random_state)
    models.append(ClassifierAdapter(forest, X_train, y_train, "Random forest", features=FEATURES))
    print(f"[FIT] Random forest: {n_trees} trees")

    search = tune_forest(X_train, y_train, n_iter=tune_n_iter, cv=tune_cv, max_trees=tune_max_trees,
                         n_jobs=n_jobs, random_state=random_state)
    tuned = TunedClassifierAdapter(search, X_train, y_train, "Tuned forest", features=FEATURES)
    models.append(tuned)
    print(f"[TUNE] best CV AUC={tuned.record.best_score:.4f} with {tuned.record.describe()}")
    return models


def evaluate_models(models, X_test, y_test, cutoff: float, fig_dir: str, exports_dir: str) -> list:
    reports = [evaluate(m, X_test, y_test, cutoff) for m in models]
    for r in reports:
        print(f"[EVAL] {r.label}: AUC={r.auc:.4f}  flagged {r.tp + r.fp:,} of {r.n:,} at cutoff {r.cutoff:.2f}")
        if not np.isfinite(r.precision):
            print(f"[WARN] {r.label}: nothing flagged at cutoff {r.cutoff:.2f}; precision/F1 undefined")
    table = performance_table(reports)
    print("\n=== Validation performance (summer cohort) ===")
    print(table[["model", "AUC", "Precision", "Recall", "F1", "TP", "FP", "FN"]].to_string(index=False))
    export_csv(table, "model_performance.csv", exports_dir)
    export_csv(pd.concat([cutoff_table(m, X_test, y_test) for m in models], ignore_index=True),
               "cutoff_metrics.csv", exports_dir)

    plots.roc_plot(reports, "ROC — summer cohort", "roc.png", fig_dir)
    plots.lift_plot(reports, "Lift — summer cohort", "lift.png", fig_dir)
    for r in reports:
        plots.confusion_plot(r, f"cm_{plots.slug(r.label)}.png", fig_dir)
    return reports


# ============================== Explanations ===============================

def explain_globally(models, X_test, y_test, fig_dir: str, exports_dir: str, *,
                     n_repeats: int = IMPORTANCE_REPEATS, pd_sample: int = PD_SAMPLE,
                     n_jobs: int = N_JOBS, random_state: int = RANDOM_SEED) -> dict:
    importances = [variable_importance(m, X_test, y_test, n_repeats=n_repeats,
                                       random_state=random_state, n_jobs=n_jobs)
                   for m in models]
    summary = pd.concat([r.summary() for r in importances], ignore_index=True)
    export_csv(summary, "variable_importance.csv", exports_dir)
    for r in importances:
        top = r.summary().iloc[0]
        print(f"[EXPLAIN] {r.label}: top variable {top['variable']} "
              f"(+{top['mean_increase']:.4f} {r.loss_name})")
    plots.importance_plot(importances, "Permutation importance — summer cohort", "importance.png", fig_dir)

    background = X_test.sample(n=min(pd_sample, len(X_test)), random_state=random_state)
    profiles = {}
    for var in PD_VARIABLES:
        grid = default_grid(X_test[var])
        reps = [partial_dependence(m, var, grid, background) for m in models]
        profiles[var] = reps
        plots.profile_plot(reps, f"Partial dependence — {var}", f"pd_{plots.slug(var)}.png", fig_dir)

    age_grid = default_grid(X_test["Age"])
    grouped = [partial_dependence(m, "Age", age_grid, background, groups=PD_GROUPS) for m in models[1:]]
    plots.profile_plot(grouped, f"Partial dependence — Age by {PD_GROUPS}", "pd_age_grouped.png", fig_dir)
    clustered = partial_dependence(models[-1], "Age", age_grid, background, k=PD_CLUSTERS,
                                   random_state=random_state)
    plots.profile_plot([clustered], f"Clustered profiles — Age ({models[-1].label})",
                       "pd_age_clusters.png", fig_dir)

    all_profiles = [r.profiles.assign(model=r.label, kind=r.kind)
                    for reps in profiles.values() for r in reps] + \
                   [r.profiles.assign(model=r.label, kind=r.kind) for r in grouped + [clustered]]
    export_csv(pd.concat(all_profiles, ignore_index=True), "profiles.csv", exports_dir)
    return {"importance": importances, "profiles": profiles, "grouped": grouped, "clustered": clustered}


def explain_instance(models, instance: pd.DataFrame, background: pd.DataFrame,
                     fig_dir: str, exports_dir: str, *, n_samples: int = SHAP_SAMPLES,
                     shap_background: int = SHAP_BACKGROUND,
                     random_state: int = RANDOM_SEED) -> dict:
    bg = background.sample(n=min(shap_background, len(background)), random_state=random_state)
    attributions = []
    for m in models:
        rep = shapley_attribution(m, instance, bg, n_samples=n_samples, random_state=random_state)
        attributions.append(rep)
        print(f"[EXPLAIN] {m.label}: prediction={rep.prediction:.4f} baseline={rep.baseline:.4f} "
              f"residual={rep.residual:+.5f}")
        plots.attribution_plot(rep, f"Shapley values — {m.label}", f"shap_{plots.slug(m.label)}.png", fig_dir)
        if isinstance(m, ClassifierAdapter):
            exact = tree_shap_attribution(m, instance, bg, max_background=shap_background,
                                          random_state=random_state)
            attributions.append(exact)
    rows = [r.contributions.assign(model=r.label, method=r.method, baseline=r.baseline,
                                   prediction=r.prediction) for r in attributions]
    export_csv(pd.concat(rows, ignore_index=True), "attributions.csv", exports_dir)

    cp = {}
    for var in PD_VARIABLES:
        grid = default_grid(background[var])
        reps = [ceteris_paribus_profile(m, instance, var, grid) for m in models]
        cp[var] = reps
        plots.profile_plot(reps, f"Ceteris paribus — {var}", f"cp_{plots.slug(var)}.png", fig_dir)
    return {"attributions": attributions, "ceteris_paribus": cp}


# ========================== Model card =====================================

def write_model_card(train: pd.DataFrame, test: pd.DataFrame, reports, models,
                     importances, reports_dir: str = REPORTS_DIR):
    os.makedirs(reports_dir, exist_ok=True)
    tuned = next((m for m in models if isinstance(m, TunedClassifierAdapter)), None)
    lines = []
    lines.append("# Model Card: COVID-19 Mortality Risk\n")
    lines.append("## 1. Intended Use\nTeaching material: compare and explain simple mortality-risk "
                 "models. Not for clinical decisions.\n")
    lines.append("## 2. Data\n")
    lines.append(f"- Training (spring): **{len(train):,}** patients; "
                 f"validation (summer): **{len(test):,}** patients.\n")
    lines.append(f"- Features: {', '.join(FEATURES)}.\n")
    lines.append(f"- Excluded (known only after the outcome): {', '.join(POST_OUTCOME)}.\n")
    lines.append("## 3. Models\n")
    for m in models:
        lines.append(f"- **{m.label}** ({type(m).__name__})\n")
    if tuned is not None:
        lines.append(f"\nTuned configuration: `{tuned.record.describe()}` "
                     f"(CV {tuned.record.scoring} {tuned.record.best_score:.3f}, "
                     f"{tuned.record.n_iter} evaluations).\n")
    lines.append("## 4. Performance (validation)\n")
    lines.append("| Model | AUC | Precision | Recall | F1 | Flagged |\n|---|---|---|---|---|---|\n")
    for r in reports:
        lines.append(f"| {r.label} | {r.auc:.3f} | {r.precision:.3f} | {r.recall:.3f} | "
                     f"{r.f1:.3f} | {r.tp + r.fp:,} |\n")
    lines.append(f"\nCutoff **{reports[0].cutoff:.2f}** is a convenience for a rare outcome, "
                 "not an optimized operating point (see `exports/cutoff_metrics.csv`).\n")
    lines.append("## 5. Interpretability\n")
    for r in importances:
        top = ", ".join(r.summary()["variable"].head(3))
        lines.append(f"- {r.label}: most important — {top}\n")
    lines.append("## 6. Risk & Limitations\n- Cohorts differ in time; mortality shifts between waves.  \n"
                 "- Importance and profiles describe the model, not causal effects.  \n"
                 "- Shapley values are Monte Carlo estimates.\n")
    path = os.path.join(reports_dir, "model_card.md")
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))
    print(f"[SAVE] {path}")
    return path


# ================================ Main =====================================

def run(spring_path: str = SPRING_PATH, summer_path: str = SUMMER_PATH, out_dir: str = ".",
        cutoff: float = CUTOFF, **settings) -> dict:
    """Whole walkthrough; `settings` shrink budgets (n_trees, tune_n_iter, ...)."""
    reports_dir = os.path.join(out_dir, REPORTS_DIR)
    fig_dir = os.path.join(reports_dir, "figures")
    exports_dir = os.path.join(out_dir, EXPORTS_DIR)
    artifacts_dir = os.path.join(out_dir, ARTIFACTS_DIR)
    seed = settings.get("random_state", RANDOM_SEED)
    n_jobs = settings.get("n_jobs", N_JOBS)

    save_run_environment(reports_dir)
    spring, summer = load_cohorts(spring_path, summer_path)
    explore(spring, summer, fig_dir, exports_dir)

    X_train = select_features(spring, FEATURES, forbidden=POST_OUTCOME)
    X_test = select_features(summer, FEATURES, forbidden=POST_OUTCOME)
    y_train = target_vector(spring, TARGET, POSITIVE)
    y_test = target_vector(summer, TARGET, POSITIVE)

    models = fit_models(
        X_train, y_train,
        n_trees=settings.get("n_trees", N_TREES),
        tune_n_iter=settings.get("tune_n_iter", TUNE_N_ITER),
        tune_cv=settings.get("tune_cv", TUNE_CV),
        tune_max_trees=settings.get("tune_max_trees", TUNE_MAX_TREES),
        n_jobs=n_jobs, random_state=seed,
    )
    print("\n[FIT] Decision tree rules:\n" + tree_rules(models[1]))
    plots.tree_plot(models[1], "Decision tree (top levels)", "tree.png", fig_dir)
    export_csv(models[-1].record.results, "tuning_results.csv", exports_dir)
    for m in models[1:]:
        save_model(m.estimator, os.path.join(artifacts_dir, f"{plots.slug(m.label)}.joblib"))

    reports = evaluate_models(models, X_test, y_test, cutoff, fig_dir, exports_dir)
    global_expl = explain_globally(
        models, X_test, y_test, fig_dir, exports_dir,
        n_repeats=settings.get("n_repeats", IMPORTANCE_REPEATS),
        pd_sample=settings.get("pd_sample", PD_SAMPLE), n_jobs=n_jobs, random_state=seed,
    )
    instance = instance_frame(INSTANCE, X_test)
    local_expl = explain_instance(
        models, instance, X_test, fig_dir, exports_dir,
        n_samples=settings.get("shap_samples", SHAP_SAMPLES),
        shap_background=settings.get("shap_background", SHAP_BACKGROUND), random_state=seed,
    )
    write_model_card(spring, summer, reports, models, global_expl["importance"], reports_dir)
    print("\nAll done. Figures saved in:", fig_dir)
    return {"models": models, "reports": reports, **global_expl, **local_expl}


def main() -> None:
    run()


if __name__ == "__main__":
    main()
