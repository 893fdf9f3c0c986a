# dashboard.py
# COVID-19 Mortality Risk — interactive walkthrough
# - Pages: Introduction, Cohorts, Model Performance, Variable Importance, Profiles, Patient Check
# - Same models and explainers as main.py, with smaller budgets so pages stay responsive
# - Patient Check: enter one patient, get each model's risk, Shapley values and ceteris-paribus curves
#
#     streamlit run dashboard.py

from __future__ import annotations

import os
from typing import List

import numpy as np
import pandas as pd
import streamlit as st
import plotly.express as px
import plotly.graph_objects as go

from covid_data import (
    COVID_SCHEMA, FEATURES, POST_OUTCOME, TARGET, POSITIVE,
    load_table, check_same_schema, select_features, target_vector, level_summary,
)
from covid_models import (
    RiskFormulaAdapter, ClassifierAdapter, TunedClassifierAdapter,
    cdc_risk, fit_tree, fit_forest, tune_forest,
)
from covid_metrics import evaluate, performance_table
from covid_explain import (
    variable_importance, partial_dependence, default_grid,
    shapley_attribution, ceteris_paribus_profile,
)

SPRING_PATH = "data/covid_spring.csv"
SUMMER_PATH = "data/covid_summer.csv"
RANDOM_SEED = 42

# ---------------- Page + Styles ----------------
st.set_page_config(page_title="COVID-19 Risk — Dashboard", layout="wide")

st.markdown("""
<style>
:root {
  --teal: #007c82;
  --teal-light: #e6f6f7;
  --ink: #0f172a;
  --muted: #475569;
  --radius: 16px;
  --shadow: 0 6px 18px rgba(0,0,0,0.08);
}
.big-title { background: var(--teal); color:#fff!important; padding:18px 22px;
  border-radius: var(--radius); box-shadow: var(--shadow); font-size:1.6rem;
  font-weight:700; margin:8px 0 18px 0; letter-spacing:.2px; }
.section-title { background: var(--teal-light); border:2px solid var(--teal); color:var(--ink);
  padding:10px 14px; border-radius:12px; box-shadow: var(--shadow); font-size:1.05rem;
  font-weight:700; margin:8px 0 10px 0; }
.note { color: var(--muted); font-size:.95rem; margin:6px 2px 14px 2px; }
section[data-testid="stSidebar"] { min-width: 300px; max-width: 300px; }
</style>
""", unsafe_allow_html=True)

def big_title(t: str): st.markdown(f'<div class="big-title">{t}</div>', unsafe_allow_html=True)
def section_title(t: str): st.markdown(f'<div class="section-title">{t}</div>', unsafe_allow_html=True)
def pct(x: float) -> str: return "—" if not np.isfinite(x) else f"{100*x:.1f}%"

# ---------------- Data helpers ----------------
@st.cache_data(show_spinner=False)
def load_cohorts(spring_path: str, summer_path: str):
    spring = load_table(spring_path, schema=COVID_SCHEMA)
    summer = load_table(summer_path, schema=COVID_SCHEMA)
    check_same_schema(spring, summer)
    return spring, summer

if not (os.path.exists(SPRING_PATH) and os.path.exists(SUMMER_PATH)):
    big_title("COVID-19 Risk — Dashboard")
    st.error("Cohort files not found. Run `python covid_data.py` to write the demo cohorts and refresh.")
    st.stop()

spring, summer = load_cohorts(SPRING_PATH, SUMMER_PATH)
X_train = select_features(spring, FEATURES, forbidden=POST_OUTCOME)
X_test = select_features(summer, FEATURES, forbidden=POST_OUTCOME)
y_train = target_vector(spring, TARGET, POSITIVE)
y_test = target_vector(summer, TARGET, POSITIVE)

@st.cache_resource(show_spinner="Fitting models…")
def build_models() -> List:
    tree = fit_tree(X_train, y_train, random_state=RANDOM_SEED)
    forest = fit_forest(X_train, y_train, n_estimators=200, random_state=RANDOM_SEED)
    search = tune_forest(X_train, y_train, n_iter=5, cv=3, max_trees=300, random_state=RANDOM_SEED)
    return [
        RiskFormulaAdapter(cdc_risk, X_train, y_train, "CDC risk", features=FEATURES),
        ClassifierAdapter(tree, X_train, y_train, "Decision tree", features=FEATURES),
        ClassifierAdapter(forest, X_train, y_train, "Random forest", features=FEATURES),
        TunedClassifierAdapter(search, X_train, y_train, "Tuned forest", features=FEATURES),
    ]

models = build_models()
by_label = {m.label: m for m in models}

# ---------------- Sidebar nav ----------------
with st.sidebar:
    st.title("Navigation")
    st.caption(f"Training: `{SPRING_PATH}`  \nValidation: `{SUMMER_PATH}`")
    page = st.radio(
        "Pages",
        ["Introduction", "Cohorts", "Model Performance", "Variable Importance",
         "Profiles", "Patient Check"],
        index=0,
    )

# ---------------- 1) Introduction ----------------
if page == "Introduction":
    big_title("COVID-19 Mortality Risk — Explanatory Model Analysis")
    section_title("Purpose")
    st.markdown("""
Which patients infected with COVID-19 are most at risk of dying? We compare four models
trained on the **spring** cohort and validated on the **summer** cohort, then ask each of them
*why* it predicts what it predicts.
""")
    section_title("How to use this")
    st.markdown("""
1. **Cohorts** — outcome balance and death rate by comorbidity.
2. **Model Performance** — ROC, lift and metrics at a cutoff you choose.
3. **Variable Importance** — what each model relies on (permutation importance).
4. **Profiles** — how predictions change with Age or a comorbidity (partial dependence).
5. **Patient Check** — one patient: risk, Shapley values, what-if curves.
""")
    section_title("Features")
    st.markdown(
        f"- Used: {', '.join(FEATURES)}.\n"
        f"- Not used (known only after the outcome): {', '.join(POST_OUTCOME)}.\n"
    )

# ---------------- 2) Cohorts ----------------
elif page == "Cohorts":
    big_title("Cohorts")
    c1, c2 = st.columns(2)
    c1.metric("Spring — death rate", pct(y_train.mean()), f"{len(y_train):,} patients", delta_color="off")
    c2.metric("Summer — death rate", pct(y_test.mean()), f"{len(y_test):,} patients", delta_color="off")

    section_title("Age by outcome")
    fig = px.histogram(spring, x="Age", color=TARGET, barmode="overlay", histnorm="probability density",
                       color_discrete_map={"No": "#3B5BA5", "Yes": "#E45756"}, nbins=40)
    fig.update_layout(height=360, margin=dict(l=10, r=10, t=8, b=10))
    st.plotly_chart(fig, use_container_width=True)

    section_title("Death rate by level (spring)")
    levels = level_summary(spring, TARGET, POSITIVE)
    levels["name"] = levels["variable"] + ": " + levels["level"]
    fig = px.bar(levels, x="rate", y="name", orientation="h", hover_data=["n"],
                 labels={"rate": "Death rate", "name": ""})
    fig.update_layout(height=420, margin=dict(l=10, r=10, t=8, b=10), xaxis_tickformat=".0%")
    st.plotly_chart(fig, use_container_width=True)

# ---------------- 3) Model Performance ----------------
elif page == "Model Performance":
    big_title("Model Performance (summer cohort)")
    cutoff = st.slider("Decision cutoff", 0.01, 0.90, 0.10, step=0.01)
    reports = [evaluate(m, X_test, y_test, cutoff) for m in models]

    section_title("Metrics")
    table = performance_table(reports)
    st.dataframe(table[["model", "AUC", "Gini", "KS", "Brier", "Precision", "Recall", "F1",
                        "TP", "FP", "FN", "TN"]].round(4), use_container_width=True)

    cL, cR = st.columns(2)
    roc_fig = go.Figure()
    lift_fig = go.Figure()
    for r in reports:
        roc_fig.add_trace(go.Scatter(x=r.roc["fpr"], y=r.roc["tpr"], mode="lines",
                                     name=f"{r.label} (AUC={r.auc:.3f})"))
        lift_fig.add_trace(go.Scatter(x=r.lift["fraction"], y=r.lift["lift"], mode="lines", name=r.label))
    roc_fig.add_trace(go.Scatter(x=[0, 1], y=[0, 1], mode="lines", name="Random", line=dict(dash="dash")))
    roc_fig.update_layout(title="ROC", xaxis_title="False positive rate", yaxis_title="True positive rate",
                          height=380, margin=dict(l=10, r=10, t=40, b=10))
    lift_fig.update_layout(title="Lift", xaxis_title="Share of population", yaxis_title="Lift",
                           height=380, margin=dict(l=10, r=10, t=40, b=10), xaxis_tickformat=".0%")
    with cL: st.plotly_chart(roc_fig, use_container_width=True)
    with cR: st.plotly_chart(lift_fig, use_container_width=True)

    tuned = by_label["Tuned forest"]
    st.caption(f"Tuned forest: {tuned.record.describe()} "
               f"(CV AUC {tuned.record.best_score:.3f}, {tuned.record.n_iter} evaluations).")

# ---------------- 4) Variable Importance ----------------
elif page == "Variable Importance":
    big_title("Variable Importance")
    label = st.selectbox("Model", list(by_label), index=2)
    n_repeats = st.slider("Permutation repeats", 2, 20, 5)
    loss = st.radio("Loss", ["one_minus_auc", "cross_entropy"], horizontal=True)
    rep = variable_importance(by_label[label], X_test, y_test, n_repeats=n_repeats, loss=loss,
                              random_state=RANDOM_SEED)
    perms = rep.permutations[~rep.permutations["variable"].str.startswith("_")]
    perms = perms.assign(increase=perms["dropout_loss"] - rep.full_model_loss)
    order = rep.summary()["variable"].tolist()
    fig = px.box(perms, x="increase", y="variable", category_orders={"variable": order},
                 labels={"increase": f"Increase in {loss}", "variable": ""})
    fig.update_layout(height=420, margin=dict(l=10, r=10, t=8, b=10))
    st.plotly_chart(fig, use_container_width=True)
    st.caption(f"Full-model loss: {rep.full_model_loss:.4f}")

# ---------------- 5) Profiles ----------------
elif page == "Profiles":
    big_title("Partial Dependence")
    variable = st.selectbox("Variable", FEATURES, index=1)
    mode = st.radio("Curves", ["Average", "By group", "Clusters"], horizontal=True)
    background = X_test.sample(n=min(300, len(X_test)), random_state=RANDOM_SEED)
    grid = default_grid(X_test[variable])

    frames = []
    if mode == "Average":
        for m in models:
            frames.append(partial_dependence(m, variable, grid, background).profiles.assign(model=m.label))
    elif mode == "By group":
        group = st.selectbox("Group by", [f for f in FEATURES if f not in ("Age", variable)])
        for m in models[1:]:
            frames.append(partial_dependence(m, variable, grid, background, groups=group)
                          .profiles.assign(model=m.label))
    else:
        k = st.slider("Clusters (k)", 2, 6, 3)
        label = st.selectbox("Model", [m.label for m in models[1:]], index=2)
        frames.append(partial_dependence(by_label[label], variable, grid, background, k=k,
                                         random_state=RANDOM_SEED).profiles.assign(model=label))
    prof = pd.concat(frames, ignore_index=True)
    prof["curve"] = np.where(prof["_groups_"] == "", prof["model"], prof["model"] + " [" + prof["_groups_"] + "]")
    fig = px.line(prof, x="_x_", y="_yhat_", color="curve", markers=variable != "Age",
                  labels={"_x_": variable, "_yhat_": "Predicted probability of death"})
    fig.update_layout(height=420, margin=dict(l=10, r=10, t=8, b=10))
    st.plotly_chart(fig, use_container_width=True)

# ---------------- 6) Patient Check ----------------
elif page == "Patient Check":
    big_title("Patient Check — enter patient details")
    col1, col2, col3 = st.columns(3)
    with col1:
        gender = st.selectbox("Gender", COVID_SCHEMA["Gender"], index=1)
        age = st.number_input("Age", min_value=0, max_value=110, value=76, step=1)
    with col2:
        cardio = st.selectbox("Cardiovascular Diseases", ["No", "Yes"], index=1)
        diab = st.selectbox("Diabetes", ["No", "Yes"])
        neuro = st.selectbox("Neurological Diseases", ["No", "Yes"])
    with col3:
        kidney = st.selectbox("Kidney Diseases", ["No", "Yes"])
        cancer = st.selectbox("Cancer", ["No", "Yes"])

    values = {"Gender": gender, "Age": int(age), "Cardiovascular Diseases": cardio, "Diabetes": diab,
              "Neurological Diseases": neuro, "Kidney Diseases": kidney, "Cancer": cancer}
    instance = pd.DataFrame([values])
    for c in instance.columns:
        instance[c] = instance[c].astype(X_test[c].dtype)

    section_title("Predicted risk")
    cols = st.columns(len(models))
    for c, m in zip(cols, models):
        c.metric(m.label, pct(float(m.predict(instance)[0])))

    section_title("Shapley values")
    label = st.selectbox("Model", list(by_label), index=3)
    n_samples = st.slider("Samples", 100, 2000, 500, step=100)
    background = X_test.sample(n=min(100, len(X_test)), random_state=RANDOM_SEED)
    rep = shapley_attribution(by_label[label], instance, background, n_samples=n_samples,
                              random_state=RANDOM_SEED)
    contrib = rep.sorted()
    contrib["name"] = contrib["variable"] + " = " + contrib["value"]
    fig = px.bar(contrib.iloc[::-1], x="contribution", y="name", orientation="h", error_x=contrib["std"].iloc[::-1] / np.sqrt(n_samples),
                 color=np.where(contrib["contribution"].iloc[::-1] > 0, "raises risk", "lowers risk"),
                 color_discrete_map={"raises risk": "#E45756", "lowers risk": "#3B5BA5"},
                 labels={"name": "", "contribution": "Contribution"})
    fig.update_layout(height=380, margin=dict(l=10, r=10, t=8, b=10))
    st.plotly_chart(fig, use_container_width=True)
    st.caption(f"Average prediction {rep.baseline:.4f} → this patient {rep.prediction:.4f}")

    section_title("What if? (ceteris paribus)")
    variable = st.selectbox("Vary", FEATURES, index=1)
    grid = default_grid(X_test[variable])
    frames = [ceteris_paribus_profile(m, instance, variable, grid).profiles.assign(model=m.label)
              for m in models]
    prof = pd.concat(frames, ignore_index=True)
    fig = px.line(prof, x="_x_", y="_yhat_", color="model", markers=variable != "Age",
                  labels={"_x_": variable, "_yhat_": "Predicted probability of death"})
    fig.update_layout(height=380, margin=dict(l=10, r=10, t=8, b=10))
    st.plotly_chart(fig, use_container_width=True)
