# covid_plots.py
# Figures for the walkthrough (matplotlib + seaborn). Each function draws one
# chart from a report object and saves it under OUTPUT_DIR.
#
# Palette: blue = survived (No), coral = died (Yes).

from __future__ import annotations

import os

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.ticker import FuncFormatter

OUTPUT_DIR   = "reports/figures"
SHOW_WINDOWS = False                    # True to pop up figure windows

# ------------------ Palette (color-vision friendly) ------------------------
COLOR_NO   = "#3B5BA5"  # deep blue  — "Survived"
COLOR_YES  = "#E45756"  # coral      — "Died"
LINE_MED   = "#FFB000"  # gold       — median / reference
LINE_MEAN  = "#6B7280"  # slate      — baseline
MODEL_COLORS = ["#6B7280", "#3B5BA5", "#E45756", "#2A9D8F", "#8E6AC8", "#D97706"]
# ----------------------------------------------------------------------------

sns.set_theme(
    style="whitegrid",
    rc={
        "axes.titlesize": 13,
        "axes.labelsize": 11,
        "axes.titlepad": 10,
        "legend.frameon": False,
        "figure.dpi": 110,
        "axes.facecolor": "white",
        "grid.color": "#EEF2F5",
        "grid.linewidth": 0.8,
    }
)

PCT = FuncFormatter(lambda v, _: f"{v*100:.0f}%")  # [0,1] → "xx%"


def new_fig(figsize=(7, 4)):
    return plt.subplots(figsize=figsize, constrained_layout=True)


def save_and_show(fig: plt.Figure, filename: str, output_dir: str | None = None) -> str:
    out_dir = output_dir or OUTPUT_DIR
    os.makedirs(out_dir, exist_ok=True)
    out = os.path.join(out_dir, filename)
    fig.savefig(out, dpi=150, bbox_inches="tight")
    if SHOW_WINDOWS:
        plt.show()
    plt.close(fig)
    print(f"[SAVE] {out}")
    return out


def slug(text: str) -> str:
    return "".join(ch.lower() if ch.isalnum() else "_" for ch in text).strip("_")


# ================================ EDA ======================================

def outcome_balance(df: pd.DataFrame, target: str, title: str, fname: str, output_dir=None):
    counts = df[target].value_counts().reindex(["No", "Yes"]).fillna(0).astype(int)
    total = int(counts.sum())
    fig, ax = new_fig(figsize=(5.5, 4))
    ax.bar(counts.index, counts.values, color=[COLOR_NO, COLOR_YES])
    for i, v in enumerate(counts.values):
        ax.text(i, v, f"{v:,}\n({v/total:.1%})" if total else "0", ha="center", va="bottom", fontsize=9)
    ax.set_title(title); ax.set_xlabel(target); ax.set_ylabel("Number of patients")
    ax.margins(y=0.15)
    return save_and_show(fig, fname, output_dir)


def age_by_outcome(df: pd.DataFrame, target: str, title: str, fname: str, output_dir=None):
    fig, ax = new_fig()
    sns.histplot(data=df, x="Age", hue=target, hue_order=["No", "Yes"], bins=40,
                 stat="density", common_norm=False, element="step",
                 palette={"No": COLOR_NO, "Yes": COLOR_YES}, ax=ax)
    ax.set_title(title); ax.set_xlabel("Age"); ax.set_ylabel("Density")
    return save_and_show(fig, fname, output_dir)


def rate_by_level(levels: pd.DataFrame, title: str, fname: str, output_dir=None):
    """Bar chart of outcome rate per factor level (from covid_data.level_summary)."""
    tbl = levels.assign(name=levels["variable"] + ": " + levels["level"])
    fig, ax = new_fig(figsize=(8, 0.35 * len(tbl) + 1.5))
    sns.barplot(data=tbl, x="rate", y="name", ax=ax, color=COLOR_YES)
    for i, (r, n) in enumerate(zip(tbl["rate"], tbl["n"])):
        ax.text(r, i, f"  {r*100:.1f}% | {n:,}", va="center", fontsize=8, color="#374151")
    ax.xaxis.set_major_formatter(PCT)
    ax.set_title(title); ax.set_xlabel("Death rate"); ax.set_ylabel("")
    return save_and_show(fig, fname, output_dir)


# ============================ Performance ==================================

def roc_plot(reports, title: str, fname: str, output_dir=None):
    fig, ax = new_fig(figsize=(6, 5))
    for color, r in zip(MODEL_COLORS, reports):
        ax.plot(r.roc["fpr"], r.roc["tpr"], color=color, label=f"{r.label} (AUC={r.auc:.3f})")
    ax.plot([0, 1], [0, 1], linestyle="--", color="#9CA3AF")
    ax.set_xlabel("False positive rate"); ax.set_ylabel("True positive rate")
    ax.set_title(title); ax.legend(loc="lower right")
    return save_and_show(fig, fname, output_dir)


def lift_plot(reports, title: str, fname: str, output_dir=None):
    fig, ax = new_fig(figsize=(6.2, 4.2))
    for color, r in zip(MODEL_COLORS, reports):
        ax.plot(r.lift["fraction"], r.lift["lift"], color=color, label=r.label)
    ax.axhline(1.0, linestyle="--", color="#9CA3AF")
    ax.xaxis.set_major_formatter(PCT)
    ax.set_xlabel("Share of population (by score, high→low)"); ax.set_ylabel("Lift vs baseline")
    ax.set_title(title); ax.legend()
    return save_and_show(fig, fname, output_dir)


def confusion_plot(report, fname: str, output_dir=None):
    cm = np.array([[report.tn, report.fp], [report.fn, report.tp]])
    df_cm = pd.DataFrame(cm, index=["True: survived", "True: died"],
                         columns=["Pred: survived", "Pred: died"])
    fig, ax = new_fig(figsize=(5.5, 4.5))
    sns.heatmap(df_cm, annot=True, fmt="d", cmap="Purples", cbar=False, ax=ax)
    ax.set_title(f"Confusion — {report.label} @ {report.cutoff:.2f}")
    return save_and_show(fig, fname, output_dir)


# ============================ Explanations =================================

def importance_plot(reports, title: str, fname: str, output_dir=None, top: int = 12):
    """Box plot of permutation loss increases per variable, one panel per model."""
    reports = list(reports)
    fig, axes = plt.subplots(len(reports), 1, figsize=(8, 3.2 * len(reports)),
                             constrained_layout=True, squeeze=False)
    for ax, color, r in zip(axes[:, 0], MODEL_COLORS[1:], reports):
        summary = r.summary().head(top)
        perms = r.permutations[r.permutations["variable"].isin(summary["variable"])]
        perms = perms.assign(increase=perms["dropout_loss"] - r.full_model_loss)
        sns.boxplot(data=perms, x="increase", y="variable", order=summary["variable"],
                    color=color, ax=ax, showfliers=False)
        ax.axvline(0, color="#9CA3AF", linestyle="--")
        ax.set_title(f"{r.label} — full model loss {r.full_model_loss:.3f}")
        ax.set_xlabel(f"Increase in {r.loss_name} after permutation"); ax.set_ylabel("")
    fig.suptitle(title)
    return save_and_show(fig, fname, output_dir)


def profile_plot(reports, title: str, fname: str, output_dir=None):
    """Overlay profile curves (partial dependence or ceteris paribus) of several models."""
    reports = list(reports)
    variable = reports[0].variable
    fig, ax = new_fig(figsize=(7, 4.2))
    categorical = not pd.api.types.is_numeric_dtype(reports[0].profiles["_x_"])
    for color, r in zip(MODEL_COLORS, reports):
        styles = ["-", "--", ":", "-."]
        for style, group in zip(styles * 4, r.groups):
            sub = r.profiles[r.profiles["_groups_"] == group]
            name = r.label if group == "" else f"{r.label} [{group}]"
            x = sub["_x_"].astype(str) if categorical else sub["_x_"]
            ax.plot(x, sub["_yhat_"], linestyle=style, color=color, marker="o" if categorical else None,
                    label=name)
        if r.observation is not None and variable in r.observation.columns:
            obs_x = r.observation[variable].astype(str) if categorical else r.observation[variable]
            ax.scatter(obs_x, r.observation["_yhat_"], color=color, s=50, zorder=5)
    ax.set_xlabel(variable); ax.set_ylabel("Predicted probability of death")
    ax.set_title(title); ax.legend(fontsize=8)
    return save_and_show(fig, fname, output_dir)


def attribution_plot(report, title: str, fname: str, output_dir=None):
    """Break-down style bars: baseline, signed contributions, prediction."""
    contrib = report.sorted()
    labels = [f"{v} = {val}" for v, val in zip(contrib["variable"], contrib["value"])]
    fig, ax = new_fig(figsize=(8, 0.45 * len(contrib) + 1.8))
    colors = [COLOR_YES if c > 0 else COLOR_NO for c in contrib["contribution"]]
    ax.barh(labels[::-1], contrib["contribution"].to_numpy()[::-1], color=colors[::-1])
    if "std" in contrib and contrib["std"].abs().sum() > 0:
        ax.errorbar(contrib["contribution"].to_numpy()[::-1], np.arange(len(contrib)),
                    xerr=contrib["std"].to_numpy()[::-1] / np.sqrt(max(report.n_samples, 1)),
                    fmt="none", ecolor="#374151", capsize=3)
    ax.axvline(0, color="#9CA3AF", linestyle="--")
    ax.set_title(f"{title}\nbaseline {report.baseline:.4f} → prediction {report.prediction:.4f}")
    ax.set_xlabel("Contribution to predicted probability")
    return save_and_show(fig, fname, output_dir)


def tree_plot(adapter, title: str, fname: str, output_dir=None, max_depth: int = 3):
    from sklearn.tree import plot_tree
    pipe = adapter.estimator
    prep, clf = pipe.named_steps["prep"], pipe.named_steps["clf"]
    names = [n.split("__", 1)[-1] for n in prep.get_feature_names_out()]
    fig, ax = plt.subplots(figsize=(14, 7), constrained_layout=True)
    plot_tree(clf, feature_names=names, class_names=["No", "Yes"], filled=True,
              proportion=True, max_depth=max_depth, fontsize=8, ax=ax)
    ax.set_title(title)
    return save_and_show(fig, fname, output_dir)
