"""
CSV and PNG outputs for the report.

All writers take an output directory, create it if needed and return the path
written.
"""

import logging
from pathlib import Path
from typing import Optional

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import stats

from ..modeling.diagnostics import ResidualDiagnostics
from ..modeling.glmm import GLMMResults

logger = logging.getLogger(__name__)


def write_table(df: pd.DataFrame, out_dir: Path, name: str) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"{name}.csv"
    df.to_csv(path, index=False)
    logger.info(f"Saved: {path}")
    return path


def coefficient_table(results: GLMMResults,
                      diagnostics: Optional[ResidualDiagnostics] = None) -> pd.DataFrame:
    """Coefficient table with model-level columns appended"""
    table = results.summary_frame()
    table["exp_estimate"] = np.exp(table["estimate"])
    table["formula"] = results.formula
    table["family"] = results.family.name
    table["site_sd"] = results.sigma
    if results.theta is not None:
        table["theta"] = results.theta
    table["singular"] = results.singular
    table["diagnostic_status"] = diagnostics.status if diagnostics is not None else "not run"
    return table


def _save(fig, out_dir: Path, name: str) -> Path:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"{name}.png"
    fig.tight_layout()
    fig.savefig(path, dpi=300, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Saved: {path}")
    return path


def plot_density_by_year(data: pd.DataFrame, out_dir: Path,
                         name: str = "density_by_year") -> Path:
    fig, ax = plt.subplots(figsize=(6, 5))
    plot_data = data.dropna(subset=["density"])
    sns.boxplot(data=plot_data, x="year", y="density", color="lightgray", ax=ax)
    sns.stripplot(data=plot_data, x="year", y="density", color="black", alpha=0.6, ax=ax)
    ax.set_xlabel("Survey year")
    ax.set_ylabel("Active haypiles per unit area")
    return _save(fig, out_dir, name)


def plot_marginal_means(means: pd.DataFrame, focal: str, out_dir: Path, name: str) -> Path:
    fig, ax = plt.subplots(figsize=(5, 5))
    x = np.arange(len(means))
    yerr = np.vstack([means["estimate"] - means["lower"], means["upper"] - means["estimate"]])
    ax.errorbar(x, means["estimate"], yerr=yerr, fmt="o", capsize=5, color="black")
    ax.set_xticks(x)
    ax.set_xticklabels([str(v) for v in means[focal]])
    ax.set_xlabel(focal)
    ax.set_ylabel(str(means["scale"].iloc[0]) if len(means) else "estimate")
    return _save(fig, out_dir, name)


def plot_effect_curve(curve: pd.DataFrame, xlabel: str, out_dir: Path, name: str,
                      by: Optional[str] = None) -> Path:
    fig, ax = plt.subplots(figsize=(6, 5))
    groups = curve.groupby(by) if by is not None else [(None, curve)]
    for level, part in groups:
        label = str(level) if level is not None else None
        ax.plot(part["value"], part["estimate"], label=label)
        ax.fill_between(part["value"], part["lower"], part["upper"], alpha=0.2)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(str(curve["scale"].iloc[0]) if len(curve) else "estimate")
    if by is not None:
        ax.legend(title=by)
    return _save(fig, out_dir, name)


def plot_residual_diagnostics(diagnostics: ResidualDiagnostics, out_dir: Path, name: str) -> Path:
    """Uniform QQ plot of scaled residuals and residuals against predicted rank"""
    fig, (ax_qq, ax_res) = plt.subplots(1, 2, figsize=(10, 5))

    resid = np.sort(diagnostics.residuals)
    expected = (np.arange(1, len(resid) + 1) - 0.5) / len(resid)
    ax_qq.scatter(expected, resid, s=12, color="black")
    ax_qq.plot([0, 1], [0, 1], color="red")
    ax_qq.set_xlabel("Expected (uniform)")
    ax_qq.set_ylabel("Observed scaled residual")
    ax_qq.set_title("QQ plot")

    ranks = stats.rankdata(diagnostics.predicted) / max(len(diagnostics.predicted), 1)
    ax_res.scatter(ranks, diagnostics.residuals, s=12, color="black")
    for q in (0.25, 0.5, 0.75):
        ax_res.axhline(q, linestyle="--", color="gray")
    ax_res.set_xlabel("Model prediction (rank transformed)")
    ax_res.set_ylabel("Scaled residual")
    ax_res.set_title("passed" if diagnostics.passed else "; ".join(diagnostics.concerns),
                     fontsize=8)
    return _save(fig, out_dir, name)


def plot_climate_summary(climate: pd.DataFrame, out_dir: Path,
                         name: str = "climate_summary") -> Path:
    fig, (ax_t, ax_p) = plt.subplots(2, 1, figsize=(8, 7), sharex=True)
    for col, label in [("max_jun_aug", "Max Jun-Aug"), ("avg_jun_aug", "Mean Jun-Aug"),
                       ("avg_dec_feb", "Mean Dec-Feb"), ("min_dec_feb", "Min Dec-Feb")]:
        ax_t.plot(climate["year"], climate[col], marker="o", label=label)
    ax_t.set_ylabel("Temperature")
    ax_t.legend(fontsize=8)
    ax_p.bar(climate["year"], climate["total_precip"], color="steelblue")
    ax_p.set_ylabel("Total precipitation")
    ax_p.set_xlabel("Year")
    return _save(fig, out_dir, name)
