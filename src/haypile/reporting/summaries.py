"""
Exploratory summaries of the model dataset, run before any model fitting.
"""

import logging
from typing import Dict, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import variance_inflation_factor

logger = logging.getLogger(__name__)

NUMERIC_COVARIATES = ["elevation", "road_dist", "powerline_dist", "talus_area", "surveyed_area"]


def year_summary(data: pd.DataFrame) -> pd.DataFrame:
    """Per-year site count, haypile totals, density mean/sd and presence fraction"""
    grouped = data.groupby("year")
    out = grouped.agg(
        n_sites=("site", "nunique"),
        total_haypiles=("haypiles", "sum"),
        mean_density=("density", "mean"),
        sd_density=("density", "std"),
        frac_present=("present", "mean"),
    ).reset_index()
    return out


def paired_year_change(survey_long: pd.DataFrame,
                       years: Tuple[int, int] = (2017, 2019)) -> Tuple[pd.DataFrame, Dict]:
    """
    Density change for sites with density in both years.

    Returns:
        (per_site, test) where per_site has site, density_<y0>, density_<y1>, change
        and test holds the Wilcoxon signed-rank result
    """
    first, second = years
    wide = survey_long.pivot_table(index="site", columns="year", values="density",
                                   aggfunc="first")
    if first not in wide.columns or second not in wide.columns:
        return pd.DataFrame(columns=["site", f"density_{first}", f"density_{second}", "change"]), \
            {"n_pairs": 0, "statistic": np.nan, "p_value": np.nan}

    paired = wide[[first, second]].dropna()
    per_site = pd.DataFrame({
        "site": paired.index,
        f"density_{first}": paired[first].to_numpy(),
        f"density_{second}": paired[second].to_numpy(),
    })
    per_site["change"] = per_site[f"density_{second}"] - per_site[f"density_{first}"]

    test = {"n_pairs": len(per_site), "median_change": float(per_site["change"].median())
            if len(per_site) else np.nan, "statistic": np.nan, "p_value": np.nan}
    if (per_site["change"] != 0).sum() >= 1:
        result = stats.wilcoxon(per_site[f"density_{second}"], per_site[f"density_{first}"])
        test["statistic"] = float(result.statistic)
        test["p_value"] = float(result.pvalue)
    else:
        logger.info("No non-zero paired density changes; Wilcoxon test skipped")

    return per_site, test


def covariate_correlations(data: pd.DataFrame, covariates: Sequence[str] = NUMERIC_COVARIATES,
                           target: str = "density") -> pd.DataFrame:
    """Spearman correlation of `target` with each numeric covariate"""
    rows = []
    for col in covariates:
        if col not in data.columns:
            continue
        pair = data[[target, col]].dropna()
        if len(pair) < 3 or pair[col].nunique() < 2 or pair[target].nunique() < 2:
            rows.append({"covariate": col, "n": len(pair), "rho": np.nan, "p_value": np.nan})
            continue
        rho, p = stats.spearmanr(pair[target], pair[col])
        rows.append({"covariate": col, "n": len(pair), "rho": float(rho), "p_value": float(p)})
    return pd.DataFrame(rows)


def collinearity(data: pd.DataFrame,
                 covariates: Sequence[str] = ("elevation", "road_dist", "talus_area")) -> pd.DataFrame:
    """Variance inflation factor of each covariate (complete cases, with a constant)"""
    X = data[list(covariates)].dropna()
    X = sm.add_constant(X, has_constant="add")
    rows = []
    for i, col in enumerate(X.columns):
        if col == "const":
            continue
        rows.append({"covariate": col, "vif": float(variance_inflation_factor(X.values, i))})
    return pd.DataFrame(rows)
