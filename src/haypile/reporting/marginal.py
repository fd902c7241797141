"""
Marginal means and effect curves from a fitted GLMM.

Predictions are population-level (random intercept at zero). On the reference
grid, numeric covariates not being varied sit at their mean in the model data
and factors not being varied are averaged with equal weights on the link
scale. Count models with an exposure are evaluated at the mean surveyed area
and divided by it, so estimates read as densities.
"""

import itertools
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from .. import config
from ..modeling.glmm import GLMMResults
from ..modeling.selection import term_variables

logger = logging.getLogger(__name__)


def model_variables(results: GLMMResults) -> Dict[str, Optional[List]]:
    """Data variables used by the fixed effects: name -> factor levels, or None if numeric"""
    variables = {}
    for factor, info in results.model.design_info.factor_infos.items():
        name = term_variables(factor.code)[0]
        if info.type == "categorical":
            variables[name] = list(info.categories)
        else:
            variables.setdefault(name, None)
    return variables


def _levels(results: GLMMResults, data: pd.DataFrame, variable: str) -> List:
    levels = model_variables(results).get(variable)
    if levels is not None:
        return levels
    if variable not in data.columns:
        raise ValueError(f"Variable '{variable}' not found in model data")
    return sorted(data[variable].dropna().unique().tolist())


def reference_design(results: GLMMResults, data: pd.DataFrame,
                     fixed: pd.DataFrame) -> np.ndarray:
    """
    Averaged design rows for each row of `fixed`.

    Variables in `fixed` take the given values; other factors are expanded over
    all their levels and averaged; other numeric variables are held at their mean.

    Returns:
        Array of shape (len(fixed), n_fixed_effects)
    """
    variables = model_variables(results)
    other_factors = {v: lv for v, lv in variables.items()
                     if lv is not None and v not in fixed.columns}
    numeric_means = {v: float(data[v].mean()) for v, lv in variables.items()
                     if lv is None and v not in fixed.columns}

    grid = fixed.reset_index(drop=True).copy()
    grid["_row"] = np.arange(len(grid))

    if other_factors:
        combos = pd.DataFrame(list(itertools.product(*other_factors.values())),
                              columns=list(other_factors.keys()))
        grid = grid.merge(combos, how="cross")
    for name, value in numeric_means.items():
        grid[name] = value

    exog = results.design_matrix(grid)
    averaged = pd.DataFrame(exog).groupby(grid["_row"].to_numpy()).mean()
    return averaged.sort_index().to_numpy()


def _response_scale(results: GLMMResults, exog: np.ndarray, alpha: float) -> pd.DataFrame:
    exposure = results.model.exposure
    mean_exposure = float(np.mean(exposure)) if exposure is not None else None
    offset = np.log(mean_exposure) if mean_exposure is not None else 0.0

    eta, se = results.predict_link(exog, offset)
    z = stats.norm.ppf(1 - alpha / 2)
    linkinv = results.family.linkinv
    estimate, lower, upper = linkinv(eta), linkinv(eta - z * se), linkinv(eta + z * se)

    out = pd.DataFrame({"se_link": se})
    if results.family.link == "logit":
        out["scale"] = "probability"
    elif mean_exposure is not None:
        out["scale"] = "density"
        out["expected_count"] = estimate
        estimate, lower, upper = (estimate / mean_exposure, lower / mean_exposure,
                                  upper / mean_exposure)
        out["mean_exposure"] = mean_exposure
    else:
        out["scale"] = "count"

    out["estimate"] = estimate
    out["lower"] = lower
    out["upper"] = upper
    return out


def marginal_means(results: GLMMResults, data: Optional[pd.DataFrame] = None,
                   focal: str = "year", alpha: float = config.ALPHA) -> pd.DataFrame:
    """
    Back-transformed marginal mean for each level of `focal`.

    Args:
        results: Fitted model
        data: Data for covariate means; defaults to the model's fitting data
        focal: Factor whose levels are reported
        alpha: Interval level

    Returns:
        DataFrame with focal, estimate, lower, upper, scale, se_link
        (plus expected_count and mean_exposure for density-scale output)
    """
    data = results.model.data if data is None else data
    levels = _levels(results, data, focal)
    fixed = pd.DataFrame({focal: levels})

    exog = reference_design(results, data, fixed)
    out = _response_scale(results, exog, alpha)
    out.insert(0, focal, levels)
    return out


def pairwise_ratios(results: GLMMResults, data: Optional[pd.DataFrame] = None,
                    focal: str = "year", alpha: float = config.ALPHA) -> pd.DataFrame:
    """
    Ratios between marginal means of each pair of focal levels (later / earlier).

    Log-link models give rate (equivalently density) ratios; logit models give
    odds ratios.
    """
    data = results.model.data if data is None else data
    levels = _levels(results, data, focal)
    exog = reference_design(results, data, pd.DataFrame({focal: levels}))
    beta = results.params.to_numpy()
    cov = results.cov_params().to_numpy()
    z = stats.norm.ppf(1 - alpha / 2)
    kind = "odds_ratio" if results.family.link == "logit" else "rate_ratio"

    rows = []
    for i, j in itertools.combinations(range(len(levels)), 2):
        diff = exog[j] - exog[i]
        log_ratio = float(diff @ beta)
        se = float(np.sqrt(diff @ cov @ diff))
        rows.append({
            "contrast": f"{levels[j]} / {levels[i]}",
            "type": kind,
            "ratio": np.exp(log_ratio),
            "lower": np.exp(log_ratio - z * se),
            "upper": np.exp(log_ratio + z * se),
            "z_value": log_ratio / se if se > 0 else np.nan,
            "p_value": float(2 * stats.norm.sf(abs(log_ratio / se))) if se > 0 else np.nan,
        })
    return pd.DataFrame(rows)


def effect_curve(results: GLMMResults, variable: str, data: Optional[pd.DataFrame] = None,
                 n_points: int = config.CURVE_POINTS,
                 scaling: Optional[Tuple[float, float]] = None,
                 by: Optional[str] = None, values: Optional[Sequence[float]] = None,
                 alpha: float = config.ALPHA) -> pd.DataFrame:
    """
    Marginal effect of one numeric covariate over a grid of values.

    Args:
        results: Fitted model
        variable: Model column, e.g. "elevation_scaled" or "road_dist"
        data: Data for ranges and covariate means; defaults to the fitting data
        n_points: Grid size when `values` is not given
        scaling: (mean, sd) if `variable` is a scaled column; the grid and the
            `value` column are then on the raw scale
        by: Optional factor to draw one curve per level (e.g. "year")
        values: Explicit raw-scale grid

    Returns:
        DataFrame with value, [by], estimate, lower, upper, scale, se_link
    """
    data = results.model.data if data is None else data
    if variable not in data.columns:
        raise ValueError(f"Variable '{variable}' not found in model data")

    mean, sd = scaling if scaling is not None else (0.0, 1.0)
    if values is None:
        observed = data[variable].dropna() * sd + mean
        values = np.linspace(observed.min(), observed.max(), n_points)
    values = np.asarray(values, dtype=float)

    fixed = pd.DataFrame({"value": values})
    if by is not None:
        fixed = fixed.merge(pd.DataFrame({by: _levels(results, data, by)}), how="cross")
    fixed[variable] = (fixed["value"] - mean) / sd

    exog = reference_design(results, data, fixed.drop(columns="value"))
    out = _response_scale(results, exog, alpha)
    keys = ["value"] + ([by] if by is not None else [])
    return pd.concat([fixed[keys].reset_index(drop=True), out], axis=1)
