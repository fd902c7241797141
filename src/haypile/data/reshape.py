"""
Survey reshaping and site-attribute joins.

Turns the wide survey sheet (one row per site, per-year area/count columns)
into the long model dataset keyed by (site, year).
"""

import logging
from typing import Dict, Sequence, Tuple

import numpy as np
import pandas as pd

from .. import config

logger = logging.getLogger(__name__)

LONG_COLUMNS = ["site", "year", "talus_area", "surveyed_area", "haypiles", "density"]


def compute_density(haypiles: pd.Series, area: pd.Series) -> pd.Series:
    """Active haypiles per unit surveyed area; missing where area is missing or zero."""
    area = pd.to_numeric(area, errors="coerce")
    valid_area = area.where(area > 0)
    return pd.to_numeric(haypiles, errors="coerce") / valid_area


def reshape_survey(wide: pd.DataFrame,
                   years: Sequence[int] = config.SURVEY_YEARS) -> pd.DataFrame:
    """
    Pivot the wide survey table to one row per (site, year).

    A (site, year) row is emitted when that year's surveyed area or haypile
    count is present. Sites with nothing recorded in any year drop out.

    Args:
        wide: Columns site, talus_area, area_<year>, haypiles_<year>
        years: Survey years to pivot

    Returns:
        Long DataFrame with LONG_COLUMNS
    """
    per_year_cols = [f"{kind}_{year}" for year in years for kind in ("area", "haypiles")]
    missing = [c for c in ["site", "talus_area"] + per_year_cols if c not in wide.columns]
    if missing:
        raise ValueError(f"Survey table missing columns: {missing}")

    empty_sites = wide.loc[wide[per_year_cols].isna().all(axis=1), "site"]
    if len(empty_sites):
        logger.debug(f"Dropping {len(empty_sites)} sites with no survey data: {list(empty_sites)}")

    frames = []
    for year in years:
        part = wide[["site", "talus_area", f"area_{year}", f"haypiles_{year}"]].rename(
            columns={f"area_{year}": "surveyed_area", f"haypiles_{year}": "haypiles"}
        )
        part = part[part[["surveyed_area", "haypiles"]].notna().any(axis=1)].copy()
        part["year"] = int(year)
        frames.append(part)

    long = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=LONG_COLUMNS)
    long["density"] = compute_density(long["haypiles"], long["surveyed_area"])

    no_area = long["haypiles"].notna() & long["surveyed_area"].isna()
    if no_area.any():
        pairs = list(zip(long.loc[no_area, "site"], long.loc[no_area, "year"]))
        logger.warning(f"Haypile counts without surveyed area (density left missing): {pairs}")

    long = long[LONG_COLUMNS].sort_values(["site", "year"]).reset_index(drop=True)
    long["year"] = long["year"].astype(int)

    logger.info(
        f"Reshaped {len(wide)} sites into {len(long)} site-year records "
        f"across {long['site'].nunique()} sites"
    )
    return long


def join_site_attributes(survey_long: pd.DataFrame, sites: pd.DataFrame) -> pd.DataFrame:
    """
    Left-join site attributes onto survey records by site.

    Every survey row is kept; unmatched sites carry missing attributes.
    """
    duplicated = sites["site"][sites["site"].duplicated()]
    if len(duplicated):
        raise ValueError(f"Site attribute table has duplicate site keys: {sorted(set(duplicated))}")

    merged = survey_long.merge(sites, on="site", how="left", validate="many_to_one")

    unmatched = sorted(set(survey_long["site"]) - set(sites["site"]))
    if unmatched:
        logger.warning(f"{len(unmatched)} surveyed sites have no attribute record: {unmatched}")

    return merged


def scale_column(values: pd.Series) -> Tuple[pd.Series, Tuple[float, float]]:
    """Center and scale by the sample standard deviation (missing values ignored)."""
    mean = float(values.mean())
    sd = float(values.std(ddof=1))
    if not np.isfinite(sd) or sd == 0:
        sd = 1.0
    return (values - mean) / sd, (mean, sd)


def prepare_model_dataset(survey_long: pd.DataFrame, sites: pd.DataFrame,
                          scaled_columns: Sequence[str] = config.SCALED_COLUMNS
                          ) -> Tuple[pd.DataFrame, Dict[str, Tuple[float, float]]]:
    """
    Build the dataset the mixed models are fitted on.

    Joins site attributes, adds `<col>_scaled` for each scaled column and the
    binary `present` indicator (haypiles > 0, missing where the count is missing).

    Returns:
        (dataset, scaling) where scaling maps column -> (mean, sd)
    """
    data = join_site_attributes(survey_long, sites)

    scaling = {}
    for col in scaled_columns:
        data[f"{col}_scaled"], scaling[col] = scale_column(data[col])

    data["present"] = np.where(data["haypiles"].isna(), np.nan,
                               (data["haypiles"] > 0).astype(float))

    return data, scaling


def attach_climate(data: pd.DataFrame, climate_summary: pd.DataFrame) -> pd.DataFrame:
    """Left-join yearly climate statistics onto survey rows by year."""
    merged = data.merge(climate_summary, on="year", how="left")
    missing_years = sorted(set(data["year"]) - set(climate_summary["year"]))
    if missing_years:
        logger.warning(f"No climate summary for survey years {missing_years}")
    return merged
