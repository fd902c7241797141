"""
Seasonal climate summaries from daily basin observations.

Summer (Jun-Aug) and precipitation group by calendar year. Winter (Dec-Feb)
spans the year boundary: December counts toward the following year's winter.
"""

import logging
from typing import Sequence

import pandas as pd

from .. import config

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = ["year", "max_jun_aug", "avg_jun_aug", "avg_dec_feb", "min_dec_feb", "total_precip"]


def winter_year(dates: pd.Series) -> pd.Series:
    """December belongs to next year's winter; January/February to their own year."""
    dates = pd.to_datetime(dates)
    return dates.dt.year + (dates.dt.month == 12).astype(int)


def summer_summary(daily: pd.DataFrame,
                   months: Sequence[int] = config.SUMMER_MONTHS) -> pd.DataFrame:
    """Max of daily maximum and mean of daily mean temperature, Jun-Aug, per year."""
    summer = daily[daily["date"].dt.month.isin(months)]
    out = summer.groupby(summer["date"].dt.year).agg(
        max_jun_aug=("temp_max", "max"),
        avg_jun_aug=("temp_avg", "mean"),
    )
    out.index.name = "year"
    return out


def winter_summary(daily: pd.DataFrame,
                   months: Sequence[int] = config.WINTER_MONTHS,
                   drop_incomplete: bool = True) -> pd.DataFrame:
    """
    Mean and minimum of daily mean temperature over Dec-Feb, per winter year.

    With drop_incomplete, two winters are discarded:
    - the winter of the series' first calendar year, whose December precedes
      the data
    - any winter built only from December records, whose January/February
      fall after the data ends
    """
    winter = daily[daily["date"].dt.month.isin(months)].copy()
    if winter.empty:
        return pd.DataFrame(columns=["avg_dec_feb", "min_dec_feb"],
                            index=pd.Index([], name="year"))

    winter["winter_year"] = winter_year(winter["date"])
    out = winter.groupby("winter_year").agg(
        avg_dec_feb=("temp_avg", "mean"),
        min_dec_feb=("temp_avg", "min"),
    )
    out.index.name = "year"

    if drop_incomplete:
        first_year = int(daily["date"].dt.year.min())
        has_jan_feb = winter[winter["date"].dt.month != 12].groupby("winter_year").size()
        december_only = [y for y in out.index if y not in has_jan_feb.index]
        dropped = sorted({y for y in out.index if y == first_year} | set(december_only))
        if dropped:
            logger.info(f"Discarding incomplete winter windows: {dropped}")
            out = out.drop(index=dropped)

    return out


def precipitation_summary(daily: pd.DataFrame) -> pd.DataFrame:
    """Total daily precipitation per calendar year."""
    out = daily.groupby(daily["date"].dt.year).agg(total_precip=("precip", "sum"))
    out.index.name = "year"
    return out


def summarize_climate(daily: pd.DataFrame, drop_incomplete_winters: bool = True) -> pd.DataFrame:
    """
    Yearly climate table with one row per year.

    Statistics are outer-joined on year: a year missing one season still appears,
    with that season's columns missing.

    Args:
        daily: Columns date, temp_avg, temp_max, precip
        drop_incomplete_winters: Discard winter windows lacking data (see winter_summary)

    Returns:
        DataFrame with SUMMARY_COLUMNS sorted by year
    """
    daily = daily.copy()
    daily["date"] = pd.to_datetime(daily["date"])

    if daily.empty:
        return pd.DataFrame(columns=SUMMARY_COLUMNS)

    parts = [
        summer_summary(daily),
        winter_summary(daily, drop_incomplete=drop_incomplete_winters),
        precipitation_summary(daily),
    ]
    summary = pd.concat(parts, axis=1, join="outer").sort_index()
    summary = summary.reset_index().rename(columns={"index": "year"})
    summary["year"] = summary["year"].astype(int)

    logger.info(
        f"Summarized climate for {len(summary)} years "
        f"({summary['year'].min()}-{summary['year'].max()})"
    )
    return summary[SUMMARY_COLUMNS]
