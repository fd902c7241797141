"""
Workbook ingestion for the survey, site and climate sheets.

Each sheet is read positionally: a fixed number of leading rows is skipped
(titles and header), the first N columns are kept and renamed. Column order is
part of the input contract and is never discovered from header text.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from .. import config

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


def read_sheet(path: Path, sheet_name: str, skiprows: int, columns: Sequence[str],
               na_values: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Read one sheet (or CSV) positionally and rename its columns.

    Args:
        path: Workbook (.xlsx/.xls) or CSV file
        sheet_name: Sheet to read (ignored for CSV)
        skiprows: Number of leading rows to skip, header included
        columns: Names for the first len(columns) columns
        na_values: Extra strings to parse as missing

    Returns:
        DataFrame with exactly `columns`, fully empty rows removed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    if path.suffix.lower() in EXCEL_SUFFIXES:
        raw = pd.read_excel(path, sheet_name=sheet_name, skiprows=skiprows,
                            header=None, na_values=na_values)
    else:
        raw = pd.read_csv(path, skiprows=skiprows, header=None, na_values=na_values)

    if raw.shape[1] < len(columns):
        raise ValueError(
            f"{path.name}: expected at least {len(columns)} columns "
            f"({', '.join(columns)}), found {raw.shape[1]}"
        )

    df = raw.iloc[:, :len(columns)].copy()
    df.columns = list(columns)
    df = df.dropna(how="all").reset_index(drop=True)

    logger.debug(f"Read {len(df)} rows from {path.name} [{sheet_name}]")
    return df


def normalize_site_ids(values: pd.Series) -> pd.Series:
    """Site keys as stripped strings so numeric and text ids join cleanly."""
    def _one(v):
        if pd.isna(v):
            return np.nan
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        return str(v).strip()
    return values.map(_one)


def _to_numeric(df: pd.DataFrame, columns: Sequence[str],
                sentinel: Optional[str] = None) -> pd.DataFrame:
    for col in columns:
        values = df[col]
        if sentinel is not None:
            # Sentinel may arrive as text ("999") or as a number (999 / 999.0)
            as_text = values.astype(str).str.strip()
            values = values.mask(as_text.isin([sentinel, f"{sentinel}.0"]))
        df[col] = pd.to_numeric(values, errors="coerce")
    return df


def load_survey(path: Path, sheet_name: str = config.SURVEY_SHEET,
                skiprows: int = config.SURVEY_SKIPROWS) -> pd.DataFrame:
    """
    Load the wide survey sheet.

    Columns: site, talus_area, area_2017, haypiles_2017, area_2019, haypiles_2019.
    The literal 999 marks a missing value.
    """
    df = read_sheet(path, sheet_name, skiprows, config.SURVEY_COLUMNS,
                    na_values=[config.MISSING_SENTINEL])
    df["site"] = normalize_site_ids(df["site"])
    df = df[df["site"].notna()].reset_index(drop=True)
    df = _to_numeric(df, config.SURVEY_COLUMNS[1:], sentinel=config.MISSING_SENTINEL)

    logger.info(f"Loaded survey sheet: {len(df)} sites")
    return df


def load_sites(path: Path, sheet_name: str = config.SITES_SHEET,
               skiprows: int = config.SITES_SKIPROWS) -> pd.DataFrame:
    """Load one row of environmental attributes per site."""
    df = read_sheet(path, sheet_name, skiprows, config.SITES_COLUMNS)
    df["site"] = normalize_site_ids(df["site"])
    df = df[df["site"].notna()].reset_index(drop=True)
    df = _to_numeric(df, ["road_dist", "powerline_dist", "elevation"])
    for col in ("zone", "aspect"):
        df[col] = df[col].where(df[col].isna(), df[col].astype(str).str.strip())

    logger.info(f"Loaded site attributes: {len(df)} sites")
    return df


def load_climate(path: Path, sheet_name: str = config.CLIMATE_SHEET,
                 skiprows: int = config.CLIMATE_SKIPROWS) -> pd.DataFrame:
    """Load daily climate observations (date, temp_avg, temp_max, precip)."""
    df = read_sheet(path, sheet_name, skiprows, config.CLIMATE_COLUMNS)
    df["date"] = pd.to_datetime(df["date"], errors="coerce")

    n_bad = int(df["date"].isna().sum())
    if n_bad:
        logger.warning(f"Dropping {n_bad} climate rows with unparseable dates")
        df = df[df["date"].notna()]

    df = _to_numeric(df, ["temp_avg", "temp_max", "precip"])
    df = df.sort_values("date").reset_index(drop=True)

    logger.info(
        f"Loaded {len(df)} daily climate records "
        f"({df['date'].min():%Y-%m-%d} to {df['date'].max():%Y-%m-%d})"
        if len(df) else "Loaded 0 daily climate records"
    )
    return df
