"""
Fixed settings for the haypile analysis.

Sheet names, skip-row counts and column orders are part of the input contract;
the workbooks are read positionally and renamed to the names below.
"""

import os
from pathlib import Path

# ---------- Paths ----------
DATA_DIR = Path(os.environ.get("HAYPILE_DATA_DIR", "data/raw"))
OUTPUT_DIR = Path("data/processed/analysis_outputs")

SURVEY_FILE = "haypile_surveys.xlsx"
SITES_FILE = "site_descriptions.xlsx"
CLIMATE_FILE = "daily_climate.xlsx"

# ---------- Survey workbook ----------
SURVEY_SHEET = "Surveys"
SURVEY_SKIPROWS = 2
SURVEY_YEARS = (2017, 2019)
SURVEY_COLUMNS = [
    "site",
    "talus_area",
    "area_2017",
    "haypiles_2017",
    "area_2019",
    "haypiles_2019",
]

# Literal used in the survey sheet for "not recorded"
MISSING_SENTINEL = "999"

# ---------- Site workbook ----------
SITES_SHEET = "Sites"
SITES_SKIPROWS = 1
SITES_COLUMNS = [
    "site",
    "road_dist",
    "powerline_dist",
    "elevation",
    "zone",
    "aspect",
]

# ---------- Climate workbook ----------
CLIMATE_SHEET = "Daily"
CLIMATE_SKIPROWS = 1
CLIMATE_COLUMNS = ["date", "temp_avg", "temp_max", "precip"]

SUMMER_MONTHS = (6, 7, 8)
WINTER_MONTHS = (12, 1, 2)

# ---------- Models ----------
SITE_COLUMN = "site"
COUNT_RESPONSE = "haypiles"
PRESENCE_RESPONSE = "present"
EXPOSURE_COLUMN = "surveyed_area"
SCALED_COLUMNS = ("elevation", "talus_area")

CANDIDATE_TERMS = [
    "C(year)",
    "elevation_scaled",
    "road_dist",
    "talus_area_scaled",
    "C(aspect)",
    "C(year):elevation_scaled",
]

DEFAULT_FAMILY = "nbinom2"
DEFAULT_CRITERION = "aicc"
N_QUADRATURE = 32

# ---------- Diagnostics / reporting ----------
N_SIMULATIONS = 250
ALPHA = 0.05
CURVE_POINTS = 50
RANDOM_SEED = 42
