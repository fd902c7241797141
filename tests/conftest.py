"""
Shared pytest fixtures for the haypile tests.

Provides small survey/site/climate tables, a simulated model dataset with known
effects, and workbook files laid out like the field spreadsheets.
"""

import numpy as np
import pandas as pd
import pytest

from haypile import config


# ============================================================================
# Raw Table Fixtures
# ============================================================================

@pytest.fixture
def wide_survey():
    """Wide survey sheet after renaming: A in both years, B only 2017, C never surveyed."""
    return pd.DataFrame({
        "site": ["A", "B", "C", "D"],
        "talus_area": [50.0, 30.0, 20.0, 40.0],
        "area_2017": [10.0, 8.0, np.nan, 0.0],
        "haypiles_2017": [3.0, 2.0, np.nan, 0.0],
        "area_2019": [12.0, np.nan, np.nan, 6.0],
        "haypiles_2019": [5.0, np.nan, np.nan, 1.0],
    })


@pytest.fixture
def site_attributes():
    """Site attributes for A, B and D (C has no record)."""
    return pd.DataFrame({
        "site": ["A", "B", "D"],
        "road_dist": [120.0, 800.0, 450.0],
        "powerline_dist": [300.0, 1500.0, 900.0],
        "elevation": [2400.0, 2900.0, 2650.0],
        "zone": ["montane", "subalpine", "subalpine"],
        "aspect": ["N", "S", "E"],
    })


@pytest.fixture
def daily_climate():
    """Daily climate from 2017-01-01 to 2019-12-31 with a seasonal cycle."""
    dates = pd.date_range("2017-01-01", "2019-12-31", freq="D")
    doy = dates.dayofyear.to_numpy()
    temp_avg = 5.0 - 12.0 * np.cos(2 * np.pi * (doy - 15) / 365.0)
    return pd.DataFrame({
        "date": dates,
        "temp_avg": temp_avg,
        "temp_max": temp_avg + 6.0,
        "precip": np.full(len(dates), 1.5),
    })


# ============================================================================
# Simulated Model Data
# ============================================================================

def simulate_haypile_data(n_sites=60, site_sd=0.4, seed=0, beta=None):
    """Two survey years per site; log density linear in year and elevation, Poisson counts."""
    rng = np.random.default_rng(seed)
    beta = beta or {"intercept": 0.7, "year2019": 0.3, "elevation": -0.4, "road": 0.0}

    sites = [f"S{i:02d}" for i in range(n_sites)]
    elevation = rng.normal(0.0, 1.0, n_sites)
    road = rng.uniform(0.0, 2.0, n_sites)
    aspect = rng.choice(["N", "S"], n_sites)
    site_effect = rng.normal(0.0, site_sd, n_sites)

    rows = []
    for i, site in enumerate(sites):
        for year in (2017, 2019):
            area = rng.uniform(5.0, 15.0)
            log_density = (beta["intercept"] + beta["year2019"] * (year == 2019)
                           + beta["elevation"] * elevation[i] + beta["road"] * road[i]
                           + site_effect[i])
            count = rng.poisson(area * np.exp(log_density))
            rows.append({
                "site": site,
                "year": year,
                "surveyed_area": area,
                "haypiles": float(count),
                "density": count / area,
                "elevation": 2500.0 + 200.0 * elevation[i],
                "elevation_scaled": elevation[i],
                "road_dist": road[i],
                "talus_area_scaled": rng.normal(),
                "aspect": aspect[i],
            })
    data = pd.DataFrame(rows)
    data["present"] = (data["haypiles"] > 0).astype(float)
    return data


@pytest.fixture
def simulated_data():
    return simulate_haypile_data()


@pytest.fixture(scope="session")
def shared_simulated_data():
    """Session copy of the simulated data for class-scoped fits; copy before editing."""
    return simulate_haypile_data()


@pytest.fixture
def sparse_presence_data():
    """Low-density sites so presence varies."""
    data = simulate_haypile_data(n_sites=80, seed=3,
                                 beta={"intercept": -2.6, "year2019": 0.5,
                                       "elevation": -0.6, "road": 0.0})
    return data


# ============================================================================
# Fitted Models (shared across modules; treat as read-only)
# ============================================================================

@pytest.fixture(scope="session")
def year_model():
    """Poisson GLMM with only a year effect and an area exposure"""
    from haypile.modeling.glmm import RandomInterceptGLMM
    data = simulate_haypile_data()
    return RandomInterceptGLMM("haypiles ~ C(year)", data, groups="site",
                               family="poisson", exposure="surveyed_area").fit()


@pytest.fixture(scope="session")
def elevation_model():
    """Poisson GLMM with year x elevation and an aspect factor"""
    from haypile.modeling.glmm import RandomInterceptGLMM
    data = simulate_haypile_data()
    formula = "haypiles ~ C(year) + elevation_scaled + C(aspect) + C(year):elevation_scaled"
    return RandomInterceptGLMM(formula, data, groups="site",
                               family="poisson", exposure="surveyed_area").fit()


@pytest.fixture(scope="session")
def presence_model():
    """Logistic GLMM for presence with a year effect"""
    from haypile.modeling.glmm import RandomInterceptGLMM
    data = simulate_haypile_data(n_sites=80, seed=3,
                                 beta={"intercept": -2.6, "year2019": 0.5,
                                       "elevation": -0.6, "road": 0.0})
    return RandomInterceptGLMM("present ~ C(year)", data, groups="site",
                               family="binomial").fit()


# ============================================================================
# Workbook Fixtures
# ============================================================================

def _write_sheet(path, sheet_name, header_rows, body: pd.DataFrame):
    """Write title rows then a positional body, matching the field workbook layout."""
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        top = pd.DataFrame(header_rows)
        top.to_excel(writer, sheet_name=sheet_name, header=False, index=False)
        body.to_excel(writer, sheet_name=sheet_name, header=False, index=False,
                      startrow=len(header_rows))


def _write_workbooks(tmp_path, daily_climate, with_absences=True):
    rng = np.random.default_rng(7)
    n = 12
    sites = [f"T{i}" for i in range(1, n + 1)]

    area_2017 = rng.uniform(5, 15, n).round(1)
    area_2019 = rng.uniform(5, 15, n).round(1)
    survey = pd.DataFrame({
        "Site": sites,
        "Talus area": rng.uniform(20, 80, n).round(1),
        "Area 2017": area_2017,
        "Haypiles 2017": rng.poisson(area_2017 * 0.5).astype(object),
        "Area 2019": area_2019.astype(object),
        "Haypiles 2019": rng.poisson(area_2019 * 0.6).astype(object),
    })
    # 999 stored as text in one cell and as a number in another
    survey.loc[3, "Area 2019"] = "999"
    survey.loc[3, "Haypiles 2019"] = 999
    # T6 was visited in 2017 but no talus was surveyable
    survey.loc[5, "Area 2017"] = 0.0
    survey.loc[5, "Haypiles 2017"] = 0
    if with_absences:
        for row, year in [(0, 2017), (1, 2019), (7, 2019), (9, 2017), (10, 2019)]:
            survey.loc[row, f"Haypiles {year}"] = 0
    else:
        survey.loc[5, "Haypiles 2017"] = np.nan

    attributes = pd.DataFrame({
        "Site": sites,
        "Road": rng.uniform(50, 2000, n).round(0),
        "Powerline": rng.uniform(100, 3000, n).round(0),
        "Elevation": rng.uniform(2300, 3100, n).round(0),
        "Zone": rng.choice(["montane", "subalpine"], n),
        "Aspect": rng.choice(["N", "S"], n),
    })

    climate = daily_climate.copy()
    climate["date"] = climate["date"].dt.strftime("%Y-%m-%d")

    survey_path = tmp_path / config.SURVEY_FILE
    sites_path = tmp_path / config.SITES_FILE
    climate_path = tmp_path / config.CLIMATE_FILE

    _write_sheet(survey_path, config.SURVEY_SHEET,
                 [["Pika haypile surveys"], list(survey.columns)], survey)
    _write_sheet(sites_path, config.SITES_SHEET, [list(attributes.columns)], attributes)
    _write_sheet(climate_path, config.CLIMATE_SHEET, [["Date", "Tavg", "Tmax", "Precip"]], climate)

    return {"survey": survey_path, "sites": sites_path, "climate": climate_path}


@pytest.fixture
def workbook_files(tmp_path, daily_climate):
    """Survey, site and climate workbooks for 12 sites.

    T4 has 999 sentinels for 2019, T6 a zero surveyed area in 2017, and five
    other site-years have no active haypiles.
    """
    return _write_workbooks(tmp_path, daily_climate)


@pytest.fixture
def all_present_workbook_files(tmp_path, daily_climate):
    """Same layout, but every counted site-year has haypiles."""
    return _write_workbooks(tmp_path, daily_climate, with_absences=False)
