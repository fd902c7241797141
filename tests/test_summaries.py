"""
Tests for exploratory summaries.
"""

import numpy as np
import pandas as pd
import pytest

from haypile.data.reshape import prepare_model_dataset, reshape_survey
from haypile.reporting.summaries import (
    collinearity,
    covariate_correlations,
    paired_year_change,
    year_summary,
)


def _paired_long(change):
    sites = [f"P{i}" for i in range(len(change))]
    first = np.linspace(0.2, 0.9, len(change))
    return pd.DataFrame({
        "site": sites * 2,
        "year": [2017] * len(sites) + [2019] * len(sites),
        "density": np.concatenate([first, first + np.asarray(change)]),
    })


@pytest.mark.unit
class TestYearSummary:

    def test_example(self, wide_survey, site_attributes):
        data, _ = prepare_model_dataset(reshape_survey(wide_survey), site_attributes)
        summary = year_summary(data).set_index("year")

        assert summary.loc[2017, "n_sites"] == 3
        assert summary.loc[2017, "total_haypiles"] == 5
        assert summary.loc[2019, "total_haypiles"] == 6
        assert summary.loc[2017, "frac_present"] == pytest.approx(2 / 3)
        # D 2017 has zero area, so its density is excluded
        assert summary.loc[2017, "mean_density"] == pytest.approx((0.3 + 0.25) / 2)


@pytest.mark.unit
class TestPairedYearChange:

    def test_consistent_increase(self):
        per_site, test = paired_year_change(_paired_long([0.1, 0.2, 0.15, 0.3, 0.05, 0.25, 0.12, 0.4]))

        assert len(per_site) == 8
        assert list(per_site.columns) == ["site", "density_2017", "density_2019", "change"]
        assert test["n_pairs"] == 8
        assert test["median_change"] == pytest.approx(np.median([0.1, 0.2, 0.15, 0.3, 0.05, 0.25, 0.12, 0.4]))
        assert test["p_value"] < 0.05

    def test_unpaired_sites_excluded(self, wide_survey):
        per_site, test = paired_year_change(reshape_survey(wide_survey))

        # B lacks 2019 and D's 2017 density is missing
        assert per_site["site"].tolist() == ["A"]
        assert test["n_pairs"] == 1

    def test_no_change_skips_test(self):
        _, test = paired_year_change(_paired_long([0.0, 0.0, 0.0]))
        assert np.isnan(test["p_value"])

    def test_missing_year(self):
        long = _paired_long([0.1, 0.2])
        per_site, test = paired_year_change(long[long["year"] == 2017])
        assert per_site.empty
        assert test["n_pairs"] == 0


@pytest.mark.unit
class TestCovariates:

    def test_spearman_correlations(self):
        data = pd.DataFrame({
            "density": [0.1, 0.2, 0.3, 0.4, 0.5],
            "elevation": [3000, 2900, 2800, 2700, 2600],
            "road_dist": [1, 2, 3, 4, 5],
        })
        corr = covariate_correlations(data).set_index("covariate")

        assert corr.loc["elevation", "rho"] == pytest.approx(-1.0)
        assert corr.loc["road_dist", "rho"] == pytest.approx(1.0)
        # Columns absent from the data are skipped
        assert "powerline_dist" not in corr.index

    def test_vif(self):
        rng = np.random.default_rng(4)
        x = rng.normal(size=200)
        data = pd.DataFrame({
            "elevation": x,
            "road_dist": rng.normal(size=200),
            "talus_area": x + rng.normal(scale=0.05, size=200),
        })
        vif = collinearity(data).set_index("covariate")["vif"]

        assert vif["road_dist"] < 1.5
        assert vif["elevation"] > 50
        assert vif["talus_area"] > 50
