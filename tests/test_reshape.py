"""
Tests for survey reshaping, site joins and the model dataset.
"""

import numpy as np
import pandas as pd
import pytest

from haypile.data.reshape import (
    LONG_COLUMNS,
    compute_density,
    reshape_survey,
    join_site_attributes,
    scale_column,
    prepare_model_dataset,
    attach_climate,
)


@pytest.mark.unit
class TestComputeDensity:
    """Tests for haypile density"""

    def test_density_is_count_over_area(self):
        density = compute_density(pd.Series([3.0, 5.0]), pd.Series([10.0, 12.0]))
        assert density.tolist() == pytest.approx([0.3, 5 / 12])

    def test_missing_or_zero_area_gives_missing(self):
        density = compute_density(pd.Series([2.0, 0.0, 4.0]), pd.Series([np.nan, 0.0, 2.0]))
        assert pd.isna(density.iloc[0])
        assert pd.isna(density.iloc[1])
        assert density.iloc[2] == 2.0


@pytest.mark.unit
class TestReshapeSurvey:
    """Tests for the wide-to-long pivot"""

    def test_example_sites(self, wide_survey):
        """A has both years, B only 2017, C is dropped"""
        long = reshape_survey(wide_survey)

        assert list(long.columns) == LONG_COLUMNS
        a = long[long["site"] == "A"].set_index("year")
        assert a.loc[2017, "density"] == pytest.approx(0.3)
        assert a.loc[2019, "density"] == pytest.approx(0.4166667, rel=1e-6)
        assert a["talus_area"].tolist() == [50.0, 50.0]

        b = long[long["site"] == "B"]
        assert b["year"].tolist() == [2017]
        assert "C" not in set(long["site"])

    def test_one_row_per_site_year(self, wide_survey):
        long = reshape_survey(wide_survey)

        assert not long.duplicated(["site", "year"]).any()
        assert long["year"].dtype.kind == "i"
        assert len(long) == 5  # A x2, B x1, D x2

    def test_zero_area_keeps_count_but_not_density(self, wide_survey):
        long = reshape_survey(wide_survey)
        d2017 = long[(long["site"] == "D") & (long["year"] == 2017)].iloc[0]

        assert d2017["haypiles"] == 0
        assert pd.isna(d2017["density"])

    def test_count_without_area_warns(self, wide_survey, caplog):
        wide = wide_survey.copy()
        wide.loc[wide["site"] == "B", "haypiles_2019"] = 4.0

        with caplog.at_level("WARNING"):
            long = reshape_survey(wide)

        b2019 = long[(long["site"] == "B") & (long["year"] == 2019)].iloc[0]
        assert pd.isna(b2019["surveyed_area"])
        assert pd.isna(b2019["density"])
        assert "without surveyed area" in caplog.text

    def test_missing_columns_raise(self, wide_survey):
        with pytest.raises(ValueError, match="missing columns"):
            reshape_survey(wide_survey.drop(columns=["area_2019"]))


@pytest.mark.unit
class TestJoinSiteAttributes:
    """Tests for the left join of site attributes"""

    def test_row_count_preserved(self, wide_survey, site_attributes):
        long = reshape_survey(wide_survey)
        merged = join_site_attributes(long, site_attributes)

        assert len(merged) == len(long)
        assert merged.loc[merged["site"] == "A", "elevation"].tolist() == [2400.0, 2400.0]

    def test_unmatched_site_keeps_row(self, site_attributes):
        long = pd.DataFrame({"site": ["A", "Z"], "year": [2017, 2017],
                             "talus_area": [1.0, 1.0], "surveyed_area": [1.0, 1.0],
                             "haypiles": [1.0, 1.0], "density": [1.0, 1.0]})
        merged = join_site_attributes(long, site_attributes)

        assert len(merged) == 2
        assert pd.isna(merged.loc[merged["site"] == "Z", "elevation"].iloc[0])

    def test_duplicate_site_keys_raise(self, wide_survey, site_attributes):
        dup = pd.concat([site_attributes, site_attributes.iloc[[0]]], ignore_index=True)

        with pytest.raises(ValueError, match="duplicate site keys"):
            join_site_attributes(reshape_survey(wide_survey), dup)


@pytest.mark.unit
class TestModelDataset:
    """Tests for scaling and the presence indicator"""

    def test_scale_column(self):
        scaled, (mean, sd) = scale_column(pd.Series([1.0, 2.0, 3.0, np.nan]))

        assert mean == 2.0
        assert sd == 1.0
        assert scaled.tolist()[:3] == [-1.0, 0.0, 1.0]
        assert pd.isna(scaled.iloc[3])

    def test_constant_column_not_divided_by_zero(self):
        scaled, (_, sd) = scale_column(pd.Series([5.0, 5.0, 5.0]))
        assert sd == 1.0
        assert scaled.tolist() == [0.0, 0.0, 0.0]

    def test_prepare_model_dataset(self, wide_survey, site_attributes):
        long = reshape_survey(wide_survey)
        data, scaling = prepare_model_dataset(long, site_attributes)

        assert set(scaling) == {"elevation", "talus_area"}
        assert data["elevation_scaled"].mean() == pytest.approx(0.0, abs=1e-12)
        assert data["elevation_scaled"].std() == pytest.approx(1.0)
        assert data["present"].tolist() == [1.0, 1.0, 1.0, 0.0, 1.0]

    def test_present_missing_when_count_missing(self, site_attributes):
        long = pd.DataFrame({"site": ["A", "B"], "year": [2017, 2017],
                             "talus_area": [1.0, 2.0], "surveyed_area": [5.0, 5.0],
                             "haypiles": [np.nan, 2.0], "density": [np.nan, 0.4]})
        data, _ = prepare_model_dataset(long, site_attributes)

        assert pd.isna(data["present"].iloc[0])
        assert data["present"].iloc[1] == 1.0

    def test_attach_climate(self, wide_survey, site_attributes):
        data, _ = prepare_model_dataset(reshape_survey(wide_survey), site_attributes)
        climate = pd.DataFrame({"year": [2019], "avg_dec_feb": [-6.0]})

        merged = attach_climate(data, climate)

        assert len(merged) == len(data)
        assert merged.loc[merged["year"] == 2019, "avg_dec_feb"].eq(-6.0).all()
        assert merged.loc[merged["year"] == 2017, "avg_dec_feb"].isna().all()
