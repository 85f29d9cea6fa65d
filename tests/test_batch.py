"""Tests for per-rating-period smoother fits."""

import numpy as np
import pandas as pd
import pytest

from hydrorating import RatingCatalog, SmootherConfig, fit_rating_periods, rating_period_table

FAST = SmootherConfig(lam_grid=(0.1, 1.0, 10.0), correct_for_smoothing=False)


@pytest.fixture
def catalog(tmp_path):
    stage = np.linspace(1.5, 12.0, 60)
    for rid, coef in (("10.0", 40.0), ("11.0", 50.0)):
        pd.DataFrame({"stage": stage, "discharge": coef * stage**2.5}).to_csv(
            tmp_path / f"{rid}.csv", index=False
        )
    pd.DataFrame(
        {
            "rating_id": ["10.0", "11.0", "12.0"],
            "start_date": ["2012-10-01", "2016-10-01", "2020-10-01"],
            "end_date": ["2016-09-30", "2020-09-30", "2024-09-30"],
            "path": ["10.0.csv", "11.0.csv", "12.0.csv"],
        }
    ).to_csv(tmp_path / "catalog.csv", index=False)
    return RatingCatalog.from_csv(tmp_path / "catalog.csv")


class TestFitRatingPeriods:
    def test_fits_tables_and_collects_errors(self, catalog):
        models, errors = fit_rating_periods(catalog, FAST, workers=2)
        assert set(models) == {"10.0", "11.0"}
        assert set(errors) == {"12.0"}
        assert models["11.0"].label == "11.0"

    def test_fit_to_measurements_in_period(self, catalog, cleaned):
        models, errors = fit_rating_periods(catalog, FAST, measurements=cleaned)
        # All measurements fall in water year 2021
        assert set(models) == {"12.0"}
        assert models["12.0"].n == len(cleaned)
        assert set(errors) == {"10.0", "11.0"}


class TestRatingPeriodTable:
    def test_summary_columns(self, catalog):
        models, _ = fit_rating_periods(catalog, FAST)
        table = rating_period_table(models, catalog)
        assert list(table["rating_id"]) == ["10.0", "11.0"]
        for col in ("n", "k", "lambda", "edof", "gcv", "max_abs_pct_error", "max_pct_vs_published"):
            assert col in table.columns
        assert (table["max_pct_vs_published"] < 2.0).all()
        assert (table["monotonic_breaks"] == 0).all()

    def test_zero_flow_row_skipped(self, tmp_path):
        stage = np.linspace(1.5, 12.0, 60)
        pd.DataFrame(
            {"stage": np.r_[1.0, stage], "discharge": np.r_[0.0, 50.0 * stage**2.5]}
        ).to_csv(tmp_path / "gzf.csv", index=False)
        pd.DataFrame(
            {"rating_id": ["9.0"], "start_date": ["2010-10-01"], "end_date": ["2012-09-30"], "path": ["gzf.csv"]}
        ).to_csv(tmp_path / "catalog.csv", index=False)
        catalog = RatingCatalog.from_csv(tmp_path / "catalog.csv")

        models, errors = fit_rating_periods(catalog, FAST)
        assert not errors
        table = rating_period_table(models, catalog)
        value = table.loc[0, "max_pct_vs_published"]
        assert np.isfinite(value)
        assert value < 2.0

    def test_without_catalog(self, catalog):
        models, _ = fit_rating_periods(catalog, FAST)
        table = rating_period_table(models)
        assert "start_date" not in table.columns
        assert len(table) == 2
