"""Tests for rating tables and the rating catalog."""

import numpy as np
import pandas as pd
import pytest

from hydrorating import DataInsufficientError, InputContractViolation, RatingCatalog, read_rating_table
from hydrorating.ratings import rating_from_frame, rating_inverse, rating_lookup

RDB_TEXT = """# USGS rating table
# //RATING ID="12.0" TYPE="STGQ"
INDEP\tSHIFT\tDEP\tSTOR
16N\t16N\t16N\t1S
2.00\t0.00\t283.0\t*
3.00\t0.00\t779.0\t*
4.00\t0.00\t1600.0\t*
5.00\t0.00\t2795.0\t*
"""


@pytest.fixture
def rating():
    stage = np.array([2.0, 3.0, 4.0, 5.0])
    return pd.DataFrame({"stage": stage, "discharge": 50.0 * stage**2.5})


@pytest.fixture
def catalog_dir(tmp_path):
    (tmp_path / "tables").mkdir()
    for rid, coef in (("11.0", 45.0), ("12.0", 50.0)):
        stage = np.linspace(1.0, 12.0, 60)
        pd.DataFrame({"stage": stage, "discharge": coef * stage**2.5}).to_csv(
            tmp_path / "tables" / f"rating_{rid}.csv", index=False
        )
    pd.DataFrame(
        {
            "rating_id": ["11.0", "12.0"],
            "start_date": ["2015-10-01", "2019-06-15"],
            "end_date": ["2019-06-14", "2023-09-30"],
            "path": ["tables/rating_11.0.csv", "tables/rating_12.0.csv"],
        }
    ).to_csv(tmp_path / "catalog.csv", index=False)
    return tmp_path


class TestReadRatingTable:
    def test_rdb_with_type_row(self, tmp_path):
        path = tmp_path / "rating.rdb"
        path.write_text(RDB_TEXT)
        table = read_rating_table(path)
        assert list(table.columns) == ["stage", "discharge"]
        assert len(table) == 4
        assert table["discharge"].iloc[-1] == 2795.0

    def test_comma_delimited(self, tmp_path):
        path = tmp_path / "rating.csv"
        path.write_text("gage_height,discharge\n3.0,779\n2.0,283\n2.0,283\n4.0,1600\n")
        table = read_rating_table(path)
        assert list(table["stage"]) == [2.0, 3.0, 4.0]

    def test_two_unnamed_columns(self):
        table = rating_from_frame(pd.DataFrame({"a": [1.0, 2.0], "b": [10.0, 40.0]}))
        assert list(table.columns) == ["stage", "discharge"]

    def test_unknown_columns_raise(self):
        with pytest.raises(InputContractViolation):
            rating_from_frame(pd.DataFrame({"a": [1.0], "b": [2.0], "c": [3.0]}))

    def test_too_short(self, tmp_path):
        path = tmp_path / "rating.csv"
        path.write_text("stage,discharge\n2.0,283\n")
        with pytest.raises(DataInsufficientError):
            read_rating_table(path)


class TestLookup:
    def test_interpolation(self, rating):
        assert rating_lookup(rating, 2.5) == pytest.approx((283.0 + 779.0) / 2, rel=1e-3)

    def test_clamped_outside_range(self, rating):
        out = rating_lookup(rating, [0.5, 9.0])
        assert out[0] == rating["discharge"].iloc[0]
        assert out[1] == rating["discharge"].iloc[-1]

    def test_inverse(self, rating):
        stage = rating_inverse(rating, rating["discharge"].values)
        np.testing.assert_allclose(stage, rating["stage"].values)
        clamped = rating_inverse(rating, [1.0, 1e6, np.nan])
        assert clamped[0] == 2.0
        assert clamped[1] == 5.0
        assert np.isnan(clamped[2])


class TestRatingCatalog:
    def test_from_csv(self, catalog_dir):
        catalog = RatingCatalog.from_csv(catalog_dir / "catalog.csv")
        assert len(catalog) == 2
        assert [p.rating_id for p in catalog.periods()] == ["11.0", "12.0"]
        table = catalog.table("12.0")
        assert len(table) == 60

    def test_for_date(self, catalog_dir):
        catalog = RatingCatalog.from_csv(catalog_dir / "catalog.csv")
        assert catalog.for_date("2017-01-01").rating_id == "11.0"
        assert catalog.for_date("2021-01-01").rating_id == "12.0"
        assert catalog.for_date("2010-01-01") is None

    def test_unknown_id(self, catalog_dir):
        catalog = RatingCatalog.from_csv(catalog_dir / "catalog.csv")
        with pytest.raises(KeyError):
            catalog.period("99.0")

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "catalog.csv"
        path.write_text("rating_id,path\n1,a.csv\n")
        with pytest.raises(InputContractViolation):
            RatingCatalog.from_csv(path)
