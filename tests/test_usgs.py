"""Tests for USGS NWIS retrieval (network calls mocked)."""

from unittest.mock import MagicMock, patch

import pandas as pd
import pytest
import requests

from hydrorating import DataInsufficientError, NWISSite, clean_measurements, fetch_measurements_batch
from hydrorating.usgs import daily_mean_stage, read_rdb

MEASUREMENTS_RDB = "\n".join(
    [
        "# U.S. Geological Survey",
        "# Field measurements",
        "agency_cd\tsite_no\tmeasurement_nu\tmeasurement_dt\tgage_height_va\tdischarge_va\tmeasured_rating_diff\tcontrol_type_cd",
        "5s\t15s\t10s\t19d\t12s\t12s\t12s\t20s",
        "USGS\t01234567\t101\t2020-03-04 10:15\t3.12\t845\tGood\tClear",
        "USGS\t01234567\t102\t2020-06-10 13:40\t2.40\t402\tFair\tVegetation",
        "USGS\t01234567\t103\t2021-01-20 09:05\t4.55\t1980\t\tIceCover",
        "USGS\t01234567\t104\t2021-05-02 11:30\t5.01\t2510\tExcellent\tClear",
    ]
)

DAILY_RDB = "\n".join(
    [
        "# daily values",
        "agency_cd\tsite_no\tdatetime\t1234_00060_00003\t1234_00060_00003_cd",
        "5s\t15s\t20d\t14n\t10s",
        "USGS\t01234567\t2020-03-01\t810\tA",
        "USGS\t01234567\t2020-03-02\t\tA",
        "USGS\t01234567\t2020-03-03\t790\tA",
    ]
)

SITE_RDB = "\n".join(
    [
        "agency_cd\tsite_no\tstation_nm\tdec_lat_va\tdec_long_va\tdrain_area_va",
        "5s\t15s\t50s\t16s\t16s\t8s",
        "USGS\t01234567\tTEST CREEK NEAR TESTVILLE\t38.5\t-77.25\t112",
    ]
)


def fake_response(text):
    response = MagicMock()
    response.text = text
    response.raise_for_status.return_value = None
    return response


class TestReadRdb:
    def test_skips_comments_and_type_row(self):
        df = read_rdb(MEASUREMENTS_RDB)
        assert len(df) == 4
        assert df["site_no"].iloc[0] == "01234567"

    def test_empty_response(self):
        assert read_rdb("# nothing here\n").empty


class TestNWISSite:
    def test_site_no_padded(self):
        assert NWISSite("1234567").site_no == "01234567"

    @patch("hydrorating.usgs.requests.get")
    def test_download_measurements(self, mock_get):
        mock_get.return_value = fake_response(MEASUREMENTS_RDB)
        df = NWISSite("01234567").download_measurements()

        assert list(df.columns) == ["datetime", "stage", "discharge", "accuracy", "control"]
        assert len(df) == 4
        assert df["accuracy"].iloc[2] == "Unspecified"
        assert df["stage"].iloc[0] == 3.12
        params = mock_get.call_args.kwargs["params"]
        assert params["format"] == "rdb_expanded"
        assert mock_get.call_args.kwargs["timeout"] == 30.0

    @patch("hydrorating.usgs.requests.get")
    def test_measurement_window(self, mock_get):
        mock_get.return_value = fake_response(MEASUREMENTS_RDB)
        df = NWISSite("01234567").download_measurements("2020-06-10", "2021-01-20")
        assert len(df) == 2

    @patch("hydrorating.usgs.requests.get")
    def test_downloaded_table_cleans(self, mock_get):
        mock_get.return_value = fake_response(MEASUREMENTS_RDB)
        cleaned = clean_measurements(NWISSite("01234567").download_measurements())
        assert len(cleaned) == 3
        assert set(cleaned["control_severity"].dropna()) == {"clear", "moderate"}

    @patch("hydrorating.usgs.requests.get")
    def test_no_measurements(self, mock_get):
        mock_get.return_value = fake_response("# no sites found\n")
        with pytest.raises(DataInsufficientError):
            NWISSite("01234567").download_measurements()

    @patch("hydrorating.usgs.requests.get")
    def test_daily_flow(self, mock_get):
        mock_get.return_value = fake_response(DAILY_RDB)
        flow = NWISSite("01234567").download_daily_flow("2020-03-01", "2020-03-03")
        assert flow.name == "discharge"
        assert flow.index.name == "date"
        assert flow.iloc[0] == 810.0
        assert pd.isna(flow.iloc[1])
        params = mock_get.call_args.kwargs["params"]
        assert params["parameterCd"] == "00060"
        assert params["statCd"] == "00003"
        assert params["startDT"] == "2020-03-01"

    @patch("hydrorating.usgs.requests.get")
    def test_daily_stage_column_missing(self, mock_get):
        mock_get.return_value = fake_response(DAILY_RDB)
        with pytest.raises(DataInsufficientError):
            NWISSite("01234567").download_daily_stage()

    @patch("hydrorating.usgs.requests.get")
    def test_site_info(self, mock_get):
        mock_get.return_value = fake_response(SITE_RDB)
        site = NWISSite("01234567")
        info = site.fetch_site_info()
        assert info["site_name"] == "TEST CREEK NEAR TESTVILLE"
        assert info["drainage_area_sqmi"] == 112.0
        assert site.coordinates == (38.5, -77.25)

    @patch("hydrorating.usgs.requests.get")
    def test_site_info_network_failure(self, mock_get):
        mock_get.side_effect = requests.ConnectionError("offline")
        info = NWISSite("01234567").fetch_site_info()
        assert info["site_name"] is None
        assert info["site_no"] == "01234567"


class TestHelpers:
    def test_daily_mean_stage(self):
        idx = pd.date_range("2021-04-01", periods=48, freq="h")
        unit = pd.Series([1.0] * 24 + [3.0] * 24, index=idx)
        daily = daily_mean_stage(unit)
        assert list(daily.values) == [1.0, 3.0]
        assert daily.name == "stage"

    @patch("hydrorating.usgs.requests.get")
    def test_batch_collects_errors(self, mock_get):
        def respond(url, params, timeout):
            if params["site_no"] == "09999999":
                raise requests.HTTPError("404")
            return fake_response(MEASUREMENTS_RDB)

        mock_get.side_effect = respond
        results, errors = fetch_measurements_batch(["01234567", "09999999"], workers=2)
        assert set(results) == {"01234567"}
        assert set(errors) == {"09999999"}
