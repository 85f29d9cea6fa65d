"""Tests for measurement ingestion and cleaning."""

import numpy as np
import pandas as pd
import pytest

from hydrorating import DataInsufficientError, IngestConfig, InputContractViolation, clean_measurements
from hydrorating.core import AccuracyClass, ControlSeverity
from hydrorating.measurements import (
    accuracy_counts,
    accuracy_error_fraction,
    control_severity,
    jitter_log_stage,
    log_flow_error,
    log_stage_rounding_error,
    measurements_by_day,
)


@pytest.fixture
def tied_measurements():
    """Many measurements sharing a small set of rounded stages."""
    rng = np.random.default_rng(0)
    stage = np.round(rng.choice([2.5, 3.0, 3.5, 4.0], size=40), 2)
    return pd.DataFrame(
        {
            "datetime": pd.date_range("2019-01-01", periods=40, freq="7D"),
            "stage": stage,
            "discharge": 50.0 * stage**2.5,
            "accuracy": "Good",
        }
    )


class TestErrorModel:
    def test_error_fractions(self):
        assert accuracy_error_fraction("Excellent") == 0.02
        assert accuracy_error_fraction("G") == 0.05
        assert accuracy_error_fraction(AccuracyClass.FAIR) == 0.08
        assert accuracy_error_fraction("poor") == 0.15
        assert accuracy_error_fraction("Poor", poor_error=0.2) == 0.2

    def test_unspecified_needs_explicit_value(self):
        with pytest.raises(ValueError):
            accuracy_error_fraction("Unspecified")
        assert accuracy_error_fraction("U", unspecified_error=0.08) == 0.08

    def test_log_flow_error_formula(self):
        expected = (np.log10(100.0 * 1.02) - np.log10(100.0)) / 2
        assert log_flow_error(100.0, 0.02) == pytest.approx(expected)
        # Independent of flow magnitude
        assert log_flow_error(5.0, 0.02) == pytest.approx(log_flow_error(5000.0, 0.02))

    def test_poor_stderr_exceeds_excellent(self):
        """Identical discharge: Poor must carry a larger log-space error."""
        raw = pd.DataFrame(
            {
                "datetime": ["2021-05-01", "2021-05-02"],
                "stage": [4.0, 4.0],
                "discharge": [1600.0, 1600.0],
                "accuracy": ["Excellent", "Poor"],
            }
        )
        cleaned = clean_measurements(raw).set_index("accuracy")
        assert cleaned.loc["Poor", "meas_lflow_stderr"] > cleaned.loc["Excellent", "meas_lflow_stderr"]

    def test_stage_rounding_error(self):
        se = log_stage_rounding_error(np.array([1.0, 10.0]), rounding=0.01)
        assert se[0] == pytest.approx(0.01 / np.sqrt(12) / np.log(10))
        assert se[1] < se[0]

    def test_control_severity(self):
        assert control_severity("Clear") == "clear"
        assert control_severity("IceCover") == "heavy"
        assert control_severity("DebrisLight") == "light"
        assert control_severity("Unspecified") is None
        assert control_severity(np.nan) is None
        assert ControlSeverity.from_control_code("IceAnchor") is ControlSeverity.MODERATE


class TestJitter:
    def test_keys_unique_and_small(self, tied_measurements):
        cleaned = clean_measurements(tied_measurements)
        keys = cleaned["lstage_key"].values
        assert np.unique(keys).size == keys.size
        assert np.all(np.diff(keys) > 0)
        assert np.max(np.abs(keys - cleaned["lstage"].values)) <= 5e-6

    def test_jitter_below_half_rounding_unit(self, tied_measurements):
        cleaned = clean_measurements(tied_measurements)
        stage_from_key = 10 ** cleaned["lstage_key"].values
        assert np.max(np.abs(stage_from_key - cleaned["stage"].values)) < 0.005

    def test_jitter_is_deterministic(self):
        lstage = np.log10(np.full(10, 3.0))
        a = jitter_log_stage(lstage, seed=7)
        b = jitter_log_stage(lstage, seed=7)
        np.testing.assert_array_equal(a, b)

    def test_reported_stage_untouched(self, tied_measurements):
        cleaned = clean_measurements(tied_measurements)
        assert set(cleaned["stage"]) <= {2.5, 3.0, 3.5, 4.0}
        np.testing.assert_allclose(cleaned["lstage"], np.log10(cleaned["stage"]))


class TestCleanMeasurements:
    def test_output_columns(self, raw_measurements):
        cleaned = clean_measurements(raw_measurements)
        for col in (
            "datetime", "stage", "discharge", "accuracy", "error_fraction", "control",
            "control_severity", "lstage", "lflow", "meas_lflow_stderr",
            "meas_lstage_stderr", "lstage_key",
        ):
            assert col in cleaned.columns
        assert cleaned["accuracy"].cat.ordered

    def test_does_not_mutate_input(self, raw_measurements):
        before = raw_measurements.copy()
        clean_measurements(raw_measurements)
        pd.testing.assert_frame_equal(raw_measurements, before)

    def test_unspecified_dropped_by_default(self, raw_measurements):
        raw = raw_measurements.copy()
        raw.loc[:4, "accuracy"] = "Unspecified"
        assert len(clean_measurements(raw)) == len(raw) - 5

    def test_unspecified_kept_on_request(self, raw_measurements):
        raw = raw_measurements.copy()
        raw.loc[:4, "accuracy"] = "Unspecified"
        cleaned = clean_measurements(raw, IngestConfig(keep_unspecified=True))
        assert len(cleaned) == len(raw)
        kept = cleaned[cleaned["accuracy"] == "Unspecified"]
        assert np.allclose(kept["error_fraction"], 0.08)

    def test_nonpositive_raises(self, raw_measurements):
        raw = raw_measurements.copy()
        raw.loc[3, "discharge"] = 0.0
        with pytest.raises(InputContractViolation):
            clean_measurements(raw)

    def test_nonpositive_dropped_on_request(self, raw_measurements):
        raw = raw_measurements.copy()
        raw.loc[3, "stage"] = -1.0
        cleaned = clean_measurements(raw, IngestConfig(drop_nonpositive=True))
        assert len(cleaned) == len(raw) - 1

    def test_missing_values_dropped(self, raw_measurements):
        raw = raw_measurements.copy()
        raw.loc[[1, 2], "discharge"] = np.nan
        assert len(clean_measurements(raw)) == len(raw) - 2

    def test_missing_column_raises(self, raw_measurements):
        with pytest.raises(InputContractViolation):
            clean_measurements(raw_measurements.drop(columns="accuracy"))

    def test_unknown_accuracy_raises(self, raw_measurements):
        raw = raw_measurements.copy()
        raw.loc[0, "accuracy"] = "Superb"
        with pytest.raises(InputContractViolation):
            clean_measurements(raw)

    def test_column_mapping(self, raw_measurements):
        raw = raw_measurements.rename(columns={"stage": "gage_height_va", "discharge": "discharge_va"})
        cleaned = clean_measurements(raw, columns={"gage_height_va": "stage", "discharge_va": "discharge"})
        assert len(cleaned) == len(raw)

    def test_all_unspecified_is_insufficient(self, raw_measurements):
        raw = raw_measurements.copy()
        raw["accuracy"] = "Unspecified"
        with pytest.raises(DataInsufficientError):
            clean_measurements(raw)

    def test_accuracy_counts(self, cleaned):
        counts = accuracy_counts(cleaned)
        assert sum(counts.values()) == len(cleaned)
        assert counts["Excellent"] == 20


class TestMeasurementsByDay:
    def test_inverse_variance_weighting(self):
        raw = pd.DataFrame(
            {
                "datetime": ["2021-06-01 08:00", "2021-06-01 15:00", "2021-06-02 09:00"],
                "stage": [3.0, 3.01, 3.5],
                "discharge": [780.0, 800.0, 1150.0],
                "accuracy": ["Excellent", "Poor", "Good"],
            }
        )
        cleaned = clean_measurements(raw)
        daily = measurements_by_day(cleaned)

        assert list(daily["n_measurements"]) == [2, 1]
        day1 = cleaned[cleaned["datetime"].dt.day == 1]
        w = 1 / day1["meas_lflow_stderr"] ** 2
        expected = np.sum(w * day1["lflow"]) / np.sum(w)
        assert daily["lflow"].iloc[0] == pytest.approx(expected)
        # Closer to the Excellent measurement
        exc = day1.loc[day1["accuracy"] == "Excellent", "lflow"].iloc[0]
        poor = day1.loc[day1["accuracy"] == "Poor", "lflow"].iloc[0]
        assert abs(daily["lflow"].iloc[0] - exc) < abs(daily["lflow"].iloc[0] - poor)
        assert daily["meas_lflow_stderr"].iloc[0] < day1["meas_lflow_stderr"].min()
