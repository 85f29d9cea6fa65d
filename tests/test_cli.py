"""Tests for the command-line interface."""

import pandas as pd
import pytest
from click.testing import CliRunner

from hydrorating.cli import cli
from hydrorating.config import CONFIG_ENV_VAR


@pytest.fixture(autouse=True)
def no_env_config(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)


@pytest.fixture
def measurement_csv(raw_measurements, tmp_path):
    path = tmp_path / "measurements.csv"
    raw_measurements.to_csv(path, index=False)
    return path


@pytest.fixture
def stage_csv(raw_measurements, tmp_path):
    path = tmp_path / "stage.csv"
    pd.DataFrame(
        {"date": raw_measurements["datetime"].dt.strftime("%Y-%m-%d"), "stage": raw_measurements["stage"]}
    ).to_csv(path, index=False)
    return path


class TestCli:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("clean", "fit", "analyze"):
            assert command in result.output

    def test_clean(self, measurement_csv, tmp_path):
        out = tmp_path / "cleaned.csv"
        result = CliRunner().invoke(cli, ["clean", str(measurement_csv), "-o", str(out), "--seed", "3"])
        assert result.exit_code == 0, result.output
        cleaned = pd.read_csv(out)
        assert "meas_lflow_stderr" in cleaned.columns
        assert len(cleaned) == 81

    def test_clean_reports_contract_violation(self, raw_measurements, tmp_path):
        bad = raw_measurements.drop(columns="accuracy")
        path = tmp_path / "bad.csv"
        bad.to_csv(path, index=False)
        result = CliRunner().invoke(cli, ["clean", str(path), "-o", str(tmp_path / "x.csv")])
        assert result.exit_code == 1
        assert "missing columns" in result.output

    def test_fit(self, measurement_csv, tmp_path):
        out = tmp_path / "fit"
        result = CliRunner().invoke(cli, ["fit", str(measurement_csv), "-k", "8", "-o", str(out), "--plot"])
        assert result.exit_code == 0, result.output
        assert "Basis dimension (k): 8" in result.output
        assert (out / "rating_coefficients.csv").exists()
        assert (out / "rating_training.csv").exists()
        assert (out / "rating_curve.png").exists()

    def test_analyze(self, measurement_csv, stage_csv, tmp_path):
        out = tmp_path / "analysis"
        result = CliRunner().invoke(
            cli,
            [
                "analyze",
                "--site", "01234567",
                "--measurements", str(measurement_csv),
                "--daily-stage", str(stage_csv),
                "--no-bayes",
                "-o", str(out),
            ],
        )
        assert result.exit_code == 0, result.output
        assert (out / "reconstruction.csv").exists()
        assert (out / "kalman_states.csv").exists()
        assert not (out / "posterior_draws.csv").exists()
        assert "Dynamic Rating Estimate" in result.output

    def test_analyze_reports_bad_config(self, measurement_csv, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"kalman": {"structure": "banded"}}', encoding="utf-8")
        result = CliRunner().invoke(
            cli, ["analyze", "-c", str(path), "--measurements", str(measurement_csv), "--no-kalman", "--no-bayes"]
        )
        assert result.exit_code == 1
        assert "Invalid CovarianceStructure" in result.output
        assert "Traceback" not in result.output

    def test_analyze_reports_unknown_config_key(self, measurement_csv, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('{"colour": "blue"}', encoding="utf-8")
        result = CliRunner().invoke(cli, ["analyze", "-c", str(path), "--measurements", str(measurement_csv)])
        assert result.exit_code == 1
        assert "Unknown configuration keys" in result.output

    def test_clean_reports_missing_env_config(self, measurement_csv, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "absent.json"))
        result = CliRunner().invoke(cli, ["clean", str(measurement_csv), "-o", str(tmp_path / "x.csv")])
        assert result.exit_code == 1
        assert "Configuration file not found" in result.output
        assert not (tmp_path / "x.csv").exists()
