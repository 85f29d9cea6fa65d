"""Tests for analysis configuration."""

import json

import pytest

from hydrorating import AnalysisConfig, BayesConfig, InputContractViolation, KalmanConfig, load_config, save_config
from hydrorating.config import CONFIG_ENV_VAR, config_from_dict, sigma_prior_from_config
from hydrorating.core import CovarianceStructure, EstimationMethod, LikelihoodKind, SigmaPriorFamily


@pytest.fixture(autouse=True)
def no_env_config(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = load_config()
        assert config.site_no is None
        assert config.run_kalman and config.run_bayes
        assert config.smoother.n_splines == 10
        assert config.kalman.structure is CovarianceStructure.DIAGONAL_EQUAL
        assert config.bayes.method is EstimationMethod.LAPLACE
        assert config.bayes.sigma_prior is SigmaPriorFamily.GAMMA

    def test_site_number_padded(self):
        assert AnalysisConfig(site_no=1234567).site_no == "01234567"

    def test_enum_strings(self):
        assert KalmanConfig(structure="tridiagonal").structure is CovarianceStructure.TRIDIAGONAL
        bayes = BayesConfig(method="NUTS", likelihood="measurement-error")
        assert bayes.method is EstimationMethod.NUTS
        assert bayes.likelihood is LikelihoodKind.MEASUREMENT_ERROR

    def test_bad_enum(self):
        with pytest.raises(InputContractViolation):
            KalmanConfig(structure="banded")

    def test_sigma_prior_from_config(self):
        prior = sigma_prior_from_config(BayesConfig(sigma_prior="exponential", sigma_prior_params=(2.0,)))
        assert prior.label == "Exponential(2)"


class TestFromDict:
    def test_nested_sections(self):
        config = config_from_dict(
            {
                "site_no": "01646500",
                "start_date": "2019-10-01",
                "smoother": {"n_splines": 8, "lam_grid": [0.1, 1, 10]},
                "kalman": {"structure": "full", "max_passes": 5},
                "bayes": {"likelihood": "measurement_error", "draws": 200},
            }
        )
        assert config.smoother.n_splines == 8
        assert config.smoother.lam_grid == (0.1, 1.0, 10.0)
        assert config.kalman.structure is CovarianceStructure.FULL
        assert config.bayes.draws == 200

    def test_unknown_key(self):
        with pytest.raises(InputContractViolation):
            config_from_dict({"smoother": {"knots": 5}})
        with pytest.raises(InputContractViolation):
            config_from_dict({"colour": "blue"})


class TestLoadSave:
    def test_round_trip(self, tmp_path):
        config = AnalysisConfig(
            site_no="01646500",
            rating_catalog=tmp_path / "catalog.csv",
            kalman=KalmanConfig(structure="tridiagonal"),
            bayes=BayesConfig(sigma_prior="normal"),
        )
        path = save_config(config, tmp_path / "out" / "config.json")
        data = json.loads(path.read_text())
        assert data["kalman"]["structure"] == "tridiagonal"
        assert data["rating_catalog"] == str(tmp_path / "catalog.csv")

        loaded = load_config(path)
        assert loaded.kalman.structure is CovarianceStructure.TRIDIAGONAL
        assert loaded.bayes.sigma_prior is SigmaPriorFamily.NORMAL
        assert loaded.smoother == config.smoother

    def test_overrides(self, tmp_path):
        path = save_config(AnalysisConfig(site_no="01646500"), tmp_path / "config.json")
        config = load_config(path, site_no="02000000", start_date=None)
        assert config.site_no == "02000000"

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = save_config(AnalysisConfig(site_no="03000000"), tmp_path / "env.json")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_config().site_no == "03000000"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.json")

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{\"site_no\": ", encoding="utf-8")
        with pytest.raises(InputContractViolation, match="not valid JSON"):
            load_config(path)
