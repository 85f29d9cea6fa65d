"""End-to-end site analysis with NWIS responses mocked."""

from __future__ import annotations

from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from hydrorating import BayesConfig, KalmanConfig, SmootherConfig, analyze_site
from hydrorating.core import EstimationMethod, EstimatorState


@pytest.fixture
def catalog_path(tmp_path, stage_grid):
    for rid, coef in (("6.0", 46.0), ("7.0", 50.0)):
        pd.DataFrame({"stage": stage_grid, "discharge": coef * stage_grid**2.5}).to_csv(
            tmp_path / f"rating_{rid}.csv", index=False
        )
    path = tmp_path / "catalog.csv"
    pd.DataFrame(
        {
            "rating_id": ["6.0", "7.0"],
            "start_date": ["2012-10-01", "2019-10-01"],
            "end_date": ["2019-09-30", "2025-09-30"],
            "path": ["rating_6.0.csv", "rating_7.0.csv"],
        }
    ).to_csv(path, index=False)
    return path


@pytest.fixture
def nwis(raw_measurements):
    """Mocked NWIS site: stage gaps every ten days, published flow everywhere."""
    dates = pd.DatetimeIndex(raw_measurements["datetime"].dt.normalize(), name="date")
    stage = pd.Series(raw_measurements["stage"].values, index=dates, name="stage")
    stage.iloc[::10] = np.nan
    flow = pd.Series(50.0 * raw_measurements["stage"].values ** 2.5, index=dates, name="discharge")

    with patch("hydrorating.pipeline.NWISSite") as mock_site:
        site = mock_site.return_value
        site.fetch_site_info.return_value = {"site_no": "01234567", "site_name": "TEST CREEK"}
        site.download_measurements.return_value = raw_measurements
        site.download_daily_stage.return_value = stage
        site.download_daily_flow.return_value = flow
        yield site


class TestAnalyzeSite:
    def test_full_workflow(self, nwis, catalog_path, tmp_path):
        out = tmp_path / "results"
        result = analyze_site(
            "01234567",
            start_date="2020-10-01",
            end_date="2020-12-20",
            rating_catalog=str(catalog_path),
            output_dir=str(out),
            smoother=SmootherConfig(lam_grid=(0.1, 1.0, 10.0)),
            kalman=KalmanConfig(),
            bayes=BayesConfig(likelihood="measurement_error", draws=500),
        )

        nwis.download_daily_flow.assert_called_once_with("2020-10-01", "2020-12-20")
        assert result.site_info["site_name"] == "TEST CREEK"

        # Catalog rating in effect on the end date drives the imputation
        np.testing.assert_allclose(
            result.reference_rating["discharge"].values, 50.0 * result.reference_rating["stage"].values ** 2.5
        )
        recon = result.reconstruction
        assert len(recon) == 81
        assert (recon["stage_source"] == "imputed").sum() == 9
        assert recon["flow"].notna().all()
        truth = 50.0 * recon["stage"].values ** 2.5
        assert np.max(np.abs(recon["flow"].values - truth) / truth) < 0.05
        assert result.kalman.state is EstimatorState.CONVERGED

        assert result.posterior.method is EstimationMethod.LAPLACE
        latent = result.posterior.latent_summary()
        assert len(latent) == len(result.cleaned)

        for name in ("reconstruction.csv", "posterior_latent.csv", "config.json", "rating_curve.png",
                     "reconstruction.png", "posterior_curve.png"):
            assert (out / name).exists()
