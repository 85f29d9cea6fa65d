"""Tests for rating plots."""

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest
from matplotlib.figure import Figure

from hydrorating import fit_laplace
from hydrorating.plots import (
    plot_posterior_curve,
    plot_rating_curve,
    plot_rating_periods,
    plot_reconstruction,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture
def reconstruction():
    dates = pd.date_range("2021-01-01", periods=30, freq="D", name="date")
    lflow = np.linspace(2.5, 3.0, 30)
    df = pd.DataFrame(
        {
            "stage": np.linspace(3.0, 4.0, 30),
            "stage_source": ["observed"] * 25 + ["imputed"] * 5,
            "measured_lflow": np.where(np.arange(30) % 7 == 0, lflow + 0.01, np.nan),
            "lflow": lflow,
            "lflow_se": 0.02,
            "lflow_lower": lflow - 0.04,
            "lflow_upper": lflow + 0.04,
        },
        index=dates,
    )
    df["flow"] = 10 ** df["lflow"]
    df["flow_lower"] = 10 ** df["lflow_lower"]
    df["flow_upper"] = 10 ** df["lflow_upper"]
    return df


class TestPlots:
    def test_rating_curve(self, spline, cleaned, stage_grid, tmp_path):
        reference = pd.DataFrame({"stage": stage_grid, "discharge": 50.0 * stage_grid**2.5})
        path = tmp_path / "rating.png"
        fig = plot_rating_curve(spline, measurements=cleaned, reference_rating=reference, save_path=str(path))
        assert isinstance(fig, Figure)
        assert path.exists()

    def test_rating_curve_linear_axes(self, spline):
        fig = plot_rating_curve(spline, log_axes=False, title="Linear")
        assert fig.axes[0].get_title() == "Linear"

    def test_reconstruction(self, reconstruction):
        daily = pd.Series(10 ** reconstruction["lflow"].values * 1.02, index=reconstruction.index)
        fig = plot_reconstruction(reconstruction, daily_flow=daily)
        assert isinstance(fig, Figure)

    def test_posterior_curve(self, spline, cleaned):
        post = fit_laplace(spline, cleaned, draws=200, seed=0)
        fig = plot_posterior_curve(post, spline, n_draws=20, seed=0)
        assert isinstance(fig, Figure)

    def test_rating_periods(self, spline):
        fig = plot_rating_periods({"a": spline, "b": spline})
        assert isinstance(fig, Figure)
        with pytest.raises(ValueError):
            plot_rating_periods({})
