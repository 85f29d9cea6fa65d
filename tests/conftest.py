"""Shared fixtures for hydrorating tests."""

import numpy as np
import pandas as pd
import pytest

from hydrorating import RatingSmoother, clean_measurements


def true_discharge(stage):
    """Synthetic rating Q = 50 h^2.5."""
    return 50.0 * np.asarray(stage, dtype=float) ** 2.5


@pytest.fixture
def stage_grid():
    """Stages 2.0 to 10.0 ft every 0.1 ft."""
    return np.round(np.arange(2.0, 10.0 + 1e-9, 0.1), 2)


@pytest.fixture
def synthetic_rating(stage_grid):
    """Stage and 1%-noise discharge from the synthetic rating."""
    rng = np.random.default_rng(42)
    discharge = true_discharge(stage_grid) * (1 + 0.01 * rng.standard_normal(stage_grid.size))
    return stage_grid, discharge


@pytest.fixture
def raw_measurements(synthetic_rating):
    """Raw measurement table with one measurement per day."""
    stage, discharge = synthetic_rating
    n = stage.size
    return pd.DataFrame(
        {
            "datetime": pd.date_range("2020-10-01 10:00", periods=n, freq="D"),
            "stage": stage,
            "discharge": discharge,
            "accuracy": ["Excellent", "Good", "Fair", "Poor"] * (n // 4) + ["Good"] * (n % 4),
            "control": "Clear",
        }
    )


@pytest.fixture
def cleaned(raw_measurements):
    return clean_measurements(raw_measurements)


@pytest.fixture
def spline(synthetic_rating):
    stage, discharge = synthetic_rating
    return RatingSmoother().fit(stage, discharge)


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: compiles and samples a pymc model")
