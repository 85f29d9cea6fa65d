"""
Basic rating uncertainty example.

Fits a GAM rating to synthetic field measurements, tracks it day to day
with the Kalman branch and propagates parameter uncertainty with the
Laplace approximation.
"""

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')  # Use non-interactive backend

from hydrorating import (
    DynamicRatingEstimator,
    RatingSmoother,
    build_observations,
    clean_measurements,
    fit_laplace,
)
from hydrorating.plots import plot_rating_curve, plot_reconstruction

# Synthetic measurements from Q = 50 h^2.5 with 2% noise
rng = np.random.default_rng(42)
n_days = 120
dates = pd.date_range("2021-10-01", periods=n_days, freq="D")
stage = np.round(rng.uniform(2.0, 10.0, n_days), 2)
discharge = 50.0 * stage**2.5 * (1 + 0.02 * rng.standard_normal(n_days))

raw = pd.DataFrame({
    "datetime": dates + pd.Timedelta(hours=10),
    "stage": stage,
    "discharge": discharge,
    "accuracy": rng.choice(["Excellent", "Good", "Fair", "Poor"], n_days),
    "control": "Clear",
})

print("=" * 60)
print("HYDRORATING RATING UNCERTAINTY EXAMPLE")
print("=" * 60)

# Example 1: Clean measurements and fit the rating smoother
print("\n1. RATING SMOOTHER")
print("-" * 40)

cleaned = clean_measurements(raw)
spline = RatingSmoother().fit(cleaned["stage"].values, cleaned["discharge"].values, label="synthetic")
print(spline.summary())

# Example 2: Dynamic rating with every other measurement withheld
print("\n2. DYNAMIC (KALMAN) RATING")
print("-" * 40)

daily_stage = pd.Series(stage, index=dates)
observations = build_observations(spline, daily_stage, cleaned.iloc[::2])
fit = DynamicRatingEstimator(spline, observations).fit()
recon = fit.reconstruct()
print(fit.summary())
print(f"Days without a measurement: {int((~observations.observed).sum())}")
print(f"Mean log10 standard error: {recon['lflow_se'].mean():.4f}")

# Example 3: Laplace posterior for the rating weights
print("\n3. BAYESIAN RATING (LAPLACE)")
print("-" * 40)

posterior = fit_laplace(spline, cleaned, draws=1000, seed=0)
print(posterior.summary)
print("\nPosterior 90% interval at selected stages:")
print(posterior.predict(spline, [3.0, 5.0, 8.0]).round(3).to_string(index=False))

# Plots
plot_rating_curve(spline, measurements=cleaned, save_path="rating_curve.png")
plot_reconstruction(recon, save_path="reconstruction.png")
print("\nSaved rating_curve.png and reconstruction.png")
