"""
hydrorating.plots - Plotting utilities for rating analysis
"""

from __future__ import annotations

from typing import Dict, Optional, TYPE_CHECKING

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .core import ACCURACY_LABELS, COL_ACCURACY, COL_DISCHARGE, COL_STAGE

if TYPE_CHECKING:
    from .bayes import PosteriorSamples
    from .smoother import SplineModel

ACCURACY_COLORS = {
    "Excellent": "darkgreen",
    "Good": "steelblue",
    "Fair": "orange",
    "Poor": "firebrick",
    "Unspecified": "gray",
}


def apply_rating_style():
    """Apply standard rating plot style."""
    plt.rcParams.update({
        "figure.dpi": 140,
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.grid": True,
        "axes.grid.which": "both",
        "grid.alpha": 0.3,
        "font.size": 10,
    })


def _stage_grid(model: "SplineModel", n: int = 200) -> np.ndarray:
    return np.linspace(model.stage.min(), model.stage.max(), n)


def _finish(fig, ax, title: Optional[str], default_title: str, save_path: Optional[str]):
    ax.set_title(title or default_title, fontsize=12, fontweight="bold")
    ax.legend(loc="best", fontsize=9)
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches="tight")
    return fig


def plot_rating_curve(
    model: "SplineModel",
    measurements: Optional[pd.DataFrame] = None,
    reference_rating: Optional[pd.DataFrame] = None,
    alpha: float = 0.05,
    log_axes: bool = True,
    title: Optional[str] = None,
    save_path: Optional[str] = None,
    figsize: tuple = (8, 6),
) -> plt.Figure:
    """
    Plot a fitted rating curve with its confidence band.

    Parameters
    ----------
    model : SplineModel
        Fitted rating smoother
    measurements : pd.DataFrame, optional
        Cleaned measurements, colored by accuracy class
    reference_rating : pd.DataFrame, optional
        Published rating table to overlay
    alpha : float
        Band is the (1 - alpha) pointwise interval
    log_axes : bool
        Use logarithmic axes
    title : str, optional
        Plot title
    save_path : str, optional
        Path to save figure
    figsize : tuple
        Figure size

    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    apply_rating_style()
    band = model.confidence_band(_stage_grid(model), alpha=alpha)

    fig, ax = plt.subplots(figsize=figsize)
    ax.fill_between(band["stage"], band["flow_lower"], band["flow_upper"],
                    alpha=0.25, color="blue", label=f"{100 * (1 - alpha):.0f}% CI")
    ax.plot(band["stage"], band["flow"], "b-", linewidth=2, label="GAM rating", zorder=4)

    if measurements is not None:
        if COL_ACCURACY in measurements:
            for label in ACCURACY_LABELS:
                sub = measurements[measurements[COL_ACCURACY].astype(str) == label]
                if len(sub):
                    ax.scatter(sub[COL_STAGE], sub[COL_DISCHARGE], s=25, zorder=5,
                               color=ACCURACY_COLORS[label], edgecolors="black",
                               linewidth=0.4, label=label)
        else:
            ax.scatter(measurements[COL_STAGE], measurements[COL_DISCHARGE], s=25,
                       color="black", zorder=5, label="Measurements")
    else:
        ax.scatter(model.stage, model.discharge, s=20, color="black", zorder=5, label="Training data")

    if reference_rating is not None:
        ax.plot(reference_rating["stage"], reference_rating["discharge"], "k--",
                linewidth=1, label="Published rating")

    if log_axes:
        ax.set_xscale("log")
        ax.set_yscale("log")
    ax.set_xlabel("Stage (ft)", fontsize=11)
    ax.set_ylabel("Discharge (cfs)", fontsize=11)

    stats_text = f"k = {model.k}\nlambda = {model.lam:.3g}\nedof = {model.edof:.2f}"
    ax.annotate(stats_text, xy=(0.02, 0.98), xycoords="axes fraction", fontsize=9,
                ha="left", va="top", family="monospace",
                bbox=dict(boxstyle="round", facecolor="white", alpha=0.9))

    default = "Rating Curve" + (f" [{model.label}]" if model.label else "")
    return _finish(fig, ax, title, default, save_path)


def plot_reconstruction(
    reconstruction: pd.DataFrame,
    daily_flow: Optional[pd.Series] = None,
    title: Optional[str] = None,
    save_path: Optional[str] = None,
    figsize: tuple = (11, 5),
) -> plt.Figure:
    """
    Plot reconstructed daily discharge from the dynamic rating.

    Parameters
    ----------
    reconstruction : pd.DataFrame
        Output of KalmanFit.reconstruct
    daily_flow : pd.Series, optional
        Published daily discharge for comparison
    title : str, optional
        Plot title
    save_path : str, optional
        Path to save figure
    figsize : tuple
        Figure size

    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    apply_rating_style()
    fig, ax = plt.subplots(figsize=figsize)
    idx = reconstruction.index

    ax.fill_between(idx, reconstruction["flow_lower"], reconstruction["flow_upper"],
                    alpha=0.25, color="blue", label="Interval")
    ax.plot(idx, reconstruction["flow"], "b-", linewidth=1.2, label="Reconstructed")

    if daily_flow is not None:
        ax.plot(daily_flow.index, daily_flow.values, color="gray", linewidth=0.8,
                label="Published daily")

    measured = reconstruction["measured_lflow"].dropna()
    if len(measured):
        ax.scatter(measured.index, 10 ** measured.values, s=20, color="red",
                   zorder=5, label="Measurements")

    imputed = reconstruction.index[reconstruction["stage_source"] == "imputed"]
    if len(imputed):
        ax.scatter(imputed, reconstruction.loc[imputed, "flow"], s=6, color="orange",
                   zorder=4, label="Imputed stage")

    ax.set_yscale("log")
    ax.set_xlabel("Date", fontsize=11)
    ax.set_ylabel("Discharge (cfs)", fontsize=11)
    return _finish(fig, ax, title, "Dynamic Rating Reconstruction", save_path)


def plot_posterior_curve(
    posterior: "PosteriorSamples",
    model: "SplineModel",
    prob: float = 0.9,
    n_draws: int = 50,
    seed: Optional[int] = None,
    title: Optional[str] = None,
    save_path: Optional[str] = None,
    figsize: tuple = (8, 6),
) -> plt.Figure:
    """
    Plot the posterior rating curve with a credible band and sample curves.

    Parameters
    ----------
    posterior : PosteriorSamples
        Posterior draws of the spline weights
    model : SplineModel
        Spline whose basis the draws belong to
    prob : float
        Credible interval probability
    n_draws : int
        Number of individual posterior curves to overlay
    seed : int, optional
        Seed for choosing the overlaid draws

    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    apply_rating_style()
    stages = _stage_grid(model)
    pred = posterior.predict(model, stages, prob=prob)

    fig, ax = plt.subplots(figsize=figsize)
    rng = np.random.default_rng(seed)
    W = posterior.coef_draws()
    chosen = rng.choice(len(W), size=min(n_draws, len(W)), replace=False)
    X = model.design_matrix(stages)
    for i in chosen:
        ax.plot(stages, 10 ** (X @ W[i]), color="gray", alpha=0.15, linewidth=0.6)

    ax.fill_between(stages, pred["flow_lower"], pred["flow_upper"], alpha=0.3,
                    color="purple", label=f"{100 * prob:.0f}% credible")
    ax.plot(stages, pred["flow_median"], color="purple", linewidth=2, label="Posterior median")
    ax.scatter(model.stage, model.discharge, s=20, color="black", zorder=5, label="Data")

    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Stage (ft)", fontsize=11)
    ax.set_ylabel("Discharge (cfs)", fontsize=11)
    default = f"Posterior Rating ({posterior.method.name.lower()}, {posterior.spec.sigma_prior.label})"
    return _finish(fig, ax, title, default, save_path)


def plot_rating_periods(
    models: Dict[str, "SplineModel"],
    title: Optional[str] = None,
    save_path: Optional[str] = None,
    figsize: tuple = (8, 6),
) -> plt.Figure:
    """
    Overlay per-period fitted ratings.

    Parameters
    ----------
    models : dict
        Output of fit_rating_periods

    Returns
    -------
    plt.Figure
        Matplotlib figure
    """
    if not models:
        raise ValueError("No fitted ratings to plot")
    apply_rating_style()
    fig, ax = plt.subplots(figsize=figsize)
    for rating_id, model in models.items():
        stages = _stage_grid(model)
        ax.plot(stages, model.predict_flow(stages), linewidth=1.5, label=rating_id)
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Stage (ft)", fontsize=11)
    ax.set_ylabel("Discharge (cfs)", fontsize=11)
    return _finish(fig, ax, title, "Historical Ratings", save_path)
