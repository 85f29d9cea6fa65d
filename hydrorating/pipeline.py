"""
hydrorating.pipeline - Site analysis driver

Runs ingestion, the rating smoother, the dynamic (Kalman) branch and the
Bayesian branch for one site. Each step takes explicit inputs and returns a
new value; the collected results are returned as an immutable
:class:`SiteAnalysis`.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
import requests

from .bayes import PosteriorSamples, fit_posterior
from .config import AnalysisConfig
from .exceptions import DataInsufficientError, HydroRatingError, InputContractViolation
from .kalman import DynamicRatingEstimator, KalmanFit
from .measurements import accuracy_counts, clean_measurements
from .observation import ObservationSet, build_observations, impute_stage_from_discharge
from .ratings import RatingCatalog
from .smoother import RatingSmoother, SplineModel
from .usgs import NWISSite, daily_mean_stage

logger = logging.getLogger(__name__)


@contextmanager
def _step(config: AnalysisConfig, name: str):
    """Attach site and window context to errors raised inside a step."""
    try:
        yield
    except HydroRatingError as exc:
        raise exc.with_context(
            step=name,
            site_no=config.site_no,
            start_date=config.start_date,
            end_date=config.end_date,
        )


@dataclass(frozen=True, eq=False)
class SiteAnalysis:
    """Results of one site analysis."""

    config: AnalysisConfig
    cleaned: pd.DataFrame
    spline: SplineModel
    site_info: Dict[str, Any] = field(default_factory=dict)
    reference_rating: Optional[pd.DataFrame] = None
    observations: Optional[ObservationSet] = None
    kalman: Optional[KalmanFit] = None
    reconstruction: Optional[pd.DataFrame] = None
    posterior: Optional[PosteriorSamples] = None

    def summary(self) -> str:
        lines = [
            f"Site analysis {self.config.site_no or ''}".rstrip(),
            "=" * 40,
            f"Measurements used:   {len(self.cleaned)}",
        ]
        for label, count in accuracy_counts(self.cleaned).items():
            lines.append(f"  {label:<12s}      {count}")
        lines += ["", self.spline.summary()]
        if self.kalman is not None:
            lines += ["", self.kalman.summary()]
        if self.posterior is not None:
            lines += [
                "",
                f"Posterior ({self.posterior.method.name.lower()}): {self.posterior.spec.describe()}",
                self.posterior.summary.to_string(),
            ]
        return "\n".join(lines)

    def save(self, output_dir: Optional[Path] = None) -> Dict[str, Path]:
        """Write result tables as CSV and return their paths by name."""
        out = Path(output_dir or self.config.output_dir)
        out.mkdir(parents=True, exist_ok=True)
        paths: Dict[str, Path] = {}

        def _write(name: str, df: pd.DataFrame, index: bool = False) -> None:
            path = out / f"{name}.csv"
            df.to_csv(path, index=index)
            paths[name] = path

        _write("measurements", self.cleaned)
        _write("rating_coefficients", self.spline.coefficient_table(), index=True)
        stages = np.linspace(self.spline.stage.min(), self.spline.stage.max(), 100)
        _write("rating_curve", self.spline.confidence_band(stages))
        _write("rating_training", self.spline.training_frame())
        if self.reconstruction is not None:
            _write("reconstruction", self.reconstruction, index=True)
        if self.kalman is not None:
            _write("kalman_states", self.kalman.state_frame(), index=True)
            _write("kalman_params", self.kalman.param_table, index=True)
        if self.posterior is not None:
            _write("posterior_draws", self.posterior.draws)
            _write("posterior_summary", self.posterior.summary, index=True)
            if self.posterior.latent is not None:
                _write("posterior_latent", self.posterior.latent_summary())

        config_path = out / "config.json"
        with open(config_path, "w", encoding="utf-8") as fh:
            json.dump(self.config.to_dict(), fh, indent=2)
        paths["config"] = config_path

        logger.info("Wrote %d result files to %s", len(paths), out)
        return paths


def _site(config: AnalysisConfig) -> NWISSite:
    if config.site_no is None:
        raise InputContractViolation("A site number is required to download missing inputs")
    return NWISSite(config.site_no)


def _reference_rating(config: AnalysisConfig) -> Optional[pd.DataFrame]:
    if config.rating_catalog is None:
        return None
    catalog = RatingCatalog.from_csv(config.rating_catalog)
    if config.base_rating_id is not None:
        return catalog.table(config.base_rating_id)
    when = config.end_date or pd.Timestamp.today().normalize()
    period = catalog.for_date(when)
    if period is None:
        logger.warning("No catalog rating in effect on %s", when)
        return None
    logger.info("Using rating %s in effect on %s", period.rating_id, when)
    return catalog.table(period.rating_id)


def _daily_stage(config: AnalysisConfig) -> pd.Series:
    site = _site(config)
    try:
        return site.download_daily_stage(config.start_date, config.end_date)
    except DataInsufficientError:
        logger.info("No daily stage published for %s; averaging unit values", config.site_no)
        return daily_mean_stage(site.download_unit_stage(config.start_date, config.end_date))


def run_site_analysis(
    config: AnalysisConfig,
    measurements: Optional[pd.DataFrame] = None,
    daily_stage: Optional[pd.Series] = None,
    daily_flow: Optional[pd.Series] = None,
    base_rating: Optional[pd.DataFrame] = None,
) -> SiteAnalysis:
    """
    Run the rating analysis for one site.

    Inputs that are not supplied are downloaded from NWIS for
    ``config.site_no``.

    Parameters
    ----------
    config : AnalysisConfig
        Analysis configuration
    measurements : pd.DataFrame, optional
        Raw field measurements (``datetime, stage, discharge, accuracy[, control]``)
    daily_stage : pd.Series, optional
        Daily mean stage indexed by date
    daily_flow : pd.Series, optional
        Published daily discharge, used to impute stage on missing days
    base_rating : pd.DataFrame, optional
        Rating table for stage imputation; defaults to the catalog rating

    Returns
    -------
    SiteAnalysis

    Raises
    ------
    HydroRatingError
        Any step failure, with site and window added to its context
    """
    site_info: Dict[str, Any] = {}

    with _step(config, "ingest"):
        if measurements is None:
            site = _site(config)
            site_info = site.fetch_site_info()
            measurements = site.download_measurements(end_date=config.end_date)
        cleaned = clean_measurements(measurements, config.ingest)

    with _step(config, "smoother"):
        spline = RatingSmoother(config.smoother).fit(
            cleaned["stage"].values, cleaned["discharge"].values, label=config.site_no or ""
        )

    with _step(config, "ratings"):
        reference = base_rating if base_rating is not None else _reference_rating(config)

    observations = kalman = reconstruction = None
    if config.run_kalman:
        with _step(config, "observations"):
            if daily_stage is None:
                daily_stage = _daily_stage(config)

            imputed = None
            if reference is not None:
                if daily_flow is None and config.site_no is not None:
                    try:
                        daily_flow = _site(config).download_daily_flow(config.start_date, config.end_date)
                    except (requests.RequestException, DataInsufficientError) as exc:
                        logger.warning("Daily discharge unavailable; no stage imputation: %s", exc)
                if daily_flow is not None:
                    imputed = impute_stage_from_discharge(daily_flow, reference)

            dates = None
            if config.start_date and config.end_date:
                dates = pd.date_range(config.start_date, config.end_date, freq="D")
            observations = build_observations(
                spline, daily_stage, measurements=cleaned, imputed_stage=imputed, dates=dates
            )

        with _step(config, "kalman"):
            estimator = DynamicRatingEstimator(
                spline,
                observations,
                config.kalman,
                context={"site_no": config.site_no, "start_date": config.start_date, "end_date": config.end_date},
            )
            kalman = estimator.fit()
            reconstruction = kalman.reconstruct(config.kalman.alpha)

    posterior = None
    if config.run_bayes:
        with _step(config, "bayes"):
            posterior = fit_posterior(spline, cleaned, config.bayes)

    return SiteAnalysis(
        config=config,
        cleaned=cleaned,
        spline=spline,
        site_info=site_info,
        reference_rating=reference,
        observations=observations,
        kalman=kalman,
        reconstruction=reconstruction,
        posterior=posterior,
    )
