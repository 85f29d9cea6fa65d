"""
hydrorating.observation - Time-varying observation equations

Maps a fitted rating smoother onto a daily stage series, producing one
design row per day plus the discharge measurements (and their variances)
that observe the spline weights on that day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import minimize_scalar

from .core import COL_DATETIME, COL_DISCHARGE, COL_STAGE
from .exceptions import InputContractViolation
from .measurements import measurements_by_day
from .ratings import rating_inverse, rating_lookup
from .smoother import RatingSmoother, SplineModel

logger = logging.getLogger(__name__)

STAGE_OBSERVED = "observed"
STAGE_IMPUTED = "imputed"
STAGE_MISSING = "missing"


@dataclass(frozen=True, eq=False)
class ObservationSet:
    """Daily observation equations for the dynamic rating model.

    Parameters
    ----------
    dates : pd.DatetimeIndex
        One entry per calendar day, T in total.
    design : np.ndarray
        Design rows shaped (1, k, T); NaN columns where stage is unknown.
    lflow : np.ndarray
        Measured log10 discharge (T,); NaN on unmeasured days.
    obs_var : np.ndarray
        Observation variance (T,); ``inf`` on days with no usable measurement.
    stage : np.ndarray
        Stage used to build each design row (T,).
    stage_source : np.ndarray
        'observed', 'imputed' or 'missing' per day.
    """

    dates: pd.DatetimeIndex
    design: np.ndarray
    lflow: np.ndarray
    obs_var: np.ndarray
    stage: np.ndarray
    stage_source: np.ndarray

    def __post_init__(self) -> None:
        T = len(self.dates)
        if self.design.ndim != 3 or self.design.shape[0] != 1 or self.design.shape[2] != T:
            raise InputContractViolation(
                "Design array must be shaped (1, k, T)", shape=self.design.shape, T=T
            )
        for name in ("lflow", "obs_var", "stage", "stage_source"):
            if len(getattr(self, name)) != T:
                raise InputContractViolation(
                    f"{name} length does not match the number of days",
                    length=len(getattr(self, name)),
                    T=T,
                )

    @property
    def T(self) -> int:
        return len(self.dates)

    @property
    def k(self) -> int:
        return self.design.shape[1]

    @property
    def has_design(self) -> np.ndarray:
        return np.all(np.isfinite(self.design[0]), axis=0)

    @property
    def observed(self) -> np.ndarray:
        """Days whose measurement enters the likelihood."""
        return np.isfinite(self.lflow) & np.isfinite(self.obs_var) & self.has_design

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "stage": self.stage,
                "stage_source": self.stage_source,
                "lflow": self.lflow,
                "obs_var": self.obs_var,
                "observed": self.observed,
            },
            index=pd.Index(self.dates, name="date"),
        )


def _daily_series(series: Optional[pd.Series], name: str) -> Optional[pd.Series]:
    if series is None:
        return None
    if not isinstance(series.index, pd.DatetimeIndex):
        raise InputContractViolation(f"{name} must be indexed by date")
    out = pd.to_numeric(series, errors="coerce")
    return out.groupby(out.index.normalize()).mean()


def impute_stage_from_discharge(daily_flow: pd.Series, rating: pd.DataFrame) -> pd.Series:
    """Stage implied by published daily discharge through a base rating.

    Inverse linear interpolation on the rating's (stage, discharge) pairs;
    discharge outside the table is held at the end stages.
    """
    daily_flow = _daily_series(daily_flow, "daily_flow")
    stage = rating_inverse(rating, daily_flow.values)
    return pd.Series(stage, index=daily_flow.index, name="stage")


def build_observations(
    spline: SplineModel,
    daily_stage: pd.Series,
    measurements: Optional[pd.DataFrame] = None,
    imputed_stage: Optional[pd.Series] = None,
    dates: Optional[pd.DatetimeIndex] = None,
) -> ObservationSet:
    """Build daily observation equations from a fitted rating.

    Parameters
    ----------
    spline : SplineModel
        Fitted rating smoother supplying the design rows.
    daily_stage : pd.Series
        Daily (mean) stage indexed by date; NaN where unknown. A
        hypothetical future stage sequence is passed the same way.
    measurements : pd.DataFrame, optional
        Cleaned measurements (see :func:`clean_measurements`); multiple
        measurements on a day are combined by inverse-variance weighting.
    imputed_stage : pd.Series, optional
        Stage to use on days where ``daily_stage`` is missing.
    dates : pd.DatetimeIndex, optional
        Calendar to use; defaults to every day spanned by the inputs.

    Returns
    -------
    ObservationSet
    """
    stage = _daily_series(daily_stage, "daily_stage")
    imputed = _daily_series(imputed_stage, "imputed_stage")
    by_day = measurements_by_day(measurements) if measurements is not None else None

    if dates is None:
        starts = [stage.index.min()]
        ends = [stage.index.max()]
        if by_day is not None and len(by_day):
            starts.append(by_day.index.min())
            ends.append(by_day.index.max())
        dates = pd.date_range(min(starts), max(ends), freq="D")
    else:
        dates = pd.DatetimeIndex(dates).normalize()

    stage_values = stage.reindex(dates).values.astype(float)
    source = np.where(np.isfinite(stage_values), STAGE_OBSERVED, STAGE_MISSING).astype(object)
    if imputed is not None:
        fill = imputed.reindex(dates).values.astype(float)
        use = ~np.isfinite(stage_values) & np.isfinite(fill)
        stage_values = np.where(use, fill, stage_values)
        source[use] = STAGE_IMPUTED

    design = spline.design_matrix(stage_values).T[np.newaxis, :, :]

    lflow = np.full(len(dates), np.nan)
    obs_var = np.full(len(dates), np.inf)
    if by_day is not None and len(by_day):
        aligned = by_day.reindex(dates)
        lflow = aligned["lflow"].values.astype(float)
        obs_var = np.where(
            np.isfinite(lflow), aligned["meas_lflow_stderr"].values.astype(float) ** 2, np.inf
        )
        outside = len(by_day) - int(np.isfinite(lflow).sum())
        if outside:
            logger.info("%d measurement days fall outside the observation window", outside)

    no_design = np.isfinite(lflow) & ~np.all(np.isfinite(design[0]), axis=0)
    if no_design.any():
        logger.warning(
            "Excluding %d measurements on days without a stage value from the likelihood",
            int(no_design.sum()),
        )
        obs_var = np.where(no_design, np.inf, obs_var)

    obs = ObservationSet(
        dates=dates,
        design=design,
        lflow=lflow,
        obs_var=obs_var,
        stage=stage_values,
        stage_source=source,
    )
    logger.info(
        "Built %d daily observation rows (%d measured, %d imputed stage, %d missing stage)",
        obs.T,
        int(obs.observed.sum()),
        int(np.sum(source == STAGE_IMPUTED)),
        int(np.sum(source == STAGE_MISSING)),
    )
    return obs


def recency_weights(times, scale: float, reference_time=None) -> np.ndarray:
    """Half-Cauchy kernel of days elapsed since the most recent measurement.

    ``w = 1 / (1 + (dt / scale)^2)``, equal to 1 for the latest record.
    """
    if scale <= 0:
        raise InputContractViolation("Recency scale must be positive", scale=scale)
    times = pd.to_datetime(pd.Series(times))
    reference = pd.Timestamp(reference_time) if reference_time is not None else times.max()
    dt = (reference - times).dt.total_seconds().values / 86400.0
    dt = np.clip(dt, 0.0, None)
    return 1.0 / (1.0 + (dt / scale) ** 2)


@dataclass(frozen=True, eq=False)
class RecencyFit:
    """Result of optimizing the recency-weighting scale."""

    scale: float
    sse: float
    model: SplineModel
    weights: np.ndarray
    evaluations: int


def optimize_recency_scale(
    cleaned: pd.DataFrame,
    reference_rating: pd.DataFrame,
    smoother: Optional[RatingSmoother] = None,
    bounds: Tuple[float, float] = (1.0, 3650.0),
    reference_time=None,
    xatol: float = 1.0,
) -> RecencyFit:
    """Choose the recency scale that best reproduces a reference rating.

    Each candidate scale weights the measurements, refits the smoother, and
    scores the sum of squared discharge errors against the reference table
    on its own stage grid (restricted to the measured stage range). The
    scale is found by bounded Brent minimization.

    Parameters
    ----------
    cleaned : pd.DataFrame
        Cleaned measurements.
    reference_rating : pd.DataFrame
        Rating table with ``stage`` and ``discharge``.
    smoother : RatingSmoother, optional
        Smoother to refit (default configuration if None).
    bounds : tuple of float
        Search interval for the scale, in days.
    """
    smoother = smoother or RatingSmoother()
    lo, hi = cleaned[COL_STAGE].min(), cleaned[COL_STAGE].max()
    grid = reference_rating[(reference_rating["stage"] >= lo) & (reference_rating["stage"] <= hi)]
    if len(grid) < 2:
        raise InputContractViolation(
            "Reference rating does not overlap the measured stage range", stage_min=lo, stage_max=hi
        )
    target = rating_lookup(reference_rating, grid["stage"].values)

    def sse(scale: float) -> float:
        weights = recency_weights(cleaned[COL_DATETIME], scale, reference_time)
        model = smoother.fit(cleaned[COL_STAGE].values, cleaned[COL_DISCHARGE].values, weights=weights)
        pred = model.predict_flow(grid["stage"].values)
        return float(np.sum((pred - target) ** 2))

    res = minimize_scalar(sse, bounds=bounds, method="bounded", options={"xatol": xatol})
    scale = float(res.x)
    weights = recency_weights(cleaned[COL_DATETIME], scale, reference_time)
    model = smoother.fit(
        cleaned[COL_STAGE].values, cleaned[COL_DISCHARGE].values, weights=weights, label="recency"
    )
    logger.info("Optimal recency scale %.1f days (SSE %.4g, %d evaluations)", scale, res.fun, res.nfev)
    return RecencyFit(scale=scale, sse=float(res.fun), model=model, weights=weights, evaluations=int(res.nfev))
