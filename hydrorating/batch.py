"""
hydrorating.batch - Per-rating-period smoother fits
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .config import SmootherConfig
from .core import COL_DATETIME, COL_DISCHARGE, COL_STAGE
from .exceptions import DataInsufficientError, HydroRatingError
from .ratings import RatingCatalog, RatingPeriod, rating_lookup
from .smoother import RatingSmoother, SplineModel

logger = logging.getLogger(__name__)


def _fit_period(
    catalog: RatingCatalog,
    period: RatingPeriod,
    smoother: RatingSmoother,
    measurements: Optional[pd.DataFrame],
) -> SplineModel:
    if measurements is None:
        table = catalog.table(period.rating_id)
        return smoother.fit(table["stage"].values, table["discharge"].values, label=period.rating_id)

    when = pd.to_datetime(measurements[COL_DATETIME])
    in_period = measurements[(when >= period.start_date) & (when <= period.end_date)]
    if in_period.empty:
        raise DataInsufficientError("No measurements within rating period", rating_id=period.rating_id)
    return smoother.fit(
        in_period[COL_STAGE].values, in_period[COL_DISCHARGE].values, label=period.rating_id
    )


def fit_rating_periods(
    catalog: RatingCatalog,
    smoother_config: Optional[SmootherConfig] = None,
    measurements: Optional[pd.DataFrame] = None,
    workers: int = 1,
) -> Tuple[Dict[str, SplineModel], Dict[str, str]]:
    """
    Fit one rating smoother per historical rating period.

    Parameters
    ----------
    catalog : RatingCatalog
        Ratings and their validity periods
    smoother_config : SmootherConfig, optional
        Smoother options shared by every fit
    measurements : pd.DataFrame, optional
        Cleaned measurements; when given, each period is fitted to the
        measurements made while it was in effect instead of its table points
    workers : int
        Number of parallel workers (default: 1)

    Returns
    -------
    tuple
        (models, errors) where:
        - models: dict mapping rating_id to SplineModel
        - errors: dict mapping rating_id to error message
    """
    smoother = RatingSmoother(smoother_config)
    models: Dict[str, SplineModel] = {}
    errors: Dict[str, str] = {}

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        future_to_id = {
            executor.submit(_fit_period, catalog, period, smoother, measurements): period.rating_id
            for period in catalog.periods()
        }

        for future in as_completed(future_to_id):
            rating_id = future_to_id[future]
            try:
                models[rating_id] = future.result()
            except (HydroRatingError, OSError) as e:
                logger.warning("Rating %s could not be fitted: %s", rating_id, e)
                errors[rating_id] = str(e)

    logger.info("Fitted %d of %d rating periods", len(models), len(catalog))
    return models, errors


def rating_period_table(
    models: Dict[str, SplineModel],
    catalog: Optional[RatingCatalog] = None,
) -> pd.DataFrame:
    """
    Summary table of per-period fits.

    Parameters
    ----------
    models : dict
        Output of fit_rating_periods
    catalog : RatingCatalog, optional
        Adds validity dates and the largest percent difference between each
        fit and its published table

    Returns
    -------
    pd.DataFrame
        One row per rating id, ordered by start date when a catalog is given
    """
    rows = []
    for rating_id, model in models.items():
        pe = model.percent_error
        row = {
            "rating_id": rating_id,
            "n": model.n,
            "k": model.k,
            "lambda": model.lam,
            "edof": model.edof,
            "gcv": model.score,
            "mean_abs_pct_error": float(np.mean(np.abs(pe))),
            "max_abs_pct_error": float(np.max(np.abs(pe))),
            "monotonic_breaks": len(model.monotonicity_violations()),
        }
        if catalog is not None:
            period = catalog.period(rating_id)
            table = catalog.table(rating_id)
            published = rating_lookup(table, table["stage"].values)
            # zero-flow rows (gage height of zero flow) have no relative error
            flowing = published > 0
            fitted = model.predict_flow(table["stage"].values[flowing])
            pct = np.abs(fitted - published[flowing]) / published[flowing] * 100.0
            row["start_date"] = period.start_date
            row["end_date"] = period.end_date
            row["max_pct_vs_published"] = float(np.max(pct)) if pct.size else np.nan
        rows.append(row)

    df = pd.DataFrame(rows)
    if catalog is not None and len(df):
        df = df.sort_values("start_date")
    return df.reset_index(drop=True)
