"""
hydrorating.measurements - Field measurement ingestion and cleaning

Normalizes raw stage/discharge measurement records into a log10 table with
numeric standard errors and a unique, ordered stage key.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

import numpy as np
import pandas as pd

from .config import IngestConfig
from .core import (
    ACCURACY_LABELS,
    COL_ACCURACY,
    COL_CONTROL,
    COL_DATETIME,
    COL_DISCHARGE,
    COL_STAGE,
    CONTROL_LABELS,
    DEFAULT_ERROR_FRACTIONS,
    AccuracyClass,
    ControlSeverity,
)
from .exceptions import DataInsufficientError, InputContractViolation

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (COL_DATETIME, COL_STAGE, COL_DISCHARGE, COL_ACCURACY)

# Attempts at drawing a jitter that leaves every key unique
_MAX_JITTER_DRAWS = 10


def accuracy_error_fraction(
    code, poor_error: float = 0.15, unspecified_error: Optional[float] = None
) -> float:
    """Fractional discharge error for an accuracy code.

    Parameters
    ----------
    code : str or AccuracyClass
        Accuracy code ('Excellent', 'G', ...).
    poor_error : float
        Value used for Poor measurements.
    unspecified_error : float, optional
        Value used for Unspecified measurements; None means they have no
        defined error and a ValueError is raised.
    """
    acc = code if isinstance(code, AccuracyClass) else AccuracyClass.parse(code)
    if acc is AccuracyClass.POOR:
        return float(poor_error)
    if acc is AccuracyClass.UNSPECIFIED:
        if unspecified_error is None:
            raise ValueError("Unspecified accuracy has no error fraction")
        return float(unspecified_error)
    return DEFAULT_ERROR_FRACTIONS[acc]


def log_flow_error(flow, fraction):
    """Standard error of log10 discharge implied by a fractional error.

    Half of the log span produced by applying the fractional error on one
    side: ``(log10(flow * (1 + e)) - log10(flow)) / 2``.
    """
    flow = np.asarray(flow, dtype=float)
    fraction = np.asarray(fraction, dtype=float)
    return (np.log10(flow * (1 + fraction)) - np.log10(flow)) / 2


def log_stage_rounding_error(stage, rounding: float = 0.01):
    """Standard error of log10 stage from recording precision.

    The rounding error is uniform over one rounding unit, so its standard
    deviation is ``rounding / sqrt(12)`` feet; the delta method carries it to
    log10 space.
    """
    stage = np.asarray(stage, dtype=float)
    return (rounding / np.sqrt(12.0)) / (stage * np.log(10.0))


def control_severity(code) -> Optional[str]:
    """Severity label ('clear' .. 'heavy') for a control code, or None."""
    if code is None or (isinstance(code, float) and np.isnan(code)):
        return None
    level = ControlSeverity.from_control_code(code)
    return level.label if level is not None else None


def jitter_log_stage(lstage, scale: float = 5e-6, seed: Optional[int] = None) -> np.ndarray:
    """Add a seeded uniform jitter in [-scale, scale] to break stage ties.

    The result is only a sort key; it is never reported as a stage.

    Raises
    ------
    InputContractViolation
        If unique keys cannot be produced within a bounded number of draws.
    """
    lstage = np.asarray(lstage, dtype=float)
    rng = np.random.default_rng(seed)
    for _ in range(_MAX_JITTER_DRAWS):
        keyed = lstage + rng.uniform(-scale, scale, size=lstage.shape)
        if np.unique(keyed).size == keyed.size:
            return keyed
    raise InputContractViolation("Could not produce unique jittered stage keys", n=lstage.size)


def _parse_accuracy(values: pd.Series) -> pd.Series:
    parsed = []
    for value in values:
        if value is None or (isinstance(value, float) and np.isnan(value)):
            parsed.append(AccuracyClass.UNSPECIFIED)
            continue
        try:
            parsed.append(AccuracyClass.parse(value))
        except ValueError:
            raise InputContractViolation("Unknown accuracy code", code=value) from None
    return pd.Series(parsed, index=values.index, dtype=object)


def clean_measurements(
    raw: pd.DataFrame,
    config: Optional[IngestConfig] = None,
    columns: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    """Clean raw field measurements.

    Parameters
    ----------
    raw : pd.DataFrame
        One row per measurement with ``datetime``, ``stage`` (ft),
        ``discharge`` and ``accuracy``; ``control`` is optional.
    config : IngestConfig, optional
        Cleaning options.
    columns : mapping, optional
        Renames source columns to the canonical names, e.g.
        ``{"gage_height_va": "stage"}``.

    Returns
    -------
    pd.DataFrame
        New table sorted by the jittered log-stage key with columns
        ``datetime, stage, discharge, accuracy, error_fraction, control,
        control_severity, lstage, lflow, meas_lflow_stderr,
        meas_lstage_stderr, lstage_key``.

    Raises
    ------
    InputContractViolation
        On missing columns, unknown accuracy codes, or non-positive
        stage/discharge (unless ``config.drop_nonpositive``).
    DataInsufficientError
        If no record survives cleaning.
    """
    config = config or IngestConfig()
    df = raw.rename(columns=dict(columns)) if columns else raw.copy()

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise InputContractViolation("Measurement table is missing columns", missing=missing)
    if COL_CONTROL not in df.columns:
        df[COL_CONTROL] = None

    df = df[[COL_DATETIME, COL_STAGE, COL_DISCHARGE, COL_ACCURACY, COL_CONTROL]].copy()
    df[COL_DATETIME] = pd.to_datetime(df[COL_DATETIME])
    df[COL_STAGE] = pd.to_numeric(df[COL_STAGE], errors="coerce")
    df[COL_DISCHARGE] = pd.to_numeric(df[COL_DISCHARGE], errors="coerce")

    n_raw = len(df)
    df = df.dropna(subset=[COL_STAGE, COL_DISCHARGE])
    n_missing = n_raw - len(df)

    nonpositive = (df[COL_STAGE] <= 0) | (df[COL_DISCHARGE] <= 0)
    if nonpositive.any():
        if not config.drop_nonpositive:
            raise InputContractViolation(
                "Non-positive stage or discharge cannot be log-transformed",
                n_records=int(nonpositive.sum()),
            )
        logger.warning("Dropping %d non-positive measurements", int(nonpositive.sum()))
        df = df[~nonpositive].copy()

    acc = _parse_accuracy(df[COL_ACCURACY])
    unspecified = acc == AccuracyClass.UNSPECIFIED
    if not config.keep_unspecified:
        df = df[~unspecified].copy()
        acc = acc[~unspecified]
    n_unspecified = int(unspecified.sum()) if not config.keep_unspecified else 0

    if df.empty:
        raise DataInsufficientError("No usable measurements after cleaning", n_raw=n_raw)

    fractions = acc.map(
        lambda a: accuracy_error_fraction(a, config.poor_error, config.unspecified_error)
    ).astype(float)

    labels = list(ACCURACY_LABELS if config.keep_unspecified else ACCURACY_LABELS[:-1])
    df[COL_ACCURACY] = pd.Categorical(
        [a.label for a in acc], categories=labels, ordered=True
    )
    df["error_fraction"] = fractions.values
    df["control_severity"] = pd.Categorical(
        [control_severity(c) for c in df[COL_CONTROL]], categories=list(CONTROL_LABELS), ordered=True
    )

    df["lstage"] = np.log10(df[COL_STAGE].values)
    df["lflow"] = np.log10(df[COL_DISCHARGE].values)
    df["meas_lflow_stderr"] = log_flow_error(df[COL_DISCHARGE].values, fractions.values)
    df["meas_lstage_stderr"] = log_stage_rounding_error(df[COL_STAGE].values, config.stage_rounding)
    df["lstage_key"] = jitter_log_stage(df["lstage"].values, config.jitter, config.seed)

    df = df.sort_values("lstage_key").reset_index(drop=True)

    logger.info(
        "Cleaned %d of %d measurements (%d missing values, %d unspecified accuracy dropped)",
        len(df),
        n_raw,
        n_missing,
        n_unspecified,
    )
    return df


def measurements_by_day(cleaned: pd.DataFrame) -> pd.DataFrame:
    """Collapse measurements to one inverse-variance weighted value per day.

    Returns
    -------
    pd.DataFrame
        Indexed by normalized date with ``lflow``, ``meas_lflow_stderr``
        and ``n_measurements``.
    """
    if cleaned.empty:
        return pd.DataFrame(columns=["lflow", "meas_lflow_stderr", "n_measurements"])

    day = pd.to_datetime(cleaned[COL_DATETIME]).dt.normalize()
    precision = 1.0 / cleaned["meas_lflow_stderr"].values ** 2
    work = pd.DataFrame(
        {
            "date": day.values,
            "wy": precision * cleaned["lflow"].values,
            "w": precision,
        }
    )
    grouped = work.groupby("date")
    out = pd.DataFrame(
        {
            "lflow": grouped["wy"].sum() / grouped["w"].sum(),
            "meas_lflow_stderr": np.sqrt(1.0 / grouped["w"].sum()),
            "n_measurements": grouped.size(),
        }
    )
    out.index.name = "date"
    return out


def accuracy_counts(cleaned: pd.DataFrame) -> Dict[str, int]:
    """Number of cleaned records per accuracy class."""
    counts = cleaned[COL_ACCURACY].value_counts(sort=False)
    return {str(k): int(v) for k, v in counts.items()}
