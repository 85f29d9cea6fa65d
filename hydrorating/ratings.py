"""
hydrorating.ratings - Historical rating tables

Reads published stage-discharge rating tables (tab- or comma-delimited,
including USGS RDB exports) and a catalog that maps rating identifiers to
their validity periods.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .exceptions import DataInsufficientError, InputContractViolation

logger = logging.getLogger(__name__)

_STAGE_ALIASES = ("stage", "indep", "gage_height", "gage_height_va", "gh", "gh_ft", "stage_ft")
_DISCHARGE_ALIASES = ("discharge", "dep", "flow", "discharge_va", "q", "q_cfs", "flow_cfs")


def _find_column(columns, aliases) -> Optional[str]:
    lookup = {str(c).strip().lower(): c for c in columns}
    for alias in aliases:
        if alias in lookup:
            return lookup[alias]
    return None


def read_rating_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a rating table into ``stage`` and ``discharge`` columns.

    Accepts tab- or comma-delimited text. Lines starting with ``#`` are
    ignored, as is an RDB type-definition row (``5s  10n ...``).

    Parameters
    ----------
    path : str or Path
        Rating table file.

    Returns
    -------
    pd.DataFrame
        Rows sorted by stage with duplicate stages removed.

    Raises
    ------
    InputContractViolation
        If stage/discharge columns cannot be identified.
    DataInsufficientError
        If fewer than two rating points remain.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as fh:
        lines = [ln.rstrip("\n") for ln in fh if ln.strip() and not ln.startswith("#")]
    if not lines:
        raise DataInsufficientError("Rating table is empty", path=str(path))

    sep = "\t" if "\t" in lines[0] else ","
    # RDB files carry a column-type row right after the header
    if len(lines) > 1 and all(
        tok.strip()[:-1].isdigit() and tok.strip()[-1:].lower() in ("s", "n", "d")
        for tok in lines[1].split(sep)
        if tok.strip()
    ):
        lines = [lines[0]] + lines[2:]

    df = pd.read_csv(StringIO("\n".join(lines)), sep=sep)
    return rating_from_frame(df, source=str(path))


def rating_from_frame(df: pd.DataFrame, source: str = "") -> pd.DataFrame:
    """Normalize a table with stage/discharge-like columns to a rating table."""
    stage_col = _find_column(df.columns, _STAGE_ALIASES)
    flow_col = _find_column(df.columns, _DISCHARGE_ALIASES)
    if stage_col is None or flow_col is None:
        if df.shape[1] == 2:
            stage_col, flow_col = df.columns
        else:
            raise InputContractViolation(
                "Cannot identify stage and discharge columns", source=source, columns=list(df.columns)
            )

    out = pd.DataFrame(
        {
            "stage": pd.to_numeric(df[stage_col], errors="coerce"),
            "discharge": pd.to_numeric(df[flow_col], errors="coerce"),
        }
    ).dropna()
    out = out.drop_duplicates(subset="stage").sort_values("stage").reset_index(drop=True)
    if len(out) < 2:
        raise DataInsufficientError("Rating table has fewer than two points", source=source)
    return out


def rating_lookup(rating: pd.DataFrame, stage) -> np.ndarray:
    """Discharge for stage by linear interpolation, clamped to the table ends."""
    return np.interp(
        np.asarray(stage, dtype=float), rating["stage"].values, rating["discharge"].values
    )


def rating_inverse(rating: pd.DataFrame, discharge) -> np.ndarray:
    """Stage for discharge by linear interpolation, clamped to the table ends.

    Discharge must be non-decreasing along the table for the inverse to be
    defined; ties keep their first stage.
    """
    table = rating.sort_values("discharge").drop_duplicates(subset="discharge")
    if not np.all(np.diff(rating["discharge"].values) >= 0):
        logger.warning("Rating discharge is not monotone in stage; inverse lookup is approximate")
    discharge = np.asarray(discharge, dtype=float)
    out = np.interp(discharge, table["discharge"].values, table["stage"].values)
    return np.where(np.isfinite(discharge), out, np.nan)


@dataclass(frozen=True)
class RatingPeriod:
    """A published rating and the dates it was in effect."""

    rating_id: str
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    path: Path

    def contains(self, when) -> bool:
        when = pd.Timestamp(when)
        return self.start_date <= when <= self.end_date


class RatingCatalog:
    """Rating identifiers, validity periods and table locations.

    The catalog CSV has columns ``rating_id, start_date, end_date, path``;
    relative paths are resolved against the catalog's directory.
    """

    def __init__(self, periods: List[RatingPeriod]):
        ids = [p.rating_id for p in periods]
        if len(set(ids)) != len(ids):
            raise InputContractViolation("Duplicate rating identifiers in catalog")
        self._periods = sorted(periods, key=lambda p: p.start_date)
        self._tables: Dict[str, pd.DataFrame] = {}

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "RatingCatalog":
        path = Path(path)
        df = pd.read_csv(path, dtype={"rating_id": str})
        missing = {"rating_id", "start_date", "end_date", "path"} - set(df.columns)
        if missing:
            raise InputContractViolation("Rating catalog is missing columns", missing=sorted(missing))

        periods = []
        for _, row in df.iterrows():
            table_path = Path(row["path"])
            if not table_path.is_absolute():
                table_path = path.parent / table_path
            periods.append(
                RatingPeriod(
                    rating_id=str(row["rating_id"]),
                    start_date=pd.Timestamp(row["start_date"]),
                    end_date=pd.Timestamp(row["end_date"]),
                    path=table_path,
                )
            )
        logger.info("Loaded rating catalog with %d ratings from %s", len(periods), path)
        return cls(periods)

    def periods(self) -> List[RatingPeriod]:
        return list(self._periods)

    def period(self, rating_id: str) -> RatingPeriod:
        for p in self._periods:
            if p.rating_id == rating_id:
                return p
        raise KeyError(f"Unknown rating id: {rating_id}")

    def table(self, rating_id: str) -> pd.DataFrame:
        """Rating table for an identifier (read once, then cached)."""
        if rating_id not in self._tables:
            self._tables[rating_id] = read_rating_table(self.period(rating_id).path)
        return self._tables[rating_id].copy()

    def for_date(self, when) -> Optional[RatingPeriod]:
        """Rating in effect on a date (latest start wins on overlap)."""
        matches = [p for p in self._periods if p.contains(when)]
        return matches[-1] if matches else None

    def __len__(self) -> int:
        return len(self._periods)

    def __repr__(self) -> str:
        return f"RatingCatalog(n_ratings={len(self._periods)})"
