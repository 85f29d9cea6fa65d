"""
hydrorating.usgs - USGS NWIS data retrieval
"""

from __future__ import annotations

import logging
from io import StringIO
from typing import ClassVar, Dict, List, Optional, Tuple

import pandas as pd
import requests

from .core import COL_ACCURACY, COL_CONTROL, COL_DATETIME, COL_DISCHARGE, COL_STAGE
from .exceptions import DataInsufficientError

logger = logging.getLogger(__name__)

# NWIS field-measurement columns mapped to the canonical measurement table
MEASUREMENT_COLUMNS = {
    "measurement_dt": COL_DATETIME,
    "gage_height_va": COL_STAGE,
    "discharge_va": COL_DISCHARGE,
    "measured_rating_diff": COL_ACCURACY,
    "control_type_cd": COL_CONTROL,
}


def read_rdb(text: str) -> pd.DataFrame:
    """Parse NWIS RDB text (comment lines, header, type row, data)."""
    lines = [ln for ln in text.split("\n") if ln.strip() and not ln.startswith("#")]
    if len(lines) < 3:
        return pd.DataFrame()
    return pd.read_csv(StringIO("\n".join(lines)), sep="\t", skiprows=[1], dtype=str)


def daily_mean_stage(unit_stage: pd.Series) -> pd.Series:
    """Calendar-day mean of a unit-value stage series."""
    daily = unit_stage.resample("D").mean()
    daily.name = COL_STAGE
    daily.index.name = "date"
    return daily


class NWISSite:
    """Retrieve rating-analysis inputs for one USGS site."""

    BASE_URL_DAILY: ClassVar[str] = "https://waterservices.usgs.gov/nwis/dv/"
    BASE_URL_UNIT: ClassVar[str] = "https://waterservices.usgs.gov/nwis/iv/"
    BASE_URL_SITE: ClassVar[str] = "https://waterservices.usgs.gov/nwis/site/"
    BASE_URL_MEASUREMENTS: ClassVar[str] = "https://waterdata.usgs.gov/nwis/measurements"

    def __init__(self, site_no: str, timeout: float = 30.0):
        self._site_no = str(site_no).zfill(8)
        self.timeout = timeout
        self._site_name: Optional[str] = None
        self._drainage_area: Optional[float] = None
        self._latitude: Optional[float] = None
        self._longitude: Optional[float] = None

    @property
    def site_no(self) -> str:
        return self._site_no

    @property
    def site_name(self) -> Optional[str]:
        return self._site_name

    @property
    def drainage_area(self) -> Optional[float]:
        return self._drainage_area

    @property
    def coordinates(self) -> Optional[Tuple[float, float]]:
        if self._latitude is None or self._longitude is None:
            return None
        return (self._latitude, self._longitude)

    def _get(self, url: str, params: Dict[str, str]) -> str:
        logger.debug("GET %s %s", url, params)
        response = requests.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.text

    def fetch_site_info(self) -> Dict[str, Optional[object]]:
        """Fetch site name, coordinates and drainage area.

        Network failures are logged and leave the attributes unset.
        """
        params = {"format": "rdb", "sites": self._site_no, "siteOutput": "expanded"}
        try:
            df = read_rdb(self._get(self.BASE_URL_SITE, params))
        except requests.RequestException as exc:
            logger.warning("Site service request failed for %s: %s", self._site_no, exc)
            df = pd.DataFrame()

        if len(df):
            row = df.iloc[0]
            if "station_nm" in df.columns:
                self._site_name = str(row["station_nm"])
            self._drainage_area = _to_float(row.get("drain_area_va"))
            self._latitude = _to_float(row.get("dec_lat_va"))
            self._longitude = _to_float(row.get("dec_long_va"))

        return {
            "site_no": self._site_no,
            "site_name": self._site_name,
            "drainage_area_sqmi": self._drainage_area,
            "latitude": self._latitude,
            "longitude": self._longitude,
        }

    def download_measurements(self, start_date: str = None, end_date: str = None) -> pd.DataFrame:
        """Download field measurements with canonical column names.

        Returns
        -------
        pd.DataFrame
            ``datetime, stage, discharge, accuracy, control`` ready for
            :func:`hydrorating.measurements.clean_measurements`.
        """
        params = {"site_no": self._site_no, "agency_cd": "USGS", "format": "rdb_expanded"}
        df = read_rdb(self._get(self.BASE_URL_MEASUREMENTS, params))
        if df.empty:
            raise DataInsufficientError("No field measurements found", site_no=self._site_no)

        missing = [c for c in MEASUREMENT_COLUMNS if c not in df.columns and c != "control_type_cd"]
        if missing:
            raise DataInsufficientError(
                "Measurement service response lacks expected columns", site_no=self._site_no, missing=missing
            )
        df = df.rename(columns=MEASUREMENT_COLUMNS)
        if COL_CONTROL not in df.columns:
            df[COL_CONTROL] = None

        df[COL_DATETIME] = pd.to_datetime(df[COL_DATETIME], errors="coerce")
        df[COL_STAGE] = pd.to_numeric(df[COL_STAGE], errors="coerce")
        df[COL_DISCHARGE] = pd.to_numeric(df[COL_DISCHARGE], errors="coerce")
        df[COL_ACCURACY] = df[COL_ACCURACY].fillna("Unspecified")
        df = df[[COL_DATETIME, COL_STAGE, COL_DISCHARGE, COL_ACCURACY, COL_CONTROL]]
        df = df.dropna(subset=[COL_DATETIME])

        if start_date:
            df = df[df[COL_DATETIME] >= pd.Timestamp(start_date)]
        if end_date:
            df = df[df[COL_DATETIME] < pd.Timestamp(end_date) + pd.Timedelta(days=1)]

        logger.info("Downloaded %d field measurements for %s", len(df), self._site_no)
        return df.reset_index(drop=True)

    def _download_daily(self, parameter_cd: str, name: str, start_date, end_date) -> pd.Series:
        params = {
            "format": "rdb",
            "sites": self._site_no,
            "parameterCd": parameter_cd,
            "statCd": "00003",
        }
        if start_date:
            params["startDT"] = start_date
        if end_date:
            params["endDT"] = end_date

        df = read_rdb(self._get(self.BASE_URL_DAILY, params))
        if df.empty:
            raise DataInsufficientError(f"No daily {name} data found", site_no=self._site_no)

        value_col = [c for c in df.columns if parameter_cd in c and not c.endswith("_cd")]
        if not value_col:
            raise DataInsufficientError(f"Daily {name} column not found", site_no=self._site_no)

        out = pd.Series(
            pd.to_numeric(df[value_col[0]], errors="coerce").values,
            index=pd.DatetimeIndex(pd.to_datetime(df["datetime"]), name="date"),
            name=name,
        )
        logger.info("Downloaded %d daily %s values for %s", out.notna().sum(), name, self._site_no)
        return out

    def download_daily_flow(self, start_date: str = None, end_date: str = None) -> pd.Series:
        """Published mean daily discharge (parameter 00060)."""
        return self._download_daily("00060", COL_DISCHARGE, start_date, end_date)

    def download_daily_stage(self, start_date: str = None, end_date: str = None) -> pd.Series:
        """Published mean daily gage height (parameter 00065)."""
        return self._download_daily("00065", COL_STAGE, start_date, end_date)

    def download_unit_stage(self, start_date: str = None, end_date: str = None) -> pd.Series:
        """Continuous (instantaneous) gage height values."""
        params = {"format": "rdb", "sites": self._site_no, "parameterCd": "00065"}
        if start_date:
            params["startDT"] = start_date
        if end_date:
            params["endDT"] = end_date

        df = read_rdb(self._get(self.BASE_URL_UNIT, params))
        if df.empty:
            raise DataInsufficientError("No unit-value stage data found", site_no=self._site_no)

        value_col = [c for c in df.columns if "00065" in c and not c.endswith("_cd")]
        if not value_col:
            raise DataInsufficientError("Unit-value stage column not found", site_no=self._site_no)

        return pd.Series(
            pd.to_numeric(df[value_col[0]], errors="coerce").values,
            index=pd.DatetimeIndex(pd.to_datetime(df["datetime"]), name=COL_DATETIME),
            name=COL_STAGE,
        )

    def __repr__(self) -> str:
        return f"NWISSite(site_no='{self._site_no}', name='{self._site_name}')"


def _to_float(value) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return None if pd.isna(out) else out


def fetch_measurements_batch(
    sites: List[str], workers: int = 6
) -> Tuple[Dict[str, pd.DataFrame], Dict[str, str]]:
    """
    Fetch field measurements for multiple USGS sites in parallel.

    Parameters
    ----------
    sites : list of str
        USGS site numbers
    workers : int
        Number of parallel workers (default: 6)

    Returns
    -------
    tuple
        (successful_results, errors) where:
        - successful_results: dict mapping site_no to measurement table
        - errors: dict mapping site_no to error message
    """
    from concurrent.futures import ThreadPoolExecutor, as_completed

    results: Dict[str, pd.DataFrame] = {}
    errors: Dict[str, str] = {}

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_site = {
            executor.submit(NWISSite(site).download_measurements): site for site in sites
        }

        for future in as_completed(future_to_site):
            site = future_to_site[future]
            try:
                results[site] = future.result()
            except (requests.RequestException, DataInsufficientError) as e:
                logger.warning("Measurement download failed for %s: %s", site, e)
                errors[site] = str(e)

    return results, errors
