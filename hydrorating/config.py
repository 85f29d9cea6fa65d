"""
Analysis configuration.

Plain dataclasses describing one analysis run, loadable from JSON. The
``HYDRORATING_CONFIG`` environment variable names a default configuration
file when no path is given.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .core import (
    CovarianceStructure,
    EstimationMethod,
    LikelihoodKind,
    SigmaPriorFamily,
    parse_enum,
)
from .exceptions import InputContractViolation

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "HYDRORATING_CONFIG"


@dataclass(frozen=True)
class IngestConfig:
    """Measurement ingestion and cleaning options.

    Parameters
    ----------
    seed : int
        Seed for the tie-breaking stage jitter.
    jitter : float
        Half-width of the uniform jitter added to log10 stage.
    keep_unspecified : bool
        Retain records whose accuracy code is ``Unspecified``.
    poor_error : float
        Fractional error for ``Poor`` measurements (supersedes 0.15).
    unspecified_error : float
        Fractional error for retained ``Unspecified`` measurements.
    stage_rounding : float
        Stage recording precision in feet.
    drop_nonpositive : bool
        Drop non-positive stage/discharge records instead of raising.
    """

    seed: int = 20240601
    jitter: float = 5e-6
    keep_unspecified: bool = False
    poor_error: float = 0.15
    unspecified_error: float = 0.08
    stage_rounding: float = 0.01
    drop_nonpositive: bool = False


@dataclass(frozen=True)
class SmootherConfig:
    """Penalized spline (GAM) options.

    Parameters
    ----------
    n_splines : int
        Basis dimension k.
    spline_order : int
        B-spline order (3 = cubic).
    log_space : bool
        Fit log10 discharge on log10 stage instead of raw values.
    lam_grid : tuple of float
        Smoothing penalties searched.
    objective : str
        Smoothing selection criterion passed to pygam ('GCV' or 'UBRE').
    min_points_per_basis : float
        Unique stage values required per basis function.
    correct_for_smoothing : bool
        Add the smoothing-parameter uncertainty term to the coefficient covariance.
    """

    n_splines: int = 10
    spline_order: int = 3
    log_space: bool = True
    lam_grid: Tuple[float, ...] = tuple(np.logspace(-3, 3, 13).tolist())
    objective: str = "GCV"
    min_points_per_basis: float = 3.0
    correct_for_smoothing: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "lam_grid", _validate_lam_grid(self.lam_grid))
        object.__setattr__(self, "objective", self.objective.upper())
        if self.n_splines <= self.spline_order:
            raise InputContractViolation(
                "n_splines must exceed spline_order",
                n_splines=self.n_splines,
                spline_order=self.spline_order,
            )


@dataclass(frozen=True)
class KalmanConfig:
    """Dynamic state estimator options."""

    structure: CovarianceStructure = CovarianceStructure.DIAGONAL_EQUAL
    start_scale: float = 1e-4
    iterations_per_pass: int = 50
    max_passes: int = 20
    tol: float = 1e-3
    decrease_tol: float = 1e-2
    estimate_obs_variance: bool = False
    initial_cov_scale: float = 1.0
    alpha: float = 0.05

    def __post_init__(self) -> None:
        object.__setattr__(self, "structure", parse_enum(CovarianceStructure, self.structure))


@dataclass(frozen=True)
class BayesConfig:
    """Bayesian uncertainty propagation options."""

    method: EstimationMethod = EstimationMethod.LAPLACE
    likelihood: LikelihoodKind = LikelihoodKind.BASIC
    sigma_prior: SigmaPriorFamily = SigmaPriorFamily.GAMMA
    sigma_prior_params: Tuple[float, ...] = ()
    center_on_gam: bool = True
    weight_prior_sd: float = 1.0
    draws: int = 1000
    tune: int = 1000
    chains: int = 4
    cores: int = 1
    target_accept: float = 0.9
    r_hat_max: float = 1.05
    ess_min: float = 100.0
    max_divergences: int = 0
    hdi_prob: float = 0.9
    seed: int = 20240601

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", parse_enum(EstimationMethod, self.method))
        object.__setattr__(self, "likelihood", parse_enum(LikelihoodKind, self.likelihood))
        object.__setattr__(self, "sigma_prior", parse_enum(SigmaPriorFamily, self.sigma_prior))
        object.__setattr__(self, "sigma_prior_params", tuple(self.sigma_prior_params))
        if self.method is EstimationMethod.NUTS and self.chains < 2:
            raise InputContractViolation("NUTS sampling requires at least 2 chains", chains=self.chains)


@dataclass(frozen=True)
class AnalysisConfig:
    """Configuration of one site analysis.

    Parameters
    ----------
    site_no : str or None
        USGS site number.
    start_date, end_date : str or None
        Analysis window (inclusive, ISO dates).
    rating_catalog : Path or None
        CSV catalog of historical ratings (see :class:`hydrorating.ratings.RatingCatalog`).
    base_rating_id : str or None
        Catalog rating used for stage imputation and as the reference curve.
    output_dir : Path
        Directory for CSV outputs.
    run_kalman, run_bayes : bool
        Which downstream branches of the pipeline to run.
    """

    site_no: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    rating_catalog: Optional[Path] = None
    base_rating_id: Optional[str] = None
    output_dir: Path = Path("./output")
    run_kalman: bool = True
    run_bayes: bool = True
    ingest: IngestConfig = field(default_factory=IngestConfig)
    smoother: SmootherConfig = field(default_factory=SmootherConfig)
    kalman: KalmanConfig = field(default_factory=KalmanConfig)
    bayes: BayesConfig = field(default_factory=BayesConfig)

    def __post_init__(self) -> None:
        if self.site_no is not None:
            object.__setattr__(self, "site_no", str(self.site_no).zfill(8))
        if self.rating_catalog is not None:
            object.__setattr__(self, "rating_catalog", Path(self.rating_catalog))
        object.__setattr__(self, "output_dir", Path(self.output_dir))

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation (enums by name, paths as strings)."""

        def _plain(value):
            if isinstance(value, dict):
                return {k: _plain(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [_plain(v) for v in value]
            if isinstance(value, Path):
                return str(value)
            if isinstance(value, Enum):
                return value.name.lower()
            return value

        return _plain(asdict(self))


_SECTIONS = {
    "ingest": IngestConfig,
    "smoother": SmootherConfig,
    "kalman": KalmanConfig,
    "bayes": BayesConfig,
}


def _build(cls, data: Dict[str, Any], where: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InputContractViolation(f"Unknown configuration keys in {where}: {', '.join(unknown)}")
    kwargs = dict(data)
    for key in ("lam_grid", "sigma_prior_params"):
        if key in kwargs and kwargs[key] is not None:
            kwargs[key] = tuple(float(v) for v in kwargs[key])
    return cls(**kwargs)


def config_from_dict(data: Dict[str, Any]) -> AnalysisConfig:
    """Build an :class:`AnalysisConfig` from a nested mapping."""
    top = dict(data)
    sections = {}
    for name, cls in _SECTIONS.items():
        sections[name] = _build(cls, top.pop(name, {}) or {}, name)
    return _build(AnalysisConfig, {**top, **sections}, "analysis")


def load_config(path: Optional[Path] = None, **overrides: Any) -> AnalysisConfig:
    """Load analysis configuration.

    Searches in order:
    1. ``path`` argument (if provided)
    2. ``HYDRORATING_CONFIG`` environment variable
    3. Built-in defaults

    Parameters
    ----------
    path : Path or None
        JSON configuration file.
    **overrides
        Top-level keys that replace values read from the file.

    Returns
    -------
    AnalysisConfig
    """
    data: Dict[str, Any] = {}
    if path is None and os.environ.get(CONFIG_ENV_VAR):
        path = Path(os.environ[CONFIG_ENV_VAR])
        logger.info("Configuration taken from %s: %s", CONFIG_ENV_VAR, path)

    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        with open(path, "r", encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except json.JSONDecodeError as exc:
                raise InputContractViolation(f"Configuration file is not valid JSON: {exc}", path=str(path)) from exc
        logger.info("Loaded configuration from %s", path)

    data.update({k: v for k, v in overrides.items() if v is not None})
    return config_from_dict(data)


def save_config(config: AnalysisConfig, path: Path) -> Path:
    """Write configuration as JSON and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config.to_dict(), fh, indent=2)
    return path


def sigma_prior_from_config(bayes: BayesConfig):
    """Build the :class:`hydrorating.bayes.SigmaPrior` selected by ``bayes``."""
    from .bayes import SigmaPrior

    return SigmaPrior.from_family(bayes.sigma_prior, *bayes.sigma_prior_params)


def _validate_lam_grid(values: Sequence[float]) -> Tuple[float, ...]:
    """Validate a smoothing-penalty grid."""
    grid = tuple(float(v) for v in values)
    if not grid or any(v <= 0 for v in grid):
        raise InputContractViolation("Smoothing penalty grid must contain positive values")
    return grid
