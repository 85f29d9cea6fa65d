"""
hydrorating - Python library for stage-discharge rating uncertainty analysis

Includes:
- Field measurement cleaning with accuracy-based standard errors
- Penalized spline (GAM) rating curves with smoothing-corrected covariance
- Daily observation equations and recency-weighted refits
- Dynamic (Kalman) rating estimation with reconstructed daily discharge
- Bayesian uncertainty propagation (Laplace approximation and NUTS)
- USGS NWIS data retrieval and historical rating catalogs
"""

from .bayes import (
    BayesModelSpec,
    PosteriorSamples,
    SigmaPrior,
    compare_sigma_priors,
    fit_laplace,
    fit_nuts,
    fit_posterior,
)
from .batch import fit_rating_periods, rating_period_table
from .config import (
    AnalysisConfig,
    BayesConfig,
    IngestConfig,
    KalmanConfig,
    SmootherConfig,
    load_config,
    save_config,
)
from .core import (
    AccuracyClass,
    ControlSeverity,
    CovarianceStructure,
    EstimationMethod,
    EstimatorState,
    LikelihoodKind,
    SigmaPriorFamily,
)
from .exceptions import (
    DataInsufficientError,
    EstimationDivergedError,
    HydroRatingError,
    InputContractViolation,
    SamplerNonConvergedError,
)
from .kalman import DynamicRatingEstimator, KalmanFit, ProcessCovariance
from .measurements import clean_measurements, measurements_by_day
from .observation import (
    ObservationSet,
    build_observations,
    impute_stage_from_discharge,
    optimize_recency_scale,
    recency_weights,
)
from .pipeline import SiteAnalysis, run_site_analysis
from .ratings import RatingCatalog, read_rating_table, rating_inverse, rating_lookup
from .smoother import RatingSmoother, SplineModel
from .usgs import NWISSite, fetch_measurements_batch


def analyze_site(
    site_no: str,
    start_date: str = None,
    end_date: str = None,
    rating_catalog: str = None,
    output_dir: str = "./output",
    **sections,
) -> SiteAnalysis:
    """
    Complete rating uncertainty analysis for a USGS site.

    Parameters
    ----------
    site_no : str
        USGS site number
    start_date, end_date : str, optional
        Analysis window (YYYY-MM-DD)
    rating_catalog : str, optional
        CSV catalog of historical ratings used for stage imputation
    output_dir : str
        Output directory
    **sections
        Configuration sections (``ingest``, ``smoother``, ``kalman``,
        ``bayes``) as dataclass instances
    """
    import matplotlib

    matplotlib.use("Agg")
    from .plots import plot_posterior_curve, plot_reconstruction, plot_rating_curve

    config = AnalysisConfig(
        site_no=site_no,
        start_date=start_date,
        end_date=end_date,
        rating_catalog=rating_catalog,
        output_dir=output_dir,
        **sections,
    )
    result = run_site_analysis(config)
    result.save()

    out = config.output_dir
    plot_rating_curve(result.spline, measurements=result.cleaned,
                      reference_rating=result.reference_rating,
                      save_path=str(out / "rating_curve.png"))
    if result.reconstruction is not None:
        plot_reconstruction(result.reconstruction, save_path=str(out / "reconstruction.png"))
    if result.posterior is not None:
        plot_posterior_curve(result.posterior, result.spline, save_path=str(out / "posterior_curve.png"))
    return result


__version__ = "0.1.0"
__author__ = "hydrorating"

__all__ = [
    # Core
    "AccuracyClass",
    "ControlSeverity",
    "CovarianceStructure",
    "EstimatorState",
    "SigmaPriorFamily",
    "LikelihoodKind",
    "EstimationMethod",
    # Errors
    "HydroRatingError",
    "DataInsufficientError",
    "InputContractViolation",
    "EstimationDivergedError",
    "SamplerNonConvergedError",
    # Configuration
    "AnalysisConfig",
    "IngestConfig",
    "SmootherConfig",
    "KalmanConfig",
    "BayesConfig",
    "load_config",
    "save_config",
    # Measurements and ratings
    "clean_measurements",
    "measurements_by_day",
    "RatingCatalog",
    "read_rating_table",
    "rating_lookup",
    "rating_inverse",
    # Smoother
    "RatingSmoother",
    "SplineModel",
    # Observations
    "ObservationSet",
    "build_observations",
    "impute_stage_from_discharge",
    "recency_weights",
    "optimize_recency_scale",
    # Kalman
    "ProcessCovariance",
    "DynamicRatingEstimator",
    "KalmanFit",
    # Bayes
    "SigmaPrior",
    "BayesModelSpec",
    "PosteriorSamples",
    "fit_laplace",
    "fit_nuts",
    "fit_posterior",
    "compare_sigma_priors",
    # Batch and data retrieval
    "fit_rating_periods",
    "rating_period_table",
    "NWISSite",
    "fetch_measurements_batch",
    # Pipeline
    "SiteAnalysis",
    "run_site_analysis",
    "analyze_site",
]
