"""
hydrorating.smoother - Penalized regression spline (GAM) rating curves

Fits a single smooth term relating (log) discharge to (log) stage with pygam
and exposes the fitted basis as a design-row function for the dynamic and
Bayesian layers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from pygam import LinearGAM, s
from scipy.special import ndtri

from .config import SmootherConfig
from .exceptions import DataInsufficientError, InputContractViolation

logger = logging.getLogger(__name__)

# Step in log(lambda) used for the smoothing-parameter correction
_LOG_LAM_STEP = 0.25


@dataclass(frozen=True, eq=False)
class SplineModel:
    """A fitted GAM rating curve.

    Stage and discharge are stored in original units; ``log_space``
    says whether the model was fitted to their log10 values. ``coef``
    and the design rows live in model space.

    Parameters
    ----------
    k : int
        Basis dimension.
    coef : np.ndarray
        Coefficient vector (k,).
    cov : np.ndarray
        Coefficient covariance conditional on the selected penalty (k, k).
    cov_corrected : np.ndarray
        Covariance including smoothing-parameter uncertainty (k, k).
    lam : float
        Selected smoothing penalty.
    objective : str
        Criterion used to select ``lam``.
    score : float
        Value of the GCV statistic at ``lam``.
    edof : float
        Effective degrees of freedom.
    scale : float
        Residual variance estimate (model space).
    log_space : bool
        True when fitted to log10 discharge on log10 stage.
    stage, discharge : np.ndarray
        Training data in original units.
    weights : np.ndarray or None
        Observation weights used in the fit.
    model_matrix : np.ndarray
        Linear predictor matrix of the training inputs (n, k).
    fitted, residuals : np.ndarray
        Model-space fitted values and residuals.
    label : str
        Optional identifier (e.g. a rating id).
    """

    k: int
    coef: np.ndarray
    cov: np.ndarray
    cov_corrected: np.ndarray
    lam: float
    objective: str
    score: float
    edof: float
    scale: float
    log_space: bool
    stage: np.ndarray
    discharge: np.ndarray
    weights: Optional[np.ndarray]
    model_matrix: np.ndarray
    fitted: np.ndarray
    residuals: np.ndarray
    label: str = ""
    gam: LinearGAM = field(default=None, repr=False, compare=False)

    @property
    def coef_names(self) -> List[str]:
        return [f"b{i}" for i in range(self.k)]

    @property
    def coef_se(self) -> np.ndarray:
        return np.sqrt(np.diag(self.cov_corrected))

    @property
    def n(self) -> int:
        return len(self.stage)

    @property
    def fitted_flow(self) -> np.ndarray:
        return 10**self.fitted if self.log_space else self.fitted.copy()

    @property
    def percent_error(self) -> np.ndarray:
        """Residual / fitted x 100 on the discharge scale."""
        fitted_flow = self.fitted_flow
        return (self.discharge - fitted_flow) / fitted_flow * 100.0

    def to_model_space(self, stage) -> np.ndarray:
        """Transform stage values into the model's covariate space."""
        stage = np.asarray(stage, dtype=float)
        if self.log_space:
            with np.errstate(divide="ignore", invalid="ignore"):
                return np.log10(stage)
        return stage

    def design_matrix(self, stage, model_space: bool = False) -> np.ndarray:
        """Evaluate the spline basis at stage values.

        Parameters
        ----------
        stage : array-like
            Stage values (original units unless ``model_space``).
        model_space : bool
            Values are already log10 stage (for log-space models).

        Returns
        -------
        np.ndarray
            Design matrix (n, k). Rows for missing stage are NaN.
        """
        x = np.atleast_1d(np.asarray(stage, dtype=float))
        if not model_space:
            x = self.to_model_space(x)
        out = np.full((x.size, self.k), np.nan)
        valid = np.isfinite(x)
        if valid.any():
            out[valid] = self.gam._modelmat(x[valid].reshape(-1, 1)).toarray()
        return out

    def design_row(self, stage, model_space: bool = False) -> np.ndarray:
        """Design row (1, k) for a single stage value."""
        return self.design_matrix(np.atleast_1d(stage)[:1], model_space=model_space)

    def predict(self, stage) -> np.ndarray:
        """Model-space prediction at stage values."""
        return self.design_matrix(stage) @ self.coef

    def predict_flow(self, stage) -> np.ndarray:
        """Predicted discharge at stage values."""
        pred = self.predict(stage)
        return 10**pred if self.log_space else pred

    def confidence_band(self, stage, alpha: float = 0.05, corrected: bool = True) -> pd.DataFrame:
        """Pointwise (1 - alpha) confidence band of the fitted curve."""
        X = self.design_matrix(stage)
        V = self.cov_corrected if corrected else self.cov
        fit = X @ self.coef
        se = np.sqrt(np.einsum("ij,jk,ik->i", X, V, X))
        z = ndtri(1 - alpha / 2)
        df = pd.DataFrame(
            {
                "stage": np.atleast_1d(np.asarray(stage, dtype=float)),
                "fit": fit,
                "se": se,
                "lower": fit - z * se,
                "upper": fit + z * se,
            }
        )
        if self.log_space:
            df["flow"] = 10 ** df["fit"]
            df["flow_lower"] = 10 ** df["lower"]
            df["flow_upper"] = 10 ** df["upper"]
        else:
            df["flow"] = df["fit"]
            df["flow_lower"] = df["lower"]
            df["flow_upper"] = df["upper"]
        return df

    def monotonicity_violations(self, n_grid: Optional[int] = None) -> pd.DataFrame:
        """Negative first differences of fitted discharge over sorted stage.

        Parameters
        ----------
        n_grid : int, optional
            Check an evenly spaced grid of this many stages spanning the
            training range instead of the unique training stages.

        Returns
        -------
        pd.DataFrame
            One row per violation: ``stage_low``, ``stage_high``,
            ``flow_low``, ``flow_high``, ``drop``.
        """
        if n_grid:
            stages = np.linspace(self.stage.min(), self.stage.max(), int(n_grid))
        else:
            stages = np.unique(self.stage)
        flow = self.predict_flow(stages)
        diffs = np.diff(flow)
        idx = np.nonzero(diffs < 0)[0]
        return pd.DataFrame(
            {
                "stage_low": stages[idx],
                "stage_high": stages[idx + 1],
                "flow_low": flow[idx],
                "flow_high": flow[idx + 1],
                "drop": -diffs[idx],
            }
        )

    def coefficient_table(self) -> pd.DataFrame:
        """Coefficients with conditional and corrected standard errors."""
        return pd.DataFrame(
            {
                "coef": self.coef,
                "se": np.sqrt(np.diag(self.cov)),
                "se_corrected": self.coef_se,
            },
            index=self.coef_names,
        )

    def training_frame(self) -> pd.DataFrame:
        """Training data with fitted values, residuals and percent error."""
        return pd.DataFrame(
            {
                "stage": self.stage,
                "discharge": self.discharge,
                "fitted": self.fitted,
                "residual": self.residuals,
                "fitted_flow": self.fitted_flow,
                "percent_error": self.percent_error,
            }
        )

    def summary(self) -> str:
        """Return a summary of the fitted model."""
        space = "log10 Q ~ s(log10 h)" if self.log_space else "Q ~ s(h)"
        pe = self.percent_error
        n_viol = len(self.monotonicity_violations())
        lines = [
            f"Rating Smoother - {space}" + (f" [{self.label}]" if self.label else ""),
            "=" * 40,
            f"Observations (n):    {self.n}",
            f"Basis dimension (k): {self.k}",
            f"Penalty (lambda):    {self.lam:.4g} ({self.objective})",
            f"GCV score:           {self.score:.4g}",
            f"Effective dof:       {self.edof:.2f}",
            f"Mean |% error|:      {np.mean(np.abs(pe)):.2f}",
            f"Max |% error|:       {np.max(np.abs(pe)):.2f}",
            f"Monotonicity breaks: {n_viol}",
        ]
        return "\n".join(lines)


class RatingSmoother:
    """Fit penalized spline rating curves.

    Examples
    --------
    >>> smoother = RatingSmoother(SmootherConfig(n_splines=10))
    >>> model = smoother.fit(stage, discharge)
    >>> model.design_row(4.2)
    """

    def __init__(self, config: Optional[SmootherConfig] = None):
        self.config = config or SmootherConfig()

    def _gam(self, lam: Optional[float] = None) -> LinearGAM:
        kwargs = {"n_splines": self.config.n_splines, "spline_order": self.config.spline_order}
        if lam is not None:
            kwargs["lam"] = lam
        return LinearGAM(s(0, **kwargs), fit_intercept=False)

    def _prepare(
        self, stage, discharge, weights
    ) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
        stage = np.asarray(stage, dtype=float).ravel()
        discharge = np.asarray(discharge, dtype=float).ravel()
        if stage.shape != discharge.shape:
            raise InputContractViolation(
                "Stage and discharge lengths differ", n_stage=stage.size, n_discharge=discharge.size
            )
        if weights is not None:
            weights = np.asarray(weights, dtype=float).ravel()
            if weights.shape != stage.shape:
                raise InputContractViolation("Weights length differs from data", n_weights=weights.size)

        keep = np.isfinite(stage) & np.isfinite(discharge)
        if self.config.log_space:
            if not np.any(discharge[keep] > 0):
                raise DataInsufficientError("No positive discharge values to log-transform")
            positive = (stage > 0) & (discharge > 0)
            n_drop = int(np.sum(keep & ~positive))
            if n_drop:
                logger.warning("Excluding %d non-positive stage/discharge pairs from log fit", n_drop)
            keep &= positive
        if weights is not None:
            keep &= np.isfinite(weights) & (weights > 0)

        stage, discharge = stage[keep], discharge[keep]
        weights = weights[keep] if weights is not None else None

        n_unique = np.unique(stage).size
        required = int(np.ceil(self.config.min_points_per_basis * self.config.n_splines))
        if n_unique < required:
            raise DataInsufficientError(
                "Too few unique stage values for the basis dimension",
                n_unique=n_unique,
                required=required,
                k=self.config.n_splines,
            )
        return stage, discharge, weights

    def fit(self, stage, discharge, weights=None, label: str = "") -> SplineModel:
        """Fit the rating smoother.

        Parameters
        ----------
        stage, discharge : array-like
            Paired observations in original units.
        weights : array-like, optional
            Per-observation weights (e.g. recency weights).
        label : str
            Identifier stored on the model.

        Returns
        -------
        SplineModel

        Raises
        ------
        DataInsufficientError
            Too few unique stages, or no positive discharge for a log fit.
        """
        stage, discharge, weights = self._prepare(stage, discharge, weights)
        X = (np.log10(stage) if self.config.log_space else stage).reshape(-1, 1)
        y = np.log10(discharge) if self.config.log_space else discharge

        gam = self._gam()
        gam.gridsearch(
            X,
            y,
            weights=weights,
            lam=np.asarray(self.config.lam_grid),
            objective=self.config.objective,
            progress=False,
        )
        lam = float(np.ravel(gam.lam)[0])
        coef = np.asarray(gam.coef_, dtype=float)
        cov = np.asarray(gam.statistics_["cov"], dtype=float)

        cov_corrected = cov
        if self.config.correct_for_smoothing:
            cov_corrected = cov + self._smoothing_correction(X, y, weights, lam)

        model_matrix = gam._modelmat(X).toarray()
        fitted = model_matrix @ coef

        model = SplineModel(
            k=coef.size,
            coef=coef,
            cov=cov,
            cov_corrected=cov_corrected,
            lam=lam,
            objective=self.config.objective,
            score=float(gam.statistics_["GCV"]),
            edof=float(gam.statistics_["edof"]),
            scale=float(gam.statistics_["scale"]),
            log_space=self.config.log_space,
            stage=stage,
            discharge=discharge,
            weights=weights,
            model_matrix=model_matrix,
            fitted=fitted,
            residuals=y - fitted,
            label=label,
            gam=gam,
        )

        violations = model.monotonicity_violations()
        if len(violations):
            logger.warning(
                "Fitted rating%s decreases at %d stage intervals (max drop %.4g)",
                f" {label}" if label else "",
                len(violations),
                violations["drop"].max(),
            )
        logger.info(
            "Fitted rating smoother%s: n=%d, k=%d, lambda=%.4g, edof=%.2f",
            f" {label}" if label else "",
            model.n,
            model.k,
            lam,
            model.edof,
        )
        return model

    def _smoothing_correction(self, X, y, weights, lam: float) -> np.ndarray:
        """First-order covariance term for uncertainty in log(lambda).

        ``var(rho) * J J'`` with ``J = d coef / d rho`` (central differences)
        and ``var(rho)`` the inverse curvature of the profile
        ``-(n/2) log GCV(rho)``. Zero when lambda sits on the grid boundary
        or the profile is not concave there.
        """
        k = self.config.n_splines
        grid = np.asarray(self.config.lam_grid)
        if lam <= grid.min() or lam >= grid.max():
            logger.debug("Selected lambda %.4g on grid boundary; no smoothing correction", lam)
            return np.zeros((k, k))

        h = _LOG_LAM_STEP
        n = len(y)
        fits = {}
        for step in (-h, 0.0, h):
            gam = self._gam(lam=lam * np.exp(step)).fit(X, y, weights=weights)
            fits[step] = (np.asarray(gam.coef_, dtype=float), float(gam.statistics_["GCV"]))

        profile = {step: -0.5 * n * np.log(gcv) for step, (_, gcv) in fits.items()}
        curvature = -(profile[h] - 2 * profile[0.0] + profile[-h]) / h**2
        if not np.isfinite(curvature) or curvature <= 0:
            logger.debug("Flat GCV profile at lambda %.4g; no smoothing correction", lam)
            return np.zeros((k, k))

        J = (fits[h][0] - fits[-h][0]) / (2 * h)
        return np.outer(J, J) / curvature
